"""Weakest preconditions of whole subroutines."""
from __future__ import annotations

import pytest
import z3

from binwp.errors import MissingEntryError
from binwp.ir import (
    BinOp,
    BinOpKind as B,
    Blk,
    Call,
    Def,
    Direct,
    Endian,
    Goto,
    Indirect,
    Int,
    Interrupt,
    Load,
    Phi,
    Sub,
)
from binwp.symbolic import (
    Verdict,
    WPVisitor,
    check,
    get_refuted_goals,
    init_vars,
    mk_clause,
    mk_goal,
    stats,
    visit_sub,
)
from binwp.symbolic.constraint import pp
from binwp.symbolic.specs import (
    DEFAULT_SPECS,
    jmp_spec_reach,
    non_null_load_vc,
    spec_verifier_error,
)
from binwp.symbolic.types import WeakeningKind


def _kinds(env) -> set[WeakeningKind]:
    return {w.kind for w in env.weakenings}


def _incremented_by(env, reg, n):
    """Goal: ``reg`` at exit is its entry value plus *n*."""
    hyps = init_vars([reg], env)
    term, init = env.get_var(reg), env.get_init_var(reg)
    return hyps, mk_goal(f"{reg} = init + {n}", term == init + n)


# ── Straight-line code ────────────────────────────────────────────────

@pytest.mark.parametrize(
    "label, delta, expected",
    [
        ("T01 increment matches", 1, Verdict.PROVED),
        ("T02 off-by-one mutant", 2, Verdict.REFUTED),
    ],
)
def test_increment(label, delta, expected, ctx, solver, env_for, incr_sub, reg):
    env = env_for()
    hyps, post = _incremented_by(env, reg("R0"), 1)
    pre = visit_sub(env, post, incr_sub(delta))
    result = check(solver, ctx, mk_clause(hyps, [pre]))
    assert result.verdict is expected, label
    if expected is Verdict.REFUTED:
        [goal] = get_refuted_goals(pre, result.model, ctx)
        assert goal.name.startswith("R0")


def test_missing_entry_block(env_for, ctx):
    with pytest.raises(MissingEntryError):
        visit_sub(env_for(), mk_goal("true", z3.BoolVal(True, ctx)), Sub("empty"))


def _bump(r0):
    return Def(r0, BinOp(B.PLUS, r0, Int(1, 32)))


@pytest.mark.parametrize(
    "label, extra, expected",
    [
        ("T05 three thousand increments", 0, Verdict.PROVED),
        ("T06 one increment too many", 1, Verdict.REFUTED),
    ],
)
def test_long_block(label, extra, expected, ctx, solver, env_for, reg, ret):
    r0 = reg("R0")
    defs = tuple(_bump(r0) for _ in range(3000 + extra))
    sub = Sub("long", (Blk("%long", defs=defs, jmps=(ret(),)),), tid="@long")

    env = env_for()
    hyps, post = _incremented_by(env, r0, 3000)
    pre = visit_sub(env, post, sub)
    assert stats(pre)["substs"] == 3000 + extra
    assert pp(pre).count(" Subst ") == 3000 + extra

    result = check(solver, ctx, mk_clause(hyps, [pre]))
    assert result.verdict is expected, label
    if expected is Verdict.REFUTED:
        [goal] = get_refuted_goals(pre, result.model, ctx)
        assert goal.name.startswith("R0")


def test_long_chain_of_blocks(ctx, solver, env_for, reg, ret):
    r0 = reg("R0")
    length = 2000
    blks = [
        Blk(f"%c{i}", defs=(_bump(r0),), jmps=(Goto(Direct(f"%c{i + 1}")),))
        for i in range(length - 1)
    ]
    blks.append(Blk(f"%c{length - 1}", defs=(_bump(r0),), jmps=(ret(),)))
    sub = Sub("chain", tuple(blks), tid="@chain")

    env = env_for()
    visitor = WPVisitor()
    hyps, post = _incremented_by(env, r0, length)
    pre = visitor.visit_sub(env, post, sub)
    assert visitor.exp_calls == length
    assert len(env.precond_map) == length
    assert check(solver, ctx, mk_clause(hyps, [pre])).verdict is Verdict.PROVED


def test_block_cache_is_per_subroutine(ctx, solver, env_for, reg, incr_sub):
    env = env_for()
    hyps, post = _incremented_by(env, reg("R0"), 2)
    visit_sub(env, post, incr_sub(1, "f"))
    pre = visit_sub(env, post, incr_sub(2, "g"))
    assert check(solver, ctx, mk_clause(hyps, [pre])).verdict is Verdict.PROVED


# ── Branches and sharing ──────────────────────────────────────────────

@pytest.fixture
def diamond(reg, ret):
    r0, r1, r2 = reg("R0"), reg("R1"), reg("R2")
    return Sub("diamond", (
        Blk("%b0",
            defs=(Def(r1, r0, "%d0"),),
            jmps=(Goto(Direct("%b2"), BinOp(B.EQ, r0, Int(0, 32)), "%j0"),)),
        Blk("%b1",
            defs=(Def(r0, BinOp(B.PLUS, r0, Int(1, 32)), "%d1"),),
            jmps=(Goto(Direct("%b3"), tid="%j1"),)),
        Blk("%b2",
            defs=(Def(r0, BinOp(B.PLUS, r0, Int(2, 32)), "%d2"),)),
        Blk("%b3",
            defs=(Def(r2, BinOp(B.PLUS, r0, r1), "%d3"),),
            jmps=(ret(),)),
    ), tid="@diamond")


def test_join_block_translated_once(env_for, ctx, diamond):
    env = env_for()
    visitor = WPVisitor()
    post = mk_goal("true", z3.BoolVal(True, ctx))
    visitor.visit_sub(env, post, diamond)
    # %b3 once, %b2 once, %b1 once, %b0 def and jump condition.
    assert visitor.exp_calls == 5
    assert len(env.precond_map) == 4

    join = env.get_precondition("%b3", ())
    again = visitor.visit_block(env, post, diamond.blk("%b3"))
    assert again is join
    assert visitor.exp_calls == 5


def test_both_branches_change_r0(env_for, ctx, solver, diamond, reg):
    env = env_for()
    r0 = reg("R0")
    hyps = init_vars([r0], env)
    post = mk_goal("R0 changed", env.get_var(r0) != env.get_init_var(r0))
    pre = visit_sub(env, post, diamond)
    assert check(solver, ctx, mk_clause(hyps, [pre])).verdict is Verdict.PROVED


def test_refuted_goal_reports_taken_jump(env_for, ctx, solver, diamond, reg):
    env = env_for()
    hyps, post = _incremented_by(env, reg("R0"), 1)
    pre = mk_clause(hyps, [visit_sub(env, post, diamond)])
    result = check(solver, ctx, pre)
    assert result.verdict is Verdict.REFUTED
    [goal] = get_refuted_goals(pre, result.model, ctx)
    assert goal.path == {"%j0": True}


# ── Loops ─────────────────────────────────────────────────────────────

@pytest.fixture
def counting_loop(reg, ret):
    r0 = reg("R0")
    return Sub("loop", (
        Blk("%loop",
            defs=(Def(r0, BinOp(B.PLUS, r0, Int(1, 32)), "%inc"),),
            jmps=(Goto(Direct("%loop"), BinOp(B.LT, r0, Int(10, 32)), "%back"),)),
        Blk("%exit", jmps=(ret(),)),
    ), tid="@loop")


@pytest.mark.parametrize("bound", [1, 3])
def test_loop_unrolled_up_to_bound(env_for, ctx, counting_loop, bound):
    env = env_for(num_loop_unroll=bound)
    visitor = WPVisitor()
    pre = visitor.visit_sub(env, mk_goal("true", z3.BoolVal(True, ctx)), counting_loop)
    # Each copy of the body translates its increment and its condition.
    assert visitor.exp_calls == 2 * bound
    assert stats(pre)["substs"] == bound
    assert [w.kind for w in env.weakenings] == [WeakeningKind.LOOP_BOUND]


def test_unrolled_loop_reaches_exit_value(env_for, ctx, solver, counting_loop, reg):
    # Starting at 8 the loop runs twice and exits with R0 = 10.
    env = env_for(num_loop_unroll=5)
    r0 = reg("R0")
    post = mk_goal("R0 = 10", env.mk_var(r0) == 10)
    pre = visit_sub(env, post, counting_loop)
    start = mk_goal("R0 = 8", env.get_var(r0) == 8)
    assert check(solver, ctx, mk_clause([start], [pre])).verdict is Verdict.PROVED


def test_phi_takes_value_of_single_predecessor(env_for, ctx, solver, reg, ret):
    r1 = reg("R1")
    sub = Sub("phi", (
        Blk("%b0", jmps=(Goto(Direct("%b1")),)),
        Blk("%b1",
            phis=(Phi(r1, (("%other", Int(1, 32)), ("%b0", Int(2, 32))), "%phi"),),
            jmps=(ret(),)),
    ), tid="@phi")
    env = env_for()
    pre = visit_sub(env, mk_goal("R1 = 2", env.mk_var(r1) == 2), sub)
    assert not env.weakenings
    assert check(solver, ctx, pre).verdict is Verdict.PROVED


def test_phi_at_ambiguous_join_is_weakened(env_for, ctx, solver, reg, ret):
    r0, r1 = reg("R0"), reg("R1")
    sub = Sub("phi", (
        Blk("%b0", jmps=(Goto(Direct("%b2"), BinOp(B.EQ, r0, Int(0, 32)), "%j0"),)),
        Blk("%b1", jmps=(Goto(Direct("%b3")),)),
        Blk("%b2", jmps=(Goto(Direct("%b3")),)),
        Blk("%b3",
            phis=(Phi(r1, (("%b1", Int(1, 32)), ("%b2", Int(2, 32))), "%phi"),),
            jmps=(ret(),)),
    ), tid="@phi")
    env = env_for()
    pre = visit_sub(env, mk_goal("R1 = 1", env.mk_var(r1) == 1), sub)
    # Two predecessors share one cached join, so the first value is used.
    assert WeakeningKind.PHI in _kinds(env)
    assert check(solver, ctx, pre).verdict is Verdict.PROVED


# ── Jumps ─────────────────────────────────────────────────────────────

def test_indirect_jump_is_weakened(env_for, ctx, reg):
    sub = Sub("jmp", (Blk("%b0", jmps=(Goto(Indirect(reg("R1")), tid="%ij"),)),), tid="@jmp")
    env = env_for()
    post = mk_goal("true", z3.BoolVal(True, ctx))
    assert visit_sub(env, post, sub) is post
    assert _kinds(env) == {WeakeningKind.INDIRECT_JUMP}


def test_interrupt_falls_back_to_return_block(env_for, ctx, solver, reg, ret):
    r0 = reg("R0")
    sub = Sub("svc", (
        Blk("%b0", jmps=(Interrupt(0x80, "%b1", tid="%int"),)),
        Blk("%b1", defs=(Def(r0, Int(7, 32)),), jmps=(ret(),)),
    ), tid="@svc")
    env = env_for()
    pre = visit_sub(env, mk_goal("R0 = 7", env.mk_var(r0) == 7), sub)
    assert check(solver, ctx, pre).verdict is Verdict.PROVED


def test_reach_spec_forces_branch(env_for, ctx, solver, reg, ret):
    r0 = reg("R0")
    sub = Sub("reach", (
        Blk("%b0", jmps=(Goto(Direct("%b2"), BinOp(B.EQ, r0, Int(0, 32)), "%j"),)),
        Blk("%b1", jmps=(ret("%r1"),)),
        Blk("%b2", jmps=(ret("%r2"),)),
    ), tid="@reach")
    env = env_for(jmp_spec=jmp_spec_reach({"%j": True}))
    pre = visit_sub(env, mk_goal("true", z3.BoolVal(True, ctx)), sub)
    result = check(solver, ctx, pre, refute=False)
    assert result.verdict is Verdict.SAT
    assert result.model.eval(env.get_var(r0)).as_long() == 0


def test_null_dereference_is_checked(env_for, ctx, solver, reg, arch, ret):
    r0, r1 = reg("R0"), reg("R1")
    sub = Sub("deref", (
        Blk("%b0",
            defs=(Def(r1, Load(arch.mem, r0, Endian.LITTLE, 32), "%ld"),),
            jmps=(ret(),)),
    ), tid="@deref")
    env = env_for(exp_conds=[non_null_load_vc])
    pre = visit_sub(env, mk_goal("true", z3.BoolVal(True, ctx)), sub)

    result = check(solver, ctx, pre)
    assert result.verdict is Verdict.REFUTED
    assert result.model.eval(env.get_var(r0), model_completion=True).as_long() == 0

    non_null = mk_goal("R0 != 0", env.get_var(r0) != 0)
    assert check(solver, ctx, mk_clause([non_null], [pre])).verdict is Verdict.PROVED


# ── Calls ─────────────────────────────────────────────────────────────

@pytest.fixture
def caller(reg, ret):
    def build(callee: str) -> Sub:
        return Sub("main", (
            Blk("%m0", jmps=(Call(Direct(f"@{callee}"), Direct("%m1"), tid="%call"),)),
            Blk("%m1", jmps=(ret("%mret"),)),
        ), tid="@main")
    return build


@pytest.fixture
def set_five(reg, ret):
    return Sub("g", (
        Blk("%g0", defs=(Def(reg("R0"), Int(5, 32)),), jmps=(ret("%gret"),)),
    ), tid="@g")


@pytest.mark.parametrize(
    "inline, expected",
    [(True, Verdict.PROVED), (False, Verdict.REFUTED)],
    ids=["T03 inlined callee", "T04 summarized callee"],
)
def test_call_inline_vs_summary(env_for, ctx, solver, reg, caller, set_five, inline, expected):
    main = caller("g")
    env = env_for(subs=[main, set_five], to_inline=[set_five] if inline else [])
    pre = visit_sub(env, mk_goal("R0 = 5", env.mk_var(reg("R0")) == 5), main)
    assert check(solver, ctx, pre).verdict is expected


def test_recursive_inline_falls_back_to_default(env_for, ctx, reg, caller, ret):
    rec = Sub("g", (
        Blk("%g0", jmps=(Call(Direct("@g"), Direct("%g1"), tid="%self"),)),
        Blk("%g1", jmps=(ret("%gret"),)),
    ), tid="@g")
    main = caller("g")
    env = env_for(subs=[main, rec], to_inline=[rec])
    visit_sub(env, mk_goal("true", z3.BoolVal(True, ctx)), main)
    assert WeakeningKind.RECURSIVE_INLINE in _kinds(env)
    assert env.inline_stack == []


def test_unknown_callee_is_weakened(env_for, ctx, caller):
    env = env_for(subs=[caller("nowhere")])
    visit_sub(env, mk_goal("true", z3.BoolVal(True, ctx)), caller("nowhere"))
    assert WeakeningKind.UNKNOWN_CALLEE in _kinds(env)


def test_assume_strengthens_precondition(env_for, ctx, solver, reg, caller):
    main = caller("__VERIFIER_assume")
    stub = Sub("__VERIFIER_assume", tid="@__VERIFIER_assume")
    r0 = reg("R0")

    env = env_for(subs=[main, stub])
    pre = visit_sub(env, mk_goal("R0 != 0", env.mk_var(r0) != 0), main)
    assert check(solver, ctx, pre).verdict is Verdict.PROVED


def test_reaching_error_is_refuted(env_for, ctx, solver, reg, ret):
    r0 = reg("R0")
    main = Sub("main", (
        Blk("%m0", jmps=(Goto(Direct("%m2"), BinOp(B.EQ, r0, Int(0, 32)), "%j"),)),
        Blk("%m1", jmps=(Call(Direct("@__assert_fail"), tid="%fail"),)),
        Blk("%m2", jmps=(ret(),)),
    ), tid="@main")
    stub = Sub("__assert_fail", tid="@__assert_fail")
    env = env_for(subs=[main, stub], specs=[spec_verifier_error, *DEFAULT_SPECS])
    pre = visit_sub(env, mk_goal("true", z3.BoolVal(True, ctx)), main)
    result = check(solver, ctx, pre)
    assert result.verdict is Verdict.REFUTED
    assert result.model.eval(env.get_var(r0), model_completion=True).as_long() != 0

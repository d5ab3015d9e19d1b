"""
binwp — Comparative analysis.

A comparator is a function of the two ``(subroutine, Env)`` pairs that
returns a constraint.  Comparators come in (postcondition, hypothesis)
pairs; ``compare_subs`` folds each list, walks the modified program
under the combined postcondition, walks the original under the
modified program's precondition and returns ``hyps ⟹ pre``.

The two Envs must share one Z3 context and be name-disjoint (the
modified one is freshened).  A comparator only reads the pairs it is
given, so the order of the lists does not matter.
"""
from __future__ import annotations

import logging
from typing import Callable, Iterable, Sequence

import z3

from binwp.ir import Blk, Call, Direct, Sub, Var, sub_vars
from binwp.symbolic.constraint import Constr, conjoin, mk_clause, mk_goal, trivial
from binwp.symbolic.environment import Env
from binwp.symbolic.smtlib import env_decls, mk_smtlib2
from binwp.symbolic.visitor import (
    construct_pointer_constraint,
    get_vars,
    init_vars,
    visit_block,
    visit_sub,
)

logger = logging.getLogger("binwp.verifier.compare")

Pair = tuple[Sub, Env]
Comparator = Callable[[Pair, Pair], Constr]


# ── Helpers ───────────────────────────────────────────────────────────

def _equal(vars_: Iterable[Var], env1: Env, env2: Env, label: str) -> Constr:
    goals = []
    for var in sorted(vars_, key=lambda v: v.name):
        t1, t2 = env1.mk_var(var), env2.mk_var(var)
        goals.append(mk_goal(f"{label} {var.name}: {t1} = {t2}", t1 == t2))
    return mk_clause([], goals)


def _shared_vars(original: Pair, modified: Pair) -> set[Var]:
    (sub1, env1), (sub2, env2) = original, modified
    return get_vars(env1, sub1) & get_vars(env2, sub2)


def _callees(sub: Sub, env: Env) -> set[str]:
    names = set()
    for blk in sub.blks:
        for jmp in blk.jmps:
            if isinstance(jmp, Call) and isinstance(jmp.target, Direct):
                callee = env.find_sub(jmp.target)
                name = callee.name if callee is not None else jmp.target.tid.lstrip("@")
                names.add(env.canonical_name(name))
    return names


def _trivial_cmp(original: Pair, modified: Pair) -> Constr:
    return trivial(original[1].ctx)


def mk_smtlib2_compare(env1: Env, env2: Env, text: str) -> Constr:
    """``<reg>_orig``, ``<reg>_mod`` and their ``init_`` forms name the two programs' terms."""
    decls = env_decls(env1, "_orig")
    decls.update(env_decls(env2, "_mod"))
    return mk_smtlib2(text, decls, env1.ctx)


def map_fun_names(subs1: Sequence[Sub], subs2: Sequence[Sub]) -> dict[str, str]:
    """Modified-program names for functions that moved under a new name.

    Functions are matched by address; same-named functions need no entry.
    """
    by_addr = {s.addr: s.name for s in subs1 if s.addr is not None}
    names1 = {s.name for s in subs1}
    mapping = {}
    for sub in subs2:
        if sub.name in names1 or sub.addr is None:
            continue
        if sub.addr in by_addr:
            mapping[sub.name] = by_addr[sub.addr]
    return mapping


# ── Comparators ───────────────────────────────────────────────────────

def compare_subs_empty() -> tuple[Comparator, Comparator]:
    """Only the side conditions installed on the Envs must hold."""
    return _trivial_cmp, _trivial_cmp


def compare_subs_empty_post() -> tuple[Comparator, Comparator]:
    """Side conditions must hold given equal inputs."""

    def hyp(original: Pair, modified: Pair) -> Constr:
        return _equal(_shared_vars(original, modified), original[1], modified[1], "input")

    return _trivial_cmp, hyp


def compare_subs_eq(pre_regs: Iterable[Var], post_regs: Iterable[Var]) -> tuple[Comparator, Comparator]:
    """Equal *post_regs* at exit given equal *pre_regs* at entry."""
    pre_regs, post_regs = list(pre_regs), list(post_regs)

    def post(original: Pair, modified: Pair) -> Constr:
        return _equal(post_regs, original[1], modified[1], "output")

    def hyp(original: Pair, modified: Pair) -> Constr:
        return _equal(pre_regs, original[1], modified[1], "input")

    return post, hyp


def compare_subs_sp() -> tuple[Comparator, Comparator]:
    """Hypothesis: both stack pointers start inside the stack region."""

    def hyp(original: Pair, modified: Pair) -> Constr:
        env1, env2 = original[1], modified[1]
        return mk_clause([], [
            mk_goal("orig sp in stack range", env1.sp_range()),
            mk_goal("mod sp in stack range", env2.sp_range()),
        ])

    return _trivial_cmp, hyp


def compare_subs_constraints(pre_conds: Constr, post_conds: Constr) -> tuple[Comparator, Comparator]:
    return (lambda original, modified: post_conds), (lambda original, modified: pre_conds)


def compare_subs_fun() -> tuple[Comparator, Comparator]:
    """Every function the original calls is also called by the modified program."""

    def names(original: Pair, modified: Pair) -> list[str]:
        return sorted(_callees(*original) | _callees(*modified))

    def post(original: Pair, modified: Pair) -> Constr:
        env1, env2 = original[1], modified[1]
        goals = []
        for name in names(original, modified):
            c1, c2 = env1.get_called(name), env2.get_called(name)
            goals.append(mk_goal(f"{name} called in both", z3.Implies(c1, c2)))
        return mk_clause([], goals)

    def hyp(original: Pair, modified: Pair) -> Constr:
        env1, env2 = original[1], modified[1]
        goals = []
        for name in names(original, modified):
            for env in (env1, env2):
                called = env.get_called(name)
                goals.append(mk_goal(f"{called} starts false", z3.Not(called)))
        inputs = _equal(_shared_vars(original, modified), env1, env2, "input")
        return mk_clause([], [*goals, inputs])

    return post, hyp


def compare_subs_smtlib(smtlib_post: str, smtlib_hyp: str) -> tuple[Comparator, Comparator]:
    def post(original: Pair, modified: Pair) -> Constr:
        return mk_smtlib2_compare(original[1], modified[1], smtlib_post)

    def hyp(original: Pair, modified: Pair) -> Constr:
        return mk_smtlib2_compare(original[1], modified[1], smtlib_hyp)

    return post, hyp


def compare_subs_mem_eq() -> tuple[Comparator, Comparator]:
    """Hypothesis: both memories are byte-for-byte equal at entry."""

    def hyp(original: Pair, modified: Pair) -> Constr:
        env1, env2 = original[1], modified[1]
        return _equal([env1.arch.mem], env1, env2, "memory")

    return _trivial_cmp, hyp


def compare_subs_pointers(reg_names: Iterable[str]) -> tuple[Comparator, Comparator]:
    """Hypothesis: the named registers hold heap pointers in both programs."""
    reg_names = list(reg_names)

    def hyp(original: Pair, modified: Pair) -> Constr:
        env1, env2 = original[1], modified[1]
        regs1 = [env1.arch.reg(n) for n in reg_names]
        regs2 = [env2.arch.reg(n) for n in reg_names]
        return construct_pointer_constraint(regs1, env1, regs2, env2)

    return _trivial_cmp, hyp


# ── Composition ───────────────────────────────────────────────────────

def compare_subs(
    postconds: Sequence[Comparator],
    hyps: Sequence[Comparator],
    original: Pair,
    modified: Pair,
) -> tuple[Constr, Env, Env]:
    (sub1, env1), (sub2, env2) = original, modified
    snapshot = init_vars(get_vars(env1, sub1), env1) + init_vars(get_vars(env2, sub2), env2)

    post = conjoin([c(original, modified) for c in postconds] or [trivial(env1.ctx)])
    hyp = conjoin([*(c(original, modified) for c in hyps), *snapshot])

    logger.debug("compare_subs  |  %s vs %s", sub1.name, sub2.name)
    pre_mod = visit_sub(env2, post, sub2)
    pre_orig = visit_sub(env1, pre_mod, sub1)
    return mk_clause([hyp], [pre_orig]), env1, env2


def compare_blocks(
    pre_regs: Iterable[Var],
    post_regs: Iterable[Var],
    original: tuple[Blk, Env],
    modified: tuple[Blk, Env],
    smtlib_post: str = "",
    smtlib_hyp: str = "",
) -> tuple[Constr, Env, Env]:
    (blk1, env1), (blk2, env2) = original, modified
    pre_regs, post_regs = list(pre_regs), list(post_regs)
    for blk, env in ((blk1, env1), (blk2, env2)):
        vars_ = sub_vars(Sub(name=blk.tid, blks=(blk,))) | set(pre_regs) | set(post_regs)
        init_vars(vars_, env)

    posts = [_equal(post_regs, env1, env2, "output")]
    hyps = [_equal(pre_regs, env1, env2, "input")]
    if smtlib_post.strip():
        posts.append(mk_smtlib2_compare(env1, env2, smtlib_post))
    if smtlib_hyp.strip():
        hyps.append(mk_smtlib2_compare(env1, env2, smtlib_hyp))

    pre_mod = visit_block(env2, conjoin(posts), blk2)
    pre_orig = visit_block(env1, pre_mod, blk1)
    return mk_clause([conjoin(hyps)], [pre_orig]), env1, env2

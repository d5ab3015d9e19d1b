"""Constraint trees: evaluation, sharing, model inspection and checking."""
from __future__ import annotations

import z3

from binwp.symbolic.constraint import (
    Clause,
    Verdict,
    check,
    conjoin,
    exclude,
    get_refuted_goals,
    mk_clause,
    mk_goal,
    mk_ite,
    model_diff,
    pp,
    stats,
    substitute,
    to_z3,
    trivial,
)


def _valid(ctx, formula) -> bool:
    s = z3.Solver(ctx=ctx)
    s.add(z3.Not(formula))
    return s.check() == z3.unsat


# ── Evaluation ────────────────────────────────────────────────────────

def test_clause_without_hyps_is_conjunction(ctx):
    x = z3.BitVec("x", 8, ctx)
    a, b = mk_goal("a", x == 1), mk_goal("b", x == 2)
    formula = to_z3(Clause((), (a, b)), ctx)
    assert _valid(ctx, formula == z3.And(x == 1, x == 2))


def test_clause_with_hyps_is_implication(ctx):
    x = z3.BitVec("x", 8, ctx)
    c = mk_clause([mk_goal("h", x == 3)], [mk_goal("g", x + 1 == 4)])
    assert _valid(ctx, to_z3(c, ctx))


def test_ite_selects_branch(ctx):
    x = z3.BitVec("x", 8, ctx)
    c = mk_ite("%j", x == 0, mk_goal("then", x == 0), mk_goal("else", x != 0))
    assert _valid(ctx, to_z3(c, ctx))


def test_subst_replaces_lazily(ctx):
    x, y = z3.BitVecs("x y", 8, ctx)
    c = substitute(mk_goal("g", x == 5), [x], [y + 1])
    assert _valid(ctx, to_z3(c, ctx) == (y + 1 == 5))


def test_nested_subst_applies_inner_first(ctx):
    # (x = y)[y := x][x := 1]  is  1 = 1, whereas the other order gives 1 = x.
    x, y = z3.BitVecs("x y", 8, ctx)
    inner = substitute(mk_goal("g", x == y), [y], [x])
    outer = substitute(inner, [x], [z3.BitVecVal(1, 8, ctx)])
    assert _valid(ctx, to_z3(outer, ctx))


def test_substitute_without_olds_is_identity(ctx):
    goal = trivial(ctx)
    assert substitute(goal, [], []) is goal


def test_conjoin_single_is_unwrapped(ctx):
    goal = trivial(ctx)
    assert conjoin([goal]) is goal
    assert isinstance(conjoin([goal, goal]), Clause)


def test_shared_subtree_evaluated_once(ctx):
    x = z3.BitVec("x", 8, ctx)
    shared = substitute(mk_goal("g", x == 1), [x], [x + 1])
    memo: dict = {}
    to_z3(Clause((), (shared, shared)), ctx, memo)
    # clause, subst, goal
    assert len(memo) == 3


def test_stats_and_pp_count_shared_nodes_once(ctx):
    x = z3.BitVec("x", 8, ctx)
    shared = mk_goal("g", x == 1)
    tree = mk_ite("%j", x == 0, shared, substitute(shared, [x], [x + 1]))
    assert stats(tree) == {"goals": 1, "clauses": 0, "ites": 1, "substs": 1}
    assert "<shared #1>" in pp(tree)


# ── Checking ──────────────────────────────────────────────────────────

def test_check_proved(ctx, solver):
    x = z3.BitVec("x", 8, ctx)
    assert check(solver, ctx, mk_goal("g", x == x)).verdict is Verdict.PROVED


def test_check_refuted_has_model(ctx, solver):
    x = z3.BitVec("x", 8, ctx)
    result = check(solver, ctx, mk_goal("g", x + 1 != 0))
    assert result.verdict is Verdict.REFUTED
    assert result.model.eval(x).as_long() == 0xFF


def test_check_satisfiable(ctx, solver):
    x = z3.BitVec("x", 8, ctx)
    result = check(solver, ctx, mk_goal("g", x == 7), refute=False)
    assert result.verdict is Verdict.SAT
    assert result.model.eval(x).as_long() == 7
    assert check(solver, ctx, mk_goal("g", x != x), refute=False).verdict is Verdict.UNSAT


def test_checks_on_one_solver_are_independent(ctx, solver):
    x = z3.BitVec("x", 8, ctx)
    assert check(solver, ctx, mk_goal("g", x != 0), refute=False).verdict is Verdict.SAT
    # The earlier formula must not leak into this query.
    assert check(solver, ctx, mk_goal("g", x == 0), refute=False).verdict is Verdict.SAT


def test_exclude_enumerates_counterexamples(ctx, solver):
    x = z3.BitVec("x", 8, ctx)
    pre = mk_goal("g", z3.Not(z3.Or(x == 1, x == 2)))

    first = check(solver, ctx, pre)
    assert first.verdict is Verdict.REFUTED
    v1 = first.model.eval(x).as_long()

    solver.push()
    second = exclude(solver, ctx, x, pre)
    assert second.verdict is Verdict.REFUTED
    v2 = second.model.eval(x).as_long()
    assert {v1, v2} == {1, 2}
    assert exclude(solver, ctx, x, pre).verdict is Verdict.PROVED
    solver.pop()

    assert check(solver, ctx, pre).verdict is Verdict.REFUTED


# ── Model inspection ──────────────────────────────────────────────────

def test_refuted_goal_follows_taken_branch(ctx, solver):
    x = z3.BitVec("x", 8, ctx)
    tree = mk_ite("%j", x == 0, mk_goal("then", x == 1), mk_goal("else", x == 2))
    result = check(solver, ctx, tree)
    assert result.verdict is Verdict.REFUTED

    refuted = get_refuted_goals(tree, result.model, ctx)
    assert len(refuted) == 1
    goal = refuted[0]
    assert goal.name == ("then" if goal.path["%j"] else "else")
    assert goal.to_dict()["path"] == goal.path


def test_refuted_goal_is_reported_under_substitution(ctx, solver):
    x, y = z3.BitVecs("x y", 8, ctx)
    tree = substitute(mk_goal("g", x == 5, "%d"), [x], [y])
    result = check(solver, ctx, tree)
    [goal] = get_refuted_goals(tree, result.model, ctx)
    assert goal.tid == "%d"
    assert z3.is_false(result.model.eval(goal.value, model_completion=True))
    assert "y" in str(goal.value)


def test_refuted_goals_skip_false_hypotheses(ctx, solver):
    x = z3.BitVec("x", 8, ctx)
    tree = mk_clause([], [
        mk_clause([mk_goal("h", x == 1)], [mk_goal("guarded", x == 2)]),
        mk_goal("plain", x == 3),
    ])
    s = z3.Solver(ctx=ctx)
    s.add(x == 0)
    assert s.check() == z3.sat
    names = [g.name for g in get_refuted_goals(tree, s.model(), ctx)]
    assert names == ["plain"]


def test_model_diff_reports_differing_values(ctx):
    a, b, c, d = z3.BitVecs("a b c d", 8, ctx)
    s = z3.Solver(ctx=ctx)
    s.add(a == 1, b == 2, c == 7, d == 7)
    assert s.check() == z3.sat
    diff = model_diff(s.model(), {"R0": a, "R1": c}, {"R0": b, "R1": d})
    assert diff == {"R0": {"orig": "0x1", "mod": "0x2"}}

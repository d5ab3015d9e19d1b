"""
binwp — Constraint trees.

A precondition is built bottom-up during the backward walk as a tree of
immutable nodes:

* ``Goal``    a named proof obligation (a Z3 boolean).
* ``Clause``  hypotheses imply the conjunction of goals.
* ``Ite``     branch on a conditional jump; remembers the jump tid so a
              model can be mapped back to the path it takes.
* ``Subst``   lazy substitution produced by an assignment.

Nodes are compared by identity.  Block preconditions are shared between
predecessors, so evaluation memoizes on node identity and a diamond is
translated once.
"""
from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, Optional, Sequence, Union

import z3

logger = logging.getLogger("binwp.symbolic.constraint")


# ── Nodes ─────────────────────────────────────────────────────────────

@dataclass(frozen=True, eq=False)
class Goal:
    name: str
    value: z3.BoolRef
    tid: str | None = None


@dataclass(frozen=True, eq=False)
class Clause:
    hyps: tuple[Constr, ...]
    goals: tuple[Constr, ...]


@dataclass(frozen=True, eq=False)
class Ite:
    jmp_tid: str
    cond: z3.BoolRef
    then_: Constr
    else_: Constr


@dataclass(frozen=True, eq=False)
class Subst:
    body: Constr
    olds: tuple[z3.ExprRef, ...]
    news: tuple[z3.ExprRef, ...]


Constr = Union[Goal, Clause, Ite, Subst]


def mk_goal(name: str, value: z3.BoolRef, tid: str | None = None) -> Goal:
    return Goal(name, value, tid)


def mk_clause(hyps: Iterable[Constr], goals: Iterable[Constr]) -> Clause:
    return Clause(tuple(hyps), tuple(goals))


def mk_ite(jmp_tid: str, cond: z3.BoolRef, then_: Constr, else_: Constr) -> Ite:
    return Ite(jmp_tid, cond, then_, else_)


def conjoin(constrs: Iterable[Constr]) -> Constr:
    """A clause without hypotheses is the conjunction of its goals."""
    goals = tuple(constrs)
    if len(goals) == 1:
        return goals[0]
    return Clause((), goals)


def trivial(ctx: z3.Context) -> Goal:
    return Goal("true", z3.BoolVal(True, ctx))


def substitute(
    constr: Constr,
    olds: Sequence[z3.ExprRef],
    news: Sequence[z3.ExprRef],
) -> Constr:
    """``constr[olds := news]``, recorded lazily."""
    if not olds:
        return constr
    if len(olds) != len(news):
        raise ValueError("substitute: olds and news differ in length")
    return Subst(constr, tuple(olds), tuple(news))


# ── Evaluation ────────────────────────────────────────────────────────

def _conj(terms: Sequence[z3.BoolRef], ctx: z3.Context) -> z3.BoolRef:
    if not terms:
        return z3.BoolVal(True, ctx)
    if len(terms) == 1:
        return terms[0]
    return z3.And(*terms)


def _apply(term: z3.ExprRef, olds: Sequence[z3.ExprRef], news: Sequence[z3.ExprRef]) -> z3.ExprRef:
    return z3.substitute(term, *zip(olds, news))


def _children(node: Constr) -> tuple[Constr, ...]:
    if isinstance(node, Clause):
        return node.hyps + node.goals
    if isinstance(node, Ite):
        return (node.then_, node.else_)
    if isinstance(node, Subst):
        return (node.body,)
    return ()


def _combine(node: Constr, ctx: z3.Context, memo: dict[int, z3.BoolRef]) -> z3.BoolRef:
    if isinstance(node, Goal):
        return node.value
    if isinstance(node, Clause):
        goals = _conj([memo[id(g)] for g in node.goals], ctx)
        if not node.hyps:
            return goals
        return z3.Implies(_conj([memo[id(h)] for h in node.hyps], ctx), goals)
    if isinstance(node, Ite):
        return z3.If(node.cond, memo[id(node.then_)], memo[id(node.else_)])
    if isinstance(node, Subst):
        return _apply(memo[id(node.body)], node.olds, node.news)
    raise TypeError(f"not a constraint: {node!r}")


def to_z3(constr: Constr, ctx: z3.Context, memo: dict[int, z3.BoolRef] | None = None) -> z3.BoolRef:
    """Translate a tree to one Z3 formula, sharing common subtrees.

    Nodes are combined in post-order from an explicit work stack, so a
    path with thousands of assignments does not deepen the call stack.
    """
    if memo is None:
        memo = {}
    stack: list[tuple[Constr, bool]] = [(constr, False)]
    while stack:
        node, ready = stack.pop()
        if id(node) in memo:
            continue
        if ready:
            memo[id(node)] = _combine(node, ctx, memo)
            continue
        stack.append((node, True))
        stack.extend((child, False) for child in _children(node) if id(child) not in memo)
    return memo[id(constr)]


def iter_nodes(constr: Constr) -> Iterator[Constr]:
    """Every distinct node reachable from *constr*."""
    seen: set[int] = set()
    stack = [constr]
    while stack:
        node = stack.pop()
        if id(node) in seen:
            continue
        seen.add(id(node))
        yield node
        stack.extend(_children(node))


def stats(constr: Constr) -> dict[str, int]:
    counts = {"goals": 0, "clauses": 0, "ites": 0, "substs": 0}
    for node in iter_nodes(constr):
        if isinstance(node, Goal):
            counts["goals"] += 1
        elif isinstance(node, Clause):
            counts["clauses"] += 1
        elif isinstance(node, Ite):
            counts["ites"] += 1
        else:
            counts["substs"] += 1
    return counts


def pp(constr: Constr) -> str:
    """Indented rendering; shared subtrees are printed once and referenced."""
    lines: list[str] = []
    labels: dict[int, int] = {}
    # Items are nodes or literal header lines, each with its depth.
    stack: list[tuple[Constr | str, int]] = [(constr, 0)]
    while stack:
        item, depth = stack.pop()
        pad = "  " * depth
        if isinstance(item, str):
            lines.append(f"{pad}{item}")
            continue
        node = item
        if id(node) in labels:
            lines.append(f"{pad}<shared #{labels[id(node)]}>")
            continue
        labels[id(node)] = len(labels)
        tag = f"#{labels[id(node)]}"
        todo: list[tuple[Constr | str, int]] = []
        if isinstance(node, Goal):
            where = f" @{node.tid}" if node.tid else ""
            lines.append(f"{pad}{tag} Goal {node.name}{where}: {node.value}")
        elif isinstance(node, Clause):
            lines.append(f"{pad}{tag} Clause")
            if node.hyps:
                todo.append((" hyps:", depth))
                todo.extend((h, depth + 1) for h in node.hyps)
            todo.append((" goals:", depth))
            todo.extend((g, depth + 1) for g in node.goals)
        elif isinstance(node, Ite):
            lines.append(f"{pad}{tag} Ite {node.jmp_tid}: {node.cond}")
            todo = [(node.then_, depth + 1), (node.else_, depth + 1)]
        else:
            pairs = ", ".join(f"{o} := {n}" for o, n in zip(node.olds, node.news))
            lines.append(f"{pad}{tag} Subst [{pairs}]")
            todo = [(node.body, depth + 1)]
        stack.extend(reversed(todo))
    return "\n".join(lines)


# ── Model inspection ──────────────────────────────────────────────────

@dataclass
class RefutedGoal:
    name: str
    tid: str | None
    value: z3.BoolRef
    path: dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "tid": self.tid,
            "goal": str(self.value),
            "path": dict(self.path),
        }


def _eval_bool(model: z3.ModelRef, term: z3.BoolRef) -> bool:
    return z3.is_true(model.eval(term, model_completion=True))


# Substitutions in scope, innermost first: (olds, news, enclosing) or None.
Layers = Optional[tuple]


def _under(term: z3.ExprRef, layers: Layers) -> z3.ExprRef:
    while layers is not None:
        olds, news, layers = layers
        term = _apply(term, olds, news)
    return term


def get_refuted_goals(
    constr: Constr,
    model: z3.ModelRef,
    ctx: z3.Context,
) -> list[RefutedGoal]:
    """Goals that are false under *model* on the path the model takes."""
    refuted: list[RefutedGoal] = []
    memo: dict[int, z3.BoolRef] = {}
    stack: list[tuple[Constr, Layers, dict[str, bool]]] = [(constr, None, {})]
    while stack:
        node, layers, path = stack.pop()
        if isinstance(node, Goal):
            value = _under(node.value, layers)
            if not _eval_bool(model, value):
                refuted.append(RefutedGoal(node.name, node.tid, value, dict(path)))
        elif isinstance(node, Clause):
            if all(_eval_bool(model, _under(to_z3(h, ctx, memo), layers)) for h in node.hyps):
                stack.extend((g, layers, path) for g in reversed(node.goals))
        elif isinstance(node, Ite):
            taken = _eval_bool(model, _under(node.cond, layers))
            branch = node.then_ if taken else node.else_
            stack.append((branch, layers, {**path, node.jmp_tid: taken}))
        elif isinstance(node, Subst):
            stack.append((node.body, (node.olds, node.news, layers), path))
    return refuted


def format_value(value: z3.ExprRef) -> str:
    if z3.is_bv_value(value):
        return f"{value.as_long():#x}"
    if z3.is_true(value):
        return "true"
    if z3.is_false(value):
        return "false"
    return str(value)


def model_values(model: z3.ModelRef, terms: dict[str, z3.ExprRef]) -> dict[str, str]:
    return {
        name: format_value(model.eval(term, model_completion=True))
        for name, term in terms.items()
    }


def model_diff(
    model: z3.ModelRef,
    orig_terms: dict[str, z3.ExprRef],
    mod_terms: dict[str, z3.ExprRef],
) -> dict[str, dict[str, str]]:
    """Registers whose values differ between the two programs under *model*."""
    orig = model_values(model, orig_terms)
    mod = model_values(model, mod_terms)
    return {
        name: {"orig": orig[name], "mod": mod[name]}
        for name in sorted(orig.keys() & mod.keys())
        if orig[name] != mod[name]
    }


# ── Solving ───────────────────────────────────────────────────────────

_proxies = itertools.count()


class Verdict(str, Enum):
    PROVED = "proved"
    REFUTED = "refuted"
    SAT = "sat"
    UNSAT = "unsat"
    UNKNOWN = "unknown"


@dataclass
class CheckResult:
    verdict: Verdict
    model: z3.ModelRef | None = None
    reason: str | None = None


def check(
    solver: z3.Solver,
    ctx: z3.Context,
    constr: Constr,
    refute: bool = True,
) -> CheckResult:
    """Check *constr*; with *refute*, look for a counterexample to it.

    The formula is guarded by a fresh proxy literal that is passed as the
    only assumption, so earlier checks on the same solver stay inert.
    """
    formula = to_z3(constr, ctx)
    if refute:
        formula = z3.Not(formula)
    proxy = z3.Bool(f"__check_{next(_proxies)}", ctx)
    solver.add(z3.Implies(proxy, formula))
    result = solver.check(proxy)
    logger.debug("check  |  refute=%s  |  result=%s", refute, result)

    if result == z3.unsat:
        return CheckResult(Verdict.PROVED if refute else Verdict.UNSAT)
    if result == z3.sat:
        return CheckResult(Verdict.REFUTED if refute else Verdict.SAT, solver.model())
    return CheckResult(Verdict.UNKNOWN, reason=solver.reason_unknown())


def exclude(
    solver: z3.Solver,
    ctx: z3.Context,
    var: z3.ExprRef,
    pre: Constr,
    refute: bool = True,
) -> CheckResult:
    """Forbid the last model's value of *var* and re-check.

    Adds an assertion to *solver*; wrap in ``push``/``pop`` to undo it.
    """
    model = solver.model()
    value = model.eval(var, model_completion=True)
    solver.add(var != value)
    return check(solver, ctx, pre, refute)

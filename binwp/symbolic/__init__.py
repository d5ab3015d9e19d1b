"""
binwp — Weakest-precondition engine.

Public API::

    from binwp.symbolic import WPVisitor, mk_env, mk_ctx, mk_var_gen, visit_sub
"""
from binwp.symbolic.constraint import (
    CheckResult,
    Clause,
    Constr,
    Goal,
    Ite,
    Subst,
    Verdict,
    check,
    exclude,
    get_refuted_goals,
    mk_clause,
    mk_goal,
    mk_ite,
    model_diff,
    model_values,
    stats,
    substitute,
    to_z3,
    trivial,
)
from binwp.symbolic.environment import Env, VarGen, mk_ctx, mk_var_gen
from binwp.symbolic.smtlib import mk_smtlib2, mk_smtlib2_single
from binwp.symbolic.specs import mk_env
from binwp.symbolic.types import Assume, FunSpec, Hooks, Inline, Summary, Verify, Weakening
from binwp.symbolic.visitor import (
    WPVisitor,
    construct_pointer_constraint,
    exp_to_z3,
    get_output_vars,
    get_vars,
    init_vars,
    set_sp_range,
    visit_block,
    visit_sub,
)

__all__ = [
    "Assume",
    "CheckResult",
    "Clause",
    "Constr",
    "Env",
    "FunSpec",
    "Goal",
    "Hooks",
    "Inline",
    "Ite",
    "Subst",
    "Summary",
    "VarGen",
    "Verdict",
    "Verify",
    "WPVisitor",
    "Weakening",
    "check",
    "construct_pointer_constraint",
    "exclude",
    "exp_to_z3",
    "get_output_vars",
    "get_refuted_goals",
    "get_vars",
    "init_vars",
    "mk_clause",
    "mk_ctx",
    "mk_env",
    "mk_goal",
    "mk_ite",
    "mk_smtlib2",
    "mk_smtlib2_single",
    "mk_var_gen",
    "model_diff",
    "model_values",
    "set_sp_range",
    "stats",
    "substitute",
    "to_z3",
    "trivial",
    "visit_block",
    "visit_sub",
]

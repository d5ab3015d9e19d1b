"""
binwp — WP visitor (coordinator).

``WPVisitor`` owns the translation counter and stitches together the
expression, element and loop mixins.  An Env is attached before use so
its ``wp_rec_call`` and ``exp_eval`` handles point back at the visitor.

Module-level helpers wrap a shared visitor for callers that only need
``visit_sub`` and friends::

    env = mk_env(mk_ctx(), mk_var_gen())
    pre = visit_sub(env, post, sub)
"""
from __future__ import annotations

import logging
from typing import Iterable

import z3

from binwp.ir import Blk, Exp, Sub, Var, sub_vars
from binwp.symbolic.constraint import Constr, mk_clause, mk_goal
from binwp.symbolic.environment import Env
from binwp.symbolic.expressions import ExpressionTranslator
from binwp.symbolic.loops import LoopUnroller, build_cfg
from binwp.symbolic.statements import ElementVisitor
from binwp.symbolic.types import Hooks

logger = logging.getLogger("binwp.symbolic.visitor")


class WPVisitor(ExpressionTranslator, ElementVisitor, LoopUnroller):
    """Backward weakest-precondition walker.

    Usage::

        visitor = WPVisitor()
        pre = visitor.visit_sub(env, post, sub)
        visitor.exp_calls   # number of expression translations performed
    """

    def __init__(self) -> None:
        self.exp_calls: int = 0

    def attach(self, env: Env) -> Env:
        env.wp_rec_call.set(self._visit_node)
        env.exp_eval.set(lambda exp: self.eval_plain(exp, env))
        return env

    # ── Top-level entry point ─────────────────────────────────────────

    def visit_sub(self, env: Env, post: Constr, sub: Sub) -> Constr:
        """Precondition of *sub* for the postcondition *post* at its return."""
        self.attach(env)
        cfg = build_cfg(sub)
        for var in sorted(sub_vars(sub), key=lambda v: v.name):
            env.mk_var(var)

        root = (sub.tid, post)
        if env.cache_root != root:
            env.precond_map = {}
            env.cache_root = root

        saved = (env.cfg, env.ret_post)
        env.cfg, env.ret_post = cfg, post
        try:
            logger.debug("visit_sub  |  %s  |  %d block(s)", sub.name, len(sub.blks))
            return self._visit_node(env, post, cfg.entry, ())
        finally:
            env.cfg, env.ret_post = saved


_default_visitor = WPVisitor()


def visit_sub(env: Env, post: Constr, sub: Sub) -> Constr:
    return _default_visitor.visit_sub(env, post, sub)


def visit_block(env: Env, post: Constr, blk: Blk) -> Constr:
    _default_visitor.attach(env)
    return _default_visitor.visit_block(env, post, blk)


def exp_to_z3(exp: Exp, env: Env) -> tuple[z3.ExprRef, Hooks]:
    _default_visitor.attach(env)
    return _default_visitor.exp_to_z3(exp, env)


# ── Variable helpers ──────────────────────────────────────────────────

def get_vars(env: Env, sub: Sub) -> set[Var]:
    """Every variable of *sub* plus the architecture's registers."""
    return sub_vars(sub) | set(env.arch.registers)


def get_output_vars(env: Env, sub: Sub, names: Iterable[str]) -> set[Var]:
    wanted = set(names)
    return {v for v in get_vars(env, sub) if v.name in wanted}


def init_vars(vars_: Iterable[Var], env: Env) -> list[Constr]:
    """Bind each variable and snapshot it as ``init_<name> == <name>``."""
    hyps = []
    for var in sorted(vars_, key=lambda v: v.name):
        term = env.mk_var(var)
        init = env.mk_init_var(var)
        hyps.append(mk_goal(f"{init} = {term}", init == term))
    return hyps


def set_sp_range(env: Env) -> Constr:
    sp = env.mk_var(env.arch.sp)
    return mk_goal(f"{sp} in stack range", env.sp_range())


def construct_pointer_constraint(
    regs_orig: Iterable[Var],
    env1: Env,
    regs_mod: Iterable[Var] | None,
    env2: Env | None,
) -> Constr:
    """Pointer registers point into the heap and away from the stack.

    With a second Env the constraint also covers the modified program's
    copies of the registers.
    """
    goals: list[Constr] = []

    def add(regs: Iterable[Var], env: Env) -> None:
        for reg in regs:
            term = env.mk_var(reg)
            outside_stack = z3.Not(env.in_stack(term))
            goals.append(mk_goal(f"{term} is a heap pointer", z3.And(env.in_heap(term), outside_stack)))

    add(regs_orig, env1)
    if regs_mod is not None and env2 is not None:
        add(regs_mod, env2)
    return mk_clause([], goals)

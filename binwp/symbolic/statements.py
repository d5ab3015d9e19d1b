"""
binwp — Block element visitor mixin.

Definitions become lazy substitutions, conditional jumps become ``Ite``
nodes and calls are resolved through the Env's fun specs.  A block is a
right-to-left fold of its elements over the precondition of whatever
follows it.
"""
from __future__ import annotations

import logging
from typing import Sequence

from binwp.errors import WidthMismatch
from binwp.ir import (
    TRUE,
    Blk,
    Call,
    Def,
    Direct,
    Elt,
    Goto,
    Indirect,
    Interrupt,
    Label,
    Phi,
    Ret,
    Sub,
)
from binwp.symbolic.constraint import Constr, mk_clause, mk_ite, substitute
from binwp.symbolic.environment import Env
from binwp.symbolic.expressions import bv_to_bool
from binwp.symbolic.types import Inline, Summary, WeakeningKind

logger = logging.getLogger("binwp.symbolic.statements")


def _guard(assumes: Sequence[Constr], verifies: Sequence[Constr], post: Constr) -> Constr:
    if not assumes and not verifies:
        return post
    return mk_clause(assumes, [*verifies, post])


class ElementVisitor:
    """Mixin: def, phi, jmp and block visitors."""

    # ── Assignments ───────────────────────────────────────────────────

    def _assign(self, env: Env, post: Constr, lhs, rhs_exp) -> Constr:
        rhs, hooks = self.exp_to_z3(rhs_exp, env)
        lhs_term = env.mk_var(lhs)
        if rhs.sort() != lhs_term.sort():
            raise WidthMismatch(f"assigning {rhs.sort()} to {lhs} of sort {lhs_term.sort()}")
        post = _guard(hooks.assume_after, hooks.verify_after, post)
        post = substitute(post, [lhs_term], [rhs])
        return _guard(hooks.assume_before, hooks.verify_before, post)

    def visit_def(self, env: Env, post: Constr, elt: Def) -> Constr:
        return self._assign(env, post, elt.lhs, elt.rhs)

    def visit_phi(self, env: Env, post: Constr, elt: Phi) -> Constr:
        """Pick the value along the predecessor being explored.

        When that predecessor is unknown the first incoming value is used
        and the choice is recorded as a weakening.
        """
        values = dict(elt.values)
        if env.current_pred in values:
            chosen = values[env.current_pred]
        else:
            chosen = elt.values[0][1]
            env.note_weakening(
                WeakeningKind.PHI, elt.tid,
                f"{elt.lhs} takes its first incoming value",
            )
        return self._assign(env, post, elt.lhs, chosen)

    # ── Jumps ─────────────────────────────────────────────────────────

    def _label_pre(self, env: Env, label: Label | str | None, default: Constr) -> Constr:
        if isinstance(label, str):
            label = Direct(label)
        if isinstance(label, Direct):
            return env.jmp_targets.get(label.tid, default)
        return default

    def _visit_call(self, env: Env, post: Constr, jmp: Call) -> Constr:
        if jmp.return_ is None:
            # Tail call: the callee returns to our caller.
            ret_pre = env.ret_post if env.ret_post is not None else post
        else:
            ret_pre = self._label_pre(env, jmp.return_, post)

        if isinstance(jmp.target, Indirect):
            env.note_weakening(WeakeningKind.INDIRECT_CALL, jmp.tid, str(jmp.target))
            return ret_pre

        callee = env.find_sub(jmp.target)
        if callee is None:
            env.note_weakening(WeakeningKind.UNKNOWN_CALLEE, jmp.tid, jmp.target.tid)
            callee = Sub(name=jmp.target.tid.lstrip("@"), tid=jmp.target.tid)

        handler = env.get_sub_handler(callee)
        spec = handler.spec
        if isinstance(spec, Inline):
            if not callee.blks:
                env.note_weakening(WeakeningKind.UNKNOWN_CALLEE, jmp.tid, callee.name)
                return ret_pre
            if callee.tid in env.inline_stack:
                env.note_weakening(WeakeningKind.RECURSIVE_INLINE, jmp.tid, callee.name)
                spec = env.default_spec(callee, env.arch).spec
            else:
                logger.debug("inline  |  %s at %s", callee.name, jmp.tid)
                env.inline_stack.append(callee.tid)
                try:
                    with env.precond_scope():
                        return self.visit_sub(env, ret_pre, callee)
                finally:
                    env.inline_stack.pop()
        if isinstance(spec, Summary):
            return spec.fn(env, ret_pre, jmp.tid)
        raise TypeError(f"unknown fun spec {spec!r}")

    def _jump_target_pre(self, env: Env, post: Constr, jmp) -> Constr:
        if isinstance(jmp, Goto):
            if isinstance(jmp.target, Indirect):
                env.note_weakening(WeakeningKind.INDIRECT_JUMP, jmp.tid, str(jmp.target))
                return post
            return self._label_pre(env, jmp.target, post)
        if isinstance(jmp, Call):
            return self._visit_call(env, post, jmp)
        if isinstance(jmp, Ret):
            return env.ret_post if env.ret_post is not None else post
        if isinstance(jmp, Interrupt):
            ret_pre = self._label_pre(env, jmp.return_, post)
            return env.int_spec(env, ret_pre, jmp.number)
        raise TypeError(f"not a jump: {jmp!r}")

    def visit_jmp(self, env: Env, post: Constr, jmp) -> Constr:
        if env.jmp_spec is not None:
            special = env.jmp_spec(env, post, env.current_blk, jmp)
            if special is not None:
                return special

        target_pre = self._jump_target_pre(env, post, jmp)
        if jmp.cond == TRUE:
            return target_pre

        cond, hooks = self.exp_to_z3(jmp.cond, env)
        pre = mk_ite(jmp.tid, bv_to_bool(cond), target_pre, post)
        return _guard(
            hooks.assume_before + hooks.assume_after,
            hooks.verify_before + hooks.verify_after,
            pre,
        )

    # ── Elements and blocks ───────────────────────────────────────────

    def visit_elt(self, env: Env, post: Constr, elt: Elt) -> Constr:
        if isinstance(elt, Def):
            return self.visit_def(env, post, elt)
        if isinstance(elt, Phi):
            return self.visit_phi(env, post, elt)
        return self.visit_jmp(env, post, elt)

    def visit_block(self, env: Env, post: Constr, blk: Blk) -> Constr:
        cached = env.get_precondition(blk.tid)
        if cached is not None:
            logger.debug("visit_block  |  %s  |  cached", blk.tid)
            return cached

        env.current_blk = blk.tid
        pre = post
        for elt in reversed(blk.elts):
            pre = self.visit_elt(env, pre, elt)
        env.add_precond(blk.tid, pre)
        return pre

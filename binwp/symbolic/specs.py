"""
binwp — Canonical policies.

Fun specs decide how a call site is modeled (summarized or inlined),
jmp/int specs override jump and interrupt handling, and exp conds emit
side conditions for individual expressions.  ``mk_env`` wires a
sensible default set into a fresh Env.
"""
from __future__ import annotations

import logging
from typing import Callable, Iterable, Sequence

import z3

from binwp.config import HEAP_RANGE, INIT_PREFIX, NUM_UNROLL, STACK_RANGE
from binwp.errors import ConfigurationError
from binwp.ir import (
    Arch,
    ArgIntent,
    BinOp,
    BinOpKind,
    Def,
    Direct,
    Exp,
    Goto,
    Jmp,
    Load,
    Store,
    Sub,
    Var,
    x86_64,
)
from binwp.symbolic.constraint import Constr, mk_clause, mk_goal, substitute
from binwp.symbolic.environment import Env, VarGen
from binwp.symbolic.expressions import bv_to_bool, load_z3_mem
from binwp.symbolic.loops import default_loop_handler
from binwp.symbolic.smtlib import mk_smtlib2
from binwp.symbolic.types import (
    Assume,
    CondResult,
    ExpCond,
    FunSpec,
    FunSpecSelector,
    Inline,
    IntSpec,
    JmpSpec,
    Placement,
    Summary,
    Verify,
)

logger = logging.getLogger("binwp.symbolic.specs")

VERIFIER_ERROR_FUNCS = frozenset({"__assert_fail", "__VERIFIER_error", "reach_error"})
VERIFIER_ASSUME = "__VERIFIER_assume"
VERIFIER_NONDET_PREFIX = "__VERIFIER_nondet"


# ── Summary building blocks ───────────────────────────────────────────

def _return_effects(env: Env, sub: Sub) -> tuple[list[z3.ExprRef], list[z3.ExprRef]]:
    """``ret`` pops the return address; the callee is marked as called."""
    olds: list[z3.ExprRef] = []
    news: list[z3.ExprRef] = []
    arch = env.arch
    if arch.pops_return_addr:
        sp = env.mk_var(arch.sp)
        olds.append(sp)
        news.append(sp + z3.BitVecVal(arch.addr_size // 8, arch.sp.width, env.ctx))
    olds.append(env.get_called(sub.name))
    news.append(z3.BoolVal(True, env.ctx))
    return olds, news


def _input_regs(env: Env) -> tuple[Var, ...]:
    if env.use_fun_input_regs:
        return env.arch.input_regs
    return env.arch.gprs


def _chaos(sub: Sub, outputs: Callable[[Env], Sequence[Var]],
           inputs: Callable[[Env], Sequence[Var]] = _input_regs) -> Summary:
    """Each output register becomes ``<callee>_<reg>(inputs...)``."""

    def fn(env: Env, post: Constr, tid: str) -> Constr:
        ins = list(inputs(env))
        args = [env.mk_var(v) for v in ins]
        arg_sorts = [env.mk_sort(v.typ) for v in ins]
        callee = env.canonical_name(sub.name)
        olds: list[z3.ExprRef] = []
        news: list[z3.ExprRef] = []
        for out in outputs(env):
            decl = env.declare_func(f"{callee}_{out.name}", arg_sorts, env.mk_sort(out.typ))
            olds.append(env.mk_var(out))
            news.append(decl(*args))
        for old, new in zip(*_return_effects(env, sub)):
            if not any(old.eq(o) for o in olds):
                olds.append(old)
                news.append(new)
        return substitute(post, olds, news)

    return Summary(fn)


def _first_arg(env: Env) -> z3.BitVecRef:
    arch = env.arch
    if arch.input_regs:
        return env.mk_var(arch.input_regs[0])
    # Stack-passed: the first argument sits just above the return address.
    slot = env.mk_var(arch.sp) + z3.BitVecVal(arch.addr_size // 8, arch.sp.width, env.ctx)
    return load_z3_mem(env.mk_var(arch.mem), slot, arch.addr_size, arch.endian)


# ── Fun specs ─────────────────────────────────────────────────────────

def spec_verifier_error(sub: Sub, arch: Arch) -> FunSpec | None:
    if sub.name not in VERIFIER_ERROR_FUNCS:
        return None

    def fn(env: Env, post: Constr, tid: str) -> Constr:
        return mk_goal(f"{sub.name} is not reached", z3.BoolVal(False, env.ctx), tid)

    return FunSpec("spec_verifier_error", Summary(fn))


def spec_verifier_assume(sub: Sub, arch: Arch) -> FunSpec | None:
    if sub.name != VERIFIER_ASSUME:
        return None

    def fn(env: Env, post: Constr, tid: str) -> Constr:
        arg = _first_arg(env)
        assumption = mk_goal(f"{VERIFIER_ASSUME} at {tid}", bv_to_bool(arg), tid)
        return mk_clause([assumption], [post])

    return FunSpec("spec_verifier_assume", Summary(fn))


def spec_verifier_nondet(sub: Sub, arch: Arch) -> FunSpec | None:
    if not sub.name.startswith(VERIFIER_NONDET_PREFIX) or arch.return_reg is None:
        return None

    def fn(env: Env, post: Constr, tid: str) -> Constr:
        ret = env.arch.return_reg
        value = env.fresh(f"{sub.name}_ret", ret.typ)
        return substitute(post, [env.mk_var(ret)], [value])

    return FunSpec("spec_verifier_nondet", Summary(fn))


def spec_empty(sub: Sub, arch: Arch) -> FunSpec | None:
    """Bodiless subroutines (external stubs) only record that they were called."""
    if sub.blks:
        return None

    def fn(env: Env, post: Constr, tid: str) -> Constr:
        return substitute(post, [env.get_called(sub.name)], [z3.BoolVal(True, env.ctx)])

    return FunSpec("spec_empty", Summary(fn))


def spec_arg_terms(sub: Sub, arch: Arch) -> FunSpec | None:
    """Use the subroutine's declared argument terms when the lifter has them."""
    if not sub.args:
        return None
    ins = [a.var for a in sub.args if a.intent in (ArgIntent.IN, ArgIntent.BOTH)]
    outs = [a.var for a in sub.args if a.intent in (ArgIntent.OUT, ArgIntent.BOTH)]
    return FunSpec(
        "spec_arg_terms",
        _chaos(sub, outputs=lambda env: outs, inputs=lambda env: ins),
    )


def _writes(sub: Sub, var: Var) -> bool:
    return any(
        isinstance(elt, Def) and elt.lhs == var
        for blk in sub.blks for elt in blk.elts
    )


def spec_rax_out(sub: Sub, arch: Arch) -> FunSpec | None:
    ret = arch.return_reg
    if ret is None or ret.name not in ("RAX", "EAX") or not _writes(sub, ret):
        return None
    return FunSpec("spec_rax_out", _chaos(sub, outputs=lambda env: [env.arch.return_reg]))


def spec_chaos_rax(sub: Sub, arch: Arch) -> FunSpec | None:
    if arch.name != "x86_64":
        return None
    return FunSpec("spec_chaos_rax", _chaos(sub, outputs=lambda env: [env.arch.return_reg]))


def spec_chaos_caller_saved(sub: Sub, arch: Arch) -> FunSpec | None:
    if not arch.caller_saved:
        return None
    return FunSpec(
        "spec_chaos_caller_saved",
        _chaos(sub, outputs=lambda env: env.arch.caller_saved),
    )


def spec_inline(to_inline: Iterable[Sub]) -> FunSpecSelector:
    tids = {s.tid for s in to_inline}

    def selector(sub: Sub, arch: Arch) -> FunSpec | None:
        if sub.tid in tids:
            return FunSpec("spec_inline", Inline())
        return None

    return selector


def spec_default(sub: Sub, arch: Arch) -> FunSpec:
    def fn(env: Env, post: Constr, tid: str) -> Constr:
        olds, news = _return_effects(env, sub)
        return substitute(post, olds, news)

    return FunSpec("spec_default", Summary(fn))


def user_func_spec(name: str, pre: str, post: str) -> FunSpecSelector:
    """A caller-supplied contract ``pre`` / ``post`` in SMT-LIB syntax.

    The call site must establish ``pre``; afterwards every caller-saved
    register holds an arbitrary value satisfying ``post``, where
    ``init_<reg>`` names the register's value at the call.
    """

    def selector(sub: Sub, arch: Arch) -> FunSpec | None:
        if sub.name != name:
            return None

        def fn(env: Env, post_c: Constr, tid: str) -> Constr:
            regs = env.arch.registers
            current = {r: env.mk_var(r) for r in regs}
            chaosed = {r: env.fresh(f"{name}_{r.name}", r.typ) for r in env.arch.caller_saved}
            pre_decls = {r.name: t for r, t in current.items()}
            post_decls = {r.name: chaosed.get(r, t) for r, t in current.items()}
            post_decls.update({f"{INIT_PREFIX}{r.name}": t for r, t in current.items()})

            sub_pre = mk_smtlib2(pre, pre_decls, env.ctx)
            sub_post = mk_smtlib2(post, post_decls, env.ctx)
            after = substitute(
                post_c,
                [current[r] for r in chaosed],
                list(chaosed.values()),
            )
            olds, news = _return_effects(env, sub)
            return mk_clause([], [sub_pre, mk_clause([sub_post], [substitute(after, olds, news)])])

        return FunSpec(f"user_func_spec:{name}", Summary(fn))

    return selector


_NAMED_SPECS: dict[str, FunSpecSelector] = {
    "verifier_error": spec_verifier_error,
    "verifier_assume": spec_verifier_assume,
    "verifier_nondet": spec_verifier_nondet,
    "empty": spec_empty,
    "arg_terms": spec_arg_terms,
    "rax_out": spec_rax_out,
    "chaos_rax": spec_chaos_rax,
    "chaos_caller_saved": spec_chaos_caller_saved,
}

FUN_SPEC_NAMES = tuple(_NAMED_SPECS)


def spec_of_name(name: str) -> FunSpecSelector:
    try:
        return _NAMED_SPECS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown fun spec '{name}'. Available specs are: {', '.join(FUN_SPEC_NAMES)}"
        ) from None


DEFAULT_SPECS: list[FunSpecSelector] = [
    spec_verifier_assume,
    spec_verifier_nondet,
    spec_empty,
    spec_chaos_caller_saved,
]


# ── Jump and interrupt specs ──────────────────────────────────────────

def jmp_spec_default(env: Env, post: Constr, blk_tid: str | None, jmp: Jmp) -> Constr | None:
    return None


def jmp_spec_reach(path: dict[str, bool]) -> JmpSpec:
    """Force each jump in *path* to be taken (``True``) or not (``False``)."""

    def spec(env: Env, post: Constr, blk_tid: str | None, jmp: Jmp) -> Constr | None:
        if jmp.tid not in path or not isinstance(jmp, Goto):
            return None
        if not isinstance(jmp.target, Direct):
            return None
        cond = bv_to_bool(env.exp_eval(jmp.cond))
        if path[jmp.tid]:
            target_pre = env.jmp_targets.get(jmp.target.tid, post)
            return mk_clause([], [mk_goal(f"take {jmp.tid}", cond, jmp.tid), target_pre])
        return mk_clause([], [mk_goal(f"skip {jmp.tid}", z3.Not(cond), jmp.tid), post])

    return spec


def int_spec_default(env: Env, post: Constr, number: int) -> Constr:
    return post


# ── Expression side conditions ────────────────────────────────────────

def _non_null(kind: type, wrap: type, label: str) -> ExpCond:
    def cond(env: Env, exp: Exp) -> CondResult:
        if not isinstance(exp, kind):
            return None
        addr = env.exp_eval(exp.addr)
        zero = z3.BitVecVal(0, addr.size(), env.ctx)
        return wrap(addr != zero, f"{label}: {exp.addr}", Placement.BEFORE)

    return cond


non_null_load_vc = _non_null(Load, Verify, "non-null load")
non_null_load_assert = _non_null(Load, Assume, "non-null load")
non_null_store_vc = _non_null(Store, Verify, "non-null store")
non_null_store_assert = _non_null(Store, Assume, "non-null store")


def _valid_access(kind: type, wrap: type, label: str) -> ExpCond:
    """Every accessed byte lies in the stack or the heap region."""

    def cond(env: Env, exp: Exp) -> CondResult:
        if not isinstance(exp, kind):
            return None
        first = env.exp_eval(exp.addr)
        last = first + z3.BitVecVal(exp.size // 8 - 1, first.size(), env.ctx)
        in_stack = z3.And(env.in_stack(first), env.in_stack(last))
        in_heap = z3.And(env.in_heap(first), env.in_heap(last))
        return wrap(z3.Or(in_stack, in_heap), f"{label}: {exp.addr}", Placement.BEFORE)

    return cond


valid_load_vc = _valid_access(Load, Verify, "valid load")
valid_load_assert = _valid_access(Load, Assume, "valid load")
valid_store_vc = _valid_access(Store, Verify, "valid store")
valid_store_assert = _valid_access(Store, Assume, "valid store")

_DIVISIONS = (BinOpKind.DIVIDE, BinOpKind.SDIVIDE, BinOpKind.MOD, BinOpKind.SMOD)


def non_zero_divisor_vc(env: Env, exp: Exp) -> CondResult:
    if not isinstance(exp, BinOp) or exp.op not in _DIVISIONS:
        return None
    divisor = env.exp_eval(exp.rhs)
    zero = z3.BitVecVal(0, divisor.size(), env.ctx)
    return Verify(divisor != zero, f"non-zero divisor: {exp.rhs}", Placement.BEFORE)


def mem_read_offsets(env_mod: Env, offset: Callable[[z3.BitVecRef], z3.BitVecRef]) -> ExpCond:
    """Installed on the original: a read at ``a`` matches the modified read at ``offset(a)``."""

    def cond(env: Env, exp: Exp) -> CondResult:
        if not isinstance(exp, Load) or not isinstance(exp.mem, Var):
            return None
        addr = env.exp_eval(exp.addr)
        orig = load_z3_mem(env.exp_eval(exp.mem), addr, exp.size, exp.endian)
        mod = load_z3_mem(env_mod.mk_var(exp.mem), offset(addr), exp.size, exp.endian)
        return Assume(orig == mod, f"offset read: {exp.addr}", Placement.BEFORE)

    return cond


# ── Environment factory ───────────────────────────────────────────────

def mk_env(
    ctx: z3.Context,
    var_gen: VarGen,
    *,
    subs: Sequence[Sub] = (),
    to_inline: Iterable[Sub] = (),
    specs: Sequence[FunSpecSelector] | None = None,
    default_spec: FunSpecSelector = spec_default,
    jmp_spec: JmpSpec = jmp_spec_default,
    int_spec: IntSpec = int_spec_default,
    exp_conds: Sequence[ExpCond] = (),
    num_loop_unroll: int = NUM_UNROLL,
    arch: Arch | None = None,
    freshen_vars: bool = False,
    use_fun_input_regs: bool = True,
    stack_range: tuple[int, int] = STACK_RANGE,
    heap_range: tuple[int, int] = HEAP_RANGE,
    func_name_map: dict[str, str] | None = None,
) -> Env:
    fun_specs = [spec_inline(to_inline)]
    fun_specs.extend(DEFAULT_SPECS if specs is None else specs)
    env = Env(
        ctx=ctx,
        var_gen=var_gen,
        arch=arch if arch is not None else x86_64(),
        subs=tuple(subs),
        fun_specs=fun_specs,
        default_spec=default_spec,
        jmp_spec=jmp_spec,
        int_spec=int_spec,
        exp_conds=list(exp_conds),
        loop_handler=default_loop_handler,
        num_loop_unroll=num_loop_unroll,
        freshen=freshen_vars,
        use_fun_input_regs=use_fun_input_regs,
        stack_range=stack_range,
        heap_range=heap_range,
        func_name_map=dict(func_name_map or {}),
    )
    logger.debug("mk_env  |  %s", env)
    return env

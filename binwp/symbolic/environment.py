"""
binwp — Symbolic environment.

One ``Env`` per analyzed program.  It owns every piece of mutable state
the backward walk needs: variable bindings, the block-precondition
cache, the fresh-name generator, the installed policies and the
memory-region bounds.  In comparative mode the original and modified
programs each get their own Env; only the resulting terms are combined.
"""
from __future__ import annotations

import itertools
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, TYPE_CHECKING

import z3

from binwp.config import CALLED_PREFIX, HEAP_RANGE, INIT_PREFIX, NUM_UNROLL, STACK_RANGE
from binwp.errors import UnboundVariable
from binwp.ir import Arch, Direct, Imm, Label, Mem, Sub, Type, Var, x86_64
from binwp.symbolic.constraint import Constr, mk_goal, trivial
from binwp.symbolic.types import (
    Assume,
    ExpCond,
    FunSpec,
    FunSpecSelector,
    Handle,
    Hooks,
    IntSpec,
    JmpSpec,
    LoopHandler,
    Placement,
    Verify,
    Weakening,
    WeakeningKind,
)

if TYPE_CHECKING:
    from binwp.ir import Exp
    from binwp.symbolic.loops import Cfg

logger = logging.getLogger("binwp.symbolic.environment")


# ── Fresh names ───────────────────────────────────────────────────────

class VarGen:
    """Monotonic name generator.

    Names from a namespaced generator carry the tag as a prefix, so two
    generators with different namespaces can never produce the same name.
    """

    def __init__(self, namespace: str | None = None) -> None:
        self.namespace = namespace
        self._counter = itertools.count()

    def get_fresh(self, name: str = "fresh") -> str:
        n = next(self._counter)
        if self.namespace:
            return f"{self.namespace}.{name}_{n}"
        return f"{name}_{n}"


def mk_ctx() -> z3.Context:
    return z3.Context()


def mk_var_gen(namespace: str | None = None) -> VarGen:
    return VarGen(namespace)


# ── Environment ───────────────────────────────────────────────────────

@dataclass(eq=False)
class Env:
    ctx: z3.Context
    var_gen: VarGen
    arch: Arch = field(default_factory=x86_64)
    subs: tuple[Sub, ...] = ()

    # Policies
    fun_specs: list[FunSpecSelector] = field(default_factory=list)
    default_spec: FunSpecSelector | None = None
    jmp_spec: JmpSpec | None = None
    int_spec: IntSpec | None = None
    exp_conds: list[ExpCond] = field(default_factory=list)
    loop_handler: LoopHandler | None = None
    num_loop_unroll: int = NUM_UNROLL

    freshen: bool = False
    use_fun_input_regs: bool = True
    stack_range: tuple[int, int] = STACK_RANGE
    heap_range: tuple[int, int] = HEAP_RANGE
    func_name_map: dict[str, str] = field(default_factory=dict)

    # Bindings
    var_map: dict[Var, z3.ExprRef] = field(default_factory=dict)
    init_vars: dict[Var, z3.ExprRef] = field(default_factory=dict)
    called: dict[str, z3.BoolRef] = field(default_factory=dict)
    declared_funcs: dict[str, z3.FuncDeclRef] = field(default_factory=dict)

    # Block cache, valid for one traversal of one sub from one
    # postcondition; ``cache_root`` is that (sub tid, post) pair
    precond_map: dict[tuple[str, tuple], Constr] = field(default_factory=dict)
    cache_root: tuple[str, Constr] | None = None
    sub_handlers: dict[str, FunSpec] = field(default_factory=dict)

    # Traversal state, owned by the visitor
    cfg: Cfg | None = None
    ret_post: Constr | None = None
    jmp_targets: dict[str, Constr] = field(default_factory=dict)
    current_blk: str | None = None
    current_pred: str | None = None
    unroll_ctx: tuple = ()
    inline_stack: list[str] = field(default_factory=list)

    weakenings: list[Weakening] = field(default_factory=list)

    wp_rec_call: Handle = field(default_factory=lambda: Handle("wp_rec_call"))
    exp_eval: Handle = field(default_factory=lambda: Handle("exp_eval"))

    # ── Sorts and variables ───────────────────────────────────────────

    def mk_sort(self, typ: Type) -> z3.SortRef:
        if isinstance(typ, Imm):
            return z3.BitVecSort(typ.width, self.ctx)
        if isinstance(typ, Mem):
            return z3.ArraySort(
                z3.BitVecSort(typ.addr_width, self.ctx),
                z3.BitVecSort(typ.value_width, self.ctx),
            )
        raise TypeError(f"unsupported type {typ!r}")

    def _name(self, name: str) -> str:
        return self.var_gen.get_fresh(name) if self.freshen else name

    def mk_var(self, var: Var) -> z3.ExprRef:
        """Bind *var* to a symbolic constant unless already bound."""
        term = self.var_map.get(var)
        if term is None:
            term = z3.Const(self._name(var.name), self.mk_sort(var.typ))
            self.var_map[var] = term
        return term

    def get_var(self, var: Var) -> z3.ExprRef:
        try:
            return self.var_map[var]
        except KeyError:
            raise UnboundVariable(var.name) from None

    def add_var(self, var: Var, term: z3.ExprRef) -> None:
        self.var_map[var] = term

    def find_var(self, name: str) -> Var | None:
        for var in self.var_map:
            if var.name == name:
                return var
        return None

    @contextmanager
    def binding(self, var: Var, term: z3.ExprRef) -> Iterator[None]:
        """Temporarily bind *var*; the previous binding is restored on exit."""
        previous = self.var_map.get(var)
        self.var_map[var] = term
        try:
            yield
        finally:
            if previous is None:
                del self.var_map[var]
            else:
                self.var_map[var] = previous

    def mk_init_var(self, var: Var) -> z3.ExprRef:
        term = self.init_vars.get(var)
        if term is None:
            term = z3.Const(self._name(f"{INIT_PREFIX}{var.name}"), self.mk_sort(var.typ))
            self.init_vars[var] = term
        return term

    def get_init_var(self, var: Var) -> z3.ExprRef:
        try:
            return self.init_vars[var]
        except KeyError:
            raise UnboundVariable(f"{INIT_PREFIX}{var.name}") from None

    def fresh(self, name: str, typ: Type | int) -> z3.ExprRef:
        """A brand-new constant, always named by the generator."""
        if isinstance(typ, int):
            typ = Imm(typ)
        return z3.Const(self.var_gen.get_fresh(name), self.mk_sort(typ))

    # ── Call targets ──────────────────────────────────────────────────

    def canonical_name(self, name: str) -> str:
        return self.func_name_map.get(name, name)

    def declare_func(
        self,
        name: str,
        arg_sorts: list[z3.SortRef],
        ret_sort: z3.SortRef,
    ) -> z3.FuncDeclRef:
        """Uninterpreted call-summary symbol.

        Never freshened: the original and modified programs must agree on
        ``callee(inputs)`` for their summaries to be comparable.
        """
        decl = self.declared_funcs.get(name)
        if decl is None:
            decl = z3.Function(name, *arg_sorts, ret_sort)
            self.declared_funcs[name] = decl
        return decl

    def get_called(self, name: str) -> z3.BoolRef:
        name = self.canonical_name(name)
        term = self.called.get(name)
        if term is None:
            term = z3.Bool(self._name(f"{CALLED_PREFIX}{name}"), self.ctx)
            self.called[name] = term
        return term

    def find_sub(self, label: Label) -> Sub | None:
        if not isinstance(label, Direct):
            return None
        key = label.tid
        for sub in self.subs:
            if sub.tid == key or sub.name == key.lstrip("@"):
                return sub
        return None

    def get_sub_handler(self, sub: Sub) -> FunSpec:
        """First matching fun spec for *sub*, falling back to the default."""
        handler = self.sub_handlers.get(sub.tid)
        if handler is not None:
            return handler
        for selector in self.fun_specs:
            handler = selector(sub, self.arch)
            if handler is not None:
                break
        else:
            if self.default_spec is None:
                raise RuntimeError("Env has no default fun spec")
            handler = self.default_spec(sub, self.arch)
        logger.debug("fun spec  |  %s -> %s", sub.name, handler.name)
        self.sub_handlers[sub.tid] = handler
        return handler

    # ── Block cache ───────────────────────────────────────────────────

    def add_precond(self, tid: str, pre: Constr, unroll: tuple | None = None) -> None:
        key = (tid, self.unroll_ctx if unroll is None else unroll)
        self.precond_map[key] = pre

    def get_precondition(self, tid: str, unroll: tuple | None = None) -> Constr | None:
        return self.precond_map.get((tid, self.unroll_ctx if unroll is None else unroll))

    @contextmanager
    def precond_scope(self) -> Iterator[None]:
        """A fresh block-cache scope, e.g. for an inlined callee."""
        saved: dict[str, Any] = {
            "precond_map": self.precond_map,
            "cache_root": self.cache_root,
            "cfg": self.cfg,
            "ret_post": self.ret_post,
            "jmp_targets": self.jmp_targets,
            "current_blk": self.current_blk,
            "current_pred": self.current_pred,
            "unroll_ctx": self.unroll_ctx,
        }
        self.precond_map = {}
        self.cache_root = None
        self.jmp_targets = {}
        self.current_pred = None
        self.unroll_ctx = ()
        try:
            yield
        finally:
            for name, value in saved.items():
                setattr(self, name, value)

    # ── Side conditions ───────────────────────────────────────────────

    def mk_exp_conds(self, exp: Exp) -> Hooks:
        hooks = Hooks()
        for cond in self.exp_conds:
            result = cond(self, exp)
            if result is None:
                continue
            goal = mk_goal(result.name, result.term)
            after = result.placement is Placement.AFTER
            if isinstance(result, Verify):
                (hooks.verify_after if after else hooks.verify_before).append(goal)
            elif isinstance(result, Assume):
                (hooks.assume_after if after else hooks.assume_before).append(goal)
        return hooks

    # ── Memory regions ────────────────────────────────────────────────

    def _in_range(self, addr: z3.BitVecRef, bounds: tuple[int, int]) -> z3.BoolRef:
        width = addr.size()
        lo = z3.BitVecVal(bounds[0], width, self.ctx)
        hi = z3.BitVecVal(bounds[1], width, self.ctx)
        return z3.And(z3.ULE(lo, addr), z3.ULE(addr, hi))

    def in_stack(self, addr: z3.BitVecRef) -> z3.BoolRef:
        return self._in_range(addr, self.stack_range)

    def in_heap(self, addr: z3.BitVecRef) -> z3.BoolRef:
        return self._in_range(addr, self.heap_range)

    def sp_range(self) -> z3.BoolRef:
        """The stack pointer lies inside the stack region."""
        return self.in_stack(self.mk_var(self.arch.sp))

    # ── Misc ──────────────────────────────────────────────────────────

    def note_weakening(self, kind: WeakeningKind, tid: str, detail: str = "") -> None:
        logger.debug("weakening  |  %s at %s  |  %s", kind.value, tid, detail)
        self.weakenings.append(Weakening(kind, tid, detail))

    def set_freshen(self, freshen: bool = True) -> None:
        self.freshen = freshen

    def trivial_constr(self) -> Constr:
        return trivial(self.ctx)

    def __str__(self) -> str:
        bound = ", ".join(f"{v.name} -> {t}" for v, t in self.var_map.items())
        return (
            f"Env(arch={self.arch.name}, freshen={self.freshen}, "
            f"unroll={self.num_loop_unroll}, vars=[{bound}], "
            f"cached_blocks={len(self.precond_map)})"
        )

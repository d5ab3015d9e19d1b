"""
binwp — Expression translation mixin.

Maps IR expressions to Z3 terms over fixed-width bit-vectors and
byte-addressable memory arrays.  One-bit results (comparisons, flags)
stay bit-vectors; ``bv_to_bool`` coerces them where Z3 needs a boolean.

Every translated sub-expression is also offered to the Env's
side-condition generators, whose assume/verify goals come back as
``Hooks`` next to the term.
"""
from __future__ import annotations

import logging
from typing import Callable

import z3

from binwp.errors import UnsupportedExpression, WidthMismatch
from binwp.ir import (
    BinOp,
    BinOpKind,
    Cast,
    CastKind,
    Concat,
    Endian,
    Exp,
    Extract,
    Int,
    Ite,
    Let,
    Load,
    Store,
    UnOp,
    UnOpKind,
    Unknown,
    Var,
)
from binwp.symbolic.environment import Env
from binwp.symbolic.types import Hooks

logger = logging.getLogger("binwp.symbolic.expressions")


# ── Pure helpers ──────────────────────────────────────────────────────

def word_to_z3(value: int, width: int, ctx: z3.Context) -> z3.BitVecRef:
    return z3.BitVecVal(value, width, ctx)


def z3_zero(width: int, ctx: z3.Context) -> z3.BitVecRef:
    return z3.BitVecVal(0, width, ctx)


def z3_one(width: int, ctx: z3.Context) -> z3.BitVecRef:
    return z3.BitVecVal(1, width, ctx)


def require_bv(term: z3.ExprRef, what: str) -> z3.BitVecRef:
    if not z3.is_bv(term):
        raise UnsupportedExpression(f"{what} needs a bit-vector, got {term.sort()}")
    return term


def require_mem(term: z3.ExprRef, what: str) -> z3.ArrayRef:
    if not z3.is_array(term):
        raise UnsupportedExpression(f"{what} needs a memory, got {term.sort()}")
    return term


def bv_to_bool(term: z3.BitVecRef) -> z3.BoolRef:
    """Non-zero is true."""
    require_bv(term, "condition")
    return term != z3_zero(term.size(), term.ctx)


def bool_to_bv(term: z3.BoolRef) -> z3.BitVecRef:
    ctx = term.ctx
    return z3.If(term, z3_one(1, ctx), z3_zero(1, ctx))


def _fit_shift(amount: z3.BitVecRef, width: int) -> z3.BitVecRef:
    size = amount.size()
    if size == width:
        return amount
    if size < width:
        return z3.ZeroExt(width - size, amount)
    # Shift amounts wider than the operand saturate to the operand width.
    limit = z3.BitVecVal(width, size, amount.ctx)
    clipped = z3.If(z3.ULT(amount, limit), amount, limit)
    return z3.Extract(width - 1, 0, clipped)


_ARITH: dict[BinOpKind, Callable] = {
    BinOpKind.PLUS: lambda x, y: x + y,
    BinOpKind.MINUS: lambda x, y: x - y,
    BinOpKind.TIMES: lambda x, y: x * y,
    BinOpKind.DIVIDE: z3.UDiv,
    BinOpKind.SDIVIDE: lambda x, y: x / y,
    BinOpKind.MOD: z3.URem,
    BinOpKind.SMOD: z3.SRem,
    BinOpKind.AND: lambda x, y: x & y,
    BinOpKind.OR: lambda x, y: x | y,
    BinOpKind.XOR: lambda x, y: x ^ y,
}

_SHIFT: dict[BinOpKind, Callable] = {
    BinOpKind.LSHIFT: lambda x, y: x << y,
    BinOpKind.RSHIFT: z3.LShR,
    BinOpKind.ARSHIFT: lambda x, y: x >> y,
}

_COMPARE: dict[BinOpKind, Callable] = {
    BinOpKind.EQ: lambda x, y: x == y,
    BinOpKind.NEQ: lambda x, y: x != y,
    BinOpKind.LT: z3.ULT,
    BinOpKind.LE: z3.ULE,
    BinOpKind.SLT: lambda x, y: x < y,
    BinOpKind.SLE: lambda x, y: x <= y,
}


def binop(op: BinOpKind, x: z3.BitVecRef, y: z3.BitVecRef) -> z3.BitVecRef:
    require_bv(x, f"operator '{op.value}'")
    require_bv(y, f"operator '{op.value}'")
    if op in _SHIFT:
        return _SHIFT[op](x, _fit_shift(y, x.size()))
    if x.size() != y.size():
        raise WidthMismatch(
            f"operator '{op.value}' applied to {x.size()}-bit and {y.size()}-bit operands"
        )
    if op in _ARITH:
        return _ARITH[op](x, y)
    if op in _COMPARE:
        return bool_to_bv(_COMPARE[op](x, y))
    raise UnsupportedExpression(f"binary operator {op!r}")


def unop(op: UnOpKind, x: z3.BitVecRef) -> z3.BitVecRef:
    require_bv(x, f"operator '{op.value}'")
    if op is UnOpKind.NEG:
        return -x
    if op is UnOpKind.NOT:
        return ~x
    raise UnsupportedExpression(f"unary operator {op!r}")


def cast(kind: CastKind, width: int, x: z3.BitVecRef) -> z3.BitVecRef:
    size = require_bv(x, f"{kind.value} cast").size()
    if kind in (CastKind.UNSIGNED, CastKind.SIGNED):
        if width == size:
            return x
        if width < size:
            return z3.Extract(width - 1, 0, x)
        extend = z3.ZeroExt if kind is CastKind.UNSIGNED else z3.SignExt
        return extend(width - size, x)
    if width > size:
        raise WidthMismatch(f"{kind.value}:{width} cast of a {size}-bit value")
    if kind is CastKind.HIGH:
        return z3.Extract(size - 1, size - width, x)
    if kind is CastKind.LOW:
        return z3.Extract(width - 1, 0, x)
    raise UnsupportedExpression(f"cast kind {kind!r}")


def _cells(mem: z3.ArrayRef, size: int) -> tuple[int, int]:
    cell = require_mem(mem, "memory access").range().size()
    if size % cell:
        raise UnsupportedExpression(
            f"{size}-bit access into memory of {cell}-bit cells"
        )
    return cell, size // cell


def _offset(addr: z3.BitVecRef, i: int) -> z3.BitVecRef:
    if i == 0:
        return addr
    return addr + z3.BitVecVal(i, addr.size(), addr.ctx)


def load_z3_mem(
    mem: z3.ArrayRef,
    addr: z3.BitVecRef,
    size: int,
    endian: Endian,
) -> z3.BitVecRef:
    """Read *size* bits starting at *addr*, one cell at a time."""
    _, count = _cells(mem, size)
    require_bv(addr, "load address")
    cells = [z3.Select(mem, _offset(addr, i)) for i in range(count)]
    if count == 1:
        return cells[0]
    if endian is Endian.LITTLE:
        cells.reverse()
    return z3.Concat(*cells)


def store_z3_mem(
    mem: z3.ArrayRef,
    addr: z3.BitVecRef,
    value: z3.BitVecRef,
    size: int,
    endian: Endian,
) -> z3.ArrayRef:
    cell, count = _cells(mem, size)
    require_bv(addr, "store address")
    if require_bv(value, "stored value").size() != size:
        raise WidthMismatch(f"storing a {value.size()}-bit value as {size} bits")
    for i in range(count):
        lo = i * cell if endian is Endian.LITTLE else size - (i + 1) * cell
        piece = value if count == 1 else z3.Extract(lo + cell - 1, lo, value)
        mem = z3.Store(mem, _offset(addr, i), piece)
    return mem


# ── Mixin ─────────────────────────────────────────────────────────────

class ExpressionTranslator:
    """Mixin: ``exp_to_z3`` and the per-kind evaluators."""

    exp_calls: int

    def exp_to_z3(self, exp: Exp, env: Env) -> tuple[z3.ExprRef, Hooks]:
        self.exp_calls += 1
        hooks = Hooks()
        term = self._eval_exp(exp, env, hooks)
        return term, hooks

    def eval_plain(self, exp: Exp, env: Env) -> z3.ExprRef:
        """Translate without consulting side-condition generators."""
        return self._eval_exp(exp, env, None)

    def _eval_exp(self, exp: Exp, env: Env, hooks: Hooks | None) -> z3.ExprRef:
        if hooks is not None and env.exp_conds:
            hooks.extend(env.mk_exp_conds(exp))

        if isinstance(exp, Var):
            return env.get_var(exp)
        if isinstance(exp, Int):
            return word_to_z3(exp.value, exp.width, env.ctx)
        if isinstance(exp, BinOp):
            return binop(
                exp.op,
                self._eval_exp(exp.lhs, env, hooks),
                self._eval_exp(exp.rhs, env, hooks),
            )
        if isinstance(exp, UnOp):
            return unop(exp.op, self._eval_exp(exp.arg, env, hooks))
        if isinstance(exp, Cast):
            return cast(exp.kind, exp.width, self._eval_exp(exp.arg, env, hooks))
        if isinstance(exp, Load):
            return load_z3_mem(
                self._eval_exp(exp.mem, env, hooks),
                self._eval_exp(exp.addr, env, hooks),
                exp.size,
                exp.endian,
            )
        if isinstance(exp, Store):
            return store_z3_mem(
                self._eval_exp(exp.mem, env, hooks),
                self._eval_exp(exp.addr, env, hooks),
                self._eval_exp(exp.value, env, hooks),
                exp.size,
                exp.endian,
            )
        if isinstance(exp, Ite):
            cond = self._eval_exp(exp.cond, env, hooks)
            yes = self._eval_exp(exp.yes, env, hooks)
            no = self._eval_exp(exp.no, env, hooks)
            if yes.sort() != no.sort():
                raise WidthMismatch(f"ite branches of sorts {yes.sort()} and {no.sort()}")
            return z3.If(bv_to_bool(cond), yes, no)
        if isinstance(exp, Extract):
            arg = require_bv(self._eval_exp(exp.arg, env, hooks), "extract")
            if not 0 <= exp.lo <= exp.hi < arg.size():
                raise WidthMismatch(
                    f"extract:{exp.hi}:{exp.lo} of a {arg.size()}-bit value"
                )
            return z3.Extract(exp.hi, exp.lo, arg)
        if isinstance(exp, Concat):
            return z3.Concat(
                require_bv(self._eval_exp(exp.lhs, env, hooks), "concat"),
                require_bv(self._eval_exp(exp.rhs, env, hooks), "concat"),
            )
        if isinstance(exp, Let):
            value = self._eval_exp(exp.value, env, hooks)
            with env.binding(exp.var, value):
                return self._eval_exp(exp.body, env, hooks)
        if isinstance(exp, Unknown):
            return env.fresh("unknown", exp.typ)
        raise UnsupportedExpression(f"cannot translate {exp!r}")

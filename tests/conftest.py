"""Shared fixtures for the binwp test suite.

Most cases run on the 32-bit ARM preset: few registers, no return-address
pop, so preconditions stay small enough to read when a case fails.
"""
from __future__ import annotations

import pytest
import z3

from binwp.ir import (
    BinOp,
    BinOpKind,
    Blk,
    Def,
    Indirect,
    Int,
    Ret,
    Sub,
    arm,
)
from binwp.symbolic import mk_env, mk_var_gen


@pytest.fixture
def ctx() -> z3.Context:
    return z3.Context()


@pytest.fixture
def arch():
    return arm()


@pytest.fixture
def reg(arch):
    return arch.reg


@pytest.fixture
def ret(arch):
    """A return through the link register."""
    def build(tid: str = "%ret") -> Ret:
        return Ret(Indirect(arch.reg("LR")), tid=tid)
    return build


@pytest.fixture
def incr_sub(arch, ret):
    """``R0 := R0 + n; return`` as a one-block subroutine."""
    def build(n: int, name: str = "f") -> Sub:
        r0 = arch.reg("R0")
        blk = Blk(
            "%entry",
            defs=(Def(r0, BinOp(BinOpKind.PLUS, r0, Int(n, 32)), "%add"),),
            jmps=(ret(),),
        )
        return Sub(name, (blk,), tid=f"@{name}")
    return build


@pytest.fixture
def env_for(ctx, arch):
    """Env factory over the shared context; ``mod=True`` freshens names."""
    def build(mod: bool = False, **kwargs):
        kwargs.setdefault("arch", arch)
        return mk_env(
            ctx,
            mk_var_gen("mod" if mod else None),
            freshen_vars=mod,
            **kwargs,
        )
    return build


@pytest.fixture
def solver(ctx) -> z3.Solver:
    return z3.Solver(ctx=ctx)


# ── JSON programs ─────────────────────────────────────────────────────

def incr_program(n: int, name: str = "f") -> dict:
    return {
        "arch": "arm",
        "subs": [{
            "name": name,
            "blks": [{
                "tid": "%entry",
                "defs": [{"lhs": "R0", "rhs": f"(+ R0 {n}:32)"}],
                "jmps": [{"kind": "ret", "target": {"exp": "LR"}}],
            }],
        }],
    }


@pytest.fixture
def incr_json():
    return incr_program

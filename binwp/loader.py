"""
binwp — Lifted program loader.

Programs arrive as JSON: an architecture name and a list of
subroutines, each a list of blocks holding phis, definitions and jumps.
Expressions are written as s-expressions::

    (+ R0 1:32)                      literal 1 of width 32
    (load mem (+ RSP 8:64) le 64)    little-endian 64-bit read
    (cast unsigned 64 (extract 31 0 RAX))
    (let t:32 (* R1 R1) (+ t t))

Register names resolve against the architecture (``mem`` is its memory);
anything else must be declared in the subroutine's ``vars`` table.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Literal, NoReturn

import sexpdata
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from sexpdata import Symbol

from binwp.errors import ConfigurationError, ProgramFormatError
from binwp.ir import (
    Arch,
    Arg,
    ArgIntent,
    BinOp,
    BinOpKind,
    Blk,
    Call,
    Cast,
    CastKind,
    Concat,
    Def,
    Direct,
    Endian,
    Exp,
    Extract,
    Goto,
    Imm,
    Indirect,
    Int,
    Interrupt,
    Ite,
    Label,
    Let,
    Load,
    Phi,
    Program,
    Ret,
    Store,
    Sub,
    UnOp,
    UnOpKind,
    Unknown,
    Var,
    arch_of_name,
    fresh_tid,
)

logger = logging.getLogger("binwp.loader")


# ── Request schemas ───────────────────────────────────────────────────

class IndirectModel(BaseModel):
    exp: str


LabelModel = str | IndirectModel


class DefModel(BaseModel):
    lhs: str
    rhs: str
    tid: str | None = None


class PhiModel(BaseModel):
    lhs: str
    values: list[tuple[str, str]] = Field(..., min_length=1)
    tid: str | None = None


class JmpModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kind: Literal["goto", "call", "ret", "int"]
    cond: str = "1:1"
    target: LabelModel | None = None
    return_: LabelModel | None = Field(default=None, alias="return")
    number: int = 0
    tid: str | None = None


class ArgModel(BaseModel):
    var: str
    intent: ArgIntent = ArgIntent.IN


class BlkModel(BaseModel):
    tid: str
    phis: list[PhiModel] = Field(default_factory=list)
    defs: list[DefModel] = Field(default_factory=list)
    jmps: list[JmpModel] = Field(default_factory=list)


class SubModel(BaseModel):
    name: str = Field(..., min_length=1)
    tid: str | None = None
    addr: int | None = None
    vars: dict[str, int] = Field(default_factory=dict)
    args: list[ArgModel] = Field(default_factory=list)
    blks: list[BlkModel] = Field(default_factory=list)

    @field_validator("addr", mode="before")
    @classmethod
    def _parse_addr(cls, value: Any) -> Any:
        if isinstance(value, str):
            return int(value, 0)
        return value


class ProgramModel(BaseModel):
    arch: str = "x86_64"
    subs: list[SubModel] = Field(default_factory=list)


# ── S-expressions ─────────────────────────────────────────────────────

_BINOPS = {op.value: op for op in BinOpKind}
_UNOPS = {"neg": UnOpKind.NEG, "~": UnOpKind.NOT}
_ARITY = {
    "load": 4,
    "store": 5,
    "cast": 3,
    "ite": 3,
    "extract": 3,
    "concat": 2,
    "unknown": 2,
    "let": 3,
}

Sexp = Any  # list | Symbol | int


def _show(sexp: Sexp) -> str:
    return sexpdata.dumps(sexp)


class ExpReader:
    """Builds IR from one parsed s-expression, dispatching on the head symbol."""

    def __init__(self, text: str, scope: dict[str, Var]) -> None:
        self.text = text
        self.scope = dict(scope)

    def read(self) -> Exp:
        try:
            sexp = sexpdata.loads(self.text, nil=None, true=None, false=None)
        except Exception as exc:
            raise ProgramFormatError(f"Cannot parse expression {self.text!r}: {exc}") from exc
        return self._exp(sexp)

    # ── Atom helpers ──────────────────────────────────────────────────

    def _fail(self, msg: str) -> NoReturn:
        raise ProgramFormatError(f"Cannot parse expression {self.text!r}: {msg}")

    def _symbol(self, sexp: Sexp) -> str:
        if isinstance(sexp, Symbol):
            return sexp.value()
        self._fail(f"expected a symbol, got {_show(sexp)}")

    def _int(self, sexp: Sexp) -> int:
        if isinstance(sexp, int) and not isinstance(sexp, bool):
            return sexp
        if isinstance(sexp, Symbol):
            try:
                return int(sexp.value(), 0)
            except ValueError:
                pass
        self._fail(f"expected an integer, got {_show(sexp)}")

    def _typed_name(self, sexp: Sexp) -> Var:
        tok = self._symbol(sexp)
        name, _, width = tok.partition(":")
        if not width.isdigit():
            self._fail(f"expected name:width, got {tok!r}")
        return Var(name, Imm(int(width)))

    def _endian(self, sexp: Sexp) -> Endian:
        tok = self._symbol(sexp)
        try:
            return Endian(tok)
        except ValueError:
            self._fail(f"expected le or be, got {tok!r}")

    def _atom(self, tok: str) -> Exp:
        value, sep, width = tok.partition(":")
        if sep:
            try:
                return Int(int(value, 0), int(width))
            except ValueError:
                self._fail(f"bad literal {tok!r}")
        if tok in self.scope:
            return self.scope[tok]
        self._fail(f"unknown variable {tok!r}")

    # ── Forms ─────────────────────────────────────────────────────────

    def _exp(self, sexp: Sexp) -> Exp:
        if isinstance(sexp, Symbol):
            return self._atom(sexp.value())
        if not isinstance(sexp, list) or not sexp:
            self._fail(f"expected an expression, got {_show(sexp)}")

        head = self._symbol(sexp[0])
        args = sexp[1:]
        if head in _BINOPS:
            arity = 2
        elif head in _UNOPS:
            arity = 1
        elif head in _ARITY:
            arity = _ARITY[head]
        else:
            self._fail(f"unknown operator {head!r}")
        if len(args) != arity:
            self._fail(f"{head} takes {arity} operand(s), got {len(args)}")

        if head in _BINOPS:
            return BinOp(_BINOPS[head], self._exp(args[0]), self._exp(args[1]))
        if head in _UNOPS:
            return UnOp(_UNOPS[head], self._exp(args[0]))
        if head == "load":
            mem, addr, endian, size = args
            return Load(self._exp(mem), self._exp(addr), self._endian(endian), self._int(size))
        if head == "store":
            mem, addr, value, endian, size = args
            return Store(
                self._exp(mem), self._exp(addr), self._exp(value),
                self._endian(endian), self._int(size),
            )
        if head == "cast":
            kind = self._symbol(args[0])
            if kind not in {k.value for k in CastKind}:
                self._fail(f"unknown cast {kind!r}")
            return Cast(CastKind(kind), self._int(args[1]), self._exp(args[2]))
        if head == "ite":
            return Ite(self._exp(args[0]), self._exp(args[1]), self._exp(args[2]))
        if head == "extract":
            return Extract(self._int(args[0]), self._int(args[1]), self._exp(args[2]))
        if head == "concat":
            return Concat(self._exp(args[0]), self._exp(args[1]))
        if head == "unknown":
            return Unknown(self._symbol(args[0]), Imm(self._int(args[1])))
        return self._let(*args)

    def _let(self, name: Sexp, value: Sexp, body: Sexp) -> Let:
        var = self._typed_name(name)
        bound = self._exp(value)
        outer = self.scope.get(var.name)
        self.scope[var.name] = var
        try:
            inner = self._exp(body)
        finally:
            if outer is None:
                del self.scope[var.name]
            else:
                self.scope[var.name] = outer
        return Let(var, bound, inner)


def parse_exp(text: str, scope: dict[str, Var]) -> Exp:
    return ExpReader(text, scope).read()


# ── Programs ──────────────────────────────────────────────────────────

def _scope(arch: Arch, sub: SubModel) -> dict[str, Var]:
    scope = {v.name: v for v in arch.registers}
    for name, width in sub.vars.items():
        if name in scope:
            raise ProgramFormatError(f"{sub.name}: variable {name} shadows a register")
        scope[name] = Var(name, Imm(width))
    return scope


def _lookup(scope: dict[str, Var], name: str, where: str) -> Var:
    try:
        return scope[name]
    except KeyError:
        raise ProgramFormatError(f"{where}: unknown variable {name!r}") from None


def _label(model: LabelModel | None, scope: dict[str, Var]) -> Label | None:
    if model is None:
        return None
    if isinstance(model, IndirectModel):
        return Indirect(parse_exp(model.exp, scope))
    return Direct(model)


def _jmp(model: JmpModel, arch: Arch, scope: dict[str, Var], where: str) -> Any:
    cond = parse_exp(model.cond, scope)
    tid = model.tid or fresh_tid()
    target = _label(model.target, scope)
    if model.kind == "goto":
        if target is None:
            raise ProgramFormatError(f"{where}: goto without a target")
        return Goto(target, cond, tid)
    if model.kind == "call":
        if target is None:
            raise ProgramFormatError(f"{where}: call without a target")
        return Call(target, _label(model.return_, scope), cond, tid)
    if model.kind == "ret":
        if target is None:
            target = Indirect(Unknown("return address", Imm(arch.addr_size)))
        return Ret(target, cond, tid)
    if not isinstance(model.return_, str):
        raise ProgramFormatError(f"{where}: interrupt needs a direct return block")
    return Interrupt(model.number, model.return_, cond, tid)


def _sub(model: SubModel, arch: Arch) -> Sub:
    scope = _scope(arch, model)
    blks = []
    for blk in model.blks:
        where = f"{model.name}/{blk.tid}"
        phis = tuple(
            Phi(
                _lookup(scope, p.lhs, where),
                tuple((pred, parse_exp(e, scope)) for pred, e in p.values),
                p.tid or fresh_tid(),
            )
            for p in blk.phis
        )
        defs = tuple(
            Def(_lookup(scope, d.lhs, where), parse_exp(d.rhs, scope), d.tid or fresh_tid())
            for d in blk.defs
        )
        jmps = tuple(_jmp(j, arch, scope, where) for j in blk.jmps)
        blks.append(Blk(blk.tid, phis, defs, jmps))
    args = tuple(Arg(_lookup(scope, a.var, model.name), a.intent) for a in model.args)
    return Sub(model.name, tuple(blks), args, model.tid or f"@{model.name}", model.addr)


def load_program(data: dict[str, Any] | str | ProgramModel) -> Program:
    """Decode a lifted program from JSON text, a dict, or a parsed model."""
    try:
        if isinstance(data, str):
            model = ProgramModel.model_validate(json.loads(data))
        elif isinstance(data, ProgramModel):
            model = data
        else:
            model = ProgramModel.model_validate(data)
    except (ValidationError, json.JSONDecodeError) as exc:
        raise ProgramFormatError(f"Malformed program: {exc}") from exc

    try:
        arch = arch_of_name(model.arch)
    except ConfigurationError as exc:
        raise ProgramFormatError(str(exc)) from exc
    subs = tuple(_sub(s, arch) for s in model.subs)
    logger.debug("load_program  |  arch=%s  |  %d sub(s)", arch.name, len(subs))
    return Program(subs, arch)

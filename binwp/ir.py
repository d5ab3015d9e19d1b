"""
binwp — Lifted program representation.

The lifter is an external collaborator: it hands us subroutines as
control-flow graphs of typed basic blocks, every expression tagged with
its operator kind and bit-width, plus architecture metadata.  This
module is the vocabulary of that hand-off.  Nothing here knows about Z3.
"""
from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Union

from binwp.errors import ConfigurationError, RegisterLookupError

_tid_counter = itertools.count(1)


def fresh_tid(prefix: str = "%") -> str:
    """Term identifier for elements built without one."""
    return f"{prefix}{next(_tid_counter):08x}"


# ── Types ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Imm:
    width: int

    def __str__(self) -> str:
        return f"u{self.width}"


@dataclass(frozen=True)
class Mem:
    addr_width: int
    value_width: int = 8

    def __str__(self) -> str:
        return f"mem[{self.addr_width}, u{self.value_width}]"


Type = Union[Imm, Mem]


# ── Expressions ───────────────────────────────────────────────────────

class BinOpKind(str, Enum):
    PLUS = "+"
    MINUS = "-"
    TIMES = "*"
    DIVIDE = "/"
    SDIVIDE = "s/"
    MOD = "%"
    SMOD = "s%"
    LSHIFT = "<<"
    RSHIFT = ">>"
    ARSHIFT = "a>>"
    AND = "&"
    OR = "|"
    XOR = "^"
    EQ = "="
    NEQ = "<>"
    LT = "<"
    LE = "<="
    SLT = "s<"
    SLE = "s<="


class UnOpKind(str, Enum):
    NEG = "-"
    NOT = "~"


class CastKind(str, Enum):
    UNSIGNED = "unsigned"
    SIGNED = "signed"
    HIGH = "high"
    LOW = "low"


class Endian(str, Enum):
    LITTLE = "le"
    BIG = "be"


@dataclass(frozen=True)
class Var:
    """A named, typed register or temporary.  Also a variable-reference expression."""
    name: str
    typ: Type

    @property
    def width(self) -> int:
        if isinstance(self.typ, Imm):
            return self.typ.width
        raise TypeError(f"{self.name} is a memory variable")

    @property
    def is_mem(self) -> bool:
        return isinstance(self.typ, Mem)

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Int:
    value: int
    width: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", self.value % (1 << self.width))

    def __str__(self) -> str:
        return f"{self.value:#x}:{self.width}"


@dataclass(frozen=True)
class Load:
    mem: Exp
    addr: Exp
    endian: Endian
    size: int

    def __str__(self) -> str:
        return f"{self.mem}[{self.addr}, {self.endian.value}]:{self.size}"


@dataclass(frozen=True)
class Store:
    mem: Exp
    addr: Exp
    value: Exp
    endian: Endian
    size: int

    def __str__(self) -> str:
        return f"{self.mem} with [{self.addr}, {self.endian.value}]:{self.size} <- {self.value}"


@dataclass(frozen=True)
class BinOp:
    op: BinOpKind
    lhs: Exp
    rhs: Exp

    def __str__(self) -> str:
        return f"({self.lhs} {self.op.value} {self.rhs})"


@dataclass(frozen=True)
class UnOp:
    op: UnOpKind
    arg: Exp

    def __str__(self) -> str:
        return f"{self.op.value}{self.arg}"


@dataclass(frozen=True)
class Cast:
    kind: CastKind
    width: int
    arg: Exp

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.width}[{self.arg}]"


@dataclass(frozen=True)
class Ite:
    cond: Exp
    yes: Exp
    no: Exp

    def __str__(self) -> str:
        return f"if {self.cond} then {self.yes} else {self.no}"


@dataclass(frozen=True)
class Extract:
    hi: int
    lo: int
    arg: Exp

    def __str__(self) -> str:
        return f"extract:{self.hi}:{self.lo}[{self.arg}]"


@dataclass(frozen=True)
class Concat:
    lhs: Exp
    rhs: Exp

    def __str__(self) -> str:
        return f"{self.lhs}.{self.rhs}"


@dataclass(frozen=True)
class Unknown:
    desc: str
    typ: Type

    def __str__(self) -> str:
        return f"unknown[{self.desc}]:{self.typ}"


@dataclass(frozen=True)
class Let:
    var: Var
    value: Exp
    body: Exp

    def __str__(self) -> str:
        return f"let {self.var} = {self.value} in {self.body}"


Exp = Union[Var, Int, Load, Store, BinOp, UnOp, Cast, Ite, Extract, Concat, Unknown, Let]

TRUE = Int(1, 1)
FALSE = Int(0, 1)


def children(exp: Exp) -> tuple[Exp, ...]:
    if isinstance(exp, Load):
        return (exp.mem, exp.addr)
    if isinstance(exp, Store):
        return (exp.mem, exp.addr, exp.value)
    if isinstance(exp, (BinOp, Concat)):
        return (exp.lhs, exp.rhs)
    if isinstance(exp, (UnOp, Cast, Extract)):
        return (exp.arg,)
    if isinstance(exp, Ite):
        return (exp.cond, exp.yes, exp.no)
    if isinstance(exp, Let):
        return (exp.value, exp.body)
    return ()


def walk(exp: Exp) -> Iterator[Exp]:
    """Pre-order traversal of *exp* and all of its sub-expressions."""
    stack = [exp]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(children(node)))


def free_vars(exp: Exp) -> set[Var]:
    if isinstance(exp, Var):
        return {exp}
    if isinstance(exp, Let):
        return free_vars(exp.value) | (free_vars(exp.body) - {exp.var})
    result: set[Var] = set()
    for child in children(exp):
        result |= free_vars(child)
    return result


def substitute_var(exp: Exp, var: Var, value: Exp) -> Exp:
    """Replace free occurrences of *var* in *exp* with *value*."""
    if isinstance(exp, Var):
        return value if exp == var else exp
    if isinstance(exp, (Int, Unknown)):
        return exp
    if isinstance(exp, Let):
        new_value = substitute_var(exp.value, var, value)
        if exp.var == var:
            return Let(exp.var, new_value, exp.body)
        return Let(exp.var, new_value, substitute_var(exp.body, var, value))
    if isinstance(exp, Load):
        return Load(substitute_var(exp.mem, var, value),
                    substitute_var(exp.addr, var, value), exp.endian, exp.size)
    if isinstance(exp, Store):
        return Store(substitute_var(exp.mem, var, value),
                     substitute_var(exp.addr, var, value),
                     substitute_var(exp.value, var, value), exp.endian, exp.size)
    if isinstance(exp, BinOp):
        return BinOp(exp.op, substitute_var(exp.lhs, var, value),
                     substitute_var(exp.rhs, var, value))
    if isinstance(exp, Concat):
        return Concat(substitute_var(exp.lhs, var, value),
                      substitute_var(exp.rhs, var, value))
    if isinstance(exp, UnOp):
        return UnOp(exp.op, substitute_var(exp.arg, var, value))
    if isinstance(exp, Cast):
        return Cast(exp.kind, exp.width, substitute_var(exp.arg, var, value))
    if isinstance(exp, Extract):
        return Extract(exp.hi, exp.lo, substitute_var(exp.arg, var, value))
    if isinstance(exp, Ite):
        return Ite(substitute_var(exp.cond, var, value),
                   substitute_var(exp.yes, var, value),
                   substitute_var(exp.no, var, value))
    raise TypeError(f"not an expression: {exp!r}")


def inline_lets(exp: Exp) -> Exp:
    """Eliminate every ``Let`` by substituting its bound value."""
    if isinstance(exp, Let):
        body = substitute_var(exp.body, exp.var, inline_lets(exp.value))
        return inline_lets(body)
    kids = children(exp)
    if not kids:
        return exp
    rebuilt = exp
    for kid in kids:
        flat = inline_lets(kid)
        if flat is not kid:
            rebuilt = _replace_child(rebuilt, kid, flat)
    return rebuilt


def _replace_child(exp: Exp, old: Exp, new: Exp) -> Exp:
    fields = {k: (new if v is old else v) for k, v in vars(exp).items()}
    return type(exp)(**fields)


# ── Labels and block elements ─────────────────────────────────────────

@dataclass(frozen=True)
class Direct:
    tid: str

    def __str__(self) -> str:
        return self.tid


@dataclass(frozen=True)
class Indirect:
    exp: Exp

    def __str__(self) -> str:
        return f"({self.exp})"


Label = Union[Direct, Indirect]


@dataclass(frozen=True)
class Def:
    lhs: Var
    rhs: Exp
    tid: str = field(default_factory=fresh_tid)

    def __str__(self) -> str:
        return f"{self.tid}: {self.lhs} := {self.rhs}"


@dataclass(frozen=True)
class Phi:
    lhs: Var
    values: tuple[tuple[str, Exp], ...]
    tid: str = field(default_factory=fresh_tid)

    def __str__(self) -> str:
        vals = ", ".join(f"[{e}, {t}]" for t, e in self.values)
        return f"{self.tid}: {self.lhs} := phi({vals})"


@dataclass(frozen=True)
class Goto:
    target: Label
    cond: Exp = TRUE
    tid: str = field(default_factory=fresh_tid)

    def __str__(self) -> str:
        return f"{self.tid}: when {self.cond} goto {self.target}"


@dataclass(frozen=True)
class Call:
    target: Label
    return_: Label | None = None
    cond: Exp = TRUE
    tid: str = field(default_factory=fresh_tid)

    def __str__(self) -> str:
        ret = f" with return {self.return_}" if self.return_ else " with noreturn"
        return f"{self.tid}: when {self.cond} call {self.target}{ret}"


@dataclass(frozen=True)
class Ret:
    target: Label
    cond: Exp = TRUE
    tid: str = field(default_factory=fresh_tid)

    def __str__(self) -> str:
        return f"{self.tid}: when {self.cond} return {self.target}"


@dataclass(frozen=True)
class Interrupt:
    number: int
    return_: str
    cond: Exp = TRUE
    tid: str = field(default_factory=fresh_tid)

    def __str__(self) -> str:
        return f"{self.tid}: when {self.cond} interrupt {self.number:#x} return {self.return_}"


Jmp = Union[Goto, Call, Ret, Interrupt]
Elt = Union[Def, Phi, Goto, Call, Ret, Interrupt]


@dataclass(frozen=True)
class Blk:
    tid: str
    phis: tuple[Phi, ...] = ()
    defs: tuple[Def, ...] = ()
    jmps: tuple[Jmp, ...] = ()

    @property
    def elts(self) -> tuple[Elt, ...]:
        return (*self.phis, *self.defs, *self.jmps)

    def __str__(self) -> str:
        body = "\n".join(f"  {e}" for e in self.elts)
        return f"{self.tid}:\n{body}"


class ArgIntent(str, Enum):
    IN = "in"
    OUT = "out"
    BOTH = "both"


@dataclass(frozen=True)
class Arg:
    var: Var
    intent: ArgIntent = ArgIntent.IN


@dataclass(frozen=True)
class Sub:
    name: str
    blks: tuple[Blk, ...] = ()
    args: tuple[Arg, ...] = ()
    tid: str = field(default_factory=lambda: fresh_tid("@"))
    addr: int | None = None

    def blk(self, tid: str) -> Blk | None:
        for b in self.blks:
            if b.tid == tid:
                return b
        return None

    def __str__(self) -> str:
        header = f"sub {self.name}({', '.join(str(a.var) for a in self.args)})"
        return header + "\n" + "\n".join(str(b) for b in self.blks)


def elt_exps(elt: Elt) -> list[Exp]:
    """Every expression an element reads."""
    if isinstance(elt, Def):
        return [elt.rhs]
    if isinstance(elt, Phi):
        return [e for _, e in elt.values]
    exps = [elt.cond]
    for label in (getattr(elt, "target", None), getattr(elt, "return_", None)):
        if isinstance(label, Indirect):
            exps.append(label.exp)
    return exps


def sub_vars(sub: Sub) -> set[Var]:
    """Every free variable read or written anywhere in *sub*."""
    result: set[Var] = {a.var for a in sub.args}
    for blk in sub.blks:
        for elt in blk.elts:
            if isinstance(elt, (Def, Phi)):
                result.add(elt.lhs)
            for exp in elt_exps(elt):
                result |= free_vars(exp)
    return result


# ── Architecture ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class Arch:
    name: str
    addr_size: int
    endian: Endian
    gprs: tuple[Var, ...]
    sp: Var
    mem: Var
    input_regs: tuple[Var, ...] = ()
    caller_saved: tuple[Var, ...] = ()
    callee_saved: tuple[Var, ...] = ()
    return_reg: Var | None = None
    flags: tuple[Var, ...] = ()
    pops_return_addr: bool = False

    @property
    def registers(self) -> tuple[Var, ...]:
        regs = list(self.gprs)
        for extra in (*self.flags, self.sp, self.mem):
            if extra not in regs:
                regs.append(extra)
        return tuple(regs)

    def reg(self, name: str) -> Var:
        for var in self.registers:
            if var.name == name:
                return var
        raise RegisterLookupError(
            f"Could not find {name} in the registers of {self.name}"
        )


@dataclass(frozen=True)
class Program:
    subs: tuple[Sub, ...]
    arch: Arch

    def find(self, name: str) -> Sub | None:
        for sub in self.subs:
            if sub.name == name:
                return sub
        return None


def _regs(names: str, width: int) -> tuple[Var, ...]:
    return tuple(Var(n, Imm(width)) for n in names.split())


def x86_64() -> Arch:
    gprs = _regs("RAX RBX RCX RDX RSI RDI RSP RBP R8 R9 R10 R11 R12 R13 R14 R15", 64)
    by_name = {v.name: v for v in gprs}
    pick = lambda names: tuple(by_name[n] for n in names.split())  # noqa: E731
    return Arch(
        name="x86_64",
        addr_size=64,
        endian=Endian.LITTLE,
        gprs=gprs,
        sp=by_name["RSP"],
        mem=Var("mem", Mem(64, 8)),
        input_regs=pick("RDI RSI RDX RCX R8 R9"),
        caller_saved=pick("RAX RCX RDX RSI RDI R8 R9 R10 R11"),
        callee_saved=pick("RBX RSP RBP R12 R13 R14 R15"),
        return_reg=by_name["RAX"],
        flags=_regs("CF PF AF ZF SF OF DF", 1),
        pops_return_addr=True,
    )


def x86() -> Arch:
    gprs = _regs("EAX EBX ECX EDX ESI EDI ESP EBP", 32)
    by_name = {v.name: v for v in gprs}
    pick = lambda names: tuple(by_name[n] for n in names.split())  # noqa: E731
    return Arch(
        name="x86",
        addr_size=32,
        endian=Endian.LITTLE,
        gprs=gprs,
        sp=by_name["ESP"],
        mem=Var("mem", Mem(32, 8)),
        input_regs=(),
        caller_saved=pick("EAX ECX EDX"),
        callee_saved=pick("EBX ESI EDI ESP EBP"),
        return_reg=by_name["EAX"],
        flags=_regs("CF PF AF ZF SF OF DF", 1),
        pops_return_addr=True,
    )


def arm() -> Arch:
    gprs = _regs("R0 R1 R2 R3 R4 R5 R6 R7 R8 R9 R10 R11 R12 SP LR", 32)
    by_name = {v.name: v for v in gprs}
    pick = lambda names: tuple(by_name[n] for n in names.split())  # noqa: E731
    return Arch(
        name="arm",
        addr_size=32,
        endian=Endian.LITTLE,
        gprs=gprs,
        sp=by_name["SP"],
        mem=Var("mem", Mem(32, 8)),
        input_regs=pick("R0 R1 R2 R3"),
        caller_saved=pick("R0 R1 R2 R3 R12"),
        callee_saved=pick("R4 R5 R6 R7 R8 R9 R10 R11 SP"),
        return_reg=by_name["R0"],
        flags=_regs("NF ZF CF VF", 1),
    )


ARCHES = {"x86_64": x86_64, "x86": x86, "arm": arm}


def arch_of_name(name: str) -> Arch:
    try:
        return ARCHES[name]()
    except KeyError:
        raise ConfigurationError(
            f"Unsupported architecture '{name}'. "
            f"Available architectures are: {sorted(ARCHES)}"
        ) from None

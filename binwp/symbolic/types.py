"""
binwp — Symbolic data types.

Hooks, fun/jmp/int spec shapes, injectable handles and soundness
weakenings.  Everything here is plain data so that the environment,
translator and visitor modules can import it without cycles.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Generic, TypeVar, Union, TYPE_CHECKING

import z3

if TYPE_CHECKING:
    from binwp.ir import Arch, Exp, Jmp, Sub
    from binwp.symbolic.constraint import Constr
    from binwp.symbolic.environment import Env

logger = logging.getLogger("binwp.symbolic.types")


# ── Side conditions ───────────────────────────────────────────────────

class Placement(str, Enum):
    """Where a hook is threaded relative to the expression that produced it."""
    BEFORE = "before"
    AFTER = "after"


@dataclass(frozen=True)
class Verify:
    """A fresh proof obligation."""
    term: z3.BoolRef
    name: str = "verify"
    placement: Placement = Placement.BEFORE


@dataclass(frozen=True)
class Assume:
    """A fact taken for granted."""
    term: z3.BoolRef
    name: str = "assume"
    placement: Placement = Placement.BEFORE


CondResult = Union[Verify, Assume, None]


@dataclass
class Hooks:
    """Assume/verify goals produced while translating one expression."""
    assume_before: list[Constr] = field(default_factory=list)
    verify_before: list[Constr] = field(default_factory=list)
    assume_after: list[Constr] = field(default_factory=list)
    verify_after: list[Constr] = field(default_factory=list)

    def extend(self, other: Hooks) -> None:
        self.assume_before.extend(other.assume_before)
        self.verify_before.extend(other.verify_before)
        self.assume_after.extend(other.assume_after)
        self.verify_after.extend(other.verify_after)

    def __bool__(self) -> bool:
        return bool(
            self.assume_before or self.verify_before
            or self.assume_after or self.verify_after
        )


# ── Policies ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Summary:
    """Abstract the call: ``fn(env, post, call_site_tid) -> precondition``."""
    fn: Callable[[Env, Constr, str], Constr]


@dataclass(frozen=True)
class Inline:
    """Expand the callee's body at the call site."""


Spec = Union[Summary, Inline]


@dataclass(frozen=True)
class FunSpec:
    name: str
    spec: Spec


FunSpecSelector = Callable[["Sub", "Arch"], Union[FunSpec, None]]
JmpSpec = Callable[["Env", "Constr", str, "Jmp"], Union["Constr", None]]
IntSpec = Callable[["Env", "Constr", int], "Constr"]
ExpCond = Callable[["Env", "Exp"], CondResult]
LoopHandler = Callable[["Env", "Constr", str, tuple], "Constr"]


# ── Handles ───────────────────────────────────────────────────────────

T = TypeVar("T")


class Handle(Generic[T]):
    """A settable indirection cell.

    Lets a policy installed at construction time call back into a
    function that only exists once the visitor is attached.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._target: T | None = None

    def set(self, target: T) -> None:
        self._target = target

    @property
    def is_set(self) -> bool:
        return self._target is not None

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        if self._target is None:
            raise RuntimeError(f"handle '{self.name}' used before it was set")
        return self._target(*args, **kwargs)  # type: ignore[operator]


# ── Soundness weakenings ──────────────────────────────────────────────

class WeakeningKind(str, Enum):
    INDIRECT_JUMP = "indirect-jump"
    INDIRECT_CALL = "indirect-call"
    UNKNOWN_CALLEE = "unknown-callee"
    LOOP_BOUND = "loop-bound"
    PHI = "phi"
    RECURSIVE_INLINE = "recursive-inline"


@dataclass(frozen=True)
class Weakening:
    """A place where the precondition is weaker than exact."""
    kind: WeakeningKind
    tid: str
    detail: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "tid": self.tid, "detail": self.detail}

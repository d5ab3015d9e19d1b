"""
binwp — Recognized analysis options.

Validation happens in two steps: field validators reject unsupported
values as soon as the options are parsed, and ``validate_for`` checks
the combinations that depend on how many programs are analyzed.  Both
surface as ``ConfigurationError`` before any analysis starts.
"""
from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from binwp.config import NUM_UNROLL, STACK_BASE, STACK_SIZE
from binwp.errors import ConfigurationError
from binwp.symbolic.specs import FUN_SPEC_NAMES

logger = logging.getLogger("binwp.verifier.options")

SHOW_VALUES = ("bir", "refuted-goals", "paths", "precond-internal", "precond-smtlib")
DEBUG_VALUES = ("z3-solver-stats", "z3-verbose", "constraint-stats", "eval-constraint-stats")


class UserFuncSpec(BaseModel):
    """Contract for one subroutine, in SMT-LIB syntax."""
    name: str = Field(..., min_length=1)
    pre: str = "true"
    post: str = "true"


class Options(BaseModel):
    model_config = ConfigDict(extra="forbid")

    func: str = ""
    precond: str = ""
    postcond: str = ""
    trip_asserts: bool = False
    check_null_derefs: bool = False
    check_invalid_derefs: bool = False
    check_div_by_zero: bool = False
    compare_func_calls: bool = False
    compare_post_reg_values: list[str] = Field(default_factory=list)
    pointer_reg_list: list[str] = Field(default_factory=list)
    inline: str | None = Field(
        default=None,
        description="Regex over subroutine names or hex addresses to inline.",
    )
    num_unroll: int = Field(default=NUM_UNROLL, ge=0)
    use_fun_input_regs: bool = True
    mem_offset: int | None = Field(
        default=None,
        description="Original reads at a match modified reads at a + mem_offset.",
    )
    rewrite_addresses: bool = Field(
        default=False,
        description="Match renamed functions of the modified program by address.",
    )
    stack_base: int | None = None
    stack_size: int | None = Field(default=None, gt=0)
    heap_range: tuple[int, int] | None = None
    show: list[str] = Field(default_factory=list)
    debug: list[str] = Field(default_factory=list)
    func_name_map: dict[str, str] = Field(default_factory=dict)
    user_func_spec: list[UserFuncSpec] = Field(default_factory=list)
    fun_specs: list[str] = Field(default_factory=list)

    @field_validator("show")
    @classmethod
    def _check_show(cls, value: list[str]) -> list[str]:
        return _check_choices("show", value, SHOW_VALUES)

    @field_validator("debug")
    @classmethod
    def _check_debug(cls, value: list[str]) -> list[str]:
        return _check_choices("debug", value, DEBUG_VALUES)

    @field_validator("fun_specs")
    @classmethod
    def _check_fun_specs(cls, value: list[str]) -> list[str]:
        return _check_choices("fun_specs", value, FUN_SPEC_NAMES)

    @field_validator("heap_range")
    @classmethod
    def _check_heap_range(cls, value: tuple[int, int] | None) -> tuple[int, int] | None:
        if value is not None and value[0] > value[1]:
            raise ValueError(f"heap_range lower bound {value[0]:#x} exceeds upper bound {value[1]:#x}")
        return value

    def validate_for(self, num_programs: int) -> None:
        """Reject option combinations that make no sense for this run."""
        if num_programs not in (1, 2):
            raise ConfigurationError(
                f"Expected one or two programs, got {num_programs}."
            )
        if not self.func:
            raise ConfigurationError("Function is not provided for analysis.")
        if self.mem_offset is not None and self.rewrite_addresses:
            raise ConfigurationError(
                "mem_offset and rewrite_addresses cannot be used together."
            )
        if num_programs == 1:
            comparative = {
                "check_invalid_derefs": self.check_invalid_derefs,
                "compare_func_calls": self.compare_func_calls,
                "compare_post_reg_values": bool(self.compare_post_reg_values),
                "mem_offset": self.mem_offset is not None,
                "rewrite_addresses": self.rewrite_addresses,
                "func_name_map": bool(self.func_name_map),
            }
            used = [name for name, on in comparative.items() if on]
            if used:
                raise ConfigurationError(
                    f"{', '.join(used)} only apply when comparing two programs."
                )

    @property
    def stack_range(self) -> tuple[int, int] | None:
        if self.stack_base is None and self.stack_size is None:
            return None
        base = STACK_BASE if self.stack_base is None else self.stack_base
        size = STACK_SIZE if self.stack_size is None else self.stack_size
        return (base - size, base)


def _check_choices(field: str, values: list[str], allowed: tuple[str, ...]) -> list[str]:
    unknown = [v for v in values if v not in allowed]
    if unknown:
        raise ValueError(
            f"unsupported {field} value(s) {unknown}; expected any of {list(allowed)}"
        )
    return values


def parse_options(data: dict[str, Any] | Options | None) -> Options:
    if isinstance(data, Options):
        return data
    try:
        return Options.model_validate(data or {})
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid options: {exc}") from exc

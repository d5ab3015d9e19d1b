"""
binwp — Literal SMT-LIB2 formulas.

Pre/postconditions arrive in the solver's own textual syntax.  Names in
the text are resolved against a declarations map built from an Env's
bindings, so ``RAX`` or ``init_RAX`` denote the terms the analysis is
actually using.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import z3

from binwp.config import INIT_PREFIX
from binwp.errors import ConfigurationError
from binwp.symbolic.constraint import Constr, mk_goal

if TYPE_CHECKING:
    from binwp.symbolic.environment import Env

logger = logging.getLogger("binwp.symbolic.smtlib")


def _as_assertion(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("(assert"):
        return stripped
    return f"(assert {stripped})"


def mk_smtlib2(text: str, decls: dict[str, z3.AstRef], ctx: z3.Context) -> Constr:
    """Parse *text* into a single goal.

    Bare formulas are wrapped in ``(assert ...)``; several assertions are
    conjoined.
    """
    try:
        parsed = z3.parse_smt2_string(_as_assertion(text), decls=decls, ctx=ctx)
    except z3.Z3Exception as exc:
        raise ConfigurationError(f"Could not parse SMT-LIB formula {text!r}: {exc}") from exc
    terms = list(parsed)
    logger.debug("mk_smtlib2  |  %d assertion(s)  |  %d decl(s)", len(terms), len(decls))
    if not terms:
        return mk_goal("smtlib", z3.BoolVal(True, ctx))
    formula = terms[0] if len(terms) == 1 else z3.And(*terms)
    return mk_goal(f"smtlib: {text.strip()}", formula)


def env_decls(env: Env, suffix: str = "") -> dict[str, z3.AstRef]:
    """``<reg><suffix>`` and ``init_<reg><suffix>`` bound to *env*'s terms."""
    decls: dict[str, z3.AstRef] = {}
    for var, term in env.var_map.items():
        decls[f"{var.name}{suffix}"] = term
    for var, term in env.init_vars.items():
        decls[f"{INIT_PREFIX}{var.name}{suffix}"] = term
    return decls


def mk_smtlib2_single(env: Env, text: str) -> Constr:
    return mk_smtlib2(text, env_decls(env), env.ctx)

"""
binwp — Error taxonomy.

Configuration problems stop an analysis before it starts; translation
problems abort the traversal that hit them.  Soundness weakenings are
NOT errors and never appear here (see ``symbolic.types.Weakening``).
"""
from __future__ import annotations


class WPError(Exception):
    """Base class for every error raised by binwp."""


# ── Configuration ─────────────────────────────────────────────────────

class ConfigurationError(WPError):
    """Missing target, mutually exclusive flags, unsupported option value."""


class ProgramFormatError(ConfigurationError):
    """The lifted program handed to us is malformed."""


# ── Translation ───────────────────────────────────────────────────────

class TranslationError(WPError):
    """Raised when IR → Z3 translation hits something it cannot express."""


class UnboundVariable(TranslationError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Unbound variable: '{name}'")
        self.name = name


class WidthMismatch(TranslationError):
    """Operands of an operator disagree on their bit-width."""


class UnsupportedExpression(TranslationError):
    """Expression shape with no Z3 counterpart."""


# ── Structural ────────────────────────────────────────────────────────

class RegisterLookupError(WPError):
    """An architecture register name does not exist."""


class MissingEntryError(WPError):
    """A subroutine has no entry block."""

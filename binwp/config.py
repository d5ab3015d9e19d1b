"""
binwp — Shared configuration constants.

All tunable parameters live here so that every module imports from
one canonical source.  Environment variables (or a ``.env`` file next
to the working directory) override the defaults.
"""
from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()

# ── Loop bounds ───────────────────────────────────────────────────────
NUM_UNROLL: int = int(os.getenv("BINWP_NUM_UNROLL", "5"))

# ── Memory regions ────────────────────────────────────────────────────
# Stack grows down from STACK_BASE; the region is [base - size, base].
STACK_BASE: int = int(os.getenv("BINWP_STACK_BASE", "0x00007fffffffffff"), 0)
STACK_SIZE: int = int(os.getenv("BINWP_STACK_SIZE", "0xffff"), 0)
STACK_RANGE: tuple[int, int] = (STACK_BASE - STACK_SIZE, STACK_BASE)
HEAP_RANGE: tuple[int, int] = (
    int(os.getenv("BINWP_HEAP_MIN", "0x0"), 0),
    int(os.getenv("BINWP_HEAP_MAX", "0x00000000ffffffff"), 0),
)

# ── Solver ────────────────────────────────────────────────────────────
Z3_TIMEOUT_MS: int = int(os.getenv("BINWP_Z3_TIMEOUT_MS", "30000"))

# ── Naming ────────────────────────────────────────────────────────────
INIT_PREFIX: str = "init_"
CALLED_PREFIX: str = "called_"
MOD_NAMESPACE: str = "mod"

ENGINE_VERSION: str = "binwp-0.3.0"

"""
binwp — main.py
FastAPI server exposing weakest-precondition checks.

Endpoints:
  POST /check   one program (single analysis) or two (original, modified)
  GET  /health  liveness and engine bounds
"""

from __future__ import annotations

import logging
import time
from typing import Any

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from binwp.config import ENGINE_VERSION, NUM_UNROLL, Z3_TIMEOUT_MS
from binwp.errors import ConfigurationError
from binwp.loader import ProgramModel, load_program
from binwp.verifier import run_analysis
from binwp.verifier.options import Options

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
)
logger = logging.getLogger("binwp")

# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------
app = FastAPI(
    title="binwp — Weakest-Precondition Checker",
    version=ENGINE_VERSION,
    description=(
        "Proves properties of a lifted binary subroutine, or relational "
        "properties between two versions of it, by weakest-precondition "
        "computation and Z3."
    ),
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Request / Response schemas
# ---------------------------------------------------------------------------

class CheckRequest(BaseModel):
    """One program, or the original and modified versions of a program."""
    programs: list[ProgramModel] = Field(..., min_length=1, max_length=2)
    options: Options = Field(default_factory=Options)


class CheckResponse(BaseModel):
    status: str = Field(
        ...,
        description=(
            "'UNSAT' — precondition proved on every explored path. "
            "'SAT' — counterexample found. "
            "'UNKNOWN' — solver gave up; nothing was proved. "
            "'ERROR' — the analysis could not complete."
        ),
    )
    verdict: str | None = None
    message: str
    counterexample: dict[str, str] | None = None
    differences: dict[str, dict[str, str]] | None = None
    refuted_goals: list[dict[str, Any]] = Field(default_factory=list)
    weakenings: list[dict[str, str]] = Field(default_factory=list)
    stats: dict[str, Any] = Field(default_factory=dict)
    precond_internal: str | None = None
    precond_smtlib: str | None = None
    bir: list[str] | None = None
    elapsed_ms: int = 0


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.post("/check", response_model=CheckResponse)
def check(req: CheckRequest) -> CheckResponse:
    t0 = time.perf_counter()
    logger.info(
        "━━━ /check request (%d program(s), func=%s) ━━━",
        len(req.programs), req.options.func,
    )
    try:
        programs = [load_program(p) for p in req.programs]
        result = run_analysis(programs, req.options)
    except ConfigurationError as exc:
        logger.warning("Rejected request: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    elapsed = int((time.perf_counter() - t0) * 1000)
    logger.info("━━━ Done in %d ms — status=%s ━━━", elapsed, result["status"])
    return CheckResponse(**result, elapsed_ms=elapsed)


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "engine": ENGINE_VERSION,
        "bounds": {
            "num_unroll": NUM_UNROLL,
            "z3_timeout_ms": Z3_TIMEOUT_MS,
        },
    }

"""
binwp — Analysis driver.

1. Validate the options against the number of programs.
2. Build one Env per program from the options (specs, side conditions,
   memory regions, unroll bound).
3. Single program: bind and snapshot every variable, visit the target
   subroutine under the requested postcondition.
   Two programs: pick comparators from the options and compose the two
   traversals with ``compare_subs``.
4. Check the precondition.  UNSAT → proved.  SAT → counterexample.

Translation failures become an ``ERROR`` result; configuration problems
propagate as ``ConfigurationError`` so callers can reject the request.
"""
from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Sequence

import z3

from binwp.config import MOD_NAMESPACE, Z3_TIMEOUT_MS
from binwp.errors import ConfigurationError, MissingEntryError, RegisterLookupError, TranslationError
from binwp.ir import Program, Sub
from binwp.symbolic.constraint import (
    Constr,
    Verdict,
    check,
    get_refuted_goals,
    mk_clause,
    model_diff,
    model_values,
    pp,
    stats,
    to_z3,
    trivial,
)
from binwp.symbolic.environment import Env, mk_ctx, mk_var_gen
from binwp.symbolic.smtlib import mk_smtlib2_single
from binwp.symbolic.specs import (
    DEFAULT_SPECS,
    mk_env,
    mem_read_offsets,
    non_null_load_assert,
    non_null_load_vc,
    non_null_store_assert,
    non_null_store_vc,
    non_zero_divisor_vc,
    spec_of_name,
    spec_verifier_error,
    user_func_spec,
    valid_load_assert,
    valid_load_vc,
    valid_store_assert,
    valid_store_vc,
)
from binwp.symbolic.types import ExpCond, FunSpecSelector
from binwp.symbolic.visitor import (
    construct_pointer_constraint,
    get_output_vars,
    get_vars,
    init_vars,
    set_sp_range,
    visit_sub,
)
from binwp.verifier.compare import (
    compare_subs,
    compare_subs_empty_post,
    compare_subs_eq,
    compare_subs_fun,
    compare_subs_mem_eq,
    compare_subs_pointers,
    compare_subs_smtlib,
    compare_subs_sp,
    map_fun_names,
)
from binwp.verifier.options import Options, parse_options

logger = logging.getLogger("binwp.verifier.analysis")


@dataclass
class Analysis:
    pre: Constr
    orig: tuple[Sub, Env]
    modif: tuple[Sub, Env] | None = None

    @property
    def ctx(self) -> z3.Context:
        return self.orig[1].ctx


# ── Public API ────────────────────────────────────────────────────────

def run_analysis(
    programs: Sequence[Program],
    options: Options | dict[str, Any] | None = None,
) -> dict[str, Any]:
    options = parse_options(options)
    logger.info(
        "run_analysis  |  %d program(s)  |  func=%s",
        len(programs), options.func,
    )
    try:
        analysis = analyze(programs, options)
        return check_pre(analysis, options)
    except (TranslationError, RegisterLookupError, MissingEntryError) as exc:
        return _error(f"{type(exc).__name__}: {exc}")


def analyze(programs: Sequence[Program], options: Options) -> Analysis:
    options.validate_for(len(programs))
    if len(programs) == 1:
        return run_single(programs[0], options)
    return run_comparative(programs[0], programs[1], options)


def find_func(subs: Sequence[Sub], name: str) -> Sub:
    for sub in subs:
        if sub.name == name:
            return sub
    raise ConfigurationError(f"Function {name} not found in the program.")


# ── Env construction ──────────────────────────────────────────────────

def _inline_targets(program: Program, pattern: str | None) -> list[Sub]:
    if not pattern:
        return []
    try:
        regex = re.compile(pattern)
    except re.error as exc:
        raise ConfigurationError(f"Invalid inline pattern {pattern!r}: {exc}") from exc
    chosen = []
    for sub in program.subs:
        addr = f"{sub.addr:#x}" if sub.addr is not None else None
        if regex.fullmatch(sub.name) or (addr and regex.fullmatch(addr)):
            chosen.append(sub)
    logger.debug("inline  |  %s", [s.name for s in chosen])
    return chosen


def _fun_specs(options: Options) -> list[FunSpecSelector]:
    specs: list[FunSpecSelector] = [
        user_func_spec(u.name, u.pre, u.post) for u in options.user_func_spec
    ]
    if options.trip_asserts:
        specs.append(spec_verifier_error)
    if options.fun_specs:
        specs.extend(spec_of_name(name) for name in options.fun_specs)
    else:
        specs.extend(DEFAULT_SPECS)
    return specs


def _exp_conds(options: Options, role: str) -> list[ExpCond]:
    """Side conditions; the original of a comparison assumes what the modified must verify."""
    assume = role == "orig"
    conds: list[ExpCond] = []
    if options.check_null_derefs:
        conds += [non_null_load_assert, non_null_store_assert] if assume else [non_null_load_vc, non_null_store_vc]
    if options.check_invalid_derefs:
        conds += [valid_load_assert, valid_store_assert] if assume else [valid_load_vc, valid_store_vc]
    if options.check_div_by_zero and not assume:
        conds.append(non_zero_divisor_vc)
    return conds


def _mk_env(
    ctx: z3.Context,
    program: Program,
    options: Options,
    role: str,
    func_name_map: dict[str, str] | None = None,
) -> Env:
    freshen = role == "mod"
    extra: dict[str, Any] = {}
    if options.stack_range is not None:
        extra["stack_range"] = options.stack_range
    if options.heap_range is not None:
        extra["heap_range"] = options.heap_range
    return mk_env(
        ctx,
        mk_var_gen(MOD_NAMESPACE if freshen else None),
        subs=program.subs,
        to_inline=_inline_targets(program, options.inline),
        specs=_fun_specs(options),
        exp_conds=_exp_conds(options, role),
        num_loop_unroll=options.num_unroll,
        arch=program.arch,
        freshen_vars=freshen,
        use_fun_input_regs=options.use_fun_input_regs,
        func_name_map=func_name_map,
        **extra,
    )


# ── Single program ────────────────────────────────────────────────────

def run_single(program: Program, options: Options) -> Analysis:
    ctx = mk_ctx()
    sub = find_func(program.subs, options.func)
    env = _mk_env(ctx, program, options, "single")

    hyps = init_vars(get_vars(env, sub), env)
    hyps.append(set_sp_range(env))
    if options.pointer_reg_list:
        regs = [env.arch.reg(name) for name in options.pointer_reg_list]
        hyps.append(construct_pointer_constraint(regs, env, None, None))
    if options.precond:
        hyps.append(mk_smtlib2_single(env, options.precond))

    post = mk_smtlib2_single(env, options.postcond) if options.postcond else trivial(ctx)
    pre = visit_sub(env, post, sub)
    return Analysis(mk_clause(hyps, [pre]), (sub, env))


# ── Two programs ──────────────────────────────────────────────────────

def run_comparative(original: Program, modified: Program, options: Options) -> Analysis:
    ctx = mk_ctx()
    sub1 = find_func(original.subs, options.func)
    sub2 = find_func(modified.subs, options.func)

    name_map = dict(options.func_name_map)
    if options.rewrite_addresses:
        name_map = {**map_fun_names(original.subs, modified.subs), **name_map}

    env1 = _mk_env(ctx, original, options, "orig")
    env2 = _mk_env(ctx, modified, options, "mod", func_name_map=name_map)
    if options.mem_offset is not None:
        offset = options.mem_offset
        width = original.arch.addr_size
        env1.exp_conds.append(
            mem_read_offsets(env2, lambda a: a + z3.BitVecVal(offset, width, ctx))
        )

    pairs = [compare_subs_sp()]
    if options.mem_offset is None:
        pairs.append(compare_subs_mem_eq())
    relational = False
    if options.compare_func_calls:
        pairs.append(compare_subs_fun())
        relational = True
    if options.compare_post_reg_values:
        shared = get_vars(env1, sub1) & get_vars(env2, sub2)
        outputs = get_output_vars(env1, sub1, options.compare_post_reg_values)
        missing = set(options.compare_post_reg_values) - {v.name for v in outputs}
        if missing:
            raise ConfigurationError(f"Unknown output register(s): {sorted(missing)}")
        pairs.append(compare_subs_eq(shared, outputs))
        relational = True
    if options.postcond or options.precond:
        pairs.append(compare_subs_smtlib(options.postcond or "true", options.precond or "true"))
        relational = True
    if options.pointer_reg_list:
        pairs.append(compare_subs_pointers(options.pointer_reg_list))
    if not relational:
        pairs.append(compare_subs_empty_post())

    postconds = [p for p, _ in pairs]
    hyps = [h for _, h in pairs]
    pre, env1, env2 = compare_subs(postconds, hyps, (sub1, env1), (sub2, env2))
    return Analysis(pre, (sub1, env1), (sub2, env2))


# ── Checking and reporting ────────────────────────────────────────────

def _named_terms(env: Env, suffix: str = "") -> dict[str, z3.ExprRef]:
    terms: dict[str, z3.ExprRef] = {}
    for var, term in sorted(env.init_vars.items(), key=lambda kv: kv[0].name):
        terms[f"init_{var.name}{suffix}"] = term
    for var, term in sorted(env.var_map.items(), key=lambda kv: kv[0].name):
        terms[f"{var.name}{suffix}"] = term
    return terms


def _weakenings(analysis: Analysis) -> list[dict[str, str]]:
    seen = []
    envs = [analysis.orig[1]] + ([analysis.modif[1]] if analysis.modif else [])
    for env in envs:
        for w in env.weakenings:
            entry = w.to_dict()
            if entry not in seen:
                seen.append(entry)
    return seen


def _goal_report(goal: dict[str, Any], options: Options) -> dict[str, Any]:
    """Goal text with ``refuted-goals``, the taken jumps with ``paths``."""
    if "refuted-goals" not in options.show:
        goal.pop("goal")
    if "paths" not in options.show:
        goal.pop("path")
    return goal


def check_pre(analysis: Analysis, options: Options) -> dict[str, Any]:
    ctx = analysis.ctx
    solver = z3.Solver(ctx=ctx)
    solver.set("timeout", Z3_TIMEOUT_MS)
    if "z3-verbose" in options.debug:
        z3.set_param(verbose=10)

    report_stats: dict[str, Any] = {}
    if "constraint-stats" in options.debug:
        report_stats["constraint"] = stats(analysis.pre)
    if "eval-constraint-stats" in options.debug:
        t0 = time.perf_counter()
        to_z3(analysis.pre, ctx)
        report_stats["eval_ms"] = int((time.perf_counter() - t0) * 1000)

    t0 = time.perf_counter()
    result = check(solver, ctx, analysis.pre)
    report_stats["solve_ms"] = int((time.perf_counter() - t0) * 1000)
    if "z3-solver-stats" in options.debug:
        st = solver.statistics()
        report_stats["z3"] = {k: st.get_key_value(k) for k in st.keys()}

    out: dict[str, Any] = {
        "verdict": result.verdict.value,
        "counterexample": None,
        "differences": None,
        "refuted_goals": [],
        "weakenings": _weakenings(analysis),
        "stats": report_stats,
    }

    if result.verdict is Verdict.PROVED:
        logger.info("Z3: UNSAT — precondition proved.")
        out["status"] = "UNSAT"
        out["message"] = (
            "binwp: Proof Successful (UNSAT). The postcondition holds on every "
            f"path explored (loops unrolled up to {options.num_unroll} times)."
        )
        if out["weakenings"]:
            out["message"] += f" {len(out['weakenings'])} soundness weakening(s) apply."
    elif result.verdict is Verdict.REFUTED:
        model = result.model
        orig_env = analysis.orig[1]
        if analysis.modif is None:
            out["counterexample"] = model_values(model, _named_terms(orig_env))
        else:
            mod_env = analysis.modif[1]
            out["counterexample"] = {
                **model_values(model, _named_terms(orig_env, "_orig")),
                **model_values(model, _named_terms(mod_env, "_mod")),
            }
            out["differences"] = model_diff(
                model, _named_terms(orig_env), _named_terms(mod_env),
            )
        out["refuted_goals"] = [
            _goal_report(g.to_dict(), options)
            for g in get_refuted_goals(analysis.pre, model, ctx)
        ]
        logger.warning("Z3: SAT — counterexample: %s", out["counterexample"])
        out["status"] = "SAT"
        out["message"] = (
            "binwp: Verification Failed (SAT). A counterexample was found "
            "that violates the postcondition."
        )
    else:
        logger.warning("Z3: UNKNOWN (%s)", result.reason)
        out["status"] = "UNKNOWN"
        out["message"] = f"binwp: Inconclusive (UNKNOWN): {result.reason}."

    if "precond-internal" in options.show:
        out["precond_internal"] = pp(analysis.pre)
    if "precond-smtlib" in options.show:
        out["precond_smtlib"] = to_z3(analysis.pre, ctx).sexpr()
    if "bir" in options.show:
        subs = [analysis.orig[0]] + ([analysis.modif[0]] if analysis.modif else [])
        out["bir"] = [str(s) for s in subs]
    return out


def _error(msg: str) -> dict[str, Any]:
    logger.error("Analysis error: %s", msg)
    return {
        "status": "ERROR",
        "verdict": None,
        "message": f"binwp: {msg}",
        "counterexample": None,
        "differences": None,
        "refuted_goals": [],
        "weakenings": [],
        "stats": {},
    }

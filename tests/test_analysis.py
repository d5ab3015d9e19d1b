"""End-to-end analyses, labelled and checked by expected status.

UNSAT means the property was proved, SAT that a counterexample exists.
"""
from __future__ import annotations

import copy

import pytest

from binwp import load_program, run_analysis
from binwp.errors import ConfigurationError

INCR_POST = "(= R0 (bvadd init_R0 #x00000001))"


def _with_defs(program: dict, *defs: dict) -> dict:
    data = copy.deepcopy(program)
    data["subs"][0]["blks"][0]["defs"] = list(defs)
    return data


# ── Single program ────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "label, delta, expected",
    [
        ("T01 increment satisfies its contract", 1, "UNSAT"),
        ("T02 mutant violates it", 2, "SAT"),
    ],
)
def test_single_postcondition(incr_json, label, delta, expected):
    result = run_analysis([load_program(incr_json(delta))], {"func": "f", "postcond": INCR_POST})
    assert result["status"] == expected, label
    if expected == "SAT":
        cex = result["counterexample"]
        assert cex["R0"] == cex["init_R0"]
        assert result["refuted_goals"]
        assert result["differences"] is None
    else:
        assert result["counterexample"] is None
        assert "Proof Successful" in result["message"]


def test_single_precondition_restricts_inputs(incr_json):
    program = load_program(incr_json(0))
    opts = {"func": "f", "precond": "(= R0 #x00000005)", "postcond": "(= R0 #x00000005)"}
    assert run_analysis([program], opts)["status"] == "UNSAT"
    opts["precond"] = ""
    assert run_analysis([program], opts)["status"] == "SAT"


def test_null_dereference(incr_json):
    data = _with_defs(incr_json(1), {"lhs": "R1", "rhs": "(load mem R0 le 32)"})
    program = load_program(data)
    assert run_analysis([program], {"func": "f"})["status"] == "UNSAT"

    result = run_analysis([program], {"func": "f", "check_null_derefs": True})
    assert result["status"] == "SAT"
    assert result["counterexample"]["R0"] == "0x0"


def test_division_by_zero(incr_json):
    data = _with_defs(incr_json(1), {"lhs": "R1", "rhs": "(/ R2 R3)"})
    result = run_analysis([load_program(data)], {"func": "f", "check_div_by_zero": True})
    assert result["status"] == "SAT"
    assert result["counterexample"]["R3"] == "0x0"


def test_loop_bound_is_reported():
    data = {
        "arch": "arm",
        "subs": [{
            "name": "spin",
            "blks": [
                {
                    "tid": "%loop",
                    "defs": [{"lhs": "R0", "rhs": "(+ R0 1:32)"}],
                    "jmps": [{"kind": "goto", "cond": "(< R0 100:32)", "target": "%loop"}],
                },
                {"tid": "%exit", "jmps": [{"kind": "ret"}]},
            ],
        }],
    }
    result = run_analysis([load_program(data)], {"func": "spin", "num_unroll": 2})
    assert result["status"] == "UNSAT"
    assert [w["kind"] for w in result["weakenings"]] == ["loop-bound"]
    assert "soundness weakening" in result["message"]


def test_show_options(incr_json):
    opts = {
        "func": "f",
        "postcond": INCR_POST,
        "show": ["refuted-goals", "paths", "precond-internal", "precond-smtlib", "bir"],
    }
    result = run_analysis([load_program(incr_json(2))], opts)
    assert result["status"] == "SAT"
    goal = result["refuted_goals"][0]
    assert "goal" in goal and "path" in goal
    assert result["precond_internal"].startswith("#0 Clause")
    assert result["precond_smtlib"]
    assert result["bir"][0].startswith("sub f(")


def test_refuted_goal_details_hidden_by_default(incr_json):
    result = run_analysis([load_program(incr_json(2))], {"func": "f", "postcond": INCR_POST})
    goal = result["refuted_goals"][0]
    assert "goal" not in goal and "path" not in goal
    assert "precond_internal" not in result


def test_debug_stats(incr_json):
    result = run_analysis(
        [load_program(incr_json(1))],
        {"func": "f", "debug": ["constraint-stats", "eval-constraint-stats"]},
    )
    assert result["stats"]["constraint"]["substs"] == 1
    assert "eval_ms" in result["stats"] and "solve_ms" in result["stats"]


# ── Errors ────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "rhs, error",
    [
        ("(+ R0 1:8)", "WidthMismatch"),
        ("(ite 1:1 1:8 1:16)", "WidthMismatch"),
        ("1:8", "WidthMismatch"),
        ("(+ mem R0)", "UnsupportedExpression"),
    ],
    ids=["operands", "ite branches", "assignment", "memory in arithmetic"],
)
def test_translation_failures_are_error_results(incr_json, rhs, error):
    data = _with_defs(incr_json(1), {"lhs": "R0", "rhs": rhs})
    result = run_analysis([load_program(data)], {"func": "f"})
    assert result["status"] == "ERROR"
    assert error in result["message"]


def test_unknown_pointer_register_is_an_error_result(incr_json):
    result = run_analysis([load_program(incr_json(1))], {"func": "f", "pointer_reg_list": ["RDI"]})
    assert result["status"] == "ERROR"
    assert "RDI" in result["message"]


@pytest.mark.parametrize(
    "opts, message",
    [
        ({"func": "g"}, "Function g not found"),
        ({}, "Function is not provided"),
        ({"func": "f", "postcond": "(= R0"}, "Could not parse SMT-LIB"),
        ({"func": "f", "inline": "(["}, "Invalid inline pattern"),
    ],
)
def test_configuration_errors_propagate(incr_json, opts, message):
    with pytest.raises(ConfigurationError, match=message):
        run_analysis([load_program(incr_json(1))], opts)


# ── Two programs ──────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "label, delta, expected",
    [
        ("T03 unchanged function", 1, "UNSAT"),
        ("T04 changed output", 2, "SAT"),
    ],
)
def test_compare_post_reg_values(incr_json, label, delta, expected):
    programs = [load_program(incr_json(1)), load_program(incr_json(delta))]
    result = run_analysis(programs, {"func": "f", "compare_post_reg_values": ["R0"]})
    assert result["status"] == expected, label
    if expected == "SAT":
        cex = result["counterexample"]
        assert cex["R0_orig"] == cex["R0_mod"]
        assert isinstance(result["differences"], dict)


def test_compare_with_smtlib_relation(incr_json):
    programs = [load_program(incr_json(1)), load_program(incr_json(2))]
    opts = {
        "func": "f",
        "precond": "(= R0_orig R0_mod)",
        "postcond": "(= R0_mod (bvadd R0_orig #x00000001))",
    }
    assert run_analysis(programs, opts)["status"] == "UNSAT"


def test_compare_without_relation_checks_side_conditions(incr_json):
    orig = _with_defs(incr_json(1), {"lhs": "R1", "rhs": "(/ R2 4:32)"})
    mod = _with_defs(incr_json(1), {"lhs": "R1", "rhs": "(/ R2 R3)"})
    programs = [load_program(orig), load_program(mod)]
    result = run_analysis(programs, {"func": "f", "check_div_by_zero": True})
    assert result["status"] == "SAT"
    assert result["counterexample"]["R3_mod"] == "0x0"


def test_unknown_output_register(incr_json):
    programs = [load_program(incr_json(1)), load_program(incr_json(1))]
    with pytest.raises(ConfigurationError, match="Unknown output register"):
        run_analysis(programs, {"func": "f", "compare_post_reg_values": ["RAX"]})


def test_compare_func_calls():
    def program(calls: bool) -> dict:
        jmps = [{"kind": "call", "target": "@puts", "return": "%b1"}] if calls else []
        return {
            "arch": "arm",
            "subs": [
                {
                    "name": "main",
                    "blks": [
                        {"tid": "%b0", "jmps": jmps},
                        {"tid": "%b1", "jmps": [{"kind": "ret"}]},
                    ],
                },
                {"name": "puts"},
            ],
        }

    opts = {"func": "main", "compare_func_calls": True}
    same = [load_program(program(True)), load_program(program(True))]
    assert run_analysis(same, opts)["status"] == "UNSAT"
    dropped = [load_program(program(True)), load_program(program(False))]
    assert run_analysis(dropped, opts)["status"] == "SAT"


def _caller(setup: str, *callees: dict) -> dict:
    """``main`` sets R0, calls ``@sq`` or ``@g``, then returns."""
    target = callees[0]["name"]
    return {
        "arch": "arm",
        "subs": [
            {
                "name": "main",
                "blks": [
                    {
                        "tid": "%b0",
                        "defs": [{"lhs": "R0", "rhs": setup}],
                        "jmps": [{"kind": "call", "target": f"@{target}", "return": "%b1"}],
                    },
                    {"tid": "%b1", "jmps": [{"kind": "ret"}]},
                ],
            },
            *callees,
        ],
    }


SQUARE = {
    "name": "g",
    "blks": [{"tid": "%g0", "defs": [{"lhs": "R0", "rhs": "(* R0 R0)"}], "jmps": [{"kind": "ret"}]}],
}


@pytest.mark.parametrize(
    "setup, expected",
    [("R0", "UNSAT"), ("(+ R0 1:32)", "SAT")],
    ids=["same argument", "changed argument"],
)
def test_callee_summary_is_shared_between_programs(setup, expected):
    programs = [load_program(_caller("R0", SQUARE)), load_program(_caller(setup, SQUARE))]
    result = run_analysis(programs, {"func": "main", "compare_post_reg_values": ["R0"]})
    assert result["status"] == expected


@pytest.mark.parametrize(
    "arg, expected",
    [("3:32", "UNSAT"), ("20:32", "SAT")],
    ids=["contract holds", "precondition violated"],
)
def test_user_func_spec(arg, expected):
    opts = {
        "func": "main",
        "postcond": "(= R0 #x00000009)",
        "user_func_spec": [{
            "name": "sq",
            "pre": "(bvult R0 #x00000010)",
            "post": "(= R0 (bvmul init_R0 init_R0))",
        }],
    }
    result = run_analysis([load_program(_caller(arg, {"name": "sq"}))], opts)
    assert result["status"] == expected


@pytest.mark.parametrize(
    "offset, expected",
    [(8, "UNSAT"), (None, "SAT")],
    ids=["reads matched at the offset", "plain memory equality"],
)
def test_mem_offset(incr_json, offset, expected):
    orig = _with_defs(incr_json(1), {"lhs": "R0", "rhs": "(load mem R1 le 32)"})
    mod = _with_defs(incr_json(1), {"lhs": "R0", "rhs": "(load mem (+ R1 8:32) le 32)"})
    opts = {"func": "f", "compare_post_reg_values": ["R0"]}
    if offset is not None:
        opts["mem_offset"] = offset
    assert run_analysis([load_program(orig), load_program(mod)], opts)["status"] == expected


@pytest.mark.parametrize(
    "mod_addr, expected",
    [("R1", "UNSAT"), ("R2", "SAT")],
    ids=["same address", "new address"],
)
def test_check_invalid_derefs(incr_json, mod_addr, expected):
    orig = _with_defs(incr_json(1), {"lhs": "R3", "rhs": "(load mem R1 le 32)"})
    mod = _with_defs(incr_json(1), {"lhs": "R3", "rhs": f"(load mem {mod_addr} le 32)"})
    opts = {"func": "f", "check_invalid_derefs": True, "heap_range": [0x1000, 0x2000]}
    result = run_analysis([load_program(orig), load_program(mod)], opts)
    assert result["status"] == expected
    if expected == "SAT":
        assert result["refuted_goals"]


@pytest.mark.parametrize(
    "pointers, expected",
    [([], "SAT"), (["R1"], "UNSAT")],
    ids=["no pointer hypothesis", "R1 is a heap pointer"],
)
def test_pointer_reg_list_in_comparison(incr_json, pointers, expected):
    mod = _with_defs(
        incr_json(1),
        {"lhs": "R0", "rhs": "(+ R0 1:32)"},
        {"lhs": "R3", "rhs": "(load mem R1 le 32)"},
    )
    opts = {
        "func": "f",
        "check_null_derefs": True,
        "heap_range": [0x1000, 0x2000],
        "pointer_reg_list": pointers,
    }
    result = run_analysis([load_program(incr_json(1)), load_program(mod)], opts)
    assert result["status"] == expected

"""
binwp — Verification package.

Public API::

    from binwp.verifier import run_analysis, compare_subs, parse_options
"""
from binwp.verifier.analysis import Analysis, analyze, check_pre, run_analysis
from binwp.verifier.compare import (
    compare_blocks,
    compare_subs,
    compare_subs_constraints,
    compare_subs_empty,
    compare_subs_empty_post,
    compare_subs_eq,
    compare_subs_fun,
    compare_subs_mem_eq,
    compare_subs_pointers,
    compare_subs_smtlib,
    compare_subs_sp,
    mk_smtlib2_compare,
)
from binwp.verifier.options import Options, parse_options

__all__ = [
    "Analysis",
    "Options",
    "analyze",
    "check_pre",
    "compare_blocks",
    "compare_subs",
    "compare_subs_constraints",
    "compare_subs_empty",
    "compare_subs_empty_post",
    "compare_subs_eq",
    "compare_subs_fun",
    "compare_subs_mem_eq",
    "compare_subs_pointers",
    "compare_subs_smtlib",
    "compare_subs_sp",
    "mk_smtlib2_compare",
    "parse_options",
    "run_analysis",
]

"""
binwp — Weakest-precondition analysis over lifted binary programs.

Public API::

    from binwp import load_program, run_analysis
"""
from binwp.config import ENGINE_VERSION
from binwp.loader import load_program
from binwp.verifier import run_analysis

__version__ = ENGINE_VERSION.split("-", 1)[1]

__all__ = ["ENGINE_VERSION", "load_program", "run_analysis", "__version__"]

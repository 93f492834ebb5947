"""
Per-assay differential expression.

Exports:
- dreamlet: fit a formula to every assay of a ProcessedData
- DreamletResult: fits, details and error ledgers of all assays
- top_table / get_treat: ranked tables pooled across assays
- LinearModelEngine / EmpiricalBayesShrinkage: default collaborators
"""

from .ebayes import EmpiricalBayesShrinkage
from .engine import LinearModelEngine, RegressionEngine, ShrinkageEngine
from .fitting import FitOutcome, GroupFitter, OutcomeKind
from .formula import Formula, check_design, reduce_formula
from .model_fit import ModelFit
from .multitest import adjust_pvalues
from .orchestrator import dreamlet
from .ranking import get_treat, top_table
from .results import DreamletResult, ErrorTables, as_dreamlet_result

__all__ = [
    "dreamlet",
    "DreamletResult",
    "ErrorTables",
    "as_dreamlet_result",
    "top_table",
    "get_treat",
    "Formula",
    "reduce_formula",
    "check_design",
    "ModelFit",
    "FitOutcome",
    "OutcomeKind",
    "GroupFitter",
    "RegressionEngine",
    "ShrinkageEngine",
    "LinearModelEngine",
    "EmpiricalBayesShrinkage",
    "adjust_pvalues",
]

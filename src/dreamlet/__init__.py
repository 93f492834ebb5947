"""
dreamlet - Differential expression across cell types

Fits linear (mixed) models to every cell type of a pseudobulk dataset,
collects the per-cell-type fits with their failures, and reports ranked
results pooled across cell types.
"""

__version__ = "0.1.0"

from dreamlet.config import AnalysisConfig, run_from_config
from dreamlet.core.expression import ExpressionMatrix
from dreamlet.core.processed import ProcessedData
from dreamlet.diagnostics import Diagnostic
from dreamlet.stats.orchestrator import dreamlet
from dreamlet.stats.ranking import get_treat, top_table
from dreamlet.stats.results import DreamletResult, as_dreamlet_result

__all__ = [
    "ExpressionMatrix",
    "ProcessedData",
    "Diagnostic",
    "dreamlet",
    "DreamletResult",
    "as_dreamlet_result",
    "top_table",
    "get_treat",
    "AnalysisConfig",
    "run_from_config",
]

"""
Core data structures consumed by the per-assay fitting pipeline.

1. ExpressionMatrix: one assay's features × samples matrix with optional
   precision weights and cell counts
2. ProcessedData: ordered collection of assays plus shared and
   assay-varying sample metadata
3. merge_metadata: builds an assay's design table from both metadata sources
"""

from dreamlet.core.expression import ExpressionMatrix
from dreamlet.core.metadata import merge_metadata
from dreamlet.core.processed import ProcessedData

__all__ = [
    'ExpressionMatrix',
    'ProcessedData',
    'merge_metadata',
]

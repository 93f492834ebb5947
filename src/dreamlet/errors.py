"""
Exception hierarchy for per-assay differential expression.

Two kinds of failure are distinguished:

- Fatal errors (``ConfigurationError``, ``EmptyResultError``) are raised to
  the immediate caller and abort only the operation that was invoked.
- Recoverable errors (``GroupLevelFitError``, ``MergeError``) are raised
  inside the per-assay pipeline and converted into error-ledger entries by
  the orchestrator. A single assay failing never aborts its siblings.
"""

from __future__ import annotations

__all__ = [
    'DreamletError',
    'ConfigurationError',
    'GroupLevelFitError',
    'MergeError',
    'EmptyResultError',
    'NoResultsError',
]


class DreamletError(Exception):
    """Base class for all errors raised by this package."""
    pass


class ConfigurationError(DreamletError, ValueError):
    """Raised for invalid caller input: unknown assays, bad names, bad options."""
    pass


class GroupLevelFitError(DreamletError):
    """
    Raised by a regression engine when a model cannot be built for an assay.

    Attributes:
        errors: Per-feature error messages collected before the failure
            (may be empty).
    """

    def __init__(self, message: str, errors: dict[str, str] | None = None):
        super().__init__(message)
        self.errors = dict(errors) if errors else {}


class MergeError(DreamletError):
    """Raised when assay-varying metadata cannot be joined unambiguously."""
    pass


class EmptyResultError(DreamletError):
    """Raised when no assay produced rows for the requested coefficients."""
    pass


NoResultsError = EmptyResultError

"""
Diagnostic messages raised while fitting.

Messages are collected as Diagnostic records so that they survive joblib
worker processes, then emitted once in the calling process through the
``logging`` module and, optionally, an observer callable.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Callable
from dataclasses import dataclass

__all__ = ['Diagnostic', 'emit']


@dataclass(frozen=True)
class Diagnostic:
    """
    One diagnostic message.

    Attributes:
        level: ``logging`` level (DEBUG, INFO, WARNING)
        message: Message text
        assay: Assay the message refers to, or None for study-wide messages
    """

    level: int
    message: str
    assay: str | None = None

    @property
    def level_name(self) -> str:
        return logging.getLevelName(self.level)


def emit(
    diagnostic: Diagnostic,
    logger: logging.Logger,
    observer: Callable[[Diagnostic], None] | None = None,
    as_warning: bool = False,
) -> None:
    """Send ``diagnostic`` to the logger (or ``warnings``) and the observer."""
    if as_warning:
        warnings.warn(diagnostic.message, UserWarning, stacklevel=3)
    else:
        logger.log(diagnostic.level, diagnostic.message)
    if observer is not None:
        observer(diagnostic)

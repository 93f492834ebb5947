"""
Fixed-effects design matrices and contrast matrices.

The fixed-effects part of a formula is expanded with patsy. Column names are
rewritten to the R convention used throughout result tables, so that the
coefficient for level ``stim`` of ``group_id`` is ``group_idstim`` and the
intercept is ``(Intercept)``.

Contrasts are linear combinations of coefficients written as expressions::

    {"stim_vs_ctrl": "group_idstim - group_idctrl"}
    {"avg": "(cell_typeA + cell_typeB) / 2"}

make_contrasts returns a coefficient × contrast matrix L. Appending ``L`` to
a fit adds one estimated column per contrast.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray
import patsy

from dreamlet.stats.formula import Formula

__all__ = [
    'build_design',
    'is_full_rank',
    'make_contrasts',
    'r_style_name',
]

_LEVEL_PATTERNS = (
    re.compile(r"C\(\s*([A-Za-z_.][\w.]*)\s*(?:,.*)?\)\[(?:T\.)?(.*)\]"),
    re.compile(r"([A-Za-z_.][\w.]*)\[(?:T\.)?(.*)\]"),
)


def r_style_name(name: str) -> str:
    """
    Convert a patsy column name to the R convention.

    Examples:
        >>> r_style_name("Intercept")
        '(Intercept)'
        >>> r_style_name("group_id[T.stim]")
        'group_idstim'
        >>> r_style_name("C(batch)[T.b2]:age")
        'batchb2:age'
    """
    if name == "Intercept":
        return "(Intercept)"
    parts = []
    for part in name.split(":"):
        for pattern in _LEVEL_PATTERNS:
            match = pattern.fullmatch(part)
            if match:
                part = f"{match.group(1)}{match.group(2)}"
                break
        parts.append(part)
    return ":".join(parts)


def build_design(formula: Formula, data: pd.DataFrame) -> pd.DataFrame:
    """
    Expand the fixed-effects part of ``formula`` over ``data``.

    Args:
        formula: Parsed formula; random terms are ignored here.
        data: Design table, one row per sample.

    Returns:
        Design matrix indexed like ``data`` with R-style column names.

    Raises:
        ValueError: If patsy cannot build the design (unknown covariate,
            missing values, malformed term).
    """
    try:
        design = patsy.dmatrix(
            formula.fixed_formula(), data, return_type="dataframe", NA_action="raise"
        )
    except patsy.PatsyError as e:
        raise ValueError(f"Cannot build design matrix for '{formula}': {e}") from e

    names = [r_style_name(c) for c in design.columns]
    if len(set(names)) == len(names):
        design.columns = names
    design.index = data.index
    return design


def is_full_rank(formula: Formula, data: pd.DataFrame) -> bool:
    """Whether the fixed-effects design of ``formula`` has full column rank."""
    X = build_design(formula, data).to_numpy(dtype=np.float64)
    if X.shape[1] == 0:
        return False
    return np.linalg.matrix_rank(X) == X.shape[1]


class _ContrastParser:
    """
    Recursive-descent parser for linear expressions over coefficient names.

    Values are vectors of length n_coef + 1 where the last entry holds the
    constant part.
    """

    _NUMBER = re.compile(r"\d+\.?\d*(?:[eE][-+]?\d+)?|\.\d+(?:[eE][-+]?\d+)?")

    def __init__(self, coef_names: Sequence[str]):
        self.coef_names = list(coef_names)
        self._by_length = sorted(self.coef_names, key=len, reverse=True)
        self._tokens: list[tuple[str, object]] = []
        self._pos = 0

    def _tokenize(self, text: str) -> list[tuple[str, object]]:
        tokens: list[tuple[str, object]] = []
        i = 0
        while i < len(text):
            ch = text[i]
            if ch.isspace():
                i += 1
                continue
            name = next((n for n in self._by_length if text.startswith(n, i)), None)
            if name is not None:
                tokens.append(("coef", self.coef_names.index(name)))
                i += len(name)
                continue
            match = self._NUMBER.match(text, i)
            if match:
                tokens.append(("num", float(match.group(0))))
                i = match.end()
                continue
            if ch in "+-*/()":
                tokens.append(("op", ch))
                i += 1
                continue
            raise ValueError(
                f"Unknown term at position {i} of contrast '{text}'. "
                f"Valid coefficients: {self.coef_names}"
            )
        return tokens

    def parse(self, text: str) -> NDArray[np.float64]:
        self._tokens = self._tokenize(text)
        self._pos = 0
        if not self._tokens:
            raise ValueError("Empty contrast expression")
        value = self._expression()
        if self._pos != len(self._tokens):
            raise ValueError(f"Unexpected token in contrast '{text}'")
        if value[-1] != 0:
            raise ValueError(f"Contrast '{text}' has a constant offset")
        if not np.any(value[:-1]):
            raise ValueError(f"Contrast '{text}' has no coefficient weights")
        return value[:-1]

    def _peek(self):
        return self._tokens[self._pos] if self._pos < len(self._tokens) else (None, None)

    def _expression(self) -> NDArray[np.float64]:
        value = self._term()
        while self._peek() in (("op", "+"), ("op", "-")):
            _, op = self._tokens[self._pos]
            self._pos += 1
            right = self._term()
            value = value + right if op == "+" else value - right
        return value

    def _term(self) -> NDArray[np.float64]:
        value = self._factor()
        while self._peek() in (("op", "*"), ("op", "/")):
            _, op = self._tokens[self._pos]
            self._pos += 1
            right = self._factor()
            if op == "*":
                if not np.any(right[:-1]):
                    value = value * right[-1]
                elif not np.any(value[:-1]):
                    value = right * value[-1]
                else:
                    raise ValueError("Contrast is not linear in the coefficients")
            else:
                if np.any(right[:-1]) or right[-1] == 0:
                    raise ValueError("Contrast divisor must be a non-zero number")
                value = value / right[-1]
        return value

    def _factor(self) -> NDArray[np.float64]:
        kind, token = self._peek()
        if kind == "op" and token in "+-":
            self._pos += 1
            value = self._factor()
            return -value if token == "-" else value
        if kind == "op" and token == "(":
            self._pos += 1
            value = self._expression()
            if self._peek() != ("op", ")"):
                raise ValueError("Unbalanced parentheses in contrast")
            self._pos += 1
            return value
        value = np.zeros(len(self.coef_names) + 1)
        if kind == "coef":
            value[token] = 1.0
        elif kind == "num":
            value[-1] = token
        else:
            raise ValueError("Incomplete contrast expression")
        self._pos += 1
        return value


def make_contrasts(
    formula: Formula,
    data: pd.DataFrame,
    contrasts: Mapping[str, str] | Sequence[str],
) -> pd.DataFrame:
    """
    Build a contrast matrix against the fixed-effects design of ``formula``.

    Args:
        formula: Assay-specific formula.
        data: Design table of the assay.
        contrasts: Named expressions, or bare expressions named by their text.

    Returns:
        DataFrame with one row per coefficient and one column per contrast.

    Raises:
        ValueError: If an expression references an unknown coefficient, is
            not linear, or a contrast name collides with a coefficient.
    """
    if isinstance(contrasts, str):
        contrasts = [contrasts]
    if not isinstance(contrasts, Mapping):
        contrasts = {expr: expr for expr in contrasts}

    coef_names = list(build_design(formula, data).columns)
    parser = _ContrastParser(coef_names)

    columns = {}
    for name, expression in contrasts.items():
        if name in coef_names:
            raise ValueError(f"Contrast name '{name}' collides with a coefficient name")
        columns[name] = parser.parse(expression)

    return pd.DataFrame(columns, index=coef_names, dtype=np.float64)

"""
R-style model formulas and assay-specific formula reduction.

Formulas follow the lme4 / variancePartition convention::

    ~ group_id + age + (1 | donor)

Fixed-effect terms are handed to patsy when the design matrix is built;
random-effect terms ``(1 | g)`` are fit by the mixed model path of the
regression engine.

Formula reduction:
    A formula that is valid for the whole study can be degenerate for one
    assay. A rare cell type may only be observed in one batch, or two
    covariates may coincide once samples without that cell type are
    removed. Before fitting each assay:

    1. remove_constant_terms: drop terms whose covariate takes a single
       value across the retained samples
    2. drop_redundant_terms: of two covariates spanning the same column
       space, keep the first and drop the second
    3. check_design: the reduced formula must reference at least one
       covariate (or be exactly intercept-only) and give a full-rank
       fixed-effects design

Examples:
    >>> f = Formula.parse("~ group_id + batch + (1 | donor)")
    >>> f.variables
    ['group_id', 'batch', 'donor']
    >>> str(f.drop_variables(["batch"]))
    '~ group_id + (1 | donor)'
"""

from __future__ import annotations

import itertools
import keyword
import re
from dataclasses import dataclass

import numpy as np
import pandas as pd

__all__ = [
    'Formula',
    'SINGULAR_DESIGN_MESSAGE',
    'remove_constant_terms',
    'drop_redundant_terms',
    'check_design',
    'reduce_formula',
]

SINGULAR_DESIGN_MESSAGE = "Design matrix is singular, covariates are very correlated"

_IDENTIFIER = re.compile(r"[A-Za-z_.][A-Za-z0-9_.]*")
_STRING_LITERAL = re.compile(r"\"[^\"]*\"|'[^']*'")
_NOT_VARIABLES = {"True", "False", "None", "np", "I", "C"}


def _split_top_level(text: str, separators: str) -> list[tuple[str, str]]:
    """Split on separator characters outside parentheses.

    Returns (sign, chunk) pairs where sign is the separator preceding the chunk.
    """
    parts: list[tuple[str, str]] = []
    depth = 0
    sign = "+"
    current: list[str] = []
    for ch in text:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise ValueError(f"Unbalanced parentheses in formula: {text!r}")
        if depth == 0 and ch in separators:
            parts.append((sign, "".join(current).strip()))
            sign = ch
            current = []
            continue
        current.append(ch)
    if depth != 0:
        raise ValueError(f"Unbalanced parentheses in formula: {text!r}")
    parts.append((sign, "".join(current).strip()))
    return parts


def _term_variables(term: str) -> list[str]:
    """Covariate names referenced by a single term."""
    text = _STRING_LITERAL.sub("", term)
    found: list[str] = []
    for match in _IDENTIFIER.finditer(text):
        name = match.group(0)
        rest = text[match.end():].lstrip()
        if rest.startswith("("):
            continue  # function call
        if name[0].isdigit() or name in _NOT_VARIABLES or keyword.iskeyword(name):
            continue
        if name.replace(".", "").isdigit():
            continue
        if name not in found:
            found.append(name)
    return found


def _is_random(term: str) -> bool:
    return term.startswith("(") and term.endswith(")") and "|" in term


def _normalize_random(term: str) -> str:
    inner = term[1:-1]
    lhs, _, rhs = inner.partition("|")
    return f"({lhs.strip()} | {rhs.strip()})"


def _normalize_fixed(term: str) -> str:
    return re.sub(r"\s*:\s*", ":", " ".join(term.split()))


def _expand_product(term: str) -> list[str]:
    """Expand ``a*b*c`` into main effects and all interactions."""
    factors = [f.strip() for _, f in _split_top_level(term, "*")]
    if len(factors) == 1:
        return [_normalize_fixed(term)]
    expanded: list[str] = []
    for order in range(1, len(factors) + 1):
        for combo in itertools.combinations(factors, order):
            expanded.append(_normalize_fixed(":".join(combo)))
    return expanded


@dataclass(frozen=True)
class Formula:
    """
    Parsed right-hand side of a model formula.

    Attributes:
        terms: Fixed and random terms in order of appearance. Random terms
            are stored normalized as ``"(1 | donor)"``.
        intercept: Whether the fixed-effects design carries an intercept.
    """

    terms: tuple[str, ...] = ()
    intercept: bool = True

    @classmethod
    def parse(cls, text: str) -> Formula:
        """
        Parse an R-style formula string.

        A left-hand side, if present, is ignored. ``0``, ``-1`` and ``+0``
        remove the intercept; ``a*b`` expands to ``a + b + a:b``.

        Raises:
            ValueError: On malformed input or unsupported term removal.
        """
        if not isinstance(text, str):
            raise TypeError(f"formula must be str, got {type(text)}")
        if "~" not in text:
            raise ValueError(f"Formula must contain '~': {text!r}")
        rhs = text.split("~", 1)[1].strip()
        if not rhs:
            raise ValueError(f"Formula has an empty right-hand side: {text!r}")

        terms: list[str] = []
        intercept = True
        for i, (sign, chunk) in enumerate(_split_top_level(rhs, "+-")):
            if not chunk:
                if i == 0:
                    continue  # leading sign, e.g. "~ -1 + x"
                raise ValueError(f"Empty term in formula: {text!r}")
            if chunk in ("1", "0"):
                intercept = (chunk == "1") != (sign == "-")
                continue
            if sign == "-":
                raise ValueError(f"Term removal is only supported for the intercept: {text!r}")
            if _is_random(chunk):
                new = [_normalize_random(chunk)]
            else:
                new = _expand_product(chunk)
            for term in new:
                if term not in terms:
                    terms.append(term)
        return cls(terms=tuple(terms), intercept=intercept)

    @property
    def fixed_terms(self) -> tuple[str, ...]:
        return tuple(t for t in self.terms if not _is_random(t))

    @property
    def random_terms(self) -> tuple[str, ...]:
        return tuple(t for t in self.terms if _is_random(t))

    @property
    def variables(self) -> list[str]:
        """Ordered unique covariates referenced anywhere in the formula."""
        found: list[str] = []
        for term in self.terms:
            for v in self.term_variables(term):
                if v not in found:
                    found.append(v)
        return found

    @staticmethod
    def term_variables(term: str) -> list[str]:
        if _is_random(term):
            lhs, _, rhs = term[1:-1].partition("|")
            return _term_variables(rhs) + [v for v in _term_variables(lhs) if v not in _term_variables(rhs)]
        return _term_variables(term)

    @staticmethod
    def random_parts(term: str) -> tuple[str, str]:
        """Split ``"(lhs | rhs)"`` into ``("lhs", "rhs")``."""
        lhs, _, rhs = term[1:-1].partition("|")
        return lhs.strip(), rhs.strip()

    def is_intercept_only(self) -> bool:
        return self.intercept and not self.terms

    def drop_terms(self, terms) -> Formula:
        drop = set(terms)
        return Formula(terms=tuple(t for t in self.terms if t not in drop), intercept=self.intercept)

    def drop_variables(self, variables) -> Formula:
        """Remove every term that references any of ``variables``."""
        drop = set(variables)
        kept = tuple(t for t in self.terms if not drop.intersection(self.term_variables(t)))
        return Formula(terms=kept, intercept=self.intercept)

    def fixed_formula(self) -> str:
        """Fixed-effects part as a patsy formula."""
        parts = ([] if self.intercept else ["0"]) + list(self.fixed_terms)
        if not parts:
            parts = ["1"]
        return "~ " + " + ".join(parts)

    def __str__(self) -> str:
        if not self.terms:
            return "~ 1" if self.intercept else "~ 0"
        parts = ([] if self.intercept else ["0"]) + list(self.terms)
        return "~ " + " + ".join(parts)


def _variable_block(values: pd.Series) -> np.ndarray:
    """Centered column block spanned by one covariate."""
    if (
        values.dtype == object
        or isinstance(values.dtype, pd.CategoricalDtype)
        or pd.api.types.is_bool_dtype(values)
        or pd.api.types.is_string_dtype(values)
    ):
        block = pd.get_dummies(values.astype(str), drop_first=True, dtype=float).to_numpy()
    else:
        block = values.to_numpy(dtype=np.float64).reshape(-1, 1)
    if block.shape[1] == 0:
        return block
    return block - block.mean(axis=0)


def _same_span(a: np.ndarray, b: np.ndarray, tol: float = 1e-8) -> bool:
    if a.shape[1] == 0 or b.shape[1] == 0:
        return False
    rank_a = np.linalg.matrix_rank(a, tol=tol * max(1.0, np.abs(a).max()))
    rank_b = np.linalg.matrix_rank(b, tol=tol * max(1.0, np.abs(b).max()))
    joint = np.hstack([a, b])
    rank_ab = np.linalg.matrix_rank(joint, tol=tol * max(1.0, np.abs(joint).max()))
    return rank_a == rank_b == rank_ab


def remove_constant_terms(formula: Formula, data: pd.DataFrame) -> Formula:
    """
    Drop terms whose covariate takes exactly one value across the rows of
    ``data``. A table with no rows has no constant covariates.
    """
    constant = [
        v for v in formula.variables
        if v in data.columns and data[v].nunique(dropna=False) == 1
    ]
    if not constant:
        return formula
    return formula.drop_variables(constant)


def drop_redundant_terms(formula: Formula, data: pd.DataFrame) -> Formula:
    """
    Drop the second covariate of every pair spanning the same column space.

    Covariates are compared as centered blocks: numeric covariates as a
    single column, categorical covariates as treatment-coded dummies. Only
    rows complete in both covariates are compared.
    """
    if data.empty:
        return formula
    candidates = [v for v in formula.variables if v in data.columns]
    dropped: list[str] = []
    for i, first in enumerate(candidates):
        if first in dropped:
            continue
        for second in candidates[i + 1:]:
            if second in dropped:
                continue
            pair = data[[first, second]].dropna()
            if len(pair) < 2:
                continue
            if _same_span(_variable_block(pair[first]), _variable_block(pair[second])):
                dropped.append(second)
    if not dropped:
        return formula
    return formula.drop_variables(dropped)


def check_design(formula: Formula, data: pd.DataFrame) -> bool:
    """
    Whether an assay can be fit with ``formula``.

    True when the formula references at least one covariate or is exactly
    intercept-only, and its fixed-effects design has full column rank. With
    no rows the rank is undefined and only the first condition applies.
    """
    from dreamlet.stats.design_matrix import is_full_rank

    has_terms = len(formula.variables) > 0 or formula.is_intercept_only()
    if not has_terms:
        return False
    if len(data) == 0:
        return True
    return is_full_rank(formula, data)


def reduce_formula(formula: Formula, data: pd.DataFrame) -> tuple[Formula, bool]:
    """
    Assay-specific formula with constant and redundant terms removed.

    Returns:
        Tuple (reduced_formula, was_reduced) where ``was_reduced`` compares
        the formula text before and after reduction.
    """
    reduced = remove_constant_terms(formula, data)
    reduced = drop_redundant_terms(reduced, data)
    return reduced, str(reduced) != str(formula)

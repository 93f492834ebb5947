"""
Configuration file support for dreamlet analyses.

Supports YAML and JSON config files with two sections::

    fit:
      formula: "~ group_id + (1 | donor)"
      min_cells: 10
      robust: false
      contrasts:
        stim_vs_ctrl: "group_idstim"
    table:
      coef: group_idstim
      number: 50
      sort_by: P

``fit`` feeds dreamlet() and ``table`` feeds top_table().
"""

import json
import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from dreamlet.errors import ConfigurationError

logger = logging.getLogger(__name__)


def _from_dict(cls, values: Optional[Dict[str, Any]], section: str):
    values = dict(values or {})
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigurationError(f"Unknown keys in '{section}' config: {unknown}")
    return cls(**values)


@dataclass
class DreamletConfig:
    """Model fitting configuration (arguments of dreamlet())."""
    formula: Optional[str] = None
    assays: Optional[List[str]] = None
    contrasts: Optional[Union[Dict[str, str], List[str]]] = None
    min_cells: int = 10
    robust: bool = False
    use_ebayes: bool = True
    n_jobs: int = 1
    fit_options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, values: Optional[Dict[str, Any]]) -> "DreamletConfig":
        return _from_dict(cls, values, "fit")

    def to_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for dreamlet(); ``fit_options`` are flattened."""
        if self.formula is None:
            raise ConfigurationError("'fit.formula' is required")
        kwargs = asdict(self)
        kwargs.update(kwargs.pop("fit_options"))
        return kwargs


@dataclass
class TableConfig:
    """Reporting configuration (arguments of top_table())."""
    coef: Optional[Union[str, List[str]]] = None
    number: Optional[float] = 10
    adjust_method: str = "BH"
    sort_by: str = "P"
    p_value: float = 1.0
    lfc: float = 0.0
    confint: Union[bool, float] = False

    @classmethod
    def from_dict(cls, values: Optional[Dict[str, Any]]) -> "TableConfig":
        return _from_dict(cls, values, "table")

    def to_kwargs(self) -> Dict[str, Any]:
        if self.coef is None:
            raise ConfigurationError("'table.coef' is required")
        return asdict(self)


@dataclass
class AnalysisConfig:
    """Complete configuration: fitting plus reporting."""
    fit: DreamletConfig = field(default_factory=DreamletConfig)
    table: TableConfig = field(default_factory=TableConfig)

    @classmethod
    def from_dict(cls, values: Optional[Dict[str, Any]]) -> "AnalysisConfig":
        values = dict(values or {})
        unknown = sorted(set(values) - {"fit", "table"})
        if unknown:
            raise ConfigurationError(f"Unknown config sections: {unknown}")
        return cls(
            fit=DreamletConfig.from_dict(values.get("fit")),
            table=TableConfig.from_dict(values.get("table")),
        )

    @classmethod
    def from_file(cls, config_path: Union[str, Path]) -> "AnalysisConfig":
        return cls.from_dict(load_config(Path(config_path)))


_PARSERS = {
    ".yaml": (yaml.safe_load, yaml.YAMLError, "YAML"),
    ".yml": (yaml.safe_load, yaml.YAMLError, "YAML"),
    ".json": (json.loads, json.JSONDecodeError, "JSON"),
}


def load_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Read an analysis config file into a plain mapping.

    The parser is chosen by suffix: ``.yaml``/``.yml`` or ``.json``. An
    empty file gives an empty mapping.

    Raises:
        FileNotFoundError: If the file does not exist
        ConfigurationError: For an unknown suffix, a parse error, or a
            top level that is not a mapping
    """
    path = Path(config_path)
    if not path.is_file():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        parse, parse_error, kind = _PARSERS[path.suffix.lower()]
    except KeyError:
        raise ConfigurationError(
            f"Unsupported config format '{path.suffix}' (expected one of {sorted(_PARSERS)})"
        ) from None

    text = path.read_text()
    if not text.strip():
        return {}
    try:
        values = parse(text)
    except parse_error as e:
        raise ConfigurationError(f"Invalid {kind} in {path.name}: {e}") from e

    if values is None:
        return {}
    if not isinstance(values, dict):
        raise ConfigurationError(
            f"{path.name} must hold a mapping of sections, got {type(values).__name__}"
        )
    return values


def run_from_config(processed, config: Union[AnalysisConfig, str, Path]):
    """
    Fit every assay and rank results as described by ``config``.

    Args:
        processed: ProcessedData to analyse
        config: AnalysisConfig, or the path of a config file

    Returns:
        Tuple (DreamletResult, ranked table)
    """
    from dreamlet.stats.orchestrator import dreamlet

    if not isinstance(config, AnalysisConfig):
        config = AnalysisConfig.from_file(config)
    table_kwargs = config.table.to_kwargs()

    logger.info("Fitting %s", config.fit.formula)
    result = dreamlet(processed, **config.fit.to_kwargs())
    return result, result.top_table(**table_kwargs)

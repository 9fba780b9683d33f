"""
Pipeline configuration from YAML or JSON files.

Every tunable of the analysis lives here rather than in code: the expression
cutoff and the TMM trimming fractions are dataset-dependent choices with no
universally correct value.

Example YAML::

    expression_cutoff: 3.0
    normalization:
      method: TMM
      logratio_trim: 0.3
      sum_trim: 0.05
    voom_span: 0.5
    sample_pattern: '(?P<factor1>[AB])_(?P<factor2>[CD])_\\d+'
    group_factors: [factor1, factor2]
    design:
      covariates:
        group: {kind: categorical_no_intercept}
      interactions: []
    contrasts:
      A_CvsD: groupA.C - groupA.D
    fdr_method: BH
    significance_threshold: 0.05
"""

import json
import math
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from voomde.core.errors import ConfigurationError
from voomde.stats.design_matrix import DesignBuilder
from voomde.stats.multiple_testing import FDR_METHODS
from voomde.stats.normalization import NormalizationMethod

__all__ = ['NormalizationConfig', 'PipelineConfig', 'load_config']


# Accepted spellings of top-level keys
_ALIASES = {
    "design_formula": "design",
    "contrast_spec": "contrasts",
}


@dataclass
class NormalizationConfig:
    """Normalization factor configuration."""
    method: str = "TMM"
    logratio_trim: float = 0.3
    sum_trim: float = 0.05

    def validate(self) -> None:
        valid = {m.value.lower() for m in NormalizationMethod}
        if str(self.method).lower() not in valid:
            raise ConfigurationError(
                f"normalization.method must be one of {sorted(valid)}, got '{self.method}'"
            )
        for name in ("logratio_trim", "sum_trim"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not 0 <= value < 0.5:
                raise ConfigurationError(f"normalization.{name} must lie in [0, 0.5), got {value}")


@dataclass
class PipelineConfig:
    """
    Complete configuration of one differential expression run.

    Attributes:
        expression_cutoff: A gene is kept if its max normalized CPM reaches this
        normalization: Normalization method and TMM trimming fractions
        voom_span: Lowess span of the voom mean-variance trend
        design: {"covariates": {...}, "interactions": [...]} for DesignBuilder
        contrasts: Contrast name -> linear expression over design columns
        fdr_method: "BH" or "qvalue"
        significance_threshold: Adjusted p-value cutoff
        eb_proportion: Assumed fraction of DE genes for the B-statistic
        sample_pattern: Regex with named groups deriving factors from sample ids
            when no metadata table is supplied
        group_factors: Factors combined into a "group" column
        reorder_metadata: Reindex metadata by sample id instead of failing on
            an order mismatch
    """
    design: Dict[str, Any] = field(default_factory=dict)
    contrasts: Dict[str, str] = field(default_factory=dict)
    expression_cutoff: float = 3.0
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    voom_span: float = 0.5
    fdr_method: str = "BH"
    significance_threshold: float = 0.05
    eb_proportion: float = 0.01
    sample_pattern: Optional[str] = None
    group_factors: Optional[List[str]] = None
    reorder_metadata: bool = False

    def validate(self) -> None:
        """Raise ConfigurationError on the first invalid value."""
        if not _is_number(self.expression_cutoff) or self.expression_cutoff < 0:
            raise ConfigurationError(
                f"expression_cutoff must be a non-negative number, got {self.expression_cutoff}"
            )
        self.normalization.validate()
        if not _is_number(self.voom_span) or not 0 < self.voom_span <= 1:
            raise ConfigurationError(f"voom_span must lie in (0, 1], got {self.voom_span}")
        if self.fdr_method not in FDR_METHODS:
            raise ConfigurationError(
                f"fdr_method must be one of {FDR_METHODS}, got '{self.fdr_method}'"
            )
        if not _is_number(self.significance_threshold) or not 0 < self.significance_threshold <= 1:
            raise ConfigurationError(
                f"significance_threshold must lie in (0, 1], got {self.significance_threshold}"
            )
        if not _is_number(self.eb_proportion) or not 0 < self.eb_proportion < 1:
            raise ConfigurationError(f"eb_proportion must lie in (0, 1), got {self.eb_proportion}")

        if not isinstance(self.design, dict) or "covariates" not in self.design:
            raise ConfigurationError("design must be a mapping with a 'covariates' entry")
        # Compiles covariate specs, raising on unknown kinds or bad interactions
        self.design_builder()

        if not isinstance(self.contrasts, dict) or not self.contrasts:
            raise ConfigurationError("contrasts must be a non-empty mapping name -> expression")
        for name, expr in self.contrasts.items():
            if not isinstance(expr, str):
                raise ConfigurationError(f"Contrast '{name}' must be an expression string")

        if self.group_factors is not None and not self.group_factors:
            raise ConfigurationError("group_factors must name at least one factor")

    def design_builder(self) -> DesignBuilder:
        return DesignBuilder.from_formula_spec(self.design)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "PipelineConfig":
        """
        Build and validate a configuration from a plain mapping.

        Raises:
            ConfigurationError: On unknown keys or invalid values.
        """
        if not isinstance(config, dict):
            raise ConfigurationError("Configuration must be a mapping")

        config = {_ALIASES.get(k, k): v for k, v in config.items()}
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(config) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {unknown}")

        config = dict(config)
        norm = config.pop("normalization", None) or {}
        if isinstance(norm, str):
            norm = {"method": norm}
        if not isinstance(norm, dict):
            raise ConfigurationError("normalization must be a mapping or a method name")
        norm_fields = set(NormalizationConfig.__dataclass_fields__)
        if set(norm) - norm_fields:
            raise ConfigurationError(
                f"Unknown normalization keys: {sorted(set(norm) - norm_fields)}"
            )

        pipeline = cls(normalization=NormalizationConfig(**norm), **config)
        pipeline.validate()
        return pipeline


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def load_config(config_path: Union[Path, str]) -> PipelineConfig:
    """
    Load configuration from YAML or JSON file.

    Parameters:
        config_path: Path to config file (.yaml, .yml, or .json)

    Returns:
        Validated PipelineConfig

    Raises:
        FileNotFoundError: If config file doesn't exist
        ConfigurationError: If file format is unsupported or content invalid

    Examples:
        >>> config = load_config(Path("analysis.yaml"))
        >>> config.expression_cutoff
        3.0
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()

    try:
        with open(config_path, 'r') as f:
            if suffix in ('.yaml', '.yml'):
                config = yaml.safe_load(f)
            elif suffix == '.json':
                config = json.load(f)
            else:
                raise ConfigurationError(
                    f"Unsupported config format: {suffix}. "
                    f"Use .yaml, .yml, or .json"
                )
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in config file: {e}") from e

    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise ConfigurationError("Config file must contain a dictionary/mapping at top level")

    return PipelineConfig.from_dict(config)

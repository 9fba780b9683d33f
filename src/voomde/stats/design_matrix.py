"""
Explicit design matrix construction for per-gene linear models.

Replaces symbolic model formulas with a declarative mapping from covariate
name to coding, plus an explicit list of interaction terms. Compilation is
deterministic:

    X = [Intercept | covariate columns (declaration order) | interactions]

Covariate codings:
    categorical
        Treatment coding against a reference level; one indicator column per
        non-reference level. Requires the intercept.
    categorical_no_intercept
        One indicator column per level (group-means parameterization). The
        intercept is dropped; at most one covariate may use this coding.
    continuous
        The raw value (optionally standardized).

Columns are named ``<covariate><level>`` for categorical indicators (so a
covariate ``group`` with level ``A.C`` gives ``groupA.C``), the covariate
name for continuous columns, and ``<a>:<b>`` for interaction columns.
Interactions multiply the treatment-coded columns of both terms.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Mapping, Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from voomde.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = [
    'CovariateSpec',
    'DesignMatrix',
    'DesignBuilder',
    'COVARIATE_KINDS',
]

COVARIATE_KINDS = ("categorical", "categorical_no_intercept", "continuous")


@dataclass(frozen=True)
class CovariateSpec:
    """How one covariate enters the design.

    Attributes:
        kind: One of "categorical", "categorical_no_intercept", "continuous".
        reference: Reference level for treatment coding. Defaults to the
            first level.
        levels: Explicit level order. Defaults to sorted unique values.
        standardize: Center and scale a continuous covariate.
    """

    kind: str
    reference: str | None = None
    levels: tuple[str, ...] | None = None
    standardize: bool = False

    def __post_init__(self) -> None:
        if self.kind not in COVARIATE_KINDS:
            raise ConfigurationError(
                f"Unknown covariate kind '{self.kind}'. Use one of {COVARIATE_KINDS}"
            )
        if self.kind == "continuous" and (self.reference is not None or self.levels is not None):
            raise ConfigurationError("Continuous covariates take no reference or levels")
        if self.levels is not None:
            object.__setattr__(self, "levels", tuple(str(lv) for lv in self.levels))
            if len(set(self.levels)) != len(self.levels):
                raise ConfigurationError(f"Duplicated levels: {self.levels}")
            if self.reference is not None and str(self.reference) not in self.levels:
                raise ConfigurationError(
                    f"Reference level '{self.reference}' not among levels {self.levels}"
                )

    @property
    def is_categorical(self) -> bool:
        return self.kind != "continuous"


@dataclass(frozen=True)
class DesignMatrix:
    """Numeric design (samples × coefficients) with named columns.

    Attributes:
        X: Design matrix (n_samples, n_params), full column rank.
        col_names: Column names, in column order.
        sample_ids: Sample identifiers, in row order.
    """

    X: NDArray[np.float64]
    col_names: tuple[str, ...]
    sample_ids: pd.Index

    def __post_init__(self) -> None:
        X = np.asarray(self.X, dtype=np.float64)
        object.__setattr__(self, "X", X)
        object.__setattr__(self, "col_names", tuple(str(c) for c in self.col_names))

        if X.ndim != 2:
            raise ConfigurationError(f"Design matrix must be 2D, got shape {X.shape}")
        if X.shape[1] != len(self.col_names):
            raise ConfigurationError(
                f"Design has {X.shape[1]} columns but {len(self.col_names)} names"
            )
        if len(set(self.col_names)) != len(self.col_names):
            raise ConfigurationError(f"Design column names must be unique: {self.col_names}")
        if X.shape[0] != len(self.sample_ids):
            raise ConfigurationError(
                f"Design has {X.shape[0]} rows but {len(self.sample_ids)} sample ids"
            )
        if not np.all(np.isfinite(X)):
            raise ConfigurationError("Design matrix contains NaN or infinite values")

        rank = np.linalg.matrix_rank(X) if X.size else 0
        if rank < X.shape[1]:
            raise ConfigurationError(
                f"Design matrix is rank-deficient: rank={rank}, n_params={X.shape[1]}. "
                f"Columns: {list(self.col_names)}. A covariate may be collinear with "
                f"another covariate or an interaction."
            )
        if X.shape[0] - X.shape[1] < 1:
            raise ConfigurationError(
                f"Insufficient residual df: {X.shape[0]} samples - {X.shape[1]} params = "
                f"{X.shape[0] - X.shape[1]}. Reduce model terms or add samples."
            )

    @property
    def n_params(self) -> int:
        return self.X.shape[1]

    @property
    def n_samples(self) -> int:
        return self.X.shape[0]

    @property
    def df_residual(self) -> int:
        return self.n_samples - self.n_params

    def column_index(self, name: str) -> int:
        """Position of a named column."""
        try:
            return self.col_names.index(name)
        except ValueError:
            raise ConfigurationError(
                f"Design has no column '{name}'. Columns: {list(self.col_names)}"
            ) from None

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.X, index=self.sample_ids, columns=list(self.col_names))

    @classmethod
    def from_frame(cls, frame: pd.DataFrame) -> DesignMatrix:
        """Wrap a numeric DataFrame (samples × columns) as a validated design."""
        return cls(
            X=frame.to_numpy(dtype=np.float64),
            col_names=tuple(frame.columns),
            sample_ids=pd.Index(frame.index),
        )


def _categorical_levels(name: str, values: pd.Series, spec: CovariateSpec) -> tuple[str, ...]:
    observed = set(values.unique())
    if spec.levels is None:
        return tuple(sorted(observed))

    unknown = sorted(observed - set(spec.levels))
    if unknown:
        raise ConfigurationError(
            f"Covariate '{name}' has values {unknown} not among declared levels {spec.levels}"
        )
    return spec.levels


class DesignBuilder:
    """
    Compile covariate specifications into a DesignMatrix.

    Args:
        covariates: Mapping covariate name -> CovariateSpec (or a dict with
            the same fields). Declaration order defines column order.
        interactions: Pairs of covariate names, given as tuples or "a:b"
            strings.

    Examples:
        >>> builder = DesignBuilder({"group": CovariateSpec("categorical_no_intercept")})
        >>> design = builder.build(metadata)
        >>> design.col_names
        ('groupA.C', 'groupA.D', 'groupB.C', 'groupB.D')

        >>> builder = DesignBuilder(
        ...     {"factor1": CovariateSpec("categorical", reference="A"),
        ...      "factor2": CovariateSpec("categorical", reference="C")},
        ...     interactions=["factor1:factor2"],
        ... )
        >>> builder.build(metadata).col_names
        ('Intercept', 'factor1B', 'factor2D', 'factor1B:factor2D')
    """

    def __init__(
        self,
        covariates: Mapping[str, CovariateSpec | Mapping],
        interactions: Sequence[str | Sequence[str]] = (),
    ):
        if not covariates:
            raise ConfigurationError("At least one covariate is required to build a design")

        self.covariates: dict[str, CovariateSpec] = {}
        for name, spec in covariates.items():
            if isinstance(spec, Mapping):
                spec = CovariateSpec(**spec)
            elif isinstance(spec, str):
                spec = CovariateSpec(kind=spec)
            if not isinstance(spec, CovariateSpec):
                raise ConfigurationError(f"Invalid specification for covariate '{name}': {spec!r}")
            self.covariates[str(name)] = spec

        no_intercept = [n for n, s in self.covariates.items() if s.kind == "categorical_no_intercept"]
        if len(no_intercept) > 1:
            raise ConfigurationError(
                f"At most one covariate may be categorical_no_intercept, got {no_intercept}"
            )
        self.intercept = not no_intercept

        self.interactions: list[tuple[str, str]] = []
        for term in interactions:
            parts = term.split(":") if isinstance(term, str) else list(term)
            if len(parts) != 2:
                raise ConfigurationError(f"Interactions must name exactly two covariates: {term!r}")
            a, b = (str(p).strip() for p in parts)
            for p in (a, b):
                if p not in self.covariates:
                    raise ConfigurationError(f"Interaction term '{p}' is not a declared covariate")
            if a == b:
                raise ConfigurationError(f"Interaction of '{a}' with itself is not allowed")
            self.interactions.append((a, b))

    @classmethod
    def from_formula_spec(cls, spec: Mapping) -> DesignBuilder:
        """
        Build from the configuration form.

        Example spec::

            {"covariates": {"group": {"kind": "categorical_no_intercept"}},
             "interactions": []}
        """
        if "covariates" not in spec:
            raise ConfigurationError("Design specification requires a 'covariates' mapping")
        return cls(spec["covariates"], spec.get("interactions", ()))

    def _encode(self, name: str, values: pd.Series) -> tuple[list[str], NDArray, list[str], NDArray]:
        """Return (design names, design columns, treatment names, treatment columns)."""
        spec = self.covariates[name]

        if values.isna().any():
            missing = values.index[values.isna()].tolist()
            raise ConfigurationError(f"Covariate '{name}' is missing for samples {missing}")

        if not spec.is_categorical:
            try:
                col = values.to_numpy(dtype=np.float64)
            except (TypeError, ValueError):
                raise ConfigurationError(f"Continuous covariate '{name}' is not numeric") from None
            if spec.standardize:
                sigma = np.std(col, ddof=1)
                if sigma < 1e-10:
                    raise ConfigurationError(
                        f"Covariate '{name}' has zero variance, cannot standardize"
                    )
                col = (col - np.mean(col)) / sigma
            col = col.reshape(-1, 1)
            return [name], col, [name], col

        labels = values.astype(str)
        levels = _categorical_levels(name, labels, spec)
        if len(levels) < 2 and spec.kind == "categorical":
            raise ConfigurationError(f"Categorical covariate '{name}' has a single level {levels}")
        reference = str(spec.reference) if spec.reference is not None else levels[0]

        indicators = np.column_stack(
            [(labels.to_numpy() == lv).astype(np.float64) for lv in levels]
        )
        all_names = [f"{name}{lv}" for lv in levels]
        treat_idx = [i for i, lv in enumerate(levels) if lv != reference]
        treat_names = [all_names[i] for i in treat_idx]
        treat_cols = indicators[:, treat_idx]

        if spec.kind == "categorical_no_intercept":
            return all_names, indicators, treat_names, treat_cols
        return treat_names, treat_cols, treat_names, treat_cols

    def build(self, metadata: pd.DataFrame) -> DesignMatrix:
        """
        Compile the design for the samples in ``metadata``.

        Args:
            metadata: Sample covariates indexed by sample id, rows in the
                same order as the count-matrix columns.

        Returns:
            DesignMatrix with deterministic column order.

        Raises:
            ConfigurationError: Unknown covariates, missing values, unknown
                levels, rank deficiency, or no residual degrees of freedom.
        """
        missing = [n for n in self.covariates if n not in metadata.columns]
        if missing:
            raise ConfigurationError(
                f"Covariates not found in sample metadata: {missing}. "
                f"Available: {list(metadata.columns)}"
            )

        n_samples = len(metadata)
        names: list[str] = []
        parts: list[NDArray] = []
        treatment: dict[str, tuple[list[str], NDArray]] = {}

        if self.intercept:
            names.append("Intercept")
            parts.append(np.ones((n_samples, 1)))

        for name in self.covariates:
            d_names, d_cols, t_names, t_cols = self._encode(name, metadata[name])
            names.extend(d_names)
            parts.append(d_cols)
            treatment[name] = (t_names, t_cols)

        for a, b in self.interactions:
            a_names, a_cols = treatment[a]
            b_names, b_cols = treatment[b]
            for i, an in enumerate(a_names):
                for j, bn in enumerate(b_names):
                    names.append(f"{an}:{bn}")
                    parts.append((a_cols[:, i] * b_cols[:, j]).reshape(-1, 1))

        X = np.hstack(parts)
        design = DesignMatrix(X=X, col_names=tuple(names), sample_ids=pd.Index(metadata.index))

        cond_number = np.linalg.cond(X)
        if cond_number > 1e8:
            warnings.warn(
                f"Design matrix condition number is high ({cond_number:.3g}). "
                f"Near-collinearity may cause unstable estimates."
            )

        logger.info(
            f"Built design: {design.n_samples} samples x {design.n_params} columns "
            f"{list(design.col_names)}, residual df {design.df_residual}"
        )
        return design

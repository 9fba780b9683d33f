"""
Pytest configuration and shared fixtures.

Provides a seeded negative-binomial count generator laid out as a 2×2
factorial experiment (factor1 ∈ {A, B}, factor2 ∈ {C, D}) and fixtures for
each pipeline stage built on top of it.
"""

import numpy as np
import pandas as pd
import pytest
from pathlib import Path

from voomde.core.countmatrix import CountMatrix
from voomde.quality.filtering import ExpressionFilter
from voomde.stats.contrasts import contrasts_fit, make_contrasts
from voomde.stats.design_matrix import CovariateSpec, DesignBuilder
from voomde.stats.empirical_bayes import e_bayes
from voomde.stats.linear_model import lm_fit
from voomde.stats.normalization import calc_norm_factors
from voomde.stats.voom import voom

FACTOR1_LEVELS = ("A", "B")
FACTOR2_LEVELS = ("C", "D")

CONTRASTS = {
    "A_CvsD": "groupA.C - groupA.D",
    "B_CvsD": "groupB.C - groupB.D",
}


def generate_synthetic_counts(
    n_genes: int = 400,
    n_replicates: int = 4,
    n_de: int = 20,
    fold_change: float = 4.0,
    dispersion: float = 0.05,
    seed: int = 42,
) -> CountMatrix:
    """
    Generate a negative-binomial count matrix for a 2×2 factorial design.

    Args:
        n_genes: Number of genes
        n_replicates: Samples per factor1 × factor2 cell
        n_de: The first n_de genes are up-regulated in group A.D
        fold_change: Mean multiplier of the DE genes in group A.D
        dispersion: NB dispersion (variance = mu + dispersion * mu²)
        seed: Random seed for reproducibility

    Returns:
        CountMatrix whose metadata has factor1, factor2 and group columns.
        The last gene has zero counts in every sample.

    Design:
        - Gene means are log-normal, so the mean-variance trend spans a
          wide range of expression
        - Library sizes vary ±30% across samples
        - Sample ids encode the factors: A_C_1, A_C_2, ..., B_D_4
    """
    rng = np.random.RandomState(seed)

    sample_ids, factor1, factor2 = [], [], []
    for a in FACTOR1_LEVELS:
        for c in FACTOR2_LEVELS:
            for r in range(1, n_replicates + 1):
                sample_ids.append(f"{a}_{c}_{r}")
                factor1.append(a)
                factor2.append(c)
    n_samples = len(sample_ids)

    base = rng.lognormal(mean=4.0, sigma=1.8, size=n_genes)
    lib_scale = rng.uniform(0.7, 1.3, size=n_samples)
    mu = base[:, None] * lib_scale[None, :]

    in_ad = (np.array(factor1) == "A") & (np.array(factor2) == "D")
    mu[:n_de, in_ad] *= fold_change

    size = 1.0 / dispersion
    data = rng.negative_binomial(size, size / (size + mu)).astype(np.int64)
    data[-1, :] = 0

    sample_index = pd.Index(sample_ids)
    metadata = pd.DataFrame({"factor1": factor1, "factor2": factor2}, index=sample_index)
    metadata["group"] = metadata["factor1"] + "." + metadata["factor2"]

    return CountMatrix(
        data=data,
        feature_ids=pd.Index([f"ENSG{i:011d}.{i % 7 + 1}" for i in range(n_genes)]),
        sample_ids=sample_index,
        sample_metadata=metadata,
    )


@pytest.fixture
def counts():
    """400 genes × 16 samples, 20 DE genes, one all-zero gene."""
    return generate_synthetic_counts()


@pytest.fixture
def metadata(counts):
    return counts.sample_metadata


@pytest.fixture
def group_design(metadata):
    """Group-means design: one column per factor1.factor2 cell."""
    builder = DesignBuilder({"group": CovariateSpec("categorical_no_intercept")})
    return builder.build(metadata)


@pytest.fixture
def norm_factors(counts):
    return calc_norm_factors(counts)


@pytest.fixture
def filtered(counts, norm_factors):
    return ExpressionFilter(min_cpm=3.0, norm_factors=norm_factors).apply(counts)


@pytest.fixture
def expression(filtered, norm_factors, group_design):
    return voom(filtered, norm_factors, group_design)


@pytest.fixture
def gene_fit(expression, group_design):
    return lm_fit(expression, group_design)


@pytest.fixture
def contrast_fit(gene_fit, group_design):
    return contrasts_fit(gene_fit, make_contrasts(group_design, CONTRASTS))


@pytest.fixture
def moderated(contrast_fit):
    return e_bayes(contrast_fit)


@pytest.fixture
def pipeline_config():
    """Plain-mapping configuration for the group-means analysis."""
    return {
        "expression_cutoff": 3.0,
        "normalization": {"method": "TMM", "logratio_trim": 0.3, "sum_trim": 0.05},
        "voom_span": 0.5,
        "design": {
            "covariates": {"group": {"kind": "categorical_no_intercept"}},
            "interactions": [],
        },
        "contrasts": dict(CONTRASTS),
        "fdr_method": "BH",
        "significance_threshold": 0.05,
    }


def save_count_table(matrix: CountMatrix, path: Path) -> Path:
    """Write a CountMatrix as a tab-delimited count table."""
    df = matrix.to_frame()
    df.index.name = "gene_id"
    df.to_csv(path, sep="\t")
    return path

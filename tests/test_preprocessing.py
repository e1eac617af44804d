import numpy as np
import pandas as pd
import pytest

from autoab_pipeline.preprocessing import (
    NormalizationMethod,
    calc_norm_factors,
    log_transform,
    normalize_counts,
    normalize_expression_data,
    parse_normalization_method,
    score_gene_set,
    select_reference_library,
)
from autoab_pipeline.utils import InvalidArgumentError

from conftest import make_adata, make_counts, requires_r


def _proportional_counts() -> pd.DataFrame:
    rng = np.random.default_rng(1)
    base = rng.integers(20, 400, size=60)
    return pd.DataFrame(
        {f"lib{k}": base * k for k in (1, 2, 3, 5)},
        index=[f"GENE{i}" for i in range(60)],
    )


@requires_r
def test_tmm_factors_have_unit_geometric_mean(logger):
    nf = calc_norm_factors(make_counts(seed=2), logger=logger)

    assert nf.name == "norm_factor"
    assert np.exp(np.log(nf).mean()) == pytest.approx(1.0)


@requires_r
def test_proportional_libraries_normalize_to_equal_sums(logger):
    counts = _proportional_counts()
    nf = calc_norm_factors(counts, logger=logger)
    normalized = normalize_counts(counts, norm_factors=nf, logger=logger)

    np.testing.assert_allclose(nf.to_numpy(), 1.0)
    assert normalized.shape == counts.shape
    sums = normalized.sum(axis=0).to_numpy()
    np.testing.assert_allclose(sums, sums[0], rtol=1e-9)


@requires_r
def test_tmm_discounts_single_dominant_gene(logger):
    rng = np.random.default_rng(4)
    base = rng.integers(20, 200, size=50)
    counts = pd.DataFrame(
        {f"lib{k}": base.copy() for k in range(4)},
        index=[f"GENE{i}" for i in range(50)],
    )
    counts.loc["GENE0", "lib3"] *= 100

    normalized = normalize_counts(counts, logger=logger).drop(index="GENE0")

    for col in normalized.columns[1:]:
        np.testing.assert_allclose(normalized[col], normalized["lib0"], rtol=1e-8)


@requires_r
def test_arithmetic_reference_rule(logger):
    counts = make_counts(seed=6)
    nf = calc_norm_factors(counts, reference="arithmetic", logger=logger)
    assert np.exp(np.log(nf).mean()) == pytest.approx(1.0)


def test_unknown_reference_rule(logger):
    with pytest.raises(InvalidArgumentError):
        calc_norm_factors(make_counts(seed=6), reference="median", logger=logger)


def test_geometric_reference_is_closest_upper_quartile():
    counts = make_counts(n_genes=100, n_samples=6, seed=3)
    expressed = counts[(counts > 0).any(axis=1)]
    f75 = (expressed / counts.sum(axis=0)).quantile(0.75)
    expected = (f75 - np.exp(np.log(f75).mean())).abs().idxmin()

    assert select_reference_library(counts) == expected


def test_sparse_library_is_not_the_geometric_reference():
    counts = make_counts(n_genes=100, n_samples=6, seed=3)
    counts.iloc[20:, 0] = 0

    ref = select_reference_library(counts)

    assert ref != "lib10000"
    assert ref == np.sqrt(counts).sum(axis=0).idxmax()


def test_parse_normalization_method():
    assert parse_normalization_method("tmm") is NormalizationMethod.TMM
    assert parse_normalization_method(NormalizationMethod.TMM) is NormalizationMethod.TMM

    with pytest.raises(InvalidArgumentError, match="quantile"):
        parse_normalization_method("quantile")


def test_normalize_counts_requires_every_factor(logger):
    counts = make_counts(n_genes=30, n_samples=4)
    nf = pd.Series(1.0, index=counts.columns[:3])

    with pytest.raises(KeyError):
        normalize_counts(counts, norm_factors=nf, logger=logger)


@requires_r
def test_normalize_and_log_transform_return_new_objects(logger):
    counts = make_counts(n_genes=80, n_samples=6)
    adata = make_adata(counts, np.arange(6.0), ["batch1"] * 3 + ["batch2"] * 3)
    original = adata.X.copy()

    adata_norm = normalize_expression_data(adata, method="TMM", logger=logger)
    adata_log = log_transform(adata_norm, base=2, logger=logger)

    np.testing.assert_array_equal(adata.X, original)
    assert adata_norm.shape == adata.shape
    assert "norm_factor" in adata_norm.obs
    assert "norm_factor" not in adata.obs
    np.testing.assert_allclose(adata_norm.layers["norm_cpm"], adata_norm.X)
    np.testing.assert_allclose(adata_log.X, np.log2(adata_norm.X + 1))
    np.testing.assert_allclose(adata_log.layers["log_norm"], adata_log.X)


def test_score_gene_set_median_and_row_order(logger):
    log_expr = pd.DataFrame(
        {"s1": [1.0, 2.0, 9.0, 0.0], "s2": [3.0, 5.0, 4.0, 7.0]},
        index=["CD19", "MS4A1", "CD79A", "ACTB"],
    )
    gene_set = {"CD19", "MS4A1", "CD79A", "PAX5"}

    score = score_gene_set(log_expr, gene_set, logger=logger)
    shuffled = score_gene_set(log_expr.iloc[[3, 2, 0, 1]], gene_set, logger=logger)

    assert score["s1"] == 2.0
    assert score["s2"] == 4.0
    pd.testing.assert_series_equal(score, shuffled)


def test_score_gene_set_without_members_is_missing(logger):
    log_expr = pd.DataFrame({"s1": [1.0], "s2": [2.0]}, index=["ACTB"])
    score = score_gene_set(log_expr, ["CD19"], logger=logger)

    assert score.index.tolist() == ["s1", "s2"]
    assert score.isna().all()

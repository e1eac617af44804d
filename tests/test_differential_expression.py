import numpy as np
import pandas as pd
import pytest

from autoab_pipeline.differential_expression import (
    e_bayes,
    lm_fit,
    make_design,
    run_differential_expression,
    simplify_name,
    top_table,
    voom,
    voom_with_quality_weights,
)

from conftest import make_adata, make_counts, requires_r


def _annotation(n: int = 8) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "receptor_mfi": np.linspace(100, 800, n),
            "batch": ["batch1", "batch2"] * (n // 2),
        },
        index=[f"lib{i}" for i in range(n)],
    )


def _planted_counts(seed: int = 11):
    counts = make_counts(n_genes=200, n_samples=12, seed=seed)
    covariate = np.linspace(0.0, 3.0, counts.shape[1])
    depth = (counts.sum(axis=0) / counts.sum(axis=0).mean()).to_numpy()
    counts.loc["GENE0"] = np.random.default_rng(seed).poisson(
        200 * 2 ** covariate * depth
    )
    return counts, covariate


def test_simplify_name():
    assert simplify_name("receptor MFI (a.u.)") == "receptor_MFI_a_u"
    assert simplify_name("receptor_mfi") == "receptor_mfi"


def test_make_design_column_names():
    design = make_design(_annotation(), "receptor_mfi", batch_key="batch")

    assert design.columns.tolist() == ["Intercept", "receptor_mfi", "batchbatch2"]
    assert design["batchbatch2"].tolist() == [0.0, 1.0] * 4

    no_batch = make_design(_annotation(), "receptor_mfi", batch_key=None)
    assert no_batch.columns.tolist() == ["Intercept", "receptor_mfi"]


def test_make_design_rejects_missing_values():
    annotation = _annotation()
    annotation.loc["lib2", "receptor_mfi"] = np.nan

    with pytest.raises(ValueError):
        make_design(annotation, "receptor_mfi")

    with pytest.raises(KeyError):
        make_design(annotation, "severity")


@requires_r
def test_lm_fit_recovers_exact_coefficients():
    design = make_design(_annotation(), "receptor_mfi", batch_key=None)
    x = design["receptor_mfi"].to_numpy()
    E = pd.DataFrame(
        [2.0 + 0.01 * x, 5.0 - 0.002 * x],
        index=["A", "B"],
        columns=design.index,
    )
    fit = lm_fit(E, design)

    np.testing.assert_allclose(fit.coefficients.loc["A"], [2.0, 0.01], atol=1e-10)
    np.testing.assert_allclose(fit.coefficients.loc["B"], [5.0, -0.002], atol=1e-10)
    np.testing.assert_allclose(fit.sigma, 0.0, atol=1e-10)
    assert (fit.df_residual == 6).all()


def test_lm_fit_rank_deficient_design():
    design = make_design(_annotation(), "receptor_mfi", batch_key=None)
    design["copy"] = design["receptor_mfi"]
    E = pd.DataFrame(np.ones((3, 8)), columns=design.index)

    with pytest.raises(ValueError):
        lm_fit(E, design)


@requires_r
def test_voom_weights_are_positive():
    counts, covariate = _planted_counts()
    annotation = pd.DataFrame({"receptor_mfi": covariate}, index=counts.columns)
    design = make_design(annotation, "receptor_mfi", batch_key=None)

    v = voom(counts, design)

    assert v.E.shape == counts.shape
    assert v.weights.shape == counts.shape
    assert np.isfinite(v.weights.to_numpy()).all()
    assert (v.weights.to_numpy() > 0).all()


@requires_r
def test_planted_covariate_gene_ranks_first(logger):
    counts, covariate = _planted_counts()
    batch = ["batch1", "batch2"] * (counts.shape[1] // 2)
    adata = make_adata(counts, covariate, batch)

    results = run_differential_expression(
        adata, "receptor_mfi", batch_key="batch", logger=logger
    )

    assert results.columns.tolist() == ["logFC", "AveExpr", "t", "P.Value", "adj.P.Val"]
    assert results.index[0] == "GENE0"
    assert results.loc["GENE0", "logFC"] == pytest.approx(1.0, abs=0.2)
    assert results.loc["GENE0", "adj.P.Val"] < 0.05
    assert results["P.Value"].is_monotonic_increasing
    assert len(results) == counts.shape[0]


@requires_r
def test_top_table_errors():
    design = make_design(_annotation(), "receptor_mfi", batch_key=None)
    E = pd.DataFrame(
        np.random.default_rng(0).normal(size=(30, 8)), columns=design.index
    )
    fit = lm_fit(E, design)

    with pytest.raises(ValueError):
        top_table(fit, "receptor_mfi")

    moderated = e_bayes(fit)
    with pytest.raises(KeyError):
        top_table(moderated, "severity")

    table = top_table(moderated, "receptor_mfi", n=5)
    assert len(table) == 5
    assert (moderated.df_total <= fit.df_residual.sum()).all()


@requires_r
def test_e_bayes_needs_two_genes():
    design = make_design(_annotation(), "receptor_mfi", batch_key=None)
    E = pd.DataFrame(
        np.random.default_rng(0).normal(size=(1, 8)), columns=design.index
    )

    with pytest.raises(ValueError):
        e_bayes(lm_fit(E, design))


@requires_r
def test_noisy_sample_gets_lowest_quality_weight(logger):
    rng = np.random.default_rng(5)
    n_genes, n_samples = 500, 12
    base = rng.gamma(2.0, 100.0, size=n_genes)
    mu = base[:, None] * rng.lognormal(0.0, 0.1, size=(n_genes, n_samples))
    mu[:, 3] *= rng.lognormal(0.0, 0.8, size=n_genes)
    counts = pd.DataFrame(
        rng.poisson(mu),
        index=[f"GENE{i}" for i in range(n_genes)],
        columns=[f"lib{10000 + 10 * j}" for j in range(n_samples)],
    )
    annotation = pd.DataFrame(
        {
            "receptor_mfi": np.linspace(100, 800, n_samples),
            "batch": ["batch1", "batch2"] * (n_samples // 2),
        },
        index=counts.columns,
    )
    design = make_design(annotation, "receptor_mfi", batch_key="batch")

    v = voom_with_quality_weights(counts, design, logger=logger)
    weights = v.sample_weights
    noisy = counts.columns[3]

    assert weights.idxmin() == noisy
    clean = weights.drop(noisy)
    assert clean.max() / clean.min() < 1.5
    assert v.weights.shape == counts.shape


def test_voom_rejects_missing_norm_factor():
    counts, covariate = _planted_counts()
    annotation = pd.DataFrame({"receptor_mfi": covariate}, index=counts.columns)
    design = make_design(annotation, "receptor_mfi", batch_key=None)
    nf = pd.Series(1.0, index=counts.columns[1:])

    with pytest.raises(KeyError):
        voom(counts, design, norm_factors=nf)

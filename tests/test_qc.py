import numpy as np
import pandas as pd
import pytest

from autoab_pipeline.qc import (
    compute_cpm,
    drop_missing_covariate,
    filter_genes_by_cpm,
    library_size_summary,
    plot_library_sizes,
)

from conftest import make_adata, make_counts


def _two_expressed_genes() -> pd.DataFrame:
    x = np.zeros((10, 4))
    x[0] = [500, 800, 650, 720]
    x[1] = [300, 200, 410, 260]
    return pd.DataFrame(
        x,
        index=[f"GENE{i}" for i in range(10)],
        columns=["lib1", "lib2", "lib3", "lib4"],
    )


def test_filter_keeps_exactly_expressed_genes(logger):
    counts = _two_expressed_genes()
    kept = filter_genes_by_cpm(counts, min_cpm=1, min_lib_perc=0.1, logger=logger)

    assert kept.index.tolist() == ["GENE0", "GENE1"]


def test_filter_on_anndata_returns_anndata(logger):
    counts = _two_expressed_genes()
    adata = make_adata(counts, np.arange(4.0), ["batch1"] * 4)
    kept = filter_genes_by_cpm(adata, min_cpm=1, min_lib_perc=0.1, logger=logger)

    assert kept.var_names.tolist() == ["GENE0", "GENE1"]
    assert kept.n_obs == 4
    assert adata.n_vars == 10


def test_filter_is_monotone_in_thresholds(logger):
    counts = make_counts(n_genes=300, n_samples=8, seed=3)
    counts.iloc[::7] = 0
    counts.iloc[::5, ::2] = 0

    previous = None
    for min_cpm in [0.0, 1.0, 100.0, 2000.0, 10000.0]:
        n = filter_genes_by_cpm(counts, min_cpm=min_cpm, min_lib_perc=0.5, logger=logger).shape[0]
        if previous is not None:
            assert n <= previous
        previous = n

    previous = None
    for min_lib_perc in [0.0, 0.25, 0.5, 0.75, 1.0]:
        n = filter_genes_by_cpm(counts, min_cpm=1.0, min_lib_perc=min_lib_perc, logger=logger).shape[0]
        if previous is not None:
            assert n <= previous
        previous = n


def test_retained_rows_satisfy_condition(logger):
    counts = make_counts(n_genes=150, n_samples=6, seed=5)
    counts.iloc[::3, :4] = 0
    kept = filter_genes_by_cpm(counts, min_cpm=2.0, min_lib_perc=0.5, logger=logger)

    cpm = compute_cpm(counts).loc[kept.index]
    assert ((cpm >= 2.0).mean(axis=1) >= 0.5).all()


def test_compute_cpm_zero_library():
    counts = pd.DataFrame({"a": [1, 2], "b": [0, 0]}, index=["G1", "G2"])

    with pytest.raises(ValueError):
        compute_cpm(counts)


@pytest.mark.parametrize("min_cpm, min_lib_perc", [(-1, 0.1), (1, 1.5), (1, -0.1)])
def test_filter_rejects_invalid_thresholds(min_cpm, min_lib_perc, logger):
    with pytest.raises(ValueError):
        filter_genes_by_cpm(
            _two_expressed_genes(), min_cpm=min_cpm, min_lib_perc=min_lib_perc, logger=logger
        )


def test_drop_missing_covariate(logger):
    counts = make_counts(n_genes=20, n_samples=4)
    adata = make_adata(counts, [1.0, np.nan, 3.0, 4.0], ["batch1"] * 4)
    out = drop_missing_covariate(adata, "receptor_mfi", logger=logger)

    assert out.n_obs == 3
    assert counts.columns[1] not in out.obs_names

    with pytest.raises(KeyError):
        drop_missing_covariate(adata, "not_a_column", logger=logger)


def test_library_size_summary_and_plot(tmp_path, logger):
    counts = make_counts(n_genes=50, n_samples=5)
    adata = make_adata(counts, np.arange(5.0), ["batch1", "batch2", None, "batch1", "batch2"])

    summary = library_size_summary(adata, logger=logger)
    np.testing.assert_allclose(summary["total_counts"].to_numpy(), counts.sum(axis=0).to_numpy())

    out = tmp_path / "figures" / "library_sizes.png"
    plot_library_sizes(summary, out, hue=adata.obs["batch"], logger=logger)
    assert out.exists()

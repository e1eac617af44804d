import logging

import matplotlib

matplotlib.use("Agg")

import anndata as ad
import numpy as np
import pandas as pd
import pytest

from autoab_pipeline.r_utils import r_available


requires_r = pytest.mark.skipif(
    not r_available(), reason="R with limma and edgeR is not available"
)


@pytest.fixture
def logger() -> logging.Logger:
    log = logging.getLogger("AutoAb_Pipeline.tests")
    log.setLevel(logging.DEBUG)
    return log


def make_counts(n_genes: int = 200, n_samples: int = 12, seed: int = 0) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    base = rng.gamma(2.0, 50.0, size=n_genes)
    depth = rng.uniform(0.6, 1.4, size=n_samples)
    x = rng.poisson(np.outer(base, depth))
    return pd.DataFrame(
        x,
        index=[f"GENE{i}" for i in range(n_genes)],
        columns=[f"lib{10000 + 10 * j}" for j in range(n_samples)],
    )


def make_adata(counts: pd.DataFrame, covariate: np.ndarray, batch) -> ad.AnnData:
    obs = pd.DataFrame(
        {"receptor_mfi": covariate, "batch": list(batch)},
        index=pd.Index(counts.columns, name="library_id"),
    )
    X = counts.T.to_numpy(dtype=np.float64)
    adata = ad.AnnData(X=X, obs=obs, var=pd.DataFrame(index=counts.index))
    adata.layers["counts"] = X.copy()
    return adata

"""
Preprocessing Module
====================

This module implements normalization steps for bulk RNA-seq count data:
- TMM (trimmed mean of M-values) normalization factors via edgeR
- Normalized counts per million
- Log transformation
- Gene set scoring

Author: Alfred3005
"""

import logging
from enum import Enum
from typing import Iterable, Optional, Union

import numpy as np
import pandas as pd
import scanpy as sc
import anndata as ad

from .utils import setup_logging, expression_frame, InvalidArgumentError
from .r_utils import r_package, to_r_matrix, from_r_vector


class NormalizationMethod(Enum):
    """Supported library-size normalization methods."""

    TMM = "TMM"


def parse_normalization_method(
    method: Union[str, NormalizationMethod]
) -> NormalizationMethod:
    """
    Resolve a method selector to a `NormalizationMethod`.

    Raises
    ------
    InvalidArgumentError
        If `method` does not name a supported method
    """
    if isinstance(method, NormalizationMethod):
        return method

    if isinstance(method, str):
        for member in NormalizationMethod:
            if method.strip().upper() == member.value.upper():
                return member

    raise InvalidArgumentError(
        f"Unsupported normalization method: {method!r}. "
        f"Supported: {[m.value for m in NormalizationMethod]}"
    )


def _upper_quartile_factors(counts: np.ndarray, lib_size: np.ndarray) -> np.ndarray:
    return np.quantile(counts / lib_size, 0.75, axis=0)


def select_reference_library(
    counts: pd.DataFrame,
    reference: str = "geometric"
) -> str:
    """
    Pick the TMM reference library.

    The reference is the library whose upper quartile (of count / library
    size) is closest to the mean of all upper quartiles, geometric by
    default. When any upper quartile is zero the geometric mean is zero too,
    so the library with the largest sum of square-root counts is used
    instead, as edgeR does when most upper quartiles vanish.

    Parameters
    ----------
    counts : pd.DataFrame
        Genes x samples raw counts, no empty library
    reference : {"geometric", "arithmetic"}, default "geometric"
        Mean of the upper quartiles; "arithmetic" reproduces edgeR

    Returns
    -------
    str
        Sample ID of the reference library
    """
    if reference not in ("arithmetic", "geometric"):
        raise InvalidArgumentError(f"Unsupported reference rule: {reference!r}")

    x = counts.to_numpy(dtype=np.float64)
    lib_size = x.sum(axis=0)
    x = x[(x > 0).any(axis=1)]

    f75 = _upper_quartile_factors(x, lib_size)

    if np.median(f75) < 1e-20 or (reference == "geometric" and np.any(f75 <= 0)):
        ref_column = int(np.argmax(np.sqrt(x).sum(axis=0)))
    elif reference == "geometric":
        ref_column = int(np.argmin(np.abs(f75 - np.exp(np.mean(np.log(f75))))))
    else:
        ref_column = int(np.argmin(np.abs(f75 - np.mean(f75))))

    return counts.columns[ref_column]


def calc_norm_factors(
    counts: pd.DataFrame,
    method: Union[str, NormalizationMethod] = NormalizationMethod.TMM,
    reference: str = "geometric",
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    do_weighting: bool = True,
    logger: Optional[logging.Logger] = None
) -> pd.Series:
    """
    Compute per-sample TMM normalization factors with edgeR.

    The reference library comes from `select_reference_library` and is
    passed to ``edgeR::calcNormFactors``. Factors have a geometric mean of 1.

    Parameters
    ----------
    counts : pd.DataFrame
        Genes x samples raw counts
    method : str or NormalizationMethod, default TMM
        Normalization method
    reference : {"geometric", "arithmetic"}, default "geometric"
        Mean of the upper quartiles used to pick the reference library;
        "arithmetic" reproduces edgeR's default choice
    logratio_trim : float, default 0.3
        Fraction of M-values trimmed from each tail
    sum_trim : float, default 0.05
        Fraction of A-values trimmed from each tail
    do_weighting : bool, default True
        Whether to use asymptotic binomial precision weights
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    pd.Series
        Normalization factor per sample

    Examples
    --------
    >>> nf = calc_norm_factors(counts)
    >>> np.exp(np.log(nf).mean())  # 1.0
    """
    if logger is None:
        logger = setup_logging()

    method = parse_normalization_method(method)

    lib_size = counts.sum(axis=0)
    if (lib_size <= 0).any():
        empty = counts.columns[lib_size <= 0].tolist()
        raise ValueError(f"Samples with zero total count: {empty}")

    ref = select_reference_library(counts, reference=reference)

    edger = r_package("edgeR")
    factors = edger.calcNormFactors(
        to_r_matrix(counts),
        method=method.value,
        refColumn=counts.columns.get_loc(ref) + 1,
        logratioTrim=logratio_trim,
        sumTrim=sum_trim,
        doWeighting=do_weighting
    )
    factors = from_r_vector(factors, counts.columns)

    logger.info(
        f"{method.value} normalization factors: reference library {ref}, "
        f"range {factors.min():.3f}-{factors.max():.3f}"
    )

    return pd.Series(factors, index=counts.columns, name="norm_factor")


def normalize_counts(
    counts: pd.DataFrame,
    method: Union[str, NormalizationMethod] = NormalizationMethod.TMM,
    norm_factors: Optional[pd.Series] = None,
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Counts per million divided by each sample's normalization factor.

    Parameters
    ----------
    counts : pd.DataFrame
        Genes x samples filtered raw counts
    method : str or NormalizationMethod, default TMM
        Normalization method
    norm_factors : pd.Series, optional
        Precomputed factors; computed with `calc_norm_factors` if None
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    pd.DataFrame
        Normalized matrix with the same shape as `counts`
    """
    if logger is None:
        logger = setup_logging()

    method = parse_normalization_method(method)

    if norm_factors is None:
        norm_factors = calc_norm_factors(counts, method=method, logger=logger)

    norm_factors = norm_factors.reindex(counts.columns)
    if norm_factors.isna().any():
        missing = counts.columns[norm_factors.isna()].tolist()
        raise KeyError(f"No normalization factor for samples: {missing}")

    lib_size = counts.sum(axis=0)
    return counts.div(lib_size * norm_factors, axis=1) * 1e6


def normalize_expression_data(
    adata: ad.AnnData,
    method: Union[str, NormalizationMethod] = NormalizationMethod.TMM,
    layer: str = "counts",
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Normalize an AnnData object, returning a new one.

    The returned object holds normalized CPM in ``X`` and in
    ``layers['norm_cpm']``; factors go to ``obs['norm_factor']``.

    Examples
    --------
    >>> adata_norm = normalize_expression_data(adata, method="TMM", logger=logger)
    """
    if logger is None:
        logger = setup_logging()

    method = parse_normalization_method(method)

    logger.info(f"Normalizing counts ({method.value})...")

    counts = expression_frame(adata, layer if layer in adata.layers else None)
    norm_factors = calc_norm_factors(counts, method=method, logger=logger)
    normalized = normalize_counts(counts, method, norm_factors, logger=logger)

    out = adata.copy()
    out.obs["norm_factor"] = norm_factors.reindex(out.obs_names).values
    out.obs["lib_size"] = counts.sum(axis=0).reindex(out.obs_names).values
    out.X = normalized.T.to_numpy()
    out.layers["norm_cpm"] = out.X.copy()

    logger.info("Normalization complete")

    return out


def log_transform(
    adata: ad.AnnData,
    base: float = 2,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Log-transform normalized values: log(x + 1), returning a new object.

    Examples
    --------
    >>> adata_log = log_transform(adata_norm, base=2, logger=logger)
    """
    if logger is None:
        logger = setup_logging()

    logger.info(f"Applying log transformation: log{base:g}(x + 1)...")

    out = sc.pp.log1p(adata, base=base, copy=True)
    out.layers["log_norm"] = out.X.copy()

    logger.info("Log transformation complete")

    return out


def score_gene_set(
    log_expr: pd.DataFrame,
    gene_set: Iterable[str],
    logger: Optional[logging.Logger] = None
) -> pd.Series:
    """
    Median log-expression of the gene set's members, per sample.

    Members absent from the matrix are ignored. If none is present the result
    is all-NaN.

    Parameters
    ----------
    log_expr : pd.DataFrame
        Genes x samples log-expression
    gene_set : iterable of str
        Gene symbols
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    pd.Series
        Score per sample
    """
    if logger is None:
        logger = setup_logging()

    gene_set = set(gene_set)
    present = log_expr.index[log_expr.index.isin(gene_set)]

    logger.info(f"Gene set scoring: {len(present)} of {len(gene_set)} genes present")

    if len(present) == 0:
        logger.warning("No gene set members found in expression matrix")
        return pd.Series(np.nan, index=log_expr.columns, name="gene_set_score")

    score = log_expr.loc[present].median(axis=0)
    score.name = "gene_set_score"

    return score

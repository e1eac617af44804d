"""
Differential Expression Module
==============================

This module relates gene expression to a continuous covariate using limma:
- Design matrix construction with simplified coefficient names
- voom: log-CPM with precision weights from the mean-variance trend
- Sample quality weights (arrayWeights)
- Weighted linear model fit per gene
- Empirical Bayes moderation of residual variances
- Ranked result tables

Matrices cross into R by sample ID; results come back as pandas objects.

Author: Alfred3005
"""

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Optional

import numpy as np
import pandas as pd
import anndata as ad

from .utils import setup_logging, expression_frame, log_memory_usage, cleanup_memory
from .preprocessing import calc_norm_factors
from .r_utils import (
    r_package,
    r_item,
    to_r_matrix,
    to_r_vector,
    from_r_matrix,
    from_r_vector,
    from_r_dataframe,
)


TOP_TABLE_COLUMNS = ["logFC", "AveExpr", "t", "P.Value", "adj.P.Val"]


@dataclass(frozen=True)
class LinearModelFit:
    """Per-gene linear model fit, optionally moderated by `e_bayes`."""

    coefficients: pd.DataFrame
    stdev_unscaled: pd.DataFrame
    sigma: pd.Series
    df_residual: pd.Series
    amean: pd.Series
    design: pd.DataFrame
    r_fit: Any = field(default=None, repr=False, compare=False)
    s2_prior: Optional[float] = None
    df_prior: Optional[float] = None
    s2_post: Optional[pd.Series] = None
    t: Optional[pd.DataFrame] = None
    p_value: Optional[pd.DataFrame] = None
    df_total: Optional[pd.Series] = None


@dataclass(frozen=True)
class VoomResult:
    """log-CPM values with observation-level precision weights."""

    E: pd.DataFrame
    weights: pd.DataFrame
    lib_size: pd.Series
    sample_weights: Optional[pd.Series] = None


def simplify_name(name: str) -> str:
    """Strip characters that are not valid in a coefficient name."""
    return re.sub(r"\W+", "_", str(name)).strip("_")


def make_design(
    annotation: pd.DataFrame,
    covariate: str,
    batch_key: Optional[str] = "batch"
) -> pd.DataFrame:
    """
    Design matrix with an intercept, the covariate and batch indicators.

    Columns are named ``Intercept``, the simplified covariate name, and
    ``<batch_key><level>`` for each non-reference batch level, so the
    covariate coefficient can be selected by name.

    Parameters
    ----------
    annotation : pd.DataFrame
        Sample annotation indexed by sample ID
    covariate : str
        Continuous covariate column
    batch_key : str, optional
        Batch column; omitted from the design if None

    Returns
    -------
    pd.DataFrame
        Samples x coefficients design, indexed like `annotation`

    Raises
    ------
    KeyError
        If a column is missing
    ValueError
        If the covariate or batch has missing values
    """
    for col in [covariate] + ([batch_key] if batch_key else []):
        if col not in annotation.columns:
            raise KeyError(
                f"Column '{col}' not found in sample annotation. "
                f"Available columns: {list(annotation.columns)}"
            )

    values = pd.to_numeric(annotation[covariate], errors="coerce")
    if values.isna().any():
        raise ValueError(
            f"Covariate '{covariate}' has {int(values.isna().sum())} missing "
            f"values; drop those samples first"
        )

    cov_name = simplify_name(covariate)
    if cov_name in ("Intercept",):
        raise ValueError(f"Covariate name clashes with the intercept: {covariate!r}")

    design = pd.DataFrame(
        {"Intercept": 1.0, cov_name: values.astype(float)},
        index=annotation.index
    )

    if batch_key:
        batch = annotation[batch_key]
        if batch.isna().any():
            raise ValueError(f"Batch '{batch_key}' has missing labels")

        levels = sorted(batch.unique())
        for lvl in levels[1:]:
            name = simplify_name(f"{batch_key}{lvl}")
            if name in design.columns:
                raise ValueError(f"Duplicate design column name: {name}")
            design[name] = (batch == lvl).astype(float).values

    return design


def _align_design(design: pd.DataFrame, samples: pd.Index) -> pd.DataFrame:
    missing = samples.difference(design.index)
    if len(missing) > 0:
        raise KeyError(f"Design matrix lacks samples: {list(missing)[:10]}")
    return design.loc[samples]


def _gene_series(r_fit: Any, name: str, genes: pd.Index, label: str) -> pd.Series:
    return pd.Series(from_r_vector(r_item(r_fit, name), genes), index=genes, name=label)


def lm_fit(
    E: pd.DataFrame,
    design: pd.DataFrame,
    weights: Optional[pd.DataFrame] = None
) -> LinearModelFit:
    """
    Fit a (weighted) least-squares linear model to every gene (limma lmFit).

    Parameters
    ----------
    E : pd.DataFrame
        Genes x samples expression values
    design : pd.DataFrame
        Samples x coefficients design, matched to `E` by sample ID
    weights : pd.DataFrame, optional
        Genes x samples precision weights

    Returns
    -------
    LinearModelFit

    Raises
    ------
    ValueError
        If the design is rank deficient or leaves no residual degrees of freedom
    """
    design = _align_design(design, E.columns).astype(float)
    X = design.to_numpy()

    if np.linalg.matrix_rank(X) < X.shape[1]:
        raise ValueError("Design matrix is not of full column rank")

    if E.shape[1] - X.shape[1] < 1:
        raise ValueError("No residual degrees of freedom")

    limma = r_package("limma")

    kwargs = {}
    if weights is not None:
        kwargs["weights"] = to_r_matrix(weights.loc[E.index, E.columns])

    r_fit = limma.lmFit(to_r_matrix(E), to_r_matrix(design), **kwargs)

    genes = E.index
    return LinearModelFit(
        coefficients=from_r_matrix(r_item(r_fit, "coefficients"), genes, design.columns),
        stdev_unscaled=from_r_matrix(r_item(r_fit, "stdev.unscaled"), genes, design.columns),
        sigma=_gene_series(r_fit, "sigma", genes, "sigma"),
        df_residual=_gene_series(r_fit, "df.residual", genes, "df_residual"),
        amean=_gene_series(r_fit, "Amean", genes, "AveExpr"),
        design=design,
        r_fit=r_fit
    )


def voom(
    counts: pd.DataFrame,
    design: pd.DataFrame,
    norm_factors: Optional[pd.Series] = None,
    sample_weights: Optional[pd.Series] = None,
    span: float = 0.5
) -> VoomResult:
    """
    Transform counts to log2-CPM and estimate precision weights (limma voom).

    Parameters
    ----------
    counts : pd.DataFrame
        Genes x samples raw counts
    design : pd.DataFrame
        Samples x coefficients design
    norm_factors : pd.Series, optional
        Normalization factors; effective library size is total x factor
    sample_weights : pd.Series, optional
        Sample weights used when fitting the trend model
    span : float, default 0.5
        lowess span

    Returns
    -------
    VoomResult
        The weights are voom's precision weights only; sample weights are
        not multiplied in.
    """
    samples = counts.columns
    design = _align_design(design, samples).astype(float)

    lib_size = counts.sum(axis=0).astype(float)
    if norm_factors is not None:
        norm_factors = norm_factors.reindex(samples)
        if norm_factors.isna().any():
            missing = samples[norm_factors.isna()].tolist()
            raise KeyError(f"No normalization factor for samples: {missing}")
        lib_size = lib_size * norm_factors.astype(float)

    limma = r_package("limma")

    kwargs = {}
    if sample_weights is not None:
        kwargs["weights"] = to_r_vector(sample_weights.reindex(samples))

    v = limma.voom(
        to_r_matrix(counts),
        to_r_matrix(design),
        lib_size=to_r_vector(lib_size),
        span=span,
        **kwargs
    )

    return VoomResult(
        E=from_r_matrix(r_item(v, "E"), counts.index, samples),
        weights=from_r_matrix(r_item(v, "weights"), counts.index, samples),
        lib_size=lib_size.rename("lib_size"),
        sample_weights=sample_weights
    )


def array_weights(
    E: pd.DataFrame,
    design: pd.DataFrame,
    weights: Optional[pd.DataFrame] = None,
    prior_n: float = 10.0
) -> pd.Series:
    """
    Estimate relative sample quality weights (limma arrayWeights).

    Sample variance factors are estimated by REML across all genes and
    squeezed toward equal weights with `prior_n` prior genes.

    Returns
    -------
    pd.Series
        Weight per sample
    """
    design = _align_design(design, E.columns).astype(float)
    limma = r_package("limma")

    kwargs = {"prior_n": prior_n}
    if weights is not None:
        kwargs["weights"] = to_r_matrix(weights.loc[E.index, E.columns])

    aw = limma.arrayWeights(to_r_matrix(E), design=to_r_matrix(design), **kwargs)

    return pd.Series(from_r_vector(aw, E.columns), index=E.columns, name="sample_weight")


def voom_with_quality_weights(
    counts: pd.DataFrame,
    design: pd.DataFrame,
    norm_factors: Optional[pd.Series] = None,
    span: float = 0.5,
    logger: Optional[logging.Logger] = None
) -> VoomResult:
    """
    voom combined with sample quality weights.

    voom and `array_weights` are alternated twice, as limma's
    voomWithQualityWeights does; the returned weights are the voom precision
    weights multiplied by the sample weights.
    """
    if logger is None:
        logger = setup_logging()

    v = voom(counts, design, norm_factors=norm_factors, span=span)
    aw = array_weights(v.E, design, v.weights)

    v = voom(counts, design, norm_factors=norm_factors, sample_weights=aw, span=span)
    aw = array_weights(v.E, design, v.weights)

    logger.info(
        f"Sample quality weights: range {aw.min():.2f}-{aw.max():.2f} "
        f"(lowest: {aw.idxmin()})"
    )

    return replace(v, weights=v.weights.mul(aw, axis=1), sample_weights=aw)


def e_bayes(fit: LinearModelFit) -> LinearModelFit:
    """
    Empirical Bayes moderation of the gene-wise residual variances (limma eBayes).

    Variances are shrunk toward a common prior; moderated t statistics and
    two-sided p-values are computed for every coefficient.
    """
    if len(fit.sigma) < 2:
        raise ValueError("Empirical Bayes moderation needs at least two genes")

    if fit.r_fit is None:
        raise ValueError("Fit has no limma model; use lm_fit")

    limma = r_package("limma")
    r_fit = limma.eBayes(fit.r_fit)

    genes = fit.coefficients.index
    coefs = fit.coefficients.columns

    return replace(
        fit,
        r_fit=r_fit,
        s2_prior=float(from_r_vector(r_item(r_fit, "s2.prior"))[0]),
        df_prior=float(from_r_vector(r_item(r_fit, "df.prior"))[0]),
        s2_post=_gene_series(r_fit, "s2.post", genes, "s2_post"),
        t=from_r_matrix(r_item(r_fit, "t"), genes, coefs),
        p_value=from_r_matrix(r_item(r_fit, "p.value"), genes, coefs),
        df_total=_gene_series(r_fit, "df.total", genes, "df_total")
    )


def top_table(
    fit: LinearModelFit,
    coef: str,
    n: Optional[int] = None
) -> pd.DataFrame:
    """
    Rank genes by evidence of association with one coefficient (limma topTable).

    Parameters
    ----------
    fit : LinearModelFit
        Output of `e_bayes`
    coef : str
        Coefficient name (design column)
    n : int, optional
        Number of top genes to return; all if None

    Returns
    -------
    pd.DataFrame
        Columns ``logFC``, ``AveExpr``, ``t``, ``P.Value``, ``adj.P.Val``,
        sorted ascending by ``P.Value``. Adjustment (Benjamini-Hochberg) is
        over all genes.
    """
    if fit.t is None:
        raise ValueError("Fit is not moderated; run e_bayes first")

    if coef not in fit.coefficients.columns:
        raise KeyError(
            f"Coefficient '{coef}' not in design. "
            f"Available: {list(fit.coefficients.columns)}"
        )

    limma = r_package("limma")
    n_genes = len(fit.coefficients)

    table = from_r_dataframe(
        limma.topTable(
            fit.r_fit,
            coef=coef,
            number=n_genes if n is None else min(int(n), n_genes),
            sort_by="P",
            adjust_method="BH"
        )
    )

    labels = {str(g): g for g in fit.coefficients.index}
    table.index = pd.Index([labels[str(g)] for g in table.index])

    return table[TOP_TABLE_COLUMNS]


def run_differential_expression(
    adata: ad.AnnData,
    covariate: str,
    batch_key: Optional[str] = "batch",
    layer: str = "counts",
    quality_weights: bool = True,
    span: float = 0.5,
    norm_factors: Optional[pd.Series] = None,
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Differential expression against a continuous covariate.

    Parameters
    ----------
    adata : AnnData
        Filtered samples x genes data with raw counts in `layer`, samples with
        missing covariate already removed
    covariate : str
        Continuous covariate of interest
    batch_key : str, optional
        Batch column added to the design
    layer : str, default "counts"
        Layer holding raw counts
    quality_weights : bool, default True
        Whether to estimate sample quality weights
    span : float, default 0.5
        lowess span for the mean-variance trend
    norm_factors : pd.Series, optional
        TMM factors for exactly these samples; computed from the counts
        if None
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    pd.DataFrame
        Full ranked table (see `top_table`)

    Examples
    --------
    >>> results = run_differential_expression(adata, "receptor_mfi", logger=logger)
    >>> results.head(50)
    """
    if logger is None:
        logger = setup_logging()

    logger.info("=" * 60)
    logger.info(f"Starting differential expression against '{covariate}'")
    logger.info("=" * 60)

    counts = expression_frame(adata, layer if layer in adata.layers else None)
    design = make_design(adata.obs, covariate, batch_key)

    if norm_factors is None:
        norm_factors = calc_norm_factors(counts, logger=logger)

    logger.info(
        f"Design: {design.shape[0]} samples, coefficients {list(design.columns)}"
    )

    if quality_weights:
        v = voom_with_quality_weights(
            counts, design, norm_factors=norm_factors, span=span, logger=logger
        )
    else:
        v = voom(counts, design, norm_factors=norm_factors, span=span)

    fit = e_bayes(lm_fit(v.E, design, weights=v.weights))

    logger.info(
        f"Empirical Bayes prior: s2 = {fit.s2_prior:.4f}, df = {fit.df_prior:.2f}"
    )

    results = top_table(fit, simplify_name(covariate))

    n_sig = int((results["adj.P.Val"] < 0.05).sum())
    logger.info(f"Genes with adj.P.Val < 0.05: {n_sig:,} of {len(results):,}")

    cleanup_memory(logger)
    log_memory_usage(logger)

    return results

"""
Quality Control Module
======================

This module implements quality control for bulk RNA-seq count data:
- Library size and detected-gene metrics per sample
- Counts-per-million (CPM) computation
- Expression-based gene filtering
- Removal of samples lacking the covariate of interest
- QC visualization

Author: Alfred3005
"""

import logging
from typing import Optional, Union
from pathlib import Path

import pandas as pd
import scanpy as sc
import anndata as ad
import matplotlib.pyplot as plt
import seaborn as sns

from .utils import setup_logging, ensure_dir, expression_frame


def compute_cpm(counts: pd.DataFrame) -> pd.DataFrame:
    """
    Counts per million: each count divided by its sample total, times 1e6.

    Parameters
    ----------
    counts : pd.DataFrame
        Genes x samples raw counts

    Returns
    -------
    pd.DataFrame
        CPM values, same shape as `counts`

    Raises
    ------
    ValueError
        If a sample has zero total count (CPM undefined)
    """
    lib_size = counts.sum(axis=0)

    empty = lib_size.index[lib_size <= 0]
    if len(empty) > 0:
        raise ValueError(
            f"Samples with zero total count, CPM undefined: {list(empty)}"
        )

    return counts.div(lib_size, axis=1) * 1e6


def filter_genes_by_cpm(
    data: Union[ad.AnnData, pd.DataFrame],
    min_cpm: float = 1.0,
    min_lib_perc: float = 0.1,
    layer: str = "counts",
    logger: Optional[logging.Logger] = None
) -> Union[ad.AnnData, pd.DataFrame]:
    """
    Keep genes with CPM >= `min_cpm` in at least `min_lib_perc` of samples.

    Genes are only removed, never reordered.

    Parameters
    ----------
    data : AnnData or pd.DataFrame
        Samples x genes AnnData (raw counts in `layer`) or genes x samples
        count DataFrame
    min_cpm : float, default 1.0
        Minimum counts per million
    min_lib_perc : float, default 0.1
        Minimum fraction of samples (0-1) that must pass `min_cpm`
    layer : str, default "counts"
        AnnData layer with raw counts; ``adata.X`` is used if absent
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    AnnData or pd.DataFrame
        Filtered copy of the same type as `data`

    Examples
    --------
    >>> adata = filter_genes_by_cpm(adata, min_cpm=1, min_lib_perc=0.1)
    """
    if logger is None:
        logger = setup_logging()

    if min_cpm < 0:
        raise ValueError(f"min_cpm must be >= 0, got {min_cpm}")
    if not 0 <= min_lib_perc <= 1:
        raise ValueError(f"min_lib_perc must be within [0, 1], got {min_lib_perc}")

    if isinstance(data, ad.AnnData):
        counts = expression_frame(data, layer if layer in data.layers else None)
    else:
        counts = data

    cpm = compute_cpm(counts)
    frac_passing = (cpm >= min_cpm).mean(axis=1)
    keep = (frac_passing >= min_lib_perc).to_numpy()

    n_before = counts.shape[0]
    n_kept = int(keep.sum())

    logger.info(
        f"Gene filtering (CPM >= {min_cpm} in >= {min_lib_perc*100:.0f}% of samples): "
        f"kept {n_kept:,} of {n_before:,} genes ({n_before - n_kept:,} removed)"
    )

    if n_kept == 0:
        logger.warning("No genes passed the expression filter")

    if isinstance(data, ad.AnnData):
        return data[:, keep].copy()

    return data.loc[keep].copy()


def library_size_summary(
    adata: ad.AnnData,
    layer: str = "counts",
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Per-sample total counts and number of detected genes.

    Returns
    -------
    pd.DataFrame
        Indexed by sample with ``total_counts`` and ``n_genes_by_counts``
    """
    if logger is None:
        logger = setup_logging()

    obs_metrics, _ = sc.pp.calculate_qc_metrics(
        adata,
        layer=layer if layer in adata.layers else None,
        percent_top=None,
        log1p=False,
        inplace=False
    )

    summary = obs_metrics[["total_counts", "n_genes_by_counts"]].copy()

    logger.info("Library size summary:")
    logger.info(f"  Median counts/sample: {summary['total_counts'].median():,.0f}")
    logger.info(f"  Min counts/sample: {summary['total_counts'].min():,.0f}")
    logger.info(f"  Median genes detected: {summary['n_genes_by_counts'].median():,.0f}")

    empty = summary.index[summary["total_counts"] <= 0]
    if len(empty) > 0:
        logger.warning(f"{len(empty)} samples have zero counts: {list(empty)[:10]}")

    return summary


def drop_missing_covariate(
    adata: ad.AnnData,
    covariate: str,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Remove samples whose covariate value is missing.

    Missing values are never imputed.
    """
    if logger is None:
        logger = setup_logging()

    if covariate not in adata.obs.columns:
        raise KeyError(
            f"Covariate '{covariate}' not found in sample annotation. "
            f"Available columns: {list(adata.obs.columns)}"
        )

    values = pd.to_numeric(adata.obs[covariate], errors="coerce")
    keep = values.notna().to_numpy()

    n_dropped = int((~keep).sum())
    if n_dropped > 0:
        logger.info(
            f"Dropping {n_dropped} samples with missing '{covariate}' "
            f"({int(keep.sum())} remain)"
        )

    return adata[keep].copy()


def plot_library_sizes(
    summary: pd.DataFrame,
    output_path: Path,
    hue: Optional[pd.Series] = None,
    figsize=(12, 5),
    logger: Optional[logging.Logger] = None
) -> None:
    """
    Bar chart of library sizes and detected genes per sample.

    Parameters
    ----------
    summary : pd.DataFrame
        Output of `library_size_summary`
    output_path : Path
        Output file path
    hue : pd.Series, optional
        Per-sample grouping (e.g. batch) used for bar colors
    figsize : tuple, default (12, 5)
        Figure size
    logger : logging.Logger, optional
        Logger instance
    """
    if logger is None:
        logger = setup_logging()

    output_path = Path(output_path)
    ensure_dir(output_path.parent)

    logger.info("Generating library size plots...")

    df = summary.copy()
    df["sample"] = df.index.astype(str)
    df["total_counts_m"] = df["total_counts"] / 1e6
    if hue is not None:
        group = hue.astype(object).reindex(summary.index).fillna("unlabeled")
        df["group"] = group.astype(str).values

    fig, axes = plt.subplots(1, 2, figsize=figsize)

    sns.barplot(
        data=df, x="sample", y="total_counts_m",
        hue="group" if hue is not None else None,
        dodge=False, ax=axes[0]
    )
    axes[0].set_ylabel("Library size (millions)")
    axes[0].set_xlabel("")
    axes[0].tick_params(axis="x", rotation=90, labelsize=6)

    sns.barplot(
        data=df, x="sample", y="n_genes_by_counts",
        hue="group" if hue is not None else None,
        dodge=False, ax=axes[1]
    )
    axes[1].set_ylabel("Detected genes")
    axes[1].set_xlabel("")
    axes[1].tick_params(axis="x", rotation=90, labelsize=6)

    plt.tight_layout()
    plt.savefig(output_path, dpi=300, bbox_inches="tight")
    plt.close()

    logger.info(f"Library size plots saved to: {output_path}")

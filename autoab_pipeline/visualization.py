"""
Visualization Module
====================

This module provides publication-quality plotting functions:
- Scatter plots with reduced major axis overlay
- Volcano plots for covariate association results
- Row scaling for heatmaps (z-score, joint 0-1 range)
- Heatmap orderings shared between companion heatmaps
- Clustered heatmaps with dendrograms and covariate color strips

Author: Alfred3005
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import matplotlib
import matplotlib.pyplot as plt
from matplotlib.colors import Normalize, to_hex
from matplotlib.patches import Patch
import seaborn as sns
from pathlib import Path
from scipy.cluster.hierarchy import linkage, leaves_list

from .utils import setup_logging, ensure_dir, InvalidArgumentError


sns.set_theme(style="ticks", context="paper", font_scale=1.1)


class ScaleMethod(Enum):
    """Row scaling applied before drawing a heatmap."""

    ZSCORE = "zscore"
    NONE = "none"


class DistanceMetric(Enum):
    """Distances supported for hierarchical clustering."""

    EUCLIDEAN = "euclidean"
    MANHATTAN = "manhattan"

    @property
    def scipy_name(self) -> str:
        return "cityblock" if self is DistanceMetric.MANHATTAN else "euclidean"


def _parse_enum(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    for member in enum_cls:
        if str(value).lower() == member.value:
            return member
    raise InvalidArgumentError(
        f"Unsupported {enum_cls.__name__} value: {value!r}. "
        f"Supported: {[m.value for m in enum_cls]}"
    )


def scale_rows(matrix: pd.DataFrame, method=ScaleMethod.ZSCORE) -> pd.DataFrame:
    """
    Scale each row independently.

    ``ZSCORE`` centers each row to mean 0 and unit (sample) variance;
    constant rows become 0. ``NONE`` returns a copy.
    """
    method = _parse_enum(ScaleMethod, method)

    if method is ScaleMethod.NONE:
        return matrix.copy()

    mean = matrix.mean(axis=1)
    sd = matrix.std(axis=1, ddof=1).replace(0, np.nan)
    scaled = matrix.sub(mean, axis=0).div(sd, axis=0)

    constant = sd.isna()
    scaled.loc[constant] = 0.0

    return scaled


def joint_minmax_scale(
    block_a: pd.DataFrame,
    block_b: pd.DataFrame
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Scale each row to 0-1 using the range across both blocks jointly.

    Rows are matched by label; both blocks must share the same row labels.
    Rows with zero joint range become 0.
    """
    if not block_a.index.equals(block_b.index):
        missing = block_a.index.symmetric_difference(block_b.index)
        if len(missing) > 0:
            raise KeyError(f"Blocks do not share rows: {list(missing)[:10]}")
        block_b = block_b.loc[block_a.index]

    lo = np.minimum(block_a.min(axis=1), block_b.min(axis=1))
    hi = np.maximum(block_a.max(axis=1), block_b.max(axis=1))
    span = (hi - lo).replace(0, np.nan)

    def _scale(block):
        out = block.sub(lo, axis=0).div(span, axis=0)
        out.loc[span.isna()] = 0.0
        return out

    return _scale(block_a), _scale(block_b)


@dataclass(frozen=True, eq=False)
class Ordering:
    """
    Row and column order of a heatmap, with optional dendrograms.

    `row_labels` / `col_labels` are the labels in the order the linkage was
    computed on; `rows` / `columns` are the final display order.
    """

    rows: Tuple
    columns: Tuple
    row_labels: Tuple
    col_labels: Tuple
    row_linkage: Optional[np.ndarray] = None
    col_linkage: Optional[np.ndarray] = None

    def apply(self, matrix: pd.DataFrame) -> pd.DataFrame:
        """Reorder `matrix` into display order (labels must all be present)."""
        return matrix.loc[list(self.rows), list(self.columns)]

    def linkage_input(self, matrix: pd.DataFrame) -> pd.DataFrame:
        """`matrix` in the order the stored linkages refer to."""
        return matrix.loc[list(self.row_labels), list(self.col_labels)]


def _cluster(values: np.ndarray, metric: DistanceMetric, method: str):
    if values.shape[0] < 2:
        return None, np.arange(values.shape[0])
    Z = linkage(np.nan_to_num(values), method=method, metric=metric.scipy_name)
    return Z, leaves_list(Z)


def compute_ordering(
    reference: pd.DataFrame,
    cluster_rows: bool = True,
    cluster_columns: bool = True,
    metric=DistanceMetric.EUCLIDEAN,
    method: str = "average",
    column_sort_key: Optional[pd.Series] = None
) -> Ordering:
    """
    Compute a heatmap ordering from a reference block.

    Parameters
    ----------
    reference : pd.DataFrame
        Rows x columns (already scaled) reference block
    cluster_rows : bool, default True
        Order rows by hierarchical clustering
    cluster_columns : bool, default True
        Order columns by hierarchical clustering; ignored when
        `column_sort_key` is given
    metric : DistanceMetric or str, default euclidean
        "euclidean" or "manhattan"
    method : str, default "average"
        scipy linkage method
    column_sort_key : pd.Series, optional
        Explicit per-column sort values (ascending, stable)

    Returns
    -------
    Ordering
    """
    metric = _parse_enum(DistanceMetric, metric)

    row_labels = tuple(reference.index)
    col_labels = tuple(reference.columns)

    row_link = None
    rows = row_labels
    if cluster_rows:
        row_link, order = _cluster(reference.to_numpy(), metric, method)
        rows = tuple(row_labels[i] for i in order)

    col_link = None
    columns = col_labels
    if column_sort_key is not None:
        key = column_sort_key.reindex(reference.columns)
        columns = tuple(key.sort_values(kind="mergesort").index)
        col_labels = columns
    elif cluster_columns:
        col_link, order = _cluster(reference.to_numpy().T, metric, method)
        columns = tuple(col_labels[i] for i in order)

    return Ordering(
        rows=rows,
        columns=columns,
        row_labels=row_labels,
        col_labels=col_labels,
        row_linkage=row_link,
        col_linkage=col_link
    )


def covariate_colors(
    annotation: pd.DataFrame,
    columns: Sequence[str],
    cmap: str = "viridis",
    palette: str = "Set2"
) -> Tuple[pd.DataFrame, Dict[str, Dict]]:
    """
    Per-sample color strips for heatmap annotation.

    Numeric columns are mapped through `cmap`; categorical ones through
    `palette`. Missing values are light grey.

    Returns
    -------
    tuple
        (samples x columns DataFrame of colors, legend entries per categorical
        column)
    """
    colors = pd.DataFrame(index=annotation.index)
    legends: Dict[str, Dict] = {}
    missing_color = "#D9D9D9"

    for col in columns:
        values = annotation[col].astype(object)
        numeric = pd.to_numeric(values, errors="coerce")

        if numeric.notna().sum() > 0 and numeric.notna().sum() == values.notna().sum():
            lo, hi = numeric.min(), numeric.max()
            norm = Normalize(vmin=lo, vmax=hi if hi > lo else lo + 1)
            mapper = matplotlib.colormaps[cmap]
            colors[col] = [
                to_hex(mapper(norm(v))) if pd.notna(v) else missing_color for v in numeric
            ]
        else:
            levels = sorted(values.dropna().astype(str).unique())
            lut = {
                lvl: to_hex(c)
                for lvl, c in zip(levels, sns.color_palette(palette, len(levels)))
            }
            colors[col] = [
                lut[str(v)] if pd.notna(v) else missing_color for v in values
            ]
            legends[col] = lut

    return colors, legends


def plot_correlation_scatter(
    table: pd.DataFrame,
    x: str,
    y: str,
    stats_df: pd.DataFrame,
    output_path: Path,
    group: Optional[str] = None,
    log1p: bool = True,
    ncols: int = 4,
    logger: Optional[logging.Logger] = None
) -> None:
    """
    Scatter plots with the reduced major axis line, one panel per group.

    Parameters
    ----------
    table : pd.DataFrame
        Long-format measurements
    x, y : str
        Measurement columns
    stats_df : pd.DataFrame
        Output of `correlation.correlate_by_group` for the same columns
    output_path : Path
        Output file path
    group : str, optional
        Grouping column; one panel if None
    log1p : bool, default True
        Whether the statistics were computed on log1p values
    ncols : int, default 4
        Panels per row
    logger : logging.Logger, optional
        Logger instance
    """
    if logger is None:
        logger = setup_logging()

    output_path = Path(output_path)
    ensure_dir(output_path.parent)

    logger.info(f"Generating correlation scatter plots: {output_path}")

    df = table.copy()
    df[[x, y]] = df[[x, y]].apply(pd.to_numeric, errors="coerce")
    if log1p:
        df[[x, y]] = np.log1p(df[[x, y]])

    keys = df[group] if group else pd.Series("all", index=df.index)
    groups = list(stats_df.index)

    ncols = max(1, min(ncols, len(groups)))
    nrows = int(np.ceil(len(groups) / ncols))
    fig, axes = plt.subplots(
        nrows, ncols, figsize=(4 * ncols, 3.6 * nrows), squeeze=False
    )
    axes = axes.flatten()

    for ax, key in zip(axes, groups):
        sub = df[keys == key]
        ax.scatter(sub[x], sub[y], s=14, alpha=0.7, color="#3498DB", edgecolor="none")

        row = stats_df.loc[key]
        if np.isfinite(row["slope"]):
            xs = np.linspace(sub[x].min(), sub[x].max(), 50)
            ax.plot(xs, row["intercept"] + row["slope"] * xs, color="#E74C3C", lw=1.5)

        ax.set_title(
            f"{key}\nr = {row['r']:.2f}, p = {row['p_value']:.2g}", fontsize=9
        )
        prefix = "log1p " if log1p else ""
        ax.set_xlabel(prefix + x, fontsize=8)
        ax.set_ylabel(prefix + y, fontsize=8)

    for idx in range(len(groups), len(axes)):
        fig.delaxes(axes[idx])

    plt.tight_layout()
    plt.savefig(output_path, dpi=300, bbox_inches="tight")
    plt.close()

    logger.info(f"Scatter plots saved to: {output_path}")


def plot_volcano(
    de_results: pd.DataFrame,
    output_path: Path,
    fdr_threshold: float = 0.05,
    top_n_labels: int = 20,
    figsize: Tuple[int, int] = (8, 7),
    logger: Optional[logging.Logger] = None
) -> None:
    """
    Volcano plot of covariate association results.

    Parameters
    ----------
    de_results : pd.DataFrame
        Ranked table with columns ``logFC``, ``P.Value``, ``adj.P.Val``;
        index holds gene symbols
    output_path : Path
        Output file path
    fdr_threshold : float, default 0.05
        FDR threshold for significance
    top_n_labels : int, default 20
        Number of top genes (by p-value) to label
    figsize : tuple, default (8, 7)
        Figure size
    logger : logging.Logger, optional
        Logger instance
    """
    if logger is None:
        logger = setup_logging()

    output_path = Path(output_path)
    ensure_dir(output_path.parent)

    logger.info(f"Generating volcano plot: {output_path}")

    df = de_results.copy()
    df["-log10(p)"] = -np.log10(df["P.Value"].clip(lower=1e-300))

    significant = df["adj.P.Val"] < fdr_threshold
    df["direction"] = "Not significant"
    df.loc[significant & (df["logFC"] > 0), "direction"] = "Positive"
    df.loc[significant & (df["logFC"] < 0), "direction"] = "Negative"

    colors = {
        "Not significant": "#CCCCCC",
        "Positive": "#E74C3C",
        "Negative": "#3498DB",
    }

    fig, ax = plt.subplots(figsize=figsize)

    for direction, color in colors.items():
        subset = df[df["direction"] == direction]
        ax.scatter(
            subset["logFC"],
            subset["-log10(p)"],
            c=color,
            label=f"{direction} (n={len(subset)})",
            alpha=0.6,
            s=10
        )

    if top_n_labels > 0:
        for gene, row in df.nsmallest(top_n_labels, "P.Value").iterrows():
            ax.text(row["logFC"], row["-log10(p)"], gene, fontsize=7, alpha=0.8)

    ax.axvline(0, color="black", linestyle="--", linewidth=1, alpha=0.5)
    ax.set_xlabel("Coefficient (log2 CPM per covariate unit)", fontsize=11)
    ax.set_ylabel("-Log10(P-value)", fontsize=11)
    ax.legend(loc="upper right", frameon=True, fontsize=9)
    ax.grid(alpha=0.3, linestyle=":")

    plt.tight_layout()
    plt.savefig(output_path, dpi=300, bbox_inches="tight")
    plt.close()

    logger.info(f"Volcano plot saved to: {output_path}")


def plot_clustered_heatmap(
    matrix: pd.DataFrame,
    ordering: Ordering,
    output_path: Path,
    col_colors: Optional[pd.DataFrame] = None,
    legends: Optional[Dict[str, Dict]] = None,
    cmap: str = "RdBu_r",
    center: Optional[float] = 0.0,
    title: Optional[str] = None,
    figsize: Tuple[int, int] = (10, 10),
    logger: Optional[logging.Logger] = None
) -> None:
    """
    Draw one heatmap in a precomputed order.

    Dendrograms are drawn for every axis the ordering carries a linkage for.
    Every label of the ordering must be present in `matrix`.
    """
    if logger is None:
        logger = setup_logging()

    output_path = Path(output_path)
    ensure_dir(output_path.parent)

    logger.info(f"Generating heatmap: {output_path}")

    has_rows = ordering.row_linkage is not None
    has_cols = ordering.col_linkage is not None

    data = ordering.linkage_input(matrix)
    if not has_rows:
        data = data.loc[list(ordering.rows)]
    if not has_cols:
        data = data.loc[:, list(ordering.columns)]

    if col_colors is not None:
        col_colors = col_colors.reindex(data.columns)

    grid = sns.clustermap(
        data,
        row_linkage=ordering.row_linkage,
        col_linkage=ordering.col_linkage,
        row_cluster=has_rows,
        col_cluster=has_cols,
        col_colors=col_colors,
        cmap=cmap,
        center=center,
        figsize=figsize,
        xticklabels=data.shape[1] <= 60,
        yticklabels=data.shape[0] <= 80,
        dendrogram_ratio=0.12,
        cbar_pos=(0.02, 0.82, 0.02, 0.12)
    )

    if legends:
        handles = []
        for name, lut in legends.items():
            for level, color in lut.items():
                handles.append(
                    Patch(color=color, label=f"{name}: {level}")
                )
        grid.ax_heatmap.legend(
            handles=handles, loc="upper left", bbox_to_anchor=(1.02, 1.0),
            fontsize=7, frameon=False
        )

    if title:
        grid.fig.suptitle(title, y=1.02)

    grid.savefig(output_path, dpi=300, bbox_inches="tight")
    plt.close(grid.fig)

    logger.info(f"Heatmap saved to: {output_path}")


def plot_paired_heatmaps(
    reference: pd.DataFrame,
    companion: pd.DataFrame,
    ordering: Ordering,
    output_paths: Tuple[Path, Path],
    titles: Tuple[str, str] = ("", ""),
    col_colors: Optional[pd.DataFrame] = None,
    legends: Optional[Dict[str, Dict]] = None,
    cmap: str = "viridis",
    center: Optional[float] = None,
    logger: Optional[logging.Logger] = None
) -> List[Path]:
    """
    Draw a reference heatmap and a companion heatmap in the same order.

    Both blocks are rendered from the one `ordering`, so rows and columns line
    up between the two figures.

    Returns
    -------
    list of Path
        The two written files
    """
    if logger is None:
        logger = setup_logging()

    missing_rows = set(ordering.rows) - set(companion.index)
    missing_cols = set(ordering.columns) - set(companion.columns)
    if missing_rows or missing_cols:
        raise KeyError(
            f"Companion block lacks {len(missing_rows)} rows and "
            f"{len(missing_cols)} columns of the reference ordering"
        )

    for block, path, title in zip((reference, companion), output_paths, titles):
        plot_clustered_heatmap(
            block,
            ordering,
            path,
            col_colors=col_colors,
            legends=legends,
            cmap=cmap,
            center=center,
            title=title,
            logger=logger
        )

    return [Path(p) for p in output_paths]

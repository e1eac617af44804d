"""
Pipeline Module
===============

Runs the complete analysis from a YAML configuration:

1. Load flow, microarray, RNA-seq counts and annotation, gene set
2. Filter lowly expressed genes
3. TMM-normalize and log-transform
4. Remove the batch effect, preserving the covariate of interest
5. Score the gene set per sample
6. Rank genes by association with the covariate
7. Report correlations, regressions and heatmaps

Author: Alfred3005
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from .utils import (
    setup_logging,
    load_config,
    require_keys,
    set_random_seeds,
    ensure_dir,
    expression_frame,
    save_checkpoint,
    log_memory_usage,
)
from .download import (
    fetch_geo_series,
    parse_series_matrix,
    build_sample_annotation,
    read_count_table,
    collapse_duplicate_symbols,
    build_expression_data,
    fetch_gene_set,
    read_flow_table,
    read_microarray_table,
    microarray_matrix,
)
from .qc import (
    library_size_summary,
    plot_library_sizes,
    filter_genes_by_cpm,
    drop_missing_covariate,
)
from .preprocessing import (
    calc_norm_factors,
    normalize_expression_data,
    log_transform,
    score_gene_set,
)
from .integration import correct_expression_data
from .differential_expression import make_design, run_differential_expression
from .correlation import correlate_by_group
from .visualization import (
    scale_rows,
    joint_minmax_scale,
    compute_ordering,
    covariate_colors,
    plot_correlation_scatter,
    plot_volcano,
    plot_clustered_heatmap,
    plot_paired_heatmaps,
)


REQUIRED_SECTIONS = [
    "data", "geo", "gene_set", "filtering", "normalization",
    "batch", "differential_expression",
]


def load_gene_set(
    gene_set_config: Dict[str, Any],
    logger: Optional[logging.Logger] = None
) -> frozenset:
    """Gene set from an explicit ``genes`` list or from MSigDB."""
    if logger is None:
        logger = setup_logging()

    genes = gene_set_config.get("genes") or []
    if genes:
        logger.info(f"Using configured gene list ({len(genes)} genes)")
        return frozenset(genes)

    require_keys(gene_set_config, ["collection", "name"], "gene_set")

    return fetch_gene_set(
        gene_set_config["collection"],
        gene_set_config["name"],
        dbver=gene_set_config.get("dbver", "2023.2.Hs"),
        logger=logger
    )


def load_expression_data(
    config: Dict[str, Any],
    logger: Optional[logging.Logger] = None
):
    """Fetch (or reuse) GEO inputs and build the annotated count object."""
    if logger is None:
        logger = setup_logging()

    data_cfg = config["data"]
    geo_cfg = config["geo"]
    require_keys(
        geo_cfg,
        ["accession", "count_filename", "composite_field", "subfields"],
        "geo"
    )

    paths = fetch_geo_series(
        geo_cfg["accession"],
        Path(data_cfg.get("data_dir", "data/raw")),
        geo_cfg["count_filename"],
        logger=logger
    )

    samples = parse_series_matrix(paths["series_matrix"], logger=logger)
    annotation = build_sample_annotation(
        samples,
        composite_field=geo_cfg["composite_field"],
        subfield_names=geo_cfg["subfields"],
        library_id_field=geo_cfg.get("library_id_field", "title"),
        numeric_fields=geo_cfg.get("numeric_fields", []),
        batch_threshold=geo_cfg.get("batch_threshold", 60000),
        logger=logger
    )

    counts = read_count_table(
        paths["counts"],
        symbol_column=geo_cfg.get("count_symbol_column"),
        logger=logger
    )
    counts = collapse_duplicate_symbols(counts, logger=logger)

    return build_expression_data(counts, annotation, logger=logger)


def _write_table(df: pd.DataFrame, path: Path, logger: logging.Logger) -> None:
    ensure_dir(path.parent)
    df.to_csv(path)
    logger.info(f"Table saved to: {path}")


def report_microarray(
    config: Dict[str, Any],
    figures_dir: Path,
    tables_dir: Path,
    logger: logging.Logger
) -> Dict[str, pd.DataFrame]:
    """Per-antigen correlations and paired isotype heatmaps."""
    path = config["data"].get("microarray_table")
    if not path:
        logger.info("No microarray table configured; skipping microarray report")
        return {}

    corr_cfg = config.get("correlation", {})
    heat_cfg = config.get("heatmap", {})
    table = read_microarray_table(path, logger=logger)
    results = {}

    group = corr_cfg.get("microarray_group", "antigen")
    for pair in corr_cfg.get("microarray_pairs", []):
        x, y = pair["x"], pair["y"]
        stats_df = correlate_by_group(table, x, y, group=group, logger=logger)
        name = f"microarray_{x}_vs_{y}"
        results[name] = stats_df
        _write_table(stats_df, tables_dir / f"{name}.csv", logger)
        plot_correlation_scatter(
            table, x, y, stats_df, figures_dir / f"{name}.pdf",
            group=group, logger=logger
        )

    reference_iso = heat_cfg.get("microarray_reference", "IgG")
    companion_iso = heat_cfg.get("microarray_companion", "IgA")

    reference = microarray_matrix(table, reference_iso).fillna(0.0)
    companion = microarray_matrix(table, companion_iso)
    companion = companion.reindex(index=reference.index, columns=reference.columns)
    companion = companion.fillna(0.0)

    reference, companion = joint_minmax_scale(reference, companion)
    ordering = compute_ordering(
        reference,
        metric=heat_cfg.get("microarray_metric", "manhattan")
    )

    donor_severity = table.groupby("donor")[["severity"]].first()
    col_colors, legends = covariate_colors(donor_severity, ["severity"])

    plot_paired_heatmaps(
        reference,
        companion,
        ordering,
        (
            figures_dir / f"heatmap_microarray_{reference_iso}.pdf",
            figures_dir / f"heatmap_microarray_{companion_iso}.pdf",
        ),
        titles=(reference_iso, companion_iso),
        col_colors=col_colors,
        legends=legends,
        logger=logger
    )

    return results


def report_flow(
    config: Dict[str, Any],
    figures_dir: Path,
    tables_dir: Path,
    logger: logging.Logger
) -> Dict[str, pd.DataFrame]:
    """Correlations between configured flow cytometry columns."""
    path = config["data"].get("flow_table")
    pairs = config.get("correlation", {}).get("flow_pairs", [])
    if not path or not pairs:
        logger.info("No flow table or flow pairs configured; skipping flow report")
        return {}

    table = read_flow_table(path, logger=logger)
    results = {}

    for pair in pairs:
        x, y = pair["x"], pair["y"]
        group = pair.get("group")
        stats_df = correlate_by_group(table, x, y, group=group, logger=logger)
        name = f"flow_{x}_vs_{y}"
        results[name] = stats_df
        _write_table(stats_df, tables_dir / f"{name}.csv", logger)
        plot_correlation_scatter(
            table, x, y, stats_df, figures_dir / f"{name}.pdf",
            group=group, logger=logger
        )

    return results


def run_pipeline(
    config: Dict[str, Any],
    output_dir: Path,
    logger: Optional[logging.Logger] = None
) -> Dict[str, Any]:
    """
    Execute every stage in order and write figures and tables.

    Parameters
    ----------
    config : dict
        Configuration (see ``config/analysis_params.yaml``)
    output_dir : Path
        Directory receiving ``figures/``, ``tables/`` and ``checkpoints/``
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    dict
        Result tables keyed by name

    Examples
    --------
    >>> config = load_config("config/analysis_params.yaml")
    >>> results = run_pipeline(config, Path("results"), logger)
    >>> results["top_genes"].head()
    """
    if logger is None:
        logger = setup_logging()

    for section in REQUIRED_SECTIONS:
        if section not in config:
            raise KeyError(f"Missing configuration section: '{section}'")

    output_dir = Path(output_dir)
    figures_dir = ensure_dir(output_dir / "figures")
    tables_dir = ensure_dir(output_dir / "tables")

    filt_cfg = config["filtering"]
    norm_cfg = config["normalization"]
    de_cfg = config["differential_expression"]
    heat_cfg = config.get("heatmap", {})
    batch_key = config["batch"].get("key", "batch")
    covariate = de_cfg["covariate"]

    logger.info("=" * 60)
    logger.info("Starting analysis pipeline")
    logger.info("=" * 60)

    results: Dict[str, Any] = {}

    # Step 1: Load
    adata = load_expression_data(config, logger=logger)
    gene_set = load_gene_set(config["gene_set"], logger=logger)

    summary = library_size_summary(adata, logger=logger)
    plot_library_sizes(
        summary, figures_dir / "library_sizes.pdf",
        hue=adata.obs[batch_key], logger=logger
    )

    # Step 2: Filter
    adata = filter_genes_by_cpm(
        adata,
        min_cpm=filt_cfg.get("min_cpm", 1.0),
        min_lib_perc=filt_cfg.get("min_lib_perc", 0.1),
        logger=logger
    )

    # Step 3: Normalize
    adata_norm = normalize_expression_data(
        adata, method=norm_cfg.get("method", "TMM"), logger=logger
    )
    adata_log = log_transform(adata_norm, base=norm_cfg.get("log_base", 2), logger=logger)
    results["norm_factors"] = adata_norm.obs[["lib_size", "norm_factor"]].copy()

    if norm_cfg.get("save_checkpoint", False):
        save_checkpoint(
            adata_log, output_dir / "checkpoints" / "normalized.h5ad", logger=logger
        )

    # Step 4: Batch correction on samples with covariate and batch label
    adata_cov = drop_missing_covariate(adata_log, covariate, logger=logger)
    labeled = adata_cov.obs[batch_key].notna().to_numpy()
    if (~labeled).any():
        logger.info(f"Dropping {int((~labeled).sum())} samples without batch label")
        adata_cov = adata_cov[labeled].copy()

    preserve = make_design(adata_cov.obs, covariate, batch_key=None)
    adata_bc = correct_expression_data(adata_cov, batch_key, preserve, logger=logger)
    corrected = expression_frame(adata_bc)

    # Step 5: Gene set score
    scores = score_gene_set(corrected, gene_set, logger=logger)
    score_table = adata_bc.obs[[covariate]].copy()
    score_table["gene_set_score"] = scores.reindex(score_table.index)
    results["gene_set_scores"] = score_table

    # Step 6: Differential expression, TMM factors recomputed on the retained samples
    de_norm_factors = calc_norm_factors(
        expression_frame(adata_cov, "counts"),
        method=norm_cfg.get("method", "TMM"),
        logger=logger
    )
    results["de_norm_factors"] = de_norm_factors

    de_results = run_differential_expression(
        adata_cov,
        covariate,
        batch_key=batch_key,
        quality_weights=de_cfg.get("quality_weights", True),
        span=de_cfg.get("span", 0.5),
        norm_factors=de_norm_factors,
        logger=logger
    )
    top_n = de_cfg.get("top_n", 50)
    results["de_results"] = de_results
    results["top_genes"] = de_results.head(top_n)

    # Step 7: Reports
    _write_table(results["norm_factors"], tables_dir / "norm_factors.csv", logger)
    _write_table(score_table, tables_dir / "gene_set_scores.csv", logger)
    _write_table(de_results, tables_dir / "differential_expression.csv", logger)

    plot_volcano(
        de_results, figures_dir / "volcano.pdf",
        fdr_threshold=de_cfg.get("fdr_threshold", 0.05), logger=logger
    )

    score_stats = correlate_by_group(
        score_table, covariate, "gene_set_score", log1p=False, logger=logger
    )
    results["gene_set_score_correlation"] = score_stats
    _write_table(score_stats, tables_dir / "gene_set_score_correlation.csv", logger)
    plot_correlation_scatter(
        score_table, covariate, "gene_set_score", score_stats,
        figures_dir / "gene_set_score_vs_covariate.pdf", log1p=False, logger=logger
    )

    top_expr = scale_rows(corrected.loc[results["top_genes"].index], "zscore")
    ordering = compute_ordering(
        top_expr,
        metric=heat_cfg.get("de_metric", "euclidean"),
        column_sort_key=adata_bc.obs[covariate].astype(float)
    )
    annotation_columns: List[str] = [
        c for c in heat_cfg.get("de_annotation", [covariate, batch_key])
        if c in adata_bc.obs.columns
    ]
    col_colors, legends = covariate_colors(adata_bc.obs, annotation_columns)
    plot_clustered_heatmap(
        top_expr, ordering, figures_dir / "heatmap_top_genes.pdf",
        col_colors=col_colors, legends=legends,
        title=f"Top {len(top_expr)} genes associated with {covariate}",
        logger=logger
    )

    results.update(report_microarray(config, figures_dir, tables_dir, logger))
    results.update(report_flow(config, figures_dir, tables_dir, logger))

    logger.info("=" * 60)
    logger.info("Analysis pipeline complete")
    logger.info("=" * 60)

    log_memory_usage(logger)

    return results


def main(argv: Optional[List[str]] = None) -> int:
    """Command-line entry point."""
    parser = argparse.ArgumentParser(
        description="Autoantibody and RNA-seq covariate analysis pipeline"
    )
    parser.add_argument(
        "--config", default="config/analysis_params.yaml",
        help="YAML configuration file"
    )
    parser.add_argument(
        "--output-dir", default="results",
        help="Directory for figures, tables and checkpoints"
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    parser.add_argument("--log-file", default=None, help="Optional log file")
    args = parser.parse_args(argv)

    logger = setup_logging(log_file=args.log_file, log_level=args.log_level)

    config = load_config(args.config)
    set_random_seeds(config.get("random_seed", 42))

    run_pipeline(config, Path(args.output_dir), logger=logger)

    return 0


if __name__ == "__main__":
    sys.exit(main())

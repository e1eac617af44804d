"""
Data Loading Module - Local Tables, GEO and MSigDB
==================================================

This module handles retrieval and parsing of every input of the pipeline.

Key functions:
- read_flow_table / read_microarray_table: Local tabular inputs
- fetch_geo_series: Download series matrix and raw counts from GEO
- parse_series_matrix: Sample-level annotation from a series matrix
- split_composite_field: Split semicolon-packed annotation fields
- assign_batch: Derive the batch label from the library ID
- read_count_table / collapse_duplicate_symbols: Raw count matrix
- fetch_gene_set: Gene set membership from MSigDB
- build_expression_data: Join counts and annotation into AnnData

Author: Alfred3005
"""

import gzip
import logging
import re
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import anndata as ad
import requests
from tqdm import tqdm

from .utils import setup_logging, ensure_dir


GEO_BASE_URL = "https://ftp.ncbi.nlm.nih.gov/geo/series"

FLOW_REQUIRED_COLUMNS = ["donor"]
MICROARRAY_REQUIRED_COLUMNS = [
    "donor", "antigen", "severity", "IgA", "IgG", "IgM", "IgD"
]

BATCH_LABELS = ("batch1", "batch2")


def _read_table(path: Union[str, Path]) -> pd.DataFrame:
    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Input table not found: {path}")

    suffixes = [s.lower() for s in path.suffixes]
    sep = "," if ".csv" in suffixes else "\t"

    return pd.read_csv(path, sep=sep, compression="infer")


def check_columns(
    table: pd.DataFrame,
    required: Sequence[str],
    table_name: str = "table"
) -> None:
    """
    Raise KeyError if any required column is missing.

    Examples
    --------
    >>> check_columns(df, ["donor", "antigen"], "microarray")
    """
    missing = [c for c in required if c not in table.columns]
    if missing:
        raise KeyError(
            f"Missing required column(s) in {table_name}: {', '.join(missing)}. "
            f"Available columns: {list(table.columns)}"
        )


def read_flow_table(
    path: Union[str, Path],
    required_columns: Optional[Sequence[str]] = None,
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Read the per-sample flow cytometry / clinical table.

    Parameters
    ----------
    path : str or Path
        CSV or tab-separated file (optionally gzip-compressed)
    required_columns : list of str, optional
        Columns that must be present. Defaults to ``["donor"]``.
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    pd.DataFrame
        Flow table, one row per sample
    """
    if logger is None:
        logger = setup_logging()

    if required_columns is None:
        required_columns = FLOW_REQUIRED_COLUMNS

    flow = _read_table(path)
    check_columns(flow, required_columns, "flow table")

    logger.info(
        f"Loaded flow table: {len(flow)} samples, "
        f"{flow['donor'].nunique()} donors, {flow.shape[1]} columns"
    )

    return flow


def read_microarray_table(
    path: Union[str, Path],
    required_columns: Optional[Sequence[str]] = None,
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Read the autoantigen microarray table (one row per donor and antigen).

    Parameters
    ----------
    path : str or Path
        CSV or tab-separated file
    required_columns : list of str, optional
        Columns that must be present. Defaults to donor, antigen, severity
        and the four isotype columns.
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    pd.DataFrame
        Microarray table
    """
    if logger is None:
        logger = setup_logging()

    if required_columns is None:
        required_columns = MICROARRAY_REQUIRED_COLUMNS

    table = _read_table(path)
    check_columns(table, required_columns, "microarray table")

    logger.info(
        f"Loaded microarray table: {table['donor'].nunique()} donors x "
        f"{table['antigen'].nunique()} antigens ({len(table):,} rows)"
    )

    return table


def microarray_matrix(
    table: pd.DataFrame,
    isotype: str,
    index: str = "antigen",
    columns: str = "donor"
) -> pd.DataFrame:
    """
    Pivot one isotype of the microarray table into an antigen x donor matrix.

    Duplicate (antigen, donor) measurements are averaged.
    """
    check_columns(table, [index, columns, isotype], "microarray table")

    return table.pivot_table(
        index=index,
        columns=columns,
        values=isotype,
        aggfunc="mean"
    )


def geo_series_stub(accession: str) -> str:
    """
    Return the GEO FTP directory stub of a series accession.

    Examples
    --------
    >>> geo_series_stub("GSE123456")
    'GSE123nnn'
    >>> geo_series_stub("GSE999")
    'GSEnnn'
    """
    match = re.fullmatch(r"(GSE)(\d+)", accession)
    if match is None:
        raise ValueError(f"Not a GEO series accession: {accession!r}")

    digits = match.group(2)
    return f"GSE{digits[:-3]}nnn"


def download_file(
    url: str,
    output_path: Path,
    timeout: int = 60,
    logger: Optional[logging.Logger] = None
) -> Path:
    """
    Stream a remote file to disk with a progress bar.

    An existing file is reused. A partial download is removed before the
    error is re-raised.
    """
    if logger is None:
        logger = setup_logging()

    output_path = Path(output_path)
    ensure_dir(output_path.parent)

    if output_path.exists():
        logger.info(f"File already exists: {output_path}")
        return output_path

    logger.info(f"Downloading: {url}")

    try:
        with requests.get(url, stream=True, timeout=timeout) as response:
            response.raise_for_status()
            total = int(response.headers.get("content-length", 0))

            with open(output_path, "wb") as f, tqdm(
                total=total,
                unit="B",
                unit_scale=True,
                desc=output_path.name
            ) as progress:
                for chunk in response.iter_content(chunk_size=1 << 16):
                    f.write(chunk)
                    progress.update(len(chunk))

    except Exception as e:
        logger.error(f"Failed to download {url}: {str(e)}")
        if output_path.exists():
            output_path.unlink()
        raise

    file_size = output_path.stat().st_size / (1024 ** 2)
    logger.info(f"Saved {output_path} ({file_size:.1f} MB)")

    return output_path


def fetch_geo_series(
    accession: str,
    output_dir: Path,
    count_filename: str,
    logger: Optional[logging.Logger] = None
) -> Dict[str, Path]:
    """
    Download the series matrix and the supplementary count table of a GEO series.

    Parameters
    ----------
    accession : str
        GEO series accession, e.g. "GSE123456"
    output_dir : Path
        Directory for the downloaded files
    count_filename : str
        Name of the supplementary raw count file
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    dict
        Paths keyed by "series_matrix" and "counts"

    Examples
    --------
    >>> paths = fetch_geo_series(
    ...     "GSE123456",
    ...     Path("data/raw"),
    ...     count_filename="GSE123456_raw_counts.tsv.gz"
    ... )
    """
    if logger is None:
        logger = setup_logging()

    stub = geo_series_stub(accession)
    output_dir = ensure_dir(output_dir)

    logger.info(f"Fetching GEO series {accession}")

    matrix_name = f"{accession}_series_matrix.txt.gz"
    matrix_url = f"{GEO_BASE_URL}/{stub}/{accession}/matrix/{matrix_name}"
    counts_url = f"{GEO_BASE_URL}/{stub}/{accession}/suppl/{count_filename}"

    return {
        "series_matrix": download_file(
            matrix_url, output_dir / matrix_name, logger=logger
        ),
        "counts": download_file(
            counts_url, output_dir / count_filename, logger=logger
        ),
    }


def _open_text(path: Path):
    if path.suffix == ".gz":
        return gzip.open(path, "rt", encoding="utf-8")
    return open(path, "r", encoding="utf-8")


def parse_series_matrix(
    path: Union[str, Path],
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Parse the ``!Sample_*`` block of a GEO series matrix file.

    Repeated keys (e.g. several ``!Sample_characteristics_ch1`` lines) get a
    numeric suffix: ``characteristics_ch1``, ``characteristics_ch1_2``, ...

    Returns
    -------
    pd.DataFrame
        One row per sample, indexed by GEO sample accession
    """
    if logger is None:
        logger = setup_logging()

    path = Path(path)
    fields: Dict[str, List[str]] = {}

    with _open_text(path) as handle:
        for line in handle:
            if not line.startswith("!Sample_"):
                continue

            parts = line.rstrip("\n").split("\t")
            key = parts[0][len("!Sample_"):]
            values = [v.strip().strip('"') for v in parts[1:]]

            name = key
            n = 2
            while name in fields:
                name = f"{key}_{n}"
                n += 1
            fields[name] = values

    if "geo_accession" not in fields:
        raise ValueError(f"No !Sample_geo_accession line in {path}")

    n_samples = len(fields["geo_accession"])
    bad = [k for k, v in fields.items() if len(v) != n_samples]
    if bad:
        raise ValueError(
            f"Sample fields with inconsistent length in {path}: {', '.join(bad)}"
        )

    samples = pd.DataFrame(fields).set_index("geo_accession")

    logger.info(f"Parsed series matrix: {len(samples)} samples, {samples.shape[1]} fields")

    return samples


def split_composite_field(
    values: pd.Series,
    names: Sequence[str],
    sep: str = ";"
) -> pd.DataFrame:
    """
    Split a packed annotation field into named sub-fields.

    Each part may be of the form ``"key: value"``; the key is dropped.

    Parameters
    ----------
    values : pd.Series
        Packed strings, e.g. ``"donor: D01; disease: SLE; mfi: 1520; sledai: 4"``
    names : list of str
        Names of the sub-fields, in packing order
    sep : str, default ";"
        Separator between sub-fields

    Returns
    -------
    pd.DataFrame
        One column per name, same index as `values`

    Raises
    ------
    ValueError
        If any entry does not have exactly ``len(names)`` parts
    """
    parts = values.astype(str).str.split(sep)
    counts = parts.str.len()

    bad = counts[counts != len(names)]
    if len(bad) > 0:
        raise ValueError(
            f"Expected {len(names)} '{sep}'-separated parts, found "
            f"{sorted(set(bad.tolist()))} in {len(bad)} entries "
            f"(first: {bad.index[0]!r})"
        )

    def _value(part: str) -> str:
        part = part.strip()
        if ":" in part:
            part = part.split(":", 1)[1].strip()
        return part

    rows = [[_value(p) for p in entry] for entry in parts]

    return pd.DataFrame(rows, index=values.index, columns=list(names))


def library_suffix(library_id: str) -> Optional[int]:
    """Trailing integer of a library ID, or None if it has none."""
    match = re.search(r"(\d+)$", str(library_id))
    if match is None:
        return None
    return int(match.group(1))


def assign_batch(
    library_ids: Sequence[str],
    threshold: int = 60000,
    labels: Tuple[str, str] = BATCH_LABELS
) -> pd.Series:
    """
    Derive the sequencing batch from the numeric suffix of each library ID.

    Suffix below `threshold` gives the first label, above it the second.
    A suffix equal to the threshold, or a missing suffix, is left unlabeled.

    Examples
    --------
    >>> assign_batch(["lib59999", "lib60001", "lib60000"]).tolist()
    ['batch1', 'batch2', nan]
    """
    library_ids = list(library_ids)
    batch = []

    for lib in library_ids:
        suffix = library_suffix(lib)
        if suffix is None or suffix == threshold:
            batch.append(np.nan)
        elif suffix < threshold:
            batch.append(labels[0])
        else:
            batch.append(labels[1])

    return pd.Series(batch, index=pd.Index(library_ids, name="library_id"),
                     name="batch", dtype=object)


def build_sample_annotation(
    samples: pd.DataFrame,
    composite_field: str,
    subfield_names: Sequence[str],
    library_id_field: str = "title",
    numeric_fields: Sequence[str] = (),
    batch_threshold: int = 60000,
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Build the sample annotation table keyed by library ID.

    Parameters
    ----------
    samples : pd.DataFrame
        Output of `parse_series_matrix`
    composite_field : str
        Column holding the semicolon-packed characteristics
    subfield_names : list of str
        Names of the packed sub-fields (donor, disease status, covariate,
        severity score)
    library_id_field : str, default "title"
        Column holding the library ID
    numeric_fields : list of str
        Sub-fields converted to numbers; unparsable values become NaN
    batch_threshold : int, default 60000
        Library suffix threshold between the two batches
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    pd.DataFrame
        Annotation indexed by library ID, with a ``batch`` column
    """
    if logger is None:
        logger = setup_logging()

    check_columns(samples, [composite_field, library_id_field], "series matrix")

    annotation = split_composite_field(samples[composite_field], subfield_names)
    annotation.insert(0, "geo_accession", annotation.index)
    annotation.index = pd.Index(samples[library_id_field].values, name="library_id")

    if not annotation.index.is_unique:
        dup = annotation.index[annotation.index.duplicated()].unique().tolist()
        raise ValueError(f"Duplicate library IDs in annotation: {dup[:10]}")

    for field in numeric_fields:
        annotation[field] = pd.to_numeric(annotation[field], errors="coerce")

    annotation["batch"] = assign_batch(annotation.index, threshold=batch_threshold)

    batch_counts = annotation["batch"].value_counts(dropna=False)
    logger.info("Batch assignment:")
    for label, count in batch_counts.items():
        logger.info(f"  {label if pd.notna(label) else 'unlabeled'}: {count}")

    return annotation


def read_count_table(
    path: Union[str, Path],
    symbol_column: Optional[str] = None,
    sep: str = "\t",
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Read a (compressed) raw count table keyed by gene identifier.

    Parameters
    ----------
    path : str or Path
        Count file; compression inferred from the extension
    symbol_column : str, optional
        Column holding gene symbols. If given, it replaces the index and
        other non-numeric annotation columns are dropped.
    sep : str, default tab
        Field separator
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    pd.DataFrame
        Genes x samples integer counts (not yet deduplicated)
    """
    if logger is None:
        logger = setup_logging()

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Count table not found: {path}")

    counts = pd.read_csv(path, sep=sep, index_col=0, compression="infer")

    if symbol_column is not None:
        check_columns(counts, [symbol_column], "count table")
        counts = counts.set_index(symbol_column)

    counts = counts.select_dtypes(include=[np.number])
    counts.index.name = "gene"

    logger.info(
        f"Loaded count table: {counts.shape[0]:,} genes x {counts.shape[1]} samples"
    )

    return counts


def collapse_duplicate_symbols(
    counts: pd.DataFrame,
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Sum the counts of rows sharing a gene symbol.

    Rows without a symbol are dropped. First-occurrence order is kept and the
    total count mass of the symbol-bearing rows is preserved.
    """
    if logger is None:
        logger = setup_logging()

    has_symbol = counts.index.notna()
    if (~has_symbol).any():
        logger.warning(f"Dropping {(~has_symbol).sum()} rows without gene symbol")
    counts = counts[has_symbol]

    n_before = counts.shape[0]
    collapsed = counts.groupby(level=0, sort=False).sum()
    collapsed.index.name = counts.index.name

    n_dup = n_before - collapsed.shape[0]
    if n_dup > 0:
        logger.info(
            f"Collapsed {n_dup} duplicate rows: {collapsed.shape[0]:,} unique symbols"
        )

    return collapsed


def fetch_gene_set(
    collection: str,
    gene_set_name: str,
    dbver: str = "2023.2.Hs",
    logger: Optional[logging.Logger] = None
) -> frozenset:
    """
    Retrieve the members of one MSigDB gene set.

    Parameters
    ----------
    collection : str
        MSigDB collection file stem, e.g. "c5.go.bp" or "h.all"
    gene_set_name : str
        Gene set name within the collection
    dbver : str, default "2023.2.Hs"
        MSigDB release; the suffix selects the organism (Hs / Mm)
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    frozenset
        Gene symbols in the set
    """
    if logger is None:
        logger = setup_logging()

    from gseapy import Msigdb

    logger.info(f"Fetching MSigDB gene set {gene_set_name} ({collection}, {dbver})")

    gmt = Msigdb().get_gmt(category=collection, dbver=dbver)

    if gmt is None or gene_set_name not in gmt:
        raise KeyError(
            f"Gene set '{gene_set_name}' not found in MSigDB collection "
            f"'{collection}' ({dbver})"
        )

    genes = frozenset(gmt[gene_set_name])
    logger.info(f"Gene set {gene_set_name}: {len(genes)} genes")

    return genes


def build_expression_data(
    counts: pd.DataFrame,
    annotation: pd.DataFrame,
    logger: Optional[logging.Logger] = None
) -> ad.AnnData:
    """
    Join a genes x samples count table and the sample annotation on library ID.

    Only samples present in both are kept, in annotation order. Raw counts
    are stored in ``layers['counts']``.

    Examples
    --------
    >>> adata = build_expression_data(counts, annotation, logger)
    >>> adata.obs['batch'].value_counts()
    """
    if logger is None:
        logger = setup_logging()

    if not counts.index.is_unique:
        raise ValueError("Count table has duplicate gene symbols; collapse them first")

    common = [s for s in annotation.index if s in set(counts.columns)]

    only_counts = set(counts.columns) - set(common)
    only_annot = set(annotation.index) - set(common)
    if only_counts:
        logger.warning(f"{len(only_counts)} count columns have no annotation")
    if only_annot:
        logger.warning(f"{len(only_annot)} annotated samples have no counts")

    if not common:
        raise ValueError("No library IDs shared by the count table and the annotation")

    X = counts[common].T.to_numpy(dtype=np.float64)

    adata = ad.AnnData(
        X=X,
        obs=annotation.loc[common].copy(),
        var=pd.DataFrame(index=counts.index.astype(str))
    )
    adata.layers["counts"] = X.copy()

    logger.info(f"Expression data: {adata.n_obs} samples x {adata.n_vars:,} genes")

    return adata

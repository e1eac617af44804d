"""
R Utilities Module
==================

Bridge to the Bioconductor packages used for normalization, batch removal and
differential expression (edgeR, limma):
- Loading R packages through rpy2
- Converting pandas matrices and vectors to R and back

Author: Alfred3005
"""

from functools import lru_cache
from typing import Any, Iterable, Optional

import numpy as np
import pandas as pd

# rpy2 raises on import when no R installation can be found
try:
    from rpy2 import robjects as ro
    from rpy2.robjects import pandas2ri
    from rpy2.robjects.conversion import localconverter
    from rpy2.robjects.packages import importr, isinstalled
except (ImportError, OSError, RuntimeError, ValueError):
    ro = None


R_PACKAGES = ("limma", "edgeR")


def r_available(packages: Iterable[str] = R_PACKAGES) -> bool:
    """Whether rpy2, R and all of `packages` can be used."""
    if ro is None:
        return False
    return all(isinstalled(name) for name in packages)


@lru_cache(maxsize=None)
def r_package(name: str) -> Any:
    """
    Import an installed R package.

    Raises
    ------
    ImportError
        If rpy2 cannot start R, or the package is not installed

    Examples
    --------
    >>> limma = r_package("limma")
    >>> fit = limma.lmFit(E, design)
    """
    if ro is None:
        raise ImportError(
            "rpy2 and a working R installation are required. "
            "Install R, then: pip install rpy2"
        )
    if not isinstalled(name):
        raise ImportError(
            f"R package '{name}' is not installed. "
            f"Install with: BiocManager::install('{name}')"
        )
    return importr(name)


def to_r_matrix(frame: pd.DataFrame) -> Any:
    """Numeric R matrix with the frame's index and columns as dimnames."""
    values = frame.to_numpy(dtype=np.float64)
    return ro.r["matrix"](
        ro.FloatVector(values.ravel(order="F")),
        nrow=values.shape[0],
        dimnames=ro.r["list"](
            ro.StrVector([str(i) for i in frame.index]),
            ro.StrVector([str(c) for c in frame.columns])
        )
    )


def to_r_vector(series: pd.Series) -> Any:
    """Named numeric R vector."""
    vec = ro.FloatVector(series.to_numpy(dtype=np.float64))
    vec.names = ro.StrVector([str(i) for i in series.index])
    return vec


def to_r_labels(series: pd.Series) -> Any:
    """Character R vector of labels, e.g. batch membership."""
    return ro.StrVector(series.astype(str).tolist())


def r_item(obj: Any, name: str) -> Any:
    """``obj[[name]]`` for R lists and list-based S4 objects; None if absent."""
    item = ro.baseenv["[["](obj, name)
    if isinstance(item, type(ro.NULL)):
        return None
    return item


def from_r_vector(obj: Any, index: Optional[pd.Index] = None) -> np.ndarray:
    """R numeric vector to a 1-D float array."""
    values = np.fromiter(
        (float(v) for v in obj),
        dtype=np.float64,
        count=len(obj)
    )
    if index is not None and len(values) != len(index):
        raise ValueError(
            f"R vector has {len(values)} values, expected {len(index)}"
        )
    return values


def from_r_matrix(obj: Any, index: pd.Index, columns: pd.Index) -> pd.DataFrame:
    """R numeric matrix (column-major) to a DataFrame with the given labels."""
    values = from_r_vector(ro.r["as.vector"](obj))
    if values.size != len(index) * len(columns):
        raise ValueError(
            f"R matrix has {values.size} values, expected "
            f"{len(index)} x {len(columns)}"
        )
    return pd.DataFrame(
        values.reshape((len(index), len(columns)), order="F"),
        index=index,
        columns=columns
    )


def from_r_dataframe(obj: Any) -> pd.DataFrame:
    """R data.frame to pandas, row names becoming the index."""
    with localconverter(ro.default_converter + pandas2ri.converter):
        return ro.conversion.rpy2py(obj)

"""
Correlation Module
==================

Correlation tests and line fits reported alongside the scatter plots:
- Pearson correlation with its significance test
- Reduced major axis (RMA) regression
- Per-category summaries with Benjamini-Hochberg adjustment

Author: Alfred3005
"""

import logging
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

from .utils import setup_logging
from .download import check_columns


MIN_PAIRS = 3
RESULT_COLUMNS = ["n", "r", "p_value", "q_value", "slope", "intercept"]


def _complete_pairs(x, y) -> Tuple[np.ndarray, np.ndarray]:
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)

    if x.shape != y.shape:
        raise ValueError(f"x and y differ in length: {x.shape} vs {y.shape}")

    ok = np.isfinite(x) & np.isfinite(y)
    return x[ok], y[ok]


def pearson_test(x, y) -> Tuple[float, float]:
    """
    Pearson correlation coefficient and two-sided p-value.

    Non-finite pairs are dropped. Fewer than three pairs, or a constant
    input, give ``(nan, nan)``.
    """
    x, y = _complete_pairs(x, y)

    if x.size < MIN_PAIRS or np.ptp(x) == 0 or np.ptp(y) == 0:
        return np.nan, np.nan

    r, p = stats.pearsonr(x, y)
    return float(r), float(p)


def rma_regression(x, y) -> Tuple[float, float]:
    """
    Reduced major axis regression of y on x.

    Neither variable is treated as error-free: the slope is
    ``sign(r) * sd(y) / sd(x)`` and the line passes through the means.

    Returns
    -------
    tuple
        (slope, intercept)

    Examples
    --------
    >>> rma_regression([0, 1, 2, 3, 4], [1, 3, 5, 7, 9])
    (2.0, 1.0)
    """
    x, y = _complete_pairs(x, y)

    if x.size < 2 or np.std(x) == 0:
        return np.nan, np.nan

    r = np.corrcoef(x, y)[0, 1] if np.std(y) > 0 else 0.0
    slope = np.sign(r) * np.std(y, ddof=1) / np.std(x, ddof=1)
    intercept = np.mean(y) - slope * np.mean(x)

    return float(slope), float(intercept)


def correlate_by_group(
    table: pd.DataFrame,
    x: str,
    y: str,
    group: Optional[str] = None,
    log1p: bool = True,
    logger: Optional[logging.Logger] = None
) -> pd.DataFrame:
    """
    Pearson test and RMA line between two columns, per category of `group`.

    Parameters
    ----------
    table : pd.DataFrame
        Long-format measurements
    x, y : str
        Measurement columns
    group : str, optional
        Grouping column (e.g. antigen); a single group ``"all"`` if None
    log1p : bool, default True
        Whether to log1p-transform both columns first
    logger : logging.Logger, optional
        Logger instance

    Returns
    -------
    pd.DataFrame
        Indexed by category with ``n``, ``r``, ``p_value``, ``q_value``,
        ``slope`` and ``intercept``, sorted by ``p_value``
    """
    if logger is None:
        logger = setup_logging()

    check_columns(table, [x, y] + ([group] if group else []), "correlation input")

    df = table[[x, y]].apply(pd.to_numeric, errors="coerce")
    if log1p:
        df = np.log1p(df)

    keys = table[group] if group else pd.Series("all", index=table.index)

    rows = []
    for key, sub in df.groupby(keys.values, sort=True):
        xv, yv = _complete_pairs(sub[x], sub[y])
        r, p = pearson_test(xv, yv)
        slope, intercept = rma_regression(xv, yv)
        rows.append({
            "group": key,
            "n": int(xv.size),
            "r": r,
            "p_value": p,
            "slope": slope,
            "intercept": intercept,
        })

    result = pd.DataFrame(rows, columns=["group"] + RESULT_COLUMNS).set_index("group")

    tested = result["p_value"].notna()
    if tested.any():
        result.loc[tested, "q_value"] = multipletests(
            result.loc[tested, "p_value"].to_numpy(), method="fdr_bh"
        )[1]

    result = result[RESULT_COLUMNS]
    result = result.sort_values("p_value", kind="mergesort")

    n_untested = int((~tested).sum())
    logger.info(
        f"Correlation {x} vs {y}"
        f"{' by ' + group if group else ''}: {int(tested.sum())} groups tested"
        f"{f', {n_untested} with < {MIN_PAIRS} pairs' if n_untested else ''}"
    )

    return result

"""
Region-level aggregation of window tests for WinDiff.

Window p-values are combined per cluster with Simes' method, which only
needs the window statistics to be independent under the null.  Regions are
then corrected for multiple testing with Benjamini-Hochberg, so the FDR is
controlled over regions rather than windows.
"""

import logging
from typing import Optional

import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from .exceptions import InvalidParameterError, ValidationError
from .testing import WindowTestResults

logger = logging.getLogger(__name__)

REGION_COLUMNS = ["num_tests", "num_up", "num_down", "direction", "rep_test", "rep_logFC", "pvalue", "FDR"]
NO_DATA = "none"


def simes(pvalues: np.ndarray) -> float:
    """Simes' combined p-value: min over i of k * p_(i) / i."""
    p = np.sort(np.asarray(pvalues, dtype=float))
    p = p[np.isfinite(p)]
    if not len(p):
        return np.nan
    k = len(p)
    return float(np.clip(np.min(p * k / np.arange(1, k + 1)), 0, 1))


def holm_min(pvalues: np.ndarray) -> float:
    """Holm-adjusted smallest p-value (the Bonferroni bound for the best window)."""
    p = np.asarray(pvalues, dtype=float)
    p = p[np.isfinite(p)]
    if not len(p):
        return np.nan
    return float(min(1.0, p.min() * len(p)))


def benjamini_hochberg(pvalues: np.ndarray) -> np.ndarray:
    """BH-adjusted values; NaN inputs stay NaN."""
    pvalues = np.asarray(pvalues, dtype=float)
    fdr = np.full(len(pvalues), np.nan)
    ok = np.isfinite(pvalues)
    if ok.any():
        fdr[ok] = multipletests(pvalues[ok], method="fdr_bh")[1]
    return fdr


class PValueCombiner:
    """Summarise window test results per cluster or per query region."""

    def __init__(self, significance: float = 0.05):
        """
        Args:
            significance: Per-window p-value threshold used only to count
                up and down windows; it never changes the combined p-value
        """
        if not 0 < significance <= 1:
            raise InvalidParameterError("significance", significance, "0 < value <= 1")
        self.significance = significance

    def _summarise(self, members: np.ndarray, pvalues: np.ndarray, logfc: np.ndarray, combine,
                   significance: float) -> dict:
        p = pvalues[members]
        tested = np.isfinite(p)
        members, p, fc = members[tested], p[tested], logfc[members][tested]
        if not len(members):
            return {
                "num_tests": 0, "num_up": 0, "num_down": 0, "direction": NO_DATA,
                "rep_test": -1, "rep_logFC": np.nan, "pvalue": np.nan,
            }

        significant = p <= significance
        num_up = int(np.sum(significant & (fc > 0)))
        num_down = int(np.sum(significant & (fc < 0)))
        best = int(np.argmin(p))
        if num_up and num_down:
            direction = "mixed"
        elif num_up:
            direction = "up"
        elif num_down:
            direction = "down"
        else:
            direction = "up" if fc[best] > 0 else "down"

        return {
            "num_tests": int(len(members)),
            "num_up": num_up,
            "num_down": num_down,
            "direction": direction,
            "rep_test": int(members[best]),
            "rep_logFC": float(fc[best]),
            "pvalue": combine(p),
        }

    def _table(self, groups, n_groups: int, results: WindowTestResults, combine,
               significance: Optional[float] = None) -> pd.DataFrame:
        significance = self.significance if significance is None else significance
        pvalues = results.pvalues.astype(float)
        logfc = results.logfc.astype(float)
        empty = np.array([], dtype=np.int64)
        rows = [self._summarise(groups.get(g, empty), pvalues, logfc, combine, significance) for g in range(n_groups)]
        table = pd.DataFrame(rows, columns=REGION_COLUMNS[:-1])
        table["FDR"] = benjamini_hochberg(table["pvalue"].to_numpy())
        return table

    @staticmethod
    def _group(ids: np.ndarray, members: np.ndarray) -> dict:
        if not len(ids):
            return {}
        order = np.argsort(ids, kind="stable")
        ids_sorted = ids[order]
        bounds = np.flatnonzero(np.diff(ids_sorted)) + 1
        return {int(chunk_ids[0]): members[order][chunk]
                for chunk_ids, chunk in zip(np.split(ids_sorted, bounds), np.split(np.arange(len(ids)), bounds))}

    def combine_tests(
        self, ids: np.ndarray, results: WindowTestResults, significance: Optional[float] = None
    ) -> pd.DataFrame:
        """
        Combine window results per cluster with Simes' method.

        Args:
            ids: Cluster id per window, aligned to ``results``
            results: Window test results
            significance: Overrides the threshold used for num_up/num_down

        Returns:
            DataFrame indexed by cluster id with num_tests, num_up, num_down,
            direction, rep_test, rep_logFC, pvalue and FDR
        """
        ids = np.asarray(ids, dtype=np.int64)
        if len(ids) != len(results):
            raise ValidationError(f"{len(ids)} cluster ids for {len(results)} window results")
        n_groups = int(ids.max()) + 1 if len(ids) else 0
        groups = self._group(ids, np.arange(len(ids)))
        table = self._table(groups, n_groups, results, simes, significance)
        logger.info(
            f"Combined {len(ids)} windows into {n_groups} regions "
            f"({int((table['FDR'] < 0.05).sum())} at FDR < 0.05)"
        )
        return table

    def best_test(self, ids: np.ndarray, results: WindowTestResults) -> pd.DataFrame:
        """Per-cluster summary using the Holm-adjusted best window instead of Simes."""
        ids = np.asarray(ids, dtype=np.int64)
        if len(ids) != len(results):
            raise ValidationError(f"{len(ids)} cluster ids for {len(results)} window results")
        n_groups = int(ids.max()) + 1 if len(ids) else 0
        return self._table(self._group(ids, np.arange(len(ids))), n_groups, results, holm_min)

    def combine_overlaps(
        self,
        query_idx: np.ndarray,
        window_idx: np.ndarray,
        n_regions: int,
        results: WindowTestResults,
        method: Optional[str] = "simes",
    ) -> pd.DataFrame:
        """
        Combine window results over an arbitrary overlap mapping.

        A window may contribute to several regions.  Regions without any
        overlapping window get a "no data" row (NaN p-value, zero tests).

        Args:
            query_idx, window_idx: Paired indices, e.g. from
                ``regions.find_overlaps(windows)``
            n_regions: Number of query regions
            results: Window test results
            method: "simes" or "best"
        """
        query_idx = np.asarray(query_idx, dtype=np.int64)
        window_idx = np.asarray(window_idx, dtype=np.int64)
        if len(query_idx) != len(window_idx):
            raise ValidationError("query_idx and window_idx must have equal lengths")
        if len(window_idx) and (window_idx.max() >= len(results) or window_idx.min() < 0):
            raise ValidationError("window_idx refers to windows outside the results")
        if method not in ("simes", "best"):
            raise InvalidParameterError("method", method, "'simes' or 'best'")

        groups = self._group(query_idx, window_idx)
        table = self._table(groups, n_regions, results, simes if method == "simes" else holm_min)
        n_empty = int((table["num_tests"] == 0).sum())
        if n_empty:
            logger.debug(f"{n_empty} of {n_regions} regions have no overlapping windows")
        return table

"""
Normalization for WinDiff.

A single Normalizer covers the three strategies:

- BACKGROUND: TMM on large background bins, removing composition bias
- FILTERED: TMM on high-abundance windows, removing efficiency bias
- TRENDED: abundance-dependent offsets from a lowess fit per library

BACKGROUND and FILTERED run the same estimator; only the input matrix
differs.  TRENDED produces one offset per window and library, so it returns
a different result type.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, Union

import numpy as np
import pandas as pd
from scipy.stats import rankdata
from statsmodels.nonparametric.smoothers_lowess import lowess

from .counting import CountMatrix
from .exceptions import InvalidParameterError, NormalizationError
from .filtering import average_log_cpm

logger = logging.getLogger(__name__)


class NormalizationStrategy(str, Enum):
    """Which bias the normalization targets."""
    BACKGROUND = "background"
    FILTERED = "filtered"
    TRENDED = "trended"


@dataclass(frozen=True)
class NormalizationFactors:
    """One scale factor per library (only ratios are meaningful)."""
    factors: np.ndarray
    library_sizes: np.ndarray
    libraries: Tuple[str, ...]
    strategy: NormalizationStrategy = NormalizationStrategy.BACKGROUND

    @property
    def effective_library_sizes(self) -> np.ndarray:
        return self.library_sizes * self.factors

    def log_offsets(self) -> np.ndarray:
        """Natural-log offsets per library for GLM fitting."""
        return np.log(np.maximum(self.effective_library_sizes, 0.5))

    def to_series(self) -> pd.Series:
        return pd.Series(self.factors, index=list(self.libraries), name="norm_factor")


@dataclass(frozen=True)
class NormalizationOffsets:
    """Per-window, per-library natural-log offsets from trended normalization."""
    offsets: np.ndarray
    library_sizes: np.ndarray
    libraries: Tuple[str, ...]
    strategy: NormalizationStrategy = NormalizationStrategy.TRENDED

    def log_offsets(self) -> np.ndarray:
        return self.offsets

    def subset(self, selector) -> "NormalizationOffsets":
        return NormalizationOffsets(self.offsets[selector], self.library_sizes, self.libraries, self.strategy)


NormalizationResult = Union[NormalizationFactors, NormalizationOffsets]


class Normalizer:
    """
    Compute normalization factors or offsets for a count matrix.

    Workflow:
    1. Choose the strategy (background bins, filtered windows or trended)
    2. Pass the matching CountMatrix to ``compute``
    """

    def __init__(
        self,
        strategy: NormalizationStrategy = NormalizationStrategy.BACKGROUND,
        logratio_trim: float = 0.3,
        sum_trim: float = 0.05,
        weighted: bool = True,
        a_cutoff: float = -1e10,
        span: float = 0.3,
        prior_count: float = 0.5,
    ):
        """
        Initialize the normalizer.

        Args:
            strategy: NormalizationStrategy or its string value
            logratio_trim: Fraction of log-ratios trimmed from each end
            sum_trim: Fraction of absolute abundances trimmed from each end
            weighted: Weight log-ratios by inverse asymptotic variance
            a_cutoff: Minimum absolute abundance used in TMM
            span: Lowess span for trended normalization
            prior_count: Pseudo-count for trended normalization
        """
        self.strategy = NormalizationStrategy(strategy)
        for name, value in (("logratio_trim", logratio_trim), ("sum_trim", sum_trim)):
            if not 0 <= value < 0.5:
                raise InvalidParameterError(name, value, "0 <= value < 0.5")
        if not 0 < span <= 1:
            raise InvalidParameterError("span", span, "0 < span <= 1")
        self.logratio_trim = logratio_trim
        self.sum_trim = sum_trim
        self.weighted = weighted
        self.a_cutoff = a_cutoff
        self.span = span
        self.prior_count = prior_count

    def compute(self, data: CountMatrix, library_sizes: Optional[np.ndarray] = None) -> NormalizationResult:
        """
        Normalize ``data`` according to the configured strategy.

        Args:
            data: Bins for BACKGROUND, filtered windows for FILTERED/TRENDED
            library_sizes: Override for ``data.totals``

        Returns:
            NormalizationFactors, or NormalizationOffsets for TRENDED
        """
        sizes = data.library_sizes if library_sizes is None else np.asarray(library_sizes, dtype=float)
        if len(sizes) != data.n_libraries:
            raise NormalizationError(f"Expected {data.n_libraries} library sizes, got {len(sizes)}")

        if self.strategy == NormalizationStrategy.TRENDED:
            offsets = self.trended_offsets(data.counts, sizes)
            logger.info(f"Computed trended offsets for {data.n_windows} windows")
            return NormalizationOffsets(offsets, sizes, data.libraries, self.strategy)

        factors = self.tmm(data.counts, sizes)
        logger.info(
            f"TMM factors ({self.strategy.value}): "
            + ", ".join(f"{lib}={f:.3f}" for lib, f in zip(data.libraries, factors))
        )
        return NormalizationFactors(factors, sizes, data.libraries, self.strategy)

    # ------------------------------------------------------------------
    # TMM
    # ------------------------------------------------------------------

    @staticmethod
    def reference_library(counts: np.ndarray, library_sizes: np.ndarray) -> int:
        """Library whose upper-quartile proportion is closest to the mean upper quartile."""
        counts = np.asarray(counts, dtype=float)
        with np.errstate(divide="ignore", invalid="ignore"):
            upper = np.quantile(counts / library_sizes, 0.75, axis=0)
        valid = np.isfinite(upper)
        if not valid.any():
            raise NormalizationError("No library has a usable upper quartile")
        distance = np.where(valid, np.abs(upper - upper[valid].mean()), np.inf)
        return int(np.argmin(distance))

    def tmm(self, counts: np.ndarray, library_sizes: np.ndarray) -> np.ndarray:
        """
        Trimmed mean of M-values factors, rescaled to geometric mean 1.

        Args:
            counts: windows x libraries
            library_sizes: one size per library

        Returns:
            Array of factors
        """
        counts = np.asarray(counts, dtype=float)
        library_sizes = np.asarray(library_sizes, dtype=float)
        if counts.shape[0] == 0:
            raise NormalizationError("Cannot compute TMM factors from an empty count matrix")

        ref = self.reference_library(counts, library_sizes)
        factors = np.ones(counts.shape[1])
        for j in range(counts.shape[1]):
            if library_sizes[j] <= 0:
                logger.warning(f"Library {j} is empty; using a normalization factor of 1")
                continue
            factors[j] = self._tmm_pair(counts[:, j], counts[:, ref], library_sizes[j], library_sizes[ref])

        return factors / np.exp(np.mean(np.log(factors)))

    def _tmm_pair(self, obs: np.ndarray, ref: np.ndarray, n_obs: float, n_ref: float) -> float:
        with np.errstate(divide="ignore", invalid="ignore"):
            log_obs = np.log2(obs / n_obs)
            log_ref = np.log2(ref / n_ref)
            m = log_obs - log_ref
            a = (log_obs + log_ref) / 2
            v = (n_obs - obs) / n_obs / obs + (n_ref - ref) / n_ref / ref

        ok = np.isfinite(m) & np.isfinite(a) & (a > self.a_cutoff)
        if not ok.any():
            logger.warning("No windows with non-zero counts in both libraries; using a factor of 1")
            return 1.0
        m, a, v = m[ok], a[ok], v[ok]
        if np.max(np.abs(m)) < 1e-6:
            return 1.0

        n = len(m)
        lo_l = np.floor(n * self.logratio_trim) + 1
        hi_l = n + 1 - lo_l
        lo_s = np.floor(n * self.sum_trim) + 1
        hi_s = n + 1 - lo_s
        rank_m = rankdata(m)
        rank_a = rankdata(a)
        keep = (rank_m >= lo_l) & (rank_m <= hi_l) & (rank_a >= lo_s) & (rank_a <= hi_s)
        if not keep.any():
            return 1.0

        if self.weighted:
            with np.errstate(divide="ignore", invalid="ignore"):
                f = np.sum(m[keep] / v[keep]) / np.sum(1 / v[keep])
        else:
            f = np.mean(m[keep])
        if not np.isfinite(f):
            f = 0.0
        return float(2 ** f)

    # ------------------------------------------------------------------
    # Trended offsets
    # ------------------------------------------------------------------

    def trended_offsets(self, counts: np.ndarray, library_sizes: np.ndarray) -> np.ndarray:
        """
        Lowess-smoothed log-ratio offsets against abundance.

        For each library, ``log(count + scaled prior) - abundance`` is fitted
        against abundance; the fitted values are centred per window and
        shifted to the mean log library size.  Empty libraries take no part
        in the fit and get the floored offset ``log(0.5)``.
        """
        counts = np.asarray(counts, dtype=float)
        library_sizes = np.asarray(library_sizes, dtype=float)
        usable = library_sizes > 0
        if not usable.any():
            raise NormalizationError("Trended normalization needs at least one non-empty library")
        n_windows = counts.shape[0]
        if n_windows * self.span < 3:
            raise NormalizationError(
                f"Too few windows ({n_windows}) for trended normalization with span {self.span}"
            )
        for j in np.flatnonzero(~usable):
            logger.warning(f"Library {j} is empty; excluded from the trended fit")

        sizes = library_sizes[usable]
        kept = counts[:, usable]
        scaled_prior = self.prior_count * sizes / sizes.mean()
        abundance = average_log_cpm(kept, sizes, self.prior_count) * np.log(2)

        fitted = np.empty_like(kept)
        for j in range(kept.shape[1]):
            response = np.log(kept[:, j] + scaled_prior[j]) - abundance
            # delta > 0 skips local fits across tied abundances and distorts the curve
            fitted[:, j] = lowess(response, abundance, frac=self.span, it=4, delta=0.0,
                                  return_sorted=False)

        fitted = fitted - fitted.mean(axis=1, keepdims=True) + np.mean(np.log(sizes))
        offsets = np.full(counts.shape, np.log(0.5))
        offsets[:, usable] = fitted
        return offsets

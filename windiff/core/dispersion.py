"""
Dispersion estimation for WinDiff.

Three layers of variability are estimated:

1. A common negative binomial dispersion, maximising the Cox-Reid adjusted
   profile likelihood summed over windows.
2. An abundance trend of the NB dispersion: windows are binned by
   abundance, each bin gets its own Cox-Reid estimate and the bin estimates
   are smoothed with lowess.
3. Quasi-likelihood dispersions from the deviance of a GLM fitted with the
   trended NB dispersion, squeezed toward an abundance trend by empirical
   Bayes.  With ``robust=True`` the trend is fitted with Tukey biweights so
   that outlying windows do not drag it.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from numpy.polynomial import Polynomial
from scipy.optimize import minimize_scalar
from scipy.special import digamma, polygamma
from statsmodels.nonparametric.smoothers_lowess import lowess

from .counting import CountMatrix
from .exceptions import DispersionUndefinedError, InvalidParameterError
from .filtering import average_log_cpm
from .glm import NBFit, check_design, fit_nb_glm, nb_loglik, residual_df
from .normalization import NormalizationResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispersionEstimate:
    """Per-window dispersion estimates.

    ``ql_shrunk`` is what testing uses; ``ql_raw`` is kept for diagnostics.
    """
    common: float
    trended: np.ndarray
    ql_raw: np.ndarray
    ql_shrunk: np.ndarray
    df_prior: np.ndarray
    df_residual: np.ndarray
    prior_variance: np.ndarray
    robust_weights: np.ndarray
    abundances: np.ndarray
    fixed: bool = False

    @property
    def has_quasi_likelihood(self) -> bool:
        return bool(np.any(self.df_residual > 0))

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame({
            "logCPM": self.abundances,
            "trended_dispersion": self.trended,
            "ql_raw": self.ql_raw,
            "ql_shrunk": self.ql_shrunk,
            "df_prior": self.df_prior,
            "df_residual": self.df_residual,
            "robust_weight": self.robust_weights,
        })


def trigamma_inverse(x: float) -> float:
    """Solve trigamma(y) = x for y by Newton iteration."""
    if x > 1e7:
        return 1 / np.sqrt(x)
    if x < 1e-6:
        return 1 / x
    y = 0.5 + 1 / x
    for _ in range(50):
        tri = float(polygamma(1, y))
        dif = tri * (1 - tri / x) / float(polygamma(2, y))
        y += dif
        if -dif / y < 1e-8:
            break
    return y


def library_offsets(data: CountMatrix, normalization: Optional[NormalizationResult]) -> Tuple[np.ndarray, np.ndarray]:
    """
    GLM offsets and effective library sizes for a count matrix.

    Returns:
        (natural-log offsets broadcastable to windows x libraries,
         effective library sizes)
    """
    if normalization is None:
        sizes = data.library_sizes
        return np.log(np.maximum(sizes, 0.5)), sizes
    if hasattr(normalization, "effective_library_sizes"):
        return normalization.log_offsets(), normalization.effective_library_sizes
    return normalization.log_offsets(), normalization.library_sizes


class DispersionModel:
    """Estimate common, trended and quasi-likelihood dispersions."""

    def __init__(
        self,
        robust: bool = True,
        bounds: Tuple[float, float] = (1e-4, 4.0),
        min_row_sum: int = 5,
        max_subset: int = 10000,
        n_bins: Optional[int] = None,
        min_bin_size: int = 20,
        robust_iterations: int = 10,
        prior_count: float = 2.0,
    ):
        """
        Initialize the model.

        Args:
            robust: Down-weight outliers when fitting the QL trend
            bounds: Search interval for NB dispersions
            min_row_sum: Windows with fewer total counts are ignored for the
                common and trended NB dispersion
            max_subset: Maximum number of windows used for the common dispersion
            n_bins: Number of abundance bins for the trend (default: up to 50)
            min_bin_size: Minimum windows per abundance bin
            robust_iterations: Maximum biweight re-weighting rounds
            prior_count: Prior count for abundances
        """
        lo, hi = bounds
        if not 0 < lo < hi:
            raise InvalidParameterError("bounds", bounds, "0 < lower < upper")
        self.robust = robust
        self.bounds = (float(lo), float(hi))
        self.min_row_sum = min_row_sum
        self.max_subset = max_subset
        self.n_bins = n_bins
        self.min_bin_size = min_bin_size
        self.robust_iterations = robust_iterations
        self.prior_count = prior_count

    # ------------------------------------------------------------------
    # Cox-Reid adjusted profile likelihood
    # ------------------------------------------------------------------

    @staticmethod
    def adjusted_profile_loglik(dispersion: float, counts: np.ndarray, design: np.ndarray, offsets) -> np.ndarray:
        """Cox-Reid adjusted profile log-likelihood per window."""
        fit = fit_nb_glm(counts, design, offsets, dispersion)
        ok = ~fit.failed
        mu = fit.fitted[ok]
        y = np.asarray(counts, dtype=float)[ok]
        ll = nb_loglik(y, mu, dispersion)
        weights = mu / (1 + dispersion * mu)
        info = np.einsum("gn,ni,nj->gij", weights, design, design)
        info += 1e-10 * np.eye(design.shape[1])
        _, logdet = np.linalg.slogdet(info)
        return ll - 0.5 * logdet

    def _maximise_apl(self, counts: np.ndarray, design: np.ndarray, offsets) -> float:
        lo, hi = np.log(self.bounds[0]), np.log(self.bounds[1])

        def objective(log_phi):
            return -np.sum(self.adjusted_profile_loglik(np.exp(log_phi), counts, design, offsets))

        result = minimize_scalar(objective, bounds=(lo, hi), method="bounded", options={"xatol": 1e-4})
        return float(np.exp(result.x))

    def _eligible(self, counts: np.ndarray) -> np.ndarray:
        eligible = counts.sum(axis=1) >= self.min_row_sum
        if not eligible.any():
            logger.warning(
                f"No windows with at least {self.min_row_sum} counts; using all windows for dispersion"
            )
            eligible = np.ones(counts.shape[0], dtype=bool)
        return eligible

    def common_dispersion(self, counts: np.ndarray, design: np.ndarray, offsets, abundances: np.ndarray) -> float:
        """Common NB dispersion from a systematic subset of windows."""
        counts = np.asarray(counts, dtype=float)
        offsets = np.broadcast_to(np.asarray(offsets, dtype=float), counts.shape)
        rows = np.flatnonzero(self._eligible(counts))
        if len(rows) > self.max_subset:
            by_abundance = rows[np.argsort(abundances[rows], kind="stable")]
            picks = np.linspace(0, len(by_abundance) - 1, self.max_subset).round().astype(int)
            rows = np.sort(by_abundance[picks])
        common = self._maximise_apl(counts[rows], design, offsets[rows])
        logger.info(f"Common dispersion: {common:.4f} (BCV {np.sqrt(common):.3f}) from {len(rows)} windows")
        return common

    def trended_dispersion(
        self,
        counts: np.ndarray,
        design: np.ndarray,
        offsets,
        abundances: np.ndarray,
        common: float,
    ) -> np.ndarray:
        """NB dispersion trend against abundance, evaluated for every window."""
        counts = np.asarray(counts, dtype=float)
        offsets = np.broadcast_to(np.asarray(offsets, dtype=float), counts.shape)
        rows = np.flatnonzero(self._eligible(counts))

        n_bins = self.n_bins or min(50, len(rows) // self.min_bin_size)
        if n_bins < 3:
            logger.info(f"Too few windows ({len(rows)}) for a dispersion trend; using the common dispersion")
            return np.full(counts.shape[0], common)

        ordered = rows[np.argsort(abundances[rows], kind="stable")]
        bin_ab = np.empty(n_bins)
        bin_disp = np.empty(n_bins)
        for i, members in enumerate(np.array_split(ordered, n_bins)):
            bin_ab[i] = np.median(abundances[members])
            bin_disp[i] = self._maximise_apl(counts[members], design, offsets[members])

        log_disp = np.log(bin_disp)
        if n_bins >= 10:
            log_disp = lowess(log_disp, bin_ab, frac=0.5, it=2, return_sorted=False)
        trend = np.exp(np.interp(abundances, bin_ab, log_disp))
        logger.info(
            f"Trended dispersion over {n_bins} abundance bins: "
            f"range {trend.min():.4f}-{trend.max():.4f}"
        )
        return trend

    # ------------------------------------------------------------------
    # Quasi-likelihood empirical Bayes
    # ------------------------------------------------------------------

    def _fit_trend(self, x: np.ndarray, e: np.ndarray) -> Tuple[Polynomial, np.ndarray, int]:
        n_unique = len(np.unique(x))
        degree = int(max(0, min(3, n_unique - 1, len(x) - 2)))
        weights = np.ones(len(x))

        def fit(w):
            if degree == 0 or np.ptp(x) == 0:
                return Polynomial([np.average(e, weights=w)])
            return Polynomial.fit(x, e, degree, w=np.sqrt(w))

        trend = fit(weights)
        if self.robust:
            for _ in range(self.robust_iterations):
                resid = e - trend(x)
                spread = np.median(np.abs(resid))
                if spread == 0:
                    break
                u = resid / (6 * spread)
                new_weights = np.where(np.abs(u) < 1, (1 - u ** 2) ** 2, 0.0)
                if new_weights.sum() <= degree + 1:
                    break
                change = np.max(np.abs(new_weights - weights))
                weights = new_weights
                trend = fit(weights)
                if change < 1e-4:
                    break
        return trend, weights, degree + 1

    def squeeze_variances(
        self,
        s2: np.ndarray,
        df: np.ndarray,
        covariate: np.ndarray,
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """
        Empirical Bayes shrinkage of QL dispersions toward an abundance trend.

        Returns:
            (posterior dispersions, prior df per window, prior dispersion per
             window, robustness weights)
        """
        s2 = np.asarray(s2, dtype=float)
        df = np.asarray(df, dtype=float)
        ok = (df > 0) & np.isfinite(s2) & np.isfinite(covariate)
        weights = np.ones(len(s2))

        if ok.sum() < 2:
            logger.warning("Too few windows with residual df for variance shrinkage; no shrinkage applied")
            prior = np.full(len(s2), np.nanmedian(s2[ok]) if ok.any() else 1.0)
            return np.where(df > 0, s2, prior), np.zeros(len(s2)), prior, weights

        x = s2[ok]
        positive_median = np.median(x[x > 0]) if (x > 0).any() else 1.0
        x = np.maximum(x, 1e-5 * positive_median)
        d = df[ok]
        e = np.log(x) - digamma(d / 2) + np.log(d / 2)

        trend, w_ok, n_coef = self._fit_trend(covariate[ok], e)
        weights[ok] = w_ok
        resid = e - trend(covariate[ok])
        denom = w_ok.sum() - n_coef
        evar = np.sum(w_ok * resid ** 2) / denom if denom > 0 else 0.0
        evar -= np.average(polygamma(1, d / 2), weights=w_ok) if w_ok.sum() > 0 else np.mean(polygamma(1, d / 2))

        emean = trend(covariate)
        if evar > 0:
            df0 = 2 * trigamma_inverse(evar)
            prior = np.exp(emean + digamma(df0 / 2) - np.log(df0 / 2))
        else:
            df0 = np.inf
            prior = np.exp(emean)

        df_prior = np.full(len(s2), df0)
        if np.isinf(df0):
            post = prior.copy()
        else:
            if self.robust:
                # outliers keep more of their own variance
                df_prior = df0 * weights
            with np.errstate(invalid="ignore", divide="ignore"):
                post = (df_prior * prior + df * np.where(df > 0, s2, 0)) / (df_prior + df)
            post = np.where(df_prior + df > 0, post, prior)
        post = np.where(np.isfinite(s2) | (df == 0), post, np.nan)

        n_down = int((weights[ok] < 0.5).sum())
        logger.info(
            f"QL prior df: {df0:.2f}; "
            + (f"{n_down} windows down-weighted as outliers" if self.robust else "non-robust trend")
        )
        return post, df_prior, prior, weights

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def estimate(
        self,
        data: CountMatrix,
        design: np.ndarray,
        normalization: Optional[NormalizationResult] = None,
        dispersion: Optional[float] = None,
    ) -> DispersionEstimate:
        """
        Estimate dispersions for a (filtered) count matrix.

        Args:
            data: Filtered window counts
            design: libraries x coefficients design matrix
            normalization: Factors or trended offsets for ``data``
            dispersion: Fixed NB dispersion; required when the design has no
                residual degrees of freedom

        Returns:
            DispersionEstimate

        Raises:
            DispersionUndefinedError: No replication and no fixed dispersion
        """
        X = check_design(design, data.n_libraries)
        offsets, sizes = library_offsets(data, normalization)
        counts = data.counts.astype(float)
        abundances = average_log_cpm(counts, sizes, self.prior_count)
        n_libs, n_coef = X.shape
        max_df = n_libs - np.linalg.matrix_rank(X)

        if dispersion is None:
            if max_df == 0:
                raise DispersionUndefinedError(n_libs, n_coef)
            logger.info(f"Estimating dispersions for {data.n_windows} windows")
            common = self.common_dispersion(counts, X, offsets, abundances)
            trended = self.trended_dispersion(counts, X, offsets, abundances, common)
            fixed = False
        else:
            if dispersion < 0:
                raise InvalidParameterError("dispersion", dispersion, ">= 0")
            common = float(dispersion)
            trended = np.full(data.n_windows, common)
            fixed = True
            logger.info(f"Using fixed dispersion {common:.4f}")

        n = data.n_windows
        if max_df == 0:
            return DispersionEstimate(
                common=common, trended=trended,
                ql_raw=np.full(n, np.nan), ql_shrunk=np.ones(n),
                df_prior=np.full(n, np.inf), df_residual=np.zeros(n),
                prior_variance=np.ones(n), robust_weights=np.ones(n),
                abundances=abundances, fixed=fixed,
            )

        fit: NBFit = fit_nb_glm(counts, X, offsets, trended)
        df = residual_df(counts, fit.fitted, X)
        df[fit.failed] = 0
        with np.errstate(divide="ignore", invalid="ignore"):
            raw = np.where(df > 0, fit.deviance / df, 0.0)
        raw[fit.failed] = np.nan

        shrunk, df_prior, prior, weights = self.squeeze_variances(raw, df, abundances)
        shrunk[fit.failed] = np.nan

        return DispersionEstimate(
            common=common,
            trended=trended,
            ql_raw=raw,
            ql_shrunk=shrunk,
            df_prior=df_prior,
            df_residual=df,
            prior_variance=prior,
            robust_weights=weights,
            abundances=abundances,
            fixed=fixed,
        )

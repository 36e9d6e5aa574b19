"""
Differential testing for WinDiff.

Each window's NB GLM is refitted under the null hypothesis that the contrast
is zero.  The likelihood ratio between the two fits is turned into

- a quasi-likelihood F-statistic, scaled by the shrunk QL dispersion, whose
  denominator degrees of freedom include the prior df (default), or
- a plain chi-squared likelihood ratio test for designs without
  replication, where the dispersion has to be fixed by the caller.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd
from scipy.stats import chi2, f as f_dist

from .counting import CountMatrix
from .dispersion import DispersionEstimate, library_offsets
from .exceptions import DifferentialAnalysisError, InvalidParameterError, ValidationError
from .filtering import average_log_cpm
from .glm import (
    add_prior_count,
    as_contrast_matrix,
    check_design,
    fit_nb_glm,
    nb_deviance,
    reduced_design,
)
from .normalization import NormalizationResult

logger = logging.getLogger(__name__)

TEST_METHODS = ("auto", "ql", "lrt")


@dataclass(frozen=True)
class WindowTestResults:
    """Per-window test results for one contrast."""
    table: pd.DataFrame
    method: str
    contrast: np.ndarray

    def __len__(self) -> int:
        return len(self.table)

    @property
    def pvalues(self) -> np.ndarray:
        return self.table["pvalue"].to_numpy()

    @property
    def logfc(self) -> np.ndarray:
        return self.table["logFC"].to_numpy()

    @property
    def failed(self) -> np.ndarray:
        return self.table["failed"].to_numpy()


class DifferentialTester:
    """Test a contrast of NB GLM coefficients in every window."""

    def __init__(self, method: str = "auto", prior_count: float = 0.125, abundance_prior: float = 2.0):
        """
        Initialize the tester.

        Args:
            method: "ql" (quasi-likelihood F-test), "lrt" (likelihood ratio
                test with the NB dispersion only) or "auto" (QL when the
                design has residual degrees of freedom)
            prior_count: Prior count used for reported log fold changes
            abundance_prior: Prior count for the reported logCPM
        """
        if method not in TEST_METHODS:
            raise InvalidParameterError("method", method, f"one of {TEST_METHODS}")
        self.method = method
        self.prior_count = prior_count
        self.abundance_prior = abundance_prior

    def _resolve_method(self, dispersion: DispersionEstimate) -> str:
        if self.method == "auto":
            return "ql" if dispersion.has_quasi_likelihood else "lrt"
        if self.method == "ql" and not dispersion.has_quasi_likelihood:
            raise DifferentialAnalysisError(
                "Quasi-likelihood testing needs residual degrees of freedom; use method='lrt' "
                "with a fixed dispersion for unreplicated designs"
            )
        return self.method

    def test(
        self,
        data: CountMatrix,
        design: np.ndarray,
        contrast: Union[int, Sequence[float], np.ndarray],
        dispersion: DispersionEstimate,
        normalization: Optional[NormalizationResult] = None,
    ) -> WindowTestResults:
        """
        Test ``contrast`` in every window.

        Args:
            data: Filtered window counts (rows aligned with ``dispersion``)
            design: libraries x coefficients
            contrast: Coefficient index, contrast vector or p x k matrix
            dispersion: Output of DispersionModel.estimate for ``data``
            normalization: Factors or offsets used for ``dispersion``

        Returns:
            WindowTestResults with logFC, logCPM, statistic, pvalue, failed
        """
        X = check_design(design, data.n_libraries)
        C = as_contrast_matrix(contrast, X.shape[1])
        if len(dispersion.trended) != data.n_windows:
            raise ValidationError(
                f"Dispersion estimates cover {len(dispersion.trended)} windows, data has {data.n_windows}"
            )
        method = self._resolve_method(dispersion)
        offsets, sizes = library_offsets(data, normalization)
        counts = data.counts.astype(float)
        phi = dispersion.trended

        full = fit_nb_glm(counts, X, offsets, phi)
        X0, df_test = reduced_design(X, C)
        if X0.shape[1] == 0:
            mu0 = np.exp(np.broadcast_to(np.asarray(offsets, dtype=float), counts.shape))
            dev0 = nb_deviance(counts, mu0, phi[:, None])
            failed0 = ~np.isfinite(dev0)
        else:
            null = fit_nb_glm(counts, X0, offsets, phi)
            dev0, failed0 = null.deviance, null.failed

        with np.errstate(invalid="ignore"):
            lr = np.maximum(dev0 - full.deviance, 0)

        if method == "ql":
            df_total = dispersion.df_prior + dispersion.df_residual
            df_total = np.minimum(df_total, np.sum(dispersion.df_residual))
            with np.errstate(divide="ignore", invalid="ignore"):
                statistic = lr / df_test / dispersion.ql_shrunk
                pvalue = np.where(
                    np.isinf(df_total),
                    chi2.sf(statistic * df_test, df_test),
                    f_dist.sf(statistic, df_test, np.where(np.isinf(df_total), 1.0, df_total)),
                )
        else:
            statistic = lr
            pvalue = chi2.sf(lr, df_test)

        shrunk_counts, shrunk_offsets = add_prior_count(counts, offsets, self.prior_count)
        shrunk = fit_nb_glm(shrunk_counts, X, shrunk_offsets, phi)
        logfc = (shrunk.coefficients @ C) / np.log(2)

        failed = full.failed | failed0 | ~np.isfinite(pvalue) | ~np.isfinite(statistic)
        statistic = np.where(failed, np.nan, statistic)
        pvalue = np.where(failed, np.nan, np.clip(pvalue, 0, 1))
        if failed.any():
            logger.warning(f"{int(failed.sum())} windows could not be tested and are marked as failed")

        table = data.regions.to_dataframe()
        table["logFC"] = logfc[:, 0]
        for k in range(1, logfc.shape[1]):
            table[f"logFC.{k + 1}"] = logfc[:, k]
        table["logCPM"] = average_log_cpm(counts, sizes, self.abundance_prior)
        table["F" if method == "ql" else "LR"] = statistic
        table["pvalue"] = pvalue
        table["failed"] = failed

        logger.info(
            f"Tested {data.n_windows} windows with {method.upper()} "
            f"({int((pvalue < 0.05).sum())} with p < 0.05)"
        )
        return WindowTestResults(table=table, method=method, contrast=C)

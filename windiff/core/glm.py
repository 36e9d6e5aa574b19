"""
Negative binomial generalized linear models for WinDiff.

The model for window g and library j is

    y_gj ~ NB(mu_gj, phi_g),  log(mu_gj) = x_j' beta_g + offset_gj,
    var(y_gj) = mu_gj + phi_g * mu_gj^2

All windows are fitted together: Fisher scoring with Levenberg damping,
using batched linear solves.  A window whose counts or offsets are not
finite is flagged as failed rather than aborting the batch.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy.special import xlogy
from scipy.stats import nbinom, poisson

from .exceptions import InvalidParameterError, ValidationError

logger = logging.getLogger(__name__)

# dispersions below this are treated as Poisson
POISSON_DISPERSION = 1e-8
_ETA_LIMIT = 100.0


# ============================================================================
# Likelihood and deviance
# ============================================================================


def _as_matrix(value, shape: Tuple[int, int]) -> np.ndarray:
    # a 1-D value is one entry per library
    return np.broadcast_to(np.asarray(value, dtype=float), shape)


def _dispersion_column(dispersion, n_rows: int) -> np.ndarray:
    dispersion = np.asarray(dispersion, dtype=float)
    if dispersion.ndim == 0:
        dispersion = np.full(n_rows, float(dispersion))
    if dispersion.shape != (n_rows,):
        raise ValidationError(f"Expected a scalar or {n_rows} dispersions, got shape {dispersion.shape}")
    if (dispersion < 0).any():
        raise InvalidParameterError("dispersion", float(dispersion.min()), ">= 0")
    return dispersion[:, None]


def nb_unit_deviance(y: np.ndarray, mu: np.ndarray, dispersion: np.ndarray) -> np.ndarray:
    """Unit deviances, elementwise; ``dispersion`` broadcasts against ``y``."""
    y = np.asarray(y, dtype=float)
    mu = np.maximum(np.asarray(mu, dtype=float), 1e-300)
    phi = np.broadcast_to(np.asarray(dispersion, dtype=float), y.shape)

    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        pois = 2 * (xlogy(y, y / mu) - (y - mu))
        safe_phi = np.where(phi < POISSON_DISPERSION, 1.0, phi)
        nb = 2 * (
            xlogy(y, y / mu)
            - (y + 1 / safe_phi) * (np.log1p(safe_phi * y) - np.log1p(safe_phi * mu))
        )
    dev = np.where(phi < POISSON_DISPERSION, pois, nb)
    return np.maximum(dev, 0)


def nb_deviance(y: np.ndarray, mu: np.ndarray, dispersion) -> np.ndarray:
    """Total deviance per row."""
    return nb_unit_deviance(y, mu, dispersion).sum(axis=1)


def nb_loglik(y: np.ndarray, mu: np.ndarray, dispersion) -> np.ndarray:
    """Negative binomial log-likelihood per row."""
    y = np.asarray(y, dtype=float)
    mu = np.asarray(mu, dtype=float)
    phi = np.broadcast_to(np.asarray(dispersion, dtype=float), y.shape)
    with np.errstate(divide="ignore", invalid="ignore"):
        size = 1 / np.where(phi < POISSON_DISPERSION, 1.0, phi)
        ll_nb = nbinom.logpmf(y, size, size / (size + mu))
        ll_pois = poisson.logpmf(y, mu)
    return np.where(phi < POISSON_DISPERSION, ll_pois, ll_nb).sum(axis=1)


# ============================================================================
# Fitting
# ============================================================================


@dataclass
class NBFit:
    """Result of fitting the NB GLM to every window."""
    coefficients: np.ndarray
    fitted: np.ndarray
    deviance: np.ndarray
    converged: np.ndarray
    failed: np.ndarray
    iterations: int

    @property
    def n_windows(self) -> int:
        return self.coefficients.shape[0]


def _mean(beta: np.ndarray, design: np.ndarray, offsets: np.ndarray) -> np.ndarray:
    eta = beta @ design.T + offsets
    return np.exp(np.clip(eta, -_ETA_LIMIT, _ETA_LIMIT))


def fit_nb_glm(
    counts: np.ndarray,
    design: np.ndarray,
    offsets,
    dispersion,
    maxit: int = 50,
    tol: float = 1e-6,
) -> NBFit:
    """
    Fit a negative binomial GLM to each row of ``counts``.

    Args:
        counts: windows x libraries
        design: libraries x coefficients
        offsets: natural-log offsets, per library or windows x libraries
        dispersion: scalar or one NB dispersion per window
        maxit: Maximum scoring iterations
        tol: Relative deviance change treated as converged

    Returns:
        NBFit
    """
    y = np.asarray(counts, dtype=float)
    X = np.asarray(design, dtype=float)
    n_rows, n_libs = y.shape
    if X.shape[0] != n_libs:
        raise ValidationError(f"Design has {X.shape[0]} rows but counts have {n_libs} libraries")
    p = X.shape[1]
    O = np.array(_as_matrix(offsets, (n_rows, n_libs)))
    phi = _dispersion_column(dispersion, n_rows)

    failed = ~(np.isfinite(y).all(axis=1) & np.isfinite(O).all(axis=1))
    y = np.where(failed[:, None], 0.0, y)
    O = np.where(failed[:, None], 0.0, O)

    if n_rows == 0:
        empty = np.zeros((0, p))
        return NBFit(empty, np.zeros((0, n_libs)), np.zeros(0), np.zeros(0, bool), np.zeros(0, bool), 0)

    beta = (np.log(y + 0.5) - O) @ np.linalg.pinv(X).T
    mu = _mean(beta, X, O)
    dev = nb_deviance(y, mu, phi)
    damping = np.full(n_rows, 1e-6)
    converged = failed.copy()
    eye = np.eye(p)

    iteration = 0
    with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
        for iteration in range(1, maxit + 1):
            idx = np.flatnonzero(~converged)
            if not len(idx):
                break
            yi, mui, Oi, phii, bi, devi = y[idx], mu[idx], O[idx], phi[idx], beta[idx], dev[idx]

            denom = 1 + phii * mui
            weights = mui / denom
            score = ((yi - mui) / denom) @ X
            info = np.einsum("gn,ni,nj->gij", weights, X, X)
            scale = np.maximum(np.einsum("gii->g", info) / p, 1e-10)

            lam = damping[idx]
            pending = np.ones(len(idx), dtype=bool)
            new_beta, new_mu, new_dev = bi.copy(), mui.copy(), devi.copy()
            for _ in range(10):
                k = np.flatnonzero(pending)
                if not len(k):
                    break
                system = info[k] + (lam[k] * scale[k])[:, None, None] * eye
                step = np.linalg.solve(system, score[k][..., None])[..., 0]
                trial = bi[k] + step
                mu_trial = _mean(trial, X, Oi[k])
                dev_trial = nb_deviance(yi[k], mu_trial, phii[k])
                better = np.isfinite(dev_trial) & (dev_trial <= devi[k] * (1 + 1e-12) + 1e-12)

                accepted = k[better]
                new_beta[accepted] = trial[better]
                new_mu[accepted] = mu_trial[better]
                new_dev[accepted] = dev_trial[better]
                lam[accepted] = np.maximum(lam[accepted] / 10, 1e-12)
                lam[k[~better]] *= 10
                pending[accepted] = False

            decrease = devi - new_dev
            done = pending | (decrease <= tol * (np.abs(new_dev) + 0.1))
            beta[idx], mu[idx], dev[idx] = new_beta, new_mu, new_dev
            damping[idx] = lam
            converged[idx] = done

    bad = ~(np.isfinite(beta).all(axis=1) & np.isfinite(dev))
    failed = failed | bad
    if (~converged).any():
        logger.debug(f"{int((~converged).sum())} windows did not converge in {maxit} iterations")
    if failed.any():
        logger.warning(f"GLM fit failed for {int(failed.sum())} windows")

    beta[failed] = np.nan
    mu[failed] = np.nan
    dev[failed] = np.nan
    return NBFit(beta, mu, dev, converged & ~failed, failed, iteration)


def add_prior_count(counts: np.ndarray, offsets, prior_count: float = 0.125) -> Tuple[np.ndarray, np.ndarray]:
    """
    Add a library-size-scaled prior count and adjust offsets to match.

    Used to keep log fold changes finite when one group has no counts.
    """
    y = np.asarray(counts, dtype=float)
    O = np.array(_as_matrix(offsets, y.shape))
    lib = np.exp(O)
    prior = prior_count * lib / lib.mean(axis=1, keepdims=True)
    return y + prior, np.log(lib + 2 * prior)


def residual_df(counts: np.ndarray, fitted: np.ndarray, design: np.ndarray, tol: float = 1e-4) -> np.ndarray:
    """
    Residual degrees of freedom per window, adjusted for exact zeros.

    Libraries with a zero count and a zero fitted value carry no residual
    information; they are removed along with the design columns they alone
    determine.
    """
    y = np.asarray(counts, dtype=float)
    mu = np.asarray(fitted, dtype=float)
    X = np.asarray(design, dtype=float)
    n_libs = X.shape[0]
    df = np.full(y.shape[0], float(n_libs - np.linalg.matrix_rank(X)))

    with np.errstate(invalid="ignore"):
        zero = (mu < tol) & (y < tol)
    has_zero = zero.any(axis=1)
    if has_zero.any():
        patterns, inverse = np.unique(zero[has_zero], axis=0, return_inverse=True)
        values = np.empty(len(patterns))
        for i, pattern in enumerate(patterns):
            keep = ~pattern
            values[i] = 0.0 if not keep.any() else keep.sum() - np.linalg.matrix_rank(X[keep])
        df[has_zero] = values[np.ravel(inverse)]
    return df


# ============================================================================
# Designs and contrasts
# ============================================================================


def design_from_groups(groups: Sequence[str], libraries: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """
    One-way cell-means design: one indicator column per group.

    Columns follow the order in which groups first appear.
    """
    groups = [str(g) for g in groups]
    levels = list(dict.fromkeys(groups))
    design = pd.get_dummies(pd.Categorical(groups, categories=levels), dtype=float)
    design.columns = [str(c) for c in design.columns]
    if libraries is not None:
        design.index = list(libraries)
    return design


def group_contrast(design: pd.DataFrame, group1: str, group2: str) -> np.ndarray:
    """Contrast vector for ``group1 - group2`` in a cell-means design."""
    for g in (group1, group2):
        if g not in design.columns:
            raise InvalidParameterError("group", g, f"one of {list(design.columns)}")
    contrast = np.zeros(design.shape[1])
    contrast[list(design.columns).index(group1)] = 1.0
    contrast[list(design.columns).index(group2)] = -1.0
    return contrast


def as_contrast_matrix(contrast: Union[int, Sequence[float], np.ndarray], n_coefficients: int) -> np.ndarray:
    """Coerce a coefficient index or contrast vector/matrix to a p x k matrix."""
    if isinstance(contrast, (int, np.integer)) and not isinstance(contrast, bool):
        if not 0 <= contrast < n_coefficients:
            raise InvalidParameterError("coefficient", contrast, f"0..{n_coefficients - 1}")
        matrix = np.zeros((n_coefficients, 1))
        matrix[contrast, 0] = 1.0
        return matrix
    matrix = np.asarray(contrast, dtype=float)
    if matrix.ndim == 1:
        matrix = matrix[:, None]
    if matrix.shape[0] != n_coefficients:
        raise InvalidParameterError("contrast", list(np.ravel(contrast)), f"length {n_coefficients}")
    if not np.any(matrix):
        raise InvalidParameterError("contrast", list(np.ravel(contrast)), "a non-zero vector")
    return matrix


def reduced_design(design: np.ndarray, contrast: np.ndarray) -> Tuple[np.ndarray, int]:
    """
    Design for the null hypothesis ``contrast' beta = 0``.

    The coefficient space is rotated so the contrast spans the leading
    columns, which are then dropped.

    Returns:
        (reduced design, number of tested degrees of freedom)
    """
    X = np.asarray(design, dtype=float)
    C = as_contrast_matrix(contrast, X.shape[1])
    n_test = np.linalg.matrix_rank(C)
    Q, _ = np.linalg.qr(C, mode="complete")
    rotated = X @ Q
    return rotated[:, n_test:], int(n_test)


def check_design(design: np.ndarray, n_libraries: int) -> np.ndarray:
    X = np.asarray(design, dtype=float)
    if X.ndim != 2 or X.shape[0] != n_libraries:
        raise ValidationError(f"Design must have one row per library ({n_libraries}), got shape {X.shape}")
    if np.linalg.matrix_rank(X) < X.shape[1]:
        raise ValidationError("Design matrix is not of full column rank")
    return X

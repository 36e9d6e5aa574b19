"""
Unit tests for the negative binomial GLM, designs and contrasts.
"""

import math

import numpy as np
import pytest
from scipy.stats import poisson

from windiff.core.exceptions import InvalidParameterError, ValidationError
from windiff.core.glm import (
    add_prior_count,
    as_contrast_matrix,
    check_design,
    design_from_groups,
    fit_nb_glm,
    group_contrast,
    nb_deviance,
    nb_loglik,
    nb_unit_deviance,
    reduced_design,
    residual_df,
)

TWO_GROUPS = np.array([[1, 0], [1, 0], [0, 1], [0, 1]], dtype=float)


class TestDeviance:
    """Tests for unit deviances and the log-likelihood."""

    def test_zero_at_perfect_fit(self):
        y = np.array([[3.0, 10.0]])
        np.testing.assert_allclose(nb_unit_deviance(y, y, 0.2), 0, atol=1e-12)

    def test_poisson_zero_count(self):
        assert nb_unit_deviance(np.array([[0.0]]), np.array([[1.0]]), 0.0)[0, 0] == pytest.approx(2.0)

    def test_nb_zero_count(self):
        dev = nb_unit_deviance(np.array([[0.0]]), np.array([[1.0]]), 1.0)[0, 0]
        assert dev == pytest.approx(2 * math.log(2))

    def test_overdispersion_lowers_deviance(self):
        y = np.array([[0.0, 20.0]])
        mu = np.array([[10.0, 10.0]])
        assert nb_deviance(y, mu, 0.5)[0] < nb_deviance(y, mu, 0.0)[0]

    def test_loglik_poisson_limit(self):
        y = np.array([[2.0, 7.0]])
        mu = np.array([[3.0, 5.0]])
        expected = poisson.logpmf([2, 7], [3, 5]).sum()
        assert nb_loglik(y, mu, 0.0)[0] == pytest.approx(expected)


class TestFit:
    """Tests for Fisher scoring across windows."""

    def test_cell_means_recovered(self):
        y = np.array([[10, 10, 30, 30], [4, 6, 50, 70]])
        fit = fit_nb_glm(y, TWO_GROUPS, 0.0, 0.1)
        np.testing.assert_allclose(fit.fitted, [[10, 10, 30, 30], [5, 5, 60, 60]], rtol=1e-3)
        np.testing.assert_allclose(fit.coefficients[0], np.log([10, 30]), rtol=1e-3)
        assert fit.converged.all()
        assert not fit.failed.any()

    def test_offsets_are_respected(self):
        y = np.array([[10, 20, 10, 20]])
        offsets = np.log([1.0, 2.0, 1.0, 2.0])
        fit = fit_nb_glm(y, TWO_GROUPS, offsets, 0.05)
        np.testing.assert_allclose(fit.coefficients[0], np.log([10, 10]), rtol=1e-3)

    def test_zero_group_stays_finite(self):
        fit = fit_nb_glm(np.array([[0, 0, 20, 20]]), TWO_GROUPS, 0.0, 0.1)
        assert np.isfinite(fit.deviance).all()
        assert fit.fitted[0, 0] < 1e-3

    def test_non_finite_offsets_fail_only_that_window(self):
        offsets = np.zeros((2, 4))
        offsets[1, 0] = np.nan
        fit = fit_nb_glm(np.array([[5, 5, 9, 9], [5, 5, 9, 9]]), TWO_GROUPS, offsets, 0.1)
        np.testing.assert_array_equal(fit.failed, [False, True])
        assert np.isnan(fit.coefficients[1]).all()
        assert np.isfinite(fit.coefficients[0]).all()

    def test_empty(self):
        fit = fit_nb_glm(np.zeros((0, 4)), TWO_GROUPS, 0.0, 0.1)
        assert fit.n_windows == 0

    def test_design_rows_checked(self):
        with pytest.raises(ValidationError):
            fit_nb_glm(np.ones((1, 3)), TWO_GROUPS, 0.0, 0.1)

    def test_negative_dispersion(self):
        with pytest.raises(InvalidParameterError):
            fit_nb_glm(np.ones((1, 4)), TWO_GROUPS, 0.0, -0.1)


class TestPriorCount:
    """Tests for the prior count used for fold changes."""

    def test_equal_libraries(self):
        y, offsets = add_prior_count(np.array([[0, 4]]), np.log([100.0, 100.0]), prior_count=0.125)
        np.testing.assert_allclose(y, [[0.125, 4.125]])
        np.testing.assert_allclose(offsets, np.log([[100.25, 100.25]]))

    def test_prior_scales_with_library_size(self):
        y, _ = add_prior_count(np.zeros((1, 2)), np.log([100.0, 300.0]), prior_count=1.0)
        np.testing.assert_allclose(y, [[0.5, 1.5]])


class TestResidualDF:
    """Tests for residual degrees of freedom with exact zeros."""

    def test_zeros_remove_their_group(self):
        counts = np.array([[0, 0, 5, 5], [5, 5, 5, 5], [0, 0, 0, 0]])
        fitted = counts.astype(float)
        np.testing.assert_array_equal(residual_df(counts, fitted, TWO_GROUPS), [1, 2, 0])

    def test_single_zero_keeps_group(self):
        counts = np.array([[0, 4, 5, 5]])
        fitted = np.array([[2.0, 2.0, 5.0, 5.0]])
        assert residual_df(counts, fitted, TWO_GROUPS)[0] == 2


class TestDesigns:
    """Tests for design and contrast helpers."""

    def test_design_from_groups_keeps_first_seen_order(self):
        design = design_from_groups(["B", "A", "B"], ["s1", "s2", "s3"])
        assert list(design.columns) == ["B", "A"]
        assert list(design.index) == ["s1", "s2", "s3"]
        np.testing.assert_array_equal(design.to_numpy(), [[1, 0], [0, 1], [1, 0]])

    def test_group_contrast(self):
        design = design_from_groups(["A", "A", "B", "B"])
        np.testing.assert_array_equal(group_contrast(design, "B", "A"), [-1, 1])

    def test_group_contrast_unknown_group(self):
        with pytest.raises(InvalidParameterError):
            group_contrast(design_from_groups(["A", "B"]), "A", "C")

    def test_coefficient_index(self):
        np.testing.assert_array_equal(as_contrast_matrix(1, 3), [[0], [1], [0]])

    def test_coefficient_out_of_range(self):
        with pytest.raises(InvalidParameterError):
            as_contrast_matrix(3, 3)

    def test_contrast_length_checked(self):
        with pytest.raises(InvalidParameterError):
            as_contrast_matrix([1, -1], 3)

    def test_zero_contrast_rejected(self):
        with pytest.raises(InvalidParameterError):
            as_contrast_matrix([0, 0], 2)

    def test_reduced_design_for_group_difference(self):
        """Testing A - B leaves a single common-mean column."""
        reduced, n_test = reduced_design(TWO_GROUPS, np.array([1.0, -1.0]))
        assert n_test == 1
        assert reduced.shape == (4, 1)
        np.testing.assert_allclose(reduced[:, 0], reduced[0, 0])

    def test_reduced_design_for_coefficient(self):
        design = np.array([[1, 0], [1, 0], [1, 1], [1, 1]], dtype=float)
        reduced, n_test = reduced_design(design, 1)
        assert n_test == 1
        np.testing.assert_allclose(np.abs(reduced[:, 0]), 1.0)

    def test_check_design_rank(self):
        with pytest.raises(ValidationError):
            check_design(np.array([[1, 1], [1, 1], [1, 1]]), 3)

    def test_check_design_rows(self):
        with pytest.raises(ValidationError):
            check_design(TWO_GROUPS, 3)

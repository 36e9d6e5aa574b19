"""
Unit tests for window-level differential testing.
"""

import numpy as np
import pytest

from windiff.core.dispersion import DispersionEstimate, DispersionModel
from windiff.core.exceptions import DifferentialAnalysisError, InvalidParameterError, ValidationError
from windiff.core.glm import design_from_groups, group_contrast
from windiff.core.normalization import NormalizationOffsets
from windiff.core.testing import DifferentialTester

from conftest import make_count_matrix

N_DB = 10


def simulate(n_windows=300, groups=("A", "A", "B", "B"), base=30.0, enriched=150.0, phi=0.05, seed=11):
    """NB counts where the first N_DB windows are enriched in group A."""
    rng = np.random.default_rng(seed)
    means = np.full((n_windows, len(groups)), base)
    in_a = np.array([g == "A" for g in groups])
    means[:N_DB, in_a] = enriched
    size = 1 / phi
    return rng.negative_binomial(size, size / (size + means))


def fixed_estimate(n, dispersion=0.05):
    return DispersionEstimate(
        common=dispersion, trended=np.full(n, dispersion),
        ql_raw=np.full(n, np.nan), ql_shrunk=np.ones(n),
        df_prior=np.full(n, np.inf), df_residual=np.zeros(n),
        prior_variance=np.ones(n), robust_weights=np.ones(n),
        abundances=np.zeros(n), fixed=True,
    )


@pytest.fixture(scope="module")
def replicated():
    groups = ["A", "A", "B", "B"]
    data = make_count_matrix(simulate(groups=groups))
    design = design_from_groups(groups)
    contrast = group_contrast(design, "A", "B")
    dispersion = DispersionModel().estimate(data, design.to_numpy())
    results = DifferentialTester().test(data, design.to_numpy(), contrast, dispersion)
    return results


class TestQuasiLikelihood:
    """Tests for the QL F-test on replicated designs."""

    def test_auto_selects_ql(self, replicated):
        assert replicated.method == "ql"
        assert "F" in replicated.table.columns

    def test_enriched_windows_are_detected(self, replicated):
        assert np.median(replicated.pvalues[:N_DB]) < 1e-3
        assert np.median(replicated.logfc[:N_DB]) > 1.5
        assert (replicated.logfc[:N_DB] > 0.5).all()

    def test_null_windows_are_calibrated(self, replicated):
        null = replicated.pvalues[N_DB:]
        assert np.mean(null < 0.05) < 0.15
        assert np.median(null) > 0.3

    def test_pvalues_in_unit_interval(self, replicated):
        p = replicated.pvalues
        assert ((p >= 0) & (p <= 1)).all()
        assert not replicated.failed.any()

    def test_table_keeps_coordinates(self, replicated):
        assert list(replicated.table.columns[:4]) == ["chrom", "start", "end", "strand"]
        assert len(replicated) == 300


class TestLikelihoodRatio:
    """Tests for the LRT with a fixed dispersion."""

    def test_unreplicated_design(self):
        groups = ["A", "B"]
        data = make_count_matrix(simulate(groups=groups))
        design = design_from_groups(groups).to_numpy()
        dispersion = DispersionModel().estimate(data, design, dispersion=0.05)
        results = DifferentialTester().test(data, design, [1, -1], dispersion)
        assert results.method == "lrt"
        assert "LR" in results.table.columns
        assert np.median(results.pvalues[:N_DB]) < 0.01

    def test_ql_requires_residual_df(self):
        groups = ["A", "B"]
        data = make_count_matrix(simulate(n_windows=50, groups=groups))
        design = design_from_groups(groups).to_numpy()
        dispersion = DispersionModel().estimate(data, design, dispersion=0.05)
        with pytest.raises(DifferentialAnalysisError):
            DifferentialTester(method="ql").test(data, design, [1, -1], dispersion)

    def test_zero_group_gives_finite_fold_change(self):
        data = make_count_matrix(np.array([[0, 0, 40, 50], [20, 25, 22, 18]]), totals=[1000] * 4)
        design = design_from_groups(["A", "A", "B", "B"]).to_numpy()
        results = DifferentialTester(method="lrt").test(data, design, [1, -1], fixed_estimate(2))
        assert np.isfinite(results.logfc).all()
        assert results.logfc[0] < -3
        assert results.pvalues[0] < results.pvalues[1]


class TestFailures:
    """Tests for windows that cannot be fitted and invalid inputs."""

    def test_failed_window_is_flagged(self):
        counts = np.array([[10, 12, 30, 28], [15, 14, 16, 15]])
        data = make_count_matrix(counts)
        offsets = np.log(np.full((2, 4), 100.0))
        offsets[0, 1] = np.nan
        normalization = NormalizationOffsets(offsets, data.library_sizes, data.libraries)
        design = design_from_groups(["A", "A", "B", "B"]).to_numpy()
        results = DifferentialTester(method="lrt").test(data, design, [1, -1], fixed_estimate(2), normalization)
        np.testing.assert_array_equal(results.failed, [True, False])
        assert np.isnan(results.pvalues[0])
        assert 0 <= results.pvalues[1] <= 1

    def test_dispersion_length_checked(self):
        data = make_count_matrix(np.ones((3, 4), dtype=int))
        design = design_from_groups(["A", "A", "B", "B"]).to_numpy()
        with pytest.raises(ValidationError):
            DifferentialTester(method="lrt").test(data, design, [1, -1], fixed_estimate(2))

    def test_unknown_method(self):
        with pytest.raises(InvalidParameterError):
            DifferentialTester(method="wald")

"""
Unit tests for abundance computation and window filtering.
"""

import math

import numpy as np
import pytest

from windiff.core.exceptions import EmptyDataError, ValidationError
from windiff.core.filtering import AbundanceFilter, average_log_cpm, scaled_average

from conftest import make_count_matrix


class TestAverageLogCPM:
    """Tests for the average log2 CPM abundance."""

    def test_equal_libraries(self):
        """With no prior, identical libraries give log2 of the plain CPM."""
        ab = average_log_cpm(np.array([[10, 10]]), np.array([1e6, 1e6]), prior_count=0)
        assert ab[0] == pytest.approx(math.log2(10))

    def test_monotone_in_counts(self):
        ab = average_log_cpm(np.array([[0, 0], [5, 5], [50, 50]]), np.array([1e4, 1e4]))
        assert ab[0] < ab[1] < ab[2]

    def test_empty_library_excluded(self):
        with_empty = average_log_cpm(np.array([[10, 0]]), np.array([1e6, 0]))
        alone = average_log_cpm(np.array([[10]]), np.array([1e6]))
        assert with_empty[0] == pytest.approx(alone[0])

    def test_all_libraries_empty(self):
        with pytest.raises(EmptyDataError):
            average_log_cpm(np.array([[0, 0]]), np.array([0, 0]))

    def test_scaled_average_matches_width(self):
        """A bin ``scale`` times wider with ``scale`` times the counts has about the same abundance.

        The prior inflates library sizes by ``2 * prior * scale``, so agreement is approximate.
        """
        sizes = np.array([1e6, 1e6])
        window = average_log_cpm(np.array([[10, 10]]), sizes)
        wide = scaled_average(np.array([[100, 100]]), sizes, scale=10)
        assert wide[0] == pytest.approx(window[0], abs=1e-3)

    def test_scaled_average_per_row(self):
        sizes = np.array([1e6, 1e6])
        out = scaled_average(np.array([[20, 20], [40, 40]]), sizes, scale=np.array([2.0, 4.0]))
        assert out[0] == pytest.approx(out[1], abs=1e-3)


class TestGlobalFilter:
    """Tests for filtering against genome-wide background bins."""

    def test_background_level_window_is_excluded(self):
        """A window at background abundance has statistic 0 and fails log2(3)."""
        bins = make_count_matrix(np.full((20, 2), 5), width=100, totals=[10000, 10000])
        data = make_count_matrix(np.array([[5, 5], [50, 50]]), width=100, totals=[10000, 10000])
        result = AbundanceFilter().filter_global(data, bins)
        assert result.statistic[0] == pytest.approx(0.0)
        np.testing.assert_array_equal(result.keep(math.log2(3)), [False, True])

    def test_missing_bins_lower_background(self):
        bins = make_count_matrix(np.full((5, 2), 5), width=100, totals=[10000, 10000])
        data = make_count_matrix(np.array([[5, 5]]), width=100, totals=[10000, 10000])
        full = AbundanceFilter().filter_global(data, bins)
        padded = AbundanceFilter().filter_global(data, bins, genome_bins=100)
        assert padded.background[0] < full.background[0]

    def test_bin_width_scaling(self):
        bins = make_count_matrix(np.full((10, 2), 50), width=1000, totals=[1_000_000, 1_000_000])
        data = make_count_matrix(np.array([[5, 5]]), width=100, totals=[1_000_000, 1_000_000])
        result = AbundanceFilter().filter_global(data, bins)
        assert result.statistic[0] == pytest.approx(0.0, abs=1e-3)

    def test_data_not_modified(self):
        bins = make_count_matrix(np.full((4, 2), 5), width=100, totals=[1000, 1000])
        data = make_count_matrix(np.array([[5, 5], [50, 50]]), width=100, totals=[1000, 1000])
        before = data.counts.copy()
        AbundanceFilter().filter_global(data, bins)
        np.testing.assert_array_equal(data.counts, before)

    def test_library_mismatch(self):
        bins = make_count_matrix(np.full((4, 2), 5), width=100, libraries=("x", "y"))
        data = make_count_matrix(np.array([[5, 5]]), width=100)
        with pytest.raises(ValidationError):
            AbundanceFilter().filter_global(data, bins)


class TestLocalFilter:
    """Tests for filtering against each window's neighbourhood."""

    def test_window_counts_are_subtracted(self):
        data = make_count_matrix(np.array([[30, 30], [2, 2]]), width=10, totals=[1000, 1000])
        # neighbourhoods are 50 bp wide: 40 bp of flank each
        flank = np.array([[4, 4], [20, 20]])
        hood = make_count_matrix(data.counts + flank, width=50, totals=[1000, 1000])
        result = AbundanceFilter().filter_local(data, hood)
        assert result.statistic[0] > math.log2(3)
        assert result.statistic[1] < 0
        assert result.mode == "local"

    def test_row_mismatch(self):
        data = make_count_matrix(np.array([[3, 3]]), width=10)
        hood = make_count_matrix(np.array([[5, 5], [6, 6]]), width=50)
        with pytest.raises(ValidationError):
            AbundanceFilter().filter_local(data, hood)


class TestProportionalFilter:
    """Tests for keeping a top fraction of the genome."""

    def test_keeps_top_fraction(self):
        counts = np.column_stack([np.arange(10), np.arange(10)])
        data = make_count_matrix(counts, width=10, totals=[1000, 1000])
        result = AbundanceFilter().filter_proportional(data)
        keep = result.keep(0.75)
        np.testing.assert_array_equal(np.flatnonzero(keep), [8, 9])

    def test_genome_size_accounts_for_missing_windows(self):
        counts = np.column_stack([np.arange(10), np.arange(10)])
        data = make_count_matrix(counts, width=10, totals=[1000, 1000])
        result = AbundanceFilter().filter_proportional(data, genome_windows=100)
        assert result.keep(0.945).sum() == 5

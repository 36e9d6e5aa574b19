"""
Integration tests for the full differential binding pipeline.

The simulated libraries are small, so abundance prior counts dominate the
global and local filters; these tests keep the top fraction of windows.
"""

import numpy as np
import pandas as pd
import pytest

from windiff.core.exceptions import EmptyDataError, InsufficientSamplesError, ValidationError
from windiff.core.fragments import Library
from windiff.core.intervals import IntervalSet
from windiff.core.pipeline import (
    DifferentialBindingAnalyzer,
    DifferentialBindingResults,
    run_differential_binding,
)
from windiff.models.schemas import AnalysisConfig

from conftest import DIFFERENTIAL_PEAK, FRAGMENT_LENGTH

PIPELINE_OPTIONS = {"filter_mode": "proportional", "filter_proportion": 0.02}

# Windows (width 10, spacing 50) overlapped by fragments starting in the
# 100 bp after DIFFERENTIAL_PEAK.
DB_WINDOWS = sum(
    1 for start in range(1, 200_000, 50)
    if start + 9 >= DIFFERENTIAL_PEAK and start <= DIFFERENTIAL_PEAK + 99 + FRAGMENT_LENGTH - 1
)


@pytest.fixture
def results(differential_libraries, chromosome_lengths, group_labels):
    return run_differential_binding(
        differential_libraries, chromosome_lengths, group_labels, "A", "B", **PIPELINE_OPTIONS
    )


def _region_at(regions: pd.DataFrame, position: int) -> pd.DataFrame:
    return regions[(regions["start"] <= position + 150) & (regions["end"] >= position)]


class TestTwoGroupAnalysis:
    """Two replicates per group with one differentially bound site."""

    def test_summary_counts(self, results):
        assert isinstance(results, DifferentialBindingResults)
        assert results.total_windows == 4000
        assert 0 < results.filtered_windows < results.total_windows
        assert results.total_regions == len(results.regions)
        assert results.test_method == "ql"

    def test_differential_site_is_most_significant(self, results):
        regions = results.regions
        best = regions.loc[regions["pvalue"].idxmin()]
        assert best["start"] <= DIFFERENTIAL_PEAK + 150 and best["end"] >= DIFFERENTIAL_PEAK
        assert best["FDR"] < 0.05
        assert best["direction"] == "up"
        assert best["rep_logFC"] > 1

    def test_differential_site_counted_as_up(self, results):
        assert results.significant_regions >= 1
        assert results.up_regions >= 1
        assert not _region_at(results.significant(), DIFFERENTIAL_PEAK).empty

    def test_single_region_with_wide_tolerance(
        self, differential_libraries, chromosome_lengths, group_labels
    ):
        results = run_differential_binding(
            differential_libraries, chromosome_lengths, group_labels, "A", "B",
            window_width=10, spacing=50, tol=1000, **PIPELINE_OPTIONS
        )
        significant = results.significant()
        assert len(significant) == 1
        region = significant.iloc[0]
        assert region["start"] <= DIFFERENTIAL_PEAK + 1
        assert region["end"] >= DIFFERENTIAL_PEAK + 150
        assert region["num_up"] == DB_WINDOWS == 4
        assert region["num_down"] == 0

    def test_region_columns(self, results):
        assert list(results.regions.columns) == [
            "chrom", "start", "end", "num_tests", "num_up", "num_down",
            "direction", "rep_logFC", "pvalue", "FDR",
        ]

    def test_window_table(self, results):
        windows = results.windows
        assert len(windows) == results.filtered_windows
        assert "F" in windows.columns
        assert windows["cluster"].max() == results.total_regions - 1
        p = windows["pvalue"].dropna()
        assert ((p >= 0) & (p <= 1)).all()

    def test_to_dict(self, results):
        summary = results.to_dict()
        assert summary["total_regions"] == results.total_regions
        assert set(summary["normalization_factors"]) == {"A1", "A2", "B1", "B2"}
        assert summary["common_dispersion"] > 0


class TestPipelineVariants:
    """Other configurations of the same analysis."""

    def test_explicit_design_reverses_direction(self, differential_libraries, chromosome_lengths):
        config = AnalysisConfig(
            design=[[1, 0], [1, 0], [1, 1], [1, 1]], contrast=1, **PIPELINE_OPTIONS
        )
        results = DifferentialBindingAnalyzer().run(differential_libraries, config, chromosome_lengths)
        best = results.regions.loc[results.regions["pvalue"].idxmin()]
        assert best["start"] <= DIFFERENTIAL_PEAK + 150 and best["end"] >= DIFFERENTIAL_PEAK
        assert best["direction"] == "down"

    def test_unreplicated_uses_lrt(self, differential_libraries, chromosome_lengths):
        libraries = [differential_libraries[0], differential_libraries[2]]
        results = run_differential_binding(
            libraries, chromosome_lengths, ["A", "B"], "A", "B", dispersion=0.05, **PIPELINE_OPTIONS
        )
        assert results.test_method == "lrt"
        assert "LR" in results.windows.columns

    def test_filtered_normalization(self, differential_libraries, chromosome_lengths, group_labels):
        results = run_differential_binding(
            differential_libraries, chromosome_lengths, group_labels, "A", "B",
            normalization_strategy="filtered", **PIPELINE_OPTIONS
        )
        assert results.normalization.strategy.value == "filtered"

    def test_trended_normalization_finds_differential_site(
        self, differential_libraries, chromosome_lengths, group_labels
    ):
        results = run_differential_binding(
            differential_libraries, chromosome_lengths, group_labels, "A", "B",
            normalization_strategy="trended", filter_mode="proportional", filter_proportion=0.05,
        )
        assert results.normalization.strategy.value == "trended"
        best = results.regions.loc[results.regions["pvalue"].idxmin()]
        assert best["start"] <= DIFFERENTIAL_PEAK + 150 and best["end"] >= DIFFERENTIAL_PEAK
        assert best["FDR"] < 0.05
        assert best["direction"] == "up"

    def test_trended_with_empty_library_completes(self, differential_libraries, chromosome_lengths):
        libraries = differential_libraries + [Library("B3", IntervalSet.empty())]
        results = run_differential_binding(
            libraries, chromosome_lengths, ["A", "A", "B", "B", "B"], "A", "B",
            normalization_strategy="trended", **PIPELINE_OPTIONS
        )
        offsets = results.normalization.log_offsets()
        np.testing.assert_allclose(offsets[:, 4], np.log(0.5))
        p = results.regions["pvalue"].to_numpy()
        assert (np.isnan(p) | ((p >= 0) & (p <= 1))).all()

    def test_default_global_filter_keeps_sparse_fixture(
        self, differential_libraries, chromosome_lengths, group_labels
    ):
        """With ~900 fragments per library the abundance prior dominates the
        global filter, every window passes and the default tolerance chains
        them into one region spanning the chromosome."""
        results = run_differential_binding(
            differential_libraries, chromosome_lengths, group_labels, "A", "B"
        )
        assert results.filtered_windows == results.total_windows
        assert results.total_regions == 1
        assert results.regions.iloc[0]["start"] == 1

    def test_empty_library_completes(self, differential_libraries, chromosome_lengths):
        libraries = differential_libraries + [Library("B3", IntervalSet.empty())]
        results = run_differential_binding(
            libraries, chromosome_lengths, ["A", "A", "B", "B", "B"], "A", "B", **PIPELINE_OPTIONS
        )
        p = results.regions["pvalue"].to_numpy()
        assert (np.isnan(p) | ((p >= 0) & (p <= 1))).all()
        assert results.to_dict()["normalization_factors"]["B3"] > 0

    def test_no_windows_pass(self, differential_libraries, chromosome_lengths, group_labels):
        results = run_differential_binding(
            differential_libraries, chromosome_lengths, group_labels, "A", "B",
            filter_mode="global", filter_threshold=100.0,
        )
        assert results.filtered_windows == 0
        assert results.total_regions == 0
        assert results.regions.empty

    def test_strand_specific_columns(self, differential_libraries, chromosome_lengths, group_labels):
        results = run_differential_binding(
            differential_libraries, chromosome_lengths, group_labels, "A", "B",
            strand_specific=True, **PIPELINE_OPTIONS
        )
        assert results.regions.columns[3] == "strand"
        assert set(results.regions["strand"]) <= {"+", "-"}


class TestOutputs:
    """Tests for saved result tables."""

    def test_files_written(self, differential_libraries, chromosome_lengths, group_labels, temp_dir):
        results = run_differential_binding(
            differential_libraries, chromosome_lengths, group_labels, "A", "B",
            output_dir=str(temp_dir), comparison_name="AvsB", **PIPELINE_OPTIONS
        )
        for suffix in ("regions", "windows", "norm_factors"):
            assert (temp_dir / f"AvsB_{suffix}.tsv").exists()
        saved = pd.read_csv(temp_dir / "AvsB_regions.tsv", sep="\t")
        assert len(saved) == results.total_regions


class TestInputValidation:
    """Tests for rejected inputs."""

    def test_no_libraries(self, chromosome_lengths):
        config = AnalysisConfig(groups=["A", "B"], group1="A", group2="B")
        with pytest.raises(EmptyDataError):
            DifferentialBindingAnalyzer().run([], config, chromosome_lengths)

    def test_single_library(self, differential_libraries, chromosome_lengths):
        config = AnalysisConfig(groups=["A", "B"], group1="A", group2="B")
        with pytest.raises(InsufficientSamplesError):
            DifferentialBindingAnalyzer().run(differential_libraries[:1], config, chromosome_lengths)

    def test_group_count_mismatch(self, differential_libraries, chromosome_lengths):
        config = AnalysisConfig(groups=["A", "B"], group1="A", group2="B")
        with pytest.raises(ValidationError):
            DifferentialBindingAnalyzer().run(differential_libraries, config, chromosome_lengths)

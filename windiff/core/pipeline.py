"""
End-to-end differential binding analysis for WinDiff.

Workflow:
1. Count fragments into sliding windows (and background bins when needed)
2. Filter windows by abundance over background
3. Normalize libraries (background bins, filtered windows or trended offsets)
4. Estimate NB and quasi-likelihood dispersions on the filtered windows
5. Test the contrast in every window
6. Cluster windows by position and combine their p-values per region
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .combining import PValueCombiner
from .counting import CountMatrix, WindowCounter
from .dispersion import DispersionEstimate, DispersionModel
from .exceptions import EmptyDataError, InsufficientSamplesError, ValidationError
from .filtering import AbundanceFilter, FilterResult
from .fragments import BamFragmentExtractor, Library
from .glm import design_from_groups, group_contrast
from .merging import WindowMerger
from .normalization import NormalizationFactors, NormalizationResult, NormalizationStrategy, Normalizer
from .testing import DifferentialTester
from ..models.schemas import AnalysisConfig, FilterModeEnum

logger = logging.getLogger(__name__)

REGION_OUTPUT_COLUMNS = ["chrom", "start", "end", "num_tests", "num_up", "num_down",
                         "direction", "rep_logFC", "pvalue", "FDR"]
WINDOW_OUTPUT_COLUMNS = ["chrom", "start", "end", "logFC", "logCPM", "pvalue", "cluster"]


@dataclass
class DifferentialBindingResults:
    """Results from a differential binding analysis."""
    comparison_name: str
    total_windows: int
    filtered_windows: int
    total_regions: int
    significant_regions: int
    up_regions: int
    down_regions: int
    mixed_regions: int

    # DataFrames
    regions: pd.DataFrame = field(default_factory=pd.DataFrame)
    windows: pd.DataFrame = field(default_factory=pd.DataFrame)

    normalization: Optional[NormalizationResult] = None
    dispersion: Optional[DispersionEstimate] = None
    test_method: Optional[str] = None

    # File paths (if saved)
    output_dir: Optional[str] = None

    def significant(self, fdr_threshold: float = 0.05) -> pd.DataFrame:
        if self.regions.empty:
            return self.regions
        return self.regions[self.regions["FDR"] <= fdr_threshold]

    def to_dict(self) -> Dict:
        summary = {
            "comparison_name": self.comparison_name,
            "total_windows": self.total_windows,
            "filtered_windows": self.filtered_windows,
            "total_regions": self.total_regions,
            "significant_regions": self.significant_regions,
            "up_regions": self.up_regions,
            "down_regions": self.down_regions,
            "mixed_regions": self.mixed_regions,
            "test_method": self.test_method,
        }
        if isinstance(self.normalization, NormalizationFactors):
            summary["normalization_factors"] = self.normalization.to_series().to_dict()
        if self.dispersion is not None:
            summary["common_dispersion"] = self.dispersion.common
        return summary


class DifferentialBindingAnalyzer:
    """
    Window-based differential binding analysis.

    Every step takes the AnalysisConfig explicitly so the individual stages
    can also be run on their own.
    """

    # ========================================================================
    # Inputs
    # ========================================================================

    def load_libraries(self, bam_files: Mapping[str, str], config: AnalysisConfig,
                       paired: bool = False, dedup: bool = False) -> List[Library]:
        """
        Extract fragments from BAM files.

        Args:
            bam_files: Library name -> BAM path, in column order
            config: Analysis configuration (extension, MAPQ, restriction)
            paired: Use proper-pair spans instead of read extension
            dedup: Skip reads flagged as duplicates
        """
        extractor = BamFragmentExtractor(
            extension=config.extension_length,
            min_mapq=config.min_mapping_quality,
            dedup=dedup,
            paired=paired,
            restrict=config.chromosome_restriction,
        )
        return [extractor.extract(path, name) for name, path in bam_files.items()]

    def build_design(self, libraries: Sequence[Library], config: AnalysisConfig) -> Tuple[np.ndarray, object]:
        """Design matrix and contrast for the configured comparison."""
        n_libs = len(libraries)
        if config.design is not None:
            design = np.asarray(config.design, dtype=float)
            if design.shape[0] != n_libs:
                raise ValidationError(f"Design has {design.shape[0]} rows for {n_libs} libraries")
            return design, config.contrast

        if len(config.groups) != n_libs:
            raise ValidationError(f"{len(config.groups)} group labels for {n_libs} libraries")
        design = design_from_groups(config.groups, [lib.name for lib in libraries])
        logger.info(f"Comparing {config.group1} vs {config.group2}")
        return design.to_numpy(), group_contrast(design, config.group1, config.group2)

    # ========================================================================
    # Counting and filtering
    # ========================================================================

    def count_windows(self, libraries: Sequence[Library], config: AnalysisConfig,
                      chromosome_lengths: Dict[str, int]) -> Tuple[WindowCounter, CountMatrix]:
        counter = WindowCounter(
            config.window_width,
            config.spacing,
            chromosome_lengths,
            restrict=config.chromosome_restriction,
            strand_specific=config.strand_specific,
            min_count=config.min_count,
            n_workers=config.n_workers,
        )
        return counter, counter.count(libraries)

    def count_bins(self, libraries: Sequence[Library], config: AnalysisConfig,
                   chromosome_lengths: Dict[str, int]) -> Tuple[WindowCounter, CountMatrix]:
        counter = WindowCounter.bins(
            config.background_bin_width,
            chromosome_lengths,
            restrict=config.chromosome_restriction,
            strand_specific=config.strand_specific,
            n_workers=config.n_workers,
        )
        return counter, counter.count(libraries)

    def filter_windows(
        self,
        windows: CountMatrix,
        libraries: Sequence[Library],
        config: AnalysisConfig,
        counter: WindowCounter,
        bins: Optional[Tuple[WindowCounter, CountMatrix]] = None,
        chromosome_lengths: Optional[Dict[str, int]] = None,
    ) -> Tuple[np.ndarray, Optional[FilterResult]]:
        """
        Decide which windows are kept for modelling.

        Returns:
            (boolean mask aligned to ``windows``, filter statistics or None)
        """
        abundance_filter = AbundanceFilter(prior_count=config.prior_count)
        mode = config.filter_mode

        if mode == FilterModeEnum.GLOBAL:
            bin_counter, bin_counts = bins
            result = abundance_filter.filter_global(windows, bin_counts, genome_bins=bin_counter.n_genome_windows())
            keep = result.keep(config.filter_threshold)
        elif mode == FilterModeEnum.LOCAL:
            neighbourhood = windows.regions.expand(config.local_surround, chromosome_lengths)
            surround = counter.count_regions(libraries, neighbourhood)
            result = abundance_filter.filter_local(windows, surround)
            keep = result.keep(config.filter_threshold)
        elif mode == FilterModeEnum.PROPORTIONAL:
            result = abundance_filter.filter_proportional(windows, genome_windows=counter.n_genome_windows())
            keep = result.keep(1 - config.filter_proportion)
        else:
            # all-zero rows carry no information for the model
            result = None
            keep = windows.counts.sum(axis=1) > 0

        logger.info(f"Filtering ({mode.value}) kept {int(keep.sum())} of {len(keep)} windows")
        return np.asarray(keep, dtype=bool), result

    def normalize(self, filtered: CountMatrix, config: AnalysisConfig,
                  bins: Optional[CountMatrix] = None) -> NormalizationResult:
        strategy = NormalizationStrategy(config.normalization_strategy.value)
        logratio_trim, sum_trim = config.trim_fractions
        normalizer = Normalizer(strategy, logratio_trim=logratio_trim, sum_trim=sum_trim)
        logger.info(f"Normalizing with {strategy.value} strategy...")
        if strategy == NormalizationStrategy.BACKGROUND:
            return normalizer.compute(bins, library_sizes=filtered.library_sizes)
        return normalizer.compute(filtered)

    # ========================================================================
    # Full pipeline
    # ========================================================================

    def run(
        self,
        libraries: Sequence[Library],
        config: AnalysisConfig,
        chromosome_lengths: Dict[str, int],
    ) -> DifferentialBindingResults:
        """
        Run the complete differential binding pipeline.

        Args:
            libraries: Libraries in design-row order
            config: Analysis configuration
            chromosome_lengths: Chromosome name -> length

        Returns:
            DifferentialBindingResults
        """
        if not libraries:
            raise EmptyDataError("library list")
        if len(libraries) < 2:
            raise InsufficientSamplesError(2, len(libraries), "differential binding")
        logger.info(f"Starting differential binding analysis: {config.comparison_name}")
        design, contrast = self.build_design(libraries, config)

        # Step 1: Count windows
        logger.info("Counting fragments into windows...")
        counter, windows = self.count_windows(libraries, config, chromosome_lengths)

        # Step 2: Count background bins
        bins = None
        if (config.filter_mode == FilterModeEnum.GLOBAL
                or NormalizationStrategy(config.normalization_strategy.value) == NormalizationStrategy.BACKGROUND):
            logger.info(f"Counting background bins of {config.background_bin_width} bp...")
            bins = self.count_bins(libraries, config, chromosome_lengths)

        # Step 3: Filter
        keep, _ = self.filter_windows(windows, libraries, config, counter, bins, chromosome_lengths)
        filtered = windows.subset(keep)
        if not filtered.n_windows:
            logger.warning("No windows passed the abundance filter; nothing to test")
            return self._empty_results(config, windows.n_windows)

        # Step 4: Normalize
        normalization = self.normalize(filtered, config, bins[1] if bins is not None else None)

        # Step 5: Dispersion
        logger.info("Estimating dispersions...")
        dispersion = DispersionModel(robust=config.robust, prior_count=config.prior_count).estimate(
            filtered, design, normalization, dispersion=config.dispersion
        )

        # Step 6: Test
        logger.info("Testing windows...")
        tester = DifferentialTester(method=config.test_method.value)
        tests = tester.test(filtered, design, contrast, dispersion, normalization)

        # Step 7: Cluster windows on coordinates alone
        logger.info(f"Clustering windows with tol={config.tol}...")
        merger = WindowMerger(config.tol, config.max_cluster_width, ignore_strand=not config.strand_specific)
        clusters = merger.merge(filtered.regions)

        # Step 8: Combine per region
        combined = PValueCombiner(config.window_significance).combine_tests(clusters.ids, tests)
        region_columns = list(REGION_OUTPUT_COLUMNS)
        window_columns = list(WINDOW_OUTPUT_COLUMNS)
        if config.strand_specific:
            region_columns.insert(3, "strand")
            window_columns.insert(3, "strand")
        regions = pd.concat([clusters.regions.to_dataframe(), combined], axis=1)[region_columns]

        window_table = tests.table.copy()
        window_table["cluster"] = clusters.ids
        stat_column = "F" if tests.method == "ql" else "LR"
        window_columns.insert(window_columns.index("pvalue"), stat_column)
        window_table = window_table[window_columns]

        significant = regions[regions["FDR"] <= config.fdr_threshold]
        counts = significant["direction"].value_counts()

        results = DifferentialBindingResults(
            comparison_name=config.comparison_name,
            total_windows=windows.n_windows,
            filtered_windows=filtered.n_windows,
            total_regions=len(regions),
            significant_regions=len(significant),
            up_regions=int(counts.get("up", 0)),
            down_regions=int(counts.get("down", 0)),
            mixed_regions=int(counts.get("mixed", 0)),
            regions=regions,
            windows=window_table,
            normalization=normalization,
            dispersion=dispersion,
            test_method=tests.method,
            output_dir=config.output_dir,
        )
        logger.info(
            f"{results.significant_regions} of {results.total_regions} regions at FDR <= {config.fdr_threshold} "
            f"({results.up_regions} up, {results.down_regions} down, {results.mixed_regions} mixed)"
        )

        # Save results if output_dir specified
        if config.output_dir:
            self.save(results, config.output_dir)

        return results

    def _empty_results(self, config: AnalysisConfig, total_windows: int) -> DifferentialBindingResults:
        columns = list(REGION_OUTPUT_COLUMNS)
        return DifferentialBindingResults(
            comparison_name=config.comparison_name,
            total_windows=total_windows,
            filtered_windows=0,
            total_regions=0,
            significant_regions=0,
            up_regions=0,
            down_regions=0,
            mixed_regions=0,
            regions=pd.DataFrame(columns=columns),
            windows=pd.DataFrame(columns=WINDOW_OUTPUT_COLUMNS),
            output_dir=config.output_dir,
        )

    def save(self, results: DifferentialBindingResults, output_dir: str) -> Path:
        """Write region, window and normalization tables as tab-delimited text."""
        output_path = Path(output_dir)
        output_path.mkdir(parents=True, exist_ok=True)
        prefix = results.comparison_name

        results.regions.to_csv(output_path / f"{prefix}_regions.tsv", sep="\t", index=False)
        results.windows.to_csv(output_path / f"{prefix}_windows.tsv", sep="\t", index=False)
        if isinstance(results.normalization, NormalizationFactors):
            results.normalization.to_series().to_csv(output_path / f"{prefix}_norm_factors.tsv", sep="\t")

        logger.info(f"Results saved to {output_path}")
        return output_path


# Convenience function
def run_differential_binding(
    libraries: Sequence[Library],
    chromosome_lengths: Dict[str, int],
    groups: Sequence[str],
    group1: str,
    group2: str,
    output_dir: str = None,
    **kwargs
) -> DifferentialBindingResults:
    """
    Convenience function to run a two-group differential binding analysis.

    Args:
        libraries: Libraries in the same order as ``groups``
        chromosome_lengths: Chromosome name -> length
        groups: Group label per library
        group1: Treatment group
        group2: Control group
        output_dir: Output directory
        **kwargs: Additional AnalysisConfig options

    Returns:
        DifferentialBindingResults
    """
    config = AnalysisConfig(
        groups=list(groups),
        group1=group1,
        group2=group2,
        output_dir=output_dir,
        **kwargs
    )

    analyzer = DifferentialBindingAnalyzer()
    return analyzer.run(libraries, config, chromosome_lengths)

"""
Core analysis modules for WinDiff.

Includes:
- Interval containers and overlap search
- Fragment extraction and window counting
- TMM / trended normalization and abundance filtering
- NB GLM dispersion estimation and quasi-likelihood testing
- Window clustering and region-level p-value combination
"""

# Errors
from .exceptions import (
    WinDiffError,
    ValidationError,
    AnalysisError,
    FileFormatError,
    DispersionUndefinedError,
)

# Intervals and fragments
from .intervals import GenomicInterval, IntervalSet, sort_chromosomes
from .fragments import Library, BamFragmentExtractor, extend_reads

# Counting
from .counting import CountMatrix, WindowCounter

# Normalization and filtering
from .normalization import (
    NormalizationStrategy,
    NormalizationFactors,
    NormalizationOffsets,
    Normalizer,
)
from .filtering import AbundanceFilter, FilterResult, average_log_cpm

# Modelling
from .dispersion import DispersionEstimate, DispersionModel
from .testing import DifferentialTester, WindowTestResults

# Regions
from .merging import MergeResult, WindowMerger
from .combining import PValueCombiner

# Pipeline
from .pipeline import DifferentialBindingAnalyzer, DifferentialBindingResults, run_differential_binding

__all__ = [
    # Errors
    "WinDiffError",
    "ValidationError",
    "AnalysisError",
    "FileFormatError",
    "DispersionUndefinedError",

    # Intervals and fragments
    "GenomicInterval",
    "IntervalSet",
    "sort_chromosomes",
    "Library",
    "BamFragmentExtractor",
    "extend_reads",

    # Counting
    "CountMatrix",
    "WindowCounter",

    # Normalization and filtering
    "NormalizationStrategy",
    "NormalizationFactors",
    "NormalizationOffsets",
    "Normalizer",
    "AbundanceFilter",
    "FilterResult",
    "average_log_cpm",

    # Modelling
    "DispersionEstimate",
    "DispersionModel",
    "DifferentialTester",
    "WindowTestResults",

    # Regions
    "MergeResult",
    "WindowMerger",
    "PValueCombiner",

    # Pipeline
    "DifferentialBindingAnalyzer",
    "DifferentialBindingResults",
    "run_differential_binding",
]

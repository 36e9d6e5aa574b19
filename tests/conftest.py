"""
Shared test fixtures for the WinDiff test suite.
"""

import sys
import tempfile
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from windiff.core.counting import CountMatrix
from windiff.core.fragments import Library
from windiff.core.intervals import IntervalSet
from windiff.core.testing import WindowTestResults

# ============================================================================
# Simulated libraries
# ============================================================================

CHROM_LENGTHS = {"chr1": 200_000}
FRAGMENT_LENGTH = 100
SHARED_PEAKS = [10_000, 25_000, 40_000, 55_000, 70_000, 85_000, 115_000, 130_000, 145_000, 160_000]
DIFFERENTIAL_PEAK = 100_000


def simulate_library(rng, name, peaks, n_background=200, chrom="chr1", length=200_000):
    """Fragments of FRAGMENT_LENGTH bp: uniform background plus peaks.

    ``peaks`` maps a peak position to the number of fragments whose starts
    fall within the 100 bp following it.
    """
    starts = [rng.integers(1, length - FRAGMENT_LENGTH, n_background)]
    for pos, n in peaks.items():
        starts.append(pos + rng.integers(0, 100, n))
    starts = np.sort(np.concatenate(starts)).astype(np.int64)
    ends = np.minimum(starts + FRAGMENT_LENGTH - 1, length)
    strands = rng.choice(["+", "-"], len(starts))
    return Library(name, IntervalSet(np.full(len(starts), chrom, dtype=object), starts, ends, strands))


@pytest.fixture
def chromosome_lengths():
    return dict(CHROM_LENGTHS)


@pytest.fixture
def differential_libraries():
    """Two replicates per group; group A is strongly enriched at DIFFERENTIAL_PEAK."""
    rng = np.random.default_rng(42)
    libraries = []
    for name, db_count in (("A1", 80), ("A2", 80), ("B1", 5), ("B2", 5)):
        peaks = {pos: 60 for pos in SHARED_PEAKS}
        peaks[DIFFERENTIAL_PEAK] = db_count
        libraries.append(simulate_library(rng, name, peaks))
    return libraries


@pytest.fixture
def group_labels():
    return ["A", "A", "B", "B"]


# ============================================================================
# Count matrices
# ============================================================================


def make_count_matrix(counts, width=10, spacing=None, totals=None, chrom="chr1", libraries=None):
    """CountMatrix over consecutive windows of ``width`` bp."""
    counts = np.asarray(counts, dtype=np.int64)
    n, m = counts.shape
    spacing = spacing or width
    starts = 1 + spacing * np.arange(n)
    regions = IntervalSet(np.full(n, chrom, dtype=object), starts, starts + width - 1)
    libraries = libraries or tuple(f"lib{j + 1}" for j in range(m))
    totals = counts.sum(axis=0) if totals is None else totals
    return CountMatrix(regions, counts, libraries, totals, width=width, spacing=spacing)


@pytest.fixture
def random_counts():
    """Moderately overdispersed counts for 500 windows in 4 libraries."""
    rng = np.random.default_rng(7)
    means = rng.gamma(2.0, 20.0, size=(500, 1)) * np.array([1.0, 1.2, 0.8, 1.1])
    return rng.negative_binomial(10, 10 / (10 + means))


# ============================================================================
# Window test results
# ============================================================================


def make_results(pvalues, logfc=None):
    """WindowTestResults from plain p-values and log fold changes."""
    pvalues = np.asarray(pvalues, dtype=float)
    logfc = np.ones(len(pvalues)) if logfc is None else np.asarray(logfc, dtype=float)
    table = pd.DataFrame({
        "logFC": logfc,
        "pvalue": pvalues,
        "failed": ~np.isfinite(pvalues),
    })
    return WindowTestResults(table=table, method="ql", contrast=np.array([[1.0], [-1.0]]))


# ============================================================================
# Temporary files
# ============================================================================


@pytest.fixture
def temp_dir():
    """Provide a temporary directory that gets cleaned up after the test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)

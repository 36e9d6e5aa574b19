"""
Abundance-based window filtering for WinDiff.

Windows are compared against background to discard those without enough
enrichment to be worth testing.  Three comparisons are available:

- global: against the median abundance of genome-wide background bins
- local: against a neighbourhood centred on each window
- proportional: keep a fixed top fraction of the genome by abundance

Filtering never touches the count matrix; it returns statistics and a mask
aligned to the original row order.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.special import logsumexp

from .counting import CountMatrix
from .exceptions import EmptyDataError, InvalidParameterError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_PRIOR_COUNT = 2.0


def average_log_cpm(
    counts: np.ndarray,
    library_sizes: np.ndarray,
    prior_count: float = DEFAULT_PRIOR_COUNT,
) -> np.ndarray:
    """
    Average log2 counts-per-million per row.

    The prior count is scaled by each library's size relative to the mean
    size, and the library size is inflated by twice the scaled prior.  CPMs
    are averaged on the linear scale through ``logsumexp`` so that large and
    small values stay numerically stable.  Libraries of size zero carry no
    information and are left out of the average.

    Args:
        counts: windows x libraries
        library_sizes: one size per library
        prior_count: pseudo-count added before taking logs

    Returns:
        One log2 CPM value per row
    """
    counts = np.asarray(counts, dtype=float)
    if counts.ndim == 1:
        counts = counts[:, None]
    library_sizes = np.asarray(library_sizes, dtype=float)

    usable = library_sizes > 0
    if not usable.any():
        raise EmptyDataError("library sizes (all libraries are empty)")
    if not usable.all():
        counts = counts[:, usable]
        library_sizes = library_sizes[usable]

    scaled_prior = prior_count * library_sizes / library_sizes.mean()
    adjusted_sizes = library_sizes + 2 * scaled_prior
    log_cpm = np.log(counts + scaled_prior) - np.log(adjusted_sizes) + np.log(1e6)
    mean_log = logsumexp(log_cpm, axis=1) - np.log(counts.shape[1])
    return mean_log / np.log(2)


def scaled_average(
    counts: np.ndarray,
    library_sizes: np.ndarray,
    scale=1.0,
    prior_count: float = DEFAULT_PRIOR_COUNT,
) -> np.ndarray:
    """
    Abundance of regions ``scale`` times wider than a window, on the window scale.

    The prior count grows with the scale so that it corresponds to the same
    number of pseudo-reads per base; ``log2(scale)`` is then subtracted.
    ``scale`` may be a scalar or one value per row.
    """
    scale = np.asarray(scale, dtype=float)
    if (scale <= 0).any():
        raise InvalidParameterError("scale", scale, "> 0")
    if scale.ndim == 0:
        return average_log_cpm(counts, library_sizes, prior_count * float(scale)) - np.log2(scale)

    counts = np.asarray(counts, dtype=float)
    out = np.empty(len(scale))
    for value in np.unique(scale):
        rows = scale == value
        out[rows] = average_log_cpm(counts[rows], library_sizes, prior_count * value) - np.log2(value)
    return out


@dataclass(frozen=True)
class FilterResult:
    """Filter statistics aligned to the rows of the filtered CountMatrix."""
    abundances: np.ndarray
    background: np.ndarray
    statistic: np.ndarray
    mode: str

    def keep(self, threshold: float) -> np.ndarray:
        """Boolean mask of windows whose statistic reaches the threshold."""
        return np.asarray(self.statistic >= threshold)


class AbundanceFilter:
    """Compute enrichment of windows over background."""

    def __init__(self, prior_count: float = DEFAULT_PRIOR_COUNT):
        if prior_count < 0:
            raise InvalidParameterError("prior_count", prior_count, ">= 0")
        self.prior_count = prior_count

    def abundances(self, data: CountMatrix) -> np.ndarray:
        return average_log_cpm(data.counts, data.library_sizes, self.prior_count)

    def filter_global(
        self,
        data: CountMatrix,
        background: CountMatrix,
        genome_bins: Optional[int] = None,
    ) -> FilterResult:
        """
        Compare windows to the median abundance of genome-wide bins.

        Args:
            data: Window counts
            background: Bin counts (spacing equal to width) over the genome
            genome_bins: Total number of bins in the genome; bins missing from
                ``background`` (e.g. dropped for low counts) are filled in as
                empty bins

        Returns:
            FilterResult whose statistic is window abundance minus the
            background median (the same median for every window)
        """
        if data.width is None or background.width is None:
            raise ValidationError("Global filtering needs window and bin widths on both count matrices")
        if not len(background):
            raise EmptyDataError("background bins")
        if tuple(data.libraries) != tuple(background.libraries):
            raise ValidationError("Window and bin counts must come from the same libraries")

        scale = background.width / data.width
        bg_ab = scaled_average(background.counts, background.library_sizes, scale, self.prior_count)

        if genome_bins is not None and genome_bins > len(background):
            empty = np.zeros((1, background.n_libraries))
            empty_ab = scaled_average(empty, background.library_sizes, scale, self.prior_count)[0]
            bg_ab = np.concatenate([bg_ab, np.full(genome_bins - len(background), empty_ab)])

        global_bg = float(np.median(bg_ab))
        ab = self.abundances(data)
        logger.info(f"Global background abundance: {global_bg:.3f} log2 CPM from {len(bg_ab)} bins")

        return FilterResult(
            abundances=ab,
            background=np.full(len(ab), global_bg),
            statistic=ab - global_bg,
            mode="global",
        )

    def filter_local(self, data: CountMatrix, neighbourhood: CountMatrix) -> FilterResult:
        """
        Compare each window to the region surrounding it.

        Args:
            data: Window counts
            neighbourhood: Counts over each window widened on both sides
                (same row order as ``data``); the window's own counts are
                subtracted before computing the background abundance

        Returns:
            FilterResult with one statistic per window
        """
        if neighbourhood.n_windows != data.n_windows:
            raise ValidationError(
                f"Neighbourhood has {neighbourhood.n_windows} rows but data has {data.n_windows}"
            )
        if tuple(data.libraries) != tuple(neighbourhood.libraries):
            raise ValidationError("Window and neighbourhood counts must come from the same libraries")

        flank_counts = neighbourhood.counts - data.counts
        if (flank_counts < 0).any():
            raise ValidationError("Neighbourhood counts are smaller than window counts; regions must contain windows")

        win_width = data.regions.widths.astype(float)
        flank_width = neighbourhood.regions.widths.astype(float) - win_width
        scale = np.where(flank_width > 0, flank_width, win_width) / win_width

        bg_ab = scaled_average(flank_counts, data.library_sizes, scale, self.prior_count)
        ab = self.abundances(data)
        return FilterResult(abundances=ab, background=bg_ab, statistic=ab - bg_ab, mode="local")

    def filter_proportional(self, data: CountMatrix, genome_windows: Optional[int] = None) -> FilterResult:
        """
        Rank windows by abundance against the whole tiling.

        The statistic is the fraction of genome windows with a lower
        abundance; ``keep(1 - proportion)`` retains the top ``proportion``.
        """
        ab = self.abundances(data)
        total = max(genome_windows or 0, len(ab))
        if not total:
            return FilterResult(ab, np.array([]), np.array([]), mode="proportional")
        ranks = np.argsort(np.argsort(ab, kind="stable"), kind="stable")
        # windows absent from the matrix rank below every counted window
        statistic = (ranks + (total - len(ab))) / total
        return FilterResult(abundances=ab, background=np.full(len(ab), np.nan), statistic=statistic,
                            mode="proportional")

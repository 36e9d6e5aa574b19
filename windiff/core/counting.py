"""
Window counting for WinDiff.

Tiles each chromosome into fixed-width windows at a fixed spacing and counts
the fragments of every library that overlap each window by at least one base.
Background bins are the same tiling with spacing equal to width.

Counting per chromosome is a sorted sweep: with fragment starts and ends
sorted independently, the number of fragments overlapping ``[ws, we]`` is
``#(start <= we) - #(end < ws)``.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Collection, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .exceptions import EmptyDataError, InvalidParameterError, ValidationError
from .fragments import Library
from .intervals import FORWARD, REVERSE, UNSTRANDED, IntervalSet, sort_chromosomes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CountMatrix:
    """Window-by-library count matrix.

    Rows follow ``regions`` (grouped by chromosome, ordered by position) and
    columns follow ``libraries``.  ``totals`` holds the library sizes.
    """
    regions: IntervalSet
    counts: np.ndarray
    libraries: Tuple[str, ...]
    totals: np.ndarray
    width: Optional[int] = None
    spacing: Optional[int] = None

    def __post_init__(self):
        counts = np.array(self.counts, dtype=np.int64, copy=True)
        if counts.ndim == 1:
            counts = counts.reshape(-1, max(len(self.libraries), 1))
        totals = np.array(self.totals, dtype=np.int64, copy=True)
        libraries = tuple(str(lib) for lib in self.libraries)

        if counts.shape != (len(self.regions), len(libraries)):
            raise ValidationError(
                f"Count matrix shape {counts.shape} does not match "
                f"{len(self.regions)} regions x {len(libraries)} libraries"
            )
        if len(totals) != len(libraries):
            raise ValidationError(f"Expected {len(libraries)} library totals, got {len(totals)}")
        if (counts < 0).any() or (totals < 0).any():
            raise ValidationError("Counts and library totals must be non-negative")

        counts.flags.writeable = False
        totals.flags.writeable = False
        object.__setattr__(self, "counts", counts)
        object.__setattr__(self, "totals", totals)
        object.__setattr__(self, "libraries", libraries)

    @property
    def n_windows(self) -> int:
        return self.counts.shape[0]

    @property
    def n_libraries(self) -> int:
        return self.counts.shape[1]

    @property
    def library_sizes(self) -> np.ndarray:
        return self.totals.astype(float)

    def __len__(self) -> int:
        return self.n_windows

    def subset(self, selector) -> "CountMatrix":
        """Keep the selected rows; integer indices are applied in ascending order."""
        selector = np.asarray(selector)
        if selector.dtype != bool:
            selector = np.unique(selector.astype(np.int64))
        elif len(selector) != self.n_windows:
            raise ValidationError(f"Mask length {len(selector)} does not match {self.n_windows} windows")
        return CountMatrix(
            regions=self.regions.subset(selector),
            counts=self.counts[selector],
            libraries=self.libraries,
            totals=self.totals,
            width=self.width,
            spacing=self.spacing,
        )

    def to_dataframe(self) -> pd.DataFrame:
        df = self.regions.to_dataframe()
        for j, lib in enumerate(self.libraries):
            df[lib] = self.counts[:, j]
        return df


# ============================================================================
# Fragment indexing
# ============================================================================


@dataclass
class _FragmentIndex:
    """Sorted fragment starts and ends per (chromosome, strand) for one library."""
    blocks: Dict[Tuple[str, str], Tuple[np.ndarray, np.ndarray]] = field(default_factory=dict)

    @classmethod
    def build(cls, fragments: IntervalSet) -> "_FragmentIndex":
        index = cls()
        if not len(fragments):
            return index
        for chrom in fragments.unique_chroms():
            on_chrom = fragments.chroms == chrom
            starts = fragments.starts[on_chrom]
            ends = fragments.ends[on_chrom]
            strands = fragments.strands[on_chrom]
            index.blocks[(chrom, UNSTRANDED)] = (np.sort(starts), np.sort(ends))
            for strand in (FORWARD, REVERSE):
                sel = strands == strand
                index.blocks[(chrom, strand)] = (np.sort(starts[sel]), np.sort(ends[sel]))
        return index

    def count(self, chrom: str, strand: str, win_starts: np.ndarray, win_ends: np.ndarray) -> np.ndarray:
        block = self.blocks.get((chrom, strand))
        if block is None:
            return np.zeros(len(win_starts), dtype=np.int64)
        starts, ends = block
        return (
            np.searchsorted(starts, win_ends, side="right")
            - np.searchsorted(ends, win_starts, side="left")
        ).astype(np.int64)


# ============================================================================
# Window counter
# ============================================================================


class WindowCounter:
    """
    Count fragments into sliding windows.

    Windows on each chromosome start at 1, 1+spacing, 1+2*spacing, ... and
    are ``width`` bases wide, clipped at the chromosome end.
    """

    def __init__(
        self,
        width: int,
        spacing: int,
        chromosome_lengths: Dict[str, int],
        restrict: Optional[Collection[str]] = None,
        strand_specific: bool = False,
        min_count: int = 0,
        n_workers: int = 1,
    ):
        """
        Initialize the counter.

        Args:
            width: Window width in bases
            spacing: Distance between consecutive window starts
            chromosome_lengths: Chromosome name -> length
            restrict: Only tile these chromosomes
            strand_specific: Count forward and reverse fragments separately
            min_count: Drop windows whose summed count is below this value
            n_workers: Threads used to count chromosomes in parallel
        """
        for name, value in (("width", width), ("spacing", spacing)):
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value < 1:
                raise InvalidParameterError(name, value, "positive integer")
        if min_count < 0:
            raise InvalidParameterError("min_count", min_count, ">= 0")
        if n_workers < 1:
            raise InvalidParameterError("n_workers", n_workers, ">= 1")

        self.width = int(width)
        self.spacing = int(spacing)
        self.chromosome_lengths = dict(chromosome_lengths)
        self.restrict = set(restrict) if restrict is not None else None
        self.strand_specific = strand_specific
        self.min_count = min_count
        self.n_workers = n_workers

    @classmethod
    def bins(cls, width: int, chromosome_lengths: Dict[str, int], **kwargs) -> "WindowCounter":
        """Counter for non-overlapping background bins."""
        return cls(width, width, chromosome_lengths, **kwargs)

    @property
    def chromosomes(self) -> List[str]:
        chroms = [c for c in self.chromosome_lengths if self.restrict is None or c in self.restrict]
        return sort_chromosomes(chroms)

    @property
    def strands(self) -> Tuple[str, ...]:
        return (FORWARD, REVERSE) if self.strand_specific else (UNSTRANDED,)

    def n_genome_windows(self) -> int:
        """Number of windows the tiling produces before any count filter."""
        total = 0
        for chrom in self.chromosomes:
            length = self.chromosome_lengths[chrom]
            if length > 0:
                total += (length - 1) // self.spacing + 1
        return total * len(self.strands)

    def _tile_chromosome(self, chrom: str) -> Tuple[np.ndarray, np.ndarray]:
        length = int(self.chromosome_lengths[chrom])
        if length <= 0:
            return np.array([], dtype=np.int64), np.array([], dtype=np.int64)
        starts = np.arange(1, length + 1, self.spacing, dtype=np.int64)
        ends = np.minimum(starts + self.width - 1, length)
        return starts, ends

    def tile(self) -> IntervalSet:
        """All windows of the tiling, in count-matrix row order."""
        pieces = []
        for chrom in self.chromosomes:
            starts, ends = self._tile_chromosome(chrom)
            for strand in self.strands:
                pieces.append(IntervalSet(np.full(len(starts), chrom, dtype=object), starts, ends,
                                          np.full(len(starts), strand, dtype=object)))
        return IntervalSet.concat(pieces)

    def _library_totals(self, libraries: Sequence[Library]) -> np.ndarray:
        if self.restrict is None:
            return np.array([lib.total for lib in libraries], dtype=np.int64)
        return np.array([len(lib.restrict(self.restrict)) for lib in libraries], dtype=np.int64)

    def _count_chromosome(self, chrom: str, indices: List[_FragmentIndex]) -> Tuple[IntervalSet, np.ndarray]:
        starts, ends = self._tile_chromosome(chrom)
        regions = []
        blocks = []
        for strand in self.strands:
            column = [idx.count(chrom, strand, starts, ends) for idx in indices]
            block = np.column_stack(column) if column else np.zeros((len(starts), 0), dtype=np.int64)
            regions.append(IntervalSet(np.full(len(starts), chrom, dtype=object), starts, ends,
                                       np.full(len(starts), strand, dtype=object)))
            blocks.append(block)
        return IntervalSet.concat(regions), np.vstack(blocks) if blocks else np.zeros((0, len(indices)))

    def count(self, libraries: Sequence[Library]) -> CountMatrix:
        """
        Count fragments of every library into the windows of this tiling.

        Args:
            libraries: Libraries in column order

        Returns:
            CountMatrix with one row per retained window
        """
        if not libraries:
            raise EmptyDataError("library list")

        indices = [_FragmentIndex.build(lib.fragments) for lib in libraries]
        for lib in libraries:
            if len(lib) == 0:
                logger.warning(f"Library {lib.name} has no fragments; its column will be all zeros")
            elif self.strand_specific and (lib.fragments.strands == UNSTRANDED).any():
                logger.warning(f"Library {lib.name} has unstranded fragments; they are ignored in strand-specific mode")

        chroms = self.chromosomes
        if self.n_workers > 1 and len(chroms) > 1:
            with ThreadPoolExecutor(max_workers=self.n_workers) as executor:
                per_chrom = list(executor.map(lambda c: self._count_chromosome(c, indices), chroms))
        else:
            per_chrom = [self._count_chromosome(c, indices) for c in chroms]

        regions = IntervalSet.concat([r for r, _ in per_chrom])
        blocks = [b for r, b in per_chrom if len(r)]
        counts = np.vstack(blocks) if blocks else np.zeros((0, len(libraries)), dtype=np.int64)

        if self.min_count > 0:
            keep = counts.sum(axis=1) >= self.min_count
            regions = regions.subset(keep)
            counts = counts[keep]

        logger.info(
            f"Counted {len(libraries)} libraries into {len(regions)} windows "
            f"(width={self.width}, spacing={self.spacing}, chromosomes={len(chroms)})"
        )

        return CountMatrix(
            regions=regions,
            counts=counts,
            libraries=tuple(lib.name for lib in libraries),
            totals=self._library_totals(libraries),
            width=self.width,
            spacing=self.spacing,
        )

    def count_regions(self, libraries: Sequence[Library], regions: IntervalSet) -> CountMatrix:
        """
        Count fragments overlapping arbitrary regions, keeping their order.

        Stranded regions only count fragments on the same strand.
        """
        if not libraries:
            raise EmptyDataError("library list")
        indices = [_FragmentIndex.build(lib.fragments) for lib in libraries]
        counts = np.zeros((len(regions), len(libraries)), dtype=np.int64)

        if len(regions):
            keys = pd.DataFrame({"chrom": regions.chroms.astype(str), "strand": regions.strands.astype(str)})
            for (chrom, strand), rows in keys.groupby(["chrom", "strand"], sort=False).groups.items():
                rows = np.asarray(rows)
                for j, idx in enumerate(indices):
                    counts[rows, j] = idx.count(chrom, strand, regions.starts[rows], regions.ends[rows])

        return CountMatrix(
            regions=regions,
            counts=counts,
            libraries=tuple(lib.name for lib in libraries),
            totals=self._library_totals(libraries),
        )

"""
Genomic interval containers for WinDiff.

All coordinates are 1-based and closed: an interval ``chr1:11-20`` covers ten
bases.  ``IntervalSet`` stores intervals column-wise in read-only numpy
arrays, so subsetting and sorting always produce new objects.

Overlap search uses an NCLS (Nested Containment List) index per chromosome.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from ncls import NCLS

from .exceptions import InvalidIntervalError, ValidationError, validate_dataframe

logger = logging.getLogger(__name__)

FORWARD = "+"
REVERSE = "-"
UNSTRANDED = "*"
STRANDS = (FORWARD, REVERSE, UNSTRANDED)


@dataclass(frozen=True)
class GenomicInterval:
    """A single stranded genomic interval (1-based, closed)."""
    chrom: str
    start: int
    end: int
    strand: str = UNSTRANDED

    def __post_init__(self):
        if self.strand not in STRANDS:
            raise InvalidIntervalError(self.chrom, self.start, self.end, f"unknown strand {self.strand!r}")
        if self.start < 1:
            raise InvalidIntervalError(self.chrom, self.start, self.end, "start must be >= 1")
        if self.start > self.end:
            raise InvalidIntervalError(self.chrom, self.start, self.end, "start exceeds end")

    @property
    def width(self) -> int:
        return self.end - self.start + 1

    def overlaps(self, other: "GenomicInterval") -> bool:
        """True if both intervals share at least one base on compatible strands."""
        if self.chrom != other.chrom or not _strands_compatible(self.strand, other.strand):
            return False
        return self.start <= other.end and other.start <= self.end

    def gap(self, other: "GenomicInterval") -> Optional[int]:
        """Number of bases strictly between the two intervals (0 if adjacent or overlapping)."""
        if self.chrom != other.chrom:
            return None
        return max(0, max(self.start, other.start) - min(self.end, other.end) - 1)

    def __str__(self) -> str:
        suffix = "" if self.strand == UNSTRANDED else f"({self.strand})"
        return f"{self.chrom}:{self.start}-{self.end}{suffix}"


def _strands_compatible(a: str, b: str) -> bool:
    return a == UNSTRANDED or b == UNSTRANDED or a == b


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr.flags.writeable = False
    return arr


class IntervalSet:
    """Immutable collection of genomic intervals.

    Parameters
    ----------
    chroms : sequence of str
    starts, ends : sequence of int
        1-based closed coordinates.
    strands : sequence of str, optional
        One of "+", "-" or "*" per interval; defaults to unstranded.
    """

    __slots__ = ("_chroms", "_starts", "_ends", "_strands")

    def __init__(
        self,
        chroms: Sequence[str],
        starts: Sequence[int],
        ends: Sequence[int],
        strands: Optional[Sequence[str]] = None,
    ):
        chroms = np.asarray(chroms, dtype=object)
        starts = np.asarray(starts, dtype=np.int64)
        ends = np.asarray(ends, dtype=np.int64)
        if strands is None:
            strands = np.full(len(chroms), UNSTRANDED, dtype=object)
        else:
            strands = np.asarray(strands, dtype=object)

        if not (len(chroms) == len(starts) == len(ends) == len(strands)):
            raise ValidationError(
                "chroms, starts, ends and strands must have equal lengths "
                f"({len(chroms)}, {len(starts)}, {len(ends)}, {len(strands)})"
            )

        if len(starts):
            bad = np.flatnonzero((starts < 1) | (starts > ends))
            if len(bad):
                i = bad[0]
                raise InvalidIntervalError(chroms[i], starts[i], ends[i], "require 1 <= start <= end")
            unknown = ~np.isin(strands, STRANDS)
            if unknown.any():
                i = np.flatnonzero(unknown)[0]
                raise InvalidIntervalError(chroms[i], starts[i], ends[i], f"unknown strand {strands[i]!r}")

        self._chroms = _readonly(chroms)
        self._starts = _readonly(starts)
        self._ends = _readonly(ends)
        self._strands = _readonly(strands)

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    @classmethod
    def empty(cls) -> "IntervalSet":
        return cls([], [], [])

    @classmethod
    def from_intervals(cls, intervals: Iterable[GenomicInterval]) -> "IntervalSet":
        intervals = list(intervals)
        return cls(
            [iv.chrom for iv in intervals],
            [iv.start for iv in intervals],
            [iv.end for iv in intervals],
            [iv.strand for iv in intervals],
        )

    @classmethod
    def from_dataframe(
        cls,
        df: pd.DataFrame,
        chrom_col: str = "chrom",
        start_col: str = "start",
        end_col: str = "end",
        strand_col: str = "strand",
    ) -> "IntervalSet":
        """Build from a DataFrame holding 1-based closed coordinates."""
        validate_dataframe(df, "interval table", required_columns=[chrom_col, start_col, end_col])
        strands = df[strand_col].astype(str).values if strand_col in df.columns else None
        return cls(
            df[chrom_col].astype(str).values,
            df[start_col].values,
            df[end_col].values,
            strands,
        )

    @classmethod
    def concat(cls, sets: Sequence["IntervalSet"]) -> "IntervalSet":
        sets = [s for s in sets if len(s)]
        if not sets:
            return cls.empty()
        return cls(
            np.concatenate([s.chroms for s in sets]),
            np.concatenate([s.starts for s in sets]),
            np.concatenate([s.ends for s in sets]),
            np.concatenate([s.strands for s in sets]),
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def chroms(self) -> np.ndarray:
        return self._chroms

    @property
    def starts(self) -> np.ndarray:
        return self._starts

    @property
    def ends(self) -> np.ndarray:
        return self._ends

    @property
    def strands(self) -> np.ndarray:
        return self._strands

    @property
    def widths(self) -> np.ndarray:
        return self._ends - self._starts + 1

    @property
    def is_stranded(self) -> bool:
        return bool(len(self) and (self._strands != UNSTRANDED).any())

    def __len__(self) -> int:
        return len(self._starts)

    def __getitem__(self, i: int) -> GenomicInterval:
        return GenomicInterval(
            str(self._chroms[i]), int(self._starts[i]), int(self._ends[i]), str(self._strands[i])
        )

    def __iter__(self):
        for i in range(len(self)):
            yield self[i]

    def __eq__(self, other) -> bool:
        if not isinstance(other, IntervalSet) or len(self) != len(other):
            return False
        return (
            np.array_equal(self._chroms, other._chroms)
            and np.array_equal(self._starts, other._starts)
            and np.array_equal(self._ends, other._ends)
            and np.array_equal(self._strands, other._strands)
        )

    def __repr__(self) -> str:
        return f"IntervalSet(n={len(self)}, chroms={list(pd.unique(self._chroms))[:5]})"

    def unique_chroms(self) -> List[str]:
        """Chromosome names in order of first appearance."""
        return [str(c) for c in pd.unique(self._chroms)]

    # ------------------------------------------------------------------
    # Derived sets
    # ------------------------------------------------------------------

    def subset(self, selector) -> "IntervalSet":
        """Return a new set from a boolean mask or integer indices (order preserved)."""
        selector = np.asarray(selector)
        if selector.dtype == bool and len(selector) != len(self):
            raise ValidationError(f"Mask length {len(selector)} does not match {len(self)} intervals")
        return IntervalSet(
            self._chroms[selector], self._starts[selector], self._ends[selector], self._strands[selector]
        )

    def sort_order(self) -> np.ndarray:
        """Indices that sort by chromosome (natural order), strand, then start and end."""
        if not len(self):
            return np.array([], dtype=np.int64)
        rank = {c: i for i, c in enumerate(sort_chromosomes(self.unique_chroms()))}
        chrom_rank = np.array([rank[c] for c in self._chroms], dtype=np.int64)
        strand_rank = np.array([STRANDS.index(s) for s in self._strands], dtype=np.int64)
        return np.lexsort((self._ends, self._starts, strand_rank, chrom_rank))

    def sort(self) -> "IntervalSet":
        return self.subset(self.sort_order())

    def is_sorted(self) -> bool:
        """True if each (chromosome, strand) block is contiguous and ordered by start."""
        n = len(self)
        if n < 2:
            return True
        keys = list(zip(self._chroms, self._strands))
        seen = set()
        prev = None
        for i, key in enumerate(keys):
            if key != prev:
                if key in seen:
                    return False
                seen.add(key)
                prev = key
            elif self._starts[i] < self._starts[i - 1]:
                return False
        return True

    def expand(self, flank: int, chromosome_lengths: Optional[Dict[str, int]] = None) -> "IntervalSet":
        """Widen every interval by ``flank`` bases on both sides, clipped to chromosome bounds."""
        starts = np.maximum(self._starts - flank, 1)
        ends = self._ends + flank
        if chromosome_lengths is not None:
            limits = np.array([chromosome_lengths.get(c, np.iinfo(np.int64).max) for c in self._chroms],
                              dtype=np.int64)
            ends = np.minimum(ends, limits)
        return IntervalSet(self._chroms, starts, ends, self._strands)

    def merge(self, tol: int = 0) -> "IntervalSet":
        """Reduce to the union of runs separated by gaps of at most ``tol`` bases."""
        if not len(self):
            return IntervalSet.empty()
        ordered = self.sort()
        runs: List[list] = []
        for chrom, start, end, strand in zip(ordered.chroms, ordered.starts, ordered.ends, ordered.strands):
            if runs:
                cur = runs[-1]
                if cur[0] == chrom and cur[3] == strand and start - cur[2] - 1 <= tol:
                    cur[2] = max(cur[2], end)
                    continue
            runs.append([chrom, start, end, strand])
        chroms, starts, ends, strands = zip(*runs)
        return IntervalSet(chroms, starts, ends, strands)

    # ------------------------------------------------------------------
    # Overlaps
    # ------------------------------------------------------------------

    def find_overlaps(self, other: "IntervalSet", ignore_strand: bool = False) -> Tuple[np.ndarray, np.ndarray]:
        """All (query, subject) index pairs sharing at least one base.

        ``self`` is the query set.  Pairs are sorted by query then subject index.
        """
        q_hits: List[np.ndarray] = []
        s_hits: List[np.ndarray] = []
        if not len(self) or not len(other):
            return np.array([], dtype=np.int64), np.array([], dtype=np.int64)

        subject_by_chrom = {c: np.flatnonzero(other.chroms == c) for c in other.unique_chroms()}
        for chrom in self.unique_chroms():
            s_idx = subject_by_chrom.get(chrom)
            if s_idx is None:
                continue
            q_idx = np.flatnonzero(self._chroms == chrom)

            # NCLS works on half-open coordinates
            index = NCLS(
                other.starts[s_idx].astype(np.int64),
                other.ends[s_idx].astype(np.int64) + 1,
                np.arange(len(s_idx), dtype=np.int64),
            )
            q_local, s_local = index.all_overlaps_both(
                self._starts[q_idx].astype(np.int64),
                self._ends[q_idx].astype(np.int64) + 1,
                np.arange(len(q_idx), dtype=np.int64),
            )
            q_found = q_idx[np.asarray(q_local, dtype=np.int64)]
            s_found = s_idx[np.asarray(s_local, dtype=np.int64)]

            if not ignore_strand and len(q_found):
                keep = np.array([
                    _strands_compatible(a, b)
                    for a, b in zip(self._strands[q_found], other.strands[s_found])
                ], dtype=bool)
                q_found, s_found = q_found[keep], s_found[keep]

            q_hits.append(q_found)
            s_hits.append(s_found)

        if not q_hits:
            return np.array([], dtype=np.int64), np.array([], dtype=np.int64)
        q = np.concatenate(q_hits)
        s = np.concatenate(s_hits)
        order = np.lexsort((s, q))
        return q[order], s[order]

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame({
            "chrom": self._chroms.astype(str),
            "start": self._starts,
            "end": self._ends,
            "strand": self._strands.astype(str),
        })


# ============================================================================
# Chromosome utilities
# ============================================================================

_CHROM_ORDER = {f"chr{i}": i for i in range(1, 23)}
_CHROM_ORDER.update({"chrX": 23, "chrY": 24, "chrM": 25, "chrMT": 25})


def sort_chromosomes(chroms: List[str]) -> List[str]:
    """Sort chromosome names in natural order (1,2,...,22,X,Y,M, then the rest)."""
    def _sort_key(c: str) -> Tuple[int, str]:
        c_stripped = c.replace("chr", "") if c.startswith("chr") else c
        if c in _CHROM_ORDER:
            return (_CHROM_ORDER[c], c)
        if c_stripped in ("X", "Y", "M", "MT"):
            return (_CHROM_ORDER["chr" + c_stripped], c)
        try:
            return (int(c_stripped), c)
        except ValueError:
            return (100, c)
    return sorted(chroms, key=_sort_key)

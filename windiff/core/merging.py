"""
Window clustering for WinDiff.

Adjacent windows are grouped into regions purely on their coordinates.  The
merger only ever sees an IntervalSet, so clustering cannot depend on test
results.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .exceptions import InvalidParameterError, ValidationError, validate_numeric_param
from .intervals import UNSTRANDED, IntervalSet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeResult:
    """Cluster id per input window and one spanning interval per cluster."""
    ids: np.ndarray
    regions: IntervalSet

    @property
    def n_clusters(self) -> int:
        return len(self.regions)

    def sizes(self) -> np.ndarray:
        return np.bincount(self.ids, minlength=self.n_clusters)


class WindowMerger:
    """
    Cluster sorted windows separated by at most ``tol`` bases.

    With ``max_width`` set, a window that would stretch the current cluster
    beyond that width starts a new cluster instead.
    """

    def __init__(self, tol: int, max_width: Optional[int] = None, ignore_strand: bool = True):
        validate_numeric_param(tol, "tol", min_val=0)
        if max_width is not None and max_width < 1:
            raise InvalidParameterError("max_width", max_width, "positive integer or None")
        self.tol = int(tol)
        self.max_width = max_width
        self.ignore_strand = ignore_strand

    def merge(self, windows: IntervalSet) -> MergeResult:
        """
        Assign cluster ids to windows.

        Args:
            windows: Window coordinates sorted by chromosome (and strand) then start

        Returns:
            MergeResult with contiguous ids in window order
        """
        if not isinstance(windows, IntervalSet):
            raise ValidationError(f"WindowMerger expects an IntervalSet, got {type(windows).__name__}")
        n = len(windows)
        if n == 0:
            return MergeResult(np.array([], dtype=np.int64), IntervalSet.empty())

        strands = windows.strands if not self.ignore_strand else np.full(n, UNSTRANDED, dtype=object)
        if not IntervalSet(windows.chroms, windows.starts, windows.ends, strands).is_sorted():
            raise ValidationError("Windows must be sorted by chromosome then start before merging")

        ids = np.empty(n, dtype=np.int64)
        chroms, starts, ends = windows.chroms, windows.starts, windows.ends
        out_chroms, out_starts, out_ends, out_strands = [], [], [], []

        cluster = -1
        cur_start = cur_end = None
        for i in range(n):
            same_block = i > 0 and chroms[i] == chroms[i - 1] and strands[i] == strands[i - 1]
            join = same_block and starts[i] - cur_end - 1 <= self.tol
            if join and self.max_width is not None:
                join = max(cur_end, ends[i]) - cur_start + 1 <= self.max_width
            if join:
                cur_end = max(cur_end, ends[i])
                out_ends[-1] = cur_end
            else:
                cluster += 1
                cur_start, cur_end = starts[i], ends[i]
                out_chroms.append(chroms[i])
                out_starts.append(cur_start)
                out_ends.append(cur_end)
                out_strands.append(strands[i])
            ids[i] = cluster

        regions = IntervalSet(out_chroms, out_starts, out_ends, out_strands)
        logger.info(f"Merged {n} windows into {len(regions)} clusters (tol={self.tol}, max_width={self.max_width})")
        return MergeResult(ids, regions)

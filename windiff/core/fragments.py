"""
Fragment extraction for WinDiff.

Turns aligned reads into imputed fragments.  Single-end reads are extended
from their 5' end to the average fragment length, paired-end reads are
replaced by the span of the proper pair.  Counting only ever consumes the
resulting per-library ``IntervalSet``.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Collection, Dict, Optional

import numpy as np
import pandas as pd
import pysam

from .exceptions import AlignmentFileError, InvalidParameterError, validate_dataframe
from .intervals import FORWARD, REVERSE, UNSTRANDED, IntervalSet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Library:
    """One sequencing library and its imputed fragments."""
    name: str
    fragments: IntervalSet
    total: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "name", str(self.name))
        if self.total is None:
            object.__setattr__(self, "total", len(self.fragments))

    def __len__(self) -> int:
        return len(self.fragments)

    def restrict(self, chromosomes: Collection[str]) -> "Library":
        """Library limited to the given chromosomes, with the total recomputed."""
        keep = np.isin(self.fragments.chroms, list(chromosomes))
        return Library(self.name, self.fragments.subset(keep))


def extend_reads(
    reads: pd.DataFrame,
    extension: Optional[int],
    chromosome_lengths: Dict[str, int],
    min_mapq: int = 0,
    restrict: Optional[Collection[str]] = None,
    discard: Optional[IntervalSet] = None,
) -> IntervalSet:
    """
    Impute fragments from single-end read coordinates.

    Args:
        reads: DataFrame with chrom, start, end (1-based closed), strand and
            optionally mapq columns
        extension: Fragment length; None keeps the read as-is
        chromosome_lengths: Chromosome name -> length, used for clipping
        min_mapq: Reads below this mapping quality are dropped
        restrict: Only keep reads on these chromosomes
        discard: Reads overlapping any of these intervals are dropped

    Returns:
        IntervalSet of fragments, strand taken from the read
    """
    validate_dataframe(reads, "reads", required_columns=["chrom", "start", "end", "strand"])
    if extension is not None and extension < 1:
        raise InvalidParameterError("extension", extension, "positive integer or None")

    reads = reads[reads["chrom"].astype(str).isin(chromosome_lengths.keys())]
    if restrict is not None:
        reads = reads[reads["chrom"].astype(str).isin(set(restrict))]
    if "mapq" in reads.columns and min_mapq > 0:
        reads = reads[reads["mapq"] >= min_mapq]

    if reads.empty:
        return IntervalSet.empty()

    chroms = reads["chrom"].astype(str).values
    starts = reads["start"].values.astype(np.int64)
    ends = reads["end"].values.astype(np.int64)
    strands = reads["strand"].astype(str).values

    if discard is not None and len(discard):
        hit, _ = IntervalSet(chroms, starts, ends).find_overlaps(discard, ignore_strand=True)
        keep = np.ones(len(starts), dtype=bool)
        keep[hit] = False
        chroms, starts, ends, strands = chroms[keep], starts[keep], ends[keep], strands[keep]

    if extension is not None:
        reverse = strands == REVERSE
        new_starts = np.where(reverse, ends - extension + 1, starts)
        new_ends = np.where(reverse, ends, starts + extension - 1)
        starts, ends = new_starts, new_ends

    limits = np.array([chromosome_lengths[c] for c in chroms], dtype=np.int64)
    starts = np.clip(starts, 1, limits)
    ends = np.clip(ends, starts, limits)

    return IntervalSet(chroms, starts, ends, strands)


class BamFragmentExtractor:
    """
    Read fragments out of a BAM file with pysam.

    Unmapped, secondary and supplementary alignments are always skipped;
    duplicates are skipped when ``dedup`` is set.
    """

    def __init__(
        self,
        extension: Optional[int] = 100,
        min_mapq: int = 0,
        dedup: bool = False,
        paired: bool = False,
        max_fragment: int = 500,
        restrict: Optional[Collection[str]] = None,
        discard: Optional[IntervalSet] = None,
    ):
        """
        Initialize the extractor.

        Args:
            extension: Fragment length for single-end reads
            min_mapq: Minimum mapping quality
            dedup: Skip reads flagged as duplicates
            paired: Treat input as paired-end and use proper pair spans
            max_fragment: Paired fragments longer than this are dropped
            restrict: Only extract from these chromosomes
            discard: Drop reads overlapping these intervals (e.g. a blacklist)
        """
        self.extension = extension
        self.min_mapq = min_mapq
        self.dedup = dedup
        self.paired = paired
        self.max_fragment = max_fragment
        self.restrict = set(restrict) if restrict is not None else None
        self.discard = discard

    def _open(self, bam_path):
        path = Path(bam_path)
        if not path.exists():
            raise AlignmentFileError(f"Alignment file not found: {path}")
        try:
            return pysam.AlignmentFile(str(path), "rb")
        except (OSError, ValueError) as e:
            raise AlignmentFileError(f"Could not open alignment file {path}: {e}") from e

    def chromosome_lengths(self, bam_path) -> Dict[str, int]:
        """Chromosome lengths from the BAM header, honouring the restriction."""
        with self._open(bam_path) as bam:
            lengths = dict(zip(bam.references, bam.lengths))
        if self.restrict is not None:
            lengths = {c: n for c, n in lengths.items() if c in self.restrict}
        return lengths

    def _keep(self, read) -> bool:
        if read.is_unmapped or read.is_secondary or read.is_supplementary:
            return False
        if self.dedup and read.is_duplicate:
            return False
        if read.mapping_quality < self.min_mapq:
            return False
        if self.restrict is not None and read.reference_name not in self.restrict:
            return False
        return True

    def read_alignments(self, bam_path) -> pd.DataFrame:
        """
        Collect filtered read (or pair) coordinates.

        Returns:
            DataFrame with chrom, start, end (1-based closed), strand, mapq
        """
        records = []
        with self._open(bam_path) as bam:
            for read in bam.fetch(until_eof=True):
                if not self._keep(read):
                    continue
                if self.paired:
                    if not (read.is_paired and read.is_proper_pair and read.is_read1):
                        continue
                    if read.reference_id != read.next_reference_id:
                        continue
                    if read.has_tag("MQ") and read.get_tag("MQ") < self.min_mapq:
                        continue
                    length = abs(read.template_length)
                    if length == 0 or length > self.max_fragment:
                        continue
                    start = min(read.reference_start, read.next_reference_start) + 1
                    records.append((read.reference_name, start, start + length - 1, UNSTRANDED,
                                    read.mapping_quality))
                else:
                    strand = REVERSE if read.is_reverse else FORWARD
                    records.append((read.reference_name, read.reference_start + 1, read.reference_end,
                                    strand, read.mapping_quality))

        logger.debug(f"Read {len(records)} alignments from {bam_path}")
        return pd.DataFrame(records, columns=["chrom", "start", "end", "strand", "mapq"])

    def extract(self, bam_path, name: Optional[str] = None) -> Library:
        """Extract a Library of fragments from one BAM file."""
        lengths = self.chromosome_lengths(bam_path)
        reads = self.read_alignments(bam_path)
        extension = None if self.paired else self.extension
        fragments = extend_reads(
            reads, extension, lengths, min_mapq=self.min_mapq, discard=self.discard,
        )
        library = Library(name or Path(bam_path).stem, fragments)
        logger.info(f"Extracted {len(fragments)} fragments for {library.name}")
        return library

"""
Per-region read filtering for STR genotyping.

Each candidate alignment runs through a fixed sequence of checks and is
attributed to the first one it fails. Reads that pass every enabled check are
kept, in input order, as the evidence set for the region.
"""

from __future__ import annotations

from dataclasses import dataclass as std_dataclass
from dataclasses import field
from enum import Enum
from typing import TYPE_CHECKING, Protocol

from loguru import logger
from pydantic import Field
from pydantic.dataclasses import dataclass

from alignment_filters import end_dist_to_indel, has_largest_end_matches, num_end_matches

if TYPE_CHECKING:
    from collections.abc import Iterable

    from alignment_source import SourcedAlignment
    from str_regions import Region


# ------------------------------- DATA TYPES -------------------------------- #


class FilterableRead(Protocol):
    """The slice of pysam.AlignedSegment the cascade reads."""

    reference_id: int
    next_reference_id: int
    reference_start: int
    reference_end: int | None
    template_length: int
    query_sequence: str | None
    cigartuples: list[tuple[int, int]] | None

    def has_tag(self, tag: str) -> bool: ...


@dataclass(frozen=True)
class FilterConfig:
    """
    Thresholds for the optional read filters.

    `max_mate_dist=None` and zero for the integer thresholds disable the
    corresponding filter. Mate-chromosome, mate-mapped and spanning checks
    always run.
    """

    max_mate_dist: int | None = Field(default=None, ge=0)
    min_flank: int = Field(default=0, ge=0)
    min_bp_before_indel: int = Field(default=0, ge=0)
    maximal_end_match_window: int = Field(default=0, ge=0)
    min_read_end_match: int = Field(default=0, ge=0)
    remove_multimappers: bool = False
    multimapper_tag: str = Field(default="XA", min_length=2, max_length=2)


class FailureReason(Enum):
    """Why a read was excluded, in the order the checks run."""

    DIFF_CHROM_MATE = "had mates on a different chromosome"
    UNMAPPED_MATE = "had unmapped mates"
    NOT_SPANNING = "did not span the STR"
    INSERT_SIZE = "failed the insert size filter"
    MULTIMAPPED = "were removed due to multimapping"
    FLANK_LEN = "had too few bps in one or more flanks"
    BP_BEFORE_INDEL = "had too few bp before the first indel"
    END_MATCH_WINDOW = "did not have the maximal number of end matches within the specified window"
    NUM_END_MATCHES = "had too few bp matches along the ends"

    @property
    def column(self) -> str:
        return self.name.lower()


@std_dataclass
class FilterCounts:
    """Diagnostic tallies for one region (or, after merging, a whole run)."""

    reads: int = 0
    passed: int = 0
    failures: dict[FailureReason, int] = field(
        default_factory=lambda: dict.fromkeys(FailureReason, 0),
    )

    def record(self, reason: FailureReason | None) -> None:
        self.reads += 1
        if reason is None:
            self.passed += 1
        else:
            self.failures[reason] += 1

    def merge(self, other: FilterCounts) -> None:
        self.reads += other.reads
        self.passed += other.passed
        for reason, count in other.failures.items():
            self.failures[reason] += count

    def excluded(self) -> int:
        return sum(self.failures.values())

    def as_row(self) -> dict[str, int]:
        row = {"reads": self.reads}
        row.update({reason.column: count for reason, count in self.failures.items()})
        row["passed"] = self.passed
        return row


# ------------------------------ CORE LOGIC --------------------------------- #


def classify_alignment(  # noqa: C901, PLR0911
    aln: FilterableRead,
    region: Region,
    chrom_seq: str,
    config: FilterConfig,
) -> FailureReason | None:
    """
    Run the filter cascade on one alignment.

    Returns None if the read passes every enabled check, otherwise the reason
    for the first check it fails.
    """
    if aln.reference_id != aln.next_reference_id:
        return FailureReason.DIFF_CHROM_MATE

    # Zero insert size stands in for an unmapped or undefined mate
    if aln.template_length == 0:
        return FailureReason.UNMAPPED_MATE

    read_start = aln.reference_start
    read_end = aln.reference_end if aln.reference_end is not None else read_start
    if read_start > region.start or read_end < region.stop:
        return FailureReason.NOT_SPANNING

    if config.max_mate_dist is not None and abs(aln.template_length) > config.max_mate_dist:
        return FailureReason.INSERT_SIZE

    if config.remove_multimappers and aln.has_tag(config.multimapper_tag):
        return FailureReason.MULTIMAPPED

    if config.min_flank > 0 and (
        read_start > region.start - config.min_flank
        or read_end < region.stop + config.min_flank
    ):
        return FailureReason.FLANK_LEN

    if config.min_bp_before_indel > 0:
        head, tail = end_dist_to_indel(aln)
        if (head != -1 and head < config.min_bp_before_indel) or (
            tail != -1 and tail < config.min_bp_before_indel
        ):
            return FailureReason.BP_BEFORE_INDEL

    if config.maximal_end_match_window > 0:
        window = config.maximal_end_match_window
        if not has_largest_end_matches(aln, chrom_seq, 0, window, window):
            return FailureReason.END_MATCH_WINDOW

    if config.min_read_end_match > 0:
        head, tail = num_end_matches(aln, chrom_seq, 0)
        if head < config.min_read_end_match or tail < config.min_read_end_match:
            return FailureReason.NUM_END_MATCHES

    return None


def filter_region_reads(
    alignments: Iterable[SourcedAlignment],
    region: Region,
    chrom_seq: str,
    config: FilterConfig,
) -> tuple[list[SourcedAlignment], FilterCounts]:
    """
    Keep the alignments that are trustworthy evidence for `region`.

    Returns the survivors in input order together with the per-reason counts.
    """
    counts = FilterCounts()
    survivors: list[SourcedAlignment] = []
    for sourced in alignments:
        reason = classify_alignment(sourced.segment, region, chrom_seq, config)
        counts.record(reason)
        if reason is None:
            survivors.append(sourced)
        else:
            logger.trace(
                f"Dropping '{sourced.segment.query_name}' from {region}: {reason.name}",
            )

    assert counts.passed == len(survivors), (
        f"Pass count {counts.passed} disagrees with {len(survivors)} survivors"
    )
    assert counts.reads == counts.passed + counts.excluded(), (
        f"Counts do not add up: reads={counts.reads}, passed={counts.passed}, "
        f"excluded={counts.excluded()}"
    )
    return survivors, counts


def log_filter_counts(region: Region, counts: FilterCounts) -> None:
    """Human-readable breakdown of why reads in `region` were dropped."""
    lines = [f"{counts.reads} reads overlapped region {region}, of which"]
    lines.extend(f"\t{counts.failures[reason]} {reason.value}" for reason in FailureReason)
    lines.append(f"{counts.passed} PASSED ALL FILTERS")
    logger.info("\n".join(lines))

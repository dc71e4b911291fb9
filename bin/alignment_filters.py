"""
CIGAR-level read metrics used by the STR read filters.

All reference coordinates are 0-based. `ref_seq` is a linear buffer whose
first base sits at reference position `ref_offset` (0 when the buffer holds
the whole chromosome).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, NamedTuple, Protocol

if TYPE_CHECKING:
    from collections.abc import Iterable

# ------------------------------- CONSTANTS -------------------------------- #

# CIGAR op codes
# 0:M, 1:I, 2:D, 3:N, 4:S, 5:H, 6:P, 7:=, 8:X
REF_CONSUME = {0, 2, 3, 7, 8}
QRY_CONSUME = {0, 1, 4, 7, 8}
BOTH_CONSUME = {0, 7, 8}
INDEL_OPS = {1, 2}
CLIP_OPS = {4, 5}

NO_INDEL = -1


class CigaredRead(Protocol):
    """The slice of pysam.AlignedSegment these metrics read."""

    reference_start: int
    query_sequence: str | None
    cigartuples: list[tuple[int, int]] | None


# ---------------------------- CIGAR UTILITIES ------------------------------ #


class CigarOp(NamedTuple):
    """One CIGAR run: (operation code, run length)."""

    op: int
    length: int

    @staticmethod
    def from_tuple(t: tuple[int, int]) -> CigarOp:
        """Convert a raw (op, len) tuple to CigarOp."""
        op, ln = t
        return CigarOp(op, ln)


class Cigar(list[CigarOp]):
    """A list of CigarOp with helpers for walking an alignment."""

    @classmethod
    def from_pysam(cls, cig_raw: list[tuple[int, int]] | None) -> Cigar:
        """Convert pysam's list[(op, len)] to a Cigar. None becomes an empty Cigar."""
        if cig_raw is None:
            return cls()
        return cls(CigarOp.from_tuple(t) for t in cig_raw)

    def reference_length(self) -> int:
        return sum(run.length for run in self if run.op in REF_CONSUME)

    def query_length(self) -> int:
        return sum(run.length for run in self if run.op in QRY_CONSUME)


class AlignedBlock(NamedTuple):
    """An ungapped M/=/X run: where it starts in the query and the reference."""

    query_start: int
    ref_start: int
    length: int


def aligned_blocks(cig: Cigar, reference_start: int) -> list[AlignedBlock]:
    """List the ungapped aligned blocks of an alignment, left to right."""
    blocks: list[AlignedBlock] = []
    qpos = 0
    rpos = reference_start
    for run in cig:
        if run.op in BOTH_CONSUME:
            blocks.append(AlignedBlock(qpos, rpos, run.length))
        if run.op in QRY_CONSUME:
            qpos += run.length
        if run.op in REF_CONSUME:
            rpos += run.length
    return blocks


def _bases_match(seq: str, qpos: int, ref_seq: str, rpos: int) -> bool:
    """Reference positions outside the buffer never match."""
    if rpos < 0 or rpos >= len(ref_seq) or qpos < 0 or qpos >= len(seq):
        return False
    return seq[qpos].upper() == ref_seq[rpos].upper()


# ------------------------------ READ METRICS ------------------------------- #


def _dist_to_first_indel(runs: Iterable[CigarOp]) -> int:
    dist = 0
    for run in runs:
        if run.op in INDEL_OPS:
            return dist
        if run.op in BOTH_CONSUME:
            dist += run.length
    return NO_INDEL


def end_dist_to_indel(aln: CigaredRead) -> tuple[int, int]:
    """
    Aligned bases between each end of the read and its nearest indel.

    Returns (head, tail); either is -1 when the read has no indel. Clipped
    bases do not count towards the distance.
    """
    cig = Cigar.from_pysam(aln.cigartuples)
    return _dist_to_first_indel(cig), _dist_to_first_indel(reversed(cig))


def num_end_matches(aln: CigaredRead, ref_seq: str, ref_offset: int = 0) -> tuple[int, int]:
    """
    Length of the perfectly matching run at each end of the alignment.

    Walks inward from the outermost aligned base and stops at the first
    mismatch, insertion, deletion or reference skip. Returns (-1, -1) if the
    alignment begins before the start of the reference buffer.
    """
    if aln.reference_start < ref_offset:
        return -1, -1

    seq = aln.query_sequence or ""
    cig = Cigar.from_pysam(aln.cigartuples)
    start = aln.reference_start - ref_offset

    head = 0
    qpos, rpos = 0, start
    for run in cig:
        if run.op in BOTH_CONSUME:
            matched = 0
            while matched < run.length and _bases_match(seq, qpos + matched, ref_seq, rpos + matched):
                matched += 1
            head += matched
            if matched < run.length:
                break
            qpos += run.length
            rpos += run.length
        elif run.op == 4:
            qpos += run.length
        elif run.op in CLIP_OPS or run.op == 6:
            continue
        else:
            break

    tail = 0
    qpos, rpos = len(seq) - 1, start + cig.reference_length() - 1
    for run in reversed(cig):
        if run.op in BOTH_CONSUME:
            matched = 0
            while matched < run.length and _bases_match(seq, qpos - matched, ref_seq, rpos - matched):
                matched += 1
            tail += matched
            if matched < run.length:
                break
            qpos -= run.length
            rpos -= run.length
        elif run.op == 4:
            qpos -= run.length
        elif run.op in CLIP_OPS or run.op == 6:
            continue
        else:
            break

    return head, tail


def _head_run(seq: str, block: AlignedBlock, ref_seq: str, shift: int) -> int:
    run = 0
    while run < block.length and _bases_match(
        seq, block.query_start + run, ref_seq, block.ref_start + shift + run
    ):
        run += 1
    return run


def _tail_run(seq: str, block: AlignedBlock, ref_seq: str, shift: int) -> int:
    q_last = block.query_start + block.length - 1
    r_last = block.ref_start + block.length - 1 + shift
    run = 0
    while run < block.length and _bases_match(seq, q_last - run, ref_seq, r_last - run):
        run += 1
    return run


def has_largest_end_matches(
    aln: CigaredRead,
    ref_seq: str,
    ref_offset: int,
    max_external: int,
    max_internal: int,
) -> bool:
    """
    Check that each end of the read matches best exactly where it is placed.

    The outermost aligned block at each end is slid along the reference by
    every offset up to `max_external` bases outward and `max_internal` bases
    inward. The end match run at the real placement must be strictly longer
    than the run at every other offset, otherwise a nearby position explains
    the read end just as well.
    """
    assert max_external >= 0 and max_internal >= 0, (  # noqa: PT018
        f"Window sizes must be non-negative: external={max_external}, internal={max_internal}"
    )
    seq = aln.query_sequence or ""
    blocks = aligned_blocks(Cigar.from_pysam(aln.cigartuples), aln.reference_start - ref_offset)
    if not blocks or not seq:
        return False

    head, tail = blocks[0], blocks[-1]

    # Outward is leftward for the head and rightward for the tail
    best_head = _head_run(seq, head, ref_seq, 0)
    for shift in range(-max_external, max_internal + 1):
        if shift != 0 and _head_run(seq, head, ref_seq, shift) >= best_head:
            return False

    best_tail = _tail_run(seq, tail, ref_seq, 0)
    for shift in range(-max_internal, max_external + 1):
        if shift != 0 and _tail_run(seq, tail, ref_seq, shift) >= best_tail:
            return False

    return True

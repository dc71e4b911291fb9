# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for the STR read filter tests.

Provides a mock alignment segment for unit tests, a deterministic random
reference genome, and helpers that build small indexed BAM and FASTA files for
integration tests.
"""

import random
import sys
import tempfile
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pysam
import pytest

# Add bin directory to Python path so we can import the modules under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

CHROM_LENGTHS = {"chr1": 1000, "chr2": 500}
REF_CONSUME = {0, 2, 3, 7, 8}


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture(scope="session")
def reference_genome() -> dict[str, str]:
    """Non-repetitive random chromosomes, identical on every run."""
    rng = random.Random(1234)
    return {
        chrom: "".join(rng.choice("ACGT") for _ in range(length))
        for chrom, length in CHROM_LENGTHS.items()
    }


@pytest.fixture
def chr1_seq(reference_genome: dict[str, str]) -> str:
    return reference_genome["chr1"]


@pytest.fixture
def fasta_dir(temp_dir: Path, reference_genome: dict[str, str]) -> Path:
    """One <chrom>.fa file per chromosome."""
    out_dir = temp_dir / "fasta"
    out_dir.mkdir()
    for chrom, seq in reference_genome.items():
        with open(out_dir / f"{chrom}.fa", "w") as f:
            f.write(f">{chrom}\n")
            for i in range(0, len(seq), 60):
                f.write(seq[i : i + 60] + "\n")
    return out_dir


@pytest.fixture
def indexed_fasta(temp_dir: Path, reference_genome: dict[str, str]) -> Path:
    """All chromosomes in one faidx-indexed FASTA."""
    ref_path = temp_dir / "genome.fa"
    with open(ref_path, "w") as f:
        for chrom, seq in reference_genome.items():
            f.write(f">{chrom}\n")
            for i in range(0, len(seq), 60):
                f.write(seq[i : i + 60] + "\n")
    pysam.faidx(str(ref_path))
    return ref_path


class MockAlignedSegment:
    """Mock AlignedSegment for unit testing without touching alignment files."""

    def __init__(
        self,
        query_name: str = "test_read",
        query_sequence: str | None = "ATCGATCGATCG",
        cigartuples: list[tuple[int, int]] | None = None,
        reference_start: int = 0,
        reference_id: int = 0,
        next_reference_id: int = 0,
        template_length: int = 300,
        tags: dict[str, Any] | None = None,
    ) -> None:
        self.query_name = query_name
        self.query_sequence = query_sequence
        if cigartuples is None and query_sequence:
            cigartuples = [(0, len(query_sequence))]
        self.cigartuples = cigartuples
        self.reference_start = reference_start
        self.reference_id = reference_id
        self.next_reference_id = next_reference_id
        self.template_length = template_length
        self._tags: dict[str, Any] = dict(tags or {})

    @property
    def reference_end(self) -> int | None:
        if not self.cigartuples:
            return None
        return self.reference_start + sum(
            length for op, length in self.cigartuples if op in REF_CONSUME
        )

    def has_tag(self, tag: str) -> bool:
        return tag in self._tags

    def get_tag(self, tag: str) -> Any:
        return self._tags[tag]

    def set_tag(self, tag: str, value: Any, value_type: str | None = None) -> None:
        if value is None:
            self._tags.pop(tag, None)
            return
        self._tags[tag] = value

    def get_tags(self) -> list[tuple[str, Any]]:
        return list(self._tags.items())


@pytest.fixture
def make_read(chr1_seq: str) -> Callable[..., MockAlignedSegment]:
    """
    Factory for mock reads copied from chr1.

    By default the read is an exact 120bp copy of chr1[90:210] with its mate
    on the same chromosome.
    """

    def _make(
        start: int = 90,
        length: int = 120,
        mismatches: tuple[int, ...] = (),
        **kwargs: Any,
    ) -> MockAlignedSegment:
        seq = list(chr1_seq[start : start + length])
        for pos in mismatches:
            seq[pos] = "A" if seq[pos] != "A" else "C"
        kwargs.setdefault("query_sequence", "".join(seq))
        return MockAlignedSegment(reference_start=start, **kwargs)

    return _make


def create_sam_header(chrom_lengths: dict[str, int] | None = None) -> dict[str, Any]:
    """Create a minimal coordinate-sorted SAM header."""
    lengths = chrom_lengths or CHROM_LENGTHS
    return {
        "HD": {"VN": "1.6", "SO": "coordinate"},
        "SQ": [{"SN": name, "LN": length} for name, length in lengths.items()],
        "PG": [{"ID": "test", "PN": "filter_str_reads_test", "VN": "0.1.0"}],
    }


def write_bam(
    path: Path,
    reads: list[dict[str, Any]],
    reference_genome: dict[str, str],
    index: bool = True,  # noqa: FBT001, FBT002
) -> Path:
    """
    Write exact-copy paired reads to a sorted (and by default indexed) BAM.

    Each read description needs `name`, `chrom`, `start` and `length`; optional keys
    are `mate_chrom`, `tlen`, `cigar`, `seq` and `tags`.
    """
    header = create_sam_header()
    chroms = list(CHROM_LENGTHS)
    ordered = sorted(reads, key=lambda r: (chroms.index(r["chrom"]), r["start"]))
    with pysam.AlignmentFile(str(path), "wb", header=header) as bam_file:
        for read_spec in ordered:
            chrom = read_spec["chrom"]
            seq = read_spec.get("seq") or reference_genome[chrom][read_spec["start"] : read_spec["start"] + read_spec["length"]]
            read = pysam.AlignedSegment()
            read.query_name = read_spec["name"]
            read.query_sequence = seq
            read.query_qualities = pysam.qualitystring_to_array("I" * len(seq))
            read.flag = 3  # paired, proper pair
            read.reference_id = chroms.index(chrom)
            read.reference_start = read_spec["start"]
            read.mapping_quality = 60
            read.cigartuples = read_spec.get("cigar", [(0, len(seq))])
            read.next_reference_id = chroms.index(read_spec.get("mate_chrom", chrom))
            read.next_reference_start = read_spec["start"] + 200
            read.template_length = read_spec.get("tlen", 300)
            for tag, value in read_spec.get("tags", {}).items():
                read.set_tag(tag, value)
            bam_file.write(read)
    if index:
        pysam.index(str(path))
    return path


@pytest.fixture
def library_bams(temp_dir: Path, reference_genome: dict[str, str]) -> dict[str, Path]:
    """
    Two libraries' worth of reads around STRs at chr1:300-320, chr1:600-620
    and chr2:100-120.

    chr1:300-320 sees five reads, of which a1 and b2 pass every filter;
    chr1:600-620 sees only a4, chr2:100-120 only b3.
    """
    lib_a = [
        {"name": "a1_pass", "chrom": "chr1", "start": 250, "length": 100},
        {"name": "a2_not_spanning", "chrom": "chr1", "start": 305, "length": 100},
        {"name": "a3_mate_chr2", "chrom": "chr1", "start": 260, "length": 100, "mate_chrom": "chr2"},
        {"name": "a4_pass", "chrom": "chr1", "start": 560, "length": 100},
    ]
    lib_b = [
        {"name": "b1_unmapped_mate", "chrom": "chr1", "start": 270, "length": 100, "tlen": 0},
        {"name": "b2_pass", "chrom": "chr1", "start": 280, "length": 100, "tags": {"XS": 17}},
        {"name": "b3_pass", "chrom": "chr2", "start": 50, "length": 100},
    ]
    return {
        "libA": write_bam(temp_dir / "sampleA.bam", lib_a, reference_genome),
        "libB": write_bam(temp_dir / "sampleB.bam", lib_b, reference_genome),
    }


@pytest.fixture
def region_file(temp_dir: Path) -> Path:
    """Region file listing the library_bams STRs out of order."""
    path = temp_dir / "regions.bed"
    path.write_text(
        "# chrom\tstart\tstop\tperiod\tncopy\tname\n"
        "chr2\t100\t120\t4\t5.0\tSTR_C\n"
        "chr1\t600\t620\t2\t10.0\tSTR_B\n"
        "chr1\t300\t320\t2\t10.0\tSTR_A\n",
    )
    return path


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    # Remove existing handlers and set to WARNING level for tests
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")

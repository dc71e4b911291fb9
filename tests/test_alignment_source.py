"""
Tests for windowed, multi-file access to indexed alignment files.
"""

import pytest

from alignment_source import (
    AlignmentSource,
    RegionWindowError,
    _io_mode_from_ext,
    open_alignment,
)
from conftest import write_bam


class TestOpenAlignment:
    """Test choosing pysam modes from file extensions."""

    @pytest.mark.parametrize(
        ("path", "write", "expected"),
        [
            ("x.sam", False, "r"),
            ("x.sam", True, "w"),
            ("x.BAM", False, "rb"),
            ("x.bam", True, "wb"),
            ("x.cram", False, "rc"),
            ("x.cram", True, "wc"),
        ],
    )
    def test_io_mode_from_ext(self, path, write, expected):
        assert _io_mode_from_ext(path, write) == expected

    def test_unknown_extension(self):
        with pytest.raises(ValueError, match="must end with"):
            _io_mode_from_ext("reads.fastq", write=False)

    def test_write_requires_template_or_header(self, temp_dir):
        with pytest.raises(ValueError, match="template file or header"):
            open_alignment(str(temp_dir / "out.bam"), write=True)

    def test_open_for_read(self, library_bams):
        with open_alignment(str(library_bams["libA"]), write=False) as bam:
            assert list(bam.references) == ["chr1", "chr2"]


class TestAlignmentSource:
    """Test positioning several files on one window and merging their reads."""

    def test_merges_files_by_position(self, library_bams):
        paths = [str(library_bams["libA"]), str(library_bams["libB"])]
        with AlignmentSource(paths) as source:
            source.set_region("chr1", 300, 320)
            reads = list(source)

        assert [r.segment.query_name for r in reads] == [
            "a1_pass",
            "a3_mate_chr2",
            "b1_unmapped_mate",
            "b2_pass",
            "a2_not_spanning",
        ]
        assert [r.filename for r in reads] == [paths[0], paths[0], paths[1], paths[1], paths[0]]
        starts = [r.segment.reference_start for r in reads]
        assert starts == sorted(starts)

    def test_window_is_consumed_by_iteration(self, library_bams):
        with AlignmentSource([str(library_bams["libA"])]) as source:
            source.set_region("chr1", 600, 620)
            assert [r.segment.query_name for r in source] == ["a4_pass"]
            with pytest.raises(RegionWindowError, match="set_region"):
                iter(source)

    def test_window_with_no_reads(self, library_bams):
        with AlignmentSource([str(library_bams["libB"])]) as source:
            source.set_region("chr1", 900, 950)
            assert list(source) == []

    def test_iterating_before_set_region(self, library_bams):
        with AlignmentSource([str(library_bams["libA"])]) as source, pytest.raises(RegionWindowError):
            list(source)

    def test_unknown_chromosome(self, library_bams):
        with AlignmentSource([str(library_bams["libA"])]) as source:
            with pytest.raises(RegionWindowError, match="chr9"):
                source.set_region("chr9", 0, 10)
            assert source.get_reference_id("chr9") == -1

    def test_unindexed_file(self, temp_dir, reference_genome):
        path = write_bam(
            temp_dir / "unindexed.bam",
            [{"name": "r1", "chrom": "chr1", "start": 10, "length": 50}],
            reference_genome,
            index=False,
        )
        with AlignmentSource([str(path)]) as source, pytest.raises(RegionWindowError):
            source.set_region("chr1", 0, 100)

    def test_header_lookups(self, library_bams):
        with AlignmentSource([str(library_bams["libA"])]) as source:
            assert source.get_reference_id("chr2") == 1
            assert source.get_reference_name(0) == "chr1"
            assert source.chrom_order() == {"chr1": 0, "chr2": 1}
            assert source.template.filename.decode().endswith("sampleA.bam")

    def test_closed_source_rejects_set_region(self, library_bams):
        source = AlignmentSource([str(library_bams["libA"])])
        source.close()
        with pytest.raises(RegionWindowError, match="closed"):
            source.set_region("chr1", 0, 10)

    def test_requires_a_file(self):
        with pytest.raises(ValueError, match="At least one"):
            AlignmentSource([])

    def test_missing_file(self, temp_dir):
        with pytest.raises((OSError, ValueError)):
            AlignmentSource([str(temp_dir / "missing.bam")])

#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "polars",
#     "pydantic",
#     "pysam",
# ]
# ///
"""
Collect the reads that span each STR region, drop the ones that are poor
genotyping evidence, and hand the rest to a genotyper grouped by library.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import polars as pl
from loguru import logger

from alignment_source import AlignmentSource, RegionWindowError, open_alignment
from read_filter_cascade import FilterConfig, FilterCounts, filter_region_reads, log_filter_counts
from read_groups import ReadGroupError, demultiplex_reads, library_map_from_args, read_library_map
from reference_cache import ReferenceCache, ReferenceCacheError, open_reference_source
from region_annotation import AnnotationError, RegionAnnotator, annotated_header
from str_regions import Region, RegionGroupError, RegionParseError, order_regions, read_regions

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from alignment_source import SourcedAlignment

# ------------------------------- CONSTANTS -------------------------------- #

# Command-line defaults for the optional filters
DEFAULT_MAX_MATE_DIST = 1000
DEFAULT_MIN_FLANK = 5
DEFAULT_MIN_BP_BEFORE_INDEL = 7
DEFAULT_MAXIMAL_END_MATCH_WINDOW = 15
DEFAULT_MIN_READ_END_MATCH = 10

FATAL_ERRORS = (
    RegionParseError,
    RegionGroupError,
    ReferenceCacheError,
    RegionWindowError,
    AnnotationError,
    ReadGroupError,
    OSError,
    ValueError,
    pl.exceptions.PolarsError,
)


# ----------------------------- LOGGING SETUP ------------------------------- #


# Quietest to loudest; SUCCESS is the level with no -v or -q
VERBOSITY_LEVELS = ("CRITICAL", "ERROR", "WARNING", "SUCCESS", "INFO", "DEBUG", "TRACE")
DEFAULT_VERBOSITY = VERBOSITY_LEVELS.index("SUCCESS")


def verbosity_level(verbose: int, quiet: int) -> str:
    """Loguru level for the net count of -v over -q flags, clamped at both ends."""
    index = DEFAULT_VERBOSITY + verbose - quiet
    return VERBOSITY_LEVELS[max(0, min(index, len(VERBOSITY_LEVELS) - 1))]


def configure_logging(verbose: int, quiet: int) -> None:
    level = verbosity_level(verbose, quiet)
    logger.remove()
    logger.add(sys.stderr, level=level)
    logger.debug(f"Logging STR read filtering at level {level}")


# ------------------------------- GENOTYPING -------------------------------- #


class Genotyper(Protocol):
    """Consumes one region's reads, bucketed by library."""

    def process_reads(
        self,
        alignments_by_rg: list[list[SourcedAlignment]],
        rg_names: list[str],
        region: Region,
    ) -> None: ...


class LoggingGenotyper:
    """Stand-in genotyper that only reports what it would have received."""

    def process_reads(
        self,
        alignments_by_rg: list[list[SourcedAlignment]],
        rg_names: list[str],
        region: Region,
    ) -> None:
        sizes = ", ".join(
            f"{rg}={len(reads)}" for rg, reads in zip(rg_names, alignments_by_rg)
        )
        logger.debug(f"Genotyping input for {region}: {sizes or 'no reads'}")


# ------------------------------ CORE LOGIC --------------------------------- #


class RegionProcessor:
    """
    Drives the per-region loop: load the chromosome sequence, position the
    alignment files on the region, filter, optionally write annotated reads,
    split by library and genotype.

    Any fatal collaborator error propagates and ends the run.
    """

    def __init__(  # noqa: PLR0913
        self,
        source: AlignmentSource,
        reference: ReferenceCache,
        config: FilterConfig,
        file_read_groups: dict[str, str],
        annotator: RegionAnnotator | None = None,
        genotyper: Genotyper | None = None,
    ) -> None:
        self.source = source
        self.reference = reference
        self.config = config
        self.file_read_groups = file_read_groups
        self.annotator = annotator
        self.genotyper = genotyper if genotyper is not None else LoggingGenotyper()
        self.region_rows: list[dict[str, str | int]] = []

    def process_region(self, region: Region) -> FilterCounts:
        logger.info(f"Processing region {region.chrom} {region.start} {region.stop}")
        chrom_seq = self.reference.ensure(region.chrom)
        self.source.set_region(region.chrom, region.start, region.stop)

        survivors, counts = filter_region_reads(self.source, region, chrom_seq, self.config)
        log_filter_counts(region, counts)

        if self.annotator is not None:
            self.annotator.write_region(survivors, region)

        rg_names, alignments_by_rg = demultiplex_reads(survivors, self.file_read_groups)
        self.genotyper.process_reads(alignments_by_rg, rg_names, region)

        self.region_rows.append(
            {
                "chrom": region.chrom,
                "start": region.start,
                "stop": region.stop,
                "name": region.name,
                **counts.as_row(),
            },
        )
        return counts

    def process_regions(self, regions: Iterable[Region]) -> FilterCounts:
        totals = FilterCounts()
        for region in regions:
            totals.merge(self.process_region(region))
        return totals

    def run(
        self,
        region_file: str | Path,
        max_regions: int | None = None,
        chrom: str | None = None,
    ) -> FilterCounts:
        """Load, order and process every region in `region_file`."""
        regions = read_regions(region_file, max_regions=max_regions, chrom=chrom)
        order_regions(regions)
        totals = self.process_regions(regions)
        logger.info(
            f"Processed {len(regions)} regions using {self.reference.loads} reference load(s)",
        )
        return totals


def write_filter_stats(rows: list[dict[str, str | int]], output_path: Path) -> None:
    """Save the per-region filter breakdown as a TSV."""
    schema = {"chrom": pl.Utf8, "start": pl.Int64, "stop": pl.Int64, "name": pl.Utf8}
    schema.update(dict.fromkeys(FilterCounts().as_row(), pl.Int64))
    if not rows:
        logger.warning("No regions processed; writing an empty stats table")
    pl.DataFrame(rows, schema=schema).write_csv(output_path, separator="\t")
    logger.info(f"Saved filter stats for {len(rows)} regions to {output_path}")


# --------------------------------- CLI ------------------------------------- #


def _split_csv(value: str | None) -> list[str] | None:
    if value is None:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


def build_parser() -> argparse.ArgumentParser:
    """
    CLI:
      -v / -vv / -vvv : increase verbosity (INFO -> DEBUG -> TRACE)
      -q / -qq / -qqq : decrease verbosity (WARNING -> ERROR -> CRITICAL)
    (Mutually exclusive.)
    """
    p = argparse.ArgumentParser(
        description=(
            "Extract the reads spanning each STR region from indexed SAM/BAM/CRAM files,\n"
            "drop reads that are unreliable genotyping evidence, and split the rest by library."
        ),
    )

    # I/O
    p.add_argument(
        "--bams",
        required=True,
        help="Comma-separated list of indexed SAM/BAM/CRAM files",
    )
    p.add_argument(
        "--regions",
        required=True,
        help="Region file: chrom start stop period [ncopy] [name], 0-based half-open",
    )
    p.add_argument(
        "--fasta",
        required=True,
        help="Directory of per-chromosome FASTA files (<chrom>.fa) or one indexed FASTA",
    )
    p.add_argument(
        "--bam-out",
        default=None,
        help="Write the STR-spanning reads that pass all filters to this file",
    )
    p.add_argument(
        "--stats-out",
        default=None,
        help="Write a per-region TSV of filter counts to this file",
    )

    # Read groups
    rg_group = p.add_mutually_exclusive_group()
    rg_group.add_argument(
        "--bam-libs",
        default=None,
        help="Comma-separated library label for each file in --bams (default: file stem)",
    )
    rg_group.add_argument(
        "--lib-map",
        default=None,
        help="Two-column TSV of filename and library label",
    )

    # Region selection
    p.add_argument("--chrom", default=None, help="Only process regions on this chromosome")
    p.add_argument(
        "--max-regions",
        type=int,
        default=None,
        help="Only process the first N regions in the region file",
    )

    # Filters
    filter_group = p.add_argument_group("Read Filters")
    filter_group.add_argument(
        "--max-mate-dist",
        type=int,
        default=DEFAULT_MAX_MATE_DIST,
        help=f"Drop reads whose absolute insert size exceeds this (default: {DEFAULT_MAX_MATE_DIST}, -1 disables)",
    )
    filter_group.add_argument(
        "--min-flank",
        type=int,
        default=DEFAULT_MIN_FLANK,
        help=f"Bases a read must extend past each side of the STR (default: {DEFAULT_MIN_FLANK}, 0 disables)",
    )
    filter_group.add_argument(
        "--min-bp-before-indel",
        type=int,
        default=DEFAULT_MIN_BP_BEFORE_INDEL,
        help=(
            "Drop reads with an indel closer than this to either end "
            f"(default: {DEFAULT_MIN_BP_BEFORE_INDEL}, 0 disables)"
        ),
    )
    filter_group.add_argument(
        "--maximal-end-match-window",
        type=int,
        default=DEFAULT_MAXIMAL_END_MATCH_WINDOW,
        help=(
            "Drop reads whose ends match as well or better at another offset within this window "
            f"(default: {DEFAULT_MAXIMAL_END_MATCH_WINDOW}, 0 disables)"
        ),
    )
    filter_group.add_argument(
        "--min-read-end-match",
        type=int,
        default=DEFAULT_MIN_READ_END_MATCH,
        help=(
            "Bases each read end must match the reference perfectly "
            f"(default: {DEFAULT_MIN_READ_END_MATCH}, 0 disables)"
        ),
    )
    filter_group.add_argument(
        "--remove-multimappers",
        action="store_true",
        help="Drop reads carrying an XA alternative-hits tag",
    )

    # Verbosity: -v/-vv/-vvv or -q/-qq/-qqq (mutually exclusive)
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vvv).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )

    return p


def _run(args: argparse.Namespace) -> FilterCounts:
    config = FilterConfig(
        max_mate_dist=None if args.max_mate_dist < 0 else args.max_mate_dist,
        min_flank=args.min_flank,
        min_bp_before_indel=args.min_bp_before_indel,
        maximal_end_match_window=args.maximal_end_match_window,
        min_read_end_match=args.min_read_end_match,
        remove_multimappers=bool(args.remove_multimappers),
    )
    logger.debug(f"FilterConfig: {config}")

    bam_paths = _split_csv(args.bams) or []
    if args.lib_map is not None:
        file_read_groups = read_library_map(Path(args.lib_map), bam_paths)
    else:
        file_read_groups = library_map_from_args(bam_paths, _split_csv(args.bam_libs))
    logger.debug(f"Library labels: {file_read_groups}")

    reference = ReferenceCache(open_reference_source(args.fasta))
    cram_reference = None if Path(args.fasta).is_dir() else args.fasta

    with AlignmentSource(bam_paths, reference=cram_reference) as source:
        output_alignment = None
        annotator = None
        if args.bam_out is not None:
            header = annotated_header(source.template.header, file_read_groups.values())
            output_alignment = open_alignment(
                args.bam_out,
                write=True,
                template_or_header=header,
                reference=cram_reference,
            )
            annotator = RegionAnnotator(output_alignment, file_read_groups)

        try:
            processor = RegionProcessor(
                source,
                reference,
                config,
                file_read_groups,
                annotator=annotator,
            )
            totals = processor.run(args.regions, max_regions=args.max_regions, chrom=args.chrom)
        finally:
            if output_alignment is not None:
                output_alignment.close()

    if args.stats_out is not None:
        write_filter_stats(processor.region_rows, Path(args.stats_out))
    return totals


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    logger.info("Starting STR read filtering run.")

    try:
        totals = _run(args)
    except FATAL_ERRORS as e:
        logger.error(f"STR read filtering failed: {e}")
        sys.exit(1)

    logger.success(
        f"Reads: {totals.reads} | Excluded: {totals.excluded()} | Passed all filters: {totals.passed}",
    )
    logger.info("STR read filtering run complete.")


if __name__ == "__main__":
    main()

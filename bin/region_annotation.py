"""
Optional side channel that writes STR-spanning reads back out, tagged with
their read group and the boundaries of the region they were kept for.

Tags written:
    RG (Z): "<tool>;<library>;<library>"
    XS (i): region start
    XE (i): region stop
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from read_groups import library_for

if TYPE_CHECKING:
    from collections.abc import Iterable

    import pysam

    from alignment_source import SourcedAlignment
    from str_regions import Region

DEFAULT_TOOL_ID = "lobSTR"
READ_GROUP_TAG = "RG"
REGION_START_TAG = "XS"
REGION_STOP_TAG = "XE"


class AnnotationError(RuntimeError):
    """A tag could not be set or an annotated read could not be written."""


def read_group_id(library: str, tool_id: str = DEFAULT_TOOL_ID) -> str:
    # Downstream consumers expect the library twice
    return f"{tool_id};{library};{library}"


def _replace_int_tag(aln: pysam.AlignedSegment, tag: str, value: int) -> None:
    try:
        if aln.has_tag(tag):
            aln.set_tag(tag, None)
        aln.set_tag(tag, value, value_type="i")
    except (ValueError, TypeError, KeyError) as e:
        msg = f"Failed to modify {tag} tag on '{aln.query_name}': {e}"
        logger.error(msg)
        raise AnnotationError(msg) from e
    if aln.get_tag(tag) != value:
        msg = f"Failed to modify {tag} tag on '{aln.query_name}'"
        logger.error(msg)
        raise AnnotationError(msg)


def annotate_alignment(
    aln: pysam.AlignedSegment,
    region: Region,
    library: str,
    tool_id: str = DEFAULT_TOOL_ID,
) -> None:
    """Tag a read with its read group and region bounds. Safe to repeat."""
    try:
        aln.set_tag(READ_GROUP_TAG, read_group_id(library, tool_id), value_type="Z")
    except (ValueError, TypeError) as e:
        msg = f"Failed to set {READ_GROUP_TAG} tag on '{aln.query_name}': {e}"
        logger.error(msg)
        raise AnnotationError(msg) from e
    _replace_int_tag(aln, REGION_START_TAG, region.start)
    _replace_int_tag(aln, REGION_STOP_TAG, region.stop)


def annotated_header(
    template: pysam.AlignmentHeader,
    libraries: Iterable[str],
    tool_id: str = DEFAULT_TOOL_ID,
) -> dict:
    """Copy of `template` with one @RG line per library, matching the read tags."""
    header = template.to_dict()
    existing = {rg.get("ID") for rg in header.get("RG", [])}
    read_groups = list(header.get("RG", []))
    for library in dict.fromkeys(libraries):
        rg_id = read_group_id(library, tool_id)
        if rg_id not in existing:
            read_groups.append({"ID": rg_id, "SM": library, "LB": library})
            existing.add(rg_id)
    header["RG"] = read_groups
    return header


class RegionAnnotator:
    """Annotates surviving reads and writes them to an open alignment file."""

    def __init__(
        self,
        outp: pysam.AlignmentFile,
        file_read_groups: dict[str, str],
        tool_id: str = DEFAULT_TOOL_ID,
    ) -> None:
        self.outp = outp
        self.file_read_groups = file_read_groups
        self.tool_id = tool_id
        self.written = 0

    def write_region(self, alignments: Iterable[SourcedAlignment], region: Region) -> int:
        count = 0
        for sourced in alignments:
            library = library_for(sourced.filename, self.file_read_groups)
            annotate_alignment(sourced.segment, region, library, self.tool_id)
            try:
                self.outp.write(sourced.segment)
            except (OSError, ValueError) as e:
                msg = f"Failed to save alignment for STR-spanning read '{sourced.segment.query_name}': {e}"
                logger.error(msg)
                raise AnnotationError(msg) from e
            count += 1
        self.written += count
        logger.debug(f"Wrote {count} annotated reads for {region}")
        return count

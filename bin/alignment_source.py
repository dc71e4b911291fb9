"""
Windowed access to one or more coordinate-sorted, indexed alignment files.

Reads from every file in the current window are merged by leftmost position,
and each one carries the name of the file it came from.
"""

from __future__ import annotations

import heapq
from pathlib import Path
from typing import TYPE_CHECKING, NamedTuple

import pysam
from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence
    from types import TracebackType


class RegionWindowError(RuntimeError):
    """The alignment files could not be positioned on a requested window."""


class SourcedAlignment(NamedTuple):
    """An alignment record together with the file it was read from."""

    filename: str
    segment: pysam.AlignedSegment


# ----------------------------- I/O UTILITIES ------------------------------- #


# suffix -> (read mode, write mode)
ALIGNMENT_MODES = {".sam": ("r", "w"), ".bam": ("rb", "wb"), ".cram": ("rc", "wc")}


def _io_mode_from_ext(path: str, write: bool) -> str:  # noqa: FBT001
    suffix = Path(path).suffix.lower()
    if suffix not in ALIGNMENT_MODES:
        msg = f"Alignment file must end with .sam, .bam, or .cram: {path}"
        logger.error(msg)
        raise ValueError(msg)
    read_mode, write_mode = ALIGNMENT_MODES[suffix]
    return write_mode if write else read_mode


def open_alignment(
    path: str,
    write: bool,  # noqa: FBT001
    template_or_header: pysam.AlignmentFile | pysam.AlignmentHeader | dict | None = None,
    reference: str | None = None,
) -> pysam.AlignmentFile:
    """
    Open an input alignment, or create an output one seeded from an open file
    or a header. CRAM files are decoded against `reference` when given.
    """
    mode = _io_mode_from_ext(path, write)
    is_cram = mode.endswith("c")

    kwargs = {}
    if is_cram:
        if reference is None:
            logger.warning(f"No reference given for CRAM file {path}; decoding relies on its header")
        else:
            kwargs["reference_filename"] = reference

    if not write:
        logger.debug(f"Reading alignments from {path}")
        return pysam.AlignmentFile(path, mode, **kwargs)

    if template_or_header is None:
        msg = f"Cannot create {path} without a template file or header"
        raise ValueError(msg)
    logger.debug(f"Writing alignments to {path}")
    if isinstance(template_or_header, pysam.AlignmentFile):
        return pysam.AlignmentFile(path, mode, template=template_or_header, **kwargs)
    return pysam.AlignmentFile(path, mode, header=template_or_header, **kwargs)


# ----------------------------- MULTI-FILE READER --------------------------- #


def _sourced(filename: str, reads: Iterator[pysam.AlignedSegment]) -> Iterator[SourcedAlignment]:
    for read in reads:
        yield SourcedAlignment(filename, read)


class AlignmentSource:
    """
    Several indexed alignment files read as one stream.

    Call `set_region` to position every file on a half-open window, then
    iterate to receive the overlapping reads of all files merged by their
    leftmost position.
    """

    def __init__(self, paths: Sequence[str], reference: str | None = None) -> None:
        if not paths:
            msg = "At least one alignment file is required"
            raise ValueError(msg)
        self.paths = [str(p) for p in paths]
        self._files: list[pysam.AlignmentFile] = []
        try:
            for path in self.paths:
                self._files.append(open_alignment(path, write=False, reference=reference))
        except (OSError, ValueError):
            self.close()
            raise
        self._window: list[Iterator[pysam.AlignedSegment]] | None = None
        logger.info(f"Opened {len(self._files)} alignment file(s)")

    @property
    def template(self) -> pysam.AlignmentFile:
        """The first file, whose header seeds any output file."""
        return self._files[0]

    def get_reference_id(self, chrom: str) -> int:
        """Reference id of `chrom` in the first file's header, or -1 if absent."""
        return self._files[0].get_tid(chrom)

    def get_reference_name(self, ref_id: int) -> str:
        return self._files[0].get_reference_name(ref_id)

    def chrom_order(self) -> dict[str, int]:
        """Header order of the reference sequences, as ranks."""
        return {name: rank for rank, name in enumerate(self._files[0].references)}

    def set_region(self, chrom: str, start: int, stop: int) -> None:
        """Position every file on [start, stop) of `chrom`."""
        if not self._files:
            msg = "Cannot set a region on a closed alignment source"
            raise RegionWindowError(msg)
        window = []
        for path, handle in zip(self.paths, self._files):
            try:
                window.append(handle.fetch(chrom, start, stop))
            except (KeyError, ValueError, OSError) as e:
                msg = f"{path} failed to set the region {chrom}:{start}-{stop}: {e}"
                logger.error(msg)
                raise RegionWindowError(msg) from e
        self._window = window

    def __iter__(self) -> Iterator[SourcedAlignment]:
        if self._window is None:
            msg = "set_region must be called before iterating the alignment source"
            raise RegionWindowError(msg)
        window, self._window = self._window, None
        streams = [_sourced(path, reads) for path, reads in zip(self.paths, window)]
        return heapq.merge(*streams, key=lambda s: s.segment.reference_start)

    def close(self) -> None:
        for handle in self._files:
            handle.close()
        self._files = []
        self._window = None

    def __enter__(self) -> AlignmentSource:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

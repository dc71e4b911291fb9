"""
Read-group bookkeeping: which library each alignment file belongs to, and
splitting a region's surviving reads into per-library buckets.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import polars as pl
from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from alignment_source import SourcedAlignment

LIBRARY_MAP_COLUMNS = ("filename", "library")


class ReadGroupError(LookupError):
    """An alignment file has no library label."""


def library_for(filename: str, file_read_groups: dict[str, str]) -> str:
    try:
        return file_read_groups[filename]
    except KeyError as e:
        msg = f"No library label for alignment file {filename!r}"
        logger.error(msg)
        raise ReadGroupError(msg) from e


def demultiplex_reads(
    alignments: Iterable[SourcedAlignment],
    file_read_groups: dict[str, str],
) -> tuple[list[str], list[list[SourcedAlignment]]]:
    """
    Split alignments into per-library buckets.

    Libraries appear in `rg_names` in the order they are first seen, and each
    bucket keeps its alignments in input order. `alignments_by_rg[i]` holds the
    reads of library `rg_names[i]`.
    """
    rg_indices: dict[str, int] = {}
    rg_names: list[str] = []
    alignments_by_rg: list[list[SourcedAlignment]] = []
    for sourced in alignments:
        rg = library_for(sourced.filename, file_read_groups)
        rg_index = rg_indices.get(rg)
        if rg_index is None:
            rg_index = len(rg_names)
            rg_indices[rg] = rg_index
            rg_names.append(rg)
            alignments_by_rg.append([])
        alignments_by_rg[rg_index].append(sourced)
    return rg_names, alignments_by_rg


def library_map_from_args(
    bam_paths: Sequence[str],
    libraries: Sequence[str] | None = None,
) -> dict[str, str]:
    """
    Pair each alignment file with a library label.

    Without explicit labels, each file is its own library named after its stem.
    """
    if libraries is None:
        return {path: Path(path).name.split(".")[0] for path in bam_paths}
    if len(libraries) != len(bam_paths):
        msg = (
            f"Number of library labels ({len(libraries)}) must match the number "
            f"of alignment files ({len(bam_paths)})"
        )
        raise ValueError(msg)
    return dict(zip(bam_paths, libraries))


def read_library_map(map_path: Path, bam_paths: Sequence[str]) -> dict[str, str]:
    """
    Load a two-column `filename<TAB>library` table.

    Filenames may be given as full paths or basenames; every file in
    `bam_paths` must resolve to a library.
    """
    table = pl.read_csv(
        map_path,
        separator="\t",
        has_header=False,
        new_columns=list(LIBRARY_MAP_COLUMNS),
        comment_prefix="#",
        # Labels like "007" must stay strings
        infer_schema_length=0,
    )
    by_name = dict(zip(table.get_column("filename").to_list(), table.get_column("library").to_list()))

    file_read_groups: dict[str, str] = {}
    for path in bam_paths:
        library = by_name.get(path, by_name.get(Path(path).name))
        if library is None:
            msg = f"{map_path} has no library for alignment file {path}"
            raise ReadGroupError(msg)
        file_read_groups[path] = str(library)
    logger.info(f"Loaded library labels for {len(file_read_groups)} alignment file(s)")
    return file_read_groups

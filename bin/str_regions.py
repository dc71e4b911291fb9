"""
STR region model and region-file catalog.

A Region is one target repeat interval (0-based, half-open). Regions sort by
(chromosome, start, stop). RegionGroup folds overlapping regions that share a
chromosome into a single window.
"""

from __future__ import annotations

import functools
from pathlib import Path
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from collections.abc import Iterable

# ------------------------------- CONSTANTS -------------------------------- #

# chrom, start, stop, period
MIN_REGION_COLUMNS = 4
# chrom, start, stop, period, ncopy, name
NAMED_REGION_COLUMNS = 6
HEADER_PREFIXES = ("#", "track", "browser")


# ------------------------------- EXCEPTIONS ------------------------------- #


class RegionParseError(ValueError):
    """Malformed region definition or region ordering input."""


class RegionGroupError(ValueError):
    """A RegionGroup was asked to hold regions from more than one chromosome."""


# ------------------------------- DATA TYPES -------------------------------- #


@functools.total_ordering
class Region:
    """One STR target interval. Only chrom/start/stop take part in ordering."""

    __slots__ = ("_chrom", "_name", "_period", "_start", "_stop")

    def __init__(
        self,
        chrom: str,
        start: int,
        stop: int,
        period: int,
        name: str = "",
    ) -> None:
        if stop <= start:
            msg = f"Region {chrom}:{start}-{stop} must have stop > start"
            raise ValueError(msg)
        self._chrom = chrom
        self._start = start
        self._stop = stop
        self._period = period
        self._name = name

    @property
    def chrom(self) -> str:
        return self._chrom

    @property
    def start(self) -> int:
        return self._start

    @property
    def stop(self) -> int:
        return self._stop

    @property
    def period(self) -> int:
        return self._period

    @property
    def name(self) -> str:
        return self._name

    def set_start(self, start: int) -> None:
        self._start = start

    def set_stop(self, stop: int) -> None:
        self._stop = stop

    def copy(self) -> Region:
        return Region(self._chrom, self._start, self._stop, self._period, self._name)

    def sort_key(self) -> tuple[str, int, int]:
        return (self._chrom, self._start, self._stop)

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Region):
            return NotImplemented
        return self.sort_key() < other.sort_key()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Region):
            return NotImplemented
        return self.sort_key() == other.sort_key()

    def __hash__(self) -> int:
        return hash(self.sort_key())

    def __str__(self) -> str:
        return f"{self._chrom}:{self._start}-{self._stop}"

    def __repr__(self) -> str:
        return (
            f"Region({self._chrom!r}, {self._start}, {self._stop}, "
            f"period={self._period}, name={self._name!r})"
        )


class RegionGroup:
    """
    Regions on a single chromosome folded into one window.

    The group's start/stop always equal the min start and max stop over its
    members, and the members stay sorted by the Region order.
    """

    def __init__(self, region: Region) -> None:
        self._chrom = region.chrom
        self._regions: list[Region] = [region.copy()]
        self._start = region.start
        self._stop = region.stop

    @property
    def chrom(self) -> str:
        return self._chrom

    @property
    def start(self) -> int:
        return self._start

    @property
    def stop(self) -> int:
        return self._stop

    @property
    def regions(self) -> list[Region]:
        return [r.copy() for r in self._regions]

    def num_regions(self) -> int:
        return len(self._regions)

    def overlaps(self, region: Region) -> bool:
        return region.chrom == self._chrom and region.start < self._stop

    def add_region(self, region: Region) -> None:
        if region.chrom != self._chrom:
            msg = (
                "RegionGroup can only consist of regions on a single chromosome: "
                f"group is on {self._chrom}, got {region}"
            )
            logger.error(msg)
            raise RegionGroupError(msg)
        self._regions.append(region.copy())
        self._regions.sort()
        self._start = min(r.start for r in self._regions)
        self._stop = max(r.stop for r in self._regions)

    def __str__(self) -> str:
        return f"{self._chrom}:{self._start}-{self._stop} ({len(self._regions)} regions)"


# ------------------------------- REGION FILES ------------------------------ #


def _parse_region_line(fields: list[str], path: Path, line_no: int) -> Region:
    """Turn one whitespace-split region record into a Region."""
    where = f"{path}:{line_no}"
    if len(fields) < MIN_REGION_COLUMNS:
        msg = (
            f"Improperly formatted region file at {where}: expected at least "
            f"{MIN_REGION_COLUMNS} columns (chrom start stop period), got {len(fields)}"
        )
        raise RegionParseError(msg)

    chrom = fields[0]
    try:
        start, stop, period = int(fields[1]), int(fields[2]), int(fields[3])
    except ValueError as e:
        msg = f"Improperly formatted region file at {where}: non-integer coordinate or period"
        raise RegionParseError(msg) from e

    if start < 0:
        msg = f"Region at {where} has START < 0"
        raise RegionParseError(msg)
    if stop <= start:
        msg = f"Region at {where} has STOP <= START ({chrom}:{start}-{stop})"
        raise RegionParseError(msg)
    if period < 1:
        msg = f"Region at {where} has PERIOD < 1"
        raise RegionParseError(msg)

    # Optional trailing columns: ncopy then name, or a bare name
    name = ""
    if len(fields) >= NAMED_REGION_COLUMNS:
        name = fields[5]
    elif len(fields) == NAMED_REGION_COLUMNS - 1:
        try:
            float(fields[4])
        except ValueError:
            name = fields[4]

    return Region(chrom, start, stop, period, name)


def read_regions(
    path: str | Path,
    max_regions: int | None = None,
    chrom: str | None = None,
) -> list[Region]:
    """
    Load STR regions from a whitespace-delimited file.

    Each record is `chrom start stop period [ncopy] [name]` with 0-based,
    half-open coordinates. Blank lines, `#` comments and track/browser lines
    are skipped.

    Args:
        path: Region file.
        max_regions: Stop after this many regions (None for no cap).
        chrom: Only keep regions on this chromosome.

    Raises:
        RegionParseError: If any kept record is malformed.
        ValueError: If max_regions is negative.
    """
    path = Path(path)
    if max_regions is not None and max_regions < 0:
        msg = f"max_regions must be non-negative, got {max_regions}"
        raise ValueError(msg)

    regions: list[Region] = []
    logger.info(f"Reading region file {path}")
    with path.open() as fh:
        for line_no, raw in enumerate(fh, start=1):
            if max_regions is not None and len(regions) >= max_regions:
                logger.debug(f"Reached region cap of {max_regions}; ignoring the rest of {path}")
                break
            line = raw.strip()
            if not line or line.startswith(HEADER_PREFIXES):
                continue
            fields = line.split()
            if chrom is not None and fields[0] != chrom:
                continue
            regions.append(_parse_region_line(fields, path, line_no))

    logger.info(f"Region file contains {len(regions)} regions")
    return regions


# ------------------------------- ORDERING ---------------------------------- #


def order_regions(regions: list[Region]) -> None:
    """Sort regions in place by (chrom, start, stop). The sort is stable."""
    regions.sort()


def order_regions_by_chrom(
    regions: list[Region],
    chrom_order: dict[str, int],
) -> list[list[Region]]:
    """
    Sort regions and bucket them per chromosome using the caller's ranking.

    `chrom_order` maps chromosome names to ranks 0..n-1 (typically the order of
    the alignment header). The result holds n buckets, some possibly empty.
    """
    ranks = sorted(chrom_order.values())
    if ranks != list(range(len(ranks))):
        msg = f"Chromosome ranks must be 0..{len(ranks) - 1}, got {ranks}"
        raise RegionParseError(msg)

    buckets: list[list[Region]] = [[] for _ in ranks]
    for region in sorted(regions):
        rank = chrom_order.get(region.chrom)
        if rank is None:
            msg = f"Region {region} lies on chromosome {region.chrom!r}, which has no rank"
            raise RegionParseError(msg)
        buckets[rank].append(region)
    return buckets


def group_overlapping_regions(regions: Iterable[Region]) -> list[RegionGroup]:
    """Fold overlapping same-chromosome regions into RegionGroups."""
    groups: list[RegionGroup] = []
    for region in sorted(regions):
        if groups and groups[-1].overlaps(region):
            groups[-1].add_region(region)
        else:
            groups.append(RegionGroup(region))
    logger.debug(f"Grouped regions into {len(groups)} non-overlapping windows")
    return groups

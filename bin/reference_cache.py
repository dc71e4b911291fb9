"""
Single-slot reference sequence cache.

Regions are processed in chromosome-sorted order, so holding one chromosome's
sequence at a time and reloading only on chromosome change is enough.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

import pysam
from loguru import logger

FASTA_SUFFIXES = (".fa", ".fasta", ".fa.gz", ".fasta.gz")


class ReferenceCacheError(RuntimeError):
    """A chromosome sequence could not be resolved or the cache was misused."""


class SequenceSource(Protocol):
    def __call__(self, chrom: str) -> str: ...


class FastaDirectorySource:
    """Resolve `<chrom>.fa` (or .fasta, optionally gzipped) inside a directory."""

    def __init__(self, fasta_dir: str | Path) -> None:
        self.fasta_dir = Path(fasta_dir)
        if not self.fasta_dir.is_dir():
            msg = f"FASTA directory does not exist: {self.fasta_dir}"
            raise ReferenceCacheError(msg)

    def path_for(self, chrom: str) -> Path:
        for suffix in FASTA_SUFFIXES:
            candidate = self.fasta_dir / f"{chrom}{suffix}"
            if candidate.exists():
                return candidate
        msg = f"No FASTA file for chromosome {chrom!r} in {self.fasta_dir}"
        raise ReferenceCacheError(msg)

    def __call__(self, chrom: str) -> str:
        path = self.path_for(chrom)
        with pysam.FastxFile(str(path)) as fh:
            for entry in fh:
                return entry.sequence or ""
        msg = f"FASTA file {path} contains no sequence"
        raise ReferenceCacheError(msg)


class IndexedFastaSource:
    """Fetch whole chromosomes from a single faidx-indexed FASTA."""

    def __init__(self, fasta_path: str | Path) -> None:
        self.fasta_path = str(fasta_path)

    def __call__(self, chrom: str) -> str:
        try:
            with pysam.FastaFile(self.fasta_path) as fasta:
                return fasta.fetch(chrom)
        except (KeyError, ValueError, OSError) as e:
            msg = f"Unable to fetch {chrom!r} from {self.fasta_path}: {e}"
            raise ReferenceCacheError(msg) from e


def open_reference_source(path: str | Path) -> SequenceSource:
    """A directory means one FASTA per chromosome; anything else is an indexed FASTA."""
    if Path(path).is_dir():
        return FastaDirectorySource(path)
    return IndexedFastaSource(path)


class ReferenceCache:
    """Holds exactly one chromosome's sequence, reloaded lazily by `ensure`."""

    def __init__(self, source: SequenceSource) -> None:
        self._source = source
        self._chrom: str | None = None
        self._sequence: str | None = None
        self.loads = 0

    @property
    def chrom(self) -> str | None:
        return self._chrom

    @property
    def sequence(self) -> str:
        if self._sequence is None:
            msg = "Reference sequence requested before any chromosome was loaded"
            raise ReferenceCacheError(msg)
        return self._sequence

    def ensure(self, chrom: str) -> str:
        """Make `chrom` the cached chromosome and return its sequence."""
        if chrom != self._chrom:
            logger.info(f"Reading reference sequence for {chrom}")
            # Drop the old buffer first so two chromosomes never coexist
            self._sequence = None
            self._chrom = None
            sequence = self._source(chrom).upper()
            self._sequence = sequence
            self._chrom = chrom
            self.loads += 1
            logger.debug(f"Loaded {len(sequence):,} bp for {chrom}")
        return self.sequence

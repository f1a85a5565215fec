"""
Read ID frequency analysis and singleton filtering.

Two strategies produce the same result:

- ``count_read_ids`` + ``filter_singletons``: one pass into a hash table,
  memory proportional to the number of distinct read IDs.
- ``external_sort_singletons``: sorted spill runs on disk merged with a
  k-way merge, then a scan over consecutive equal IDs. Memory is bounded
  by ``run_size``.

A read ID seen exactly once is a singleton and goes forward to chunking;
every ID seen more than once is excluded entirely and reported.
"""

import heapq
import itertools
import os
import tempfile
from collections import Counter
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union

from .errors import SourceIOError
from .logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_RUN_SIZE = 5_000_000


@dataclass
class FrequencyTable:
    """Read ID -> occurrence count over the whole input"""
    counts: Counter = field(default_factory=Counter)
    entries: int = 0

    def __len__(self) -> int:
        return len(self.counts)

    def __getitem__(self, read_id: str) -> int:
        return self.counts[read_id]


@dataclass(frozen=True)
class DedupResult:
    """Singletons (sorted) plus the report of duplicated read IDs"""
    singletons: Tuple[str, ...]
    duplicates: Dict[str, int]
    entries: int

    @property
    def duplicate_entries(self) -> int:
        """Total occurrences of duplicated IDs, all of which are excluded"""
        return sum(self.duplicates.values())

    def sample_duplicates(self, n: int = 10) -> List[Tuple[str, int]]:
        return sorted(self.duplicates.items())[:n]

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_entries": self.entries,
            "singletons": len(self.singletons),
            "duplicated_ids": len(self.duplicates),
            "duplicate_entries": self.duplicate_entries,
        }


def iter_clean_ids(read_ids: Iterable[str]) -> Iterator[str]:
    """Strip whitespace and drop blank entries; I/O failures become SourceIOError."""
    try:
        for raw in read_ids:
            read_id = raw.strip()
            if read_id:
                yield read_id
    except SourceIOError:
        raise
    except OSError as e:
        raise SourceIOError(f"Failed while reading read IDs: {e}", cause=e) from e


def count_read_ids(read_ids: Iterable[str]) -> FrequencyTable:
    """Single streaming pass over ``read_ids``; empty input gives an empty table."""
    table = FrequencyTable()
    counts = table.counts
    entries = 0
    for read_id in iter_clean_ids(read_ids):
        counts[read_id] += 1
        entries += 1
    table.entries = entries
    logger.debug("Counted %d entries, %d distinct read IDs", entries, len(counts))
    return table


def filter_singletons(table: FrequencyTable) -> DedupResult:
    """Split a frequency table into sorted singletons and a duplicate report."""
    singletons = []
    duplicates = {}
    for read_id, count in table.counts.items():
        if count == 1:
            singletons.append(read_id)
        elif count > 1:
            duplicates[read_id] = count
    singletons.sort()
    return DedupResult(
        singletons=tuple(singletons),
        duplicates=duplicates,
        entries=table.entries,
    )


def _spill_run(buffer: List[str], work_dir: str, index: int) -> str:
    path = os.path.join(work_dir, f"run_{index:05d}.txt")
    buffer.sort()
    with open(path, "w") as f:
        for read_id in buffer:
            f.write(read_id)
            f.write("\n")
    return path


def _read_run(handle) -> Iterator[str]:
    for line in handle:
        yield line.rstrip("\n")


def external_sort_singletons(
    read_ids: Iterable[str],
    run_size: int = DEFAULT_RUN_SIZE,
    tmp_dir: Optional[Union[str, Path]] = None,
) -> DedupResult:
    """
    Sort-based deduplication with bounded memory.

    Read IDs are buffered up to ``run_size``, sorted and spilled to
    temporary run files; the runs are merged and consecutive equal IDs
    are grouped to find singletons and duplicate counts.
    """
    if run_size <= 0:
        raise ValueError("run_size must be positive")

    entries = 0
    singletons: List[str] = []
    duplicates: Dict[str, int] = {}

    with tempfile.TemporaryDirectory(prefix=".podsplit_sort_", dir=tmp_dir) as work_dir:
        runs: List[str] = []
        buffer: List[str] = []
        for read_id in iter_clean_ids(read_ids):
            buffer.append(read_id)
            entries += 1
            if len(buffer) >= run_size:
                runs.append(_spill_run(buffer, work_dir, len(runs)))
                buffer = []

        with ExitStack() as stack:
            if runs:
                if buffer:
                    runs.append(_spill_run(buffer, work_dir, len(runs)))
                    buffer = []
                handles = [stack.enter_context(open(p)) for p in runs]
                merged = heapq.merge(*(_read_run(h) for h in handles))
                logger.debug("Merging %d sorted runs", len(runs))
            else:
                buffer.sort()
                merged = iter(buffer)

            for read_id, group in itertools.groupby(merged):
                count = sum(1 for _ in group)
                if count == 1:
                    singletons.append(read_id)
                else:
                    duplicates[read_id] = count

    return DedupResult(
        singletons=tuple(singletons),
        duplicates=duplicates,
        entries=entries,
    )

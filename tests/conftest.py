"""Shared fixtures: an in-memory read store and an isolated environment"""

import os
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

import pytest

from podsplit.errors import ExtractionError
from podsplit.store import ReadSource


class MemorySource(ReadSource):
    """
    Read store backed by a list of IDs.

    ``extract`` writes one read ID per line. Faults are keyed by output
    file name, e.g. ``source.timeout_on.add("sample_chunk001.txt")``.
    """

    extension = "txt"

    def __init__(self, read_ids: Iterable[str], name: str = "sample"):
        self.read_ids = list(read_ids)
        self.name = name
        self.timeout_on = set()
        self.fail_on = set()
        self.drop_on = set()
        self.duplicate_on = set()
        self.empty_on = set()
        self.extract_calls: List[str] = []
        self.iterations = 0
        self.checked = False

    def check(self) -> None:
        self.checked = True

    def iter_read_ids(self) -> Iterator[str]:
        self.iterations += 1
        return iter(self.read_ids)

    def extract(self, read_ids, output_path: Path, timeout: Optional[float] = None) -> None:
        output_path = Path(output_path)
        self.extract_calls.append(output_path.name)
        if output_path.name in self.timeout_on:
            raise ExtractionError(
                f"pod5 subset timed out after {timeout:g}s writing {output_path.name}",
                timeout=timeout,
            )
        if output_path.name in self.fail_on:
            raise ExtractionError(f"pod5 subset failed writing {output_path.name}", exit_code=1)
        if output_path.name in self.empty_on:
            return

        ids = list(read_ids)
        if output_path.name in self.drop_on:
            ids = ids[:-1]
        if output_path.name in self.duplicate_on:
            ids = ids + ids[:1]
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text("".join(f"{i}\n" for i in ids))

    def read_output_ids(self, output_path: Path) -> List[str]:
        return [line for line in Path(output_path).read_text().splitlines() if line]


def make_ids(n: int, prefix: str = "read") -> List[str]:
    return [f"{prefix}-{i:06d}" for i in range(n)]


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """No user config, no PODSPLIT_* or SLURM variables, cwd in tmp_path."""
    for key in list(os.environ):
        if key.startswith("PODSPLIT_") or key.startswith("SLURM_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def source():
    """Ten distinct reads plus two duplicated IDs (one twice, one three times)"""
    ids = make_ids(10) + ["dup-a", "dup-a", "dup-b", "dup-b", "dup-b"]
    return MemorySource(ids)


@pytest.fixture
def out_dir(tmp_path):
    return tmp_path / "chunks"

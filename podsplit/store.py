"""
Read sources: listing read IDs and extracting subsets into new files.

``ReadSource`` is the capability the partitioner needs from a backing
store. ``Pod5Source`` provides it for a POD5 file: read IDs are streamed
with the ``pod5`` Python package, subsets are written by the
``pod5 subset`` command so each extraction can be bounded by a timeout.
"""

import csv
import re
import shlex
import subprocess
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Union

from .errors import ExtractionError, SourceIOError
from .logging_config import get_logger

logger = get_logger(__name__)

try:
    import pod5
    HAS_POD5 = True
except ImportError:
    HAS_POD5 = False

# pod5 subset can exit 0 and still report problems on its output streams
ERROR_MARKERS = re.compile(r"error|duplicate|segmentation", re.IGNORECASE)


class ReadSource(ABC):
    """Backing store of reads addressed by read ID"""

    #: Base name used for chunk file names
    name: str = "reads"

    #: Extension of the artifacts produced by ``extract``
    extension: str = "pod5"

    @abstractmethod
    def iter_read_ids(self) -> Iterator[str]:
        """Stream every read ID in the store, duplicates included."""

    @abstractmethod
    def extract(
        self,
        read_ids: Iterable[str],
        output_path: Path,
        timeout: Optional[float] = None,
    ) -> None:
        """Write the reads with ``read_ids`` into a new file at ``output_path``."""

    @abstractmethod
    def read_output_ids(self, output_path: Path) -> List[str]:
        """Read back the IDs stored in a previously extracted file."""


def require_pod5() -> None:
    if not HAS_POD5:
        raise SourceIOError(
            "The pod5 package is required to read POD5 files",
            suggestions=["pip install pod5"],
        )


def iter_pod5_read_ids(path: Union[str, Path]) -> Iterator[str]:
    """Yield the read IDs of a POD5 file in storage order."""
    require_pod5()
    path = Path(path)
    if not path.is_file():
        raise SourceIOError(f"POD5 file not found: {path}", path=str(path))

    try:
        with pod5.Reader(path) as reader:
            for batch in reader.read_batches():
                for read_id in batch.read_ids:
                    yield str(read_id)
    except (OSError, RuntimeError, ValueError) as e:
        raise SourceIOError(f"Cannot read POD5 file {path}: {e}", path=str(path), cause=e) from e


class Pod5Source(ReadSource):
    """A single POD5 file, subset with the ``pod5`` command line tool"""

    extension = "pod5"

    def __init__(self, path: Union[str, Path], pod5_bin: str = "pod5"):
        self.path = Path(path)
        self.pod5_bin = pod5_bin
        self.name = self.path.name[:-len(".pod5")] if self.path.name.endswith(".pod5") else self.path.stem

    def __repr__(self) -> str:
        return f"Pod5Source({str(self.path)!r})"

    def check(self) -> None:
        """Fail early if the input cannot be opened."""
        if not self.path.exists():
            raise SourceIOError(f"Input POD5 not found: {self.path}", path=str(self.path))
        if not self.path.is_file():
            raise SourceIOError(f"Input POD5 is not a file: {self.path}", path=str(self.path))
        require_pod5()

    def iter_read_ids(self) -> Iterator[str]:
        return iter_pod5_read_ids(self.path)

    def read_output_ids(self, output_path: Path) -> List[str]:
        return list(iter_pod5_read_ids(output_path))

    def build_subset_command(self, mapping_csv: Path, output_dir: Path) -> List[str]:
        return [
            self.pod5_bin, "subset", str(self.path),
            "--csv", str(mapping_csv),
            "--output", str(output_dir),
        ]

    def extract(
        self,
        read_ids: Iterable[str],
        output_path: Path,
        timeout: Optional[float] = None,
    ) -> None:
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory(prefix=".podsplit_map_", dir=output_path.parent) as work:
            mapping = Path(work) / f"{output_path.stem}.csv"
            write_subset_mapping(mapping, output_path.name, read_ids)

            cmd = self.build_subset_command(mapping, output_path.parent)
            command = " ".join(shlex.quote(c) for c in cmd)
            logger.debug("Running: %s", command)

            try:
                result = subprocess.run(
                    cmd,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    timeout=timeout,
                )
            except subprocess.TimeoutExpired as e:
                raise ExtractionError(
                    f"pod5 subset timed out after {timeout:g}s writing {output_path.name}",
                    command=command,
                    timeout=timeout,
                    cause=e,
                ) from e
            except OSError as e:
                raise ExtractionError(
                    f"Cannot run {self.pod5_bin}: {e}",
                    command=command,
                    cause=e,
                    suggestions=["Check that the pod5 command line tools are on PATH"],
                ) from e

        output = result.stdout or ""
        if result.returncode != 0:
            raise ExtractionError(
                f"pod5 subset failed with exit code {result.returncode} writing {output_path.name}",
                command=command,
                exit_code=result.returncode,
                stderr=output,
            )
        if ERROR_MARKERS.search(output):
            raise ExtractionError(
                f"pod5 subset reported a problem writing {output_path.name}",
                command=command,
                exit_code=result.returncode,
                stderr=output,
                suggestions=["Check whether the input file has issues"],
            )


def write_subset_mapping(path: Path, target: str, read_ids: Iterable[str]) -> int:
    """Write the ``target,read_id`` CSV consumed by ``pod5 subset --csv``."""
    n = 0
    with open(path, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(["target", "read_id"])
        for read_id in read_ids:
            writer.writerow([target, read_id])
            n += 1
    return n

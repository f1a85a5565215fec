"""
Chunk materialization: extract each chunk from the source and verify it.

Each chunk is an independent, idempotent unit of work. Extraction writes
into a staging directory inside the output directory; the artifact is
moved to its final name only after verification, so a file under the
final name always comes from a completed extraction. Re-running over an
output directory skips every chunk whose artifact still verifies.
"""

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .errors import ExtractionError, PodsplitError, VerificationError
from .logging_config import get_logger
from .parallel import TaskResult, parallel_map
from .partition import Chunk, ChunkStatus
from .store import ReadSource
from .timing import Timer, estimate_remaining, format_duration

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 600
STAGING_DIR = ".staging"


@dataclass
class MaterializeReport:
    """Outcome of materializing a list of chunks"""
    chunks: List[Chunk]
    failures: List[Tuple[int, PodsplitError]] = field(default_factory=list)
    duration: float = 0.0

    @property
    def success(self) -> bool:
        return not self.failures and all(c.status is ChunkStatus.VERIFIED for c in self.chunks)

    @property
    def failed_ordinals(self) -> List[int]:
        return sorted(ordinal for ordinal, _ in self.failures)

    @property
    def verified(self) -> List[Chunk]:
        return [c for c in self.chunks if c.status is ChunkStatus.VERIFIED]

    @property
    def skipped(self) -> List[Chunk]:
        return [c for c in self.chunks if c.skipped]

    @property
    def warnings(self) -> List[Chunk]:
        return [c for c in self.chunks if c.warning]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "chunks": len(self.chunks),
            "verified": len(self.verified),
            "skipped": len(self.skipped),
            "warnings": len(self.warnings),
            "failed_ordinals": self.failed_ordinals,
            "duration_seconds": round(self.duration, 2),
        }


class ChunkMaterializer:
    """
    Extracts chunks from a ReadSource into ``output_dir`` and verifies them.

    Verification re-reads the artifact's read IDs. Duplicates or a missing
    artifact are hard failures. A count that differs from the chunk size
    without duplicates is a soft mismatch: logged as a warning, or a hard
    failure when ``strict`` is set.
    """

    def __init__(
        self,
        source: ReadSource,
        output_dir: Union[str, Path],
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        strict: bool = False,
        keep_staging: bool = False,
    ):
        self.source = source
        self.output_dir = Path(output_dir)
        self.timeout = timeout
        self.strict = strict
        self.keep_staging = keep_staging

    @property
    def staging_dir(self) -> Path:
        return self.output_dir / STAGING_DIR

    def output_path(self, chunk: Chunk) -> Path:
        return self.output_dir / chunk.output_name

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self, chunk: Chunk, path: Optional[Path] = None, exact: bool = False) -> Optional[str]:
        """
        Verify an artifact against ``chunk``.

        Returns a warning message for a soft mismatch, None when perfect.
        Raises VerificationError for hard failures (and soft ones in strict
        mode). With ``exact`` the artifact must hold exactly the chunk's
        read IDs, which is how a leftover file from another partition is
        told apart from a completed one.
        """
        path = Path(path) if path is not None else self.output_path(chunk)
        if not path.is_file():
            raise VerificationError(
                f"Chunk {chunk.ordinal:03d}: no output file {path.name}",
                ordinal=chunk.ordinal,
                path=str(path),
                expected=chunk.size,
            )

        try:
            ids = self.source.read_output_ids(path)
        except PodsplitError as e:
            raise VerificationError(
                f"Chunk {chunk.ordinal:03d}: cannot read {path.name}: {e}",
                ordinal=chunk.ordinal,
                path=str(path),
                expected=chunk.size,
                cause=e,
            ) from e

        total = len(ids)
        unique = len(set(ids))
        chunk.total = total
        chunk.unique = unique

        if unique != total:
            raise VerificationError(
                f"Chunk {chunk.ordinal:03d}: {total:,} reads but only {unique:,} unique",
                ordinal=chunk.ordinal,
                path=str(path),
                expected=chunk.size,
                actual=total,
                unique=unique,
            )

        if exact and set(ids) != set(chunk.read_ids):
            raise VerificationError(
                f"Chunk {chunk.ordinal:03d}: {path.name} does not hold this chunk's reads",
                ordinal=chunk.ordinal,
                path=str(path),
                expected=chunk.size,
                actual=total,
                unique=unique,
            )

        if total != chunk.size:
            message = (
                f"Chunk {chunk.ordinal:03d}: {total:,} reads, expected {chunk.size:,}"
            )
            if self.strict:
                raise VerificationError(
                    message + " (strict mode)",
                    ordinal=chunk.ordinal,
                    path=str(path),
                    expected=chunk.size,
                    actual=total,
                    unique=unique,
                    soft=True,
                )
            return message

        return None

    # ------------------------------------------------------------------
    # Single chunk
    # ------------------------------------------------------------------

    def materialize(self, chunk: Chunk) -> Chunk:
        """
        Bring one chunk to ``verified``, or mark it ``failed`` and raise.

        An existing artifact that verifies is kept and the chunk is skipped.
        One that fails verification or holds a different set of read IDs
        is deleted and extracted again.
        """
        final_path = self.output_path(chunk)

        if final_path.exists():
            try:
                chunk.warning = self.verify(chunk, final_path, exact=True)
            except VerificationError as e:
                logger.warning("%s; removing it and extracting again", e)
                final_path.unlink()
                chunk.total = chunk.unique = None
            else:
                chunk.skipped = True
                chunk.transition(ChunkStatus.VERIFIED)
                logger.info(
                    "Chunk %03d: %s already verified (%s reads), skipping",
                    chunk.ordinal, final_path.name, f"{chunk.total:,}",
                )
                return chunk

        chunk.transition(ChunkStatus.EXTRACTING)
        staged_path = self.staging_dir / chunk.output_name
        staged_path.parent.mkdir(parents=True, exist_ok=True)
        if staged_path.exists():
            staged_path.unlink()

        with Timer(f"chunk {chunk.ordinal:03d}") as timer:
            try:
                self.source.extract(chunk.read_ids, staged_path, timeout=self.timeout)
                chunk.warning = self.verify(chunk, staged_path)
            except (ExtractionError, VerificationError) as e:
                e.details.setdefault("ordinal", chunk.ordinal)
                e.details.setdefault("expected", chunk.size)
                chunk.error = str(e)
                chunk.transition(ChunkStatus.FAILED)
                if staged_path.exists() and not self.keep_staging:
                    staged_path.unlink()
                raise

        os.replace(staged_path, final_path)
        chunk.duration = timer.duration
        chunk.transition(ChunkStatus.VERIFIED)
        if chunk.warning:
            logger.warning("%s (extraction succeeded, count differs)", chunk.warning)
        return chunk

    # ------------------------------------------------------------------
    # All chunks
    # ------------------------------------------------------------------

    def run(
        self,
        chunks: List[Chunk],
        workers: int = 1,
        progress: Optional[Callable[[Chunk, int, int], None]] = None,
    ) -> MaterializeReport:
        """
        Materialize ``chunks``.

        With one worker chunks run in order and the first hard failure
        stops the run; later chunks stay pending. With more workers every
        chunk is attempted and the run fails if any chunk failed.
        """
        self.output_dir.mkdir(parents=True, exist_ok=True)
        report = MaterializeReport(chunks=chunks)

        with Timer("materialize") as timer:
            try:
                if workers > 1 and len(chunks) > 1:
                    self._run_concurrent(chunks, workers, report, progress)
                else:
                    self._run_sequential(chunks, report, progress, timer)
            finally:
                self._cleanup_staging()

        report.duration = timer.duration
        return report

    def _run_sequential(self, chunks, report, progress, timer) -> None:
        total = len(chunks)
        for done, chunk in enumerate(chunks, start=1):
            try:
                self.materialize(chunk)
            except (ExtractionError, VerificationError) as e:
                report.failures.append((chunk.ordinal, e))
                logger.error("Chunk %03d/%03d FAILED: %s", done, total, e)
                if progress:
                    progress(chunk, done, total)
                return

            if progress:
                progress(chunk, done, total)

            if done % 5 == 0 and done < total:
                remaining = estimate_remaining(timer.elapsed(), done, total)
                if remaining >= 60:
                    logger.info("Est. remaining: %s", format_duration(remaining))

    def _run_concurrent(self, chunks, workers, report, progress) -> None:
        logger.info("Materializing %d chunks with %d workers", len(chunks), workers)

        def on_done(result: TaskResult, done: int, total: int) -> None:
            if progress:
                progress(by_ordinal[result.task_id], done, total)

        by_ordinal = {c.ordinal: c for c in chunks}
        batch = parallel_map(
            self.materialize,
            chunks,
            workers=workers,
            key=lambda c: c.ordinal,
            progress_callback=on_done,
        )

        for result in batch.failures():
            if isinstance(result.error, PodsplitError):
                report.failures.append((result.task_id, result.error))
                logger.error("Chunk %03d FAILED: %s", result.task_id, result.error)
            else:
                raise result.error

    def _cleanup_staging(self) -> None:
        if self.keep_staging or not self.staging_dir.exists():
            return
        shutil.rmtree(self.staging_dir, ignore_errors=True)

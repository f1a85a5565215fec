"""
Deduplicating chunk partitioner: the ``split`` pipeline.

    [1/3] Analyze read ID frequencies (full pass, nothing extracted yet)
    [2/3] Partition singleton read IDs into batches
    [3/3] Extract and verify each chunk

followed by a final scan of the output directory and a JSON manifest.

Usage:
    from podsplit.splitter import SplitSettings, run_split

    settings = SplitSettings(input_path=Path("SAM-seq5.pod5"), batch_size=1000000)
    result = run_split(settings)
    if not result.success:
        print("failed at chunk", result.report.failed_ordinals)
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from .config import Config, get_slurm_info
from .errors import ConfigError, PodsplitError, SourceIOError
from .frequency import (
    DEFAULT_RUN_SIZE,
    DedupResult,
    count_read_ids,
    external_sort_singletons,
    filter_singletons,
)
from .io import save_json
from .logging_config import get_logger
from .materialize import DEFAULT_TIMEOUT, ChunkMaterializer, MaterializeReport
from .partition import DEFAULT_BATCH_SIZE, Chunk, partition, validate_batch_size
from .store import Pod5Source, ReadSource
from .timing import StepTimer

logger = get_logger(__name__)


@dataclass
class SplitSettings:
    """Parameters of one split run"""
    input_path: Path = Path("input.pod5")
    batch_size: int = DEFAULT_BATCH_SIZE
    output_dir: Path = Path("chunks")
    timeout: Optional[float] = DEFAULT_TIMEOUT
    strict: bool = False
    workers: int = 1
    keep_temp: bool = False
    external_sort: bool = False
    run_size: int = DEFAULT_RUN_SIZE
    pod5_bin: str = "pod5"
    write_manifest: bool = True

    @classmethod
    def from_config(cls, config: Config, **overrides: Any) -> "SplitSettings":
        """Defaults from ``config``; non-None ``overrides`` win."""
        values = {
            "batch_size": config.get("split.batch_size", DEFAULT_BATCH_SIZE),
            "output_dir": Path(config.get("split.output_dir", "chunks")),
            "timeout": config.get("split.timeout", DEFAULT_TIMEOUT),
            "strict": bool(config.get("split.strict", False)),
            "workers": config.get("split.workers", 1),
            "keep_temp": bool(config.get("split.keep_temp", False)),
            "pod5_bin": config.get("tools.pod5", "pod5"),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        if "input_path" in values:
            values["input_path"] = Path(values["input_path"])
        values["output_dir"] = Path(values["output_dir"])
        return cls(**values)

    def validate(self) -> "SplitSettings":
        """Raise ConfigError for invalid values before any work starts."""
        self.batch_size = validate_batch_size(self.batch_size)

        if self.timeout is not None:
            try:
                self.timeout = float(self.timeout)
            except (TypeError, ValueError):
                raise ConfigError(
                    f"Timeout must be a number of seconds, got {self.timeout!r}",
                    config_key="split.timeout", value=self.timeout,
                ) from None
            if self.timeout <= 0:
                raise ConfigError(
                    f"Timeout must be positive, got {self.timeout:g}",
                    config_key="split.timeout", value=self.timeout,
                )

        if not isinstance(self.workers, int) or isinstance(self.workers, bool) or self.workers < 1:
            raise ConfigError(
                f"Workers must be a positive integer, got {self.workers!r}",
                config_key="split.workers", value=self.workers,
            )

        if self.external_sort and self.run_size <= 0:
            raise ConfigError(
                f"Run size must be positive, got {self.run_size}",
                config_key="run_size", value=self.run_size,
            )

        if self.output_dir.exists() and not self.output_dir.is_dir():
            raise ConfigError(
                f"Output path exists and is not a directory: {self.output_dir}",
                config_key="split.output_dir", value=self.output_dir,
            )
        return self


@dataclass
class FinalVerification:
    """Scan of every chunk file present in the output directory"""
    files: List[Dict[str, Any]] = field(default_factory=list)
    total_reads: int = 0
    expected_reads: int = 0
    missing: int = 0
    unexpected: int = 0
    issues: List[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.issues

    def to_dict(self) -> Dict[str, Any]:
        return {
            "clean": self.clean,
            "files": self.files,
            "total_reads": self.total_reads,
            "expected_reads": self.expected_reads,
            "missing_from_output": self.missing,
            "unexpected_in_output": self.unexpected,
            "issues": self.issues,
        }


@dataclass
class SplitResult:
    settings: SplitSettings
    dedup: DedupResult
    chunks: List[Chunk]
    report: MaterializeReport
    final: Optional[FinalVerification] = None
    manifest_path: Optional[Path] = None
    timings: Dict[str, float] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        """Every chunk verified and the chunks together hold exactly the singletons"""
        return self.report.success and self.final is not None and self.final.clean

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "input": str(self.settings.input_path),
            "output_dir": str(self.settings.output_dir),
            "batch_size": self.settings.batch_size,
            "strict": self.settings.strict,
            "created": datetime.now().isoformat(),
            "reads": self.dedup.to_dict(),
            "materialize": self.report.to_dict(),
            "chunks": [c.to_dict() for c in self.chunks],
            "timings": self.timings,
        }
        slurm = get_slurm_info()
        if slurm:
            result["slurm"] = slurm
        if self.report.failures:
            result["errors"] = [err.to_dict() for _, err in self.report.failures]
        if self.final is not None:
            result["final_verification"] = self.final.to_dict()
        return result


def analyze(source: ReadSource, settings: SplitSettings) -> DedupResult:
    """Full pass over the source: singletons plus duplicate report."""
    if settings.external_sort:
        logger.info("Sorting read IDs externally (run size %s)", f"{settings.run_size:,}")
        settings.output_dir.mkdir(parents=True, exist_ok=True)
        return external_sort_singletons(
            source.iter_read_ids(),
            run_size=settings.run_size,
            tmp_dir=settings.output_dir,
        )
    return filter_singletons(count_read_ids(source.iter_read_ids()))


def verify_outputs(
    source: ReadSource,
    output_dir: Union[str, Path],
    singletons: Sequence[str],
) -> FinalVerification:
    """
    Re-read every ``<name>_chunk*.<ext>`` file in ``output_dir``.

    Clean means every file is free of duplicates and the union of their
    read IDs is exactly the singleton set.
    """
    output_dir = Path(output_dir)
    final = FinalVerification(expected_reads=len(singletons))
    seen = set()

    pattern = f"{source.name}_chunk*.{source.extension}"
    for path in sorted(output_dir.glob(pattern)):
        try:
            ids = source.read_output_ids(path)
        except PodsplitError as e:
            final.issues.append(f"{path.name}: unreadable ({e})")
            continue

        unique = set(ids)
        entry = {
            "file": path.name,
            "size_bytes": path.stat().st_size,
            "total": len(ids),
            "unique": len(unique),
        }
        final.files.append(entry)
        final.total_reads += len(ids)

        if len(unique) != len(ids):
            final.issues.append(
                f"{path.name}: {len(ids):,} total, {len(unique):,} unique (duplicates)"
            )
        overlap = seen & unique
        if overlap:
            final.issues.append(f"{path.name}: {len(overlap):,} reads also in another chunk")
        seen |= unique

    expected = set(singletons)
    final.missing = len(expected - seen)
    final.unexpected = len(seen - expected)
    if final.missing:
        final.issues.append(f"{final.missing:,} singleton reads missing from output")
    if final.unexpected:
        final.issues.append(f"{final.unexpected:,} reads in output are not singletons")
    if final.total_reads != len(singletons):
        final.issues.append(
            f"Read count mismatch: {final.total_reads:,} in chunks, "
            f"{len(singletons):,} singletons"
        )
    return final


def manifest_path_for(output_dir: Path, base_name: str) -> Path:
    return Path(output_dir) / f"{base_name}_manifest.json"


def run_split(
    settings: SplitSettings,
    source: Optional[ReadSource] = None,
    progress: Optional[Callable[[Chunk, int, int], None]] = None,
) -> SplitResult:
    """
    Run the three split phases, then the final verification.

    Settings are validated first, so a bad batch size fails before the
    source is even opened. Source and configuration errors propagate;
    chunk failures are recorded on the returned report.
    """
    settings.validate()

    if source is None:
        source = Pod5Source(settings.input_path, pod5_bin=settings.pod5_bin)
        source.check()

    timer = StepTimer("split").start()

    timer.step("analyze")
    logger.info("[1/3] Analyzing read ID frequencies in %s", settings.input_path)
    try:
        dedup = analyze(source, settings)
    except SourceIOError:
        raise
    except OSError as e:
        raise SourceIOError(f"Cannot read {settings.input_path}: {e}", path=str(settings.input_path), cause=e) from e

    logger.info("  Total read entries: %s", f"{dedup.entries:,}")
    logger.info("  Reads appearing exactly once: %s", f"{len(dedup.singletons):,}")
    logger.info("  Reads excluded (appear >1 time): %s", f"{dedup.duplicate_entries:,}")
    if dedup.duplicates:
        logger.warning(
            "%s read IDs are duplicated (%s entries excluded)",
            f"{len(dedup.duplicates):,}", f"{dedup.duplicate_entries:,}",
        )
        for read_id, count in dedup.sample_duplicates(10):
            logger.info("    %s (appears %d times - excluded)", read_id, count)

    timer.step("partition")
    logger.info("[2/3] Creating batches of %s reads", f"{settings.batch_size:,}")
    chunks = partition(dedup.singletons, settings.batch_size, source.name, source.extension)
    logger.info("  Created %d chunks", len(chunks))

    timer.step("extract")
    logger.info("[3/3] Extracting reads into %s", settings.output_dir)
    materializer = ChunkMaterializer(
        source,
        settings.output_dir,
        timeout=settings.timeout,
        strict=settings.strict,
        keep_staging=settings.keep_temp,
    )
    report = materializer.run(chunks, workers=settings.workers, progress=progress)

    result = SplitResult(settings=settings, dedup=dedup, chunks=chunks, report=report)

    if report.success:
        timer.step("verify")
        result.final = verify_outputs(source, settings.output_dir, dedup.singletons)
        for issue in result.final.issues:
            logger.warning("Final verification: %s", issue)

    timer.finish()
    result.timings = timer.to_dict()

    if settings.write_manifest:
        settings.output_dir.mkdir(parents=True, exist_ok=True)
        result.manifest_path = manifest_path_for(settings.output_dir, source.name)
        save_json(result.manifest_path, result.to_dict())
        logger.debug("Manifest written: %s", result.manifest_path)

    return result

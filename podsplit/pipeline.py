"""
Pipeline stages around the split: FAST5 -> POD5 conversion, per-chunk
modification basecalling with dorado, SLURM array scripts, and
BAM -> FASTQ conversion.

All heavy lifting is done by the external tools; these functions build
their command lines, enforce restartability and check the outputs.
"""

import gzip
import os
import shlex
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from .config import Config
from .errors import ConfigError, ExternalToolError, SourceIOError
from .io import format_size
from .logging_config import get_logger
from .parallel import BatchResult, parallel_process_files
from .timing import Timer, format_duration

logger = get_logger(__name__)

try:
    import pysam
    HAS_PYSAM = True
except ImportError:
    HAS_PYSAM = False


def _quote(cmd: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(c)) for c in cmd)


# =============================================================================
# FAST5 -> POD5
# =============================================================================

def build_convert_command(
    fast5_dir: Path,
    output: Path,
    recursive: bool = True,
    pod5_bin: str = "pod5",
) -> List[str]:
    cmd = [pod5_bin, "convert", "fast5", str(fast5_dir), "--output", str(output)]
    if recursive:
        cmd.append("--recursive")
    return cmd


def convert_fast5(
    fast5_dir: Union[str, Path],
    output: Union[str, Path],
    recursive: bool = True,
    pod5_bin: str = "pod5",
) -> Path:
    """Convert a directory of FAST5 files into a single POD5 file."""
    fast5_dir = Path(fast5_dir)
    output = Path(output)
    if not fast5_dir.is_dir():
        raise SourceIOError(f"FAST5 directory not found: {fast5_dir}", path=str(fast5_dir))

    output.parent.mkdir(parents=True, exist_ok=True)
    cmd = build_convert_command(fast5_dir, output, recursive=recursive, pod5_bin=pod5_bin)
    logger.debug("Running: %s", _quote(cmd))

    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as e:
        raise ExternalToolError(f"Cannot run {pod5_bin}: {e}", tool="pod5", command=_quote(cmd), cause=e) from e

    if result.returncode != 0:
        raise ExternalToolError(
            f"pod5 convert fast5 failed with exit code {result.returncode}",
            tool="pod5",
            command=_quote(cmd),
            exit_code=result.returncode,
            stderr=result.stderr,
        )
    if not output.exists():
        raise ExternalToolError(f"pod5 convert produced no output: {output}", tool="pod5", command=_quote(cmd))

    logger.info("Conversion complete: %s (%s)", output, format_size(output.stat().st_size))
    return output


# =============================================================================
# Per-chunk basecalling
# =============================================================================

@dataclass
class BasecallSettings:
    """dorado invocation and output checks for one chunk"""
    model: str = "dna_r10.4.1_e8.2_400bps_sup@v5.2.0"
    models_directory: Optional[Path] = None
    modified_bases: List[str] = field(default_factory=lambda: ["6mA"])
    device: str = "cuda:all"
    no_trim: bool = True
    output_suffix: str = "sup_6mA"
    min_reads: int = 100000
    min_bytes: int = 100000000
    dorado_bin: str = "dorado"

    @classmethod
    def from_config(cls, config: Config, **overrides: Any) -> "BasecallSettings":
        values = {
            "model": config.get("basecalling.model"),
            "models_directory": config.get("basecalling.models_directory"),
            "modified_bases": config.get("basecalling.modified_bases", []),
            "device": config.get("basecalling.device"),
            "no_trim": bool(config.get("basecalling.no_trim", True)),
            "output_suffix": config.get("basecalling.output_suffix"),
            "min_reads": config.get("basecalling.min_reads", 0),
            "min_bytes": config.get("basecalling.min_bytes", 0),
            "dorado_bin": config.get("tools.dorado", "dorado"),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        values = {k: v for k, v in values.items() if v is not None}
        if isinstance(values.get("modified_bases"), str):
            values["modified_bases"] = [values["modified_bases"]]
        if values.get("models_directory") is not None:
            values["models_directory"] = Path(values["models_directory"]).expanduser()
        return cls(**values)


@dataclass
class BasecallResult:
    chunk: Path
    output: Path
    skipped: bool = False
    reads: int = 0
    size_bytes: int = 0
    duration: float = 0.0
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk": str(self.chunk),
            "output": str(self.output),
            "skipped": self.skipped,
            "reads": self.reads,
            "size_bytes": self.size_bytes,
            "duration_seconds": round(self.duration, 2),
            "warnings": self.warnings,
        }


def list_chunk_files(chunks_dir: Union[str, Path], extension: str = "pod5") -> List[Path]:
    """Chunk files in name order, which is ordinal order."""
    return sorted(Path(chunks_dir).glob(f"*.{extension.lstrip('.')}"))


def resolve_task_chunk(chunks_dir: Union[str, Path], task_id: Optional[int] = None) -> Path:
    """Map a 1-based array task id (default ``$SLURM_ARRAY_TASK_ID``) to its chunk file."""
    if task_id is None:
        env_value = os.environ.get("SLURM_ARRAY_TASK_ID")
        if env_value is None:
            raise ConfigError(
                "No task id given and SLURM_ARRAY_TASK_ID is not set",
                config_key="task_id",
                suggestions=["Pass --task-id N or run inside a SLURM array job"],
            )
        try:
            task_id = int(env_value)
        except ValueError:
            raise ConfigError(f"Invalid SLURM_ARRAY_TASK_ID: {env_value!r}", config_key="task_id") from None

    chunks = list_chunk_files(chunks_dir)
    if not chunks:
        raise SourceIOError(f"No POD5 chunks found in {chunks_dir}", path=str(chunks_dir))
    if not 1 <= task_id <= len(chunks):
        raise ConfigError(
            f"Task id {task_id} out of range: {len(chunks)} chunks in {chunks_dir}",
            config_key="task_id",
            value=task_id,
        )
    return chunks[task_id - 1]


def count_bam_reads(bam_path: Union[str, Path]) -> int:
    """Count records of an (unaligned) BAM file."""
    if not HAS_PYSAM:
        raise ExternalToolError("pysam is required to check BAM files", tool="pysam")
    try:
        with pysam.AlignmentFile(str(bam_path), "rb", check_sq=False) as bam:
            return sum(1 for _ in bam.fetch(until_eof=True))
    except (OSError, ValueError) as e:
        raise ExternalToolError(f"Cannot read BAM file {bam_path}: {e}", tool="pysam", cause=e) from e


def build_dorado_command(chunk_file: Path, settings: BasecallSettings) -> List[str]:
    cmd = [settings.dorado_bin, "basecaller"]
    if settings.models_directory:
        cmd.extend(["--models-directory", str(settings.models_directory)])
    for mod in settings.modified_bases:
        cmd.extend(["--modified-bases", mod])
    if settings.no_trim:
        cmd.append("--no-trim")
    cmd.extend(["-x", settings.device, settings.model, str(chunk_file)])
    return cmd


def basecall_output_path(chunk_file: Path, output_dir: Path, settings: BasecallSettings) -> Path:
    suffix = f"_{settings.output_suffix}" if settings.output_suffix else ""
    return Path(output_dir) / f"{Path(chunk_file).stem}{suffix}.bam"


def basecall_chunk(
    chunk_file: Union[str, Path],
    output_dir: Union[str, Path],
    settings: BasecallSettings,
    read_counter: Callable[[Path], int] = count_bam_reads,
) -> BasecallResult:
    """
    Basecall one chunk with dorado, skipping it if a valid BAM exists.

    A BAM is valid when it can be read and holds at least ``min_reads``
    records; an invalid one is removed and the chunk is processed again.
    """
    chunk_file = Path(chunk_file)
    output_dir = Path(output_dir)
    output = basecall_output_path(chunk_file, output_dir, settings)
    result = BasecallResult(chunk=chunk_file, output=output)

    if output.exists():
        try:
            reads = read_counter(output)
        except ExternalToolError as e:
            logger.warning("Existing BAM unreadable (%s); reprocessing", e)
        else:
            if reads >= settings.min_reads:
                logger.info("Valid BAM found with %s reads, skipping %s", f"{reads:,}", chunk_file.name)
                result.skipped = True
                result.reads = reads
                result.size_bytes = output.stat().st_size
                return result
            logger.warning("Existing BAM has only %s reads; reprocessing", f"{reads:,}")
        output.unlink()

    if not chunk_file.is_file():
        raise SourceIOError(f"Chunk file not found: {chunk_file}", path=str(chunk_file))

    output_dir.mkdir(parents=True, exist_ok=True)
    partial = output.with_name(output.name + ".partial")
    cmd = build_dorado_command(chunk_file, settings)
    logger.info("Basecalling %s -> %s", chunk_file.name, output.name)
    logger.debug("Running: %s > %s", _quote(cmd), partial)

    with Timer(f"basecall {chunk_file.name}") as timer:
        try:
            with open(partial, "wb") as out:
                proc = subprocess.run(cmd, stdout=out, stderr=subprocess.PIPE)
        except OSError as e:
            partial.unlink(missing_ok=True)
            raise ExternalToolError(
                f"Cannot run {settings.dorado_bin}: {e}", tool="dorado", command=_quote(cmd), cause=e
            ) from e

    if proc.returncode != 0:
        partial.unlink(missing_ok=True)
        raise ExternalToolError(
            f"Basecalling failed for {chunk_file.name} (exit code {proc.returncode})",
            tool="dorado",
            command=_quote(cmd),
            exit_code=proc.returncode,
            stderr=proc.stderr.decode("utf-8", errors="replace") if proc.stderr else None,
        )

    os.replace(partial, output)
    result.duration = timer.duration
    result.size_bytes = output.stat().st_size
    result.reads = read_counter(output)
    logger.info(
        "BAM is valid: %s reads, %s, elapsed %s",
        f"{result.reads:,}", format_size(result.size_bytes), format_duration(result.duration),
    )

    if result.reads < settings.min_reads:
        result.warnings.append(f"Fewer reads than expected ({result.reads:,})")
    if result.size_bytes < settings.min_bytes:
        result.warnings.append(f"File size is unusually small ({format_size(result.size_bytes)})")
    for warning in result.warnings:
        logger.warning("%s: %s", output.name, warning)

    return result


# =============================================================================
# SLURM array script
# =============================================================================

def generate_slurm_array_script(
    chunks_dir: Union[str, Path],
    output_dir: Union[str, Path],
    num_chunks: int,
    config: Config,
    job_name: str = "dorado_chunks",
    config_file: Optional[Union[str, Path]] = None,
    setup_commands: Sequence[str] = (),
    log_dir: str = "logs",
) -> str:
    """Render a SLURM array script with one task per chunk."""
    if num_chunks < 1:
        raise ConfigError("Cannot generate an array job for zero chunks", config_key="num_chunks", value=num_chunks)

    concurrency = config.get("slurm.concurrency")
    array = f"1-{num_chunks}" + (f"%{concurrency}" if concurrency else "")

    lines = [
        "#!/bin/bash",
        f"#SBATCH -J {job_name}",
    ]
    if config.get("slurm.account"):
        lines.append(f"#SBATCH -A {config.get('slurm.account')}")
    lines += [
        f"#SBATCH -p {config.get('slurm.partition')}",
        "#SBATCH --nodes=1",
        "#SBATCH --ntasks=1",
        f"#SBATCH --gres={config.get('slurm.gres')}",
        f"#SBATCH --cpus-per-task={config.get('slurm.cpus')}",
        f"#SBATCH --time={config.get('slurm.time')}",
        f"#SBATCH --mem={config.get('slurm.mem')}",
        f"#SBATCH --array={array}",
        f"#SBATCH -o {log_dir}/{job_name}_%A_%a.out",
        f"#SBATCH -e {log_dir}/{job_name}_%A_%a.err",
        "",
        f"# Generated: {datetime.now(timezone.utc).isoformat()}",
        f"# Chunks: {num_chunks} in {chunks_dir}",
        "",
        "set -euo pipefail",
        "",
    ]
    lines += list(setup_commands)
    if setup_commands:
        lines.append("")

    cmd = ["podsplit"]
    if config_file:
        cmd += ["--config", str(config_file)]
    cmd += ["basecall", str(chunks_dir), str(output_dir)]
    lines += [
        'echo "Job ${SLURM_ARRAY_JOB_ID} task ${SLURM_ARRAY_TASK_ID} on $(hostname)"',
        "nvidia-smi || true",
        _quote(cmd) + ' --task-id "${SLURM_ARRAY_TASK_ID}"',
        "",
    ]
    return "\n".join(lines)


# =============================================================================
# BAM -> FASTQ
# =============================================================================

def build_fastq_command(bam: Path, tags: Sequence[str], samtools_bin: str = "samtools") -> List[str]:
    cmd = [samtools_bin, "fastq"]
    if tags:
        cmd.extend(["-T", ",".join(tags)])
    cmd.append(str(bam))
    return cmd


def bam_to_fastq_file(
    bam: Path,
    output_dir: Path,
    tags: Sequence[str] = ("MM", "ML"),
    samtools_bin: str = "samtools",
) -> Path:
    """``samtools fastq -T MM,ML <bam> | gzip > <output_dir>/<name>.fastq.gz``"""
    bam = Path(bam)
    output = Path(output_dir) / f"{bam.stem}.fastq.gz"
    partial = output.with_name(output.name + ".partial")
    cmd = build_fastq_command(bam, tags, samtools_bin)
    logger.info("Converting %s...", bam.name)
    logger.debug("Running: %s", _quote(cmd))

    # stderr goes to a file so a chatty samtools cannot block the stdout pipe
    with tempfile.TemporaryFile() as err:
        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=err)
        except OSError as e:
            raise ExternalToolError(
                f"Cannot run {samtools_bin}: {e}", tool="samtools", command=_quote(cmd), cause=e
            ) from e

        try:
            with gzip.open(partial, "wb") as out:
                shutil.copyfileobj(proc.stdout, out)
        finally:
            proc.stdout.close()
            returncode = proc.wait()
        err.seek(0)
        stderr = err.read().decode("utf-8", errors="replace")

    if returncode != 0:
        partial.unlink(missing_ok=True)
        raise ExternalToolError(
            f"samtools fastq failed for {bam.name} (exit code {returncode})",
            tool="samtools",
            command=_quote(cmd),
            exit_code=returncode,
            stderr=stderr,
        )

    os.replace(partial, output)
    return output


def bam_to_fastq(
    bam_dir: Union[str, Path],
    output_dir: Union[str, Path] = "fastq",
    tags: Sequence[str] = ("MM", "ML"),
    workers: int = 4,
    samtools_bin: str = "samtools",
) -> BatchResult:
    """Convert every ``*.bam`` in ``bam_dir`` to gzipped FASTQ in parallel."""
    bam_dir = Path(bam_dir)
    if not bam_dir.is_dir():
        raise SourceIOError(f"BAM directory not found: {bam_dir}", path=str(bam_dir))

    bams = sorted(bam_dir.glob("*.bam"))
    if not bams:
        raise SourceIOError(f"No BAM files in {bam_dir}", path=str(bam_dir))

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    logger.info("Converting %d BAM files with %d workers", len(bams), workers)

    return parallel_process_files(
        bams,
        lambda bam: bam_to_fastq_file(bam, output_dir, tags=tags, samtools_bin=samtools_bin),
        workers=workers,
    )

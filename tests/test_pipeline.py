"""Tests for conversion, basecalling, SLURM script and FASTQ stages"""

import gzip
from types import SimpleNamespace

import pytest

from podsplit import pipeline
from podsplit.config import Config
from podsplit.errors import ConfigError, ExternalToolError, SourceIOError
from podsplit.pipeline import (
    BasecallSettings,
    bam_to_fastq,
    basecall_chunk,
    basecall_output_path,
    build_convert_command,
    build_dorado_command,
    build_fastq_command,
    generate_slurm_array_script,
    list_chunk_files,
    resolve_task_chunk,
)


@pytest.fixture
def chunks_dir(tmp_path):
    d = tmp_path / "pod5_chunks"
    d.mkdir()
    for i in range(3):
        (d / f"SAM-seq5_chunk{i:03d}.pod5").write_bytes(b"pod5")
    (d / "SAM-seq5_manifest.json").write_text("{}")
    return d


# =============================================================================
# Conversion
# =============================================================================

def test_convert_command():
    """Test the pod5 convert command line"""
    cmd = build_convert_command("fast5", "out.pod5")
    assert cmd == ["pod5", "convert", "fast5", "fast5", "--output", "out.pod5", "--recursive"]


def test_convert_missing_directory(tmp_path):
    """Test conversion of a missing FAST5 directory"""
    with pytest.raises(SourceIOError):
        pipeline.convert_fast5(tmp_path / "nope", tmp_path / "out.pod5")


def test_convert_failure(monkeypatch, tmp_path):
    """Test a failing pod5 convert raises ExternalToolError"""
    (tmp_path / "fast5").mkdir()
    monkeypatch.setattr(
        pipeline.subprocess, "run",
        lambda cmd, **kw: SimpleNamespace(returncode=1, stderr="bad file"),
    )
    with pytest.raises(ExternalToolError) as exc_info:
        pipeline.convert_fast5(tmp_path / "fast5", tmp_path / "out.pod5")
    assert exc_info.value.details["exit_code"] == 1


# =============================================================================
# Array task -> chunk
# =============================================================================

def test_list_chunk_files_in_order(chunks_dir):
    """Test chunk files are listed in ordinal order"""
    assert [p.name for p in list_chunk_files(chunks_dir)] == [
        "SAM-seq5_chunk000.pod5",
        "SAM-seq5_chunk001.pod5",
        "SAM-seq5_chunk002.pod5",
    ]


def test_task_id_is_one_based(chunks_dir):
    """Test array task 1 maps to chunk 000"""
    assert resolve_task_chunk(chunks_dir, 1).name == "SAM-seq5_chunk000.pod5"
    assert resolve_task_chunk(chunks_dir, 3).name == "SAM-seq5_chunk002.pod5"


def test_task_id_from_environment(monkeypatch, chunks_dir):
    """Test the task id is read from SLURM_ARRAY_TASK_ID"""
    monkeypatch.setenv("SLURM_ARRAY_TASK_ID", "2")
    assert resolve_task_chunk(chunks_dir).name == "SAM-seq5_chunk001.pod5"


@pytest.mark.parametrize("task_id", [0, 4])
def test_task_id_out_of_range(chunks_dir, task_id):
    """Test task ids outside the chunk range"""
    with pytest.raises(ConfigError, match="out of range"):
        resolve_task_chunk(chunks_dir, task_id)


def test_task_id_missing(chunks_dir):
    """Test a missing task id raises ConfigError"""
    with pytest.raises(ConfigError):
        resolve_task_chunk(chunks_dir)


def test_no_chunks(tmp_path):
    """Test task resolution with no chunk files"""
    with pytest.raises(SourceIOError):
        resolve_task_chunk(tmp_path, 1)


# =============================================================================
# Basecalling
# =============================================================================

def test_dorado_command():
    """Test the dorado basecaller command line"""
    settings = BasecallSettings(models_directory="/models", modified_bases=["6mA", "5mCG_5hmCG"])
    cmd = build_dorado_command("c.pod5", settings)

    assert cmd == [
        "dorado", "basecaller",
        "--models-directory", "/models",
        "--modified-bases", "6mA",
        "--modified-bases", "5mCG_5hmCG",
        "--no-trim",
        "-x", "cuda:all",
        "dna_r10.4.1_e8.2_400bps_sup@v5.2.0",
        "c.pod5",
    ]


def test_basecall_settings_from_config():
    """Test BasecallSettings from config with overrides"""
    config = Config({"basecalling": {"modified_bases": "5mCG_5hmCG", "min_reads": 10}})
    settings = BasecallSettings.from_config(config, device="cuda:0")

    assert settings.modified_bases == ["5mCG_5hmCG"]
    assert settings.min_reads == 10
    assert settings.device == "cuda:0"
    assert settings.output_suffix == "sup_6mA"


def test_output_path(tmp_path):
    """Test the BAM name carries the output suffix"""
    path = basecall_output_path(tmp_path / "x_chunk001.pod5", tmp_path / "bam", BasecallSettings())
    assert path.name == "x_chunk001_sup_6mA.bam"


def test_valid_existing_bam_is_skipped(monkeypatch, chunks_dir, tmp_path):
    """Test a BAM with enough reads is not basecalled again"""
    out = tmp_path / "bam"
    out.mkdir()
    chunk = chunks_dir / "SAM-seq5_chunk000.pod5"
    bam = basecall_output_path(chunk, out, BasecallSettings())
    bam.write_bytes(b"bam")

    def no_run(*args, **kwargs):
        raise AssertionError("dorado should not run")

    monkeypatch.setattr(pipeline.subprocess, "run", no_run)
    result = basecall_chunk(chunk, out, BasecallSettings(min_reads=5), read_counter=lambda p: 5)

    assert result.skipped
    assert result.reads == 5


def test_short_existing_bam_is_redone(monkeypatch, chunks_dir, tmp_path):
    """Test a BAM with too few reads is replaced"""
    out = tmp_path / "bam"
    out.mkdir()
    chunk = chunks_dir / "SAM-seq5_chunk000.pod5"
    bam = basecall_output_path(chunk, out, BasecallSettings())
    bam.write_bytes(b"old")

    def fake_run(cmd, stdout, stderr):
        stdout.write(b"new bam data")
        return SimpleNamespace(returncode=0, stderr=b"")

    monkeypatch.setattr(pipeline.subprocess, "run", fake_run)
    counts = iter([3, 10])
    result = basecall_chunk(
        chunk, out, BasecallSettings(min_reads=5, min_bytes=0), read_counter=lambda p: next(counts)
    )

    assert not result.skipped
    assert result.reads == 10
    assert bam.read_bytes() == b"new bam data"
    assert result.warnings == []
    assert not list(out.glob("*.partial"))


def test_small_output_gives_warnings(monkeypatch, chunks_dir, tmp_path):
    """Test low read count and size give warnings"""
    def fake_run(cmd, stdout, stderr):
        stdout.write(b"tiny")
        return SimpleNamespace(returncode=0, stderr=b"")

    monkeypatch.setattr(pipeline.subprocess, "run", fake_run)
    result = basecall_chunk(
        chunks_dir / "SAM-seq5_chunk002.pod5", tmp_path / "bam",
        BasecallSettings(min_reads=100, min_bytes=1000), read_counter=lambda p: 7,
    )

    assert len(result.warnings) == 2


def test_dorado_failure_removes_partial(monkeypatch, chunks_dir, tmp_path):
    """Test a dorado failure leaves no partial BAM"""
    def fake_run(cmd, stdout, stderr):
        stdout.write(b"partial")
        return SimpleNamespace(returncode=139, stderr=b"CUDA error")

    monkeypatch.setattr(pipeline.subprocess, "run", fake_run)
    out = tmp_path / "bam"
    with pytest.raises(ExternalToolError) as exc_info:
        basecall_chunk(chunks_dir / "SAM-seq5_chunk000.pod5", out, BasecallSettings(), read_counter=lambda p: 0)

    assert exc_info.value.details["exit_code"] == 139
    assert "CUDA error" in exc_info.value.details["stderr"]
    assert list(out.iterdir()) == []


# =============================================================================
# SLURM
# =============================================================================

def test_slurm_script(tmp_path):
    """Test the SLURM array script contents"""
    config = Config({"slurm": {"account": "lab0", "concurrency": 2}})
    script = generate_slurm_array_script(
        "/data/pod5_chunks", "/data/bam_chunks", 11, config,
        config_file="/data/podsplit.yaml",
        setup_commands=["module load cuda"],
    )

    assert script.startswith("#!/bin/bash\n")
    assert "#SBATCH --array=1-11%2" in script
    assert "#SBATCH -A lab0" in script
    assert "#SBATCH --gres=gpu:4" in script
    assert "module load cuda" in script
    assert (
        'podsplit --config /data/podsplit.yaml basecall /data/pod5_chunks /data/bam_chunks '
        '--task-id "${SLURM_ARRAY_TASK_ID}"'
    ) in script


def test_slurm_script_without_account():
    """Test the script omits the account line when unset"""
    script = generate_slurm_array_script("c", "b", 3, Config())
    assert "#SBATCH -A" not in script
    assert "#SBATCH --array=1-3%1" in script


def test_slurm_script_needs_chunks():
    """Test a script for zero chunks is rejected"""
    with pytest.raises(ConfigError):
        generate_slurm_array_script("c", "b", 0, Config())


# =============================================================================
# FASTQ
# =============================================================================

def test_fastq_command():
    """Test the samtools fastq command line"""
    assert build_fastq_command("a.bam", ["MM", "ML"]) == ["samtools", "fastq", "-T", "MM,ML", "a.bam"]
    assert build_fastq_command("a.bam", []) == ["samtools", "fastq", "a.bam"]


def test_bam_to_fastq(monkeypatch, tmp_path):
    """Test BAMs are converted to gzipped FASTQ"""
    bam_dir = tmp_path / "bam"
    bam_dir.mkdir()
    for name in ["a", "b"]:
        (bam_dir / f"{name}.bam").write_text(f"@{name}\nACGT\n+\nIIII\n")

    monkeypatch.setattr(pipeline, "build_fastq_command", lambda bam, tags, samtools_bin: ["cat", str(bam)])
    batch = bam_to_fastq(bam_dir, tmp_path / "fastq", workers=2)

    assert batch.failed == 0
    with gzip.open(tmp_path / "fastq" / "a.fastq.gz", "rt") as f:
        assert f.read() == "@a\nACGT\n+\nIIII\n"


def test_bam_to_fastq_failure(monkeypatch, tmp_path):
    """Test a failing conversion is reported and leaves no output"""
    bam_dir = tmp_path / "bam"
    bam_dir.mkdir()
    (bam_dir / "a.bam").write_text("x")

    monkeypatch.setattr(
        pipeline, "build_fastq_command",
        lambda bam, tags, samtools_bin: ["sh", "-c", "echo broken >&2; exit 3"],
    )
    batch = bam_to_fastq(bam_dir, tmp_path / "fastq", workers=1)

    assert batch.failed == 1
    error = batch.failures()[0].error
    assert isinstance(error, ExternalToolError)
    assert "broken" in error.details["stderr"]
    assert list((tmp_path / "fastq").iterdir()) == []


def test_bam_to_fastq_empty_directory(tmp_path):
    """Test a directory without BAMs"""
    with pytest.raises(SourceIOError):
        bam_to_fastq(tmp_path)

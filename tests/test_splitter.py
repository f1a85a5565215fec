"""End-to-end tests of the split pipeline against an in-memory source"""

import json

import pytest

from conftest import MemorySource, make_ids
from podsplit.config import Config
from podsplit.errors import ConfigError
from podsplit.splitter import (
    SplitSettings,
    manifest_path_for,
    run_split,
    verify_outputs,
)


def settings_for(tmp_path, **kwargs):
    kwargs.setdefault("batch_size", 4)
    return SplitSettings(
        input_path=tmp_path / "sample.pod5",
        output_dir=tmp_path / "chunks",
        **kwargs
    )


def test_run_split_end_to_end(tmp_path, source):
    """Test a full split writes exactly the singletons"""
    result = run_split(settings_for(tmp_path), source=source)

    assert result.success
    assert result.dedup.entries == 15
    assert len(result.dedup.singletons) == 10
    assert result.dedup.duplicates == {"dup-a": 2, "dup-b": 3}
    assert [c.size for c in result.chunks] == [4, 4, 2]

    assert result.final is not None
    assert result.final.clean
    assert result.final.total_reads == 10

    written = []
    for path in sorted((tmp_path / "chunks").glob("sample_chunk*.txt")):
        written.extend(path.read_text().splitlines())
    assert written == list(result.dedup.singletons)
    assert not any(read_id.startswith("dup-") for read_id in written)


def test_manifest_written(tmp_path, source):
    """Test the run manifest contents"""
    result = run_split(settings_for(tmp_path), source=source)

    path = manifest_path_for(tmp_path / "chunks", "sample")
    assert result.manifest_path == path
    manifest = json.loads(path.read_text())
    assert manifest["batch_size"] == 4
    assert manifest["reads"]["singletons"] == 10
    assert manifest["reads"]["duplicate_entries"] == 5
    assert manifest["materialize"]["success"] is True
    assert [c["file"] for c in manifest["chunks"]] == [
        "sample_chunk000.txt",
        "sample_chunk001.txt",
        "sample_chunk002.txt",
    ]
    assert manifest["final_verification"]["clean"] is True
    assert "slurm" not in manifest


def test_manifest_records_slurm_job(tmp_path, source, monkeypatch):
    """Test the manifest carries the SLURM job it ran in"""
    monkeypatch.setenv("SLURM_JOB_ID", "4242")
    monkeypatch.setenv("SLURM_JOB_NAME", "pod5_split")
    result = run_split(settings_for(tmp_path), source=source)

    manifest = json.loads(result.manifest_path.read_text())
    assert manifest["slurm"]["job_id"] == "4242"
    assert manifest["slurm"]["job_name"] == "pod5_split"


def test_bad_batch_size_fails_before_any_work(tmp_path, source):
    """Test batch size 0 fails before the source is read"""
    with pytest.raises(ConfigError):
        run_split(settings_for(tmp_path, batch_size=0), source=source)

    assert source.iterations == 0
    assert source.extract_calls == []
    assert not (tmp_path / "chunks").exists()


def test_output_path_that_is_a_file_rejected(tmp_path, source):
    """Test an output path that is a regular file"""
    (tmp_path / "chunks").write_text("not a directory")
    with pytest.raises(ConfigError):
        run_split(settings_for(tmp_path), source=source)


def test_empty_singleton_set_is_not_an_error(tmp_path):
    """Test a source with only duplicates gives zero chunks"""
    source = MemorySource(["x", "x", "y", "y"])
    result = run_split(settings_for(tmp_path), source=source)

    assert result.success
    assert result.chunks == []
    assert source.extract_calls == []
    assert result.final.clean


def test_failure_recorded_and_final_check_skipped(tmp_path, source):
    """Test a chunk failure is recorded in the manifest"""
    source.timeout_on.add("sample_chunk001.txt")
    result = run_split(settings_for(tmp_path), source=source)

    assert not result.success
    assert result.report.failed_ordinals == [1]
    assert result.final is None

    manifest = json.loads(result.manifest_path.read_text())
    assert manifest["errors"][0]["details"]["ordinal"] == 1
    assert manifest["errors"][0]["code"] == "EXTRACTION_ERROR"


def test_resume_after_failure(tmp_path, source):
    """Test a rerun after a failure extracts only the remaining chunks"""
    source.timeout_on.add("sample_chunk001.txt")
    run_split(settings_for(tmp_path), source=source)

    source.timeout_on.clear()
    source.extract_calls.clear()
    result = run_split(settings_for(tmp_path), source=source)

    assert result.success
    assert source.extract_calls == ["sample_chunk001.txt", "sample_chunk002.txt"]
    assert result.final.clean


def test_rerun_with_other_batch_size(tmp_path):
    """Test a second split with a smaller batch size into the same directory"""
    source = MemorySource(make_ids(10))
    run_split(settings_for(tmp_path, batch_size=4), source=source)
    source.extract_calls.clear()

    result = run_split(settings_for(tmp_path, batch_size=3), source=source)

    assert result.success
    assert result.report.skipped == []
    assert source.extract_calls == [c.output_name for c in result.chunks]
    assert result.final.clean
    assert result.final.total_reads == 10


def test_leftover_chunk_fails_final_check(tmp_path):
    """Test a chunk file left by an earlier run with more chunks fails the run"""
    source = MemorySource(make_ids(10))
    run_split(settings_for(tmp_path, batch_size=3), source=source)

    result = run_split(settings_for(tmp_path, batch_size=4), source=source)

    assert result.report.success
    assert not result.success
    assert not result.final.clean
    assert any(issue.startswith("sample_chunk003.txt") for issue in result.final.issues)

    manifest = json.loads(result.manifest_path.read_text())
    assert manifest["final_verification"]["clean"] is False


def test_external_sort_gives_same_chunks(tmp_path, source):
    """Test external sort and counting give the same chunks"""
    in_memory = run_split(settings_for(tmp_path, write_manifest=False), source=source)
    sorted_run = run_split(
        SplitSettings(
            input_path=tmp_path / "sample.pod5",
            output_dir=tmp_path / "sorted",
            batch_size=4,
            external_sort=True,
            run_size=3,
            write_manifest=False,
        ),
        source=source,
    )

    assert sorted_run.dedup.singletons == in_memory.dedup.singletons
    assert [list(c.read_ids) for c in sorted_run.chunks] == [list(c.read_ids) for c in in_memory.chunks]


def test_concurrent_split(tmp_path):
    """Test a split with several workers"""
    source = MemorySource(make_ids(30))
    result = run_split(settings_for(tmp_path, batch_size=7, workers=3), source=source)

    assert result.success
    assert len(result.chunks) == 5
    assert result.final.clean


def test_verify_outputs_detects_overlap_and_missing(tmp_path, source):
    """Test final verification finds overlap, missing and stray reads"""
    out = tmp_path / "chunks"
    out.mkdir()
    (out / "sample_chunk000.txt").write_text("read-000000\nread-000001\n")
    (out / "sample_chunk001.txt").write_text("read-000001\nstray\n")

    final = verify_outputs(source, out, ["read-000000", "read-000001", "read-000002"])

    assert not final.clean
    assert final.total_reads == 4
    assert final.missing == 1
    assert final.unexpected == 1
    assert any("also in another chunk" in issue for issue in final.issues)


# =============================================================================
# Settings
# =============================================================================

def test_settings_from_config_defaults():
    """Test SplitSettings defaults from config"""
    settings = SplitSettings.from_config(Config())

    assert settings.batch_size == 1000000
    assert str(settings.output_dir) == "chunks"
    assert settings.timeout == 600
    assert settings.strict is False
    assert settings.workers == 1


def test_settings_overrides_win_over_config():
    """Test explicit settings win over config values"""
    config = Config({"split": {"batch_size": 50, "timeout": 30}})
    settings = SplitSettings.from_config(config, batch_size=10, timeout=None, output_dir="out")

    assert settings.batch_size == 10
    assert settings.timeout == 30
    assert str(settings.output_dir) == "out"


def test_settings_validate_rejects_bad_values(tmp_path):
    """Test invalid timeout, workers and run size"""
    with pytest.raises(ConfigError):
        settings_for(tmp_path, timeout=0).validate()
    with pytest.raises(ConfigError):
        settings_for(tmp_path, workers=0).validate()
    with pytest.raises(ConfigError):
        settings_for(tmp_path, external_sort=True, run_size=0).validate()

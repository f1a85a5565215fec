"""Tests for batching singletons into chunks"""

import pytest

from conftest import make_ids
from podsplit.errors import ConfigError
from podsplit.partition import (
    Chunk,
    ChunkStatus,
    chunk_filename,
    partition,
    validate_batch_size,
)


def test_chunk_filename_is_zero_padded():
    """Test chunk file names use a three digit ordinal"""
    assert chunk_filename("SAM-seq5", 0) == "SAM-seq5_chunk000.pod5"
    assert chunk_filename("SAM-seq5", 42, "pod5") == "SAM-seq5_chunk042.pod5"
    assert chunk_filename("x", 7, ".txt") == "x_chunk007.txt"


def test_partition_sizes():
    """2,500 singletons at 1,000 per chunk: 1,000 / 1,000 / 500"""
    singletons = make_ids(2500)
    chunks = partition(singletons, 1000, "sample")

    assert [c.size for c in chunks] == [1000, 1000, 500]
    assert [c.ordinal for c in chunks] == [0, 1, 2]
    assert [c.output_name for c in chunks] == [
        "sample_chunk000.pod5",
        "sample_chunk001.pod5",
        "sample_chunk002.pod5",
    ]
    assert all(c.status is ChunkStatus.PENDING for c in chunks)


def test_partition_sizes_at_production_scale():
    """2,500,000 singletons at 1,000,000 per chunk: 1,000,000 / 1,000,000 / 500,000"""
    chunks = partition(range(2_500_000), 1_000_000, "SAM-seq5")

    assert [c.size for c in chunks] == [1_000_000, 1_000_000, 500_000]
    assert [c.output_name for c in chunks] == [
        "SAM-seq5_chunk000.pod5",
        "SAM-seq5_chunk001.pod5",
        "SAM-seq5_chunk002.pod5",
    ]
    assert chunks[1].read_ids[0] == 1_000_000
    assert chunks[2].read_ids[-1] == 2_499_999


@pytest.mark.parametrize("batch_size", [1, 2, 3, 7, 10, 11, 100])
def test_concatenated_chunks_reproduce_singletons(batch_size):
    """Test chunks concatenate back to the singleton list"""
    singletons = make_ids(10)
    chunks = partition(singletons, batch_size, "s")

    rebuilt = [read_id for c in chunks for read_id in c.read_ids]
    assert rebuilt == singletons
    assert all(c.size <= batch_size for c in chunks)
    assert all(c.size == batch_size for c in chunks[:-1])


def test_partition_is_deterministic():
    """Test the same input gives the same chunks"""
    singletons = make_ids(25)
    first = partition(singletons, 4, "s")
    second = partition(singletons, 4, "s")
    assert [(c.ordinal, list(c.read_ids), c.output_name) for c in first] == \
        [(c.ordinal, list(c.read_ids), c.output_name) for c in second]


def test_empty_singletons_give_no_chunks():
    """Test no singletons gives no chunks"""
    assert partition((), 1000, "s") == []


@pytest.mark.parametrize("batch_size", [0, -1, -1000000])
def test_non_positive_batch_size_rejected(batch_size):
    """Test zero and negative batch sizes raise ConfigError"""
    with pytest.raises(ConfigError) as exc_info:
        partition(make_ids(3), batch_size, "s")
    assert exc_info.value.details["config_key"] == "split.batch_size"


@pytest.mark.parametrize("batch_size", ["abc", 1.5, None, True])
def test_non_integer_batch_size_rejected(batch_size):
    """Test non-integer batch sizes raise ConfigError"""
    with pytest.raises(ConfigError):
        validate_batch_size(batch_size)


def test_batch_size_from_string():
    """Test a numeric string batch size is accepted"""
    assert validate_batch_size("1000000") == 1000000


# =============================================================================
# Chunk status
# =============================================================================

def test_chunk_transitions():
    """Test the pending to extracting to verified path"""
    chunk = Chunk(ordinal=0, read_ids=["a"], output_name="s_chunk000.pod5")
    chunk.transition(ChunkStatus.EXTRACTING)
    chunk.transition(ChunkStatus.VERIFIED)
    assert chunk.status is ChunkStatus.VERIFIED


def test_terminal_status_cannot_change():
    """Test a failed chunk cannot move again"""
    chunk = Chunk(ordinal=3, read_ids=["a"], output_name="s_chunk003.pod5")
    chunk.transition(ChunkStatus.FAILED)
    with pytest.raises(ValueError, match="Chunk 003"):
        chunk.transition(ChunkStatus.EXTRACTING)


def test_chunk_to_dict():
    """Test Chunk serialization"""
    chunk = Chunk(ordinal=1, read_ids=["a", "b"], output_name="s_chunk001.pod5")
    chunk.total = 2
    chunk.unique = 2
    data = chunk.to_dict()

    assert data["ordinal"] == 1
    assert data["file"] == "s_chunk001.pod5"
    assert data["expected"] == 2
    assert data["status"] == "pending"
    assert data["total"] == 2
    assert "error" not in data

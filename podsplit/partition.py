"""Fixed-size batching of singleton read IDs into chunks."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .errors import ConfigError

DEFAULT_BATCH_SIZE = 1000000


class ChunkStatus(Enum):
    PENDING = "pending"
    EXTRACTING = "extracting"
    VERIFIED = "verified"
    FAILED = "failed"


# Allowed moves; verified and failed are terminal until the artifact is deleted
_TRANSITIONS = {
    ChunkStatus.PENDING: {ChunkStatus.EXTRACTING, ChunkStatus.VERIFIED, ChunkStatus.FAILED},
    ChunkStatus.EXTRACTING: {ChunkStatus.VERIFIED, ChunkStatus.FAILED},
    ChunkStatus.VERIFIED: set(),
    ChunkStatus.FAILED: set(),
}


def chunk_filename(base_name: str, ordinal: int, extension: str = "pod5") -> str:
    """``<base>_chunk<NNN>.<ext>`` with a three digit zero padded ordinal"""
    return f"{base_name}_chunk{ordinal:03d}.{extension.lstrip('.')}"


@dataclass
class Chunk:
    """A contiguous slice of the singleton read IDs bound for one output file"""
    ordinal: int
    read_ids: Sequence[str]
    output_name: str
    status: ChunkStatus = ChunkStatus.PENDING
    skipped: bool = False
    total: Optional[int] = None
    unique: Optional[int] = None
    warning: Optional[str] = None
    error: Optional[str] = None
    duration: float = 0.0

    @property
    def size(self) -> int:
        return len(self.read_ids)

    def transition(self, status: ChunkStatus) -> None:
        if status not in _TRANSITIONS[self.status]:
            raise ValueError(
                f"Chunk {self.ordinal:03d}: cannot move from "
                f"{self.status.value} to {status.value}"
            )
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "ordinal": self.ordinal,
            "file": self.output_name,
            "expected": self.size,
            "status": self.status.value,
            "skipped": self.skipped,
        }
        if self.total is not None:
            result["total"] = self.total
            result["unique"] = self.unique
        if self.warning:
            result["warning"] = self.warning
        if self.error:
            result["error"] = self.error
        if self.duration:
            result["duration_seconds"] = round(self.duration, 2)
        return result


def validate_batch_size(batch_size: Any) -> int:
    """Return ``batch_size`` as a positive int or raise ConfigError"""
    if isinstance(batch_size, bool):
        raise ConfigError("Batch size must be an integer", config_key="split.batch_size", value=batch_size)
    try:
        value = int(batch_size)
    except (TypeError, ValueError):
        raise ConfigError(
            f"Batch size must be an integer, got {batch_size!r}",
            config_key="split.batch_size",
            value=batch_size,
        ) from None
    if value != batch_size and not isinstance(batch_size, str):
        raise ConfigError(
            f"Batch size must be an integer, got {batch_size!r}",
            config_key="split.batch_size",
            value=batch_size,
        )
    if value <= 0:
        raise ConfigError(
            f"Batch size must be positive, got {value}",
            config_key="split.batch_size",
            value=value,
            suggestions=["Use the default of 1,000,000 reads per chunk"],
        )
    return value


def partition(
    singletons: Sequence[str],
    batch_size: int,
    base_name: str,
    extension: str = "pod5",
) -> List[Chunk]:
    """
    Cut ``singletons`` into consecutive chunks of at most ``batch_size``.

    Chunk i holds ``singletons[i*batch_size:(i+1)*batch_size]``; only the
    last chunk may be short. No singletons means no chunks.
    """
    batch_size = validate_batch_size(batch_size)
    return [
        Chunk(
            ordinal=ordinal,
            read_ids=singletons[start:start + batch_size],
            output_name=chunk_filename(base_name, ordinal, extension),
        )
        for ordinal, start in enumerate(range(0, len(singletons), batch_size))
    ]

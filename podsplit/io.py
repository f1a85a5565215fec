"""
podsplit I/O Utilities - manifest files and safe writes

Usage:
    from podsplit.io import save_json, atomic_write

    save_json(output_dir / "SAM-seq5_manifest.json", manifest)

    with atomic_write("ids.txt") as f:
        f.write(...)
"""

import json
import os
import tempfile
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Generator, Optional, Union


def _json_default(obj):
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


def save_json(
    path: Union[str, Path],
    data: Any,
    indent: int = 2,
    encoding: str = "utf-8",
) -> None:
    """Atomically save data to a JSON file."""
    content = json.dumps(data, indent=indent, default=_json_default)
    with atomic_write(path, mode="w", encoding=encoding) as f:
        f.write(content)


@contextmanager
def atomic_write(
    path: Union[str, Path],
    mode: str = "w",
    encoding: Optional[str] = "utf-8",
    suffix: str = ".tmp"
) -> Generator:
    """
    Context manager for atomic file writes.

    Writes to a temporary file and renames on success.
    The original file is preserved if an error occurs.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    # Create temp file in same directory for atomic rename
    fd, tmp_path = tempfile.mkstemp(
        suffix=suffix,
        dir=path.parent,
        prefix=f".{path.name}."
    )

    try:
        if "b" in mode:
            with os.fdopen(fd, mode) as f:
                yield f
        else:
            with os.fdopen(fd, mode, encoding=encoding) as f:
                yield f

        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def format_size(size_bytes: float) -> str:
    """Format byte size to human readable (like ``du -h``)"""
    for unit in ["B", "K", "M", "G", "T"]:
        if abs(size_bytes) < 1024:
            return f"{size_bytes:.1f}{unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f}P"

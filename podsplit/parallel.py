"""
podsplit Parallel Processing Utilities

Thread pool helpers for running independent units of work (chunk
extractions, BAM conversions) concurrently while keeping per-task
success/failure bookkeeping.

Usage:
    from podsplit.parallel import parallel_map, parallel_process_files

    batch = parallel_map(materialize, chunks, workers=4, key=lambda c: c.ordinal)
    for failure in batch.failures():
        print(failure.task_id, failure.error)
"""

import os
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, TypeVar, Union

T = TypeVar("T")
R = TypeVar("R")


def get_default_workers() -> int:
    """Get default number of workers based on CPU count."""
    cpu_count = os.cpu_count() or 1
    # Leave some cores free for system
    return max(1, cpu_count - 1)


# =============================================================================
# Result Types
# =============================================================================

@dataclass
class TaskResult:
    """Result of a parallel task execution."""
    task_id: Any
    success: bool
    result: Any = None
    error: Optional[Exception] = None
    duration: float = 0.0

    def __bool__(self) -> bool:
        return self.success


@dataclass
class BatchResult:
    """Result of a batch parallel operation."""
    total: int
    succeeded: int
    failed: int
    results: List[TaskResult]
    duration: float

    def failures(self) -> List[TaskResult]:
        return [r for r in self.results if not r.success]

    def successes(self) -> List[TaskResult]:
        return [r for r in self.results if r.success]


def _run_task(func: Callable, item: Any, task_id: Any) -> TaskResult:
    """Run one task, capturing its exception and duration."""
    start = time.time()
    try:
        result = func(item)
        return TaskResult(
            task_id=task_id,
            success=True,
            result=result,
            duration=time.time() - start
        )
    except Exception as e:
        return TaskResult(
            task_id=task_id,
            success=False,
            error=e,
            duration=time.time() - start
        )


# =============================================================================
# Parallel Map
# =============================================================================

def parallel_map(
    func: Callable[[T], R],
    items: Iterable[T],
    workers: Optional[int] = None,
    key: Optional[Callable[[T], Any]] = None,
    progress_callback: Optional[Callable[[TaskResult, int, int], None]] = None,
) -> BatchResult:
    """
    Apply ``func`` to every item on a thread pool.

    A failing item never stops the others; its exception is kept on the
    corresponding TaskResult. Results are returned in input order.

    Args:
        func: Function to apply
        items: Items to process
        workers: Number of threads (default: auto)
        key: Maps an item to its task id (default: input index)
        progress_callback: Called with (result, completed, total)
    """
    items_list = list(items)
    total = len(items_list)
    start_time = time.time()

    if total == 0:
        return BatchResult(total=0, succeeded=0, failed=0, results=[], duration=0.0)

    workers = min(workers or get_default_workers(), total)
    ordered: List[Optional[TaskResult]] = [None] * total

    with ThreadPoolExecutor(max_workers=workers) as executor:
        future_to_idx = {
            executor.submit(_run_task, func, item, key(item) if key else idx): idx
            for idx, item in enumerate(items_list)
        }

        completed = 0
        for future in as_completed(future_to_idx):
            idx = future_to_idx[future]
            ordered[idx] = future.result()
            completed += 1
            if progress_callback:
                progress_callback(ordered[idx], completed, total)

    results = [r for r in ordered if r is not None]
    succeeded = sum(1 for r in results if r.success)
    return BatchResult(
        total=total,
        succeeded=succeeded,
        failed=total - succeeded,
        results=results,
        duration=time.time() - start_time,
    )


def parallel_process_files(
    files: List[Union[str, Path]],
    processor: Callable[[Path], R],
    workers: Optional[int] = None,
    progress_callback: Optional[Callable[[TaskResult, int, int], None]] = None,
) -> BatchResult:
    """
    Process files in parallel; task ids are the file paths.

    Args:
        files: List of file paths
        processor: Function to process each file
        workers: Number of workers
        progress_callback: Called with (result, completed, total)
    """
    paths = [Path(f) for f in files]
    return parallel_map(
        processor,
        paths,
        workers=workers,
        key=str,
        progress_callback=progress_callback,
    )

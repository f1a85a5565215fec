"""
podsplit Timing Utilities

Usage:
    from podsplit.timing import Timer, StepTimer, format_duration

    with Timer("Extract chunk 003") as t:
        extract()
    logger.info("took %s", format_duration(t.duration))

    timer = StepTimer("Split").start()
    timer.step("Analyze read IDs")
    ...
    timer.finish()
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional


@dataclass
class TimingResult:
    """Result of a timing operation"""
    name: str
    duration: float  # seconds
    started_at: str
    ended_at: str

    def __str__(self) -> str:
        return f"{self.name}: {format_duration(self.duration)}"


class Timer:
    """
    Context manager for timing code blocks.

    Usage:
        with Timer("Processing") as t:
            do_work()
        print(f"Took {t.duration:.2f}s")
    """

    def __init__(self, name: str = "Operation"):
        self.name = name
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None
        self.duration: float = 0.0
        self.result: Optional[TimingResult] = None

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        self._started_at = datetime.now().isoformat()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.end_time = time.perf_counter()
        self.duration = self.end_time - self.start_time
        self.result = TimingResult(
            name=self.name,
            duration=self.duration,
            started_at=self._started_at,
            ended_at=datetime.now().isoformat(),
        )
        return False

    def elapsed(self) -> float:
        """Seconds since the block started (works inside the block)"""
        if self.start_time is None:
            return 0.0
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return end - self.start_time


@dataclass
class StepTimer:
    """
    Timer for multi-step operations.

    Usage:
        timer = StepTimer("Pipeline").start()
        timer.step("Loading data")
        load_data()
        timer.step("Processing")
        process()
        timer.finish()
    """
    name: str
    steps: List[Dict] = field(default_factory=list)
    _current_step: Optional[str] = None
    _step_start: Optional[float] = None
    _total_start: Optional[float] = None
    total_duration: float = 0.0

    def start(self) -> "StepTimer":
        """Start the timer"""
        self._total_start = time.perf_counter()
        return self

    def step(self, name: str) -> "StepTimer":
        """Mark a new step"""
        now = time.perf_counter()
        self._close_step(now)
        self._current_step = name
        self._step_start = now
        return self

    def finish(self) -> "StepTimer":
        """Finish timing"""
        now = time.perf_counter()
        self._close_step(now)
        self._current_step = None
        self.total_duration = now - (self._total_start or now)
        return self

    def _close_step(self, now: float) -> None:
        if self._current_step and self._step_start is not None:
            self.steps.append({
                "name": self._current_step,
                "duration": now - self._step_start,
            })

    def to_dict(self) -> Dict[str, float]:
        return {s["name"]: round(s["duration"], 3) for s in self.steps}


def estimate_remaining(elapsed: float, done: int, total: int) -> float:
    """Linear estimate of seconds left after ``done`` of ``total`` units"""
    if done <= 0 or done >= total:
        return 0.0
    return elapsed / done * (total - done)


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to human-readable form"""
    if seconds < 0.001:
        return f"{seconds * 1000000:.1f}us"
    elif seconds < 1:
        return f"{seconds * 1000:.1f}ms"
    elif seconds < 60:
        return f"{seconds:.2f}s"
    elif seconds < 3600:
        mins = int(seconds // 60)
        secs = seconds % 60
        return f"{mins}m {secs:.1f}s"
    else:
        hours = int(seconds // 3600)
        mins = int((seconds % 3600) // 60)
        secs = seconds % 60
        return f"{hours}h {mins}m {secs:.0f}s"

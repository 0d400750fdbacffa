"""
Timing utilities and sample collection for HTTP latency benchmarking.

Provides:
- Timer and timing context managers with nanosecond resolution
- Sample / Outcome value types for a single request attempt
- SampleStore, the per-target collection filled by the runner
"""

import threading
import time
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Iterator, Optional

from http_latency_lab.errors import StoreSealedError


class DurationUnit(Enum):
    """Display units for durations. Samples are always stored in nanoseconds."""

    NANOSECONDS = "ns"
    MICROSECONDS = "us"
    MILLISECONDS = "ms"
    SECONDS = "s"

    @property
    def nanos(self) -> int:
        """Number of nanoseconds in one unit."""
        return {
            DurationUnit.NANOSECONDS: 1,
            DurationUnit.MICROSECONDS: 1_000,
            DurationUnit.MILLISECONDS: 1_000_000,
            DurationUnit.SECONDS: 1_000_000_000,
        }[self]

    def from_nanos(self, value: Optional[float]) -> Optional[float]:
        """Convert a nanosecond value into this unit, passing None through."""
        if value is None:
            return None
        return value / self.nanos


class FailureReason(str, Enum):
    """Why a request attempt did not succeed."""

    TIMEOUT = "timeout"
    CONNECTION_ERROR = "connection_error"
    TRANSPORT_ERROR = "transport_error"
    UNEXPECTED_STATUS = "unexpected_status"


@dataclass(frozen=True)
class Outcome:
    """Result classification of one request attempt.

    A success carries the status code. A failure carries a reason and, for
    unexpected statuses, the status code that was received.
    """

    status_code: Optional[int] = None
    failure: Optional[FailureReason] = None

    @classmethod
    def success(cls, status_code: int) -> "Outcome":
        return cls(status_code=status_code)

    @classmethod
    def failed(cls, reason: FailureReason, status_code: Optional[int] = None) -> "Outcome":
        return cls(status_code=status_code, failure=FailureReason(reason))

    @property
    def is_success(self) -> bool:
        return self.failure is None

    def to_dict(self) -> dict:
        return {
            "success": self.is_success,
            "status_code": self.status_code,
            "failure": self.failure.value if self.failure else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Outcome":
        failure = data.get("failure")
        return cls(
            status_code=data.get("status_code"),
            failure=FailureReason(failure) if failure else None,
        )


@dataclass(frozen=True)
class Sample:
    """One measured request attempt."""

    elapsed_ns: int
    outcome: Outcome
    sequence: int = 0  # issue order, not completion order
    started_ns: int = 0  # offset from the start of its phase
    content_length: Optional[int] = None

    def __post_init__(self):
        if self.elapsed_ns < 0:
            raise ValueError(f"elapsed_ns must be >= 0, got {self.elapsed_ns}")

    @property
    def is_success(self) -> bool:
        return self.outcome.is_success

    @property
    def elapsed_ms(self) -> float:
        """Elapsed time in milliseconds."""
        return self.elapsed_ns / 1_000_000

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "elapsed_ns": self.elapsed_ns,
            "outcome": self.outcome.to_dict(),
            "sequence": self.sequence,
            "started_ns": self.started_ns,
            "content_length": self.content_length,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Sample":
        return cls(
            elapsed_ns=data["elapsed_ns"],
            outcome=Outcome.from_dict(data["outcome"]),
            sequence=data.get("sequence", 0),
            started_ns=data.get("started_ns", 0),
            content_length=data.get("content_length"),
        )


class Timer:
    """Simple timer for manual timing control."""

    def __init__(self, name: str = "timer"):
        self.name = name
        self.start_ns: int = 0
        self.end_ns: int = 0
        self._running = False

    def start(self) -> "Timer":
        """Start the timer."""
        self.start_ns = time.perf_counter_ns()
        self._running = True
        return self

    def stop(self) -> "Timer":
        """Stop the timer."""
        self.end_ns = time.perf_counter_ns()
        self._running = False
        return self

    @property
    def elapsed_ns(self) -> int:
        """Elapsed time in nanoseconds."""
        end = self.end_ns if not self._running else time.perf_counter_ns()
        return max(0, end - self.start_ns)

    @property
    def elapsed_ms(self) -> float:
        """Elapsed time in milliseconds."""
        return self.elapsed_ns / 1_000_000


@contextmanager
def timed(name: str = "operation") -> Iterator[Timer]:
    """Context manager for timing synchronous operations.

    Usage:
        with timed("request") as timer:
            # do work
        print(f"Elapsed: {timer.elapsed_ms}ms")
    """
    timer = Timer(name).start()
    try:
        yield timer
    finally:
        timer.stop()


@asynccontextmanager
async def async_timed(name: str = "operation") -> AsyncIterator[Timer]:
    """Async context manager for timing async operations.

    The timer is stopped even when the body raises, so a failed request
    still reports how long it took to fail.
    """
    timer = Timer(name).start()
    try:
        yield timer
    finally:
        timer.stop()


class SampleStore:
    """Ordered, append-only samples of one target's campaign.

    Warmup samples are kept for diagnostics only. Measured samples are kept in
    completion order. All appends go through one lock, so completions from
    concurrent tasks or threads never interleave inside the list.
    """

    def __init__(self, target_id: str):
        self.target_id = target_id
        self._warmup: list[Sample] = []
        self._measured: list[Sample] = []
        self._lock = threading.Lock()
        self._sealed = False
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None
        self.cancelled = False

    def append(self, sample: Sample) -> None:
        """Append a measured sample."""
        with self._lock:
            self._check_open()
            self._measured.append(sample)

    def append_warmup(self, sample: Sample) -> None:
        """Append a warmup sample (excluded from statistics)."""
        with self._lock:
            self._check_open()
            self._warmup.append(sample)

    def _check_open(self) -> None:
        if self._sealed:
            raise StoreSealedError(f"Sample store for {self.target_id!r} is sealed")

    def start(self) -> None:
        """Record the start of the measured phase."""
        self.started_at = datetime.now()

    def seal(self, cancelled: bool = False) -> None:
        """Mark the campaign as complete. No more samples are accepted."""
        with self._lock:
            self._sealed = True
            self.cancelled = self.cancelled or cancelled
            self.finished_at = datetime.now()

    @property
    def sealed(self) -> bool:
        return self._sealed

    @property
    def warmup(self) -> tuple[Sample, ...]:
        with self._lock:
            return tuple(self._warmup)

    @property
    def measured(self) -> tuple[Sample, ...]:
        with self._lock:
            return tuple(self._measured)

    @property
    def count(self) -> int:
        """Number of measured samples."""
        with self._lock:
            return len(self._measured)

    def successes(self) -> list[Sample]:
        return [s for s in self.measured if s.is_success]

    def failures(self) -> list[Sample]:
        return [s for s in self.measured if not s.is_success]

    @property
    def duration_seconds(self) -> Optional[float]:
        """Wall-clock duration of the measured phase, once finished."""
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self, include_warmup: bool = False) -> dict:
        """Convert store to dictionary for serialization."""
        data = {
            "target_id": self.target_id,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "cancelled": self.cancelled,
            "measured": [s.to_dict() for s in self.measured],
        }
        if include_warmup:
            data["warmup"] = [s.to_dict() for s in self.warmup]
        return data

    @classmethod
    def from_samples(
        cls,
        target_id: str,
        measured: list[Sample],
        warmup: Optional[list[Sample]] = None,
    ) -> "SampleStore":
        """Build a sealed store from existing samples."""
        store = cls(target_id)
        for sample in warmup or []:
            store.append_warmup(sample)
        for sample in measured:
            store.append(sample)
        store.seal()
        return store

"""
Instrumentation module for HTTP latency benchmarking.

Provides timing utilities, sample collection and the request transport.
"""

from .timing import (
    DurationUnit,
    FailureReason,
    Outcome,
    Sample,
    SampleStore,
    Timer,
    timed,
    async_timed,
)

from .transport import (
    AiohttpTransport,
    IssueResult,
    Transport,
)

__all__ = [
    # Timing
    "DurationUnit",
    "FailureReason",
    "Outcome",
    "Sample",
    "SampleStore",
    "Timer",
    "timed",
    "async_timed",
    # Transport
    "AiohttpTransport",
    "IssueResult",
    "Transport",
]

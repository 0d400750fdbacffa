"""
Exception types for HTTP latency benchmarking.

Per-request failures are never raised; they are recorded as Failure samples.
Only structural problems surface as exceptions.
"""

from typing import Optional


class LatencyLabError(Exception):
    """Base class for all errors raised by the lab."""


class CampaignError(LatencyLabError, ValueError):
    """A campaign cannot start because its target or config is invalid."""

    def __init__(self, message: str, target_id: Optional[str] = None):
        self.target_id = target_id
        if target_id:
            message = f"[{target_id}] {message}"
        super().__init__(message)


class ComparisonError(LatencyLabError, ValueError):
    """Two summaries cannot be compared."""


class StoreSealedError(LatencyLabError, RuntimeError):
    """A sample was appended to a store whose campaign already completed."""

"""Pytest configuration and fixtures for HTTP Latency Lab tests."""

import asyncio
from typing import Callable, Optional, Union

import pytest

from http_latency_lab.instrumentation.timing import (
    FailureReason,
    Outcome,
    Sample,
    SampleStore,
)
from http_latency_lab.instrumentation.transport import IssueResult
from http_latency_lab.targets.definitions import RequestSpec, Target

MS = 1_000_000

Behaviour = Callable[[int], Union[Outcome, BaseException]]


class FakeTransport:
    """In-memory transport that records how many requests were in flight.

    `behaviour(call_index)` returns the outcome for each call, or an exception
    to raise.
    """

    def __init__(
        self,
        delay: float = 0.0,
        elapsed_ns: int = 10 * MS,
        behaviour: Optional[Behaviour] = None,
    ):
        self.delay = delay
        self.elapsed_ns = elapsed_ns
        self.behaviour = behaviour
        self.calls = 0
        self.in_flight = 0
        self.max_in_flight = 0

    async def issue(self, request: RequestSpec) -> IssueResult:
        index = self.calls
        self.calls += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.behaviour(index) if self.behaviour else Outcome.success(200)
            if isinstance(outcome, BaseException):
                raise outcome
            return IssueResult(self.elapsed_ns, outcome, content_length=128)
        finally:
            self.in_flight -= 1


def ok(ms: float, sequence: int = 0) -> Sample:
    """A successful sample of `ms` milliseconds."""
    return Sample(int(ms * MS), Outcome.success(200), sequence=sequence)


def failed(reason: FailureReason, ms: float = 0, status: Optional[int] = None) -> Sample:
    """A failed sample."""
    return Sample(int(ms * MS), Outcome.failed(reason, status))


def make_store(samples: list[Sample], target_id: str = "target") -> SampleStore:
    return SampleStore.from_samples(target_id, samples)


@pytest.fixture
def target() -> Target:
    return Target(target_id="local", request=RequestSpec(url="http://localhost:8080/health"))


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()

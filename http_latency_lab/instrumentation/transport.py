"""
Request-issuing capability for the benchmark runner.

The runner only needs `issue(request) -> IssueResult`. Classification of the
outcome (success, timeout, connection error, unexpected status) happens here,
not in the runner. AiohttpTransport shares one pooled ClientSession across all
in-flight requests.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional, Protocol

import aiohttp

from http_latency_lab.targets.definitions import RequestSpec

from .timing import FailureReason, Outcome, Timer


@dataclass(frozen=True)
class IssueResult:
    """Elapsed time and classified outcome of one request."""

    elapsed_ns: int
    outcome: Outcome
    content_length: Optional[int] = None


class Transport(Protocol):
    """Anything that can issue a request and report how it went.

    Implementations must be safe for concurrent use from multiple tasks.
    """

    async def issue(self, request: RequestSpec) -> IssueResult:
        ...


class AiohttpTransport:
    """Transport backed by a single pooled aiohttp session.

    Usage:
        async with AiohttpTransport(timeout_seconds=10) as transport:
            result = await transport.issue(RequestSpec(url="http://localhost:8080/"))
    """

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        disable_certificate_validation: bool = False,
        connection_limit: int = 100,
    ):
        self.timeout_seconds = timeout_seconds
        self.disable_certificate_validation = disable_certificate_validation
        self.connection_limit = connection_limit
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "AiohttpTransport":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self) -> None:
        """Create the shared session."""
        if self._session is not None:
            return
        connector = aiohttp.TCPConnector(
            limit=self.connection_limit,
            ssl=False if self.disable_certificate_validation else None,
        )
        self._session = aiohttp.ClientSession(
            connector=connector,
            timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
        )

    async def close(self) -> None:
        """Close the shared session and its pooled connections."""
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def issue(self, request: RequestSpec) -> IssueResult:
        """Issue one request and time it until the full body has been read."""
        if self._session is None:
            await self.open()

        timer = Timer(request.url)
        body = request.body()
        timer.start()
        try:
            async with self._session.request(
                request.method.value,
                request.url,
                headers=request.request_headers(),
                data=body.encode() if body is not None else None,
            ) as response:
                payload = await response.read()
                timer.stop()
                status = response.status
        except asyncio.TimeoutError:
            timer.stop()
            return IssueResult(timer.elapsed_ns, Outcome.failed(FailureReason.TIMEOUT))
        except aiohttp.ClientConnectionError:
            timer.stop()
            return IssueResult(
                timer.elapsed_ns, Outcome.failed(FailureReason.CONNECTION_ERROR)
            )
        except aiohttp.ClientError:
            timer.stop()
            return IssueResult(
                timer.elapsed_ns, Outcome.failed(FailureReason.TRANSPORT_ERROR)
            )

        if request.is_expected_status(status):
            outcome = Outcome.success(status)
        else:
            outcome = Outcome.failed(FailureReason.UNEXPECTED_STATUS, status)
        return IssueResult(timer.elapsed_ns, outcome, content_length=len(payload))

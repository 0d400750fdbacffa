"""
Target definitions for HTTP latency benchmarking.

A target is a named request specification. The runner issues the same
request repeatedly and files the samples under the target's id.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
from urllib.parse import urlparse

from http_latency_lab.errors import CampaignError


class HttpMethod(str, Enum):
    """Supported HTTP methods."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    HEAD = "HEAD"


BODY_METHODS = {HttpMethod.POST, HttpMethod.PUT, HttpMethod.PATCH}


@dataclass
class RequestSpec:
    """Everything the transport needs to issue one request."""

    url: str
    method: HttpMethod = HttpMethod.GET
    headers: dict[str, str] = field(default_factory=dict)
    json_payload: Optional[str] = None
    gql_query: Optional[str] = None
    bearer_token: Optional[str] = None
    expected_statuses: Optional[frozenset[int]] = None  # None means any 2xx

    def __post_init__(self):
        if isinstance(self.method, str):
            try:
                self.method = HttpMethod(self.method.upper())
            except ValueError:
                # Left as-is; validate() reports it
                pass

    def is_expected_status(self, status: int) -> bool:
        """Whether a status code counts as a successful response."""
        if self.expected_statuses is None:
            return 200 <= status < 300
        return status in self.expected_statuses

    def body(self) -> Optional[str]:
        """The raw request body, if any."""
        if self.json_payload is not None:
            return self.json_payload
        if self.gql_query is not None:
            return json.dumps({"query": self.gql_query})
        return None

    def request_headers(self) -> dict[str, str]:
        """Headers to send, including auth and content type where implied."""
        headers = {"Connection": "keep-alive"}
        if self.body() is not None:
            headers["Content-Type"] = "application/json"
        if self.bearer_token:
            headers["Authorization"] = f"Bearer {self.bearer_token}"
        headers.update(self.headers)
        return headers

    def validate(self, target_id: Optional[str] = None) -> None:
        """Raise CampaignError if the request cannot be issued as specified."""
        parsed = urlparse(self.url or "")
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise CampaignError(f"Invalid target URL: {self.url!r}", target_id)
        if not isinstance(self.method, HttpMethod):
            raise CampaignError(f"Unsupported HTTP method: {self.method!r}", target_id)
        if self.json_payload is not None and self.gql_query is not None:
            raise CampaignError(
                "Expected either `json_payload` or `gql_query`, not both", target_id
            )
        if self.body() is not None and self.method not in BODY_METHODS:
            raise CampaignError(
                f"A request body is not supported for {self.method.value}", target_id
            )
        if self.json_payload is not None:
            try:
                json.loads(self.json_payload)
            except ValueError as e:
                raise CampaignError(f"Malformed JSON payload: {e}", target_id) from e
        if self.expected_statuses is not None and not self.expected_statuses:
            raise CampaignError("expected_statuses must not be empty", target_id)

    def to_dict(self) -> dict:
        """Convert to dictionary. The bearer token is never serialized."""
        return {
            "url": self.url,
            "method": self.method.value if isinstance(self.method, HttpMethod) else self.method,
            "headers": dict(self.headers),
            "json_payload": self.json_payload,
            "gql_query": self.gql_query,
            "has_bearer_token": bool(self.bearer_token),
            "expected_statuses": (
                sorted(self.expected_statuses) if self.expected_statuses is not None else None
            ),
        }


@dataclass
class Target:
    """A named endpoint to benchmark."""

    target_id: str
    request: RequestSpec
    description: str = ""
    metadata: dict = field(default_factory=dict)

    def validate(self) -> None:
        if not self.target_id:
            raise CampaignError("Target id must not be empty")
        self.request.validate(self.target_id)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "target_id": self.target_id,
            "description": self.description,
            "request": self.request.to_dict(),
            "metadata": self.metadata,
        }


def target_from_url(
    url: str,
    target_id: Optional[str] = None,
    method: str = "GET",
    **kwargs,
) -> Target:
    """Build a target from a URL, naming it after host and path by default."""
    if target_id is None:
        parsed = urlparse(url)
        target_id = f"{parsed.netloc}{parsed.path}".rstrip("/") or url
    return Target(
        target_id=target_id,
        request=RequestSpec(url=url, method=method, **kwargs),
    )


def targets_from_urls(urls: list[str], **kwargs) -> list[Target]:
    """Build one target per URL, making ids unique when URLs repeat."""
    targets = []
    seen: dict[str, int] = {}
    for url in urls:
        target = target_from_url(url, **kwargs)
        count = seen.get(target.target_id, 0)
        seen[target.target_id] = count + 1
        if count:
            target.target_id = f"{target.target_id}#{count + 1}"
        targets.append(target)
    return targets

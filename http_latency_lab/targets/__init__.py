"""
Target definitions for HTTP latency benchmarking.
"""

from .definitions import (
    BODY_METHODS,
    HttpMethod,
    RequestSpec,
    Target,
    target_from_url,
    targets_from_urls,
)

__all__ = [
    "BODY_METHODS",
    "HttpMethod",
    "RequestSpec",
    "Target",
    "target_from_url",
    "targets_from_urls",
]

"""
HTTP Latency Lab - statistics-driven HTTP benchmarking.

Runs warmup and measured request campaigns against HTTP targets and reduces
the samples into percentiles, histograms, outliers, confidence intervals and
baseline comparisons.

Key modules:
- instrumentation: Timing, sample collection and the HTTP transport
- targets: Request specifications to benchmark
- harness: Campaign orchestration and reporting
- analysis: Statistics and comparison engines
"""

__version__ = "0.1.0"

from . import analysis
from . import harness
from . import instrumentation
from . import targets
from .errors import CampaignError, ComparisonError, LatencyLabError, StoreSealedError

__all__ = [
    "analysis",
    "harness",
    "instrumentation",
    "targets",
    "CampaignError",
    "ComparisonError",
    "LatencyLabError",
    "StoreSealedError",
]

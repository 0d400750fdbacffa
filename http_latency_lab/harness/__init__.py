"""
Benchmark harness for HTTP latency campaigns.

Provides orchestration and reporting capabilities.
"""

from .runner import (
    BenchmarkRunner,
    CampaignConfig,
    CampaignRun,
    run,
)

from .reporter import (
    CampaignMetadata,
    ChartReporter,
    ConsoleReporter,
    JSONReporter,
    Report,
    build_report,
)

__all__ = [
    # Runner
    "BenchmarkRunner",
    "CampaignConfig",
    "CampaignRun",
    "run",
    # Reporter
    "CampaignMetadata",
    "ChartReporter",
    "ConsoleReporter",
    "JSONReporter",
    "Report",
    "build_report",
]

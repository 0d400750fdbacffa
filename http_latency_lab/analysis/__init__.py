"""
Statistics and comparison engines for benchmark samples.
"""

from .statistics import (
    DEFAULT_CONFIDENCE_LEVEL,
    DEFAULT_PERCENTILES,
    ConfidenceInterval,
    DurationPolicy,
    HistogramBin,
    StatisticsSummary,
    bootstrap_confidence_interval,
    histogram,
    normal_qq,
    percentile,
    percentile_key,
    quantile,
    summarize,
    time_series,
)

from .comparison import (
    DEFAULT_REGRESSION_THRESHOLD,
    ComparisonResult,
    MetricDelta,
    PerformanceOutcome,
    SignificanceTest,
    compare,
    permutation_p_value,
    z_statistic,
)

__all__ = [
    # Statistics
    "DEFAULT_CONFIDENCE_LEVEL",
    "DEFAULT_PERCENTILES",
    "ConfidenceInterval",
    "DurationPolicy",
    "HistogramBin",
    "StatisticsSummary",
    "bootstrap_confidence_interval",
    "histogram",
    "normal_qq",
    "percentile",
    "percentile_key",
    "quantile",
    "summarize",
    "time_series",
    # Comparison
    "DEFAULT_REGRESSION_THRESHOLD",
    "ComparisonResult",
    "MetricDelta",
    "PerformanceOutcome",
    "SignificanceTest",
    "compare",
    "permutation_p_value",
    "z_statistic",
]

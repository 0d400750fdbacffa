"""
Descriptive statistics over a campaign's measured samples.

Conventions:
- Quantiles use linear interpolation between order statistics: for level q
  over n sorted values the index is q * (n - 1), interpolated between its
  floor and ceiling. This matches numpy's default "linear" method.
- Variance and standard deviation are the unbiased sample estimators (n - 1).
- Outliers lie strictly outside [Q1 - 1.5 * IQR, Q3 + 1.5 * IQR].
- The confidence interval of the mean is mean +/- z * s / sqrt(n), with z
  taken from the standard normal distribution. This assumes the sampling
  distribution of the mean is approximately normal, which holds for the
  sample sizes benchmarks normally use but not for a handful of samples.
- Absent statistics are None, never 0 or NaN.

All durations are in nanoseconds.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from statistics import NormalDist
from typing import Iterable, Optional, Sequence

import numpy as np

from http_latency_lab.instrumentation.timing import FailureReason, Sample, SampleStore

DEFAULT_PERCENTILES = (50.0, 90.0, 95.0, 99.0)
DEFAULT_CONFIDENCE_LEVEL = 0.95
OUTLIER_FENCE_FACTOR = 1.5

# Below this mean duration (ns) requests/second is not meaningful
ZERO_THRESHOLD = 1e-9


class DurationPolicy(str, Enum):
    """Which samples contribute durations to the statistics.

    SUCCESSES_ONLY: failed requests are counted but their durations ignored.
    INCLUDE_TIMEOUTS: timeouts also contribute their elapsed time, as a
    censored lower bound of the real latency.
    """

    SUCCESSES_ONLY = "successes_only"
    INCLUDE_TIMEOUTS = "include_timeouts"


@dataclass(frozen=True)
class HistogramBin:
    """One histogram bin. Bins are half-open except the last, which is closed."""

    lower: float
    upper: float
    count: int

    def to_dict(self) -> dict:
        return {"lower": self.lower, "upper": self.upper, "count": self.count}


@dataclass(frozen=True)
class ConfidenceInterval:
    """Interval estimated to contain the true mean at `level`."""

    lower: float
    upper: float
    level: float

    def to_dict(self) -> dict:
        return {"lower": self.lower, "upper": self.upper, "level": self.level}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["ConfidenceInterval"]:
        if not data:
            return None
        return cls(lower=data["lower"], upper=data["upper"], level=data["level"])


def percentile_key(p: float) -> str:
    """Name of a percentile in summaries: 95 -> "p95", 99.9 -> "p99.9"."""
    return f"p{p:g}"


@dataclass(frozen=True)
class StatisticsSummary:
    """Statistics of one target's measured samples.

    Never updated in place: a new campaign produces a new summary.
    """

    target_id: str
    total: int = 0
    success: int = 0
    failure: int = 0
    failures_by_reason: dict[str, int] = field(default_factory=dict)
    failures_by_status: dict[int, int] = field(default_factory=dict)
    duration_policy: str = DurationPolicy.SUCCESSES_ONLY.value

    # Central tendency
    mean: Optional[float] = None
    median: Optional[float] = None

    # Spread
    std_dev: Optional[float] = None
    variance: Optional[float] = None
    min: Optional[float] = None
    max: Optional[float] = None
    q1: Optional[float] = None
    q3: Optional[float] = None
    iqr: Optional[float] = None

    percentiles: dict[str, float] = field(default_factory=dict)
    histogram: tuple[HistogramBin, ...] = ()

    lower_fence: Optional[float] = None
    upper_fence: Optional[float] = None
    outliers: tuple[Sample, ...] = ()

    confidence_interval: Optional[ConfidenceInterval] = None
    bootstrap_interval: Optional[ConfidenceInterval] = None

    requests_per_second: Optional[float] = None  # 1 / mean duration
    throughput_rps: Optional[float] = None  # measured requests / wall clock
    total_bytes: int = 0

    sorted_durations: tuple[float, ...] = field(default=(), repr=False, compare=False)

    @classmethod
    def empty(cls, target_id: str) -> "StatisticsSummary":
        """The summary of a store without measured samples."""
        return cls(target_id=target_id)

    @property
    def is_empty(self) -> bool:
        return self.total == 0

    @property
    def has_durations(self) -> bool:
        return self.mean is not None

    @property
    def success_rate(self) -> Optional[float]:
        """Fraction of measured requests that succeeded."""
        if self.total == 0:
            return None
        return self.success / self.total

    def get_percentile(self, p: float) -> Optional[float]:
        return self.percentiles.get(percentile_key(p))

    def metric(self, name: str) -> Optional[float]:
        """Look up "mean", "median" or a percentile key such as "p95"."""
        if name in ("mean", "median"):
            return getattr(self, name)
        return self.percentiles.get(name)

    def to_dict(self, include_durations: bool = False) -> dict:
        """Convert summary to dictionary for serialization."""
        data = {
            "target_id": self.target_id,
            "counts": {
                "total": self.total,
                "success": self.success,
                "failure": self.failure,
                "failures_by_reason": dict(self.failures_by_reason),
                "failures_by_status": {str(k): v for k, v in self.failures_by_status.items()},
            },
            "duration_policy": self.duration_policy,
            "mean": self.mean,
            "median": self.median,
            "std_dev": self.std_dev,
            "variance": self.variance,
            "min": self.min,
            "max": self.max,
            "q1": self.q1,
            "q3": self.q3,
            "iqr": self.iqr,
            "percentiles": dict(self.percentiles),
            "histogram": [b.to_dict() for b in self.histogram],
            "lower_fence": self.lower_fence,
            "upper_fence": self.upper_fence,
            "outliers": [s.to_dict() for s in self.outliers],
            "confidence_interval": (
                self.confidence_interval.to_dict() if self.confidence_interval else None
            ),
            "bootstrap_interval": (
                self.bootstrap_interval.to_dict() if self.bootstrap_interval else None
            ),
            "requests_per_second": self.requests_per_second,
            "throughput_rps": self.throughput_rps,
            "total_bytes": self.total_bytes,
        }
        if include_durations:
            data["durations"] = list(self.sorted_durations)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "StatisticsSummary":
        """Rebuild a summary from `to_dict()` output, e.g. a stored baseline."""
        counts = data.get("counts", {})
        return cls(
            target_id=data["target_id"],
            total=counts.get("total", 0),
            success=counts.get("success", 0),
            failure=counts.get("failure", 0),
            failures_by_reason=dict(counts.get("failures_by_reason", {})),
            failures_by_status={
                int(k): v for k, v in counts.get("failures_by_status", {}).items()
            },
            duration_policy=data.get("duration_policy", DurationPolicy.SUCCESSES_ONLY.value),
            mean=data.get("mean"),
            median=data.get("median"),
            std_dev=data.get("std_dev"),
            variance=data.get("variance"),
            min=data.get("min"),
            max=data.get("max"),
            q1=data.get("q1"),
            q3=data.get("q3"),
            iqr=data.get("iqr"),
            percentiles=dict(data.get("percentiles", {})),
            histogram=tuple(
                HistogramBin(b["lower"], b["upper"], b["count"])
                for b in data.get("histogram", [])
            ),
            lower_fence=data.get("lower_fence"),
            upper_fence=data.get("upper_fence"),
            outliers=tuple(Sample.from_dict(s) for s in data.get("outliers", [])),
            confidence_interval=ConfidenceInterval.from_dict(data.get("confidence_interval")),
            bootstrap_interval=ConfidenceInterval.from_dict(data.get("bootstrap_interval")),
            requests_per_second=data.get("requests_per_second"),
            throughput_rps=data.get("throughput_rps"),
            total_bytes=data.get("total_bytes", 0),
            sorted_durations=tuple(data.get("durations", ())),
        )


def quantile(sorted_values: Sequence[float], q: float) -> float:
    """Quantile of already sorted values by linear interpolation.

    Index is q * (n - 1); the result interpolates between the values at the
    floor and ceiling of that index.
    """
    n = len(sorted_values)
    if n == 0:
        raise ValueError("quantile of an empty sequence")
    if not 0.0 <= q <= 1.0:
        raise ValueError(f"quantile level must be within [0, 1], got {q}")
    k = q * (n - 1)
    f = math.floor(k)
    c = min(f + 1, n - 1)
    return sorted_values[f] + (k - f) * (sorted_values[c] - sorted_values[f])


def percentile(sorted_values: Sequence[float], p: float) -> float:
    """Percentile (0-100) of already sorted values."""
    return quantile(sorted_values, p / 100)


def sqrt_bin_count(n: int) -> int:
    """Square-root choice for the number of histogram bins."""
    return max(1, math.ceil(math.sqrt(n)))


def histogram(
    sorted_values: Sequence[float],
    bins: Optional[int] = None,
) -> tuple[HistogramBin, ...]:
    """Contiguous bins covering [min, max] exactly, the last bin closed.

    Uses `bins` when given, otherwise the square-root rule.
    """
    n = len(sorted_values)
    if n == 0:
        return ()
    if bins is not None and bins < 1:
        raise ValueError(f"histogram bin count must be >= 1, got {bins}")
    lo, hi = sorted_values[0], sorted_values[-1]
    if lo == hi:
        return (HistogramBin(float(lo), float(hi), n),)

    n_bins = bins or sqrt_bin_count(n)
    counts, edges = np.histogram(np.asarray(sorted_values, dtype=float), bins=n_bins, range=(lo, hi))
    return tuple(
        HistogramBin(float(edges[i]), float(edges[i + 1]), int(counts[i]))
        for i in range(n_bins)
    )


def normal_confidence_interval(
    mean: float,
    std_dev: float,
    n: int,
    level: float = DEFAULT_CONFIDENCE_LEVEL,
) -> ConfidenceInterval:
    """Normal-approximation interval for the mean."""
    z = NormalDist().inv_cdf(0.5 + level / 2)
    half_width = z * std_dev / math.sqrt(n)
    return ConfidenceInterval(mean - half_width, mean + half_width, level)


def bootstrap_means(
    values: Sequence[float],
    draws: int,
    seed: Optional[int] = None,
) -> np.ndarray:
    """Means of `draws` resamples (with replacement) of `values`."""
    data = np.asarray(values, dtype=float)
    rng = np.random.default_rng(seed)
    indices = rng.integers(0, len(data), size=(draws, len(data)))
    return data[indices].mean(axis=1)


def bootstrap_confidence_interval(
    values: Sequence[float],
    draws: int,
    level: float = DEFAULT_CONFIDENCE_LEVEL,
    seed: Optional[int] = None,
) -> Optional[ConfidenceInterval]:
    """Percentile bootstrap interval for the mean."""
    if draws < 1 or len(values) < 2:
        return None
    means = bootstrap_means(values, draws, seed)
    alpha = 1 - level
    lower, upper = np.quantile(means, [alpha / 2, 1 - alpha / 2])
    return ConfidenceInterval(float(lower), float(upper), level)


def _validate_options(percentiles: Iterable[float], confidence_level: float) -> None:
    for p in percentiles:
        if not 0 <= p <= 100:
            raise ValueError(f"percentiles must be within [0, 100], got {p}")
    if not 0 < confidence_level < 1:
        raise ValueError(f"confidence_level must be within (0, 1), got {confidence_level}")


def summarize(
    store: SampleStore,
    percentiles: Iterable[float] = DEFAULT_PERCENTILES,
    confidence_level: float = DEFAULT_CONFIDENCE_LEVEL,
    *,
    histogram_bins: Optional[int] = None,
    include_timeouts: bool = False,
    bootstrap_draws: int = 0,
    seed: Optional[int] = None,
) -> StatisticsSummary:
    """Compute the statistics summary of a store's measured samples.

    Pure: reads `store.measured` once and never modifies the store. An empty
    store yields the empty summary rather than an error.
    """
    percentiles = tuple(percentiles)
    _validate_options(percentiles, confidence_level)

    measured = store.measured
    policy = (
        DurationPolicy.INCLUDE_TIMEOUTS if include_timeouts else DurationPolicy.SUCCESSES_ONLY
    )
    if not measured:
        return StatisticsSummary(target_id=store.target_id, duration_policy=policy.value)

    failures_by_reason: dict[str, int] = {}
    failures_by_status: dict[int, int] = {}
    timed_samples: list[Sample] = []
    n_success = 0
    total_bytes = 0

    for sample in measured:
        if sample.is_success:
            n_success += 1
            timed_samples.append(sample)
            if sample.content_length:
                total_bytes += sample.content_length
            continue
        reason = sample.outcome.failure.value
        failures_by_reason[reason] = failures_by_reason.get(reason, 0) + 1
        if sample.outcome.status_code is not None:
            status = sample.outcome.status_code
            failures_by_status[status] = failures_by_status.get(status, 0) + 1
        if include_timeouts and sample.outcome.failure == FailureReason.TIMEOUT:
            timed_samples.append(sample)

    throughput = None
    if store.duration_seconds:
        throughput = len(measured) / store.duration_seconds

    counts = dict(
        target_id=store.target_id,
        total=len(measured),
        success=n_success,
        failure=len(measured) - n_success,
        failures_by_reason=failures_by_reason,
        failures_by_status=failures_by_status,
        duration_policy=policy.value,
        throughput_rps=throughput,
        total_bytes=total_bytes,
    )

    if not timed_samples:
        return StatisticsSummary(**counts)

    # Sort once, every order statistic below reuses this
    durations = sorted(float(s.elapsed_ns) for s in timed_samples)
    n = len(durations)
    data = np.asarray(durations, dtype=float)

    mean = float(data.mean())
    median = quantile(durations, 0.5)
    q1 = quantile(durations, 0.25)
    q3 = quantile(durations, 0.75)

    std_dev = variance = iqr = lower_fence = upper_fence = None
    confidence_interval = bootstrap_interval = None
    outliers: tuple[Sample, ...] = ()

    if n >= 2:
        variance = float(data.var(ddof=1))
        std_dev = math.sqrt(variance)
        iqr = q3 - q1
        lower_fence = q1 - OUTLIER_FENCE_FACTOR * iqr
        upper_fence = q3 + OUTLIER_FENCE_FACTOR * iqr
        outliers = tuple(
            s for s in timed_samples
            if s.elapsed_ns < lower_fence or s.elapsed_ns > upper_fence
        )
        confidence_interval = normal_confidence_interval(mean, std_dev, n, confidence_level)
        bootstrap_interval = bootstrap_confidence_interval(
            durations, bootstrap_draws, confidence_level, seed
        )

    requests_per_second = None
    if mean > ZERO_THRESHOLD:
        requests_per_second = 1_000_000_000 / mean

    return StatisticsSummary(
        **counts,
        mean=mean,
        median=median,
        std_dev=std_dev,
        variance=variance,
        min=durations[0],
        max=durations[-1],
        q1=q1,
        q3=q3,
        iqr=iqr,
        percentiles={percentile_key(p): percentile(durations, p) for p in percentiles},
        histogram=histogram(durations, histogram_bins),
        lower_fence=lower_fence,
        upper_fence=upper_fence,
        outliers=outliers,
        confidence_interval=confidence_interval,
        bootstrap_interval=bootstrap_interval,
        requests_per_second=requests_per_second,
        sorted_durations=tuple(durations),
    )


def normal_qq(summary: StatisticsSummary) -> list[tuple[float, float]]:
    """Points of a normal Q-Q plot: (theoretical quantile, observed quantile).

    Uses one level per ten samples. Empty when there are too few samples or
    no standard deviation.
    """
    durations = summary.sorted_durations
    n_levels = len(durations) // 10
    if n_levels < 2 or not summary.std_dev or summary.mean is None:
        return []
    normal = NormalDist(summary.mean, summary.std_dev)
    points = []
    for k in range(1, n_levels):
        level = k / n_levels
        points.append((normal.inv_cdf(level), quantile(durations, level)))
    return points


def time_series(store: SampleStore, successes_only: bool = True) -> list[tuple[int, int]]:
    """(started_ns, elapsed_ns) points in issue order, for trend plots."""
    samples = sorted(store.measured, key=lambda s: s.sequence)
    return [
        (s.started_ns, s.elapsed_ns)
        for s in samples
        if s.is_success or not successes_only
    ]

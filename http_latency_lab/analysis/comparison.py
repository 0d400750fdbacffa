"""
Comparison of two statistics summaries (baseline vs candidate).

Deltas are candidate - baseline, so a positive delta means the candidate is
slower. Relative change is delta / baseline and is absent when the baseline
value is zero or either side is missing.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from statistics import NormalDist
from typing import Optional, Sequence

import numpy as np

from http_latency_lab.errors import ComparisonError

from .statistics import StatisticsSummary, percentile_key

DEFAULT_REGRESSION_THRESHOLD = 0.10
DEFAULT_KEY_PERCENTILE = 95.0
DEFAULT_ALPHA = 0.05

# Below this combined variance the test statistic is undefined
VARIANCE_EPSILON = 1.0e-12


class PerformanceOutcome(str, Enum):
    """Verdict of a significance test."""

    REGRESSED = "regressed"
    IMPROVED = "improved"
    NO_CHANGE = "no_change"


@dataclass(frozen=True)
class MetricDelta:
    """Change of one metric between baseline and candidate."""

    metric: str
    baseline: Optional[float]
    candidate: Optional[float]
    delta: Optional[float]
    relative: Optional[float]

    def to_dict(self) -> dict:
        return {
            "metric": self.metric,
            "baseline": self.baseline,
            "candidate": self.candidate,
            "delta": self.delta,
            "relative": self.relative,
        }


@dataclass(frozen=True)
class SignificanceTest:
    """Two-sample test of the difference in mean latency."""

    method: str
    statistic: Optional[float]
    p_value: float
    alpha: float
    outcome: PerformanceOutcome

    def to_dict(self) -> dict:
        return {
            "method": self.method,
            "statistic": self.statistic,
            "p_value": self.p_value,
            "alpha": self.alpha,
            "outcome": self.outcome.value,
        }


@dataclass(frozen=True)
class ComparisonResult:
    """Result of comparing a candidate summary against a baseline."""

    baseline_id: str
    candidate_id: str
    deltas: dict[str, MetricDelta]
    key_metric: str
    regression_threshold: float
    regressed: bool
    significance: Optional[SignificanceTest] = None
    permutation: Optional[SignificanceTest] = None
    metadata: dict = field(default_factory=dict)

    def delta(self, metric: str) -> Optional[float]:
        entry = self.deltas.get(metric)
        return entry.delta if entry else None

    def relative(self, metric: str) -> Optional[float]:
        entry = self.deltas.get(metric)
        return entry.relative if entry else None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "baseline_id": self.baseline_id,
            "candidate_id": self.candidate_id,
            "deltas": {name: d.to_dict() for name, d in self.deltas.items()},
            "key_metric": self.key_metric,
            "regression_threshold": self.regression_threshold,
            "regressed": self.regressed,
            "significance": self.significance.to_dict() if self.significance else None,
            "permutation": self.permutation.to_dict() if self.permutation else None,
            "metadata": self.metadata,
        }


def metric_delta(metric: str, baseline: Optional[float], candidate: Optional[float]) -> MetricDelta:
    """Absolute and relative change of one metric."""
    if baseline is None or candidate is None:
        return MetricDelta(metric, baseline, candidate, None, None)
    delta = candidate - baseline
    relative = delta / baseline if baseline != 0 else None
    return MetricDelta(metric, baseline, candidate, delta, relative)


def z_statistic(
    baseline_mean: float,
    baseline_std: float,
    baseline_n: int,
    candidate_mean: float,
    candidate_std: float,
    candidate_n: int,
) -> Optional[float]:
    """Test statistic for the difference of two means.

    Assumes independent, approximately normal samples and sample sizes large
    enough for the estimated standard deviations to stand in for the true ones.
    """
    s2 = baseline_std ** 2 / baseline_n + candidate_std ** 2 / candidate_n
    if abs(s2) < VARIANCE_EPSILON:
        return None
    return (baseline_mean - candidate_mean) / math.sqrt(s2)


def _verdict(p_value: float, alpha: float, baseline_mean: float, candidate_mean: float) -> PerformanceOutcome:
    if p_value > alpha:
        return PerformanceOutcome.NO_CHANGE
    if baseline_mean < candidate_mean:
        return PerformanceOutcome.REGRESSED
    return PerformanceOutcome.IMPROVED


def z_test(
    baseline: StatisticsSummary,
    candidate: StatisticsSummary,
    alpha: float = DEFAULT_ALPHA,
) -> Optional[SignificanceTest]:
    """One-sided z-test on the means; None when either std dev is absent."""
    if baseline.std_dev is None or candidate.std_dev is None:
        return None
    n_base = len(baseline.sorted_durations) or baseline.success
    n_cand = len(candidate.sorted_durations) or candidate.success
    t = z_statistic(
        baseline.mean, baseline.std_dev, n_base,
        candidate.mean, candidate.std_dev, n_cand,
    )
    if t is None:
        return None
    p_value = 1.0 - NormalDist().cdf(abs(t))
    return SignificanceTest(
        method="z_test",
        statistic=t,
        p_value=p_value,
        alpha=alpha,
        outcome=_verdict(p_value, alpha, baseline.mean, candidate.mean),
    )


def permutation_p_value(
    baseline: Sequence[float],
    candidate: Sequence[float],
    n_permutations: int = 1000,
    seed: Optional[int] = None,
) -> float:
    """Two-sided permutation test p-value for the difference of means."""
    base = np.asarray(baseline, dtype=float)
    cand = np.asarray(candidate, dtype=float)
    observed = abs(cand.mean() - base.mean())
    pooled = np.concatenate([base, cand])
    rng = np.random.default_rng(seed)

    extreme = 0
    for _ in range(n_permutations):
        shuffled = rng.permutation(pooled)
        diff = abs(shuffled[len(base):].mean() - shuffled[:len(base)].mean())
        if diff >= observed:
            extreme += 1
    # Add-one smoothing, p is never 0
    return (extreme + 1) / (n_permutations + 1)


def permutation_test(
    baseline: StatisticsSummary,
    candidate: StatisticsSummary,
    n_permutations: int,
    alpha: float = DEFAULT_ALPHA,
    seed: Optional[int] = None,
) -> Optional[SignificanceTest]:
    """Permutation test on the raw durations; None without durations."""
    if len(baseline.sorted_durations) < 2 or len(candidate.sorted_durations) < 2:
        return None
    p_value = permutation_p_value(
        baseline.sorted_durations, candidate.sorted_durations, n_permutations, seed
    )
    return SignificanceTest(
        method="permutation",
        statistic=None,
        p_value=p_value,
        alpha=alpha,
        outcome=_verdict(p_value, alpha, baseline.mean, candidate.mean),
    )


def compare(
    baseline: StatisticsSummary,
    candidate: StatisticsSummary,
    regression_threshold: float = DEFAULT_REGRESSION_THRESHOLD,
    *,
    key_percentile: float = DEFAULT_KEY_PERCENTILE,
    alpha: float = DEFAULT_ALPHA,
    permutations: int = 0,
    seed: Optional[int] = None,
) -> ComparisonResult:
    """Compare candidate against baseline.

    Raises ComparisonError when either summary is empty, or has durations but
    lacks the key percentile. Regression means the candidate's key percentile exceeds the
    baseline's by more than `regression_threshold` (a relative fraction).
    """
    if baseline.is_empty:
        raise ComparisonError(f"Baseline summary {baseline.target_id!r} is empty")
    if candidate.is_empty:
        raise ComparisonError(f"Candidate summary {candidate.target_id!r} is empty")
    if regression_threshold < 0:
        raise ComparisonError(
            f"regression_threshold must be >= 0, got {regression_threshold}"
        )

    key_metric = percentile_key(key_percentile)
    for side, summary in (("Baseline", baseline), ("Candidate", candidate)):
        if summary.has_durations and summary.metric(key_metric) is None:
            raise ComparisonError(
                f"{side} summary {summary.target_id!r} has no {key_metric}; "
                f"computed percentiles: {sorted(summary.percentiles)}"
            )

    metrics = ["mean", "median"]
    for name in baseline.percentiles:
        if name in candidate.percentiles and name not in metrics:
            metrics.append(name)
    for name in ("p95", "p99", key_metric):
        if name not in metrics:
            metrics.append(name)

    deltas = {
        name: metric_delta(name, baseline.metric(name), candidate.metric(name))
        for name in metrics
    }

    base_key = baseline.metric(key_metric)
    cand_key = candidate.metric(key_metric)
    regressed = (
        base_key is not None
        and cand_key is not None
        and cand_key > base_key * (1 + regression_threshold)
    )

    permutation = None
    if permutations > 0:
        permutation = permutation_test(baseline, candidate, permutations, alpha, seed)

    return ComparisonResult(
        baseline_id=baseline.target_id,
        candidate_id=candidate.target_id,
        deltas=deltas,
        key_metric=key_metric,
        regression_threshold=regression_threshold,
        regressed=regressed,
        significance=z_test(baseline, candidate, alpha),
        permutation=permutation,
    )

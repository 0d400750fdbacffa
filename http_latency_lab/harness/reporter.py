"""
Report assembly and rendering for benchmark results.

The Report is the serializable value renderers consume. ConsoleReporter,
ChartReporter and JSONReporter render or persist it.
"""

import json
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from http_latency_lab.analysis.comparison import ComparisonResult
from http_latency_lab.analysis.statistics import StatisticsSummary, normal_qq, time_series
from http_latency_lab.instrumentation.timing import DurationUnit, SampleStore

from .runner import CampaignRun

REPORT_VERSION = 1


@dataclass
class CampaignMetadata:
    """Descriptive data about a campaign, carried into the report."""

    name: str
    target_ids: list[str]
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    description: str = ""
    config: dict = field(default_factory=dict)
    targets: dict[str, dict] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    cancelled: list[str] = field(default_factory=list)

    @classmethod
    def from_run(cls, run: CampaignRun) -> "CampaignMetadata":
        return cls(
            name=run.config.name,
            description=run.config.description,
            target_ids=run.target_ids,
            start_time=run.start_time,
            end_time=run.end_time,
            config=run.config.to_dict(),
            targets={t.target_id: t.to_dict() for t in run.targets},
            errors=dict(run.errors),
            cancelled=[tid for tid, store in run.stores.items() if store.cancelled],
        )

    def to_dict(self) -> dict:
        duration = None
        if self.start_time and self.end_time:
            duration = (self.end_time - self.start_time).total_seconds()
        return {
            "name": self.name,
            "description": self.description,
            "target_ids": list(self.target_ids),
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": duration,
            "config": self.config,
            "targets": self.targets,
            "errors": self.errors,
            "cancelled": self.cancelled,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CampaignMetadata":
        def parse(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        return cls(
            name=data.get("name", "campaign"),
            description=data.get("description", ""),
            target_ids=list(data.get("target_ids", [])),
            start_time=parse(data.get("start_time")),
            end_time=parse(data.get("end_time")),
            config=data.get("config", {}),
            targets=data.get("targets", {}),
            errors=data.get("errors", {}),
            cancelled=list(data.get("cancelled", [])),
        )


@dataclass
class Report:
    """Everything a renderer needs: metadata, one summary per target, comparisons."""

    metadata: CampaignMetadata
    summaries: dict[str, StatisticsSummary]
    comparisons: list[ComparisonResult] = field(default_factory=list)
    generated_at: datetime = field(default_factory=datetime.now)

    def summary(self, target_id: str) -> StatisticsSummary:
        return self.summaries[target_id]

    @property
    def regressed(self) -> bool:
        """Whether any comparison flagged a regression."""
        return any(c.regressed for c in self.comparisons)

    def to_dict(self, include_durations: bool = False) -> dict:
        """Convert report to dictionary. Field names are the renderer contract."""
        return {
            "version": REPORT_VERSION,
            "generated_at": self.generated_at.isoformat(),
            "metadata": self.metadata.to_dict(),
            "summaries": [
                self.summaries[tid].to_dict(include_durations=include_durations)
                for tid in self.metadata.target_ids
            ],
            "comparisons": [c.to_dict() for c in self.comparisons],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Report":
        """Rebuild metadata and summaries. Comparisons are recomputed, not loaded."""
        summaries = [StatisticsSummary.from_dict(s) for s in data.get("summaries", [])]
        return build_report(
            CampaignMetadata.from_dict(data.get("metadata", {})),
            summaries,
            generated_at=datetime.fromisoformat(data["generated_at"])
            if data.get("generated_at") else None,
        )


def build_report(
    metadata: CampaignMetadata,
    summaries: Iterable[StatisticsSummary],
    comparisons: Iterable[ComparisonResult] = (),
    generated_at: Optional[datetime] = None,
) -> Report:
    """Assemble a report.

    Every target listed in the metadata gets exactly one summary; targets
    without one get the empty summary. Summaries for targets missing from the
    metadata are appended to its target list.
    """
    by_target: dict[str, StatisticsSummary] = {}
    for summary in summaries:
        if summary.target_id in by_target:
            raise ValueError(f"Duplicate summary for target {summary.target_id!r}")
        by_target[summary.target_id] = summary

    target_ids = list(metadata.target_ids)
    for target_id in by_target:
        if target_id not in target_ids:
            target_ids.append(target_id)
    metadata = replace(metadata, target_ids=target_ids)

    complete = {
        tid: by_target.get(tid) or StatisticsSummary.empty(tid)
        for tid in target_ids
    }
    return Report(
        metadata=metadata,
        summaries=complete,
        comparisons=list(comparisons),
        generated_at=generated_at or datetime.now(),
    )


class ConsoleReporter:
    """Generates console/CLI reports."""

    def __init__(self, use_color: bool = True, unit: DurationUnit = DurationUnit.MILLISECONDS):
        self.use_color = use_color
        self.unit = unit

    def _color(self, text: str, color: str) -> str:
        """Apply ANSI color if enabled."""
        if not self.use_color:
            return text

        colors = {
            "green": "\033[92m",
            "red": "\033[91m",
            "yellow": "\033[93m",
            "blue": "\033[94m",
            "bold": "\033[1m",
            "reset": "\033[0m",
        }

        return f"{colors.get(color, '')}{text}{colors['reset']}"

    def format_duration(self, ns: Optional[float]) -> str:
        """Format a nanosecond duration in the configured unit."""
        if ns is None:
            return "n/a"
        return f"{self.unit.from_nanos(ns):.3f}{self.unit.value}"

    def format_change(self, relative: Optional[float]) -> str:
        """Format a relative latency change. Slower is red."""
        if relative is None:
            return "n/a"
        pct = relative * 100
        if pct > 0:
            return self._color(f"+{pct:.1f}%", "red")
        elif pct < 0:
            return self._color(f"{pct:.1f}%", "green")
        return f"{pct:.1f}%"

    def single_summary(self, summary: StatisticsSummary) -> str:
        """Generate report for a single target summary."""
        lines = []
        lines.append(self._color(f"\n{'=' * 60}", "blue"))
        lines.append(self._color(f"Target: {summary.target_id}", "bold"))
        lines.append(self._color(f"{'=' * 60}", "blue"))

        lines.append("\nRequests:")
        lines.append(f"  Total: {summary.total}")
        lines.append(f"  Ok: {summary.success}")
        lines.append(f"  Failed: {summary.failure}")
        for reason, count in sorted(summary.failures_by_reason.items()):
            lines.append(f"    {reason}: {count}")
        for status, count in sorted(summary.failures_by_status.items()):
            lines.append(f"    status {status}: {count}")
        if summary.total_bytes:
            lines.append(f"  Total bytes: {summary.total_bytes}")

        if not summary.has_durations:
            lines.append(self._color("\nNo successful requests; latency statistics absent.", "yellow"))
            return "\n".join(lines)

        lines.append(f"\nLatency Statistics ({self.unit.value}):")
        lines.append(f"  {'Mean:':<8} {self.format_duration(summary.mean)}")
        lines.append(f"  {'StdDev:':<8} {self.format_duration(summary.std_dev)}")
        lines.append(f"  {'Min:':<8} {self.format_duration(summary.min)}")
        lines.append(f"  {'Q1:':<8} {self.format_duration(summary.q1)}")
        lines.append(f"  {'Median:':<8} {self.format_duration(summary.median)}")
        lines.append(f"  {'Q3:':<8} {self.format_duration(summary.q3)}")
        lines.append(f"  {'Max:':<8} {self.format_duration(summary.max)}")

        if summary.percentiles:
            lines.append("\nPercentiles:")
            for name, value in summary.percentiles.items():
                lines.append(f"  {name + ':':<8} {self.format_duration(value)}")

        ci = summary.confidence_interval
        if ci:
            lines.append(f"\nMean {ci.level * 100:g}% CI: "
                         f"[{self.format_duration(ci.lower)}, {self.format_duration(ci.upper)}]")
        if summary.outliers:
            lines.append(f"Outliers: {len(summary.outliers)} "
                         f"(fences {self.format_duration(summary.lower_fence)} .. "
                         f"{self.format_duration(summary.upper_fence)})")
        if summary.requests_per_second:
            lines.append(f"Requests/sec (1/mean): {summary.requests_per_second:.1f}")
        if summary.throughput_rps:
            lines.append(f"Observed throughput: {summary.throughput_rps:.1f} req/s")

        return "\n".join(lines)

    def comparison_table(self, summaries: list[StatisticsSummary]) -> str:
        """Generate a comparison table for multiple summaries."""
        if not summaries:
            return "No results to display"

        headers = ["Target", "p50", "p95", "p99", "Mean", "Success"]
        col_widths = [30, 14, 14, 14, 14, 8]

        lines = []
        lines.append(self._color(f"\n{'=' * sum(col_widths)}", "blue"))
        lines.append(self._color("Benchmark Comparison", "bold"))
        lines.append(self._color(f"{'=' * sum(col_widths)}", "blue"))

        header_row = ""
        for i, header in enumerate(headers):
            header_row += f"{header:<{col_widths[i]}}"
        lines.append(self._color(header_row, "bold"))
        lines.append("-" * sum(col_widths))

        for summary in summaries:
            name = summary.target_id
            if len(name) > col_widths[0] - 2:
                name = name[:col_widths[0] - 5] + "..."
            rate = summary.success_rate
            success = f"{rate * 100:.0f}%" if rate is not None else "n/a"
            row = [
                f"{name:<{col_widths[0]}}",
                f"{self.format_duration(summary.metric('p50')):<{col_widths[1]}}",
                f"{self.format_duration(summary.metric('p95')):<{col_widths[2]}}",
                f"{self.format_duration(summary.metric('p99')):<{col_widths[3]}}",
                f"{self.format_duration(summary.mean):<{col_widths[4]}}",
                f"{success:<{col_widths[5]}}",
            ]
            lines.append("".join(row))

        return "\n".join(lines)

    def comparison_report(self, result: ComparisonResult) -> str:
        """Generate a detailed comparison report."""
        lines = []
        lines.append(self._color(f"\n{'=' * 70}", "blue"))
        lines.append(self._color(
            f"Comparison: {result.candidate_id} vs baseline {result.baseline_id}", "bold"))
        lines.append(self._color(f"{'=' * 70}", "blue"))

        for name, delta in result.deltas.items():
            lines.append(
                f"  {name + ':':<8} {self.format_duration(delta.baseline):>14} -> "
                f"{self.format_duration(delta.candidate):>14} "
                f"({self.format_change(delta.relative)})"
            )

        verdict = (
            self._color("REGRESSED", "red") if result.regressed
            else self._color("ok", "green")
        )
        lines.append(f"\n  {result.key_metric} threshold "
                     f"+{result.regression_threshold * 100:.1f}%: {verdict}")

        for test in (result.significance, result.permutation):
            if test is not None:
                lines.append(f"  {test.method}: p={test.p_value:.4g} "
                             f"(alpha={test.alpha:g}) -> {test.outcome.value}")

        return "\n".join(lines)

    def report(self, report: Report) -> str:
        """Render a whole report."""
        parts = [self.single_summary(s) for s in report.summaries.values()]
        for target_id, error in report.metadata.errors.items():
            parts.append(self._color(f"\n{target_id}: not run ({error})", "red"))
        if len(report.summaries) > 1:
            parts.append(self.comparison_table(list(report.summaries.values())))
        parts.extend(self.comparison_report(c) for c in report.comparisons)
        return "\n".join(parts)


class ChartReporter:
    """Generates visual charts using matplotlib."""

    def __init__(
        self,
        output_dir: Optional[Path] = None,
        unit: DurationUnit = DurationUnit.MILLISECONDS,
    ):
        self.output_dir = output_dir or Path("results/charts")
        self.unit = unit
        self._matplotlib_available = False
        self._check_matplotlib()

    def _check_matplotlib(self):
        """Check if matplotlib is available."""
        try:
            import matplotlib
            matplotlib.use("Agg")  # Non-interactive backend
            self._matplotlib_available = True
        except ImportError:
            self._matplotlib_available = False

    @property
    def available(self) -> bool:
        return self._matplotlib_available

    def _save(self, fig, filename: str) -> Path:
        import matplotlib.pyplot as plt

        self.output_dir.mkdir(parents=True, exist_ok=True)
        filepath = self.output_dir / filename
        fig.savefig(filepath, dpi=150, bbox_inches="tight")
        plt.close(fig)
        return filepath

    def latency_distribution(
        self,
        summary: StatisticsSummary,
        filename: Optional[str] = None,
    ) -> Optional[Path]:
        """Draw the summary's histogram bins with median and p95 markers."""
        if not self._matplotlib_available:
            print("Warning: matplotlib not available for charts")
            return None
        if not summary.histogram:
            return None

        import matplotlib.pyplot as plt

        scale = self.unit.from_nanos
        lefts = [scale(b.lower) for b in summary.histogram]
        widths = [scale(b.upper - b.lower) or 1.0 for b in summary.histogram]
        counts = [b.count for b in summary.histogram]

        fig, ax = plt.subplots(figsize=(10, 6))
        ax.bar(lefts, counts, width=widths, align="edge", edgecolor="black", alpha=0.7)
        ax.axvline(
            scale(summary.median),
            color="r",
            linestyle="--",
            label=f"median: {scale(summary.median):.2f}{self.unit.value}",
        )
        p95 = summary.metric("p95")
        if p95 is not None:
            ax.axvline(
                scale(p95),
                color="orange",
                linestyle="--",
                label=f"p95: {scale(p95):.2f}{self.unit.value}",
            )

        ax.set_xlabel(f"Latency ({self.unit.value})")
        ax.set_ylabel("Count")
        ax.set_title(f"Latency Distribution: {summary.target_id}")
        ax.legend()

        return self._save(fig, filename or f"{_safe_name(summary.target_id)}_latency_dist.png")

    def latency_over_time(
        self,
        store: SampleStore,
        filename: Optional[str] = None,
    ) -> Optional[Path]:
        """Scatter of request latency against issue time."""
        if not self._matplotlib_available:
            print("Warning: matplotlib not available for charts")
            return None

        points = time_series(store)
        if not points:
            return None

        import matplotlib.pyplot as plt

        starts = [start / 1_000_000_000 for start, _ in points]
        latencies = [self.unit.from_nanos(elapsed) for _, elapsed in points]

        fig, ax = plt.subplots(figsize=(12, 6))
        ax.scatter(starts, latencies, s=8, alpha=0.6)
        ax.set_xlabel("Time since start (s)")
        ax.set_ylabel(f"Latency ({self.unit.value})")
        ax.set_title(f"Latency over time: {store.target_id}")

        return self._save(fig, filename or f"{_safe_name(store.target_id)}_time_series.png")

    def box_plot(
        self,
        summaries: list[StatisticsSummary],
        filename: Optional[str] = None,
    ) -> Optional[Path]:
        """Box plot per target from precomputed quartiles and fences."""
        if not self._matplotlib_available:
            print("Warning: matplotlib not available for charts")
            return None

        import matplotlib.pyplot as plt

        scale = self.unit.from_nanos
        stats = []
        for s in summaries:
            if s.iqr is None:
                continue
            stats.append({
                "label": s.target_id,
                "med": scale(s.median),
                "q1": scale(s.q1),
                "q3": scale(s.q3),
                "whislo": scale(max(s.min, s.lower_fence)),
                "whishi": scale(min(s.max, s.upper_fence)),
                "fliers": [scale(o.elapsed_ns) for o in s.outliers],
            })
        if not stats:
            return None

        fig, ax = plt.subplots(figsize=(max(6, 2 * len(stats)), 6))
        ax.bxp(stats, showfliers=True)
        ax.set_ylabel(f"Latency ({self.unit.value})")
        ax.set_title("Latency by target")

        return self._save(fig, filename or "box_plot.png")

    def qq_plot(
        self,
        summary: StatisticsSummary,
        filename: Optional[str] = None,
    ) -> Optional[Path]:
        """Normal Q-Q plot of the summary's durations."""
        if not self._matplotlib_available:
            print("Warning: matplotlib not available for charts")
            return None

        points = normal_qq(summary)
        if not points:
            return None

        import matplotlib.pyplot as plt
        import numpy as np

        scale = self.unit.from_nanos
        theoretical = np.array([scale(t) for t, _ in points])
        observed = np.array([scale(o) for _, o in points])

        fig, ax = plt.subplots(figsize=(8, 8))
        ax.scatter(theoretical, observed, s=12)
        bounds = [min(theoretical.min(), observed.min()), max(theoretical.max(), observed.max())]
        ax.plot(bounds, bounds, color="grey", linestyle="--")
        ax.set_xlabel(f"Normal quantiles ({self.unit.value})")
        ax.set_ylabel(f"Observed quantiles ({self.unit.value})")
        ax.set_title(f"Normal Q-Q: {summary.target_id}")

        return self._save(fig, filename or f"{_safe_name(summary.target_id)}_qq.png")


def _safe_name(target_id: str) -> str:
    return "".join(c if c.isalnum() or c in "-_." else "_" for c in target_id)


class JSONReporter:
    """Exports reports and raw samples as JSON."""

    def __init__(self, output_dir: Optional[Path] = None):
        self.output_dir = output_dir or Path("results")

    def save_report(self, report: Report, include_durations: bool = True) -> Path:
        """Save a report to JSON."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        start = report.metadata.start_time or report.generated_at
        timestamp = start.strftime("%Y%m%d_%H%M%S")
        filepath = self.output_dir / f"{_safe_name(report.metadata.name)}_{timestamp}.json"

        with open(filepath, "w") as f:
            json.dump(report.to_dict(include_durations=include_durations), f, indent=2)

        return filepath

    def save_store(self, store: SampleStore, include_warmup: bool = False) -> Path:
        """Save a store's raw samples to JSON."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        start = store.started_at or datetime.now()
        timestamp = start.strftime("%Y%m%d_%H%M%S")
        filepath = self.output_dir / f"{_safe_name(store.target_id)}_samples_{timestamp}.json"

        with open(filepath, "w") as f:
            json.dump(store.to_dict(include_warmup=include_warmup), f, indent=2)

        return filepath

    def load_report(self, filepath: Path) -> Report:
        """Load a report saved by `save_report`."""
        with open(filepath) as f:
            return Report.from_dict(json.load(f))

    def load_summary(self, filepath: Path, target_id: Optional[str] = None) -> StatisticsSummary:
        """Load one summary from a saved report, e.g. as a comparison baseline.

        Without a target id the report must hold exactly one summary.
        """
        report = self.load_report(filepath)
        if target_id is not None:
            if target_id not in report.summaries:
                raise KeyError(f"No summary for {target_id!r} in {filepath}")
            return report.summaries[target_id]
        if len(report.summaries) != 1:
            raise ValueError(
                f"{filepath} holds {len(report.summaries)} summaries; pass a target id"
            )
        return next(iter(report.summaries.values()))

    def load_all_reports(self, pattern: str = "*.json") -> list[Report]:
        """Load all reports matching a pattern."""
        reports = []
        for filepath in sorted(self.output_dir.glob(pattern)):
            if "_samples_" in filepath.name:
                continue
            reports.append(self.load_report(filepath))
        return reports

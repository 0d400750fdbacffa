"""Tests for report assembly and renderers."""

import json
from datetime import datetime

import pytest

from http_latency_lab.analysis.comparison import compare
from http_latency_lab.analysis.statistics import StatisticsSummary, summarize
from http_latency_lab.harness.reporter import (
    REPORT_VERSION,
    CampaignMetadata,
    ChartReporter,
    ConsoleReporter,
    JSONReporter,
    Report,
    build_report,
)
from http_latency_lab.harness.runner import BenchmarkRunner, CampaignConfig
from http_latency_lab.instrumentation.timing import DurationUnit, FailureReason
from http_latency_lab.targets.definitions import RequestSpec, Target

from conftest import MS, failed, make_store, ok


def summary_of(target_id: str, values_ms: list[float]) -> StatisticsSummary:
    return summarize(make_store([ok(v, i) for i, v in enumerate(values_ms)], target_id))


@pytest.fixture
def metadata() -> CampaignMetadata:
    return CampaignMetadata(
        name="nightly",
        target_ids=["a", "b"],
        start_time=datetime(2025, 1, 2, 3, 4, 5),
        end_time=datetime(2025, 1, 2, 3, 5, 5),
    )


class TestBuildReport:
    """Test report assembly."""

    def test_missing_target_gets_empty_summary(self, metadata):
        report = build_report(metadata, [summary_of("a", [10, 20])])
        assert set(report.summaries) == {"a", "b"}
        assert report.summary("b").is_empty
        assert report.summary("a").total == 2

    def test_duplicate_summary_raises(self, metadata):
        with pytest.raises(ValueError, match="Duplicate"):
            build_report(metadata, [summary_of("a", [1]), summary_of("a", [2])])

    def test_unknown_target_is_added(self, metadata):
        report = build_report(metadata, [summary_of("c", [10])])
        assert report.metadata.target_ids == ["a", "b", "c"]
        # The caller's metadata is left alone
        assert metadata.target_ids == ["a", "b"]

    def test_regressed_flag(self, metadata):
        base = summary_of("a", [10] * 10)
        cand = summary_of("b", [20] * 10)
        report = build_report(metadata, [base, cand], [compare(base, cand)])
        assert report.regressed

    def test_to_dict_shape(self, metadata):
        report = build_report(metadata, [summary_of("b", [10, 20]), summary_of("a", [5])])
        data = report.to_dict()
        assert data["version"] == REPORT_VERSION
        assert data["metadata"]["name"] == "nightly"
        assert data["metadata"]["duration_seconds"] == 60.0
        # Summaries follow the campaign's target order
        assert [s["target_id"] for s in data["summaries"]] == ["a", "b"]
        assert "durations" not in data["summaries"][0]
        assert data["comparisons"] == []
        json.dumps(data)

    def test_from_dict(self, metadata):
        report = build_report(metadata, [summary_of("a", [10, 20, 30])])
        restored = Report.from_dict(report.to_dict(include_durations=True))
        assert restored.metadata.name == "nightly"
        assert restored.metadata.start_time == metadata.start_time
        assert restored.summary("a") == report.summary("a")
        assert restored.summary("b").is_empty

    @pytest.mark.asyncio
    async def test_failed_validation_target_in_report(self, fake_transport):
        targets = [
            Target("ok", RequestSpec(url="http://localhost/ok")),
            Target("broken", RequestSpec(url="http://localhost/x", method="BREW")),
        ]
        cfg = CampaignConfig(warmup_count=0, measured_count=3)
        campaign = await BenchmarkRunner(fake_transport, verbose=False).run_campaign(targets, cfg)

        report = build_report(
            CampaignMetadata.from_run(campaign), campaign.summaries().values()
        )
        assert report.summary("broken").is_empty
        assert "broken" in report.metadata.errors
        assert report.metadata.config["measured_count"] == 3
        assert report.metadata.targets["ok"]["request"]["url"] == "http://localhost/ok"


class TestConsoleReporter:
    """Test console rendering."""

    def test_format_duration_units(self):
        assert ConsoleReporter(unit=DurationUnit.MILLISECONDS).format_duration(1_500_000) == "1.500ms"
        assert ConsoleReporter(unit=DurationUnit.MICROSECONDS).format_duration(1_500) == "1.500us"
        assert ConsoleReporter().format_duration(None) == "n/a"

    def test_format_change(self):
        console = ConsoleReporter(use_color=False)
        assert console.format_change(0.25) == "+25.0%"
        assert console.format_change(-0.1) == "-10.0%"
        assert console.format_change(None) == "n/a"

    def test_color_applied(self):
        assert "\033[91m" in ConsoleReporter(use_color=True).format_change(0.5)
        assert "\033[" not in ConsoleReporter(use_color=False).format_change(0.5)

    def test_single_summary(self):
        output = ConsoleReporter(use_color=False).single_summary(summary_of("api", [10, 20, 30]))
        assert "Target: api" in output
        assert "Median:  20.000ms" in output
        assert "p95:" in output
        assert "CI" in output

    def test_all_failures_summary(self):
        summary = summarize(make_store(
            [failed(FailureReason.UNEXPECTED_STATUS, 3, 503)] * 2, "down"
        ))
        output = ConsoleReporter(use_color=False).single_summary(summary)
        assert "Failed: 2" in output
        assert "status 503: 2" in output
        assert "latency statistics absent" in output
        assert "Mean" not in output

    def test_report_lists_errors_and_comparisons(self, metadata):
        base = summary_of("a", [10, 11, 12])
        cand = summary_of("b", [20, 21, 22])
        metadata.errors = {"c": "[c] Invalid target URL: 'x'"}
        report = build_report(metadata, [base, cand], [compare(base, cand)])
        output = ConsoleReporter(use_color=False).report(report)
        assert "c: not run" in output
        assert "Benchmark Comparison" in output
        assert "Comparison: b vs baseline a" in output
        assert "REGRESSED" in output

    def test_comparison_table_handles_empty(self):
        console = ConsoleReporter(use_color=False)
        assert console.comparison_table([]) == "No results to display"
        table = console.comparison_table([StatisticsSummary.empty("idle")])
        assert "idle" in table
        assert "n/a" in table


class TestJSONReporter:
    """Test JSON persistence."""

    def test_save_and_load_report(self, tmp_path, metadata):
        report = build_report(metadata, [summary_of("a", [10, 20, 30]), summary_of("b", [5, 6])])
        reporter = JSONReporter(tmp_path)
        path = reporter.save_report(report)

        assert path.name == "nightly_20250102_030405.json"
        loaded = reporter.load_report(path)
        assert loaded.summary("a") == report.summary("a")
        assert loaded.summary("a").sorted_durations == (10 * MS, 20 * MS, 30 * MS)

    def test_load_summary_by_target(self, tmp_path, metadata):
        report = build_report(metadata, [summary_of("a", [10]), summary_of("b", [20])])
        reporter = JSONReporter(tmp_path)
        path = reporter.save_report(report)

        assert reporter.load_summary(path, "b").mean == 20 * MS
        with pytest.raises(ValueError):
            reporter.load_summary(path)
        with pytest.raises(KeyError):
            reporter.load_summary(path, "zzz")

    def test_load_single_summary(self, tmp_path):
        meta = CampaignMetadata(name="solo", target_ids=["only"])
        reporter = JSONReporter(tmp_path)
        path = reporter.save_report(build_report(meta, [summary_of("only", [7])]))
        assert reporter.load_summary(path).target_id == "only"

    def test_save_store(self, tmp_path):
        store = make_store([ok(1), ok(2)], "svc/health")
        path = JSONReporter(tmp_path).save_store(store)
        assert path.name.startswith("svc_health_samples_")
        data = json.loads(path.read_text())
        assert len(data["measured"]) == 2

    def test_load_all_reports_skips_samples(self, tmp_path, metadata):
        reporter = JSONReporter(tmp_path)
        reporter.save_report(build_report(metadata, [summary_of("a", [1])]))
        reporter.save_store(make_store([ok(1)], "a"))
        reports = reporter.load_all_reports()
        assert len(reports) == 1
        assert reports[0].metadata.name == "nightly"


class TestChartReporter:
    """Test chart output when matplotlib is installed."""

    def test_charts_written(self, tmp_path):
        pytest.importorskip("matplotlib")
        summary = summary_of("api", [10 + (i % 17) for i in range(120)] + [400])
        charts = ChartReporter(tmp_path)

        assert charts.latency_distribution(summary).exists()
        assert charts.qq_plot(summary).exists()
        assert charts.box_plot([summary]).exists()
        assert charts.latency_over_time(make_store([ok(10, 0), ok(12, 1)], "api")).exists()

    def test_nothing_to_draw(self, tmp_path):
        pytest.importorskip("matplotlib")
        charts = ChartReporter(tmp_path)
        empty = StatisticsSummary.empty("idle")
        assert charts.latency_distribution(empty) is None
        assert charts.qq_plot(empty) is None
        assert charts.box_plot([empty]) is None

"""Tests for the campaign runner and its configuration."""

import asyncio

import pytest

from http_latency_lab.analysis.statistics import summarize
from http_latency_lab.errors import CampaignError
from http_latency_lab.harness.runner import BenchmarkRunner, CampaignConfig, run
from http_latency_lab.instrumentation.timing import DurationUnit, FailureReason, Outcome
from http_latency_lab.targets.definitions import RequestSpec, Target

from conftest import MS, FakeTransport


def config(**kwargs) -> CampaignConfig:
    kwargs.setdefault("warmup_count", 0)
    kwargs.setdefault("measured_count", 10)
    return CampaignConfig(**kwargs)


class TestCampaignConfig:
    """Test configuration validation and environment loading."""

    @pytest.mark.parametrize(
        "overrides",
        [
            {"measured_count": 0},
            {"concurrency": 0},
            {"warmup_count": -1},
            {"timeout_seconds": 0},
            {"percentiles": (50, 120)},
            {"confidence_level": 1.0},
            {"histogram_bins": 0},
            {"regression_threshold": -0.5},
            {"measured_count": True},
            {"concurrency": True},
            {"warmup_count": False},
        ],
    )
    def test_invalid_settings_rejected(self, overrides):
        with pytest.raises(CampaignError):
            config(**overrides).validate()

    def test_key_percentile_must_be_configured(self):
        with pytest.raises(CampaignError, match="key_percentile 95"):
            config(percentiles=(50, 99)).validate()

    def test_custom_key_percentile_accepted(self):
        config(percentiles=(50, 99), key_percentile=99).validate()

    def test_error_names_target(self):
        with pytest.raises(CampaignError, match=r"^\[api\] measured_count"):
            config(measured_count=0).validate("api")

    def test_defaults_are_valid(self):
        CampaignConfig().validate()

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("LATENCY_LAB_RUNS", "250")
        monkeypatch.setenv("LATENCY_LAB_CONCURRENCY", "4")
        monkeypatch.setenv("LATENCY_LAB_PERCENTILES", "50, 99.9")
        monkeypatch.setenv("LATENCY_LAB_DURATION_UNIT", "us")
        monkeypatch.setenv("LATENCY_LAB_INSECURE", "true")

        cfg = CampaignConfig.from_env()
        assert cfg.measured_count == 250
        assert cfg.concurrency == 4
        assert cfg.percentiles == (50.0, 99.9)
        assert cfg.duration_unit is DurationUnit.MICROSECONDS
        assert cfg.disable_certificate_validation is True

    def test_overrides_win_over_env(self, monkeypatch):
        monkeypatch.setenv("LATENCY_LAB_RUNS", "250")
        cfg = CampaignConfig.from_env(measured_count=20, concurrency=None)
        assert cfg.measured_count == 20
        assert cfg.concurrency == 1

    def test_invalid_env_value(self, monkeypatch):
        monkeypatch.setenv("LATENCY_LAB_RUNS", "many")
        with pytest.raises(CampaignError, match="LATENCY_LAB_RUNS"):
            CampaignConfig.from_env()

    def test_to_dict(self):
        data = config(duration_unit="s").to_dict()
        assert data["duration_unit"] == "s"
        assert data["percentiles"] == [50.0, 90.0, 95.0, 99.0]


class TestBenchmarkRunner:
    """Test warmup, measured phase and failure handling."""

    @pytest.mark.asyncio
    async def test_sequential_run(self, target, fake_transport):
        store = await BenchmarkRunner(fake_transport, verbose=False).run(target, config())
        assert store.count == 10
        assert store.sealed
        assert not store.cancelled
        assert fake_transport.calls == 10
        assert fake_transport.max_in_flight == 1
        assert [s.sequence for s in store.measured] == list(range(10))

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, target):
        transport = FakeTransport(delay=0.01)
        store = await BenchmarkRunner(transport, verbose=False).run(
            target, config(measured_count=50, concurrency=5)
        )
        assert store.count == 50
        assert len(store.successes()) == 50
        assert transport.calls == 50
        assert 1 < transport.max_in_flight <= 5
        assert sorted(s.sequence for s in store.measured) == list(range(50))

    @pytest.mark.asyncio
    async def test_concurrency_above_count(self, target):
        transport = FakeTransport(delay=0.01)
        store = await BenchmarkRunner(transport, verbose=False).run(
            target, config(measured_count=3, concurrency=10)
        )
        assert store.count == 3
        assert transport.calls == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [{"measured_count": 0}, {"concurrency": 0}])
    async def test_invalid_config_issues_nothing(self, target, fake_transport, overrides):
        with pytest.raises(CampaignError):
            await BenchmarkRunner(fake_transport, verbose=False).run(target, config(**overrides))
        assert fake_transport.calls == 0

    @pytest.mark.asyncio
    async def test_invalid_target_issues_nothing(self, fake_transport):
        bad = Target("bad", RequestSpec(url="ftp://example.com/file"))
        with pytest.raises(CampaignError, match="Invalid target URL"):
            await BenchmarkRunner(fake_transport, verbose=False).run(bad, config())
        assert fake_transport.calls == 0

    @pytest.mark.asyncio
    async def test_warmup_is_excluded(self, target, fake_transport):
        store = await BenchmarkRunner(fake_transport, verbose=False).run(
            target, config(warmup_count=3, measured_count=4)
        )
        assert len(store.warmup) == 3
        assert store.count == 4
        assert fake_transport.calls == 7

    @pytest.mark.asyncio
    async def test_warmup_time_excluded_from_measured_clock(self, target):
        transport = FakeTransport(delay=0.01)
        store = await BenchmarkRunner(transport, verbose=False).run(
            target, config(warmup_count=40, measured_count=5)
        )
        # 40 warmup requests take at least 0.4s; the measured phase about 0.05s
        assert store.duration_seconds < 0.3
        assert summarize(store).throughput_rps > 20
        assert store.measured[0].started_ns < 100 * MS

    @pytest.mark.asyncio
    async def test_warmup_retries_failures(self, target):
        # First two attempts fail, then everything succeeds
        transport = FakeTransport(
            behaviour=lambda i: (
                Outcome.failed(FailureReason.UNEXPECTED_STATUS, 503) if i < 2
                else Outcome.success(200)
            )
        )
        store = await BenchmarkRunner(transport, verbose=False).run(
            target, config(warmup_count=1, warmup_retries=2, measured_count=5)
        )
        assert len(store.warmup) == 3
        assert store.warmup[-1].is_success
        assert len(store.successes()) == 5

    @pytest.mark.asyncio
    async def test_warmup_retry_budget_is_bounded(self, target):
        transport = FakeTransport(behaviour=lambda i: Outcome.failed(FailureReason.CONNECTION_ERROR))
        store = await BenchmarkRunner(transport, verbose=False).run(
            target, config(warmup_count=2, warmup_retries=1, measured_count=3)
        )
        assert len(store.warmup) == 4
        # Failures never stop the campaign
        assert store.count == 3
        assert len(store.failures()) == 3

    @pytest.mark.asyncio
    async def test_failures_are_recorded(self, target):
        transport = FakeTransport(
            behaviour=lambda i: (
                Outcome.failed(FailureReason.UNEXPECTED_STATUS, 500) if i % 2
                else Outcome.success(200)
            )
        )
        store = await BenchmarkRunner(transport, verbose=False).run(target, config())
        assert store.count == 10
        assert len(store.failures()) == 5
        assert all(s.outcome.status_code == 500 for s in store.failures())

    @pytest.mark.asyncio
    async def test_transport_exception_becomes_failure(self, target):
        transport = FakeTransport(
            behaviour=lambda i: ConnectionResetError("reset") if i == 1 else Outcome.success(200)
        )
        store = await BenchmarkRunner(transport, verbose=False).run(
            target, config(measured_count=3)
        )
        assert store.count == 3
        failure = store.failures()[0]
        assert failure.outcome.failure is FailureReason.TRANSPORT_ERROR
        assert failure.sequence == 1

    @pytest.mark.asyncio
    async def test_request_timeout_becomes_failure(self, target):
        transport = FakeTransport(delay=1.0)
        store = await BenchmarkRunner(transport, verbose=False).run(
            target, config(measured_count=2, timeout_seconds=0.05)
        )
        assert store.count == 2
        assert all(s.outcome.failure is FailureReason.TIMEOUT for s in store.measured)
        assert all(s.elapsed_ns >= 40_000_000 for s in store.measured)

    @pytest.mark.asyncio
    async def test_overall_timeout_cancels(self, target):
        transport = FakeTransport(delay=0.02)
        store = await BenchmarkRunner(transport, verbose=False).run(
            target, config(measured_count=1000, overall_timeout_seconds=0.1)
        )
        assert 0 < store.count < 1000
        assert store.cancelled
        assert transport.calls == store.count

    @pytest.mark.asyncio
    async def test_cancel_stops_new_requests(self, target, fake_transport):
        runner = BenchmarkRunner(fake_transport, verbose=False)

        def on_progress(completed, total):
            if completed == 5:
                runner.cancel()

        store = await runner.run(target, config(measured_count=20), progress_callback=on_progress)
        assert store.count == 5
        assert store.cancelled
        assert fake_transport.calls == 5

    @pytest.mark.asyncio
    async def test_in_flight_requests_complete_after_cancel(self, target):
        transport = FakeTransport(delay=0.01)
        runner = BenchmarkRunner(transport, verbose=False)

        def on_progress(completed, total):
            if completed == 1:
                runner.cancel()

        store = await runner.run(
            target, config(measured_count=100, concurrency=4), progress_callback=on_progress
        )
        # Everything issued is recorded
        assert store.count == transport.calls
        assert store.count < 100

    @pytest.mark.asyncio
    async def test_new_run_does_not_clear_pending_cancel(self, target):
        runner = BenchmarkRunner(FakeTransport(delay=0.01), verbose=False)
        later = []

        def on_progress(completed, total):
            if completed == 3:
                runner.cancel()
                # A second campaign on the same runner starts after the cancel
                later.append(asyncio.get_running_loop().create_task(
                    runner.run(Target("other", RequestSpec(url="http://localhost/other")),
                               config(measured_count=4))
                ))

        first = await runner.run(target, config(measured_count=50), progress_callback=on_progress)
        second = await later[0]

        assert first.count == 3
        assert first.cancelled
        assert second.count == 4
        assert not second.cancelled

    @pytest.mark.asyncio
    async def test_cancel_reaches_every_active_campaign(self, target):
        runner = BenchmarkRunner(FakeTransport(delay=0.01), verbose=False)
        other = Target("other", RequestSpec(url="http://localhost/other"))

        async def cancel_soon():
            await asyncio.sleep(0.05)
            runner.cancel()

        stores = await asyncio.gather(
            runner.run(target, config(measured_count=500)),
            runner.run(other, config(measured_count=500)),
            cancel_soon(),
        )
        assert all(store.cancelled and store.count < 500 for store in stores[:2])

    @pytest.mark.asyncio
    async def test_progress_callback(self, target, fake_transport):
        calls = []
        await BenchmarkRunner(fake_transport, verbose=False).run(
            target, config(measured_count=4), progress_callback=lambda c, t: calls.append((c, t))
        )
        assert calls == [(1, 4), (2, 4), (3, 4), (4, 4)]

    @pytest.mark.asyncio
    async def test_module_level_run(self, target, fake_transport):
        store = await run(target, fake_transport, config(measured_count=2))
        assert store.count == 2

    @pytest.mark.asyncio
    async def test_verbose_output(self, target, fake_transport, capsys):
        await BenchmarkRunner(fake_transport, verbose=True).run(target, config(measured_count=2))
        out = capsys.readouterr().out
        assert "Running benchmark: local" in out
        assert "Completed 2/2 requests" in out


class TestRunCampaign:
    """Test multi-target campaigns."""

    @pytest.mark.asyncio
    async def test_invalid_target_is_reported_not_raised(self, target, fake_transport):
        bad = Target("bad", RequestSpec(url="not a url"))
        campaign = await BenchmarkRunner(fake_transport, verbose=False).run_campaign(
            [target, bad], config(measured_count=3)
        )
        assert list(campaign.stores) == ["local"]
        assert "bad" in campaign.errors
        assert campaign.target_ids == ["local", "bad"]

        summaries = campaign.summaries()
        assert summaries["local"].total == 3
        assert summaries["bad"].is_empty

    @pytest.mark.asyncio
    async def test_targets_run_independently(self, fake_transport):
        targets = [
            Target("a", RequestSpec(url="http://localhost/a")),
            Target("b", RequestSpec(url="http://localhost/b")),
        ]
        campaign = await BenchmarkRunner(fake_transport, verbose=False).run_campaign(
            targets, config(measured_count=5)
        )
        assert {tid: s.count for tid, s in campaign.stores.items()} == {"a": 5, "b": 5}
        assert campaign.errors == {}
        assert campaign.end_time >= campaign.start_time

    @pytest.mark.asyncio
    async def test_duplicate_ids_rejected(self, target, fake_transport):
        with pytest.raises(CampaignError, match="Duplicate"):
            await BenchmarkRunner(fake_transport, verbose=False).run_campaign(
                [target, target], config()
            )
        assert fake_transport.calls == 0

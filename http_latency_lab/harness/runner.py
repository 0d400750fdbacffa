"""
Benchmark orchestrator for running HTTP latency campaigns.

A campaign against one target runs a warmup phase (samples discarded from
statistics) followed by a measured phase, either strictly sequential or with a
bounded number of requests in flight. Failed requests are recorded as samples;
only an invalid target or config stops a campaign, and only before any
request has been issued.
"""

import asyncio
import itertools
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterator, Optional

from http_latency_lab.analysis.statistics import (
    DEFAULT_CONFIDENCE_LEVEL,
    DEFAULT_PERCENTILES,
    StatisticsSummary,
    summarize,
)
from http_latency_lab.errors import CampaignError
from http_latency_lab.instrumentation.timing import (
    DurationUnit,
    FailureReason,
    Outcome,
    Sample,
    SampleStore,
    Timer,
)
from http_latency_lab.instrumentation.transport import Transport
from http_latency_lab.targets.definitions import Target

ENV_PREFIX = "LATENCY_LAB_"

ProgressCallback = Callable[[int, int], None]


def _env(name: str, cast, default):
    value = os.getenv(f"{ENV_PREFIX}{name}")
    if value is None or value == "":
        return default
    try:
        return cast(value)
    except ValueError as e:
        raise CampaignError(f"Invalid value for {ENV_PREFIX}{name}: {value!r}") from e


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_floats(value: str) -> tuple[float, ...]:
    return tuple(float(v) for v in value.split(",") if v.strip())


@dataclass
class CampaignConfig:
    """Configuration shared by every target of a campaign."""

    name: str = "campaign"
    description: str = ""
    warmup_count: int = 5
    measured_count: int = 100
    concurrency: int = 1
    timeout_seconds: Optional[float] = 30.0
    overall_timeout_seconds: Optional[float] = None
    warmup_retries: int = 2

    # Statistics settings
    percentiles: tuple[float, ...] = DEFAULT_PERCENTILES
    confidence_level: float = DEFAULT_CONFIDENCE_LEVEL
    histogram_bins: Optional[int] = None
    include_timeouts: bool = False
    bootstrap_draws: int = 0
    seed: Optional[int] = None

    # Comparison settings
    regression_threshold: float = 0.10
    key_percentile: float = 95.0
    alpha: float = 0.05

    duration_unit: DurationUnit = DurationUnit.MILLISECONDS
    disable_certificate_validation: bool = False
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        self.percentiles = tuple(float(p) for p in self.percentiles)
        if isinstance(self.duration_unit, str):
            self.duration_unit = DurationUnit(self.duration_unit)

    def validate(self, target_id: Optional[str] = None) -> None:
        """Raise CampaignError for structurally invalid settings."""
        def check(ok: bool, message: str) -> None:
            if not ok:
                raise CampaignError(message, target_id)

        check(_is_int(self.measured_count) and self.measured_count >= 1,
              f"measured_count must be an integer >= 1, got {self.measured_count!r}")
        check(_is_int(self.concurrency) and self.concurrency >= 1,
              f"concurrency must be an integer >= 1, got {self.concurrency!r}")
        check(_is_int(self.warmup_count) and self.warmup_count >= 0,
              f"warmup_count must be an integer >= 0, got {self.warmup_count!r}")
        check(_is_int(self.warmup_retries) and self.warmup_retries >= 0,
              f"warmup_retries must be an integer >= 0, got {self.warmup_retries!r}")
        check(self.timeout_seconds is None or self.timeout_seconds > 0,
              f"timeout_seconds must be > 0, got {self.timeout_seconds}")
        check(self.overall_timeout_seconds is None or self.overall_timeout_seconds > 0,
              f"overall_timeout_seconds must be > 0, got {self.overall_timeout_seconds}")
        check(all(0 <= p <= 100 for p in self.percentiles),
              f"percentiles must be within [0, 100], got {list(self.percentiles)}")
        check(0 < self.confidence_level < 1,
              f"confidence_level must be within (0, 1), got {self.confidence_level}")
        check(self.histogram_bins is None or self.histogram_bins >= 1,
              f"histogram_bins must be >= 1, got {self.histogram_bins}")
        check(self.bootstrap_draws >= 0,
              f"bootstrap_draws must be >= 0, got {self.bootstrap_draws}")
        check(self.regression_threshold >= 0,
              f"regression_threshold must be >= 0, got {self.regression_threshold}")
        check(0 <= self.key_percentile <= 100,
              f"key_percentile must be within [0, 100], got {self.key_percentile}")
        # The regression check reads the key percentile from the summaries
        check(float(self.key_percentile) in self.percentiles,
              f"key_percentile {self.key_percentile:g} must be one of the configured "
              f"percentiles {list(self.percentiles)}")
        check(0 < self.alpha < 1, f"alpha must be within (0, 1), got {self.alpha}")

    def summary_options(self) -> dict:
        """Keyword arguments for `summarize`."""
        return {
            "percentiles": self.percentiles,
            "confidence_level": self.confidence_level,
            "histogram_bins": self.histogram_bins,
            "include_timeouts": self.include_timeouts,
            "bootstrap_draws": self.bootstrap_draws,
            "seed": self.seed,
        }

    @classmethod
    def from_env(cls, **overrides) -> "CampaignConfig":
        """Build a config from LATENCY_LAB_* environment variables.

        Explicit keyword overrides win over the environment.
        """
        defaults = cls()
        values = {
            "warmup_count": _env("WARMUP", int, defaults.warmup_count),
            "measured_count": _env("RUNS", int, defaults.measured_count),
            "concurrency": _env("CONCURRENCY", int, defaults.concurrency),
            "timeout_seconds": _env("TIMEOUT", float, defaults.timeout_seconds),
            "overall_timeout_seconds": _env(
                "OVERALL_TIMEOUT", float, defaults.overall_timeout_seconds
            ),
            "percentiles": _env("PERCENTILES", _env_floats, defaults.percentiles),
            "confidence_level": _env("CONFIDENCE", float, defaults.confidence_level),
            "histogram_bins": _env("HISTOGRAM_BINS", int, defaults.histogram_bins),
            "regression_threshold": _env(
                "REGRESSION_THRESHOLD", float, defaults.regression_threshold
            ),
            "duration_unit": _env("DURATION_UNIT", DurationUnit, defaults.duration_unit),
            "disable_certificate_validation": _env(
                "INSECURE", _env_bool, defaults.disable_certificate_validation
            ),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

    def to_dict(self) -> dict:
        """Convert config to dictionary."""
        return {
            "name": self.name,
            "description": self.description,
            "warmup_count": self.warmup_count,
            "measured_count": self.measured_count,
            "concurrency": self.concurrency,
            "timeout_seconds": self.timeout_seconds,
            "overall_timeout_seconds": self.overall_timeout_seconds,
            "warmup_retries": self.warmup_retries,
            "percentiles": list(self.percentiles),
            "confidence_level": self.confidence_level,
            "histogram_bins": self.histogram_bins,
            "include_timeouts": self.include_timeouts,
            "bootstrap_draws": self.bootstrap_draws,
            "regression_threshold": self.regression_threshold,
            "key_percentile": self.key_percentile,
            "alpha": self.alpha,
            "duration_unit": self.duration_unit.value,
            "disable_certificate_validation": self.disable_certificate_validation,
            "metadata": self.metadata,
        }


@dataclass
class CampaignRun:
    """Sample stores of every target in one campaign, plus rejected targets."""

    config: CampaignConfig
    targets: list[Target]
    stores: dict[str, SampleStore]
    errors: dict[str, str]
    start_time: datetime
    end_time: datetime

    @property
    def target_ids(self) -> list[str]:
        return [t.target_id for t in self.targets]

    def summaries(self) -> dict[str, StatisticsSummary]:
        """One summary per target; targets without a store get the empty one."""
        options = self.config.summary_options()
        return {
            target_id: (
                summarize(self.stores[target_id], **options)
                if target_id in self.stores
                else StatisticsSummary.empty(target_id)
            )
            for target_id in self.target_ids
        }


class BenchmarkRunner:
    """Orchestrates benchmark campaigns over a shared transport.

    Each `run()` / `run_campaign()` call gets its own stop event, so campaigns
    sharing a runner never reset each other's cancellation.
    """

    def __init__(self, transport: Transport, verbose: bool = True):
        self.transport = transport
        self.verbose = verbose
        self._stop_events: set[asyncio.Event] = set()

    def _log(self, message: str, **kwargs) -> None:
        if self.verbose:
            print(message, **kwargs)

    def cancel(self) -> None:
        """Stop issuing new requests in every active campaign.

        In-flight requests still complete. Campaigns started afterwards are
        not affected.
        """
        for stop in self._stop_events:
            stop.set()

    @contextmanager
    def _stop_scope(self) -> Iterator[asyncio.Event]:
        stop = asyncio.Event()
        self._stop_events.add(stop)
        try:
            yield stop
        finally:
            self._stop_events.discard(stop)

    async def run(
        self,
        target: Target,
        config: CampaignConfig,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> SampleStore:
        """Run a complete campaign against one target.

        Args:
            target: Endpoint to benchmark
            config: Campaign configuration
            progress_callback: Optional callback(completed, total) per measured sample

        Raises:
            CampaignError: target or config is invalid; nothing was issued
        """
        with self._stop_scope() as stop:
            return await self._run(target, config, stop, progress_callback)

    async def run_campaign(
        self,
        targets: list[Target],
        config: CampaignConfig,
    ) -> CampaignRun:
        """Run every target independently and in parallel.

        A target rejected as invalid is recorded in `errors`; the others run.
        """
        start_time = datetime.now()

        ids = [t.target_id for t in targets]
        duplicates = {i for i in ids if ids.count(i) > 1}
        if duplicates:
            raise CampaignError(f"Duplicate target ids: {sorted(duplicates)}")

        with self._stop_scope() as stop:
            results = await asyncio.gather(
                *(self._run(target, config, stop) for target in targets),
                return_exceptions=True,
            )

        stores: dict[str, SampleStore] = {}
        errors: dict[str, str] = {}
        for target, result in zip(targets, results):
            if isinstance(result, CampaignError):
                errors[target.target_id] = str(result)
                self._log(f"Skipped {target.target_id}: {result}")
            elif isinstance(result, BaseException):
                raise result
            else:
                stores[target.target_id] = result

        return CampaignRun(
            config=config,
            targets=list(targets),
            stores=stores,
            errors=errors,
            start_time=start_time,
            end_time=datetime.now(),
        )

    async def _run(
        self,
        target: Target,
        config: CampaignConfig,
        stop: asyncio.Event,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> SampleStore:
        target.validate()
        config.validate(target.target_id)

        store = SampleStore(target.target_id)
        loop = asyncio.get_running_loop()
        deadline = None
        if config.overall_timeout_seconds is not None:
            deadline = loop.time() + config.overall_timeout_seconds

        self._log(f"\nRunning benchmark: {target.target_id}")
        self._log(f"  Request: {target.request.method.value} {target.request.url}")
        self._log(f"  Warmup runs: {config.warmup_count}")
        self._log(f"  Measured runs: {config.measured_count}")
        self._log(f"  Concurrency: {config.concurrency}")

        await self._warmup(target, config, store, time.perf_counter_ns(), stop, deadline)

        # Wall clock and sample offsets cover the measured phase only
        store.start()
        origin_ns = time.perf_counter_ns()
        await self._measure(target, config, store, origin_ns, stop, deadline, progress_callback)

        cancelled = self._stop_requested(stop, deadline)
        store.seal(cancelled=cancelled and store.count < config.measured_count)

        failures = store.failures()
        self._log(f"  Completed {store.count}/{config.measured_count} requests "
                  f"({store.count - len(failures)} ok, {len(failures)} failed)"
                  f"{' [cancelled]' if store.cancelled else ''}")
        if failures:
            by_reason: dict[str, int] = {}
            for sample in failures:
                label = sample.outcome.failure.value
                if sample.outcome.status_code is not None:
                    label = f"{label} ({sample.outcome.status_code})"
                by_reason[label] = by_reason.get(label, 0) + 1
            for label, count in sorted(by_reason.items()):
                self._log(f"    {label}: {count}")

        return store

    @staticmethod
    def _stop_requested(stop: asyncio.Event, deadline: Optional[float]) -> bool:
        if stop.is_set():
            return True
        return deadline is not None and asyncio.get_running_loop().time() >= deadline

    async def _issue(
        self,
        target: Target,
        config: CampaignConfig,
        sequence: int,
        origin_ns: int,
    ) -> Sample:
        """Issue one request and turn whatever happens into a sample."""
        started_ns = time.perf_counter_ns() - origin_ns
        timer = Timer(target.target_id).start()
        try:
            result = await asyncio.wait_for(
                self.transport.issue(target.request),
                timeout=config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            timer.stop()
            return Sample(timer.elapsed_ns, Outcome.failed(FailureReason.TIMEOUT),
                          sequence, started_ns)
        except Exception as e:
            timer.stop()
            self._log(f"  Request {sequence} error: {e!r}")
            return Sample(timer.elapsed_ns, Outcome.failed(FailureReason.TRANSPORT_ERROR),
                          sequence, started_ns)
        return Sample(result.elapsed_ns, result.outcome, sequence, started_ns,
                      result.content_length)

    async def _warmup(
        self,
        target: Target,
        config: CampaignConfig,
        store: SampleStore,
        origin_ns: int,
        stop: asyncio.Event,
        deadline: Optional[float],
    ) -> None:
        """Sequential warmup; each request is retried while it fails, within budget."""
        sequence = itertools.count()
        for i in range(config.warmup_count):
            for attempt in range(config.warmup_retries + 1):
                if self._stop_requested(stop, deadline):
                    return
                sample = await self._issue(target, config, next(sequence), origin_ns)
                store.append_warmup(sample)
                if sample.is_success:
                    break
            else:
                self._log(f"  Warmup {i + 1}/{config.warmup_count} failed after "
                          f"{config.warmup_retries + 1} attempts")

    async def _measure(
        self,
        target: Target,
        config: CampaignConfig,
        store: SampleStore,
        origin_ns: int,
        stop: asyncio.Event,
        deadline: Optional[float],
        progress_callback: Optional[ProgressCallback],
    ) -> None:
        """Measured phase with at most `config.concurrency` requests in flight.

        Workers draw sequence numbers from one counter, so the total issued
        never exceeds measured_count. With a single worker every request is
        awaited before the next one is issued.
        """
        total = config.measured_count
        sequence = itertools.count()
        report_every = max(1, total // 10)

        async def worker() -> None:
            while not self._stop_requested(stop, deadline):
                seq = next(sequence)
                if seq >= total:
                    return
                sample = await self._issue(target, config, seq, origin_ns)
                store.append(sample)
                completed = store.count
                if progress_callback:
                    progress_callback(completed, total)
                if completed % report_every == 0 or completed == total:
                    self._log(f"  Progress {completed}/{total}")

        n_workers = min(config.concurrency, total)
        await asyncio.gather(*(worker() for _ in range(n_workers)))


async def run(
    target: Target,
    transport: Transport,
    config: CampaignConfig,
    verbose: bool = False,
) -> SampleStore:
    """Run one campaign and return its sealed sample store."""
    runner = BenchmarkRunner(transport, verbose=verbose)
    return await runner.run(target, config)

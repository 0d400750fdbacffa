#!/usr/bin/env python3
"""
HTTP Latency Lab - Main entry point for running benchmarks.

Usage:
    python main.py [command] [options]

Commands:
    run       - Benchmark one or more URLs, optionally against a saved baseline
    compare   - Compare two saved reports
"""

import argparse
import asyncio
import sys
from pathlib import Path

from dotenv import load_dotenv

from http_latency_lab.analysis import compare
from http_latency_lab.errors import LatencyLabError
from http_latency_lab.harness import (
    BenchmarkRunner,
    CampaignConfig,
    CampaignMetadata,
    ChartReporter,
    ConsoleReporter,
    JSONReporter,
    build_report,
)
from http_latency_lab.instrumentation import AiohttpTransport, DurationUnit
from http_latency_lab.targets import targets_from_urls

# Load environment variables from .env file
load_dotenv()

EXIT_REGRESSED = 2


def parse_headers(values: list[str]) -> dict[str, str]:
    """Parse repeated "Name: value" options."""
    headers = {}
    for value in values or []:
        name, sep, content = value.partition(":")
        if not sep:
            raise LatencyLabError(f"Header must look like 'Name: value', got {value!r}")
        headers[name.strip()] = content.strip()
    return headers


def build_config(args) -> CampaignConfig:
    """Environment defaults, overridden by explicit CLI options."""
    percentiles = None
    if args.percentiles:
        percentiles = tuple(float(p) for p in args.percentiles.split(","))
    return CampaignConfig.from_env(
        name=args.name,
        measured_count=args.runs,
        warmup_count=args.warmup,
        concurrency=args.concurrency,
        timeout_seconds=args.timeout,
        overall_timeout_seconds=args.overall_timeout,
        percentiles=percentiles,
        confidence_level=args.confidence,
        histogram_bins=args.bins,
        include_timeouts=args.include_timeouts or None,
        bootstrap_draws=args.bootstrap,
        regression_threshold=args.threshold,
        duration_unit=DurationUnit(args.unit) if args.unit else None,
        disable_certificate_validation=args.insecure or None,
        seed=args.seed,
    )


async def run_benchmarks(args) -> int:
    """Run a campaign over the given URLs."""
    config = build_config(args)
    config.validate()
    targets = targets_from_urls(
        args.urls,
        method=args.method,
        headers=parse_headers(args.header),
        json_payload=args.json,
        gql_query=args.gql,
        bearer_token=args.bearer_token,
    )

    console = ConsoleReporter(use_color=not args.no_color, unit=config.duration_unit)
    json_reporter = JSONReporter(args.output_dir)

    async with AiohttpTransport(
        timeout_seconds=config.timeout_seconds,
        disable_certificate_validation=config.disable_certificate_validation,
    ) as transport:
        runner = BenchmarkRunner(transport, verbose=not args.quiet)
        campaign = await runner.run_campaign(targets, config)

    summaries = campaign.summaries()

    comparisons = []
    if args.baseline:
        baseline = json_reporter.load_summary(args.baseline, args.baseline_target)
        for summary in summaries.values():
            if summary.is_empty:
                print(f"Warning: {summary.target_id} has no samples, skipping comparison")
                continue
            comparisons.append(compare(
                baseline,
                summary,
                config.regression_threshold,
                key_percentile=config.key_percentile,
                alpha=config.alpha,
                permutations=args.permutations,
                seed=config.seed,
            ))
    elif len(summaries) > 1:
        # First target is the baseline for the others
        first, *others = summaries.values()
        for summary in others:
            if first.is_empty or summary.is_empty:
                continue
            comparisons.append(compare(
                first,
                summary,
                config.regression_threshold,
                key_percentile=config.key_percentile,
                alpha=config.alpha,
                permutations=args.permutations,
                seed=config.seed,
            ))

    report = build_report(CampaignMetadata.from_run(campaign), summaries.values(), comparisons)
    print(console.report(report))

    report_path = json_reporter.save_report(report)
    print(f"\nReport saved to {report_path}")
    if args.save_samples:
        for store in campaign.stores.values():
            json_reporter.save_store(store)

    if args.charts:
        charts = ChartReporter(args.output_dir / "charts", unit=config.duration_unit)
        for target_id, summary in report.summaries.items():
            charts.latency_distribution(summary)
            charts.qq_plot(summary)
            if target_id in campaign.stores:
                charts.latency_over_time(campaign.stores[target_id])
        charts.box_plot(list(report.summaries.values()))

    if args.fail_on_regression and report.regressed:
        return EXIT_REGRESSED
    return 0


async def compare_reports(args) -> int:
    """Compare two saved reports."""
    json_reporter = JSONReporter()
    baseline = json_reporter.load_summary(args.baseline_report, args.baseline_target)
    candidate = json_reporter.load_summary(args.candidate_report, args.candidate_target)

    result = compare(
        baseline,
        candidate,
        args.threshold if args.threshold is not None else 0.10,
        key_percentile=args.key_percentile,
        permutations=args.permutations,
        seed=args.seed,
    )
    console = ConsoleReporter(use_color=not args.no_color, unit=DurationUnit(args.unit or "ms"))
    print(console.comparison_report(result))

    if args.fail_on_regression and result.regressed:
        return EXIT_REGRESSED
    return 0


def add_common_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--threshold",
        type=float,
        default=None,
        help="Relative regression threshold for the key percentile (default: 0.10)",
    )
    parser.add_argument(
        "--permutations",
        type=int,
        default=0,
        help="Number of permutations for the permutation test (default: off)",
    )
    parser.add_argument("--seed", type=int, default=None, help="Random seed for resampling")
    parser.add_argument(
        "--unit",
        choices=[u.value for u in DurationUnit],
        default=None,
        help="Display unit for durations (default: ms)",
    )
    parser.add_argument("--no-color", action="store_true", help="Disable ANSI colors")
    parser.add_argument(
        "--fail-on-regression",
        action="store_true",
        help=f"Exit with status {EXIT_REGRESSED} when a regression is detected",
    )


def main():
    parser = argparse.ArgumentParser(
        description="HTTP Latency Lab - Benchmark HTTP endpoints",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python main.py run http://localhost:8080/health --runs 200 --warmup 10
    python main.py run http://localhost:8080/a http://localhost:8080/b --concurrency 8
    python main.py run http://localhost:8080/ --baseline results/campaign_20250101_120000.json
    python main.py compare results/old.json results/new.json
        """,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Benchmark one or more URLs")
    run_parser.add_argument("urls", nargs="+", help="Target URLs")
    run_parser.add_argument("--name", default="campaign", help="Campaign name")
    run_parser.add_argument("--method", default="GET", help="HTTP method (default: GET)")
    run_parser.add_argument(
        "--header", action="append", default=[], help="Request header 'Name: value' (repeatable)"
    )
    run_parser.add_argument("--json", default=None, help="Raw JSON request body")
    run_parser.add_argument("--gql", default=None, help="GraphQL query sent as {\"query\": ...}")
    run_parser.add_argument("--bearer-token", default=None, help="Bearer token for Authorization")
    run_parser.add_argument("--runs", type=int, default=None, help="Measured requests (default: 100)")
    run_parser.add_argument("--warmup", type=int, default=None, help="Warmup requests (default: 5)")
    run_parser.add_argument(
        "--concurrency", type=int, default=None, help="Requests in flight (default: 1)"
    )
    run_parser.add_argument(
        "--timeout", type=float, default=None, help="Per-request timeout in seconds (default: 30)"
    )
    run_parser.add_argument(
        "--overall-timeout", type=float, default=None, help="Stop issuing requests after N seconds"
    )
    run_parser.add_argument(
        "--percentiles", default=None, help="Comma-separated percentiles (default: 50,90,95,99)"
    )
    run_parser.add_argument(
        "--confidence", type=float, default=None, help="Confidence level (default: 0.95)"
    )
    run_parser.add_argument(
        "--bins", type=int, default=None, help="Histogram bins (default: square-root rule)"
    )
    run_parser.add_argument(
        "--include-timeouts",
        action="store_true",
        help="Include timeout durations in latency statistics",
    )
    run_parser.add_argument(
        "--bootstrap", type=int, default=None, help="Bootstrap draws for the mean CI (default: off)"
    )
    run_parser.add_argument(
        "--insecure", action="store_true", help="Disable TLS certificate validation"
    )
    run_parser.add_argument(
        "--baseline", type=Path, default=None, help="Saved report to compare against"
    )
    run_parser.add_argument(
        "--baseline-target", default=None, help="Target id inside the baseline report"
    )
    run_parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("results"),
        help="Directory to save results (default: results/)",
    )
    run_parser.add_argument("--charts", action="store_true", help="Write matplotlib charts")
    run_parser.add_argument(
        "--save-samples", action="store_true", help="Also save raw samples as JSON"
    )
    run_parser.add_argument("--quiet", action="store_true", help="Suppress progress output")
    add_common_options(run_parser)

    compare_parser = subparsers.add_parser("compare", help="Compare two saved reports")
    compare_parser.add_argument("baseline_report", type=Path, help="Baseline report JSON")
    compare_parser.add_argument("candidate_report", type=Path, help="Candidate report JSON")
    compare_parser.add_argument("--baseline-target", default=None)
    compare_parser.add_argument("--candidate-target", default=None)
    compare_parser.add_argument(
        "--key-percentile", type=float, default=95.0, help="Percentile for the regression signal"
    )
    add_common_options(compare_parser)

    args = parser.parse_args()

    commands = {
        "run": run_benchmarks,
        "compare": compare_reports,
    }

    try:
        exit_code = asyncio.run(commands[args.command](args))
    except KeyboardInterrupt:
        print("\nBenchmark interrupted by user")
        sys.exit(1)
    except (LatencyLabError, OSError, KeyError, ValueError) as e:
        print(f"\nError: {e}")
        sys.exit(1)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()

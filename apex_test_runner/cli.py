"""CLI entry point for running Apex tests."""

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from typing import Any

from apex_test_runner.connection import ConnectionConfig, PlatformConnection
from apex_test_runner.errors import InvalidSelectionError, RunError
from apex_test_runner.models.records import RunStatus, TestOutcome
from apex_test_runner.models.result import TestReport
from apex_test_runner.models.selection import RunOptions, TestLevel, TestSelection
from apex_test_runner.orchestrator import TestRunOrchestrator

OUTCOME_SYMBOLS = {
    TestOutcome.PASS: "✅",
    TestOutcome.FAIL: "❌",
    TestOutcome.COMPILE_FAIL: "❗",
    TestOutcome.SKIP: "⏭️",
}


def log_results_summary(log: logging.Logger, report: TestReport) -> None:
    """Log a formatted summary of a test report."""
    summary = report.summary
    log.info("=" * 80)
    log.info("Test Results Summary:")
    log.info("=" * 80)

    for test in report.tests:
        log.info(
            "%s %s: %s (%dms)",
            OUTCOME_SYMBOLS.get(test.outcome, "?"),
            test.full_name,
            test.outcome,
            test.run_time,
        )
        if test.message:
            log.info("  Message: %s", test.message)

    log.info(
        "Outcome: %s, %d ran, %d passed, %d failed, %d skipped",
        summary.outcome,
        summary.tests_ran,
        summary.passing,
        summary.failing,
        summary.skipped,
    )
    if summary.test_run_coverage is not None:
        log.info(
            "Coverage: run %s, org wide %s",
            summary.test_run_coverage,
            summary.org_wide_coverage,
        )


def format_output(report: TestReport) -> dict[str, Any]:
    """Format a test report for JSON output."""
    return dataclasses.asdict(report)


def has_failures(report: TestReport) -> bool:
    """Whether the report should make the command fail."""
    return report.summary.failing > 0 or report.summary.outcome is RunStatus.FAILED


async def run(
    connection_config_json: str,
    selection: TestSelection | None,
    options: RunOptions,
    *,
    run_id: str | None = None,
    exit_on_run_id: bool = False,
    code_coverage: bool = True,
) -> int:
    """Run tests (or report an existing run) and return the exit code."""
    log = logging.getLogger("apex_test_runner")
    config = ConnectionConfig.model_validate_json(connection_config_json)

    async with PlatformConnection.from_config(config) as connection:
        orchestrator = TestRunOrchestrator.from_connection(connection)
        try:
            if run_id is not None:
                log.info("Reporting results of test run %s", run_id)
                report = await orchestrator.report(
                    run_id, options, code_coverage=code_coverage
                )
            elif selection is None:
                raise InvalidSelectionError("A test selection or a run id is required")
            elif exit_on_run_id:
                handle = await orchestrator.start(selection, options)
                print(json.dumps({"test_run_id": handle.run_id}))
                return 0
            else:
                report = await orchestrator.run(selection, options)
        except RunError as e:
            log.error("Test run failed: %s", e)
            return 1

    log_results_summary(log, report)
    print(json.dumps(format_output(report), indent=2))

    return 1 if has_failures(report) else 0


def build_selection(args: argparse.Namespace) -> TestSelection | None:
    """Build the test selection from parsed arguments."""
    if args.run_id is not None:
        return None
    return TestSelection(
        class_names=args.class_names,
        class_ids=args.class_ids,
        tests=args.tests,
        suite_names=args.suite_names,
        suite_ids=args.suite_ids,
        test_level=args.test_level,
        max_failed_tests=args.max_failed_tests,
        skip_code_coverage=args.skip_code_coverage,
    )


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Run Apex tests in a Salesforce org")
    parser.add_argument(
        "--connection-config",
        required=True,
        help="JSON configuration for the org connection",
    )
    parser.add_argument(
        "--class-names", default="", help="Comma-separated Apex test class names"
    )
    parser.add_argument(
        "--class-ids", default="", help="Comma-separated Apex test class ids"
    )
    parser.add_argument(
        "--tests",
        default="",
        help="Comma-separated test names (Class.method or ns.Class.method)",
    )
    parser.add_argument(
        "--suite-names", default="", help="Comma-separated Apex test suite names"
    )
    parser.add_argument(
        "--suite-ids", default="", help="Comma-separated Apex test suite ids"
    )
    parser.add_argument(
        "--test-level",
        type=TestLevel,
        choices=list(TestLevel),
        default=TestLevel.RUN_SPECIFIED_TESTS,
        help="Which tests to run (default: RunSpecifiedTests)",
    )
    parser.add_argument(
        "--max-failed-tests",
        type=int,
        default=None,
        help="Stop running new tests after this many failures",
    )
    parser.add_argument(
        "--skip-code-coverage",
        action="store_true",
        help="Skip code coverage collection and reporting",
    )
    parser.add_argument(
        "--synchronous",
        action="store_true",
        help="Run a single test class synchronously",
    )
    parser.add_argument(
        "--wait",
        type=float,
        default=RunOptions().timeout,
        help="Seconds to wait for the run to complete",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=RunOptions().poll_interval,
        help="Seconds between queue polls",
    )
    parser.add_argument(
        "--exit-on-run-id",
        action="store_true",
        help="Print the test run id and exit without waiting for results",
    )
    parser.add_argument(
        "--run-id",
        default=None,
        help="Report the results of an already submitted test run",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    options = RunOptions(
        synchronous=args.synchronous,
        timeout=args.wait,
        streaming_timeout=args.wait,
        poll_interval=args.poll_interval,
    )
    exit_code = asyncio.run(
        run(
            connection_config_json=args.connection_config,
            selection=build_selection(args),
            options=options,
            run_id=args.run_id,
            exit_on_run_id=args.exit_on_run_id,
            code_coverage=not args.skip_code_coverage,
        )
    )
    sys.exit(exit_code)


if __name__ == "__main__":  # pragma: no cover
    main()

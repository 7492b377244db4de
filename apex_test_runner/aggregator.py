"""Assembly of test reports from finished runs."""

import asyncio
import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ValidationError

from apex_test_runner import coverage
from apex_test_runner.connection.base import Connection
from apex_test_runner.errors import (
    InvalidSelectionError,
    NoResultsError,
    ProtocolError,
)
from apex_test_runner.identifiers import is_valid_test_run_id
from apex_test_runner.models.records import (
    RunStatus,
    SyncTestResult,
    SyncTestSuccess,
    TestOutcome,
    TestResultRecord,
    TestRunSummary,
)
from apex_test_runner.models.result import (
    ApexClassInfo,
    TestCaseResult,
    TestReport,
    TestSummary,
)

log = logging.getLogger(__name__)

RUN_SUMMARY_QUERY = (
    "SELECT AsyncApexJobId, Status, ClassesCompleted, ClassesEnqueued, "
    "MethodsEnqueued, StartTime, EndTime, TestTime, UserId "
    "FROM ApexTestRunResult WHERE AsyncApexJobId = '{run_id}'"
)
TEST_RESULT_QUERY = (
    "SELECT Id, QueueItemId, StackTrace, Message, RunTime, TestTimestamp, "
    "AsyncApexJobId, MethodName, Outcome, ApexLogId, ApexClass.Id, "
    "ApexClass.Name, ApexClass.NamespacePrefix "
    "FROM ApexTestResult WHERE AsyncApexJobId = '{run_id}'"
)

FAILED_OUTCOMES = frozenset([TestOutcome.FAIL, TestOutcome.COMPILE_FAIL])


def count_outcomes(tests: Sequence[TestCaseResult]) -> tuple[int, int, int]:
    """Count passed, failed and skipped tests."""
    passed = sum(1 for test in tests if test.outcome is TestOutcome.PASS)
    failed = sum(1 for test in tests if test.outcome in FAILED_OUTCOMES)
    skipped = sum(1 for test in tests if test.outcome is TestOutcome.SKIP)
    return passed, failed, skipped


def run_outcome(status: RunStatus, passed: int, failed: int) -> RunStatus:
    """Derive the report outcome from the run status and test counts."""
    if failed > 0:
        return RunStatus.FAILED
    if passed == 0:
        return RunStatus.SKIPPED
    if status is RunStatus.COMPLETED:
        return RunStatus.PASSED
    return status


def _validate[M: BaseModel](
    model: type[M], record: Mapping[str, Any], run_id: str
) -> M:
    try:
        return model.model_validate(record)
    except ValidationError as e:
        raise ProtocolError(
            f"Unexpected {model.__name__} record: {e}",
            run_id=run_id,
            phase="aggregation",
        ) from e


def to_test_case(record: TestResultRecord) -> TestCaseResult:
    """Convert an ApexTestResult record into a report entry."""
    apex_class = ApexClassInfo(
        id=record.apex_class.id,
        name=record.apex_class.name,
        namespace_prefix=record.apex_class.namespace_prefix,
        full_name=record.apex_class.full_name,
    )
    return TestCaseResult(
        id=record.id,
        queue_item_id=record.queue_item_id,
        stack_trace=record.stack_trace,
        message=record.message,
        async_apex_job_id=record.async_apex_job_id,
        method_name=record.method_name,
        outcome=record.outcome,
        apex_log_id=record.apex_log_id,
        apex_class=apex_class,
        run_time=record.run_time or 0,
        test_timestamp=record.test_timestamp,
        full_name=f"{apex_class.full_name}.{record.method_name}",
    )


def _sync_test_case(
    item: SyncTestSuccess,
    outcome: TestOutcome,
    apex_log_id: str | None,
    *,
    message: str | None = None,
    stack_trace: str | None = None,
) -> TestCaseResult:
    full_class_name = f"{item.namespace}.{item.name}" if item.namespace else item.name
    return TestCaseResult(
        id="",
        queue_item_id=None,
        stack_trace=stack_trace,
        message=message,
        async_apex_job_id=None,
        method_name=item.method_name,
        outcome=outcome,
        apex_log_id=apex_log_id,
        apex_class=ApexClassInfo(
            id=item.id,
            name=item.name,
            namespace_prefix=item.namespace,
            full_name=full_class_name,
        ),
        run_time=item.time or 0,
        test_timestamp=None,
        full_name=f"{full_class_name}.{item.method_name}",
    )


def build_sync_report(
    result: SyncTestResult,
    *,
    started_at: datetime,
    command_time_ms: int,
    hostname: str | None = None,
) -> TestReport:
    """Build a report from a runTestsSynchronous response."""
    tests = [
        _sync_test_case(item, TestOutcome.PASS, result.apex_log_id)
        for item in result.successes
    ] + [
        _sync_test_case(
            item,
            TestOutcome.FAIL,
            result.apex_log_id,
            message=item.message,
            stack_trace=item.stack_trace,
        )
        for item in result.failures
    ]
    passed, failed = len(result.successes), len(result.failures)
    tests_ran = result.num_tests_run

    summary = TestSummary(
        outcome=RunStatus.PASSED if failed == 0 else RunStatus.FAILED,
        tests_ran=tests_ran,
        passing=passed,
        failing=failed,
        skipped=0,
        pass_rate=coverage.calculate_percentage(passed, tests_ran),
        fail_rate=coverage.calculate_percentage(failed, tests_ran),
        skip_rate=coverage.calculate_percentage(0, tests_ran),
        test_run_id="",
        test_start_time=started_at.isoformat(),
        test_execution_time_ms=result.total_time or 0,
        command_time_ms=command_time_ms,
        hostname=hostname,
    )
    return TestReport(summary=summary, tests=tests)


@dataclass(frozen=True, kw_only=True)
class ResultAggregator:
    """Fetches the results of a finished run and builds its report."""

    connection: Connection
    # Delay before the single retry when a finished run shows no results yet
    retry_delay: float = 2.0

    async def aggregate(
        self, run_id: str, *, code_coverage: bool = False
    ) -> TestReport:
        """Build the report of a finished run.

        Args:
            run_id: Test run id of a run whose queue items are all terminal
            code_coverage: Whether to attach code coverage to the report

        Raises:
            NoResultsError: If the run has no summary or no test results

        """
        if not is_valid_test_run_id(run_id):
            raise InvalidSelectionError(f"Invalid test run id: {run_id}", run_id=run_id)

        started = time.monotonic()
        summary = await self.fetch_run_summary(run_id)
        records = await self.fetch_test_results(run_id)

        tests = [to_test_case(record) for record in records]
        passed, failed, skipped = count_outcomes(tests)
        tests_ran = len(tests)

        report = TestReport(
            summary=TestSummary(
                outcome=run_outcome(summary.status, passed, failed),
                tests_ran=tests_ran,
                passing=passed,
                failing=failed,
                skipped=skipped,
                pass_rate=coverage.calculate_percentage(passed, tests_ran),
                fail_rate=coverage.calculate_percentage(failed, tests_ran),
                skip_rate=coverage.calculate_percentage(skipped, tests_ran),
                test_run_id=run_id,
                test_start_time=summary.start_time,
                test_execution_time_ms=summary.test_time or 0,
                hostname=self.connection.instance_url,
                user_id=summary.user_id,
            ),
            tests=tests,
        )

        if code_coverage:
            report = await self.add_coverage(report)

        command_time_ms = int((time.monotonic() - started) * 1000)
        log.info(
            "Run %s: %d test(s), %d passed, %d failed, %d skipped",
            run_id,
            tests_ran,
            passed,
            failed,
            skipped,
        )
        return replace(
            report, summary=replace(report.summary, command_time_ms=command_time_ms)
        )

    async def fetch_run_summary(self, run_id: str) -> TestRunSummary:
        """Fetch the ApexTestRunResult of a run."""
        records = await self._query_records(
            RUN_SUMMARY_QUERY.format(run_id=run_id), run_id, "test run summary"
        )
        return _validate(TestRunSummary, records[0], run_id)

    async def fetch_test_results(self, run_id: str) -> Sequence[TestResultRecord]:
        """Fetch the ApexTestResult records of a run."""
        records = await self._query_records(
            TEST_RESULT_QUERY.format(run_id=run_id), run_id, "test results"
        )
        return [_validate(TestResultRecord, record, run_id) for record in records]

    async def _query_records(
        self, query: str, run_id: str, kind: str
    ) -> Sequence[Mapping[str, Any]]:
        # Records of a finished run can lag behind its queue items
        records = await self.connection.query(query)
        if not records:
            log.info("No %s visible yet for run %s, retrying once", kind, run_id)
            await asyncio.sleep(self.retry_delay)
            records = await self.connection.query(query)
        if not records:
            raise NoResultsError(f"Test run finished without {kind}", run_id=run_id)
        return records

    async def add_coverage(self, report: TestReport) -> TestReport:
        """Attach per-test, aggregate and org wide coverage to a report."""
        test_class_ids = {test.apex_class.id for test in report.tests}
        per_test = await coverage.get_per_test_coverage(self.connection, test_class_ids)

        tests = [
            replace(
                test,
                per_class_coverage=per_test.get((test.apex_class.id, test.method_name)),
            )
            for test in report.tests
        ]
        covered_class_ids = {
            item.apex_class_or_trigger_id
            for test in tests
            for item in test.per_class_coverage or ()
        }

        aggregate = await coverage.get_aggregate_coverage(
            self.connection, covered_class_ids
        )
        org_wide = await coverage.get_org_wide_coverage(self.connection)

        summary = replace(
            report.summary,
            total_lines=aggregate.total_lines,
            covered_lines=aggregate.covered_lines,
            test_run_coverage=coverage.calculate_percentage(
                aggregate.covered_lines, aggregate.total_lines
            ),
            org_wide_coverage=org_wide,
        )
        return replace(report, summary=summary, tests=tests, coverage=aggregate.results)

"""Pydantic models for Tooling API records and responses."""

from collections.abc import Sequence
from enum import StrEnum

from pydantic import ConfigDict, Field
from pydantic.alias_generators import to_camel

from apex_test_runner.models.base import Model, RecordModel


class QueueItemStatus(StrEnum):
    """Status of an ApexTestQueueItem."""

    HOLDING = "Holding"
    QUEUED = "Queued"
    PREPARING = "Preparing"
    PROCESSING = "Processing"
    ABORTED = "Aborted"
    COMPLETED = "Completed"
    FAILED = "Failed"


TERMINAL_QUEUE_STATUSES: frozenset[QueueItemStatus] = frozenset(
    [QueueItemStatus.ABORTED, QueueItemStatus.COMPLETED, QueueItemStatus.FAILED]
)


class RunStatus(StrEnum):
    """Status of an ApexTestRunResult, also used as the report outcome."""

    QUEUED = "Queued"
    PROCESSING = "Processing"
    ABORTED = "Aborted"
    PASSED = "Passed"
    FAILED = "Failed"
    COMPLETED = "Completed"
    SKIPPED = "Skipped"


class TestOutcome(StrEnum):
    """Outcome of a single test method."""

    __test__ = False

    PASS = "Pass"
    FAIL = "Fail"
    COMPILE_FAIL = "CompileFail"
    SKIP = "Skip"


class QueueItem(RecordModel):
    """Per-class execution record of a run (ApexTestQueueItem)."""

    id: str
    run_id: str = Field(alias="ParentJobId")
    status: QueueItemStatus
    apex_class_id: str | None = None
    test_run_result_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        """Whether the item reached a status it never leaves."""
        return self.status in TERMINAL_QUEUE_STATUSES


class TestRunSummary(RecordModel):
    """Run-level summary (ApexTestRunResult)."""

    __test__ = False

    async_apex_job_id: str
    status: RunStatus
    start_time: str | None = None
    test_time: int | None = None
    user_id: str | None = None


class ApexClassRef(RecordModel):
    """Relationship fields of the ApexClass a test belongs to."""

    id: str
    name: str
    namespace_prefix: str | None = None

    @property
    def full_name(self) -> str:
        """Class name qualified with its namespace, if any."""
        if self.namespace_prefix:
            return f"{self.namespace_prefix}.{self.name}"
        return self.name


class TestResultRecord(RecordModel):
    """Outcome of one test method (ApexTestResult)."""

    __test__ = False

    id: str
    queue_item_id: str | None = None
    stack_trace: str | None = None
    message: str | None = None
    async_apex_job_id: str | None = None
    method_name: str
    outcome: TestOutcome
    apex_log_id: str | None = None
    apex_class: ApexClassRef
    run_time: int | None = None
    test_timestamp: str | None = None


class CoverageLines(Model):
    """Line numbers covered and not covered by tests."""

    model_config = ConfigDict(
        frozen=True, alias_generator=to_camel, populate_by_name=True
    )

    covered_lines: Sequence[int] = ()
    uncovered_lines: Sequence[int] = ()


class ClassOrTriggerRef(RecordModel):
    """Relationship fields of a covered class or trigger."""

    id: str
    name: str


class CodeCoverageRecord(RecordModel):
    """Coverage produced by one test method (ApexCodeCoverage)."""

    apex_test_class_id: str
    apex_class_or_trigger: ClassOrTriggerRef
    test_method_name: str
    num_lines_covered: int
    num_lines_uncovered: int
    coverage: CoverageLines | None = None


class CodeCoverageAggregateRecord(RecordModel):
    """Coverage of one class or trigger across tests (ApexCodeCoverageAggregate)."""

    apex_class_or_trigger: ClassOrTriggerRef
    num_lines_covered: int
    num_lines_uncovered: int
    coverage: CoverageLines = CoverageLines()


class OrgWideCoverageRecord(RecordModel):
    """Org wide coverage percentage (ApexOrgWideCoverage)."""

    percent_covered: int


class SyncTestSuccess(Model):
    """Passing test method in a runTestsSynchronous response."""

    model_config = ConfigDict(
        frozen=True, alias_generator=to_camel, populate_by_name=True
    )

    id: str
    method_name: str
    name: str
    namespace: str | None = None
    time: int | None = None


class SyncTestFailure(SyncTestSuccess):
    """Failing test method in a runTestsSynchronous response."""

    message: str | None = None
    stack_trace: str | None = None
    type: str | None = None


class SyncTestResult(Model):
    """Response body of runTestsSynchronous."""

    __test__ = False

    model_config = ConfigDict(
        frozen=True, alias_generator=to_camel, populate_by_name=True
    )

    apex_log_id: str | None = None
    failures: Sequence[SyncTestFailure] = ()
    num_failures: int = 0
    num_tests_run: int = 0
    successes: Sequence[SyncTestSuccess] = ()
    total_time: int | None = None

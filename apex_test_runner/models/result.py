"""Models for test run results."""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

from apex_test_runner.models.records import RunStatus, TestOutcome


@dataclass(frozen=True, kw_only=True)
class RunHandle:
    """Identifier of a submitted asynchronous run."""

    run_id: str
    submitted_at_sync: bool = False


@dataclass(frozen=True, kw_only=True)
class ApexClassInfo:
    """Class a test method belongs to."""

    id: str
    name: str
    namespace_prefix: str | None
    full_name: str


@dataclass(frozen=True, kw_only=True)
class PerClassCoverage:
    """Coverage of one class or trigger by one test method."""

    apex_class_or_trigger_name: str
    apex_class_or_trigger_id: str
    apex_test_class_id: str
    apex_test_method_name: str
    num_lines_covered: int
    num_lines_uncovered: int
    percentage: str
    covered_lines: Sequence[int] | None = None
    uncovered_lines: Sequence[int] | None = None


@dataclass(frozen=True, kw_only=True)
class TestCaseResult:
    """Outcome of a single test method."""

    __test__ = False

    id: str
    queue_item_id: str | None
    stack_trace: str | None
    message: str | None
    async_apex_job_id: str | None
    method_name: str
    outcome: TestOutcome
    apex_log_id: str | None
    apex_class: ApexClassInfo
    run_time: int
    test_timestamp: str | None
    full_name: str
    per_class_coverage: Sequence[PerClassCoverage] | None = None


@dataclass(frozen=True, kw_only=True)
class CoverageResult:
    """Aggregate coverage of one class or trigger."""

    apex_id: str
    name: str
    type: Literal["ApexClass", "ApexTrigger"]
    num_lines_covered: int
    num_lines_uncovered: int
    percentage: str
    covered_lines: Sequence[int]
    uncovered_lines: Sequence[int]


@dataclass(frozen=True, kw_only=True)
class TestSummary:
    """Counts and metadata of a finished run."""

    __test__ = False

    outcome: RunStatus
    tests_ran: int
    passing: int
    failing: int
    skipped: int
    pass_rate: str
    fail_rate: str
    skip_rate: str
    test_run_id: str
    test_start_time: str | None = None
    test_execution_time_ms: int = 0
    command_time_ms: int = 0
    hostname: str | None = None
    user_id: str | None = None
    total_lines: int | None = None
    covered_lines: int | None = None
    test_run_coverage: str | None = None
    org_wide_coverage: str | None = None


@dataclass(frozen=True, kw_only=True)
class TestReport:
    """Final report of a test run."""

    __test__ = False

    summary: TestSummary
    tests: Sequence[TestCaseResult]
    coverage: Sequence[CoverageResult] | None = None

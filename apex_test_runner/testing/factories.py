"""Test factories for generating test data."""

from polyfactory import Use
from polyfactory.factories import DataclassFactory
from polyfactory.factories.pydantic_factory import ModelFactory
from pydantic import SecretStr

from apex_test_runner.connection.config import ConnectionConfig
from apex_test_runner.models.records import RunStatus, TestOutcome
from apex_test_runner.models.result import (
    ApexClassInfo,
    TestCaseResult,
    TestReport,
    TestSummary,
)
from apex_test_runner.testing.payloads import CLASS_ID, RUN_ID


class ConnectionConfigFactory(ModelFactory[ConnectionConfig]):
    """Factory for ConnectionConfig."""

    instance_url = "https://example.my.salesforce.com"
    access_token = SecretStr("00Dxx!token")
    api_version = "61.0"
    refresh_token = None
    client_id = "PlatformCLI"
    client_secret = None
    login_url = "https://login.salesforce.com"


class ApexClassInfoFactory(DataclassFactory[ApexClassInfo]):
    """Factory for ApexClassInfo."""

    id = CLASS_ID
    name = "FooTest"
    namespace_prefix = None
    full_name = "FooTest"


class TestCaseResultFactory(DataclassFactory[TestCaseResult]):
    """Factory for TestCaseResult."""

    __test__ = False

    outcome = TestOutcome.PASS
    async_apex_job_id = RUN_ID
    apex_class = Use(ApexClassInfoFactory.build)
    stack_trace = None
    message = None
    per_class_coverage = None


class TestSummaryFactory(DataclassFactory[TestSummary]):
    """Factory for TestSummary."""

    __test__ = False

    outcome = RunStatus.PASSED
    test_run_id = RUN_ID
    failing = 0
    skipped = 0
    total_lines = None
    covered_lines = None
    test_run_coverage = None
    org_wide_coverage = None


class TestReportFactory(DataclassFactory[TestReport]):
    """Factory for TestReport."""

    __test__ = False

    summary = Use(TestSummaryFactory.build)
    tests = Use(lambda: [TestCaseResultFactory.build()])
    coverage = None

"""Models describing which tests to run and how."""

from collections.abc import Sequence
from enum import StrEnum
from typing import Annotated, Any

from pydantic import BeforeValidator, Field

from apex_test_runner.models.base import Model, WireModel

DEFAULT_STREAMING_TIMEOUT = 14400.0


class TestLevel(StrEnum):
    """Which tests the platform runs."""

    __test__ = False

    RUN_SPECIFIED_TESTS = "RunSpecifiedTests"
    RUN_LOCAL_TESTS = "RunLocalTests"
    RUN_ALL_TESTS_IN_ORG = "RunAllTestsInOrg"


def _split_names(value: Any) -> Any:
    if isinstance(value, str):
        return tuple(name.strip() for name in value.split(",") if name.strip())
    return value


NameList = Annotated[Sequence[str], BeforeValidator(_split_names)]


class TestSelection(Model):
    """Tests requested by the caller.

    Exactly one mode must be populated: classes (names, ids or
    ``Class.method`` test names), suites (names or ids), or one of the
    "all" test levels. Comma-separated strings are accepted for every list.
    """

    __test__ = False

    class_names: NameList = Field(default=(), description="Apex class names")
    class_ids: NameList = Field(default=(), description="Apex class ids")
    tests: NameList = Field(
        default=(), description="Test names as Class.method or ns.Class.method"
    )
    suite_names: NameList = Field(default=(), description="Test suite names")
    suite_ids: NameList = Field(default=(), description="Test suite ids")
    test_level: TestLevel = TestLevel.RUN_SPECIFIED_TESTS
    max_failed_tests: int | None = Field(
        default=None, description="Stop running new tests after this many failures"
    )
    skip_code_coverage: bool = False

    @property
    def has_classes(self) -> bool:
        """Whether class names, class ids or test names were given."""
        return bool(self.class_names or self.class_ids or self.tests)

    @property
    def has_suites(self) -> bool:
        """Whether suite names or ids were given."""
        return bool(self.suite_names or self.suite_ids)


class RunOptions(Model):
    """Run-level options that are not part of the test selection."""

    synchronous: bool = False
    timeout: float = Field(
        default=DEFAULT_STREAMING_TIMEOUT,
        gt=0,
        description="Overall deadline in seconds for the whole run",
    )
    streaming_timeout: float = Field(
        default=DEFAULT_STREAMING_TIMEOUT,
        gt=0,
        description="How long to wait on the streaming channel before polling",
    )
    poll_interval: float = Field(default=3.0, gt=0)


class TestItem(WireModel):
    """A single class entry of a run request."""

    __test__ = False

    class_name: str | None = None
    class_id: str | None = None
    namespace: str | None = None
    test_methods: Sequence[str] | None = None


class RunSubmission(WireModel):
    """Request body for runTestsSynchronous or runTestsAsynchronous."""

    synchronous: bool = Field(default=False, exclude=True)
    tests: Sequence[TestItem] | None = None
    suite_names: str | None = None
    suite_ids: str | None = Field(default=None, alias="suiteids")
    test_level: TestLevel
    max_failed_tests: int | None = None
    skip_code_coverage: bool | None = None

    @property
    def code_coverage(self) -> bool:
        """Whether coverage should be collected for this run."""
        return not self.skip_code_coverage

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the JSON body expected by the platform."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

"""Translation of test selections into run requests."""

from collections.abc import Sequence
from dataclasses import dataclass

from apex_test_runner.errors import InvalidSelectionError
from apex_test_runner.identifiers import is_valid_apex_class_id
from apex_test_runner.models.selection import (
    RunOptions,
    RunSubmission,
    TestItem,
    TestLevel,
    TestSelection,
)

MAX_FAILED_TESTS_LIMIT = 1_000_000

type ClassKey = tuple[str | None, str | None, str | None]


def parse_test_name(name: str) -> tuple[ClassKey, str | None]:
    """Split a test name into its class key and method.

    Accepted forms are ``ns.Class.method``, ``Class.method`` and a bare
    class name or id. The class key is ``(namespace, class_name, class_id)``.
    """
    parts = name.split(".")
    match parts:
        case [namespace, class_name, method]:
            return (namespace, class_name, None), method
        case [class_name, method]:
            return (None, class_name, None), method
        case [single]:
            return class_key(single), None
    raise InvalidSelectionError(f"Invalid test name: {name}")


def class_key(name: str) -> ClassKey:
    """Build the class key of a class name, which may be an id."""
    if is_valid_apex_class_id(name):
        return None, None, name
    return None, name, None


@dataclass(frozen=True)
class RequestBuilder:
    """Validates test selections and builds the matching run request."""

    def build(
        self, selection: TestSelection, options: RunOptions | None = None
    ) -> RunSubmission:
        """Build the run request for a selection.

        Raises:
            InvalidSelectionError: If the selection has no mode or more than one,
                an out of range failure limit, a malformed class id, or more
                than one class for a synchronous run

        """
        options = options or RunOptions()
        self._validate_mode(selection)
        self._validate_max_failed_tests(selection.max_failed_tests)

        for class_id in selection.class_ids:
            if not is_valid_apex_class_id(class_id):
                raise InvalidSelectionError(f"Invalid Apex class id: {class_id}")

        if options.synchronous:
            return self._build_sync(selection)
        return self._build_async(selection)

    def _validate_mode(self, selection: TestSelection) -> None:
        modes = [
            name
            for name, populated in (
                ("classes", selection.has_classes),
                ("suites", selection.has_suites),
                (
                    selection.test_level.value,
                    selection.test_level is not TestLevel.RUN_SPECIFIED_TESTS,
                ),
            )
            if populated
        ]
        if not modes:
            raise InvalidSelectionError(
                "No tests selected: specify classes, tests, suites or a test level"
            )
        if len(modes) > 1:
            raise InvalidSelectionError(
                f"Only one kind of selection is allowed, got {', '.join(modes)}"
            )

    def _validate_max_failed_tests(self, value: int | None) -> None:
        if value is None:
            return
        if not 0 <= value <= MAX_FAILED_TESTS_LIMIT:
            raise InvalidSelectionError(
                f"max_failed_tests must be between 0 and {MAX_FAILED_TESTS_LIMIT}, "
                f"got {value}"
            )

    def _build_sync(self, selection: TestSelection) -> RunSubmission:
        if not selection.has_classes:
            raise InvalidSelectionError(
                "Synchronous runs only accept a class or tests of a class"
            )
        items = self._test_items(selection)
        if len(items) != 1:
            raise InvalidSelectionError(
                f"Synchronous runs accept exactly one class, got {len(items)}"
            )
        return RunSubmission(
            synchronous=True,
            tests=items,
            test_level=TestLevel.RUN_SPECIFIED_TESTS,
            max_failed_tests=selection.max_failed_tests,
            skip_code_coverage=selection.skip_code_coverage,
        )

    def _build_async(self, selection: TestSelection) -> RunSubmission:
        common = {
            "max_failed_tests": selection.max_failed_tests,
            "skip_code_coverage": selection.skip_code_coverage,
        }
        if selection.has_classes:
            return RunSubmission(
                tests=self._test_items(selection),
                test_level=TestLevel.RUN_SPECIFIED_TESTS,
                **common,
            )
        if selection.has_suites:
            return RunSubmission(
                suite_names=_join(selection.suite_names),
                suite_ids=_join(selection.suite_ids),
                test_level=TestLevel.RUN_SPECIFIED_TESTS,
                **common,
            )
        return RunSubmission(test_level=selection.test_level, **common)

    def _test_items(self, selection: TestSelection) -> Sequence[TestItem]:
        # None as the method list means every test method of the class
        groups: dict[ClassKey, list[str] | None] = {}

        def add(key: ClassKey, method: str | None) -> None:
            if method is None:
                groups[key] = None
            elif key not in groups:
                groups[key] = [method]
            elif (methods := groups[key]) is not None and method not in methods:
                methods.append(method)

        for name in selection.class_names:
            add(class_key(name), None)
        for class_id in selection.class_ids:
            add((None, None, class_id), None)
        for name in selection.tests:
            add(*parse_test_name(name))

        return [
            TestItem(
                namespace=namespace,
                class_name=class_name,
                class_id=class_id,
                test_methods=methods,
            )
            for (namespace, class_name, class_id), methods in groups.items()
        ]


def _join(names: Sequence[str]) -> str | None:
    return ",".join(names) if names else None

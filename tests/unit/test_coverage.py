"""Tests for code coverage queries."""

from unittest.mock import Mock

import pytest

from apex_test_runner.coverage import (
    AGGREGATE_COVERAGE_QUERY,
    QUERY_RECORD_LIMIT,
    calculate_percentage,
    chunked_id_lists,
    get_aggregate_coverage,
    get_org_wide_coverage,
    get_per_test_coverage,
)
from apex_test_runner.testing.payloads import (
    CLASS_ID,
    code_coverage,
    code_coverage_aggregate,
)


@pytest.mark.parametrize(
    ("dividend", "divisor", "expected"),
    [(0, 0, "0%"), (0, 4, "0%"), (3, 4, "75%"), (1, 3, "33%"), (2, 3, "67%")],
)
def test_calculate_percentage(dividend: int, divisor: int, expected: str) -> None:
    """Formats ratios as whole percentages."""
    assert calculate_percentage(dividend, divisor) == expected


def test_chunked_id_lists_splits_large_sets() -> None:
    """Splits id lists into chunks of at most the record limit."""
    ids = {f"01pxx{i:013d}" for i in range(QUERY_RECORD_LIMIT + 1)}

    chunks = list(chunked_id_lists(ids))

    assert len(chunks) == 2
    assert chunks[0].count(",") == QUERY_RECORD_LIMIT - 1
    assert chunks[1].count("'") == 2


async def test_per_test_coverage_groups_by_test_method(connection: Mock) -> None:
    """Groups coverage by test class and method."""
    connection.query.return_value = [
        code_coverage(method_name="testOne", covered_name="Foo"),
        code_coverage(
            method_name="testOne",
            covered_id="01qxx0000000001AAA",
            covered_name="FooTrigger",
        ),
        code_coverage(method_name="testTwo", covered=0, uncovered=4),
    ]

    coverage = await get_per_test_coverage(connection, {CLASS_ID})

    test_one = coverage[CLASS_ID, "testOne"]
    assert [item.apex_class_or_trigger_name for item in test_one] == [
        "Foo",
        "FooTrigger",
    ]
    assert coverage[CLASS_ID, "testTwo"][0].percentage == "0%"
    assert f"'{CLASS_ID}'" in connection.query.await_args.args[0]


async def test_per_test_coverage_skips_query_without_ids(connection: Mock) -> None:
    """Does not query when no test classes ran."""
    assert await get_per_test_coverage(connection, set()) == {}

    connection.query.assert_not_awaited()


async def test_aggregate_coverage_totals_lines(connection: Mock) -> None:
    """Sums covered and total lines across classes and triggers."""
    connection.query.return_value = [
        code_coverage_aggregate(covered=3, uncovered=1),
        code_coverage_aggregate(
            covered_id="01qxx0000000001AAA",
            covered_name="FooTrigger",
            covered=1,
            uncovered=3,
        ),
    ]

    aggregate = await get_aggregate_coverage(connection, {"01pxx00000NWwb4AAD"})

    assert aggregate.total_lines == 8
    assert aggregate.covered_lines == 4
    assert [item.type for item in aggregate.results] == ["ApexClass", "ApexTrigger"]


async def test_aggregate_coverage_without_ids_queries_everything(
    connection: Mock,
) -> None:
    """Fetches every aggregate record when no per-test coverage exists."""
    connection.query.return_value = []

    aggregate = await get_aggregate_coverage(connection, set())

    assert aggregate.total_lines == 0
    connection.query.assert_awaited_once_with(AGGREGATE_COVERAGE_QUERY)


async def test_org_wide_coverage(connection: Mock) -> None:
    """Formats the org wide percentage."""
    connection.query.return_value = [{"PercentCovered": 81}]

    assert await get_org_wide_coverage(connection) == "81%"


async def test_org_wide_coverage_without_records(connection: Mock) -> None:
    """Reports zero when the org has no coverage record."""
    connection.query.return_value = []

    assert await get_org_wide_coverage(connection) == "0%"

"""Code coverage queries for finished test runs."""

import asyncio
import logging
from collections.abc import Collection, Iterator, Mapping, Sequence
from dataclasses import dataclass

from apex_test_runner.connection.base import Connection
from apex_test_runner.identifiers import CLASS_ID_PREFIX
from apex_test_runner.models.records import (
    CodeCoverageAggregateRecord,
    CodeCoverageRecord,
    OrgWideCoverageRecord,
)
from apex_test_runner.models.result import CoverageResult, PerClassCoverage

log = logging.getLogger(__name__)

# Keeps IN (...) lists well under the query length limit
QUERY_RECORD_LIMIT = 500

PER_TEST_COVERAGE_QUERY = (
    "SELECT ApexTestClassId, ApexClassOrTrigger.Id, ApexClassOrTrigger.Name, "
    "TestMethodName, NumLinesCovered, NumLinesUncovered, Coverage "
    "FROM ApexCodeCoverage WHERE ApexTestClassId IN ({ids})"
)
AGGREGATE_COVERAGE_QUERY = (
    "SELECT ApexClassOrTrigger.Id, ApexClassOrTrigger.Name, NumLinesCovered, "
    "NumLinesUncovered, Coverage FROM ApexCodeCoverageAggregate"
)
ORG_WIDE_COVERAGE_QUERY = "SELECT PercentCovered FROM ApexOrgWideCoverage"


@dataclass(frozen=True, kw_only=True)
class AggregateCoverage:
    """Aggregate coverage of the classes touched by a run."""

    results: Sequence[CoverageResult]
    total_lines: int
    covered_lines: int


def calculate_percentage(dividend: int, divisor: int) -> str:
    """Format a ratio as a whole percentage, e.g. ``"75%"``."""
    if divisor == 0:
        return "0%"
    return f"{dividend / divisor * 100:.0f}%"


def chunked_id_lists(ids: Collection[str]) -> Iterator[str]:
    """Yield quoted, comma separated id lists of at most QUERY_RECORD_LIMIT ids."""
    ordered = sorted(ids)
    for start in range(0, len(ordered), QUERY_RECORD_LIMIT):
        chunk = ordered[start : start + QUERY_RECORD_LIMIT]
        yield ",".join(f"'{record_id}'" for record_id in chunk)


async def get_per_test_coverage(
    connection: Connection, test_class_ids: Collection[str]
) -> Mapping[tuple[str, str], Sequence[PerClassCoverage]]:
    """Fetch coverage produced by each test method.

    Returns:
        Coverage keyed by (test class id, test method name). A test that
        covers several classes has one entry per covered class.

    """
    if not test_class_ids:
        return {}

    pages = await asyncio.gather(
        *(
            connection.query(PER_TEST_COVERAGE_QUERY.format(ids=ids))
            for ids in chunked_id_lists(test_class_ids)
        )
    )

    coverage: dict[tuple[str, str], list[PerClassCoverage]] = {}
    for records in pages:
        for record in records:
            item = CodeCoverageRecord.model_validate(record)
            key = (item.apex_test_class_id, item.test_method_name)
            coverage.setdefault(key, []).append(
                PerClassCoverage(
                    apex_class_or_trigger_name=item.apex_class_or_trigger.name,
                    apex_class_or_trigger_id=item.apex_class_or_trigger.id,
                    apex_test_class_id=item.apex_test_class_id,
                    apex_test_method_name=item.test_method_name,
                    num_lines_covered=item.num_lines_covered,
                    num_lines_uncovered=item.num_lines_uncovered,
                    percentage=calculate_percentage(
                        item.num_lines_covered,
                        item.num_lines_covered + item.num_lines_uncovered,
                    ),
                    covered_lines=(
                        item.coverage.covered_lines if item.coverage else None
                    ),
                    uncovered_lines=(
                        item.coverage.uncovered_lines if item.coverage else None
                    ),
                )
            )
    return coverage


async def get_aggregate_coverage(
    connection: Connection, class_ids: Collection[str]
) -> AggregateCoverage:
    """Fetch aggregate coverage for the given classes and triggers.

    With "Store Only Aggregate Code Coverage" enabled no per-test coverage
    exists, so an empty id set fetches every aggregate record instead.
    """
    if class_ids:
        queries = [
            f"{AGGREGATE_COVERAGE_QUERY} WHERE ApexClassOrTriggerId IN ({ids})"
            for ids in chunked_id_lists(class_ids)
        ]
    else:
        queries = [AGGREGATE_COVERAGE_QUERY]

    pages = await asyncio.gather(*(connection.query(query) for query in queries))

    results: list[CoverageResult] = []
    covered = uncovered = 0
    for records in pages:
        for record in records:
            item = CodeCoverageAggregateRecord.model_validate(record)
            covered += item.num_lines_covered
            uncovered += item.num_lines_uncovered
            results.append(
                CoverageResult(
                    apex_id=item.apex_class_or_trigger.id,
                    name=item.apex_class_or_trigger.name,
                    type=(
                        "ApexClass"
                        if item.apex_class_or_trigger.id.startswith(CLASS_ID_PREFIX)
                        else "ApexTrigger"
                    ),
                    num_lines_covered=item.num_lines_covered,
                    num_lines_uncovered=item.num_lines_uncovered,
                    percentage=calculate_percentage(
                        item.num_lines_covered,
                        item.num_lines_covered + item.num_lines_uncovered,
                    ),
                    covered_lines=item.coverage.covered_lines,
                    uncovered_lines=item.coverage.uncovered_lines,
                )
            )

    log.debug("Fetched aggregate coverage for %d class(es)", len(results))
    return AggregateCoverage(
        results=results, total_lines=covered + uncovered, covered_lines=covered
    )


async def get_org_wide_coverage(connection: Connection) -> str:
    """Fetch the org wide coverage percentage, e.g. ``"87%"``."""
    records = await connection.query(ORG_WIDE_COVERAGE_QUERY)
    if not records:
        return "0%"
    return f"{OrgWideCoverageRecord.model_validate(records[0]).percent_covered}%"

"""Integration tests for completion detection over a real broker."""

from typing import Any
from unittest.mock import Mock

import pytest
from aioresponses import aioresponses as aioresponses_cls

from apex_test_runner.aggregator import ResultAggregator
from apex_test_runner.builder import RequestBuilder
from apex_test_runner.connection import PlatformConnection
from apex_test_runner.models.selection import RunOptions, TestSelection
from apex_test_runner.orchestrator import TestRunOrchestrator, streaming_subscriber
from apex_test_runner.polling import QueuePoller
from apex_test_runner.submitter import RunSubmitter
from apex_test_runner.testing.factories import TestReportFactory
from apex_test_runner.testing.payloads import RUN_ID, queue_item

INSTANCE_URL = "https://example.my.salesforce.com"
ENDPOINT = f"{INSTANCE_URL}/cometd/61.0"


@pytest.fixture
def connection() -> Mock:
    """Create connection mock answering queue polls."""
    connection = Mock(spec=PlatformConnection)
    connection.instance_url = INSTANCE_URL
    connection.version = "61.0"
    connection.access_token = "00Dxx!token"
    connection.base_url = f"{INSTANCE_URL}/services/data/v61.0/tooling"
    connection.request.return_value = RUN_ID
    return connection


@pytest.fixture
def aggregator() -> Mock:
    """Create mock aggregator."""
    mock = Mock(spec=ResultAggregator)
    mock.aggregate.return_value = TestReportFactory.build()
    return mock


@pytest.fixture
def orchestrator(connection: Mock, aggregator: Mock) -> TestRunOrchestrator:
    """Create orchestrator streaming through a real broker."""
    return TestRunOrchestrator(
        builder=RequestBuilder(),
        submitter=RunSubmitter(connection=connection),
        poller=QueuePoller(connection=connection, poll_interval=0.01),
        aggregator=aggregator,
        subscriber_factory=lambda: streaming_subscriber(connection),
    )


async def test_falls_back_to_polling_on_non_json_broker_reply(
    orchestrator: TestRunOrchestrator,
    connection: Mock,
    aggregator: Mock,
    aioresponses: aioresponses_cls,
) -> None:
    """Completes through polling when the broker answers with an HTML page."""
    aioresponses.post(
        ENDPOINT, body="<html>maintenance</html>", content_type="text/html"
    )
    polls = 0

    async def query(soql: str) -> list[dict[str, Any]]:
        nonlocal polls
        polls += 1
        return [queue_item(status="Completed" if polls >= 3 else "Processing")]

    connection.query.side_effect = query

    report = await orchestrator.run(
        TestSelection(class_names="FooTest"),
        RunOptions(timeout=5, streaming_timeout=5, poll_interval=0.01),
    )

    assert report is aggregator.aggregate.return_value
    assert polls == 3
    aggregator.aggregate.assert_awaited_once_with(RUN_ID, code_coverage=True)

"""Submission of test runs to the platform."""

import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from apex_test_runner.aggregator import build_sync_report
from apex_test_runner.connection.base import (
    Connection,
    InvalidSessionError,
    PlatformError,
)
from apex_test_runner.errors import (
    InvalidSelectionError,
    ProtocolError,
    SubmissionError,
)
from apex_test_runner.identifiers import is_valid_test_run_id
from apex_test_runner.models.records import QueueItem, QueueItemStatus, SyncTestResult
from apex_test_runner.models.result import RunHandle, TestReport
from apex_test_runner.models.selection import RunSubmission
from apex_test_runner.polling import QUEUE_ITEM_QUERY

log = logging.getLogger(__name__)

# A refreshed token that is still rejected will not get better with more tries
SESSION_RETRY_BUDGET = 1


@dataclass(frozen=True, kw_only=True)
class RunSubmitter:
    """Sends run requests to the Tooling API test runner endpoints."""

    connection: Connection

    async def submit(self, submission: RunSubmission) -> RunHandle:
        """Start an asynchronous run and return its handle.

        Raises:
            SubmissionError: If the platform rejects the request
            ProtocolError: If the response does not contain a test run id

        """
        if submission.synchronous:
            raise InvalidSelectionError(
                "Synchronous submissions return results directly, use submit_sync",
                phase="submission",
            )

        url = f"{self.connection.base_url}/runTestsAsynchronous"
        response = await self._post(url, submission.to_payload())

        if not isinstance(response, str) or not is_valid_test_run_id(response):
            raise ProtocolError(
                f"Expected a test run id in the response, got {response!r}",
                phase="submission",
            )

        log.info("Submitted asynchronous test run %s", response)
        return RunHandle(run_id=response)

    async def submit_sync(self, submission: RunSubmission) -> TestReport:
        """Run a single test class synchronously and return its report."""
        if not submission.synchronous:
            raise InvalidSelectionError(
                "Asynchronous submissions must use submit", phase="submission"
            )

        started_at = datetime.now(UTC)
        started = time.monotonic()
        url = f"{self.connection.base_url}/runTestsSynchronous"
        response = await self._post(url, submission.to_payload())

        try:
            result = SyncTestResult.model_validate(response)
        except ValidationError as e:
            raise ProtocolError(
                f"Unexpected synchronous test run response: {e}", phase="submission"
            ) from e

        log.info(
            "Synchronous test run finished: %d test(s), %d failure(s)",
            result.num_tests_run,
            result.num_failures,
        )
        return build_sync_report(
            result,
            started_at=started_at,
            command_time_ms=int((time.monotonic() - started) * 1000),
            hostname=self.connection.instance_url,
        )

    async def abort(self, run_id: str) -> None:
        """Abort a run by marking every queue item of the run as aborted."""
        if not is_valid_test_run_id(run_id):
            raise InvalidSelectionError(f"Invalid test run id: {run_id}", run_id=run_id)

        records = await self.connection.query(QUEUE_ITEM_QUERY.format(run_id=run_id))
        items = [QueueItem.model_validate(record) for record in records]
        log.info("Aborting test run %s (%d queue item(s))", run_id, len(items))

        for item in items:
            if item.is_terminal:
                continue
            url = f"{self.connection.base_url}/sobjects/ApexTestQueueItem/{item.id}"
            try:
                await self.connection.request(
                    "PATCH", url, json={"Status": QueueItemStatus.ABORTED}
                )
            except PlatformError as e:
                raise SubmissionError(
                    f"Failed to abort queue item {item.id}: {e}", run_id=run_id
                ) from e

    async def _post(self, url: str, payload: dict[str, Any]) -> Any:
        attempts = 0
        while True:
            attempts += 1
            try:
                return await self.connection.request("POST", url, json=payload)
            except InvalidSessionError as e:
                if attempts > SESSION_RETRY_BUDGET:
                    raise SubmissionError(
                        f"Session still invalid after refreshing credentials: {e}",
                        phase="submission",
                    ) from e
                log.warning("Session invalid, refreshing credentials and retrying")
                try:
                    await self.connection.refresh_credentials()
                except PlatformError as refresh_error:
                    raise SubmissionError(
                        f"Failed to refresh credentials: {refresh_error}",
                        phase="submission",
                    ) from refresh_error
            except PlatformError as e:
                raise SubmissionError(
                    f"Failed to submit test run: {e}", phase="submission"
                ) from e

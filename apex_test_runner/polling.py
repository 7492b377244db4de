"""Polling fallback for detecting test run completion."""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from apex_test_runner.connection.base import Connection
from apex_test_runner.errors import (
    InvalidSelectionError,
    NoResultsError,
    RunTimeoutError,
)
from apex_test_runner.identifiers import is_valid_test_run_id
from apex_test_runner.models.records import QueueItem

log = logging.getLogger(__name__)

QUEUE_ITEM_QUERY = (
    "SELECT Id, ParentJobId, Status, ApexClassId, TestRunResultId "
    "FROM ApexTestQueueItem WHERE ParentJobId = '{run_id}'"
)


@dataclass(frozen=True, kw_only=True)
class QueuePoller:
    """Polls the queue items of a run until all of them are terminal."""

    connection: Connection
    poll_interval: float = 3.0
    # Consecutive polls without any queue item before giving up
    max_empty_polls: int = 3

    async def poll(self, run_id: str) -> Sequence[QueueItem]:
        """Fetch the current queue items of a run."""
        records = await self.connection.query(QUEUE_ITEM_QUERY.format(run_id=run_id))
        return [QueueItem.model_validate(record) for record in records]

    async def wait_for_completion(
        self,
        run_id: str,
        deadline: float,
        poll_interval: float | None = None,
    ) -> Sequence[QueueItem]:
        """Wait until every queue item of the run is terminal.

        Args:
            run_id: Test run id
            deadline: Event loop time after which waiting stops
            poll_interval: Seconds between polls (default: the poller's interval)

        Returns:
            The terminal queue items of the run

        Raises:
            RunTimeoutError: If the run is not terminal by the deadline
            NoResultsError: If the run has no queue items for too many polls

        """
        if not is_valid_test_run_id(run_id):
            raise InvalidSelectionError(f"Invalid test run id: {run_id}", run_id=run_id)

        interval = self.poll_interval if poll_interval is None else poll_interval
        loop = asyncio.get_running_loop()
        empty_polls = 0

        while True:
            items = await self.poll(run_id)
            if not items:
                empty_polls += 1
                log.info(
                    "No queue items yet for run %s (%d/%d)",
                    run_id,
                    empty_polls,
                    self.max_empty_polls,
                )
                if empty_polls >= self.max_empty_polls:
                    raise NoResultsError(
                        f"No queue items found for test run after {empty_polls} polls",
                        run_id=run_id,
                    )
            else:
                empty_polls = 0
                pending = [item for item in items if not item.is_terminal]
                if not pending:
                    log.info(
                        "All %d queue item(s) of run %s are done", len(items), run_id
                    )
                    return items
                log.debug(
                    "Run %s has %d of %d queue item(s) pending",
                    run_id,
                    len(pending),
                    len(items),
                )

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise RunTimeoutError(
                    "Test run did not complete before the deadline", run_id=run_id
                )
            await asyncio.sleep(min(interval, remaining))

"""Test run orchestration from selection to report."""

import asyncio
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from functools import partial

from apex_test_runner.aggregator import ResultAggregator
from apex_test_runner.builder import RequestBuilder
from apex_test_runner.connection.base import Connection
from apex_test_runner.errors import (
    InvalidSelectionError,
    Phase,
    RunError,
    RunTimeoutError,
    StreamingUnavailableError,
)
from apex_test_runner.identifiers import is_valid_test_run_id
from apex_test_runner.models.result import RunHandle, TestReport
from apex_test_runner.models.selection import RunOptions, TestSelection
from apex_test_runner.polling import QueuePoller
from apex_test_runner.streaming import (
    BayeuxBroker,
    CompletionEvent,
    StreamingSubscriber,
)
from apex_test_runner.submitter import RunSubmitter

log = logging.getLogger(__name__)


def streaming_subscriber(connection: Connection) -> StreamingSubscriber:
    """Create a subscriber with its own broker session for a single run."""
    return StreamingSubscriber(
        broker=BayeuxBroker.for_connection(connection),
        connection=connection,
        poller=QueuePoller(connection=connection),
    )


@contextmanager
def _phase(phase: Phase, run_id: str | None = None) -> Iterator[None]:
    try:
        yield
    except RunError as e:
        e.phase = e.phase or phase
        e.run_id = e.run_id or run_id
        raise
    except Exception as e:
        e.add_note(f"Test run failed during {phase} (run_id={run_id})")
        raise


@dataclass(frozen=True, kw_only=True)
class TestRunOrchestrator:
    """Runs tests on the platform and collects their report.

    Completion of an asynchronous run is detected by racing a streaming
    subscription against queue polling. The first to report completion wins
    and the other one is cancelled.
    """

    __test__ = False

    builder: RequestBuilder
    submitter: RunSubmitter
    poller: QueuePoller
    aggregator: ResultAggregator
    subscriber_factory: Callable[[], StreamingSubscriber]

    @classmethod
    def from_connection(cls, connection: Connection) -> "TestRunOrchestrator":
        """Wire an orchestrator whose collaborators share one connection."""
        return cls(
            builder=RequestBuilder(),
            submitter=RunSubmitter(connection=connection),
            poller=QueuePoller(connection=connection),
            aggregator=ResultAggregator(connection=connection),
            subscriber_factory=partial(streaming_subscriber, connection),
        )

    async def run(
        self, selection: TestSelection, options: RunOptions | None = None
    ) -> TestReport:
        """Run the selected tests and return their report.

        Args:
            selection: Tests to run
            options: Run options (default: asynchronous run with default timeouts)

        Returns:
            Report of the finished run

        Raises:
            InvalidSelectionError: If the selection cannot be submitted
            SubmissionError: If the platform rejects the run
            RunTimeoutError: If the run does not finish before ``options.timeout``
            NoResultsError: If the finished run has no results

        """
        options = options or RunOptions()
        deadline = asyncio.get_running_loop().time() + options.timeout
        submission = self.builder.build(selection, options)

        if submission.synchronous:
            with _phase("submission"):
                report = await self.submitter.submit_sync(submission)
            if submission.code_coverage:
                with _phase("aggregation"):
                    report = await self.aggregator.add_coverage(report)
            return report

        with _phase("submission"):
            handle = await self.submitter.submit(submission)

        return await self._complete(
            handle.run_id, options, deadline, code_coverage=submission.code_coverage
        )

    async def start(
        self, selection: TestSelection, options: RunOptions | None = None
    ) -> RunHandle:
        """Submit an asynchronous run without waiting for it to finish."""
        options = options or RunOptions()
        if options.synchronous:
            raise InvalidSelectionError(
                "Synchronous runs have no run id to return", phase="submission"
            )
        submission = self.builder.build(selection, options)
        with _phase("submission"):
            return await self.submitter.submit(submission)

    async def report(
        self,
        run_id: str,
        options: RunOptions | None = None,
        *,
        code_coverage: bool = False,
    ) -> TestReport:
        """Wait for an already submitted run and return its report."""
        if not is_valid_test_run_id(run_id):
            raise InvalidSelectionError(f"Invalid test run id: {run_id}", run_id=run_id)
        options = options or RunOptions()
        deadline = asyncio.get_running_loop().time() + options.timeout
        return await self._complete(
            run_id, options, deadline, code_coverage=code_coverage
        )

    async def _complete(
        self,
        run_id: str,
        options: RunOptions,
        deadline: float,
        *,
        code_coverage: bool,
    ) -> TestReport:
        with _phase("completion", run_id):
            await self._wait_for_completion(run_id, options, deadline)
        with _phase("aggregation", run_id):
            return await self.aggregator.aggregate(run_id, code_coverage=code_coverage)

    async def _wait_for_completion(
        self, run_id: str, options: RunOptions, deadline: float
    ) -> None:
        subscriber = self.subscriber_factory()
        stream = asyncio.create_task(
            subscriber.wait_for_run(run_id, options.streaming_timeout),
            name=f"stream-{run_id}",
        )
        poll = asyncio.create_task(
            self.poller.wait_for_completion(run_id, deadline, options.poll_interval),
            name=f"poll-{run_id}",
        )
        log.info("Waiting for test run %s to complete...", run_id)

        try:
            async with asyncio.timeout_at(deadline):
                done, _ = await asyncio.wait(
                    {stream, poll}, return_when=asyncio.FIRST_COMPLETED
                )
                if stream in done and self._stream_result(stream, run_id):
                    return
                await poll
                log.info("Polling reported test run %s as complete", run_id)
        except RunTimeoutError:
            raise
        except TimeoutError as e:
            raise RunTimeoutError(
                f"Test run did not complete within {options.timeout:.0f}s",
                run_id=run_id,
            ) from e
        finally:
            stream.cancel()
            poll.cancel()
            await asyncio.gather(stream, poll, return_exceptions=True)
            await subscriber.close()

    def _stream_result(
        self, stream: "asyncio.Task[CompletionEvent | None]", run_id: str
    ) -> bool:
        try:
            event = stream.result()
        except StreamingUnavailableError as e:
            log.warning(
                "Streaming unavailable for run %s, falling back to polling: %s",
                run_id,
                e,
            )
            return False

        if event is None:
            log.warning(
                "No completion event for run %s, falling back to polling", run_id
            )
            return False

        log.info("Streaming reported test run %s as complete", run_id)
        return True

"""Push-based detection of test run completion."""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import StrEnum

from pydantic import ValidationError

from apex_test_runner.connection.base import Connection, PlatformError
from apex_test_runner.errors import InvalidSelectionError, StreamingUnavailableError
from apex_test_runner.identifiers import is_valid_test_run_id, same_record
from apex_test_runner.polling import QueuePoller
from apex_test_runner.streaming.base import (
    Broker,
    BrokerAuthError,
    BrokerMessage,
    HandshakeError,
    TestResultNotification,
    TransportDownError,
)

log = logging.getLogger(__name__)

TEST_RESULT_CHANNEL = "/systemTopic/TestResult"
# Replay id asking the broker for new events only
LATEST_REPLAY_ID = -1


class SubscriberState(StrEnum):
    """Lifecycle of a streaming subscription."""

    IDLE = "idle"
    HANDSHAKING = "handshaking"
    SUBSCRIBED = "subscribed"
    EVENT_RECEIVED = "event_received"
    TIMED_OUT = "timed_out"
    TRANSPORT_DOWN = "transport_down"
    CLOSED = "closed"


@dataclass(frozen=True, kw_only=True)
class CompletionEvent:
    """Notification that a tracked run finished."""

    run_id: str
    replay_id: int | None


@dataclass(kw_only=True)
class StreamingSubscriber:
    """Waits for the completion event of a single run.

    A subscriber belongs to exactly one run: it is created for the run,
    used once, and always closed when the wait ends, whatever the reason.

    The replay cursor tracks the last event seen so a reconnect resumes the
    subscription without missing or repeating events.
    """

    broker: Broker
    connection: Connection
    # Confirms on each matching event that every queue item is terminal
    poller: QueuePoller
    max_reconnects: int = 1
    state: SubscriberState = field(default=SubscriberState.IDLE, init=False)
    replay_cursor: int | None = field(default=None, init=False)

    async def wait_for_run(self, run_id: str, timeout: float) -> CompletionEvent | None:
        """Wait for the completion event of ``run_id``.

        Args:
            run_id: Test run id to wait for
            timeout: Seconds to wait before giving up on the stream

        Returns:
            The completion event, or None when the timeout elapsed or the
            transport failed past its reconnect budget.

        Raises:
            StreamingUnavailableError: If the handshake or subscription failed

        """
        if not is_valid_test_run_id(run_id):
            raise InvalidSelectionError(f"Invalid test run id: {run_id}", run_id=run_id)
        if self.state is not SubscriberState.IDLE:
            raise RuntimeError(f"Subscriber already used (state={self.state})")

        try:
            async with asyncio.timeout(timeout):
                await self._open()
                return await self._listen(run_id)
        except TimeoutError:
            log.info("No completion event for run %s within %.0fs", run_id, timeout)
            self.state = SubscriberState.TIMED_OUT
            return None
        finally:
            await self.close()

    async def close(self) -> None:
        """Disconnect from the broker; safe to call from any state."""
        if self.state is SubscriberState.CLOSED:
            return
        self.state = SubscriberState.CLOSED
        self.replay_cursor = None
        await self.broker.disconnect()

    async def _open(self) -> None:
        self.state = SubscriberState.HANDSHAKING
        try:
            await self.broker.handshake()
            self.replay_cursor = LATEST_REPLAY_ID
            await self.broker.subscribe(TEST_RESULT_CHANNEL, self.replay_cursor)
        except (HandshakeError, TransportDownError) as e:
            raise StreamingUnavailableError(str(e)) from e
        self.state = SubscriberState.SUBSCRIBED
        log.info("Subscribed to %s", TEST_RESULT_CHANNEL)

    async def _listen(self, run_id: str) -> CompletionEvent | None:
        reconnects = 0
        while True:
            try:
                messages = await self.broker.connect()
            except TransportDownError as e:
                self.state = SubscriberState.TRANSPORT_DOWN
                if reconnects >= self.max_reconnects:
                    log.warning(
                        "Streaming transport still down after %d reconnect(s): %s",
                        reconnects,
                        e,
                    )
                    self.state = SubscriberState.TIMED_OUT
                    return None

                reconnects += 1
                log.warning("Streaming transport down, reconnecting: %s", e)
                if not await self._reconnect(refresh=isinstance(e, BrokerAuthError)):
                    self.state = SubscriberState.TIMED_OUT
                    return None
                continue

            for message in messages:
                event = self._handle(message, run_id)
                if event is not None and await self._run_finished(run_id):
                    self.state = SubscriberState.EVENT_RECEIVED
                    return event

    async def _reconnect(self, *, refresh: bool) -> bool:
        try:
            if refresh:
                await self.connection.refresh_credentials()
            await self.broker.handshake()
            await self.broker.subscribe(
                TEST_RESULT_CHANNEL,
                LATEST_REPLAY_ID if self.replay_cursor is None else self.replay_cursor,
            )
        except (HandshakeError, TransportDownError, PlatformError, ValueError) as e:
            log.warning("Streaming reconnect failed: %s", e)
            return False

        self.state = SubscriberState.SUBSCRIBED
        log.info(
            "Resubscribed to %s from replay_id=%s",
            TEST_RESULT_CHANNEL,
            self.replay_cursor,
        )
        return True

    async def _run_finished(self, run_id: str) -> bool:
        # An event is published per queue item, not once per run
        try:
            items = await self.poller.poll(run_id)
        except (PlatformError, ValueError) as e:
            log.warning("Could not check queue items of run %s: %s", run_id, e)
            return False

        pending = [item for item in items if not item.is_terminal]
        if not items or pending:
            log.debug(
                "Run %s still has %d of %d queue item(s) pending",
                run_id,
                len(pending),
                len(items),
            )
            return False

        log.info("Received completion event for run %s", run_id)
        return True

    def _handle(self, message: BrokerMessage, run_id: str) -> CompletionEvent | None:
        if message.channel != TEST_RESULT_CHANNEL or message.data is None:
            return None
        try:
            notification = TestResultNotification.model_validate(message.data)
        except ValidationError:
            log.debug("Ignoring malformed event on %s", message.channel)
            return None

        replay_id = notification.event.replay_id
        if replay_id is not None and self.replay_cursor is not None:
            if replay_id <= self.replay_cursor:
                log.debug("Ignoring already seen event replay_id=%d", replay_id)
                return None
            self.replay_cursor = replay_id

        event_run_id = notification.sobject.id
        if not is_valid_test_run_id(event_run_id) or not same_record(
            event_run_id, run_id
        ):
            log.debug("Ignoring event for run %s", event_run_id)
            return None

        log.debug("Received test result event for run %s", run_id)
        return CompletionEvent(run_id=run_id, replay_id=replay_id)

"""Bayeux (CometD) long-polling client built on aiohttp."""

import asyncio
import itertools
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

import aiohttp
from pydantic import TypeAdapter, ValidationError

from apex_test_runner.connection.base import Connection, PlatformError
from apex_test_runner.streaming.base import (
    BrokerAuthError,
    BrokerMessage,
    HandshakeError,
    TransportDownError,
)

log = logging.getLogger(__name__)

# Replay extension and the system topics need API version 61.0 or later
MIN_STREAMING_API_VERSION = 61.0

ERROR_AUTH_INVALID = "401::Authentication invalid"
ERROR_UNKNOWN_CLIENT_ID = "403::Unknown client"

_messages = TypeAdapter(list[BrokerMessage])


async def resolve_stream_url(connection: Connection) -> str:
    """Build the CometD endpoint for the connection's org.

    Orgs that support a newer API than the connection's configured version
    get their maximum version when the configured one is below 61.0.
    """
    version = connection.version
    if float(version) < MIN_STREAMING_API_VERSION:
        max_version = await connection.max_api_version()
        if float(max_version) >= MIN_STREAMING_API_VERSION:
            version = max_version
    return f"{connection.instance_url.rstrip('/')}/cometd/{version}"


@dataclass(kw_only=True)
class BayeuxBroker:
    """Client for the streaming API of one org.

    Every frame carries the connection's current access token so a refresh
    during a long subscription is picked up by the next frame.
    """

    connection: Connection
    endpoint: str | None = None
    session: aiohttp.ClientSession | None = field(default=None, repr=False)
    # Server holds long-polling connects for up to 110 seconds
    request_timeout: float = 120.0
    _client_id: str | None = field(default=None, init=False)
    _owns_session: bool = field(default=False, init=False)
    _message_ids: "itertools.count[int]" = field(
        default_factory=lambda: itertools.count(1), init=False, repr=False
    )

    @classmethod
    def for_connection(cls, connection: Connection) -> "BayeuxBroker":
        """Create a broker with its own session for one test run."""
        return cls(connection=connection)

    @property
    def client_id(self) -> str | None:
        """Session id assigned by the broker, None when not handshaken."""
        return self._client_id

    async def handshake(self) -> None:
        """Open a session with the broker."""
        try:
            if self.endpoint is None:
                self.endpoint = await resolve_stream_url(self.connection)
            replies = await self._send(
                {
                    "channel": "/meta/handshake",
                    "version": "1.0",
                    "minimumVersion": "1.0",
                    "supportedConnectionTypes": ["long-polling"],
                    "ext": {"replay": True},
                }
            )
            reply = self._meta_reply(replies, "/meta/handshake")
        except (TransportDownError, PlatformError, ValueError) as e:
            raise HandshakeError(f"Streaming handshake failed: {e}") from e

        if not reply.successful or not reply.client_id:
            raise HandshakeError(f"Streaming handshake failed: {reply.error}")

        self._client_id = reply.client_id
        log.debug("Streaming handshake completed: client_id=%s", self._client_id)

    async def subscribe(self, channel: str, replay_id: int) -> None:
        """Subscribe to a channel, receiving events after ``replay_id``."""
        replies = await self._send(
            {
                "channel": "/meta/subscribe",
                "clientId": self._client_id,
                "subscription": channel,
                "ext": {"replay": {channel: replay_id}},
            }
        )
        reply = self._meta_reply(replies, "/meta/subscribe")
        if not reply.successful:
            self._raise_for_reply(reply)
            raise HandshakeError(f"Subscription to {channel} rejected: {reply.error}")
        log.debug("Subscribed to %s from replay_id=%d", channel, replay_id)

    async def connect(self) -> Sequence[BrokerMessage]:
        """Long-poll for the next batch of channel events."""
        replies = await self._send(
            {
                "channel": "/meta/connect",
                "clientId": self._client_id,
                "connectionType": "long-polling",
            }
        )

        events: list[BrokerMessage] = []
        for reply in replies:
            if reply.channel == "/meta/connect":
                if not reply.successful:
                    self._raise_for_reply(reply)
                    raise TransportDownError(
                        f"Streaming connect failed: {reply.error or reply.advice}"
                    )
            elif not reply.is_meta and reply.data is not None:
                events.append(reply)
        return events

    async def disconnect(self) -> None:
        """Close the broker session and release the HTTP session."""
        try:
            if self._client_id is not None:
                client_id, self._client_id = self._client_id, None
                try:
                    await self._send(
                        {"channel": "/meta/disconnect", "clientId": client_id}
                    )
                except TransportDownError as e:
                    log.debug("Ignoring failed streaming disconnect: %s", e)
        finally:
            if self._owns_session and self.session is not None:
                session, self.session = self.session, None
                self._owns_session = False
                await session.close()

    async def _send(self, message: Mapping[str, Any]) -> Sequence[BrokerMessage]:
        if self.endpoint is None:
            raise HandshakeError("Streaming endpoint is not resolved")
        if self.session is None:
            self.session = aiohttp.ClientSession()
            self._owns_session = True

        frame = {**message, "id": str(next(self._message_ids))}
        # Re-read on every frame, the token may have been refreshed meanwhile
        headers = {"Authorization": f"OAuth {self.connection.access_token}"}
        try:
            async with self.session.post(
                self.endpoint,
                json=[frame],
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
            ) as response:
                if response.status == 401:
                    raise BrokerAuthError(ERROR_AUTH_INVALID)
                if response.status >= 400:
                    text = await response.text()
                    raise TransportDownError(
                        f"Streaming request failed: {response.status} {text}"
                    )
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportDownError(f"Streaming transport error: {e}") from e
        except ValueError as e:
            raise TransportDownError(f"Unexpected streaming response: {e}") from e

        try:
            return _messages.validate_python(data or [])
        except ValidationError as e:
            raise TransportDownError(f"Unexpected streaming response: {e}") from e

    @staticmethod
    def _meta_reply(replies: Sequence[BrokerMessage], channel: str) -> BrokerMessage:
        for reply in replies:
            if reply.channel == channel:
                return reply
        raise TransportDownError(f"No reply received on {channel}")

    @staticmethod
    def _raise_for_reply(reply: BrokerMessage) -> None:
        if reply.error == ERROR_AUTH_INVALID:
            raise BrokerAuthError(reply.error)
        if reply.error == ERROR_UNKNOWN_CLIENT_ID:
            raise TransportDownError(reply.error)
        if reply.advice is not None and reply.advice.reconnect == "handshake":
            raise TransportDownError(
                f"Broker requested a new handshake: {reply.error or 'no error'}"
            )

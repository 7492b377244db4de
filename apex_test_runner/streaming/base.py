"""Interface of a publish/subscribe broker used to wait for test runs."""

from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class BrokerError(Exception):
    """Base error for broker failures."""


class HandshakeError(BrokerError):
    """Raised when the broker rejects a handshake or subscription."""


class TransportDownError(BrokerError):
    """Raised when the broker connection drops or the client is unknown."""


class BrokerAuthError(TransportDownError):
    """Raised when the broker rejects the access token."""


class Advice(BaseModel):
    """Reconnect advice attached to Bayeux replies."""

    model_config = ConfigDict(extra="allow")

    reconnect: str | None = None
    interval: int | None = None
    timeout: int | None = None


class BrokerMessage(BaseModel):
    """A Bayeux message, either a meta reply or a channel event."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow"
    )

    channel: str
    client_id: str | None = None
    id: str | None = None
    successful: bool | None = None
    error: str | None = None
    advice: Advice | None = None
    subscription: str | None = None
    data: Mapping[str, Any] | None = None
    ext: Mapping[str, Any] | None = None

    @property
    def is_meta(self) -> bool:
        """Whether this is a reply on a /meta/ channel."""
        return self.channel.startswith("/meta/")


class EventInfo(BaseModel):
    """Event envelope of a streaming notification."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    created_date: str | None = None
    replay_id: int | None = None
    type: str | None = None


class SObjectRef(BaseModel):
    """Record the notification is about."""

    id: str = Field(alias="Id")


class TestResultNotification(BaseModel):
    """Payload of an event on the test result system topic."""

    __test__ = False

    event: EventInfo
    sobject: SObjectRef


class Broker(Protocol):
    """Long-polling publish/subscribe client."""

    async def handshake(self) -> None:
        """Open a session with the broker.

        Raises:
            HandshakeError: If the broker is unreachable or refuses the session

        """

    async def subscribe(self, channel: str, replay_id: int) -> None:
        """Subscribe to a channel, receiving events after ``replay_id``."""

    async def connect(self) -> Sequence[BrokerMessage]:
        """Wait for the next batch of channel events.

        Raises:
            TransportDownError: If the connection dropped and needs a new handshake

        """

    async def disconnect(self) -> None:
        """Close the session; safe to call more than once."""

"""Streaming API subscription for test run completion events."""

from apex_test_runner.streaming.base import (
    Broker,
    BrokerAuthError,
    BrokerMessage,
    HandshakeError,
    TransportDownError,
)
from apex_test_runner.streaming.bayeux import BayeuxBroker
from apex_test_runner.streaming.subscriber import (
    TEST_RESULT_CHANNEL,
    CompletionEvent,
    StreamingSubscriber,
    SubscriberState,
)

__all__ = [
    "TEST_RESULT_CHANNEL",
    "BayeuxBroker",
    "Broker",
    "BrokerAuthError",
    "BrokerMessage",
    "CompletionEvent",
    "HandshakeError",
    "StreamingSubscriber",
    "SubscriberState",
    "TransportDownError",
]

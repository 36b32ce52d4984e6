"""Library exceptions for the ticketflow package."""

from __future__ import annotations


class TicketFlowError(Exception):
    """Base exception for ticketflow library."""

    pass


class BrokerConnectionError(TicketFlowError):
    """Raised when the broker cannot be reached at startup or mid-operation."""

    def __init__(self, bootstrap_servers: str, message: str) -> None:
        self.bootstrap_servers = bootstrap_servers
        super().__init__(f"Cannot reach broker at {bootstrap_servers}: {message}")


class DeliveryError(TicketFlowError):
    """
    Raised when the outcome of a publish attempt is unknown.

    The envelope may or may not have been appended. Retrying is always safe
    because every consumer handles duplicates idempotently.

    Attributes:
        topic: Destination topic of the failed publish
        key: Partition key of the failed publish
    """

    def __init__(self, topic: str, key: str | None, message: str) -> None:
        self.topic = topic
        self.key = key
        super().__init__(f"Delivery to {topic} (key={key!r}) failed: {message}")


class MalformedPayloadError(TicketFlowError):
    """
    Raised when an envelope cannot be decoded or fails schema validation.

    A malformed envelope is a poison message: it can never become valid, so
    the consumer records it as a dead letter and commits past it.

    Attributes:
        topic: Topic the envelope was read from (or destined for)
        reason: Human readable description of the problem
    """

    def __init__(self, topic: str, reason: str) -> None:
        self.topic = topic
        self.reason = reason
        super().__init__(f"Malformed payload on {topic}: {reason}")


class HandlerError(TicketFlowError):
    """Raised by a participant reaction that failed transiently."""

    pass


class UnknownTopicError(TicketFlowError):
    """Raised when a topic name is not part of the registry."""

    def __init__(self, topic: str) -> None:
        self.topic = topic
        super().__init__(f"Unknown topic: {topic}")


class TopicNotProducibleError(TicketFlowError):
    """Raised when a role publishes to a topic it is not registered to produce."""

    def __init__(self, role: str, topic: str) -> None:
        self.role = role
        self.topic = topic
        super().__init__(f"Role '{role}' is not a registered producer of topic '{topic}'")


__all__ = [
    "TicketFlowError",
    "BrokerConnectionError",
    "DeliveryError",
    "MalformedPayloadError",
    "HandlerError",
    "UnknownTopicError",
    "TopicNotProducibleError",
]

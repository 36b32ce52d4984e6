"""
Standard span attributes for ticketflow.

These follow OpenTelemetry messaging semantic conventions where applicable.
"""

ATTR_MESSAGING_SYSTEM = "messaging.system"
"""Messaging backend ('kafka' or 'memory')."""

ATTR_MESSAGING_DESTINATION = "messaging.destination.name"
"""Topic an envelope is published to or consumed from."""

ATTR_MESSAGING_OPERATION = "messaging.operation"
"""'publish' or 'process'."""

ATTR_MESSAGING_KEY = "messaging.kafka.message.key"
"""Partition key of the envelope."""

ATTR_MESSAGING_PARTITION = "messaging.kafka.destination.partition"
"""Partition number."""

ATTR_MESSAGING_OFFSET = "messaging.kafka.message.offset"
"""Offset within the partition."""

ATTR_CONSUMER_GROUP = "messaging.kafka.consumer.group"
"""Consumer group id."""

ATTR_ROLE = "ticketflow.role"
"""Participant role (payment, ticketing, ...)."""

ATTR_OUTCOME = "ticketflow.outcome"
"""Delivery outcome of an envelope (acknowledged, rejected, ...)."""

ATTR_ATTEMPT = "ticketflow.attempt"
"""1-based handler attempt number."""

ATTR_ERROR_TYPE = "error.type"
"""Exception class name."""


__all__ = [
    "ATTR_ATTEMPT",
    "ATTR_CONSUMER_GROUP",
    "ATTR_ERROR_TYPE",
    "ATTR_MESSAGING_DESTINATION",
    "ATTR_MESSAGING_KEY",
    "ATTR_MESSAGING_OFFSET",
    "ATTR_MESSAGING_OPERATION",
    "ATTR_MESSAGING_PARTITION",
    "ATTR_MESSAGING_SYSTEM",
    "ATTR_OUTCOME",
    "ATTR_ROLE",
]

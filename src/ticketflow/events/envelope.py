"""
The event envelope: the unit of communication on every topic.

An envelope is created by a publisher, becomes immutable once the broker
acknowledges it, and is read back by consumer groups with the broker-assigned
partition and offset filled in.

Wire encoding:
    - value: UTF-8 text encoding a JSON object (the payload)
    - key: optional UTF-8 string used for partition assignment only
    - headers: transport metadata (trace context), never part of the payload
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ticketflow.exceptions import MalformedPayloadError
from ticketflow.serialization import json_dumps, json_loads


class Envelope(BaseModel):
    """
    Immutable message read from or written to a topic.

    Attributes:
        topic: Name of the event stream (see ticketflow.topics)
        key: Partition key; envelopes sharing a key are delivered in order
        payload: JSON object carried by the envelope
        partition: Broker-assigned partition (None until appended)
        offset: Broker-assigned offset within the partition (None until appended)
        headers: Transport metadata such as trace context
        timestamp: When the envelope was created or appended

    Example:
        >>> envelope = Envelope(topic="payments.requested", key="1", payload={"ticketId": 1})
        >>> envelope.key
        '1'
    """

    model_config = ConfigDict(frozen=True)

    topic: str
    key: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    partition: int | None = None
    offset: int | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def encode_value(self) -> bytes:
        """Encode the payload as UTF-8 JSON bytes."""
        return encode_payload(self.payload)


def encode_key(key: str | None) -> bytes | None:
    if key is None:
        return None
    return key.encode("utf-8")


def encode_payload(payload: dict[str, Any]) -> bytes:
    """
    Serialize a payload mapping to UTF-8 JSON.

    Raises:
        TypeError: If the payload is not a mapping or holds unsupported values.
        ValueError: If the payload holds NaN or an infinity.
    """
    if not isinstance(payload, dict):
        raise TypeError(f"payload must be a dict, got {type(payload).__name__}")
    return json_dumps(payload).encode("utf-8")


def decode_envelope(
    topic: str,
    key: bytes | None,
    value: bytes | None,
    *,
    partition: int | None = None,
    offset: int | None = None,
    headers: list[tuple[str, bytes]] | None = None,
    timestamp_ms: int | None = None,
) -> Envelope:
    """
    Build an Envelope from a raw broker record.

    Args:
        topic: Topic the record was read from.
        key: Raw record key.
        value: Raw record value.
        partition: Partition the record was read from.
        offset: Offset of the record within the partition.
        headers: Raw record headers.
        timestamp_ms: Broker timestamp in milliseconds since the epoch.

    Returns:
        The decoded Envelope.

    Raises:
        MalformedPayloadError: If the value is missing, not UTF-8, not JSON,
            or not a JSON object, or if the key is not UTF-8.
    """
    if value is None:
        raise MalformedPayloadError(topic, "record has no value")

    try:
        text = value.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedPayloadError(topic, f"value is not UTF-8: {e}") from e

    try:
        data = json_loads(text)
    except ValueError as e:
        raise MalformedPayloadError(topic, f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise MalformedPayloadError(topic, f"expected a JSON object, got {type(data).__name__}")

    try:
        decoded_key = key.decode("utf-8") if key is not None else None
    except UnicodeDecodeError as e:
        raise MalformedPayloadError(topic, f"key is not UTF-8: {e}") from e

    decoded_headers: dict[str, str] = {}
    for name, raw in headers or []:
        if raw is None:
            continue
        decoded_headers[name] = raw.decode("utf-8", errors="replace")

    fields: dict[str, Any] = {
        "topic": topic,
        "key": decoded_key,
        "payload": data,
        "partition": partition,
        "offset": offset,
        "headers": decoded_headers,
    }
    if timestamp_ms is not None:
        fields["timestamp"] = datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC)
    return Envelope(**fields)


__all__ = [
    "Envelope",
    "decode_envelope",
    "encode_key",
    "encode_payload",
]

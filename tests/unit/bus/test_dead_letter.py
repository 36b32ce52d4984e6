"""Unit tests for dead letter records and sinks."""

import json

import pytest

from ticketflow.bus.dead_letter import (
    BrokerDeadLetterSink,
    DeadLetterRecord,
    DeadLetterSink,
    InMemoryDeadLetterSink,
    dead_letter_topic,
)
from ticketflow.exceptions import MalformedPayloadError


def make_record(**overrides) -> DeadLetterRecord:
    fields = {
        "group_id": "payment-service-group",
        "topic": "payments.requested",
        "partition": 1,
        "offset": 4,
        "key": b"1",
        "value": b"not json",
        "reason": "malformed_payload",
        "error": MalformedPayloadError("payments.requested", "invalid JSON"),
        "attempts": 0,
    }
    fields.update(overrides)
    return DeadLetterRecord.from_failure(**fields)


class TestDeadLetterRecord:
    def test_from_failure_decodes_bytes(self):
        record = make_record()

        assert record.key == "1"
        assert record.value == "not json"
        assert record.error_type == "MalformedPayloadError"
        assert "invalid JSON" in record.error_message
        assert record.failed_at.tzinfo is not None

    def test_undecodable_bytes_are_replaced(self):
        record = make_record(value=b"\xff\xfe")

        assert record.value == "��"

    def test_missing_value(self):
        assert make_record(value=None, key=None).value == ""

    def test_error_message_truncated(self):
        record = make_record(error=RuntimeError("x" * 5000))

        assert len(record.error_message) == 1000

    def test_dead_letter_topic(self):
        assert dead_letter_topic("payments.requested") == "payments.requested.dlq"


class TestInMemoryDeadLetterSink:
    def test_implements_protocol(self):
        assert isinstance(InMemoryDeadLetterSink(), DeadLetterSink)

    @pytest.mark.asyncio
    async def test_records_and_filters(self):
        sink = InMemoryDeadLetterSink()

        await sink.record(make_record())
        await sink.record(make_record(topic="trips.updated"))

        assert len(sink.records) == 2
        assert [r.topic for r in sink.for_topic("trips.updated")] == ["trips.updated"]

        sink.clear()
        assert sink.records == []


class TestBrokerDeadLetterSink:
    @pytest.mark.asyncio
    async def test_appends_to_dlq_topic(self, broker):
        sink = BrokerDeadLetterSink(broker)

        await sink.record(make_record())

        [stored] = broker.records("payments.requested.dlq")
        assert stored.key == b"1"
        headers = dict(stored.headers)
        assert headers["dlq_reason"] == b"malformed_payload"
        assert headers["dlq_error_type"] == b"MalformedPayloadError"
        assert headers["dlq_consumer_group"] == b"payment-service-group"
        body = json.loads(stored.value)
        assert body["offset"] == 4
        assert body["value"] == "not json"

    @pytest.mark.asyncio
    async def test_append_failure_propagates(self, broker):
        sink = BrokerDeadLetterSink(broker)
        broker.fail_next_appends(1)

        with pytest.raises(TimeoutError):
            await sink.record(make_record())

        assert broker.records("payments.requested.dlq") == []

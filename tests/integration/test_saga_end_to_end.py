"""
End-to-end tests of the ticket purchase saga on the in-memory broker.

Every consuming participant runs in its own consumer group; stimuli enter
through the external role or the originators, exactly as in production.
"""

from __future__ import annotations

import pytest

from ticketflow.exceptions import HandlerError
from ticketflow.idempotency import InMemoryIdempotencyStore
from ticketflow.participants import PassengerService, TicketingParticipant, TransportService
from ticketflow.topics import (
    NOTIFICATIONS_SENT,
    PAYMENTS_CONFIRMED,
    PAYMENTS_REQUESTED,
    TICKETS_CREATED,
    TICKETS_VALIDATED,
    TRIPS_UPDATED,
    Role,
)
from tests.fixtures import wait_until

pytestmark = [pytest.mark.integration, pytest.mark.e2e]


async def request_payment(broker, ticket_id, amount=20):
    return await broker.publisher(Role.EXTERNAL).publish(
        PAYMENTS_REQUESTED, str(ticket_id), {"ticketId": ticket_id, "amount": amount}
    )


# ============================================================================
# Happy path
# ============================================================================


class TestTicketPurchase:
    @pytest.mark.asyncio
    async def test_payment_request_becomes_ticket_and_notifications(
        self, saga, broker, subscriptions
    ):
        saga.start(subscriptions)

        await request_payment(broker, 1)
        await wait_until(lambda: len(broker.records(NOTIFICATIONS_SENT)) == 2)
        await wait_until(saga.settled)

        [confirmed] = broker.envelopes(PAYMENTS_CONFIRMED)
        assert confirmed.key == "payment-1"
        assert confirmed.payload == {
            "ticketId": 1,
            "amount": 20,
            "paymentStatus": "CONFIRMED",
            "confirmationId": "confirmation-1",
        }
        [ticket] = broker.envelopes(TICKETS_CREATED)
        assert ticket.key == "ticket-1"
        assert ticket.payload["status"] == "CREATED"
        assert sorted(saga.keys(NOTIFICATIONS_SENT)) == [
            "payments.confirmed-1",
            "tickets.created-1",
        ]
        assert [e.topic for e in saga.trail] == [TICKETS_CREATED]

    @pytest.mark.asyncio
    async def test_many_tickets(self, saga, broker, subscriptions):
        saga.start(subscriptions)

        for ticket_id in range(10):
            await request_payment(broker, ticket_id)
        await wait_until(lambda: len(broker.records(NOTIFICATIONS_SENT)) == 20, timeout=5.0)
        await wait_until(saga.settled)

        assert sorted(saga.keys(TICKETS_CREATED)) == sorted(f"ticket-{n}" for n in range(10))

    @pytest.mark.asyncio
    async def test_ticket_validation_notifies(self, saga, broker, subscriptions):
        saga.start(subscriptions)

        await broker.publisher(Role.EXTERNAL).publish(
            TICKETS_VALIDATED, "ticket-3", {"ticketId": 3}
        )
        await wait_until(lambda: saga.keys(NOTIFICATIONS_SENT) == ["tickets.validated-3"])

    @pytest.mark.asyncio
    async def test_passenger_registration_is_audited(self, saga, broker, subscriptions):
        saga.start(subscriptions)

        await PassengerService(broker.publisher(Role.PASSENGER)).register_passenger(1, "Alice")
        await wait_until(lambda: len(saga.trail) == 1)
        await wait_until(saga.settled)

        [entry] = list(saga.trail)
        assert entry.key == "passenger-1"
        assert broker.records(NOTIFICATIONS_SENT) == []

    @pytest.mark.asyncio
    async def test_trip_updates_keep_their_order(self, saga, broker, subscriptions):
        saga.start(subscriptions)
        transport = TransportService(broker.publisher(Role.TRANSPORT))
        statuses = ["SCHEDULED", "BOARDING", "DELAYED", "DEPARTED", "ARRIVED"]

        for status in statuses:
            await transport.update_trip(7, status)
        await wait_until(lambda: len(broker.records(NOTIFICATIONS_SENT)) == 5)
        await wait_until(saga.settled)

        notified = [e.payload["status"] for e in broker.envelopes(NOTIFICATIONS_SENT)]
        assert notified == statuses
        assert set(saga.keys(NOTIFICATIONS_SENT)) == {"trips.updated-7"}
        assert [e.payload["status"] for e in saga.trail.for_topic(TRIPS_UPDATED)] == statuses

    @pytest.mark.asyncio
    async def test_recurring_trip_status_notifies_each_time(self, saga, broker, subscriptions):
        saga.start(subscriptions)
        transport = TransportService(broker.publisher(Role.TRANSPORT))
        statuses = ["DELAYED", "ON_TIME", "DELAYED"]

        for status in statuses:
            await transport.update_trip(101, status)
        await wait_until(lambda: len(broker.records(NOTIFICATIONS_SENT)) == 3)
        await wait_until(saga.settled)

        notified = [e.payload["status"] for e in broker.envelopes(NOTIFICATIONS_SENT)]
        assert notified == statuses


# ============================================================================
# Duplicates
# ============================================================================


class TestDuplicates:
    @pytest.mark.asyncio
    async def test_duplicate_request_confirms_once(self, saga, broker, subscriptions):
        saga.start(subscriptions)

        await request_payment(broker, 1)
        await request_payment(broker, 1)
        await wait_until(lambda: broker.lag("payment-service-group", PAYMENTS_REQUESTED) == 0)
        await wait_until(saga.settled)

        assert saga.keys(PAYMENTS_CONFIRMED) == ["payment-1"]
        assert saga.keys(TICKETS_CREATED) == ["ticket-1"]
        assert len(broker.records(NOTIFICATIONS_SENT)) == 2

    @pytest.mark.asyncio
    async def test_crash_after_publish_republishes_identically(
        self, saga, broker, subscriptions
    ):
        """A reaction interrupted before marking runs again; consumers absorb the copy."""

        class ForgetfulStore(InMemoryIdempotencyStore):
            failures = 1

            async def mark(self, key):
                if self.failures:
                    self.failures -= 1
                    raise ConnectionError("store unavailable")
                await super().mark(key)

        saga.stores[Role.TICKETING] = ForgetfulStore()
        saga.start(subscriptions)

        await request_payment(broker, 1)
        await wait_until(lambda: len(broker.records(TICKETS_CREATED)) == 2)
        await wait_until(saga.settled)

        first, second = broker.envelopes(TICKETS_CREATED)
        assert first.key == second.key == "ticket-1"
        assert first.payload == second.payload
        assert saga.keys(NOTIFICATIONS_SENT).count("tickets.created-1") == 1
        assert len(saga.trail.for_topic(TICKETS_CREATED)) == 2


# ============================================================================
# Failures
# ============================================================================


class TestFailureContainment:
    @pytest.mark.asyncio
    async def test_poison_request_is_dead_lettered(
        self, saga, broker, subscriptions, dead_letters
    ):
        saga.start(subscriptions)

        await broker.append(PAYMENTS_REQUESTED, b"1", b"{not json")
        await request_payment(broker, 1)
        await wait_until(lambda: saga.keys(TICKETS_CREATED) == ["ticket-1"])
        await wait_until(saga.settled)

        [record] = dead_letters.records
        assert record.group_id == "payment-service-group"
        assert record.reason == "malformed_payload"
        assert record.value == "{not json"

    @pytest.mark.asyncio
    async def test_schema_violation_is_dead_lettered(
        self, saga, broker, subscriptions, dead_letters
    ):
        saga.start(subscriptions)

        await broker.append(PAYMENTS_REQUESTED, b"1", b'{"amount": 20}')
        await request_payment(broker, 2)
        await wait_until(lambda: saga.keys(TICKETS_CREATED) == ["ticket-2"])

        [record] = dead_letters.records
        assert record.reason == "malformed_payload"
        assert "ticketId" in record.error_message

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, saga, broker, subscriptions):
        class FlakyTicketing(TicketingParticipant):
            failures = 2

            def react(self, envelope, payload):
                if self.failures:
                    self.failures -= 1
                    raise HandlerError("ticket printer offline")
                return super().react(envelope, payload)

        saga.participants[Role.TICKETING] = FlakyTicketing()
        saga.start(subscriptions)

        await request_payment(broker, 1)
        await wait_until(lambda: saga.keys(TICKETS_CREATED) == ["ticket-1"])

        assert saga.subscribers[Role.TICKETING].stats.retried == 2

    @pytest.mark.asyncio
    async def test_exhausted_failure_pauses_only_that_partition(
        self, saga, broker, subscriptions
    ):
        class BrokenTicketing(TicketingParticipant):
            broken = True

            def react(self, envelope, payload):
                if self.broken and envelope.payload["ticketId"] == 1:
                    raise HandlerError("ticket printer offline")
                return super().react(envelope, payload)

        ticketing = BrokenTicketing()
        saga.participants[Role.TICKETING] = ticketing
        saga.start(subscriptions)
        subscriber = saga.subscribers[Role.TICKETING]

        await request_payment(broker, 1)
        await wait_until(lambda: len(subscriber.paused_partitions) == 1)
        assert broker.records(TICKETS_CREATED) == []

        ticketing.broken = False
        [(topic, partition)] = subscriber.paused_partitions
        subscriber.resume(topic, partition)

        await wait_until(lambda: saga.keys(TICKETS_CREATED) == ["ticket-1"])
        await wait_until(saga.settled)

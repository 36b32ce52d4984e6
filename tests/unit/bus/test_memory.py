"""
Unit tests for InMemoryBroker: the partitioned log and consumer groups.

Subscriber behaviour is covered in test_memory_subscriber.py.
"""

import asyncio

import pytest

from ticketflow.bus.memory import InMemoryBroker, InMemorySubscriber, partition_for_key
from ticketflow.exceptions import BrokerConnectionError

# ============================================================================
# Connection lifecycle
# ============================================================================


class TestConnection:
    @pytest.mark.asyncio
    async def test_context_manager_connects_and_closes(self):
        broker = InMemoryBroker()

        async with broker as connected:
            assert connected is broker
            assert broker.is_connected

        assert not broker.is_connected

    @pytest.mark.asyncio
    async def test_released_when_body_raises(self):
        broker = InMemoryBroker()

        with pytest.raises(RuntimeError):
            async with broker:
                raise RuntimeError("participant crashed")

        assert not broker.is_connected

    @pytest.mark.asyncio
    async def test_unavailable_broker_refuses_connect(self):
        broker = InMemoryBroker()
        broker.available = False

        with pytest.raises(BrokerConnectionError, match="memory://"):
            await broker.connect()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        broker = InMemoryBroker()
        await broker.connect()

        await broker.close()
        await broker.close()

        assert not broker.is_connected

    def test_invalid_partition_count(self):
        with pytest.raises(ValueError):
            InMemoryBroker(num_partitions=0)


# ============================================================================
# Log
# ============================================================================


class TestAppend:
    @pytest.mark.asyncio
    async def test_offsets_increase_per_partition(self, broker):
        acks = [await broker.append("t", b"k", b"{}") for _ in range(3)]

        assert [a.offset for a in acks] == [0, 1, 2]
        assert len({a.partition for a in acks}) == 1
        assert broker.end_offset("t", acks[0].partition) == 3

    @pytest.mark.asyncio
    async def test_key_decides_partition(self, broker):
        ack = await broker.append("t", b"payment-1", b"{}")

        assert ack.partition == partition_for_key(b"payment-1", 3)
        assert ack.key == "payment-1"

    @pytest.mark.asyncio
    async def test_keyless_round_robin(self, broker):
        acks = [await broker.append("t", None, b"{}") for _ in range(4)]

        assert [a.partition for a in acks] == [0, 1, 2, 0]
        assert acks[0].key is None

    @pytest.mark.asyncio
    async def test_partition_override(self):
        async with InMemoryBroker(3, partitions={"single": 1}) as broker:
            acks = [await broker.append("single", k, b"{}") for k in (b"a", b"b", b"c")]

            assert {a.partition for a in acks} == {0}
            assert broker.partitions_for("other") == 3

    @pytest.mark.asyncio
    async def test_append_requires_connection(self):
        broker = InMemoryBroker()

        with pytest.raises(BrokerConnectionError):
            await broker.append("t", None, b"{}")

    @pytest.mark.asyncio
    async def test_injected_append_failures(self, broker):
        broker.fail_next_appends(2)

        for _ in range(2):
            with pytest.raises(TimeoutError):
                await broker.append("t", b"k", b"{}")
        ack = await broker.append("t", b"k", b"{}")

        assert ack.offset == 0

    @pytest.mark.asyncio
    async def test_unavailable_append(self, broker):
        broker.available = False

        with pytest.raises(ConnectionError):
            await broker.append("t", b"k", b"{}")

    @pytest.mark.asyncio
    async def test_read_and_envelopes(self, broker):
        ack = await broker.append("t", b"k", b'{"ticketId": 1}', [("h", b"v")])

        record = broker.read("t", ack.partition, 0)
        assert record is not None
        assert record.headers == (("h", b"v"),)
        assert broker.read("t", ack.partition, 1) is None

        [envelope] = broker.envelopes("t")
        assert envelope.payload == {"ticketId": 1}
        assert envelope.headers == {"h": "v"}

    def test_partition_for_key_is_stable(self):
        assert partition_for_key(b"ticket-42", 5) == partition_for_key(b"ticket-42", 5)
        assert 0 <= partition_for_key(b"ticket-42", 5) < 5


# ============================================================================
# Consumer groups
# ============================================================================


class TestOffsets:
    @pytest.mark.asyncio
    async def test_commit_per_group(self, broker):
        await broker.commit("a", "t", 0, 5)

        assert broker.committed_offset("a", "t", 0) == 5
        assert broker.committed_offset("b", "t", 0) == 0

    @pytest.mark.asyncio
    async def test_injected_commit_failure(self, broker):
        broker.fail_next_commits(1)

        with pytest.raises(ConnectionError):
            await broker.commit("a", "t", 0, 1)
        await broker.commit("a", "t", 0, 1)

        assert broker.committed_offset("a", "t", 0) == 1

    @pytest.mark.asyncio
    async def test_lag(self, broker):
        for key in (b"a", b"b", b"c", b"d"):
            await broker.append("t", key, b"{}")
        ack = await broker.append("t", b"a", b"{}")

        await broker.commit("g", "t", ack.partition, 1)

        assert broker.lag("g", "t") == 4
        assert broker.lag("other", "t") == 5


class TestMembership:
    def test_no_members_no_owner(self):
        broker = InMemoryBroker()

        assert broker.owner("g", "t", 0) is None

    def test_partitions_split_among_members(self):
        broker = InMemoryBroker()
        broker.join("g", "m1", ["t"])
        broker.join("g", "m2", ["t"])

        assert [broker.owner("g", "t", p) for p in range(3)] == ["m1", "m2", "m1"]

    def test_ownership_moves_when_member_leaves(self):
        broker = InMemoryBroker()
        broker.join("g", "m1", ["t"])
        broker.join("g", "m2", ["t"])

        broker.leave("g", "m1")

        assert {broker.owner("g", "t", p) for p in range(3)} == {"m2"}

    def test_only_members_subscribed_to_topic_are_eligible(self):
        broker = InMemoryBroker()
        broker.join("g", "m1", ["t"])
        broker.join("g", "m2", ["other"])

        assert {broker.owner("g", "t", p) for p in range(3)} == {"m1"}

    def test_groups_are_independent(self):
        broker = InMemoryBroker()
        broker.join("a", "m1", ["t"])
        broker.join("b", "m2", ["t"])

        assert broker.owner("a", "t", 0) == "m1"
        assert broker.owner("b", "t", 0) == "m2"

    def test_leave_unknown_member_is_noop(self):
        InMemoryBroker().leave("g", "nobody")

    def test_partition_lock_is_shared(self):
        broker = InMemoryBroker()

        assert broker.partition_lock("g", "t", 0) is broker.partition_lock("g", "t", 0)
        assert broker.partition_lock("g", "t", 0) is not broker.partition_lock("g", "t", 1)


class TestChangeNotification:
    @pytest.mark.asyncio
    async def test_append_wakes_waiter(self, broker):
        waiter = asyncio.create_task(broker.wait_for_change(5.0))
        await asyncio.sleep(0)

        await broker.append("t", None, b"{}")

        await asyncio.wait_for(waiter, 1.0)

    @pytest.mark.asyncio
    async def test_wait_times_out_quietly(self, broker):
        await broker.wait_for_change(0.01)


class TestClients:
    @pytest.mark.asyncio
    async def test_subscriber_uses_broker_dead_letters(self, broker, dead_letters):
        subscriber = broker.subscriber()

        assert isinstance(subscriber, InMemorySubscriber)
        assert subscriber._dead_letters is dead_letters
        assert not subscriber.is_running

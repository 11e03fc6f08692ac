"""Tests for MessageEngine: sequencing, persistence, delivery and resync."""
import asyncio

import pytest

from app.chat.errors import InvalidPayload, NotFound, NotMember, StorageUnavailable
from app.chat.presence import CLOSE_BACKPRESSURE
from app.chat.schemas import Message, MessagePayload

from conftest import settle


def received(connection, room_id="r1"):
    """Sequence numbers of messageReceived frames written to a connection."""
    return [
        f["sequence"] for f in connection.transport.of_type("messageReceived")
        if f["roomId"] == room_id
    ]


class TestSequencing:
    @pytest.mark.asyncio
    async def test_first_message_gets_sequence_one(self, chat_service):
        await chat_service.rooms.join("r1", "alice")
        message = await chat_service.engine.send("r1", "alice", {"text": "hello"})

        assert message.sequence == 1
        assert message.senderId == "alice"
        assert message.payload.text == "hello"

    @pytest.mark.asyncio
    async def test_concurrent_sends_are_gapless(self, chat_service, store):
        store.delay = 0.001
        for user in ("alice", "bob", "carol"):
            await chat_service.rooms.join("r1", user)

        sends = [
            chat_service.engine.send("r1", ("alice", "bob", "carol")[n % 3], f"msg {n}")
            for n in range(60)
        ]
        messages = await asyncio.gather(*sends)

        assert sorted(m.sequence for m in messages) == list(range(1, 61))
        assert store.message_count("r1") == 60

    @pytest.mark.asyncio
    async def test_rooms_sequence_independently(self, chat_service):
        await chat_service.rooms.join("r1", "alice")
        await chat_service.rooms.join("r2", "alice")

        await chat_service.engine.send("r1", "alice", "a")
        await chat_service.engine.send("r1", "alice", "b")
        other = await chat_service.engine.send("r2", "alice", "c")

        assert other.sequence == 1

    @pytest.mark.asyncio
    async def test_storage_failure_does_not_burn_sequence(self, chat_service, store):
        await chat_service.rooms.join("r1", "alice")
        await chat_service.engine.send("r1", "alice", "one")
        await chat_service.engine.send("r1", "alice", "two")

        store.fail_next("append_message")
        with pytest.raises(StorageUnavailable):
            await chat_service.engine.send("r1", "alice", "three")

        retry = await chat_service.engine.send("r1", "alice", "three again")
        assert retry.sequence == 3
        assert [m.sequence for m in await store.get_messages_since("r1", 0)] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_storage_timeout_surfaces_unavailable(self, chat_service, store, connect):
        alice = await connect("alice")
        await chat_service.rooms.join("r1", "alice")
        store.delay = 0.7

        with pytest.raises(StorageUnavailable):
            await chat_service.engine.send("r1", "alice", "slow")

        await settle()
        assert received(alice) == []
        assert await chat_service.engine.last_sequence("r1") == 0

    @pytest.mark.asyncio
    async def test_late_commit_is_reverted_before_retry(self, chat_service, store, connect):
        bob = await connect("bob")
        await chat_service.rooms.join("r1", "alice")
        await chat_service.rooms.join("r1", "bob")
        store.delay = 0.7

        with pytest.raises(StorageUnavailable):
            await chat_service.engine.send("r1", "alice", "lost")

        store.delay = 0
        assert store.message_count("r1") == 0
        assert (await store.get_room("r1")).lastSequence == 0
        assert await chat_service.engine.resync("r1", "bob", since=0) == []

        retry = await chat_service.engine.send("r1", "alice", "retry")
        await settle()

        assert retry.sequence == 1
        history = await chat_service.engine.resync("r1", "bob", since=0)
        assert [m.payload.text for m in history] == ["retry"]
        assert [f["payload"]["text"] for f in bob.transport.of_type("messageReceived")] == ["retry"]

    @pytest.mark.asyncio
    async def test_late_commit_kept_when_revert_fails(self, chat_service, store, connect):
        bob = await connect("bob")
        await chat_service.rooms.join("r1", "alice")
        await chat_service.rooms.join("r1", "bob")
        store.delay = 0.7
        store.fail_next("delete_message")

        message = await chat_service.engine.send("r1", "alice", "kept")
        store.delay = 0
        await settle()

        assert message.sequence == 1
        assert received(bob) == [1]
        assert await chat_service.engine.last_sequence("r1") == 1
        retry = await chat_service.engine.send("r1", "alice", "next")
        assert retry.sequence == 2


class TestValidation:
    @pytest.mark.asyncio
    async def test_non_member_rejected(self, chat_service):
        await chat_service.rooms.join("r1", "alice")
        with pytest.raises(NotMember):
            await chat_service.engine.send("r1", "bob", "hi")

    @pytest.mark.asyncio
    async def test_send_does_not_create_room(self, chat_service):
        with pytest.raises(NotMember):
            await chat_service.engine.send("nowhere", "bob", "hi")
        with pytest.raises(NotFound):
            await chat_service.rooms.members_of("nowhere")

    @pytest.mark.parametrize("payload", [None, "", "   ", {}, {"text": ""}, {"mediaUrl": ""}])
    def test_empty_payload_rejected(self, chat_service, payload):
        with pytest.raises(InvalidPayload):
            chat_service.engine.validate_payload(payload)

    def test_payload_rules(self, chat_service):
        engine = chat_service.engine
        with pytest.raises(InvalidPayload):
            engine.validate_payload({"text": "x" * (engine.max_text_length + 1)})
        with pytest.raises(InvalidPayload):
            engine.validate_payload({"mediaUrl": "file:///etc/passwd"})
        with pytest.raises(InvalidPayload):
            engine.validate_payload({"text": 42})

        payload = engine.validate_payload({"mediaUrl": "https://cdn.example.com/a.png"})
        assert payload == MessagePayload(mediaUrl="https://cdn.example.com/a.png")

    @pytest.mark.asyncio
    async def test_invalid_payload_checked_before_membership(self, chat_service):
        with pytest.raises(InvalidPayload):
            await chat_service.engine.send("nowhere", "bob", "")


class TestDelivery:
    @pytest.mark.asyncio
    async def test_delivered_to_every_member_connection(self, chat_service, connect):
        alice_phone = await connect("alice")
        alice_laptop = await connect("alice")
        bob = await connect("bob")
        outsider = await connect("mallory")
        await chat_service.rooms.join("r1", "alice")
        await chat_service.rooms.join("r1", "bob")

        await chat_service.engine.send("r1", "alice", "hello")
        await settle()

        assert received(alice_phone) == [1]
        assert received(alice_laptop) == [1]
        assert received(bob) == [1]
        assert received(outsider) == []

    @pytest.mark.asyncio
    async def test_recipient_order_matches_sequence(self, chat_service, store, connect):
        store.delay = 0.001
        bob = await connect("bob")
        await chat_service.rooms.join("r1", "alice")
        await chat_service.rooms.join("r1", "carol")
        await chat_service.rooms.join("r1", "bob")

        await asyncio.gather(*[
            chat_service.engine.send("r1", "alice" if n % 2 else "carol", f"m{n}")
            for n in range(30)
        ])
        await settle()

        assert received(bob) == list(range(1, 31))

    @pytest.mark.asyncio
    async def test_failed_send_delivers_nothing(self, chat_service, store, connect):
        bob = await connect("bob")
        await chat_service.rooms.join("r1", "alice")
        await chat_service.rooms.join("r1", "bob")

        store.fail_next("append_message")
        with pytest.raises(StorageUnavailable):
            await chat_service.engine.send("r1", "alice", "lost")
        await settle()

        assert received(bob) == []

    @pytest.mark.asyncio
    async def test_overflow_disconnects_slow_consumer(self, chat_service, connect):
        fast = await connect("alice")
        slow = await connect("bob", queue_size=2)
        # Stop the slow writer so its queue fills up.
        slow._writer.cancel()
        await chat_service.rooms.join("r1", "alice")
        await chat_service.rooms.join("r1", "bob")

        for n in range(5):
            await chat_service.engine.send("r1", "alice", f"m{n}")
        await settle()

        assert slow.closed
        assert slow.transport.closed_with == CLOSE_BACKPRESSURE
        assert chat_service.sessions.connections_for("bob") == set()
        assert received(fast) == [1, 2, 3, 4, 5]


class TestResync:
    @pytest.mark.asyncio
    async def test_resync_since(self, chat_service):
        await chat_service.rooms.join("r1", "alice")
        for n in range(6):
            await chat_service.engine.send("r1", "alice", f"m{n}")

        messages = await chat_service.engine.resync("r1", "alice", since=3)

        assert [m.sequence for m in messages] == [4, 5, 6]

    @pytest.mark.asyncio
    async def test_resync_requires_membership(self, chat_service):
        await chat_service.rooms.join("r1", "alice")
        with pytest.raises(NotMember):
            await chat_service.engine.resync("r1", "bob", since=0)

    @pytest.mark.asyncio
    async def test_resync_negative_since(self, chat_service):
        await chat_service.rooms.join("r1", "alice")
        with pytest.raises(InvalidPayload):
            await chat_service.engine.resync("r1", "alice", since=-1)

    @pytest.mark.asyncio
    async def test_resync_defaults_to_read_cursor(self, chat_service):
        await chat_service.rooms.join("r1", "alice")
        for n in range(4):
            await chat_service.engine.send("r1", "alice", f"m{n}")

        await chat_service.engine.mark_read("r1", "alice", 2)
        messages = await chat_service.engine.resync("r1", "alice")

        assert [m.sequence for m in messages] == [3, 4]

    @pytest.mark.asyncio
    async def test_resync_stops_at_committed_sequence(self, chat_service, store):
        await chat_service.rooms.join("r1", "alice")
        await chat_service.engine.send("r1", "alice", "one")
        # A row the engine has not acknowledged yet
        pending = Message(
            roomId="r1", sequence=2, senderId="alice", payload=MessagePayload(text="pending")
        )
        await store.append_message("r1", pending)

        messages = await chat_service.engine.resync("r1", "alice", since=0)

        assert [m.sequence for m in messages] == [1]

    @pytest.mark.asyncio
    async def test_resync_to_queues_reply(self, chat_service, connect):
        alice = await connect("alice")
        await chat_service.rooms.join("r1", "alice")
        for n in range(3):
            await chat_service.engine.send("r1", "alice", f"m{n}")

        messages = await chat_service.engine.resync_to(alice, "r1", since=1)
        await settle()

        assert [m.sequence for m in messages] == [2, 3]
        reply = alice.transport.of_type("resync")[-1]
        assert reply["roomId"] == "r1"
        assert [m["sequence"] for m in reply["messages"]] == [2, 3]
        assert reply["lastSequence"] == 3

    @pytest.mark.asyncio
    async def test_live_messages_wait_for_resync_reply(self, chat_service, store, connect):
        await chat_service.rooms.join("r1", "alice")
        await chat_service.rooms.join("r1", "bob")
        await chat_service.engine.send("r1", "alice", "one")
        bob = await connect("bob")
        store.delay = 0.05

        sending = asyncio.create_task(chat_service.engine.send("r1", "alice", "two"))
        await asyncio.sleep(0.01)
        await chat_service.engine.resync_to(bob, "r1", since=0)
        await sending
        await settle()

        order = []
        for frame in bob.transport.sent:
            if frame["type"] == "messageReceived":
                order.append(frame["sequence"])
            elif frame["type"] == "resync":
                order.extend(m["sequence"] for m in frame["messages"])
        assert order == [1, 2]

    @pytest.mark.asyncio
    async def test_failed_resync_releases_held_messages(self, chat_service, store, connect):
        await chat_service.rooms.join("r1", "alice")
        await chat_service.rooms.join("r1", "bob")
        bob = await connect("bob")
        store.fail_next("get_messages_since")

        with pytest.raises(StorageUnavailable):
            await chat_service.engine.resync_to(bob, "r1", since=0)

        await chat_service.engine.send("r1", "alice", "after")
        await settle()
        assert received(bob) == [1]


class TestReadReceipts:
    @pytest.mark.asyncio
    async def test_cursor_never_moves_back(self, chat_service):
        await chat_service.rooms.join("r1", "alice")
        for n in range(3):
            await chat_service.engine.send("r1", "alice", f"m{n}")

        assert await chat_service.engine.mark_read("r1", "alice", 3) == 3
        assert await chat_service.engine.mark_read("r1", "alice", 1) == 3

    @pytest.mark.asyncio
    async def test_cursor_bounded_by_last_sequence(self, chat_service):
        await chat_service.rooms.join("r1", "alice")
        with pytest.raises(InvalidPayload):
            await chat_service.engine.mark_read("r1", "alice", 1)

    @pytest.mark.asyncio
    async def test_receipt_broadcast_to_room(self, chat_service, connect):
        bob = await connect("bob")
        await chat_service.rooms.join("r1", "alice")
        await chat_service.rooms.join("r1", "bob")
        await chat_service.engine.send("r1", "alice", "hi")

        await chat_service.engine.mark_read("r1", "bob", 1)
        await settle()

        receipts = bob.transport.of_type("readReceipt")
        assert receipts == [{"type": "readReceipt", "roomId": "r1", "userId": "bob", "sequence": 1}]

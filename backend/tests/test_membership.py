"""Tests for RoomMembershipIndex."""
import asyncio

import pytest

from app.chat.errors import InvalidPayload, NotAuthorized, NotFound, StorageUnavailable
from app.chat.membership import RoomMembershipIndex, default_join_policy
from app.chat.schemas import Room
from app.storage import MemoryMessageStore


@pytest.fixture
def rooms(store):
    return RoomMembershipIndex(store, storage_timeout=0.5)


class TestJoin:
    @pytest.mark.asyncio
    async def test_join_creates_room(self, rooms, store):
        result = await rooms.join("r1", "alice")

        assert result.alreadyMember is False
        assert result.lastSequence == 0
        assert await rooms.members_of("r1") == {"alice"}
        stored = await store.get_room("r1")
        assert stored.participants == ["alice"]
        assert stored.createdBy == "alice"

    @pytest.mark.asyncio
    async def test_join_is_idempotent(self, rooms):
        await rooms.join("r1", "alice")
        await rooms.join("r1", "bob")
        size_before = len(await rooms.members_of("r1"))

        result = await rooms.join("r1", "bob")

        assert result.alreadyMember is True
        assert len(await rooms.members_of("r1")) == size_before

    @pytest.mark.asyncio
    async def test_participants_keep_join_order(self, rooms):
        for user in ("carol", "alice", "bob"):
            await rooms.join("r1", user)
        room = await rooms.get("r1")
        assert room.participants == ["carol", "alice", "bob"]

    @pytest.mark.asyncio
    async def test_private_room_rejects_uninvited(self, rooms):
        await rooms.create(Room(id="secret", isPrivate=True, invited=["bob"], createdBy="alice"))

        with pytest.raises(NotAuthorized):
            await rooms.join("secret", "mallory")

        result = await rooms.join("secret", "bob")
        assert result.alreadyMember is False
        assert await rooms.members_of("secret") == {"alice", "bob"}

    @pytest.mark.asyncio
    async def test_custom_join_policy(self, store):
        rooms = RoomMembershipIndex(store, join_policy=lambda room, user: user != "banned")
        await rooms.join("r1", "alice")
        with pytest.raises(NotAuthorized):
            await rooms.join("r1", "banned")

    @pytest.mark.asyncio
    async def test_storage_failure_leaves_membership_unchanged(self, rooms, store):
        await rooms.join("r1", "alice")
        store.fail_next("upsert_room")

        with pytest.raises(StorageUnavailable):
            await rooms.join("r1", "bob")

        assert await rooms.members_of("r1") == {"alice"}

    @pytest.mark.asyncio
    async def test_failed_first_join_does_not_create_room(self, rooms, store):
        store.fail_next("upsert_room")
        with pytest.raises(StorageUnavailable):
            await rooms.join("r1", "alice")

        with pytest.raises(NotFound):
            await rooms.members_of("r1")
        assert "r1" not in rooms._rooms

    @pytest.mark.asyncio
    async def test_rooms_are_loaded_from_store(self, store):
        await store.upsert_room(Room(id="r1", participants=["alice"], lastSequence=7))
        rooms = RoomMembershipIndex(store)

        result = await rooms.join("r1", "alice")

        assert result.alreadyMember is True
        assert result.lastSequence == 7


class TestLeave:
    @pytest.mark.asyncio
    async def test_leave_last_member_keeps_room(self, rooms, store):
        await rooms.join("r1", "alice")
        await rooms.leave("r1", "alice")

        assert await rooms.members_of("r1") == set()
        assert await store.get_room("r1") is not None

    @pytest.mark.asyncio
    async def test_leave_non_member_is_ok(self, rooms):
        await rooms.join("r1", "alice")
        await rooms.leave("r1", "bob")
        assert await rooms.members_of("r1") == {"alice"}

    @pytest.mark.asyncio
    async def test_leave_unknown_room(self, rooms):
        with pytest.raises(NotFound):
            await rooms.leave("missing", "alice")


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_adds_creator(self, rooms):
        room = await rooms.create(Room(id="r1", name="Lunch", createdBy="alice"))
        assert room.participants == ["alice"]
        assert room.name == "Lunch"

    @pytest.mark.asyncio
    async def test_create_existing_room_rejected(self, rooms):
        await rooms.join("r1", "alice")
        with pytest.raises(InvalidPayload):
            await rooms.create(Room(id="r1", createdBy="bob"))

    @pytest.mark.asyncio
    async def test_rooms_for_user(self, rooms):
        await rooms.join("a", "alice")
        await rooms.join("b", "bob")
        await rooms.join("b", "alice")

        ids = [room.id for room in await rooms.rooms_for("alice")]
        assert ids == ["a", "b"]


class SlowUpsertStore(MemoryMessageStore):
    """Room writes that commit only after the caller's timeout."""

    def __init__(self) -> None:
        super().__init__()
        self.slow_upserts = 0
        self.fail_revert = False

    async def upsert_room(self, room: Room) -> None:
        if not self.slow_upserts:
            await super().upsert_room(room)
            return
        self.slow_upserts -= 1
        await asyncio.sleep(0.3)
        await super().upsert_room(room)
        if self.fail_revert:
            self.fail_next("upsert_room")


class SlowRoomStore(MemoryMessageStore):
    """Loads of one room id take a while."""

    def __init__(self, slow_room: str) -> None:
        super().__init__()
        self.slow_room = slow_room

    async def get_room(self, room_id: str):
        if room_id == self.slow_room:
            await asyncio.sleep(0.3)
        return await super().get_room(room_id)


class TestCache:
    @pytest.mark.asyncio
    async def test_unknown_rooms_are_not_cached(self, rooms):
        for n in range(50):
            with pytest.raises(NotFound):
                await rooms.members_of(f"ghost-{n}")

        assert rooms._rooms == {}

    @pytest.mark.asyncio
    async def test_joiner_waiting_on_failed_first_join_retries(self, rooms, store):
        store.fail_next("upsert_room")

        results = await asyncio.gather(
            rooms.join("r1", "alice"), rooms.join("r1", "bob"), return_exceptions=True
        )

        assert isinstance(results[0], StorageUnavailable)
        assert results[1].alreadyMember is False
        assert await rooms.members_of("r1") == {"bob"}
        assert (await rooms.get("r1")).createdBy == "bob"

    @pytest.mark.asyncio
    async def test_loads_of_different_rooms_do_not_wait_for_each_other(self):
        store = SlowRoomStore("slow")
        await store.upsert_room(Room(id="slow", participants=["alice"]))
        await store.upsert_room(Room(id="fast", participants=["bob"]))
        rooms = RoomMembershipIndex(store, storage_timeout=1.0)

        slow = asyncio.create_task(rooms.members_of("slow"))
        await asyncio.sleep(0.01)
        fast = await asyncio.wait_for(rooms.members_of("fast"), timeout=0.1)

        assert fast == {"bob"}
        assert await slow == {"alice"}
        assert rooms._load_locks == {}

    @pytest.mark.asyncio
    async def test_concurrent_loads_share_one_state(self):
        store = SlowRoomStore("r1")
        await store.upsert_room(Room(id="r1", participants=["alice"]))
        rooms = RoomMembershipIndex(store, storage_timeout=1.0)

        first, second = await asyncio.gather(rooms.state("r1"), rooms.state("r1"))

        assert first is second


class TestLateWrites:
    @pytest.fixture
    def slow_store(self):
        return SlowUpsertStore()

    @pytest.mark.asyncio
    async def test_late_join_write_is_reverted(self, slow_store):
        rooms = RoomMembershipIndex(slow_store, storage_timeout=0.1)
        await rooms.join("r1", "alice")
        slow_store.slow_upserts = 1

        with pytest.raises(StorageUnavailable):
            await rooms.join("r1", "bob")

        assert (await slow_store.get_room("r1")).participants == ["alice"]
        assert await rooms.members_of("r1") == {"alice"}

    @pytest.mark.asyncio
    async def test_late_first_join_leaves_no_room(self, slow_store):
        rooms = RoomMembershipIndex(slow_store, storage_timeout=0.1)
        slow_store.slow_upserts = 1

        with pytest.raises(StorageUnavailable):
            await rooms.join("r1", "alice")

        assert await slow_store.get_room("r1") is None
        assert "r1" not in rooms._rooms
        with pytest.raises(NotFound):
            await rooms.members_of("r1")

    @pytest.mark.asyncio
    async def test_late_write_kept_when_revert_fails(self, slow_store):
        rooms = RoomMembershipIndex(slow_store, storage_timeout=0.1)
        await rooms.join("r1", "alice")
        slow_store.slow_upserts = 1
        slow_store.fail_revert = True

        result = await rooms.join("r1", "bob")

        assert result.alreadyMember is False
        assert await rooms.members_of("r1") == {"alice", "bob"}
        assert (await slow_store.get_room("r1")).participants == ["alice", "bob"]


def test_default_policy():
    public = Room(id="p")
    private = Room(id="s", isPrivate=True, invited=["bob"], createdBy="alice")

    assert default_join_policy(public, "anyone")
    assert default_join_policy(private, "alice")
    assert default_join_policy(private, "bob")
    assert not default_join_policy(private, "carol")

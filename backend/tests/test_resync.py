"""Tests for missed-message resync after reconnect."""
import pytest

from roomdeck.sessions.schemas import RoomMessage, RoomTag


def stored(message_id, ts, room_id="rid-general", **extra):
    return RoomMessage(id=message_id, roomId=room_id, ts=ts, **extra)


async def reconnect(h):
    h.transport.connection_status.set(False)
    await h.manager.settle()
    h.transport.connection_status.set(True)
    await h.manager.settle()


class TestResync:

    @pytest.mark.asyncio
    async def test_reconnect_requests_since_latest_confirmed_message(self, ready_harness):
        h = ready_harness
        h.open_ready("cgeneral")
        h.store.upsert("a", stored("a", 30.0))
        h.store.upsert("b", stored("b", 42.0))
        h.store.upsert("local", stored("local", 50.0, pending=True))

        await reconnect(h)

        assert h.transport.missed_requests == [("rid-general", 42.0)]

    @pytest.mark.asyncio
    async def test_exactly_one_request_per_transition(self, ready_harness):
        h = ready_harness
        h.open_ready("cgeneral")
        h.store.upsert("b", stored("b", 42.0))

        await reconnect(h)
        h.transport.connection_status.set(True)
        h.manager.reconciler.invalidate()
        await h.manager.settle()
        assert len(h.transport.missed_requests) == 1

        await reconnect(h)
        assert len(h.transport.missed_requests) == 2

    @pytest.mark.asyncio
    async def test_missed_messages_are_merged(self, ready_harness):
        h = ready_harness
        h.open_ready("cgeneral")
        h.store.upsert("b", stored("b", 42.0))
        h.transport.missed_response = [
            {"id": "m1", "roomId": "rid-general", "ts": 43.0, "content": "one"},
            {"id": "m2", "roomId": "rid-general", "ts": 44.0, "content": "two"},
        ]

        await reconnect(h)

        assert h.store.get("m1") is not None
        assert h.store.get("m2") is not None
        assert h.store.find_latest_non_pending("rid-general").id == "m2"

    @pytest.mark.asyncio
    async def test_missed_messages_pass_through_hooks(self, ready_harness):
        h = ready_harness
        h.callbacks.add(
            "onClientMessageReceived",
            lambda msg: None if msg.content == "spam" else msg,
        )
        h.open_ready("cgeneral")
        h.store.upsert("b", stored("b", 42.0))
        h.transport.missed_response = [
            {"id": "m1", "roomId": "rid-general", "ts": 43.0, "content": "spam"},
            {"id": "m2", "roomId": "rid-general", "ts": 44.0, "content": "ham"},
        ]

        await reconnect(h)

        assert h.store.get("m1") is None
        assert h.store.get("m2") is not None

    @pytest.mark.asyncio
    async def test_room_without_local_messages_is_skipped(self, ready_harness):
        h = ready_harness
        h.open_ready("cgeneral")
        await reconnect(h)
        assert h.transport.missed_requests == []

    @pytest.mark.asyncio
    async def test_unresolved_sessions_are_skipped(self, ready_harness):
        h = ready_harness
        h.manager.open("cghost")
        h.store.upsert("x", stored("x", 5.0, room_id="rid-ghost"))
        await reconnect(h)
        assert h.transport.missed_requests == []

    @pytest.mark.asyncio
    async def test_request_failure_is_logged_not_raised(self, ready_harness, caplog):
        h = ready_harness
        h.open_ready("cgeneral")
        h.store.upsert("b", stored("b", 42.0))
        h.transport.missed_error = ConnectionError("offline again")

        await reconnect(h)

        assert h.transport.missed_requests == [("rid-general", 42.0)]
        assert "offline again" in caplog.text

    @pytest.mark.asyncio
    async def test_no_request_without_disconnect(self, ready_harness):
        h = ready_harness
        h.open_ready("cgeneral")
        h.store.upsert("b", stored("b", 42.0))
        h.transport.connection_status.set(True)
        await h.manager.settle()
        assert h.transport.missed_requests == []

    @pytest.mark.asyncio
    async def test_malformed_missed_message_is_skipped(self, ready_harness, caplog):
        h = ready_harness
        h.open_ready("cgeneral")
        h.store.upsert("b", stored("b", 42.0))
        h.transport.missed_response = [
            {"id": "bad", "ts": "yesterday"},
            {"id": "m2", "roomId": "rid-general", "ts": 44.0},
        ]

        await reconnect(h)

        assert h.store.get("m2") is not None
        assert "malformed" in caplog.text

    @pytest.mark.asyncio
    async def test_room_closed_during_resync_is_not_merged(self, ready_harness):
        h = ready_harness
        h.open_ready("cgeneral")
        h.store.upsert("b", stored("b", 42.0))
        h.transport.missed_response = [{"id": "m1", "roomId": "rid-general", "ts": 43.0}]

        h.transport.connection_status.set(False)
        await h.manager.settle()
        h.transport.connection_status.set(True)
        h.scheduler.flush()
        h.manager.close("cgeneral")
        await h.manager.settle()

        assert h.transport.missed_requests == [("rid-general", 42.0)]
        assert h.store.get("m1") is None

    @pytest.mark.asyncio
    async def test_replayed_messages_share_live_tag_and_command_filter(self, ready_harness):
        h = ready_harness
        h.open_ready("cgeneral")
        h.store.upsert("b", stored("b", 42.0))
        h.transport.missed_response = [
            {"id": "cmd", "roomId": "rid-general", "ts": 43.0, "type": "command"},
            {"id": "m2", "roomId": "rid-general", "ts": 44.0},
        ]

        await reconnect(h)

        assert h.store.get("cmd") is None
        assert h.store.get("m2").room == RoomTag(type="c", name="general")


class TestResyncWithoutEventLoop:

    def test_reconnect_without_loop_is_logged_and_tracked(self, ready_harness, caplog):
        h = ready_harness
        h.open_ready("cgeneral")
        h.store.upsert("b", stored("b", 42.0))

        for _ in range(2):
            h.transport.connection_status.set(False)
            h.scheduler.flush()
            h.transport.connection_status.set(True)
            h.scheduler.flush()
            assert h.manager.resync._was_online is True

        assert caplog.text.count("Cannot resync room rid-general") == 2
        assert h.transport.missed_requests == []
        assert len(h.manager.tasks) == 0

"""Tests for RoomManager-level behaviour built on the session core."""
import pytest

from roomdeck.config import SETTINGS_ENV_VAR, reset_config
from roomdeck.sessions.manager import (
    AFTER_LOGOUT_CLEANUP_HOOK,
    get_room_manager,
    set_room_manager,
)
from roomdeck.sessions.schemas import RoomMessage, User

from conftest import build_harness


class TestRenderHandles:

    def test_handle_created_lazily_once_room_known(self, ready_harness):
        h = ready_harness
        h.manager.open("cghost")
        assert h.manager.get_render_handle("cghost") is None
        assert h.manager.exists_render_handle("cghost") is False

        h.open_ready("cgeneral")
        handle = h.manager.get_render_handle("cgeneral")
        assert handle == {"room_id": "rid-general"}
        assert h.manager.get_render_handle("cgeneral") is handle
        assert h.renderer.created == ["rid-general"]
        assert h.manager.exists_render_handle("cgeneral") is True

    def test_explicit_room_id_creates_handle(self, harness):
        harness.manager.open("cgeneral")
        handle = harness.manager.get_render_handle("cgeneral", "rid-explicit")
        assert handle == {"room_id": "rid-explicit"}

    def test_unknown_key_has_no_handle(self, harness):
        assert harness.manager.get_render_handle("cnothing") is None

    def test_close_destroys_handle(self, ready_harness):
        h = ready_harness
        h.open_ready("cgeneral")
        handle = h.manager.get_render_handle("cgeneral")
        h.manager.close("cgeneral")
        assert h.renderer.destroyed == [handle]

    def test_mention_update_for_unknown_session_is_noop(self, ready_harness):
        h = ready_harness
        h.open_ready("cgeneral")
        h.manager.update_mentions_marks_of_room("cgeneral")
        h.manager.update_mentions_marks_of_room("cmissing")
        # Handle created lazily by the call for the resolved session only.
        assert len(h.renderer.marked) == 1


class TestLookups:

    def test_get_opened_room_by_rid(self, ready_harness):
        h = ready_harness
        h.open_ready("cgeneral")
        assert h.manager.get_opened_room_by_rid("rid-general").key == "cgeneral"
        assert h.manager.get_opened_room_by_rid("rid-none") is None

    def test_opened_rooms_snapshot(self, ready_harness):
        h = ready_harness
        h.open_ready("cgeneral")
        h.open_ready("dalice")
        assert sorted(h.manager.opened_rooms) == ["cgeneral", "dalice"]


class TestLoginLogout:

    def test_first_login_closes_stale_rooms(self, harness):
        harness.manager.subscriptions_ready.set(True)
        harness.manager.open("cgeneral")
        harness.scheduler.flush()

        harness.manager.current_user.set(User(id="u1", username="alice"))
        harness.scheduler.flush()
        assert len(harness.manager.registry) == 0

        harness.manager.open("cgeneral")
        harness.manager.current_user.set(User(id="u1", username="alice2"))
        harness.scheduler.flush()
        assert "cgeneral" in harness.manager.registry

    def test_logout_cleanup_hook_closes_all_rooms(self, ready_harness):
        h = ready_harness
        h.open_ready("cgeneral")
        h.open_ready("crandom")
        h.callbacks.run(AFTER_LOGOUT_CLEANUP_HOOK)
        assert len(h.manager.registry) == 0
        assert h.transport.live_subscriptions("rid-general") == 0


class TestUserFeeds:

    def test_user_feeds_follow_current_user(self, harness):
        assert harness.transport.user_handlers["message"] == []
        harness.manager.current_user.set(User(id="u1", username="alice"))
        harness.scheduler.flush()
        assert len(harness.transport.user_handlers["message"]) == 1
        assert len(harness.transport.user_handlers["subscriptions-changed"]) == 1

        harness.manager.current_user.set(None)
        harness.scheduler.flush()
        assert harness.transport.user_handlers["message"] == []
        assert harness.transport.user_handlers["subscriptions-changed"] == []

    def test_private_message_is_stored_from_system_bot(self, ready_harness):
        h = ready_harness
        h.transport.emit_user(
            "message",
            {"id": "p1", "roomId": "rid-general", "ts": 5.0, "content": "only you",
             "sender": {"userId": "u7", "username": "mallory"}},
        )
        stored = h.store.get("p1")
        assert stored.private is True
        assert stored.sender.username == "rocket.cat"
        assert stored.sender.userId == ""

    def test_subscription_change_reapplies_ignore_flags(self, ready_harness):
        h = ready_harness
        h.store.upsert("a", RoomMessage(id="a", roomId="r1", ts=1.0, sender={"userId": "u2"}))
        h.store.upsert("b", RoomMessage(id="b", roomId="r1", ts=2.0, sender={"userId": "u3"}, ignored=True))
        h.store.upsert("c", RoomMessage(id="c", roomId="r1", ts=3.0, sender={"userId": "u2"}, type="command"))

        h.transport.emit_user("subscriptions-changed", "updated", {"roomId": "r1", "ignored": ["u2"]})

        assert h.store.get("a").ignored is True
        assert h.store.get("b").ignored is False
        assert h.store.get("c").ignored is False


class TestRemovalTicks:

    def test_neighbours_of_removed_message_get_ticked(self, ready_harness):
        h = ready_harness
        h.open_ready("cgeneral")
        for message_id, ts in (("m1", 1.0), ("m2", 2.0), ("m3", 3.0), ("m4", 4.0)):
            h.store.upsert(message_id, RoomMessage(id=message_id, roomId="rid-general", ts=ts))

        h.store.remove_by_id("m2")

        assert h.store.get("m1").tick is not None
        assert h.store.get("m3").tick is not None
        assert h.store.get("m4").tick is None

    def test_rooms_without_session_are_not_ticked(self, ready_harness):
        h = ready_harness
        for message_id, ts in (("m1", 1.0), ("m2", 2.0), ("m3", 3.0)):
            h.store.upsert(message_id, RoomMessage(id=message_id, roomId="rid-closed", ts=ts))
        h.store.remove_by_id("m2")
        assert h.store.get("m1").tick is None
        assert h.store.get("m3").tick is None


class TestLifecycle:

    def test_stop_closes_rooms_and_user_feeds(self, ready_harness):
        h = ready_harness
        h.open_ready("cgeneral")
        h.manager.stop()
        assert len(h.manager.registry) == 0
        assert h.transport.live_subscriptions("rid-general") == 0
        assert h.transport.user_handlers["message"] == []

    def test_start_is_idempotent(self, harness):
        harness.manager.start()
        assert len(harness.manager._computations) == 5

    def test_singleton_accessors(self, harness):
        set_room_manager(harness.manager)
        try:
            assert get_room_manager() is harness.manager
        finally:
            set_room_manager(None)
        assert get_room_manager() is None


class TestSharedRoom:
    """Two session keys resolved to the same room ID."""

    @pytest.mark.asyncio
    async def test_closing_one_key_keeps_the_other_live(self, ready_harness):
        h = ready_harness
        h.open_ready("cgeneral", "rid-shared")
        h.open_ready("pgeneral", "rid-shared")
        assert h.transport.subscribe_calls.count(("rid-shared", "message")) == 1

        h.manager.close("cgeneral")

        survivor = h.manager.registry.get("pgeneral")
        assert survivor.ready is True
        assert survivor.stream_attached is True
        assert h.transport.live_subscriptions("rid-shared") == 3
        assert h.history.cleared == []

        h.transport.emit_room(
            "rid-shared", "message", {"id": "m1", "roomId": "rid-shared", "ts": 10.0}
        )
        await h.manager.settle()

        assert h.store.get("m1") is not None
        assert h.renderer.marked == [h.manager.get_render_handle("pgeneral")]

    def test_last_key_closed_tears_down_stream(self, ready_harness):
        h = ready_harness
        h.open_ready("cgeneral", "rid-shared")
        h.open_ready("pgeneral", "rid-shared")
        h.manager.close("cgeneral")
        h.manager.close("pgeneral")
        assert h.transport.live_subscriptions("rid-shared") == 0
        assert h.history.cleared == ["rid-shared"]


class TestConfiguredCapacity:

    def test_capacity_comes_from_persisted_preference(self, tmp_path, monkeypatch):
        settings_file = tmp_path / "roomdeck.settings.yaml"
        settings_file.write_text(
            "rooms:\n"
            "  max_open_rooms: 8\n"
            "preferences:\n"
            "  maxRoomsOpen: 2\n",
            encoding="utf-8",
        )
        monkeypatch.setenv(SETTINGS_ENV_VAR, str(settings_file))
        reset_config()
        try:
            h = build_harness(max_open_rooms=None)
        finally:
            reset_config()
        assert h.manager.registry.capacity == 2

    def test_explicit_capacity_wins_over_settings(self, tmp_path, monkeypatch):
        monkeypatch.setenv(SETTINGS_ENV_VAR, str(tmp_path / "absent.yaml"))
        reset_config()
        try:
            assert build_harness(max_open_rooms=7).manager.registry.capacity == 7
            assert build_harness(max_open_rooms=None).manager.registry.capacity == 5
        finally:
            reset_config()

import asyncio

import pytest

from pushlink.errors import AuthError
from pushlink.models.settings import API_KEY, AUTO_OPEN_LINKS, DEVICE_IDEN, DEVICE_NICKNAME
from pushlink.schemas import Push, PushesUpdated, SessionDataUpdated
from pushlink.services.session_manager import LOGIN_REQUIRED_MESSAGE
from pushlink.services.stream_manager import LIST_CHANGED, PUSH_DELIVERED, StreamEvent, StreamState

from fakes import make_push


def test_initialize_with_valid_token(make_manager, service):
    async def scenario():
        manager = await make_manager(**{API_KEY: "good-token"})
        await manager.initialize()

        assert manager.cache.is_authenticated
        assert manager.cache.user_info.name == "Ada"
        assert [device.id for device in manager.cache.devices] == ["dev-phone"]
        assert service.registered == [("dev-1", "Chrome")]
        assert manager.device_iden == "dev-1"
        assert await manager.store.get_value(DEVICE_IDEN) == "dev-1"
        assert manager.stream.connects == ["good-token"]
        assert manager.cache.last_updated > 0
        await manager.store.close()

    asyncio.run(scenario())


def test_initialize_reuses_registered_device(make_manager, service):
    async def scenario():
        manager = await make_manager(**{API_KEY: "good-token", DEVICE_IDEN: "dev-phone", DEVICE_NICKNAME: "Laptop"})
        await manager.initialize()

        assert service.calls["register"] == 0
        assert service.renamed == [("dev-phone", "Laptop")]
        assert manager.cache.device_nickname == "Laptop"
        await manager.store.close()

    asyncio.run(scenario())


def test_initialize_without_token(make_manager, service):
    async def scenario():
        manager = await make_manager()
        await manager.initialize()

        assert not manager.cache.is_authenticated
        assert manager.stream.connects == []
        assert sum(service.calls.values()) == 0

        snapshot = await manager.get_snapshot()
        assert not snapshot.is_authenticated
        assert sum(service.calls.values()) == 0
        await manager.store.close()

    asyncio.run(scenario())


def test_initialize_with_rejected_token(make_manager, service):
    async def scenario():
        manager = await make_manager(**{API_KEY: "revoked"})
        await manager.initialize()

        assert not manager.cache.is_authenticated
        assert service.calls["register"] == 0
        assert manager.stream.connects == []
        await manager.store.close()

    asyncio.run(scenario())


def test_registration_failure_leaves_no_device(make_manager, service):
    async def scenario():
        service.fail_register = True
        manager = await make_manager(**{API_KEY: "good-token"})
        await manager.initialize()

        assert not manager.cache.is_authenticated
        assert manager.device_iden is None
        assert await manager.store.get_value(DEVICE_IDEN) is None
        await manager.store.close()

    asyncio.run(scenario())


def test_fresh_cache_is_served_without_remote_calls(make_manager, service, clock):
    async def scenario():
        manager = await make_manager(**{API_KEY: "good-token"})
        await manager.initialize()
        before = service.calls["profile"]

        clock.advance(10)
        snapshot = await manager.get_snapshot()

        assert snapshot.is_authenticated
        assert snapshot.user_info.name == "Ada"
        assert service.calls["profile"] == before
        await manager.store.close()

    asyncio.run(scenario())


def test_concurrent_stale_requests_share_one_refresh(make_manager, service, clock):
    async def scenario():
        manager = await make_manager(**{API_KEY: "good-token"})
        await manager.initialize()
        assert service.calls["profile"] == 1

        clock.advance(31)
        service.delay = 0.01
        snapshots = await asyncio.gather(*(manager.get_snapshot() for _ in range(5)))

        assert service.calls["profile"] == 2
        assert service.calls["pushes"] == 2
        assert all(snapshot.is_authenticated for snapshot in snapshots)
        await manager.store.close()

    asyncio.run(scenario())


def test_last_updated_never_moves_backwards(make_manager, clock):
    async def scenario():
        manager = await make_manager(**{API_KEY: "good-token"})
        await manager.initialize()
        first = manager.cache.last_updated

        clock.advance(-60)
        await manager.refresh()
        assert manager.cache.last_updated == first

        clock.advance(120)
        await manager.refresh()
        assert manager.cache.last_updated > first
        await manager.store.close()

    asyncio.run(scenario())


def test_failed_refresh_keeps_last_good_data(make_manager, service, clock):
    async def scenario():
        manager = await make_manager(**{API_KEY: "good-token"})
        await manager.initialize()

        clock.advance(31)
        service.fail_fetch = True
        snapshot = await manager.get_snapshot()

        assert not snapshot.is_authenticated
        assert manager.cache.is_authenticated
        assert manager.cache.user_info.name == "Ada"
        assert [device.id for device in manager.cache.devices] == ["dev-phone"]
        await manager.store.close()

    asyncio.run(scenario())


def test_credential_cleared_resets_session(make_manager):
    async def scenario():
        manager = await make_manager(**{API_KEY: "good-token", AUTO_OPEN_LINKS: False})
        await manager.initialize()
        await manager.handle_stream_event(StreamEvent(PUSH_DELIVERED, Push(id="p1", type="note", title="Hi")))

        snapshot = await manager.on_credential_changed(None)

        assert not snapshot.is_authenticated
        assert not manager.cache.is_authenticated
        assert manager.cache.recent_pushes == []
        assert manager.cache.devices == []
        assert manager.cache.user_info is None
        assert manager.cache.auto_open_links is False
        assert manager.device_iden is None
        assert not manager.stream.is_open
        await manager.store.close()

    asyncio.run(scenario())


def test_removing_stored_token_logs_out(make_manager):
    async def scenario():
        manager = await make_manager(**{API_KEY: "good-token"})
        await manager.initialize()

        await manager.store.remove([API_KEY])

        assert manager.api_key is None
        assert not manager.cache.is_authenticated
        assert manager.stream.closes >= 1
        await manager.store.close()

    asyncio.run(scenario())


def test_new_credential_builds_session_and_notifies_popups(make_manager, service):
    async def scenario():
        manager = await make_manager()
        await manager.initialize()

        snapshot = await manager.on_credential_changed("good-token", "Laptop")

        assert snapshot.is_authenticated
        assert snapshot.device_nickname == "Laptop"
        assert service.registered == [("dev-1", "Laptop")]
        assert await manager.store.get_value(DEVICE_NICKNAME) == "Laptop"
        assert manager.stream.connects == ["good-token"]
        assert isinstance(manager.broadcaster.messages[-1], SessionDataUpdated)
        assert manager.broadcaster.messages[-1].is_authenticated
        await manager.store.close()

    asyncio.run(scenario())


def test_rejected_credential_reports_unauthenticated(make_manager):
    async def scenario():
        manager = await make_manager()
        await manager.initialize()

        snapshot = await manager.on_credential_changed("revoked")

        assert not snapshot.is_authenticated
        assert manager.broadcaster.messages == []
        await manager.store.close()

    asyncio.run(scenario())


def test_settings_are_persisted(make_manager, service):
    async def scenario():
        manager = await make_manager(**{API_KEY: "good-token"})
        await manager.initialize()

        await manager.on_setting_changed(AUTO_OPEN_LINKS, False)
        assert manager.cache.auto_open_links is False
        assert await manager.store.get_value(AUTO_OPEN_LINKS) is False

        await manager.on_setting_changed(DEVICE_NICKNAME, "Work")
        assert manager.cache.device_nickname == "Work"
        assert await manager.store.get_value(DEVICE_NICKNAME) == "Work"
        assert service.renamed == [("dev-1", "Work")]
        assert isinstance(manager.broadcaster.messages[-1], SessionDataUpdated)
        assert "Work" in [device.nickname for device in manager.cache.devices]

        with pytest.raises(ValueError):
            await manager.on_setting_changed("theme", "dark")
        await manager.store.close()

    asyncio.run(scenario())


def test_rename_failure_is_absorbed(make_manager, service):
    async def scenario():
        manager = await make_manager(**{API_KEY: "good-token"})
        await manager.initialize()
        service.fail_rename = True

        await manager.on_setting_changed(DEVICE_NICKNAME, "Work")

        assert manager.cache.device_nickname == "Work"
        assert manager.broadcaster.messages == []
        await manager.store.close()

    asyncio.run(scenario())


def test_store_changes_reach_the_cache(make_manager):
    async def scenario():
        manager = await make_manager(**{API_KEY: "good-token"})
        await manager.initialize()

        await manager.store.set({AUTO_OPEN_LINKS: False, DEVICE_NICKNAME: "Desk"})

        assert manager.cache.auto_open_links is False
        assert manager.cache.device_nickname == "Desk"
        await manager.store.close()

    asyncio.run(scenario())


def test_link_from_other_device_notifies_once_and_opens(make_manager):
    async def scenario():
        manager = await make_manager(**{API_KEY: "good-token"})
        await manager.initialize()
        push = Push(id="p1", type="link", title="Docs", url="https://docs.test", source_device_id="dev-phone")

        await manager.handle_stream_event(StreamEvent(PUSH_DELIVERED, push))
        await manager.handle_stream_event(StreamEvent(PUSH_DELIVERED, push))

        backend = manager.notifier.backend
        assert [key for key, _ in backend.created] == ["push_p1"]
        assert manager.tabs.opened == ["https://docs.test"]
        assert [p.id for p in manager.cache.recent_pushes] == ["p1"]
        assert isinstance(manager.broadcaster.messages[-1], PushesUpdated)
        assert await manager.store.get_value("push_p1") is not None
        await manager.store.close()

    asyncio.run(scenario())


def test_tickle_after_direct_push_does_not_renotify(make_manager, service):
    async def scenario():
        manager = await make_manager(**{API_KEY: "good-token"})
        await manager.initialize()
        service.pushes = [make_push("p1", "note", title="Hi", source_device_iden="dev-phone")]

        await manager.handle_stream_event(StreamEvent(PUSH_DELIVERED, Push.model_validate(service.pushes[0])))
        await manager.handle_stream_event(StreamEvent(LIST_CHANGED))

        assert len(manager.notifier.backend.created) == 1
        assert manager.cache.recent_pushes[0].notified
        await manager.store.close()

    asyncio.run(scenario())


def test_own_push_is_never_notified(make_manager):
    async def scenario():
        manager = await make_manager(**{API_KEY: "good-token"})
        await manager.initialize()
        push = Push(id="p1", type="link", url="https://docs.test", source_device_id=manager.device_iden)

        assert manager.is_own_push(push)
        await manager.handle_stream_event(StreamEvent(PUSH_DELIVERED, push))

        assert manager.notifier.backend.created == []
        assert manager.tabs.opened == []
        assert [p.id for p in manager.cache.recent_pushes] == ["p1"]
        await manager.store.close()

    asyncio.run(scenario())


def test_auto_open_disabled_still_notifies(make_manager):
    async def scenario():
        manager = await make_manager(**{API_KEY: "good-token"})
        await manager.initialize()
        await manager.on_setting_changed(AUTO_OPEN_LINKS, False)

        await manager.handle_stream_event(
            StreamEvent(PUSH_DELIVERED, Push(id="p1", type="link", url="https://docs.test"))
        )

        assert len(manager.notifier.backend.created) == 1
        assert manager.tabs.opened == []
        await manager.store.close()

    asyncio.run(scenario())


def test_list_changed_notifies_newest_push(make_manager, service):
    async def scenario():
        manager = await make_manager(**{API_KEY: "good-token"})
        await manager.initialize()
        service.pushes = [
            make_push("p2", "note", title="Second", source_device_iden="dev-phone"),
            make_push("p1", "note", title="First", source_device_iden="dev-phone"),
            make_push("p0", "note"),
        ]

        await manager.handle_stream_event(StreamEvent(LIST_CHANGED))
        await manager.handle_stream_event(StreamEvent(LIST_CHANGED))

        assert [p.id for p in manager.cache.recent_pushes] == ["p2", "p1"]
        assert [key for key, _ in manager.notifier.backend.created] == ["push_p2"]
        assert isinstance(manager.broadcaster.messages[-1], PushesUpdated)
        await manager.store.close()

    asyncio.run(scenario())


def test_empty_push_is_not_cached(make_manager):
    async def scenario():
        manager = await make_manager(**{API_KEY: "good-token"})
        await manager.initialize()

        await manager.handle_stream_event(StreamEvent(PUSH_DELIVERED, Push(id="p1", type="note")))

        assert manager.cache.recent_pushes == []
        assert not any(isinstance(m, PushesUpdated) for m in manager.broadcaster.messages)
        await manager.store.close()

    asyncio.run(scenario())


def test_recent_pushes_are_bounded(make_manager):
    async def scenario():
        manager = await make_manager(**{API_KEY: "good-token"})
        await manager.initialize()

        for i in range(25):
            push = Push(id=f"p{i}", type="note", title=f"Push {i}", source_device_id=manager.device_iden)
            await manager.handle_stream_event(StreamEvent(PUSH_DELIVERED, push))

        assert len(manager.cache.recent_pushes) == 20
        assert manager.cache.recent_pushes[0].id == "p24"
        await manager.store.close()

    asyncio.run(scenario())


def test_logout_during_refresh_discards_its_results(make_manager, service):
    async def scenario():
        manager = await make_manager(**{API_KEY: "good-token"})
        await manager.initialize()

        service.delay = 0.05
        in_flight = asyncio.create_task(manager.refresh())
        await asyncio.sleep(0.01)
        await manager.on_credential_changed(None)
        results = await asyncio.gather(in_flight, return_exceptions=True)

        assert isinstance(results[0], AuthError)
        assert not manager.cache.is_authenticated
        assert manager.cache.user_info is None
        assert manager.cache.devices == []
        assert not (await manager.get_snapshot()).is_authenticated
        await manager.store.close()

    asyncio.run(scenario())


def test_new_credential_does_not_wait_on_old_refresh(make_manager, service):
    async def scenario():
        service.valid_keys.add("other-token")
        manager = await make_manager(**{API_KEY: "good-token"})
        await manager.initialize()

        service.delay = 0.05
        in_flight = asyncio.create_task(manager.refresh())
        await asyncio.sleep(0.01)
        service.valid_keys.discard("good-token")
        snapshot = await manager.on_credential_changed("other-token")
        await asyncio.gather(in_flight, return_exceptions=True)

        assert snapshot.is_authenticated
        assert manager.cache.is_authenticated
        assert manager.api_key == "other-token"
        assert manager.stream.connects == ["good-token", "other-token"]
        assert isinstance(manager.broadcaster.messages[-1], SessionDataUpdated)
        await manager.store.close()

    asyncio.run(scenario())


def test_registration_is_retried_on_next_request(make_manager, service):
    async def scenario():
        service.fail_register = True
        manager = await make_manager(**{API_KEY: "good-token"})
        await manager.initialize()

        assert not manager.cache.is_authenticated
        assert manager.stream.connects == []

        service.fail_register = False
        snapshot = await manager.get_snapshot()

        assert snapshot.is_authenticated
        assert manager.device_iden == "dev-1"
        assert await manager.store.get_value(DEVICE_IDEN) == "dev-1"
        assert service.calls["register"] == 2
        assert manager.stream.connects == ["good-token"]
        await manager.store.close()

    asyncio.run(scenario())


def test_refresh_leaves_connecting_stream_alone(make_manager, service, clock):
    async def scenario():
        manager = await make_manager(**{API_KEY: "good-token"})
        await manager.initialize()

        manager.stream.state = StreamState.CONNECTING
        clock.advance(31)
        await manager.get_snapshot()
        assert manager.stream.connects == ["good-token"]

        manager.stream.state = StreamState.DISCONNECTED
        await manager.refresh()
        assert manager.stream.connects == ["good-token", "good-token"]
        await manager.store.close()

    asyncio.run(scenario())


def status_messages(manager):
    return [notification.message for key, notification in manager.notifier.backend.created if key.startswith("status_")]


def test_push_link_confirms_and_refreshes(make_manager, service):
    async def scenario():
        manager = await make_manager(**{API_KEY: "good-token"})
        await manager.initialize()

        push = await manager.push_link("https://example.com/article", "Article")

        assert push.url == "https://example.com/article"
        assert service.pushes[0]["source_device_iden"] == "dev-1"
        assert status_messages(manager) == ["Link pushed successfully!"]
        assert [p.id for p in manager.cache.recent_pushes] == [push.id]
        assert isinstance(manager.broadcaster.messages[-1], PushesUpdated)
        # Our own push is never announced as a received one
        await manager.handle_stream_event(StreamEvent(LIST_CHANGED))
        assert status_messages(manager) == ["Link pushed successfully!"]
        assert len(manager.notifier.backend.created) == 1
        await manager.store.close()

    asyncio.run(scenario())


def test_share_targets(make_manager, service):
    async def scenario():
        manager = await make_manager(**{API_KEY: "good-token"})
        await manager.initialize()

        await manager.share("selection", text="Some quoted text", page_title="Docs")
        await manager.share("image", url="https://img.test/cat.png", page_title="Cats")
        await manager.share("page", url="https://docs.test", page_title="Docs")

        assert [(p["type"], p["title"]) for p in reversed(service.pushes)] == [
            ("note", "Selection from Docs"),
            ("link", "Image from Cats"),
            ("link", "Docs"),
        ]
        assert service.pushes[2]["body"] == "Some quoted text"
        assert status_messages(manager) == [
            "Note pushed successfully!",
            "Link pushed successfully!",
            "Link pushed successfully!",
        ]

        with pytest.raises(ValueError):
            await manager.share("video", url="https://v.test")
        await manager.store.close()

    asyncio.run(scenario())


def test_push_without_token_asks_for_login(make_manager, service):
    async def scenario():
        manager = await make_manager()
        await manager.initialize()

        assert await manager.push_link("https://example.com") is None
        assert status_messages(manager) == [LOGIN_REQUIRED_MESSAGE]
        assert service.calls["send"] == 0
        await manager.store.close()

    asyncio.run(scenario())


def test_push_errors_are_reported(make_manager, service):
    async def scenario():
        manager = await make_manager(**{API_KEY: "good-token"})
        await manager.initialize()

        assert await manager.push_link(None, "No URL") is None
        assert service.calls["send"] == 0

        manager.api_key = "revoked"
        assert await manager.push_note("Title", "Body") is None

        messages = status_messages(manager)
        assert messages[0] == "Error pushing link: Please enter a URL for the link."
        assert messages[1].startswith("Error pushing note: ")
        await manager.store.close()

    asyncio.run(scenario())

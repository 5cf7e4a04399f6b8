"""Tests for the messaging facade wiring."""

import asyncio
import logging
from pathlib import Path

from chatcore.auth import AuthSession
from chatcore.services.facade import MessagingFacade
from chatcore.services.realtime import PollingTrigger


async def _wait_for_badge(facade, expected, timeout=2.0):
    """Wait until the unread badge shows `expected` or the timeout passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while facade.unread_conversations_count != expected and loop.time() < deadline:
        await asyncio.sleep(0.01)
    return facade.unread_conversations_count


class TestMessagingFacade:
    """Test end-to-end flows through the facade."""

    def test_send_and_mark_read_update_badge(self, session_factory, key_store, auth, settings, users):
        """Test that send and mark-read refresh the badge without waiting for a poll."""
        async def scenario():
            facade = MessagingFacade(
                session_factory, key_store, auth, settings=settings, update_trigger=PollingTrigger(60)
            )
            seen = []
            facade.subscribe_unread_count(seen.append)

            conversation_id = await facade.get_or_create_direct_conversation(users["alice"], users["bob"])
            await facade.send_message(conversation_id, "hello", users["alice"])

            # The first poll tick runs on sign-in; the next one is a minute away
            auth.sign_in(users["bob"])
            assert await _wait_for_badge(facade, 1) == 1

            await facade.mark_conversation_as_read(conversation_id, users["bob"])
            assert await _wait_for_badge(facade, 0) == 0

            await facade.send_message(conversation_id, "again", users["alice"])
            assert await _wait_for_badge(facade, 1) == 1
            assert seen[:3] == [0, 1, 0]

            messages = await facade.fetch_messages(conversation_id, user_id=users["bob"])
            assert [m.content for m in messages] == ["hello", "again"]

            facade.close()
            assert not facade.realtime.is_connected

        asyncio.run(scenario())

    def test_sign_in_outside_event_loop(self, session_factory, key_store, auth, settings, users):
        """Test that signing in from synchronous code neither raises nor starts polling."""
        facade = MessagingFacade(session_factory, key_store, auth, settings=settings)
        other_listener_calls = []
        auth.add_listener(other_listener_calls.append)

        auth.sign_in(users["alice"])

        assert auth.current_user_id == users["alice"]
        assert not facade.realtime.is_connected
        assert other_listener_calls == [users["alice"]]

        async def scenario():
            facade.realtime.start_subscriptions()
            connected = facade.realtime.is_connected
            facade.close()
            return connected

        assert asyncio.run(scenario()) is True

    def test_default_trigger_uses_poll_interval(self, session_factory, key_store, auth, settings):
        """Test that the polling interval comes from settings."""
        facade = MessagingFacade(session_factory, key_store, auth, settings=settings)
        trigger = facade.realtime._trigger

        assert isinstance(trigger, PollingTrigger)
        assert trigger.interval == settings.UNREAD_POLL_INTERVAL_SECONDS
        facade.close()

    def test_group_operations(self, session_factory, key_store, auth, settings, users):
        """Test group operations forwarded by the facade."""
        async def scenario():
            facade = MessagingFacade(session_factory, key_store, auth, settings=settings)
            auth.sign_in(users["alice"])
            conversation_id = await facade.create_group_conversation("Team", member_ids=[users["bob"]])

            assert await facade.add_member_to_group(conversation_id, users["carol"])
            assert len(await facade.get_group_members(conversation_id)) == 3
            [group] = await facade.fetch_group_conversations(users["carol"])
            assert group.id == conversation_id
            facade.close()

        asyncio.run(scenario())

    def test_from_settings(self, settings, engine, users):
        """Test building the facade from settings with an on-disk key store."""
        auth = AuthSession(users["alice"])
        facade = MessagingFacade.from_settings(settings, auth)

        async def scenario():
            conversation_id = await facade.get_or_create_direct_conversation(users["alice"], users["bob"])
            await facade.send_message(conversation_id, "persisted", users["alice"])
            return await facade.fetch_conversations(users["alice"])

        [conversation] = asyncio.run(scenario())
        assert conversation.last_message_preview == "persisted"
        assert (Path(settings.KEY_STORE_DIR) / users["alice"] / "user_message_key.key").exists()
        facade.close()

    def test_from_settings_applies_log_level(self, settings, engine):
        """Test that the configured log level reaches the package logger."""
        settings.LOG_LEVEL = "WARNING"
        package_logger = logging.getLogger("chatcore")
        previous_level = package_logger.level
        try:
            facade = MessagingFacade.from_settings(settings, AuthSession())
            assert package_logger.level == logging.WARNING
            facade.close()
        finally:
            package_logger.setLevel(previous_level)

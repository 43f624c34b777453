"""Tests for the Slack gateway: event filtering, lookups and posting."""

import hashlib
import hmac
import json
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from drivers.slack import SlackDriver, _verify_slack_signature
from services.config_schema import SlackConfig
from services.message import Origin


def _config(**overrides):
    values = dict(
        bot_token="xoxb-test",
        bot_id="U9",
        channel="C0BRIDGE",
        signing_secret="signing-secret",
    )
    values.update(overrides)
    return SlackConfig(**values)


@pytest.fixture
def bridge():
    b = MagicMock()
    b.on_slack_message = AsyncMock()
    return b


@pytest.fixture
def driver(bridge):
    drv = SlackDriver(_config(), bridge)
    drv._web = MagicMock()
    drv._web.chat_postMessage = AsyncMock()
    drv._web.users_info = AsyncMock()
    drv._web.conversations_info = AsyncMock()
    return drv


def _event(**fields):
    event = {"type": "message", "channel": "C0BRIDGE", "user": "U1", "text": "hi"}
    event.update(fields)
    return event


class TestDispatch:

    @pytest.mark.asyncio
    async def test_plain_message(self, driver, bridge):
        await driver._dispatch_event(_event())
        msg = bridge.on_slack_message.await_args.args[0]
        assert msg.origin is Origin.SLACK
        assert (msg.sender, msg.text) == ("U1", "hi")

    @pytest.mark.asyncio
    async def test_own_messages_dropped(self, driver, bridge):
        await driver._dispatch_event(_event(user="U9", text="hi <@U9>"))
        await driver._dispatch_event(_event(user="", bot_id="U9", subtype="bot_message"))
        bridge.on_slack_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_own_post_echo_dropped_by_app_id(self, bridge):
        drv = SlackDriver(_config(bot_id="A0APP"), bridge)
        await drv._dispatch_event({
            "type": "message", "subtype": "bot_message", "channel": "C0BRIDGE",
            "bot_id": "B0BOT", "app_id": "A0APP", "username": "alice", "text": "hello",
        })
        bridge.on_slack_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_own_post_echo_dropped_after_auth_test(self, bridge):
        drv = SlackDriver(_config(bot_id="A0APP"), bridge)
        drv._web = MagicMock()
        drv._web.auth_test = AsyncMock(return_value={"user_id": "U0BOTUSER", "bot_id": "B0BOT"})
        await drv._identify_self()

        bridge.add_slack_self_ids.assert_called_once_with("U0BOTUSER", "B0BOT")
        await drv._dispatch_event(_event(user="", subtype="bot_message", bot_id="B0BOT", username="alice"))
        bridge.on_slack_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_auth_test_failure_keeps_configured_id(self, driver, bridge):
        driver._web.auth_test = AsyncMock(side_effect=RuntimeError("invalid_auth"))
        await driver._identify_self()
        bridge.add_slack_self_ids.assert_not_called()
        await driver._dispatch_event(_event(user="U9"))
        bridge.on_slack_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_app_id_carried_for_other_integrations(self, driver, bridge):
        await driver._dispatch_event(_event(user="", subtype="bot_message", bot_id="B7", app_id="A7"))
        msg = bridge.on_slack_message.await_args.args[0]
        assert (msg.bot_id, msg.app_id) == ("B7", "A7")

    @pytest.mark.asyncio
    async def test_other_channel_dropped(self, driver, bridge):
        await driver._dispatch_event(_event(channel="C0OTHER"))
        bridge.on_slack_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_edits_and_deletes_dropped(self, driver, bridge):
        await driver._dispatch_event(_event(subtype="message_changed"))
        await driver._dispatch_event(_event(subtype="message_deleted"))
        await driver._dispatch_event({"type": "reaction_added"})
        bridge.on_slack_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_file_share_carries_files_and_attachments(self, driver, bridge):
        await driver._dispatch_event(_event(
            subtype="file_share",
            text="",
            files=[{"name": "cat.png", "url_private": "http://x/cat.png"}],
            attachments=[{"pretext": "p", "title_link": "http://t"}],
        ))
        msg = bridge.on_slack_message.await_args.args[0]
        assert msg.files[0].name == "cat.png"
        assert msg.files[0].url_private == "http://x/cat.png"
        assert msg.attachments[0].pretext == "p"
        assert msg.attachments[0].title_link == "http://t"

    @pytest.mark.asyncio
    async def test_bot_message_keeps_bot_name(self, driver, bridge):
        await driver._dispatch_event(_event(
            user="", subtype="bot_message", bot_id="B7", bot_profile={"name": "CI"},
        ))
        msg = bridge.on_slack_message.await_args.args[0]
        assert (msg.bot_name, msg.bot_id) == ("CI", "B7")


class TestLookups:

    @pytest.mark.asyncio
    async def test_display_name(self, driver):
        driver._web.users_info.return_value = {
            "user": {"profile": {"display_name_normalized": "Alice", "real_name_normalized": "Alice A"}}
        }
        assert await driver.lookup_display_name("U1") == "Alice"
        driver._web.users_info.assert_awaited_once_with(user="U1")

    @pytest.mark.asyncio
    async def test_display_name_falls_back_to_real_name(self, driver):
        driver._web.users_info.return_value = {
            "user": {"profile": {"display_name_normalized": "", "real_name_normalized": "Alice A"}}
        }
        assert await driver.lookup_display_name("U1") == "Alice A"

    @pytest.mark.asyncio
    async def test_display_name_failure(self, driver):
        driver._web.users_info.side_effect = RuntimeError("user_not_found")
        assert await driver.lookup_display_name("U404") is None

    @pytest.mark.asyncio
    async def test_channel_name(self, driver):
        driver._web.conversations_info.return_value = {"channel": {"name": "general"}}
        assert await driver.lookup_channel_name("C1") == "general"

    @pytest.mark.asyncio
    async def test_channel_name_failure(self, driver):
        driver._web.conversations_info.side_effect = RuntimeError("channel_not_found")
        assert await driver.lookup_channel_name("C2") is None


class TestPost:

    @pytest.mark.asyncio
    async def test_post_with_avatar(self, driver):
        assert await driver.post_as_user("C0BRIDGE", "hi", "alice", "http://img/a.png") is True
        driver._web.chat_postMessage.assert_awaited_once_with(
            channel="C0BRIDGE", text="hi", username="alice", icon_url="http://img/a.png"
        )

    @pytest.mark.asyncio
    async def test_post_with_placeholder(self, driver):
        await driver.post_as_user("C0BRIDGE", "hi", "alice", None)
        driver._web.chat_postMessage.assert_awaited_once_with(
            channel="C0BRIDGE", text="hi", username="alice", icon_emoji=":speech_balloon:"
        )

    @pytest.mark.asyncio
    async def test_send_hook_posts_as_user(self, driver):
        assert await driver.send("C0BRIDGE", "hi", display_name="alice") is True
        driver._web.chat_postMessage.assert_awaited_once_with(
            channel="C0BRIDGE", text="hi", username="alice", icon_emoji=":speech_balloon:"
        )

    @pytest.mark.asyncio
    async def test_post_failure_returns_false(self, driver):
        driver._web.chat_postMessage.side_effect = RuntimeError("not_in_channel")
        assert await driver.post_as_user("C0BRIDGE", "hi", "alice") is False
        assert driver._web.chat_postMessage.await_count == 1


def _signed(secret, body, ts=None):
    ts = str(int(time.time()) if ts is None else ts)
    sig = "v0=" + hmac.new(secret.encode(), f"v0:{ts}:{body.decode()}".encode(), hashlib.sha256).hexdigest()
    return {"X-Slack-Request-Timestamp": ts, "X-Slack-Signature": sig}


class TestEventsApi:

    def test_signature_valid(self):
        body = b'{"type":"event_callback"}'
        assert _verify_slack_signature("s3cret", _signed("s3cret", body), body) is True

    def test_signature_stale(self):
        body = b"{}"
        headers = _signed("s3cret", body, ts=int(time.time()) - 600)
        assert _verify_slack_signature("s3cret", headers, body) is False

    def test_signature_wrong_secret(self):
        body = b"{}"
        assert _verify_slack_signature("s3cret", _signed("other", body), body) is False

    @pytest.mark.asyncio
    async def test_url_verification(self, driver):
        body = json.dumps({"type": "url_verification", "challenge": "abc"}).encode()
        request = MagicMock()
        request.read = AsyncMock(return_value=body)
        request.headers = _signed("signing-secret", body)

        resp = await driver._handle_events_api(request)
        assert resp.status == 200
        assert json.loads(resp.body) == {"challenge": "abc"}

    @pytest.mark.asyncio
    async def test_bad_signature_rejected(self, driver):
        body = b"{}"
        request = MagicMock()
        request.read = AsyncMock(return_value=body)
        request.headers = _signed("wrong", body)

        resp = await driver._handle_events_api(request)
        assert resp.status == 403

# Slack driver.
#
# Receive: two modes —
#   Socket Mode (when app_token is set)   – WebSocket; no public URL needed.
#   Events API  (when signing_secret set) – HTTP webhook from Slack.
#
# Send: chat.postMessage with a custom username and icon (requires the
#       chat:write.customize scope), so relayed IRC users appear under their
#       own nick and avatar.
#
# Lookups: users.info for display names, conversations.info for channel
#          names.  Neither is cached; every message asks again.
#
# Config keys (under slack):
#   bot_token        – Bot token (xoxb-...) for the Web API
#   bot_id           – The bridge's own user/bot/app id; its events are ignored
#                      (auth.test adds the bot's user and bot ids at start)
#   channel          – Bound Slack channel id, e.g. "C1234567890"
#   app_token        – App-level token (xapp-...) for Socket Mode receive
#   signing_secret   – Slack signing secret for Events API signature verification
#   listen_port      – HTTP port for Events API receive (default 3000)
#   listen_path      – HTTP path for Events API (default: "/slack/events")
#   placeholder_icon – icon_emoji used when a nick has no stored avatar

import asyncio
import hashlib
import hmac as _hmac
import json
import time

from aiohttp import web

from slack_sdk.socket_mode.aiohttp import SocketModeClient
from slack_sdk.socket_mode.request import SocketModeRequest
from slack_sdk.socket_mode.response import SocketModeResponse
from slack_sdk.web.async_client import AsyncWebClient

import services.logger as log
from services.config_schema import SlackConfig
from services.message import InboundMessage, Origin, SlackAttachment, SlackFile
from drivers import BaseDriver

l = log.get_logger()

# Message subtypes worth relaying; edits, deletions, joins etc. are not.
_RELAYED_SUBTYPES = {None, "file_share", "bot_message", "me_message", "thread_broadcast"}


def _verify_slack_signature(signing_secret: str, headers, body: bytes) -> bool:
    """Verify X-Slack-Signature against the request body using HMAC-SHA256."""
    timestamp = headers.get("X-Slack-Request-Timestamp", "")
    signature = headers.get("X-Slack-Signature", "")
    try:
        if abs(time.time() - int(timestamp)) > 300:
            return False
    except (ValueError, TypeError):
        return False
    base = f"v0:{timestamp}:{body.decode('utf-8', errors='replace')}"
    expected = "v0=" + _hmac.new(
        signing_secret.encode(),
        base.encode(),
        hashlib.sha256,
    ).hexdigest()
    return _hmac.compare_digest(expected, signature)


class SlackDriver(BaseDriver[SlackConfig]):

    def __init__(self, config: SlackConfig, bridge):
        super().__init__(config, bridge)
        self._web = AsyncWebClient(token=config.bot_token)
        self._sm: SocketModeClient | None = None
        self._tasks: set[asyncio.Task] = set()
        # Ids under which the bridge's own posts come back; filled in by auth.test
        self._self_ids: set[str] = {config.bot_id} if config.bot_id else set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        self.bridge.register_slack(self)
        await self._identify_self()

        # ------ Socket Mode receive (preferred when app_token is present) ----
        if self.config.app_token:
            self._sm = SocketModeClient(
                app_token=self.config.app_token,
                web_client=self._web,
                auto_reconnect_enabled=True,
            )
            self._sm.socket_mode_request_listeners.append(self._on_request)
            try:
                await self._sm.connect()
                l.info("Slack Socket Mode connected")
                await asyncio.Event().wait()
            finally:
                await self._sm.close()
            return

        # ------ Events API webhook receive -----------------------------------
        web_app = web.Application()
        web_app.router.add_post(self.config.listen_path, self._handle_events_api)
        runner = web.AppRunner(web_app)
        await runner.setup()
        site = web.TCPSite(runner, "0.0.0.0", self.config.listen_port)
        await site.start()
        l.info(
            f"Slack Events API listening on "
            f"0.0.0.0:{self.config.listen_port}{self.config.listen_path}"
        )
        try:
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()

    async def _identify_self(self):
        """Learn the bot's own user and bot ids so its posts are never relayed back."""
        try:
            resp = await self._web.auth_test()
        except Exception as e:
            l.warning(f"Slack auth.test failed, relying on the configured bot id only: {e}")
            return
        ids = [i for i in (resp.get("user_id"), resp.get("bot_id")) if i]
        self._self_ids.update(ids)
        self.bridge.add_slack_self_ids(*ids)
        l.info(f"Slack identified as {', '.join(ids) or '(unknown)'}")

    # ------------------------------------------------------------------
    # Receive — Socket Mode
    # ------------------------------------------------------------------

    async def _on_request(self, client: SocketModeClient, req: SocketModeRequest) -> None:
        # Acknowledge immediately — Slack requires this within 3 seconds
        await client.send_socket_mode_response(
            SocketModeResponse(envelope_id=req.envelope_id)
        )
        if req.type != "events_api":
            return
        self._spawn(req.payload.get("event", {}))

    # ------------------------------------------------------------------
    # Receive — Events API (HTTP webhook)
    # ------------------------------------------------------------------

    async def _handle_events_api(self, request: web.Request) -> web.Response:
        body = await request.read()

        if self.config.signing_secret and not _verify_slack_signature(self.config.signing_secret, request.headers, body):
            return web.Response(status=403, text="Invalid signature")

        try:
            payload = json.loads(body)
        except Exception:
            return web.Response(status=400, text="Bad JSON")

        # URL verification challenge (sent by Slack when the endpoint is first saved)
        if payload.get("type") == "url_verification":
            return web.json_response({"challenge": payload.get("challenge", "")})

        self._spawn(payload.get("event", {}))
        return web.Response(status=200, text="ok")

    # ------------------------------------------------------------------
    # Receive — shared event dispatch
    # ------------------------------------------------------------------

    def _spawn(self, event: dict) -> None:
        # Events are processed independently; a slow lookup delays only its own message
        task = asyncio.create_task(self._dispatch_event(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dispatch_event(self, event: dict) -> None:
        if not isinstance(event, dict):
            return
        if event.get("type") != "message":
            return

        user_id = event.get("user", "")
        bot_id  = event.get("bot_id", "")
        app_id  = event.get("app_id", "")
        # Never echo what the bridge itself posted
        if any(i and i in self._self_ids for i in (user_id, bot_id, app_id)):
            return

        if event.get("subtype") not in _RELAYED_SUBTYPES:
            return
        if event.get("channel") != self.config.channel:
            return

        msg = InboundMessage(
            origin=Origin.SLACK,
            sender=user_id,
            text=event.get("text") or "",
            attachments=[SlackAttachment.from_event(a) for a in event.get("attachments") or []],
            files=[SlackFile.from_event(f) for f in event.get("files") or []],
            bot_name=(event.get("bot_profile") or {}).get("name") or event.get("username") or "",
            bot_id=bot_id,
            app_id=app_id,
        )
        await self.bridge.on_slack_message(msg)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def lookup_display_name(self, user_id: str) -> str | None:
        """Return the normalized display name of a Slack user, or None."""
        if not user_id:
            return None
        try:
            resp = await self._web.users_info(user=user_id)
            profile = resp["user"].get("profile", {})
        except Exception as e:
            l.warning(f"Slack users.info failed for {user_id}: {e}")
            return None
        return (
            profile.get("display_name_normalized")
            or profile.get("real_name_normalized")
            or None
        )

    async def lookup_channel_name(self, channel_id: str) -> str | None:
        if not channel_id:
            return None
        try:
            resp = await self._web.conversations_info(channel=channel_id)
            name = resp["channel"].get("name")
        except Exception as e:
            l.warning(f"Slack conversations.info failed for {channel_id}: {e}")
            return None
        return name or None

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    async def post_as_user(
        self,
        channel: str,
        text: str,
        display_name: str,
        avatar_url: str | None = None,
    ) -> bool:
        """Post *text* under *display_name*, with the stored avatar or the placeholder icon."""
        kwargs: dict = {"channel": channel, "text": text, "username": display_name}
        if avatar_url:
            kwargs["icon_url"] = avatar_url
        else:
            kwargs["icon_emoji"] = self.config.placeholder_icon
        try:
            await self._web.chat_postMessage(**kwargs)
        except Exception as e:
            l.error(f"Slack chat_postMessage failed: {e}")
            return False
        return True

    async def send(self, channel: str, text: str, **kwargs):
        """BaseDriver hook; the bridge calls post_as_user directly."""
        return await self.post_as_user(
            channel, text, kwargs.get("display_name", ""), kwargs.get("avatar_url")
        )

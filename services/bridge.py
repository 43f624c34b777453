from __future__ import annotations

import re
from typing import TYPE_CHECKING

import services.logger as log
from services.identity import IdentityCache
from services.message import BridgeBinding, InboundMessage, Origin
from services.transform import UNKNOWN_USER, TextTransformer

if TYPE_CHECKING:
    from drivers.irc import IrcDriver
    from drivers.slack import SlackDriver

l = log.get_logger()

# Config keys whose values are treated as credentials and must never appear in
# outgoing messages.  Matched as substrings against lower-cased key names.
_SENSITIVE_KEY_PATTERNS = ("token", "secret", "password", "api_key")

# Shorter values would block too many ordinary messages
_MIN_SENSITIVE_LEN = 8

PICTURE_COMMAND = "!picture"
_URL_RE = re.compile(r"^https?://\S+$", re.IGNORECASE)


def _collect_sensitive(obj, found: set[str]) -> None:
    """Recursively extract sensitive string values from the config dict."""
    if isinstance(obj, dict):
        for k, v in obj.items():
            if isinstance(v, str) and v and any(p in k.lower() for p in _SENSITIVE_KEY_PATTERNS):
                found.add(v)
            else:
                _collect_sensitive(v, found)
    elif isinstance(obj, list):
        for item in obj:
            _collect_sensitive(item, found)


def collect_sensitive(config: dict) -> frozenset[str]:
    found: set[str] = set()
    _collect_sensitive(config, found)
    return frozenset(found)


class Bridge:
    """
    Routes messages between the bound IRC and Slack channels.

    Each driver registers itself and then hands every inbound message to
    ``on_irc_message`` / ``on_slack_message``.  The bridge drops anything the
    bridge itself posted, translates the markup and calls the other side.
    It keeps no per-message state; avatars live in the identity cache.
    """

    def __init__(
        self,
        binding: BridgeBinding,
        irc_nick: str,
        slack_bot_id: str,
        transformer: TextTransformer,
        identities: IdentityCache,
    ):
        self.binding = binding
        self._irc_nick = irc_nick
        self._slack_self_ids: set[str] = {slack_bot_id} if slack_bot_id else set()
        self._transformer = transformer
        self._identities = identities
        self._irc: IrcDriver | None = None
        self._slack: SlackDriver | None = None
        self._sensitive: frozenset[str] = frozenset()

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def load_sensitive_values(self, config: dict):
        self._sensitive = frozenset(
            v for v in collect_sensitive(config) if len(v) >= _MIN_SENSITIVE_LEN
        )
        l.info(f"Loaded {len(self._sensitive)} sensitive value(s) for leak detection")

    def register_irc(self, driver: IrcDriver):
        self._irc = driver
        l.debug("Registered IRC side")

    def register_slack(self, driver: SlackDriver):
        self._slack = driver
        l.debug("Registered Slack side")

    def add_slack_self_ids(self, *ids: str):
        """Also treat events from these user/bot/app ids as the bridge's own."""
        self._slack_self_ids.update(i for i in ids if i)

    # ------------------------------------------------------------------
    # Loop prevention
    # ------------------------------------------------------------------

    def is_own_message(self, msg: InboundMessage) -> bool:
        if msg.origin is Origin.IRC:
            return msg.sender == self._irc_nick
        return any(i and i in self._slack_self_ids for i in (msg.sender, msg.bot_id, msg.app_id))

    def _is_sensitive(self, text: str) -> bool:
        return bool(self._sensitive) and any(s in text for s in self._sensitive)

    # ------------------------------------------------------------------
    # IRC → Slack
    # ------------------------------------------------------------------

    async def on_irc_message(self, msg: InboundMessage):
        if self.is_own_message(msg):
            return

        if not msg.is_action and msg.text.split(maxsplit=1)[:1] == [PICTURE_COMMAND]:
            await self._handle_picture(msg)
            return

        if self._slack is None:
            l.warning("No Slack side registered; dropping IRC message")
            return

        text = self._transformer.to_slack(msg.text, msg.is_action)
        if self._is_sensitive(text):
            l.warning(
                "Message to Slack blocked: text contains a sensitive value from "
                "config (token/secret/password). Possible credential leak."
            )
            return

        avatar = await self._identities.get_avatar_url(msg.sender)
        await self._slack.post_as_user(self.binding.slack_channel, text, msg.sender, avatar)

    async def _handle_picture(self, msg: InboundMessage):
        args = msg.text.split()[1:]
        nick = msg.sender

        if len(args) != 1 or not _URL_RE.match(args[0]):
            l.warning(f"Malformed {PICTURE_COMMAND} from {nick!r}: {msg.text!r}")
            reply = f"Failed to update picture for {nick}: usage is {PICTURE_COMMAND} <http(s) url>"
        elif await self._identities.set_avatar_url(nick, args[0]):
            reply = f"Updated picture for {nick}."
        else:
            reply = f"Failed to update picture for {nick}: could not save it, try again later."

        if self._irc is None:
            l.warning(f"No IRC side registered; cannot reply to {nick!r}")
            return
        await self._irc.send(self.binding.irc_channel, reply)

    # ------------------------------------------------------------------
    # Slack → IRC
    # ------------------------------------------------------------------

    async def on_slack_message(self, msg: InboundMessage):
        if self.is_own_message(msg):
            return

        if self._slack is None or self._irc is None:
            l.warning("Bridge not fully registered; dropping Slack message")
            return

        slack = self._slack
        text = await self._transformer.to_irc(
            msg, slack.lookup_display_name, slack.lookup_channel_name
        )
        if self._is_sensitive(text):
            l.warning(
                "Message to IRC blocked: text contains a sensitive value from "
                "config (token/secret/password). Possible credential leak."
            )
            return

        author = (
            await slack.lookup_display_name(msg.sender)
            or msg.bot_name
            or UNKNOWN_USER
        )

        lines = [line for line in text.split("\n") if line.strip()]
        if not lines:
            l.debug(f"Nothing to relay from Slack user {msg.sender!r}")
            return
        for line in lines:
            await self._irc.send(self.binding.irc_channel, f"<{author}> {line}")

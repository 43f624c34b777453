# IRC driver via pydle (async).
#
# Handshake, one step per state:
#   DISCONNECTED → REGISTERING     connect() issued; NICK/USER sent by pydle
#   REGISTERING  → AUTHENTICATING  registration acknowledged; IDENTIFY to NickServ
#   AUTHENTICATING → SETTING_MODE  MODE <nick> +B (no unsolicited private messages)
#   SETTING_MODE → JOINING         JOIN <channel> [key]
#   JOINING      → JOINED          server echoes our own JOIN
# Any disconnect drops back to DISCONNECTED; pydle's own reconnect logic
# takes it from there.
#
# Receive: channel PRIVMSGs and CTCP ACTIONs (/me) in the bound channel, only
#          once JOINED.  Private messages are logged and never relayed.
# Send:    PRIVMSG to the bound channel, one line per PRIVMSG.
#
# Config keys (under irc):
#   address, port, tls, tls_verify – server to connect to
#   nickname                       – the bridge's own nick
#   password                       – NickServ password (optional)
#   channel, channel_key           – bound channel and optional key
#   user_mode                      – user mode set after identifying (default "+B")
#   services_nick                  – nick of the identify service (default "NickServ")

import asyncio

import pydle

import services.logger as log
from services.config_schema import IrcConfig
from services.message import ConnectionState, InboundMessage, Origin
from drivers import BaseDriver

l = log.get_logger()

# Linear handshake order; the only back-edge is a reset to DISCONNECTED.
_HANDSHAKE = [
    ConnectionState.DISCONNECTED,
    ConnectionState.REGISTERING,
    ConnectionState.AUTHENTICATING,
    ConnectionState.SETTING_MODE,
    ConnectionState.JOINING,
    ConnectionState.JOINED,
]


class _IrcClient(pydle.Client):
    """pydle client that forwards protocol events to its IrcDriver."""

    def __init__(self, driver: "IrcDriver", nickname: str, **kwargs):
        super().__init__(nickname, **kwargs)
        self._driver = driver

    async def connect(self, *args, **kwargs):
        # Also reached through pydle's own reconnect path
        self._driver._advance(ConnectionState.REGISTERING)
        await super().connect(*args, **kwargs)

    async def on_connect(self):
        await super().on_connect()
        await self._driver._on_registered()

    async def on_join(self, channel, user):
        await super().on_join(channel, user)
        if self.is_same_nick(user, self.nickname):
            self._driver._on_joined(channel)

    async def on_disconnect(self, expected):
        self._driver._on_disconnected(expected)
        await super().on_disconnect(expected)

    async def on_channel_message(self, target, by, message):
        await super().on_channel_message(target, by, message)
        self._driver._on_channel_message(target, by, message)

    async def on_private_message(self, target, by, message):
        await super().on_private_message(target, by, message)
        self._driver._on_private_message(by, message)

    async def on_ctcp_action(self, by, target, contents):
        self._driver._on_action(by, target, contents)


class IrcDriver(BaseDriver[IrcConfig]):

    def __init__(self, config: IrcConfig, bridge):
        super().__init__(config, bridge)
        self.state = ConnectionState.DISCONNECTED
        self._client: _IrcClient | None = None
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        self.bridge.register_irc(self)
        cfg = self.config
        self._client = _IrcClient(self, cfg.nickname, realname=cfg.nickname)

        l.info(f"IRC connecting to {cfg.address}:{cfg.port} as {cfg.nickname}")
        try:
            await self._client.connect(
                cfg.address, cfg.port, tls=cfg.tls, tls_verify=cfg.tls_verify
            )
        except Exception:
            self._advance(ConnectionState.DISCONNECTED)
            raise

        try:
            await asyncio.Event().wait()
        finally:
            if self._client.connected:
                await self._client.disconnect(expected=True)

    def _advance(self, new: ConnectionState) -> bool:
        """Move to *new* if it is the next handshake step (or a reset)."""
        if new is self.state:
            return True
        allowed = new is ConnectionState.DISCONNECTED or (
            _HANDSHAKE.index(new) == _HANDSHAKE.index(self.state) + 1
        )
        if not allowed:
            l.warning(f"IRC refusing state change {self.state.name} → {new.name}")
            return False
        l.debug(f"IRC state {self.state.name} → {new.name}")
        self.state = new
        return True

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    async def _on_registered(self):
        client = self._client
        cfg = self.config
        if client is None or not self._advance(ConnectionState.AUTHENTICATING):
            return

        if cfg.password:
            await client.message(cfg.services_nick, f"IDENTIFY {cfg.password}")
            l.info(f"IRC identified to {cfg.services_nick}")

        self._advance(ConnectionState.SETTING_MODE)
        await client.rawmsg("MODE", client.nickname, cfg.user_mode)
        l.info(f"IRC set user mode {cfg.user_mode}")

        self._advance(ConnectionState.JOINING)
        await client.join(cfg.channel, password=cfg.channel_key or None)
        l.info(f"IRC joining {cfg.channel}")

    def _on_joined(self, channel: str):
        if not self._is_bound(channel):
            return
        if self._advance(ConnectionState.JOINED):
            l.info(f"IRC joined {channel}")

    def _on_disconnected(self, expected: bool):
        if expected:
            l.info("IRC disconnected")
        else:
            l.error("IRC connection lost")
        self._advance(ConnectionState.DISCONNECTED)

    # ------------------------------------------------------------------
    # Receive
    # ------------------------------------------------------------------

    def _is_bound(self, target: str) -> bool:
        if self._client is not None:
            return self._client.is_same_channel(target, self.config.channel)
        return target.lower() == self.config.channel.lower()

    def _dispatch(self, msg: InboundMessage):
        # One task per message so a slow Slack call never blocks the socket reader
        task = asyncio.create_task(self.bridge.on_irc_message(msg))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_channel_message(self, target: str, by: str, message: str):
        if self.state is not ConnectionState.JOINED or not self._is_bound(target):
            return
        self._dispatch(InboundMessage(origin=Origin.IRC, sender=by, text=message))

    def _on_action(self, by: str, target: str, contents: str):
        if not self._is_bound(target):
            if not target.startswith(("#", "&")):
                l.info(f"IRC private action from {by}: {contents}")
            return
        if self.state is not ConnectionState.JOINED:
            return
        self._dispatch(
            InboundMessage(origin=Origin.IRC, sender=by, text=contents or "", is_action=True)
        )

    def _on_private_message(self, by: str, message: str):
        l.info(f"IRC private message from {by}: {message}")

    # ------------------------------------------------------------------
    # Send
    # ------------------------------------------------------------------

    async def send(self, channel: str, text: str, **kwargs):
        if self._client is None or self.state is not ConnectionState.JOINED:
            l.warning(f"IRC send to {channel} dropped: not joined (state {self.state.name})")
            return
        for line in text.split("\n"):
            if not line.strip():
                continue
            try:
                await self._client.message(channel, line)
            except Exception as e:
                l.error(f"IRC send to {channel} failed: {e}")
                return

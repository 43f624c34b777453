from dataclasses import dataclass, field
from enum import Enum


class Origin(Enum):
    IRC = "irc"
    SLACK = "slack"


class ConnectionState(Enum):
    """Lifecycle of the IRC connection, in handshake order."""
    DISCONNECTED = "disconnected"
    REGISTERING = "registering"
    AUTHENTICATING = "authenticating"
    SETTING_MODE = "setting_mode"
    JOINING = "joining"
    JOINED = "joined"


@dataclass(frozen=True)
class BridgeBinding:
    """The single IRC channel <-> Slack channel pair this process relays."""
    irc_channel: str
    slack_channel: str
    irc_channel_key: str | None = None


@dataclass
class SlackAttachment:
    """A legacy Slack message attachment (unfurls, bot cards, ...)."""
    pretext: str = ""
    text: str = ""
    fallback: str = ""
    author_name: str = ""
    title_link: str = ""

    @classmethod
    def from_event(cls, raw: dict) -> "SlackAttachment":
        return cls(
            pretext=raw.get("pretext") or "",
            text=raw.get("text") or "",
            fallback=raw.get("fallback") or "",
            author_name=raw.get("author_name") or "",
            title_link=raw.get("title_link") or "",
        )


@dataclass
class SlackFile:
    """A file uploaded alongside a Slack message."""
    name: str = ""
    title: str = ""
    url_private: str = ""
    url_private_download: str = ""

    @classmethod
    def from_event(cls, raw: dict) -> "SlackFile":
        return cls(
            name=raw.get("name") or "",
            title=raw.get("title") or "",
            url_private=raw.get("url_private") or "",
            url_private_download=raw.get("url_private_download") or "",
        )


@dataclass
class InboundMessage:
    """One message received from either side, consumed immediately by the bridge."""
    origin: Origin
    sender: str          # IRC nick, or Slack user id
    text: str            # raw body in the origin's markup
    attachments: list[SlackAttachment] = field(default_factory=list)
    files: list[SlackFile] = field(default_factory=list)
    is_action: bool = False  # IRC /me
    bot_name: str = ""       # Slack bot_profile.name, if posted by an integration
    bot_id: str = ""
    app_id: str = ""

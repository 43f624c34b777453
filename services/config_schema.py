from __future__ import annotations

import os
from typing import Annotated, Any, Mapping

from pydantic import BaseModel, BeforeValidator, ConfigDict, model_validator


# ---------------------------------------------------------------------------
# Reusable bool coercion: "true" / "1" / "yes" → True
# ---------------------------------------------------------------------------

def _coerce_bool(v: object) -> object:
    if isinstance(v, str):
        return v.lower() in ("true", "1", "yes")
    return v


CoercedBool = Annotated[bool, BeforeValidator(_coerce_bool)]


# ---------------------------------------------------------------------------
# Base for all config sections — unknown keys are a validation error
# ---------------------------------------------------------------------------

class _SectionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------------
# Per-section config models
# ---------------------------------------------------------------------------

class IrcConfig(_SectionConfig):
    address:       str
    port:          int         = 6667
    tls:           CoercedBool = False
    tls_verify:    CoercedBool = True
    nickname:      str
    password:      str         = ""
    channel:       str
    channel_key:   str         = ""
    user_mode:     str         = "+B"
    services_nick: str         = "NickServ"


class SlackConfig(_SectionConfig):
    bot_token:        str
    bot_id:           str
    channel:          str
    app_token:        str = ""
    signing_secret:   str = ""
    listen_port:      int = 3000
    listen_path:      str = "/slack/events"
    placeholder_icon: str = ":speech_balloon:"

    @model_validator(mode="after")
    def _require_receiver(self) -> SlackConfig:
        if not self.app_token and not self.signing_secret:
            raise ValueError("requires 'app_token' (Socket Mode) or 'signing_secret' (Events API)")
        return self


class AirtableConfig(_SectionConfig):
    base_id:      str = ""
    api_key:      str = ""
    table:        str = "Avatars"
    handle_field: str = "handle"
    url_field:    str = "avatar_url"

    @property
    def enabled(self) -> bool:
        return bool(self.base_id and self.api_key)


class ShortenerConfig(_SectionConfig):
    api_key: str = ""
    api_url: str = "https://kutt.it/api/v2/links"


# ---------------------------------------------------------------------------
# Top-level application config
# ---------------------------------------------------------------------------

class AppConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    irc:           IrcConfig
    slack:         SlackConfig
    airtable:      AirtableConfig  = AirtableConfig()
    shortener:     ShortenerConfig = ShortenerConfig()
    startup_delay: float           = 0.0


# Environment variable → (section, key).  A section of None means top level.
ENV_KEYS: dict[str, tuple[str | None, str]] = {
    "IRC_ADDRESS":          ("irc", "address"),
    "IRC_PORT":             ("irc", "port"),
    "IRC_TLS":              ("irc", "tls"),
    "IRC_USERNAME":         ("irc", "nickname"),
    "IRC_PASSWORD":         ("irc", "password"),
    "IRC_BRIDGE_CHANNEL":   ("irc", "channel"),
    "IRC_CHANNEL_PASSWORD": ("irc", "channel_key"),
    "SLACK_BOT_TOKEN":      ("slack", "bot_token"),
    "SLACK_APP_TOKEN":      ("slack", "app_token"),
    "SLACK_SIGNING_SECRET": ("slack", "signing_secret"),
    "SLACK_LISTEN_PORT":    ("slack", "listen_port"),
    "SLACK_BRIDGE_CHANNEL": ("slack", "channel"),
    "APP_ID":               ("slack", "bot_id"),
    "AIRTABLE_BASE_ID":     ("airtable", "base_id"),
    "AIRTABLE_API_KEY":     ("airtable", "api_key"),
    "AIRTABLE_TABLE":       ("airtable", "table"),
    "KUTT_API_KEY":         ("shortener", "api_key"),
    "KUTT_API_URL":         ("shortener", "api_url"),
    "STARTUP_DELAY":        (None, "startup_delay"),
}


def overlay_env(raw: dict[str, Any], environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Return a copy of *raw* with every set environment variable from
    ``ENV_KEYS`` written over the matching config key."""
    environ = os.environ if environ is None else environ
    merged: dict[str, Any] = {k: (dict(v) if isinstance(v, dict) else v) for k, v in raw.items()}
    for env_name, (section, key) in ENV_KEYS.items():
        value = environ.get(env_name)
        if not value:
            continue
        if section is None:
            merged[key] = value
        else:
            merged.setdefault(section, {})[key] = value
    return merged

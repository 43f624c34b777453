"""Markup translation between Slack and IRC.

Slack → IRC is an ordered series of passes over the message body; each pass
sees the output of the one before it:

  1. attachment expansion
  2. channel mentions   <#C123|name>      → #general
  3. user mentions      <@U123>           → @alice
  4. plain links        <https://x/y>     → https://x/y (shortened)
  5. labelled links     <https://x/y|lbl> → lbl (https://x/y)
  6. entity decoding    &amp; &lt; &gt;   → & < >
  7. file expansion     FILE "name" (url)

IRC → Slack only has to render ``/me`` actions as italics.
"""
from __future__ import annotations

import asyncio
import html
import re
from typing import Awaitable, Callable, Optional

import services.logger as log
from services.message import InboundMessage
from services.shortener import LinkShortener

l = log.get_logger()

Lookup = Callable[[str], Awaitable[Optional[str]]]

UNKNOWN_USER = "UnknownUser"
UNKNOWN_CHANNEL = "UnknownChannel"
URL_NOT_FOUND = "URL not found!"

_CHANNEL_RE = re.compile(r"<#([A-Z0-9]+)(?:\|[^>]*)?>")
_USER_RE = re.compile(r"<@([A-Z0-9]+)(?:\|[^>]*)?>")
_PLAIN_LINK_RE = re.compile(r"<(https?)://([^>|]*)>", re.IGNORECASE)
_LABELLED_LINK_RE = re.compile(r"<(https?)://([^>|]*)\|([^>]*)>", re.IGNORECASE)

# Slack only ever escapes these three.
_ENTITY_RE = re.compile(r"&(amp|lt|gt);")


async def sub_async(
    pattern: re.Pattern,
    text: str,
    replace: Callable[[re.Match], Awaitable[str]],
) -> str:
    """Like ``pattern.sub`` but with an async replacement function.

    All matches are collected first and each distinct match text is resolved
    once, concurrently; the result is then rebuilt left to right so
    substitutions land in their original positions.
    """
    matches = list(pattern.finditer(text))
    if not matches:
        return text

    unique: dict[str, re.Match] = {}
    for m in matches:
        unique.setdefault(m.group(0), m)
    resolved = await asyncio.gather(*(replace(m) for m in unique.values()))
    by_text = dict(zip(unique.keys(), resolved))

    parts: list[str] = []
    pos = 0
    for m in matches:
        parts.append(text[pos:m.start()])
        parts.append(by_text[m.group(0)])
        pos = m.end()
    parts.append(text[pos:])
    return "".join(parts)


async def _resolve_name(lookup: Lookup, key: str, fallback: str) -> str:
    try:
        name = await lookup(key)
    except Exception as e:
        l.warning(f"Lookup failed for {key!r}: {e}")
        name = None
    return name or fallback


class TextTransformer:

    def __init__(self, shortener: LinkShortener | None = None):
        self._shortener = shortener

    async def _shorten(self, url: str) -> str:
        if self._shortener is None:
            return url
        return (await self._shortener.shorten(url)) or url

    # ------------------------------------------------------------------
    # Slack → IRC
    # ------------------------------------------------------------------

    async def to_irc(self, msg: InboundMessage, resolve_user: Lookup, resolve_channel: Lookup) -> str:
        body = await self.expand_attachments(msg)
        body = await self.resolve_channels(body, resolve_channel)
        body = await self.resolve_users(body, resolve_user)
        body = await self.shorten_links(body)
        body = await self.rewrite_labelled_links(body)
        body = decode_entities(body)
        return expand_files(body, msg)

    async def expand_attachments(self, msg: InboundMessage) -> str:
        body = msg.text or ""
        had_text = bool(body)
        for att in msg.attachments:
            if att.author_name:
                body += f" {att.author_name}"
            if had_text:
                body += "\n"
            body += f"{att.pretext} {att.text or att.fallback} "
            if att.title_link:
                body += f"{await self._shorten(att.title_link)}\n"
        return body

    async def resolve_channels(self, text: str, resolve_channel: Lookup) -> str:
        async def _replace(m: re.Match) -> str:
            return "#" + await _resolve_name(resolve_channel, m.group(1), UNKNOWN_CHANNEL)

        return await sub_async(_CHANNEL_RE, text, _replace)

    async def resolve_users(self, text: str, resolve_user: Lookup) -> str:
        async def _replace(m: re.Match) -> str:
            return "@" + await _resolve_name(resolve_user, m.group(1), UNKNOWN_USER)

        return await sub_async(_USER_RE, text, _replace)

    async def shorten_links(self, text: str) -> str:
        async def _replace(m: re.Match) -> str:
            return await self._shorten(f"{m.group(1)}://{m.group(2)}")

        return await sub_async(_PLAIN_LINK_RE, text, _replace)

    async def rewrite_labelled_links(self, text: str) -> str:
        async def _replace(m: re.Match) -> str:
            url = await self._shorten(f"{m.group(1)}://{m.group(2)}")
            return f"{m.group(3)} ({url})"

        return await sub_async(_LABELLED_LINK_RE, text, _replace)

    # ------------------------------------------------------------------
    # IRC → Slack
    # ------------------------------------------------------------------

    @staticmethod
    def to_slack(text: str, is_action: bool = False) -> str:
        # Slack's equivalent of /me is italic text
        return f"_{text}_" if is_action else text


def decode_entities(text: str) -> str:
    return _ENTITY_RE.sub(lambda m: html.unescape(m.group(0)), text)


def expand_files(body: str, msg: InboundMessage) -> str:
    for f in msg.files:
        if body:
            body += "\n"
        name = f.name or f.title or ""
        url = f.url_private or f.url_private_download or URL_NOT_FOUND
        body += f'FILE "{name}" ({url})'
    return body

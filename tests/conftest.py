"""Pytest configuration and shared fixtures."""

import asyncio
import os
import sys
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

# Keep test log files out of the working tree; must happen before services.logger is imported
os.environ.setdefault("BRIDGE_LOG_DIR", tempfile.mkdtemp(prefix="bridge-logs-"))

root = str(Path(__file__).parent.parent)
if root not in sys.path:
    sys.path.insert(0, root)

import pytest

from services.identity import RecordStore


class MemoryRecordStore(RecordStore):
    """In-memory record store; yields to the loop on every call like a remote store would."""

    def __init__(self):
        self.records: dict[str, dict[str, str]] = {}
        self._next_id = 0

    async def find(self, handle):
        await asyncio.sleep(0)
        for record_id, fields in self.records.items():
            if fields["handle"] == handle:
                return record_id, fields["url"]
        return None

    async def create(self, handle, url):
        await asyncio.sleep(0)
        self._next_id += 1
        record_id = f"rec{self._next_id}"
        self.records[record_id] = {"handle": handle, "url": url}
        return record_id

    async def update(self, record_id, url):
        await asyncio.sleep(0)
        self.records[record_id]["url"] = url

    def for_handle(self, handle):
        return [f for f in self.records.values() if f["handle"] == handle]


class FakeResponse:
    """Minimal stand-in for an aiohttp response used as ``async with``."""

    def __init__(self, status=200, payload=None, text=""):
        self.status = status
        self._payload = payload
        self._text = text

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def json(self, content_type=None):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload

    async def text(self):
        return self._text


@pytest.fixture
def memory_store():
    return MemoryRecordStore()


@pytest.fixture
def fake_slack():
    """Slack side of the bridge with canned users and channels."""
    users = {"U1": "Alice", "U3": "Bob"}
    channels = {"C1": "general"}
    slack = MagicMock()
    slack.post_as_user = AsyncMock(return_value=True)
    slack.lookup_display_name = AsyncMock(side_effect=lambda uid: users.get(uid))
    slack.lookup_channel_name = AsyncMock(side_effect=lambda cid: channels.get(cid))
    return slack


@pytest.fixture
def fake_irc():
    irc = MagicMock()
    irc.send = AsyncMock()
    return irc


@pytest.fixture
def make_response():
    return FakeResponse

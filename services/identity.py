import asyncio
from abc import ABC, abstractmethod

import services.logger as log

l = log.get_logger()


class RecordStore(ABC):
    """Remote key-value store holding one avatar record per IRC handle."""

    @abstractmethod
    async def find(self, handle: str) -> tuple[str, str] | None:
        """Return ``(record_id, avatar_url)`` for *handle*, or ``None`` if absent."""

    @abstractmethod
    async def create(self, handle: str, url: str) -> str:
        """Create a record and return its id."""

    @abstractmethod
    async def update(self, record_id: str, url: str) -> None:
        """Overwrite the avatar URL of an existing record."""


class IdentityCache:
    """
    Avatar URLs keyed by IRC nickname, consulted before every post to Slack.

    Lookups and writes never raise: failures are logged and reported as
    ``None`` / ``False``.  Writes for one handle go through a per-handle lock
    so two ``!picture`` commands from the same nick cannot both observe
    "no record" and create duplicates.  A lock lives only while some write
    for its handle is running or waiting.
    """

    def __init__(self, store: RecordStore | None):
        self._store = store
        # handle -> (lock, number of writers holding or waiting on it)
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}

    @property
    def enabled(self) -> bool:
        return self._store is not None

    async def get_avatar_url(self, handle: str) -> str | None:
        if self._store is None:
            return None
        try:
            found = await self._store.find(handle)
        except Exception as e:
            l.error(f"Avatar lookup failed for {handle!r}: {e}")
            return None
        if found is None:
            return None
        return found[1] or None

    async def set_avatar_url(self, handle: str, url: str) -> bool:
        if self._store is None:
            l.warning(f"Cannot store avatar for {handle!r}: no record store configured")
            return False

        lock, users = self._locks.get(handle, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[handle] = (lock, users + 1)
        try:
            async with lock:
                return await self._upsert(handle, url)
        finally:
            lock, users = self._locks[handle]
            if users > 1:
                self._locks[handle] = (lock, users - 1)
            else:
                del self._locks[handle]

    async def _upsert(self, handle: str, url: str) -> bool:
        try:
            found = await self._store.find(handle)
            if found is not None:
                await self._store.update(found[0], url)
                l.info(f"Updated avatar for {handle!r}")
            else:
                await self._store.create(handle, url)
                l.info(f"Created avatar record for {handle!r}")
        except Exception as e:
            l.error(f"Failed to store avatar for {handle!r}: {e}")
            return False
        return True

# Link shortening through a Kutt instance (https://kutt.it by default).
#
# Usage:
#   shortener = LinkShortener(api_key)
#   short = await shortener.shorten(url)
#   text = short or url

import aiohttp

import services.logger as log

l = log.get_logger()

# URLs shorter than this are left alone; shortening them saves nothing.
MIN_LENGTH = 32


class LinkShortener:

    def __init__(self, api_key: str = "", api_url: str = "https://kutt.it/api/v2/links"):
        self._api_key = api_key
        self._api_url = api_url
        self._session: aiohttp.ClientSession | None = None

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def shorten(self, url: str) -> str | None:
        """
        Return a short link for *url*.

        URLs under ``MIN_LENGTH`` characters come back unchanged, as does
        everything when no API key is configured.  The request sets
        ``reuse`` so the same long URL always maps to the same short link.

        Returns ``None`` if the service call fails; callers fall back to the
        original URL.
        """
        if len(url) < MIN_LENGTH or not self.enabled:
            return url

        session = self._get_session()
        try:
            async with session.post(
                self._api_url,
                json={"target": url, "reuse": True},
                headers={"X-API-KEY": self._api_key},
            ) as resp:
                if resp.status not in (200, 201):
                    body = await resp.text()
                    l.error(f"Shortener HTTP {resp.status} for {url!r}: {body}")
                    return None
                data = await resp.json(content_type=None)
        except Exception as e:
            l.error(f"Shortener request failed for {url!r}: {e}")
            return None

        link = data.get("link") if isinstance(data, dict) else None
        if not link:
            l.error(f"Shortener returned no link for {url!r}: {data!r}")
            return None
        return link

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

# Airtable-backed record store for the identity cache.
#
# Each row holds one IRC handle and its avatar URL:
#   <handle_field> – IRC nickname (exact, case-sensitive match)
#   <url_field>    – avatar image URL
#
# REST endpoints used (https://airtable.com/developers/web/api):
#   GET   /v0/{base}/{table}?filterByFormula=...&maxRecords=1
#   POST  /v0/{base}/{table}
#   PATCH /v0/{base}/{table}/{record_id}

from urllib.parse import quote

import aiohttp

import services.logger as log
from services.identity import RecordStore

l = log.get_logger()

_API_ROOT = "https://api.airtable.com/v0"


def _formula_string(value: str) -> str:
    """Quote *value* as an Airtable formula string literal."""
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


class AirtableError(Exception):
    pass


class AirtableRecordStore(RecordStore):

    def __init__(
        self,
        base_id: str,
        api_key: str,
        table: str = "Avatars",
        handle_field: str = "handle",
        url_field: str = "avatar_url",
        api_root: str = _API_ROOT,
    ):
        self._url = f"{api_root}/{base_id}/{quote(table, safe='')}"
        self._headers = {"Authorization": f"Bearer {api_key}"}
        self._handle_field = handle_field
        self._url_field = url_field
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers=self._headers)
        return self._session

    async def _request(self, method: str, url: str, **kwargs) -> dict:
        async with self._get_session().request(method, url, **kwargs) as resp:
            if resp.status >= 300:
                body = await resp.text()
                raise AirtableError(f"HTTP {resp.status}: {body}")
            return await resp.json(content_type=None)

    async def find(self, handle: str) -> tuple[str, str] | None:
        formula = f"{{{self._handle_field}}} = {_formula_string(handle)}"
        data = await self._request(
            "GET",
            self._url,
            params={"filterByFormula": formula, "maxRecords": "1"},
        )
        records = data.get("records") or []
        if not records:
            return None
        record = records[0]
        return record["id"], record.get("fields", {}).get(self._url_field, "")

    async def create(self, handle: str, url: str) -> str:
        data = await self._request(
            "POST",
            self._url,
            json={"fields": {self._handle_field: handle, self._url_field: url}},
        )
        return data["id"]

    async def update(self, record_id: str, url: str) -> None:
        await self._request(
            "PATCH",
            f"{self._url}/{record_id}",
            json={"fields": {self._url_field: url}},
        )

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

"""Remote record store over a small REST API."""

import asyncio
import json
import logging
import os
import urllib.error
import urllib.parse
import urllib.request
from typing import Any

from dotenv import load_dotenv

from homepulse.core.errors import PersistenceError
from homepulse.data.record_store import RecordKind, RecordStore

logger = logging.getLogger(__name__)


class HttpRecordStore(RecordStore):
    """Client for ``{base}/users/{user}/records/{kind}`` (GET, PUT, DELETE).

    A 404 on GET means "no record"; any other failure becomes a
    ``PersistenceError``.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
    ):
        """Initialize the client, falling back to ``HOMEPULSE_REMOTE_*`` variables."""
        load_dotenv()

        self.base_url = (base_url or os.getenv("HOMEPULSE_REMOTE_URL", "")).rstrip("/")
        self.api_key = api_key if api_key is not None else os.getenv("HOMEPULSE_REMOTE_API_KEY", "")
        self.timeout = timeout or float(os.getenv("HOMEPULSE_REMOTE_TIMEOUT", "10"))
        if not self.base_url:
            raise ValueError("HttpRecordStore needs a base URL (HOMEPULSE_REMOTE_URL)")

    def url_for(self, user_id: str, kind: RecordKind) -> str:
        user = urllib.parse.quote(user_id, safe="")
        record = urllib.parse.quote(RecordKind(kind).value, safe="")
        return f"{self.base_url}/users/{user}/records/{record}"

    def _request(self, method: str, url: str, body: dict[str, Any] | None = None) -> dict[str, Any] | None:
        """Execute one request synchronously."""
        data = json.dumps(body).encode() if body is not None else None
        req = urllib.request.Request(url, data=data, method=method)
        req.add_header("Accept", "application/json")
        if data is not None:
            req.add_header("Content-Type", "application/json")
        if self.api_key:
            req.add_header("Authorization", f"Bearer {self.api_key}")

        with urllib.request.urlopen(req, timeout=self.timeout) as response:
            raw = response.read().decode()
        return json.loads(raw) if raw.strip() else None

    async def _call(self, method: str, user_id: str, kind: RecordKind, body: dict[str, Any] | None = None):
        url = self.url_for(user_id, kind)
        try:
            return await asyncio.to_thread(self._request, method, url, body)
        except urllib.error.HTTPError as e:
            if e.code == 404 and method in ("GET", "DELETE"):
                return None
            raise PersistenceError(f"{method} {url} failed with HTTP {e.code}", kind=RecordKind(kind).value) from e
        except (urllib.error.URLError, OSError, ValueError) as e:
            raise PersistenceError(f"{method} {url} failed: {e}", kind=RecordKind(kind).value) from e

    async def get(self, user_id: str, kind: RecordKind) -> dict[str, Any] | None:
        payload = await self._call("GET", user_id, kind)
        if payload is None:
            return None
        # The API wraps records as {"payload": {...}}; accept bare records too
        if isinstance(payload, dict) and "payload" in payload:
            return payload["payload"]
        return payload

    async def upsert(self, user_id: str, kind: RecordKind, payload: dict[str, Any]) -> None:
        await self._call("PUT", user_id, kind, {"payload": payload})

    async def delete(self, user_id: str, kind: RecordKind) -> None:
        await self._call("DELETE", user_id, kind)

    async def test_connection(self) -> bool:
        """Check that the API answers; never raises."""
        try:
            await self._call("GET", "healthcheck", RecordKind.SETTINGS)
            return True
        except PersistenceError as e:
            logger.warning("Remote record store unreachable: %s", e)
            return False

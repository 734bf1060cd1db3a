"""Vtiger CRM web services client with retry logic and session handling."""

import asyncio
import hashlib
import logging
from collections.abc import Callable
from typing import Any

import httpx

from crmsync.config import get_settings
from crmsync.schemas.contact import ContactRecord
from crmsync.services.field_mapping import map_contact

logger = logging.getLogger(__name__)
settings = get_settings()

ProgressCallback = Callable[[int, int | None], None]


class VtigerClientError(Exception):
    """Base exception for Vtiger client errors."""

    pass


class VtigerAPIError(VtigerClientError):
    """Vtiger answered with success=false."""

    def __init__(self, code: str | None, message: str | None):
        self.code = code
        super().__init__(f"Vtiger error {code}: {message}")


class VtigerClient:
    """
    Client for the Vtiger CRM web services API (webservice.php).

    Features:
    - Challenge/accessKey login, transparent re-login on expired sessions
    - Exponential backoff retry on rate limits, 5xx and transport errors
    - One pooled HTTP client whose connection limit matches the sync
      concurrency, so a cancelled request frees its slot immediately
    """

    PAGE_SIZE = 100  # Vtiger caps query results at 100 rows

    def __init__(
        self,
        server_url: str = settings.vtiger_server_url,
        username: str = settings.vtiger_username,
        access_key: str = settings.vtiger_access_key,
        max_retries: int = settings.vtiger_max_retries,
        timeout: float = settings.vtiger_request_timeout,
        max_connections: int = settings.concurrency_limit,
        backoff_base: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.endpoint = f"{server_url.rstrip('/')}/webservice.php"
        self.username = username
        self.access_key = access_key
        self.max_retries = max_retries
        self.timeout = timeout
        self.max_connections = max_connections
        self.backoff_base = backoff_base
        self._transport = transport

        self.headers: dict[str, str] = {"Accept": "application/json"}
        self._client: httpx.AsyncClient | None = None
        self._session_name: str | None = None
        self._login_lock = asyncio.Lock()

    async def __aenter__(self) -> "VtigerClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=self.headers,
                limits=httpx.Limits(
                    max_connections=self.max_connections,
                    max_keepalive_connections=self.max_connections,
                ),
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request_with_retry(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
    ) -> Any:
        """Make HTTP request with exponential backoff retry; returns the 'result' payload."""
        last_error: Exception | None = None

        for attempt in range(self.max_retries):
            try:
                response = await self._get_client().request(
                    method, self.endpoint, params=params, data=data
                )
                response.raise_for_status()
                payload = response.json()

            except httpx.HTTPStatusError as e:
                last_error = e
                if e.response.status_code == 429:  # Rate limited
                    wait_time = 2**attempt * 10 * self.backoff_base  # 10s, 20s, 40s
                    logger.warning(f"Rate limited, waiting {wait_time}s before retry")
                    await asyncio.sleep(wait_time)
                elif e.response.status_code >= 500:  # Server error
                    wait_time = 2**attempt * self.backoff_base
                    logger.warning(f"Server error {e.response.status_code}, retry in {wait_time}s")
                    await asyncio.sleep(wait_time)
                else:
                    raise VtigerClientError(f"HTTP error: {e}") from e
                continue

            except httpx.RequestError as e:
                last_error = e
                wait_time = 2**attempt * self.backoff_base
                logger.warning(f"Request error: {e!r}, retry in {wait_time}s")
                await asyncio.sleep(wait_time)
                continue

            except ValueError as e:
                raise VtigerClientError(f"Malformed response: {e}") from e

            if not isinstance(payload, dict):
                raise VtigerClientError(f"Unexpected response type: {type(payload).__name__}")
            if not payload.get("success"):
                error = payload.get("error") or {}
                raise VtigerAPIError(error.get("code"), error.get("message"))
            return payload.get("result")

        raise VtigerClientError(
            f"Failed after {self.max_retries} retries: {last_error!r}"
        ) from last_error

    async def login(self) -> None:
        """Open a web services session using the challenge token and access key."""
        challenge = await self._request_with_retry(
            "GET", params={"operation": "getchallenge", "username": self.username}
        )
        token = challenge["token"]
        access_key = hashlib.md5(f"{token}{self.access_key}".encode()).hexdigest()

        result = await self._request_with_retry(
            "POST",
            data={"operation": "login", "username": self.username, "accessKey": access_key},
        )
        self._session_name = result["sessionName"]
        logger.info(f"Logged into Vtiger as {self.username}")

    async def _ensure_session(self) -> str:
        async with self._login_lock:
            if self._session_name is None:
                await self.login()
            return self._session_name

    async def _call(self, operation: str, **params: Any) -> Any:
        """Call a read operation, re-logging in once if the session expired."""
        for attempt in range(2):
            session_name = await self._ensure_session()
            try:
                return await self._request_with_retry(
                    "GET",
                    params={"operation": operation, "sessionName": session_name, **params},
                )
            except VtigerAPIError as e:
                if e.code == "INVALID_SESSIONID" and attempt == 0:
                    logger.info("Vtiger session expired, logging in again")
                    if self._session_name == session_name:
                        self._session_name = None
                    continue
                raise

    async def query(self, query: str) -> list[dict[str, Any]]:
        """Execute a VTQL query."""
        result = await self._call("query", query=query)
        return result or []

    async def count_all(self) -> int | None:
        """
        Authoritative contact count from Vtiger.

        Returns None when the count query fails; callers fall back to the
        number of discovered ids, never to the local row count.
        """
        try:
            rows = await self.query("SELECT COUNT(*) FROM Contacts;")
        except Exception as e:
            logger.warning(f"Vtiger COUNT query failed: {e!r}")
            return None

        if not rows:
            logger.warning("Vtiger COUNT query returned no rows")
            return None

        first = rows[0]
        for key in ("count", "COUNT", "COUNT(*)", "total"):
            if key in first:
                try:
                    return int(first[key])
                except (TypeError, ValueError):
                    break
        logger.warning(f"Unrecognised COUNT response: {first}")
        return None

    async def list_ids(
        self,
        progress_callback: ProgressCallback | None = None,
        total_hint: int | None = None,
    ) -> list[str]:
        """
        Fetch every contact id with pagination.

        Args:
            progress_callback: Called with (fetched_so_far, total_if_known) after each page
            total_hint: Known total to report through the callback

        Returns:
            All contact ids in Vtiger's id order
        """
        ids: list[str] = []
        offset = 0

        if progress_callback:
            progress_callback(0, total_hint)

        while True:
            page = await self.query(
                f"SELECT id FROM Contacts ORDER BY id LIMIT {offset}, {self.PAGE_SIZE};"
            )
            if not page:
                break

            ids.extend(str(row["id"]) for row in page if row.get("id"))
            offset += self.PAGE_SIZE

            if progress_callback:
                progress_callback(len(ids), total_hint)

            if len(page) < self.PAGE_SIZE:
                break

        logger.info(f"Discovered {len(ids)} contact ids")
        return ids

    async def fetch_by_id(self, record_id: str) -> ContactRecord | None:
        """Fetch and map a single contact; None when Vtiger no longer has it."""
        try:
            raw = await self._call("retrieve", id=record_id)
        except VtigerAPIError as e:
            if e.code == "RECORD_NOT_FOUND":
                logger.warning(f"Contact not found: {record_id}")
                return None
            raise

        if not raw:
            return None
        return map_contact(raw)

"""Tests for the Vtiger web services client."""

import hashlib
import re
from urllib.parse import parse_qsl

import httpx
import pytest

from crmsync.services.batch_fetcher import is_retryable_error
from crmsync.services.vtiger_client import VtigerAPIError, VtigerClient, VtigerClientError


def _ok(result) -> httpx.Response:
    return httpx.Response(200, json={"success": True, "result": result})


def _error(code: str, message: str) -> httpx.Response:
    return httpx.Response(200, json={"success": False, "error": {"code": code, "message": message}})


class FakeVtiger:
    """A tiny webservice.php: challenge login, VTQL id/count queries and retrieve."""

    TOKEN = "challenge-token"

    def __init__(self, contacts: dict[str, dict] | None = None, count_response=None):
        self.contacts = contacts or {}
        self.count_response = count_response
        self.logins = 0
        self.queries: list[str] = []
        self.expired_sessions: set[str] = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            params = dict(parse_qsl(request.content.decode()))
        else:
            params = dict(request.url.params)

        operation = params.get("operation")
        if operation == "getchallenge":
            return _ok({"token": self.TOKEN, "serverTime": 0, "expireTime": 300})
        if operation == "login":
            expected = hashlib.md5(f"{self.TOKEN}secret".encode()).hexdigest()
            if params.get("accessKey") != expected:
                return _error("INVALID_AUTH_TOKEN", "Specified token is invalid or expired")
            self.logins += 1
            return _ok({"sessionName": f"session-{self.logins}", "userId": "19x1"})

        if params.get("sessionName") in self.expired_sessions or not params.get("sessionName"):
            return _error("INVALID_SESSIONID", "Session Identifier provided is Invalid")

        if operation == "query":
            query = params["query"]
            self.queries.append(query)
            if "COUNT(*)" in query:
                if self.count_response is not None:
                    return self.count_response
                return _ok([{"count": str(len(self.contacts))}])
            offset, size = map(int, re.search(r"LIMIT (\d+), (\d+)", query).groups())
            ids = sorted(self.contacts, key=lambda i: int(i.split("x")[1]))
            return _ok([{"id": i} for i in ids[offset : offset + size]])

        if operation == "retrieve":
            contact = self.contacts.get(params["id"])
            if contact is None:
                return _error("RECORD_NOT_FOUND", "Record you are trying to access is not found")
            return _ok(contact)

        return _error("INVALID_OPERATION", f"Unknown operation {operation}")


def _contacts(count: int) -> dict[str, dict]:
    return {f"12x{i}": {"id": f"12x{i}", "firstname": f"First{i}"} for i in range(1, count + 1)}


def _client(handler) -> VtigerClient:
    return VtigerClient(
        server_url="http://vtiger.test/",
        username="sync",
        access_key="secret",
        max_retries=3,
        backoff_base=0,
        transport=httpx.MockTransport(handler),
    )


class TestSession:
    """Tests for login and session renewal."""

    def test_endpoint(self):
        """The webservice endpoint is derived from the server url."""
        client = _client(FakeVtiger())
        assert client.endpoint == "http://vtiger.test/webservice.php"

    @pytest.mark.asyncio
    async def test_login_once_for_many_calls(self):
        """The session is reused across calls."""
        vtiger = FakeVtiger(_contacts(3))
        async with _client(vtiger) as client:
            for record_id in ("12x1", "12x2", "12x3"):
                assert await client.fetch_by_id(record_id) is not None

        assert vtiger.logins == 1

    @pytest.mark.asyncio
    async def test_expired_session_relogin(self):
        """INVALID_SESSIONID triggers one new login and the call is replayed."""
        vtiger = FakeVtiger(_contacts(2))
        async with _client(vtiger) as client:
            await client.fetch_by_id("12x1")
            vtiger.expired_sessions.add("session-1")

            record = await client.fetch_by_id("12x2")

        assert record.external_id == "12x2"
        assert vtiger.logins == 2

    @pytest.mark.asyncio
    async def test_bad_access_key(self):
        """A rejected login surfaces as an API error."""
        vtiger = FakeVtiger()
        client = _client(vtiger)
        client.access_key = "wrong"

        with pytest.raises(VtigerAPIError) as exc_info:
            await client.login()

        assert exc_info.value.code == "INVALID_AUTH_TOKEN"
        await client.aclose()


class TestFetchById:
    """Tests for single contact retrieval."""

    @pytest.mark.asyncio
    async def test_maps_contact(self):
        """The raw payload is mapped onto candidate fields."""
        vtiger = FakeVtiger(
            {
                "12x5": {
                    "id": "12x5",
                    "firstname": "Ada",
                    "lastname": "Lovelace",
                    "email": "ada@example.com",
                    "mobile": "+44 (20) 1234-5678",
                    "title": "Engineer",
                }
            }
        )
        async with _client(vtiger) as client:
            record = await client.fetch_by_id("12x5")

        assert record.external_id == "12x5"
        assert record.first_name == "Ada"
        assert record.phone == "+442012345678"
        assert record.job_title == "Engineer"

    @pytest.mark.asyncio
    async def test_not_found_is_none(self):
        """A contact deleted remotely is reported as None."""
        async with _client(FakeVtiger()) as client:
            assert await client.fetch_by_id("12x99") is None

    @pytest.mark.asyncio
    async def test_other_api_errors_raise(self):
        """API errors other than not-found propagate."""

        def handler(request):
            params = dict(parse_qsl(request.content.decode())) if request.method == "POST" else {}
            if request.url.params.get("operation") == "getchallenge":
                return _ok({"token": FakeVtiger.TOKEN})
            if params.get("operation") == "login":
                return _ok({"sessionName": "s"})
            return _error("ACCESS_DENIED", "Permission to perform the operation is denied")

        async with _client(handler) as client:
            with pytest.raises(VtigerAPIError, match="ACCESS_DENIED"):
                await client.fetch_by_id("12x1")


class TestListAndCount:
    """Tests for id discovery and the remote count."""

    @pytest.mark.asyncio
    async def test_list_ids_paginates(self):
        """Ids are collected page by page with progress after each page."""
        vtiger = FakeVtiger(_contacts(250))
        progress: list[tuple[int, int | None]] = []

        async with _client(vtiger) as client:
            ids = await client.list_ids(
                progress_callback=lambda done, total: progress.append((done, total)),
                total_hint=250,
            )

        assert len(ids) == 250
        assert ids[0] == "12x1" and ids[-1] == "12x250"
        assert len(vtiger.queries) == 3
        assert progress == [(0, 250), (100, 250), (200, 250), (250, 250)]

    @pytest.mark.asyncio
    async def test_list_ids_full_last_page(self):
        """A full final page is followed by one empty page."""
        vtiger = FakeVtiger(_contacts(200))
        async with _client(vtiger) as client:
            ids = await client.list_ids()

        assert len(ids) == 200
        assert len(vtiger.queries) == 3

    @pytest.mark.asyncio
    async def test_count_all(self):
        """The COUNT query result is parsed to an int."""
        async with _client(FakeVtiger(_contacts(42))) as client:
            assert await client.count_all() == 42

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [
            _error("QUERY_SYNTAX_ERROR", "Syntax error"),
            _ok([]),
            _ok([{"unexpected": "1"}]),
            _ok([{"count": "many"}]),
        ],
    )
    async def test_count_all_unavailable(self, response):
        """Any failed or unreadable count is None, never an exception."""
        async with _client(FakeVtiger(count_response=response)) as client:
            assert await client.count_all() is None


class TestRequestWithRetry:
    """Tests for _request_with_retry."""

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        """4xx responses fail immediately."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(404)

        async with _client(handler) as client:
            with pytest.raises(VtigerClientError, match="HTTP error"):
                await client._request_with_retry("GET", params={"operation": "listtypes"})

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_server_error_retried(self):
        """5xx responses are retried with backoff."""
        responses = [httpx.Response(503), httpx.Response(502), _ok({"types": []})]
        calls = []

        def handler(request):
            calls.append(request)
            return responses.pop(0)

        async with _client(handler) as client:
            result = await client._request_with_retry("GET", params={"operation": "listtypes"})

        assert result == {"types": []}
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_transport_errors_exhaust_retries(self):
        """Persistent transport failures raise a client error that stays retryable."""
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("Connection refused", request=request)

        async with _client(handler) as client:
            with pytest.raises(VtigerClientError, match="Failed after 3 retries") as exc_info:
                await client._request_with_retry("GET", params={"operation": "listtypes"})

        assert len(calls) == 3
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
        assert is_retryable_error(exc_info.value)

    @pytest.mark.asyncio
    async def test_malformed_json(self):
        """A non-JSON body is a client error."""
        async with _client(lambda request: httpx.Response(200, text="<html>")) as client:
            with pytest.raises(VtigerClientError, match="Malformed response"):
                await client._request_with_retry("GET", params={"operation": "listtypes"})

    @pytest.mark.asyncio
    async def test_aclose_releases_client(self):
        """Closing drops the pooled HTTP client."""
        client = _client(FakeVtiger())
        client._get_client()
        await client.aclose()
        assert client._client is None

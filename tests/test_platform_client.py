import json

import httpx
import pytest

from relaybot.errors import PermanentError, RateLimitError, TransientError
from relaybot.platform_client import PlatformApiClient

REST_URL = "https://portal.example.com/rest/1/hook/"


def _client(handler, store=None):
    return PlatformApiClient(REST_URL, timeout=5, store=store, transport=httpx.MockTransport(handler))


class TestPlatformApiClient:
    @pytest.mark.asyncio
    async def test_successful_call_returns_body(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"result": 123})

        client = _client(handler)
        assert await client.call("im.message.add", {"DIALOG_ID": "1", "MESSAGE": "hi"}) == {"result": 123}
        assert seen["url"] == REST_URL + "im.message.add"
        assert seen["body"] == {"DIALOG_ID": "1", "MESSAGE": "hi"}
        await client.aclose()

    @pytest.mark.asyncio
    async def test_throttling_is_a_rate_limit_error(self):
        client = _client(lambda request: httpx.Response(429, headers={"Retry-After": "12"}))
        with pytest.raises(RateLimitError) as exc_info:
            await client.call("im.message.add", {})
        assert exc_info.value.retry_after == 12.0
        await client.aclose()

        client = _client(lambda request: httpx.Response(200, json={"error": "QUERY_LIMIT_EXCEEDED"}))
        with pytest.raises(RateLimitError):
            await client.call("im.message.add", {})
        await client.aclose()

    @pytest.mark.asyncio
    async def test_server_errors_are_transient(self):
        client = _client(lambda request: httpx.Response(503, text="unavailable"))
        with pytest.raises(TransientError) as exc_info:
            await client.call("im.message.add", {})
        assert exc_info.value.status == 503
        await client.aclose()

    @pytest.mark.asyncio
    async def test_transport_failures_are_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler)
        with pytest.raises(TransientError):
            await client.call("im.message.add", {})
        await client.aclose()

    @pytest.mark.asyncio
    async def test_client_errors_are_permanent(self):
        client = _client(lambda request: httpx.Response(
            400, json={"error": "ERROR_ARGUMENT", "error_description": "DIALOG_ID is empty"}
        ))
        with pytest.raises(PermanentError) as exc_info:
            await client.call("im.message.add", {})
        assert exc_info.value.code == "ERROR_ARGUMENT"
        assert "DIALOG_ID is empty" in str(exc_info.value)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_bot_methods_use_stored_oauth(self, store):
        store.set("bot", "auth", {"restUrl": "https://portal.example.com/rest/", "accessToken": "tok"})
        seen = {}

        def handler(request):
            seen["url"] = request.url
            return httpx.Response(200, json={"result": True})

        client = _client(handler, store=store)
        await client.call("imbot.message.add", {"MESSAGE": "hi"})
        assert str(seen["url"]).startswith("https://portal.example.com/rest/imbot.message.add")
        assert seen["url"].params["auth"] == "tok"

        await client.call("im.message.add", {"MESSAGE": "hi"})
        assert str(seen["url"]) == REST_URL + "im.message.add"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_bot_methods_fall_back_without_credentials(self, store):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            return httpx.Response(200, json={"result": True})

        client = _client(handler, store=store)
        await client.call("imbot.message.add", {})
        assert seen["url"] == REST_URL + "imbot.message.add"
        await client.aclose()

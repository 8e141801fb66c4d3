# relaybot/platform_client.py

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from relaybot.errors import PermanentError, RateLimitError, TransientError

logger = logging.getLogger("relaybot_queue")

BOT_AUTH_COLLECTION = "bot"
BOT_AUTH_DOC_ID = "auth"
RATE_LIMIT_CODES = {"QUERY_LIMIT_EXCEEDED", "OPERATION_TIME_LIMIT"}

DEFAULT_HEADERS = {
    "Content-Type": "application/json; charset=utf-8",
    "Accept": "application/json",
}


class PlatformApiClient:
    """
    Remote platform REST calls: POST <rest_url><method> with a JSON body.

    `imbot.*` methods run under the bot's own OAuth identity when its
    credentials document exists; everything else uses the inbound webhook.
    Failures come out classified as RateLimitError / TransientError /
    PermanentError so the outbound queue knows what to do with them.
    """

    def __init__(
        self,
        rest_url: str,
        timeout: float = 30.0,
        store=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.rest_url = rest_url
        self.timeout = timeout
        self._store = store
        self._client = httpx.AsyncClient(timeout=timeout, headers=DEFAULT_HEADERS, transport=transport)

    async def _get_auth(self, method: str) -> Tuple[str, Optional[str]]:
        if not method.startswith("imbot.") or self._store is None:
            return self.rest_url, None
        try:
            doc = await asyncio.to_thread(self._store.get, BOT_AUTH_COLLECTION, BOT_AUTH_DOC_ID)
        except Exception as e:
            logger.error("Failed to load bot auth, falling back to webhook URL: %s", e)
            return self.rest_url, None
        if not doc:
            logger.warning("Bot auth not found for %s, falling back to webhook URL", method)
            return self.rest_url, None
        return doc.get("restUrl") or self.rest_url, doc.get("accessToken")

    async def call(self, method: str, params: Dict[str, Any]) -> Any:
        rest_url, token = await self._get_auth(method)
        if not rest_url:
            raise PermanentError("Platform REST URL is not configured")
        url = f"{rest_url}{method}"
        query = {"auth": token} if token else None

        try:
            response = await self._client.post(url, json=params, params=query)
        except httpx.TimeoutException as e:
            raise TransientError(f"{method} timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientError(f"{method} transport error: {e}") from e

        body = _json_or_none(response)
        code, description = _error_fields(body)

        if response.status_code == 429 or code in RATE_LIMIT_CODES:
            retry_after = _retry_after(response)
            raise RateLimitError(
                f"{method} throttled ({response.status_code}, {code or 'no code'})", retry_after=retry_after
            )
        if response.status_code >= 500:
            raise TransientError(
                f"{method} server error {response.status_code}: {description or code}",
                status=response.status_code,
                code=code,
            )
        if response.status_code >= 400 or code:
            raise PermanentError(
                f"{method} rejected ({response.status_code}): {description or code}",
                status=response.status_code,
                code=code,
            )
        return body

    async def aclose(self) -> None:
        await self._client.aclose()


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def _error_fields(body: Any) -> Tuple[Optional[str], Optional[str]]:
    if not isinstance(body, dict) or not body.get("error"):
        return None, None
    return str(body["error"]), body.get("error_description")


def _retry_after(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None

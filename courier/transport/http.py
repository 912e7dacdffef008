"""
HTTP gateway transport: sends through a messaging gateway's REST API.

POST {base_url}/api/sendText with {"session", "chatId", "text"}. The gateway
answers with the provider message id, either as ``id`` (a string or an object
carrying ``_serialized``) or as ``key.id``.
"""

import logging
from typing import Any

import httpx

from ..config import settings
from ..exceptions import ServiceUnavailableError, TransportError
from .address import Address
from .base import Transport

logger = logging.getLogger(__name__)

_SEND_PATH = "/api/sendText"
_MAX_ERROR_BODY = 200


def _extract_message_id(data: Any) -> str | None:
    if not isinstance(data, dict):
        return None
    msg_id = data.get("id")
    if isinstance(msg_id, dict):
        msg_id = msg_id.get("_serialized") or msg_id.get("id")
    if not msg_id:
        key = data.get("key")
        if isinstance(key, dict):
            msg_id = key.get("id")
    return str(msg_id) if msg_id else None


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        for field in ("message", "error", "detail"):
            value = data.get(field)
            if isinstance(value, str) and value:
                return value
    body = response.text.strip()[:_MAX_ERROR_BODY]
    if body:
        return f"gateway returned HTTP {response.status_code}: {body}"
    return f"gateway returned HTTP {response.status_code}"


class HttpGatewayTransport(Transport):
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        session: str | None = None,
        timeout: float | None = None,
        account_id: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (base_url or settings.gateway_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.gateway_api_key
        self.session = session or settings.gateway_session
        self.timeout = timeout or settings.gateway_timeout
        self._account_id = account_id if account_id is not None else settings.account_id
        self._client = client
        self._owns_client = client is None

    @property
    def account_id(self) -> str | None:
        return self._account_id or None

    async def start(self) -> None:
        if self._client is not None:
            return
        headers = {"X-Api-Key": self.api_key} if self.api_key else {}
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, headers=headers
        )
        self._owns_client = True

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def send(self, address: Address, content: str) -> str:
        if self._client is None:
            await self.start()
        payload = {"session": self.session, "chatId": str(address), "text": content}
        try:
            resp = await self._client.post(_SEND_PATH, json=payload)
        except httpx.TimeoutException as e:
            raise TransportError(f"gateway timed out: {e}") from e
        except httpx.TransportError as e:
            raise ServiceUnavailableError(f"gateway unreachable: {e}") from e

        if resp.status_code >= 400:
            raise TransportError(_error_detail(resp))

        try:
            data = resp.json()
        except ValueError as e:
            raise TransportError("gateway returned a non-JSON response") from e
        message_id = _extract_message_id(data)
        if message_id is None:
            raise TransportError("gateway response did not include a message id")
        logger.debug("Gateway accepted message %s for %s", message_id, address)
        return message_id

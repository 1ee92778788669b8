"""HTTP provider backend.

POSTs the message as JSON to a provider endpoint with ``httpx``.  Any
2xx response is a successful delivery; the provider's message id is read
from the JSON body (``id_field``) or the ``X-Message-Id`` header.
"""

from __future__ import annotations

import logging
import uuid

import httpx

from relay.backends.base import DeliveryResult
from relay.core.errors import BackendFailureError, BackendTimeoutError
from relay.models.message import Message

logger = logging.getLogger(__name__)


class HttpBackend:
    """Delivers messages to an HTTP provider endpoint.

    Args:
        name:     Backend name.
        url:      Absolute endpoint URL receiving the POST.
        timeout:  Request timeout in seconds.
        id_field: JSON body key holding the provider message id.
        headers:  Extra request headers (e.g. an API key).
        client:   Optional pre-built ``httpx.AsyncClient`` (tests inject
                  one with a mock transport).
    """

    def __init__(
        self,
        name: str,
        url: str,
        timeout: float = 30.0,
        id_field: str = "id",
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.name = name
        self.url = url
        self.timeout = timeout
        self.id_field = id_field
        self.headers = dict(headers or {})
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    @staticmethod
    def _payload(message: Message) -> dict:
        return {
            "to": message.recipient,
            "from": message.sender,
            "subject": message.subject,
            "body": message.body,
        }

    def _parse_message_id(self, response: httpx.Response) -> str:
        try:
            body = response.json()
        except Exception:
            body = {}
        if isinstance(body, dict) and body.get(self.id_field):
            return str(body[self.id_field])
        return response.headers.get("X-Message-Id") or f"{self.name}-{uuid.uuid4().hex}"

    async def send(self, message: Message) -> DeliveryResult:
        client = self._get_client()
        try:
            response = await client.post(
                self.url,
                json=self._payload(message),
                headers=self.headers,
                timeout=self.timeout,
            )
        except httpx.TimeoutException:
            raise BackendTimeoutError(self.name, self.timeout) from None
        except httpx.TransportError as exc:
            raise BackendFailureError(self.name, f"Connection failed: {exc}") from None

        if response.is_success:
            return DeliveryResult.ok(self._parse_message_id(response))

        logger.debug("%s rejected message with HTTP %d", self.name, response.status_code)
        return DeliveryResult.failed(f"HTTP {response.status_code}")

    async def aclose(self) -> None:
        """Close the pooled httpx client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

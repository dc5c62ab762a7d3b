"""Telegram Bot API client used as the outbound messaging gateway."""

import functools
import logging
import re
from collections.abc import Callable
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.telegram.org"
DEFAULT_TIMEOUT = 10.0

TOKEN_RE = re.compile(r"^\d+:[A-Za-z0-9_-]+$")


class GatewayError(Exception):
    """Raised when the gateway rejects or fails a request."""


class InvalidCredentialError(GatewayError):
    """Raised when a bot token is malformed or refused."""


class TelegramGateway:
    """Minimal async Bot API client bound to one bot token.

    Construction fails with InvalidCredentialError for a malformed token;
    ``get_identity()`` is the handshake that proves the token is accepted.
    """

    def __init__(
        self,
        token: str,
        *,
        api_base: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not token or not TOKEN_RE.match(token):
            raise InvalidCredentialError("Malformed bot token")
        self.label = mask_token(token)
        base = (api_base or DEFAULT_API_BASE).rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=f"{base}/bot{token}/",
            timeout=timeout,
            transport=transport,
        )
        self.identity: dict | None = None

    async def get_identity(self) -> dict:
        """Call getMe; raises InvalidCredentialError if the token is refused."""
        self.identity = await self._call("getMe", {})
        return self.identity

    async def send_message(
        self,
        chat_id: str,
        text: str,
        *,
        parse_mode: str | None = "HTML",
        disable_web_page_preview: bool = False,
    ) -> dict:
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": disable_web_page_preview,
        }
        if parse_mode:
            payload["parse_mode"] = parse_mode
        return await self._call("sendMessage", payload)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, payload: dict) -> Any:
        try:
            response = await self._client.post(method, json=payload)
        except httpx.TimeoutException as e:
            raise GatewayError(f"{method} timed out") from e
        except httpx.HTTPError as e:
            raise GatewayError(f"{method} failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            raise GatewayError(f"{method} failed: HTTP {response.status_code}")

        if not data.get("ok"):
            description = data.get("description") or f"HTTP {response.status_code}"
            if response.status_code in (401, 404):
                raise InvalidCredentialError(f"{method} rejected: {description}")
            raise GatewayError(f"{method} failed: {description}")
        return data.get("result")


GatewayFactory = Callable[[str], TelegramGateway]


def make_gateway_factory(
    api_base: str | None = None, timeout: float = DEFAULT_TIMEOUT
) -> GatewayFactory:
    """Return a callable building gateways that share API base and timeout."""
    return functools.partial(TelegramGateway, api_base=api_base, timeout=timeout)


def mask_token(token: str) -> str:
    """Bot id plus a masked secret, safe to log."""
    bot_id, _, secret = token.partition(":")
    return f"{bot_id}:***{secret[-4:]}" if secret else "***"

from __future__ import annotations

import logging
import re
from typing import Any, Sequence

import httpx

from ..exceptions import ConfigurationError, GatewayRejection, TransportError
from .base import BaseSMSGateway, SMSSendResult

logger = logging.getLogger("sms.gateway")

_API_SUFFIX = re.compile(r"/api/?$")


def normalize_base_url(base_url: str) -> str:
    """Strip a trailing ``/api`` and slash; endpoints add ``/api`` themselves."""

    url = (base_url or "").strip()
    url = _API_SUFFIX.sub("", url)
    return url.rstrip("/")


class TermiiSMSGateway(BaseSMSGateway):
    """Termii implementation of the SMS gateway interface."""

    name = "termii"

    def __init__(
        self,
        *,
        api_key: str | None,
        base_url: str,
        sender_id: str,
        timeout_seconds: float = 15.0,
        bulk_limit: int = 100,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = (api_key or "").strip() or None
        self._base_url = normalize_base_url(base_url)
        self._sender_id = sender_id
        self._timeout_seconds = timeout_seconds
        self._transport = transport
        self.bulk_limit = bulk_limit

    def ensure_configured(self) -> None:
        if not self._api_key:
            logger.error("TERMII_API_KEY is not configured or is empty")
            raise ConfigurationError("TERMII_API_KEY is not configured")

    async def send_one(self, *, phone: str, message: str, channel: str) -> SMSSendResult:
        self.ensure_configured()
        logger.debug("Sending single SMS | phone=%s channel=%s length=%s", phone, channel, len(message))
        data = await self._post("/api/sms/send", self._body(to=phone, message=message, channel=channel))
        return self._result([phone], message, data)

    async def send_bulk(self, *, phones: Sequence[str], message: str, channel: str) -> SMSSendResult:
        self.ensure_configured()
        self._check_bulk_limit(phones)
        logger.info("Sending bulk SMS | recipients=%s channel=%s", len(phones), channel)
        data = await self._post(
            "/api/sms/send/bulk",
            self._body(to=list(phones), message=message, channel=channel),
        )
        return self._result(list(phones), message, data)

    def _body(self, *, to: str | list[str], message: str, channel: str) -> dict[str, Any]:
        return {
            "api_key": self._api_key,
            "to": to,
            "from": self._sender_id,
            "sms": message,
            "type": "plain",
            "channel": channel,
        }

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport) as client:
                response = await client.post(url, json=body)
        except httpx.HTTPError as exc:
            logger.error("Termii request failed without a response | url=%s error=%s", url, exc)
            raise TransportError(str(exc) or exc.__class__.__name__) from exc

        if response.is_error:
            message = f"Termii API error: {self._error_detail(response)}"
            logger.error("%s | status=%s", message, response.status_code)
            raise GatewayRejection(message, status_code=response.status_code)

        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {"data": payload}

    def _error_detail(self, response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict) and payload.get("message"):
            return str(payload["message"])
        return response.reason_phrase or str(response.status_code)

    def _result(self, phones: list[str], message: str, data: dict[str, Any]) -> SMSSendResult:
        message_id = data.get("message_id")
        balance = data.get("balance")
        logger.debug("SMS accepted | recipients=%s message_id=%s balance=%s", len(phones), message_id, balance)
        return SMSSendResult(
            phones=phones,
            message=message,
            provider=self.name,
            provider_message_id=str(message_id) if message_id is not None else None,
            balance=balance if isinstance(balance, (int, float)) else None,
            meta=data or None,
        )

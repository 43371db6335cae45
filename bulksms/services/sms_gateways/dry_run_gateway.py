from __future__ import annotations

import logging
from typing import Sequence

from .base import BaseSMSGateway, SMSSendResult

logger = logging.getLogger("sms.gateway")


class DryRunSMSGateway(BaseSMSGateway):
    """Logs messages instead of sending them. Used when ``SMS_DRY_RUN`` is set."""

    name = "dry-run"

    def __init__(self, *, bulk_limit: int = 100):
        self.bulk_limit = bulk_limit
        self.sent: list[SMSSendResult] = []

    async def send_one(self, *, phone: str, message: str, channel: str) -> SMSSendResult:
        logger.info("[dry-run] SMS | phone=%s channel=%s message=%s", phone, channel, message)
        result = SMSSendResult(phones=[phone], message=message, provider=self.name)
        self.sent.append(result)
        return result

    async def send_bulk(self, *, phones: Sequence[str], message: str, channel: str) -> SMSSendResult:
        self._check_bulk_limit(phones)
        logger.info("[dry-run] bulk SMS | recipients=%s channel=%s message=%s", len(phones), channel, message)
        result = SMSSendResult(phones=list(phones), message=message, provider=self.name)
        self.sent.append(result)
        return result

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from ..exceptions import BulkLimitExceeded


@dataclass(slots=True)
class SMSSendResult:
    """Normalized response returned by SMS gateways."""

    phones: list[str]
    message: str
    provider: str
    provider_message_id: Optional[str] = None
    balance: Optional[float] = None
    meta: Optional[dict[str, Any]] = None


class BaseSMSGateway(ABC):
    """Interface all SMS gateways must implement.

    Both calls are atomic from the caller's point of view: they either return a
    result or raise a ``SMSDeliveryError`` subclass. Bulk sends never report
    per-recipient outcomes.
    """

    name: str
    bulk_limit: int = 100

    def ensure_configured(self) -> None:
        """Raise ``ConfigurationError`` when the gateway cannot send at all."""

    @abstractmethod
    async def send_one(self, *, phone: str, message: str, channel: str) -> SMSSendResult:
        """Send a single message to one phone number."""
        raise NotImplementedError

    @abstractmethod
    async def send_bulk(self, *, phones: Sequence[str], message: str, channel: str) -> SMSSendResult:
        """Send the same message to up to ``bulk_limit`` phone numbers."""
        raise NotImplementedError

    def _check_bulk_limit(self, phones: Sequence[str]) -> None:
        if len(phones) > self.bulk_limit:
            raise BulkLimitExceeded(
                f"Maximum {self.bulk_limit} phone numbers per batch (got {len(phones)})"
            )

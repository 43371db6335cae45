from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from bulksms.core.phone import normalize_phone
from bulksms.core.template import has_placeholders, render
from bulksms.models import DispatchMode

from .exceptions import ConfigurationError, SMSDeliveryError
from .progress_store import Outcome, ProgressTracker
from .recipient_service import FailedRecipient, Recipient
from .sms_gateways import BaseSMSGateway

logger = logging.getLogger("campaign.dispatcher")

NO_PHONE_ERROR = "No phone number found"

PhoneNormalizer = Callable[[Any], Optional[str]]


@dataclass(frozen=True)
class ResumePoint:
    """Where a job picks up given its ``processed`` count.

    ``offset`` recipients of the batch at ``batch_index`` are already counted.
    With ``full_retry`` the whole batch is sent again; otherwise those
    recipients are dropped from it.
    """

    batch_index: int
    offset: int = 0
    full_retry: bool = False


class SendStrategy(ABC):
    """How one batch of recipients reaches the gateway. Chosen once per job."""

    mode: DispatchMode

    def __init__(
        self,
        gateway: BaseSMSGateway,
        *,
        normalizer: PhoneNormalizer = normalize_phone,
        send_delay_seconds: float = 0.0,
    ):
        self.gateway = gateway
        self.normalizer = normalizer
        self.send_delay_seconds = send_delay_seconds

    @abstractmethod
    def resume_point(self, processed: int, batch_size: int) -> ResumePoint:
        raise NotImplementedError

    @abstractmethod
    async def send_batch(
        self,
        batch: Sequence[Recipient],
        *,
        template: str,
        channel: str,
        tracker: ProgressTracker,
        failures: list[FailedRecipient],
        already_counted: int = 0,
    ) -> None:
        """Send one batch and record its outcomes on ``tracker``.

        Failed recipients are appended to ``failures`` as soon as they are
        counted, so the caller still holds them if the batch is interrupted.
        """
        raise NotImplementedError

    def check_phone(self, recipient: Recipient) -> tuple[str | None, str | None]:
        """Return ``(normalized_phone, None)`` or ``(None, error)``."""

        if not recipient.phone:
            return None, NO_PHONE_ERROR
        normalized = self.normalizer(recipient.phone)
        if not normalized:
            return None, f"Invalid phone number format: {recipient.phone}"
        return normalized, None


class PersonalizedSendStrategy(SendStrategy):
    """One gateway call per recipient; progress is committed after each one."""

    mode = DispatchMode.PERSONALIZED

    def resume_point(self, processed: int, batch_size: int) -> ResumePoint:
        return ResumePoint(batch_index=processed // batch_size, offset=processed % batch_size)

    async def send_batch(
        self,
        batch: Sequence[Recipient],
        *,
        template: str,
        channel: str,
        tracker: ProgressTracker,
        failures: list[FailedRecipient],
        already_counted: int = 0,
    ) -> None:
        failed_before = len(failures)
        sent = 0
        for position, recipient in enumerate(batch):
            phone, error = self.check_phone(recipient)
            if error is not None:
                logger.warning("%s (recipient index: %s)", error, recipient.original_index)
                await tracker.apply(Outcome(processed=1, failed=1))
                failures.append(recipient.fail(error))
                continue

            message = render(template, recipient.template_context())
            try:
                await self.gateway.send_one(phone=phone, message=message, channel=channel)
            except ConfigurationError:
                raise
            except SMSDeliveryError as exc:
                logger.warning("Failed to send to %s: %s", phone, exc)
                await tracker.apply(Outcome(processed=1, failed=1))
                failures.append(recipient.fail(str(exc)))
            else:
                sent += 1
                await tracker.apply(Outcome(processed=1))

            if self.send_delay_seconds and position < len(batch) - 1:
                await asyncio.sleep(self.send_delay_seconds)

        logger.info("Personalized batch done: %s sent, %s failed", sent, len(failures) - failed_before)


class BulkSendStrategy(SendStrategy):
    """One gateway call per batch.

    The provider reports no per-recipient outcome, so an interrupted batch is
    resent in full on resume. A recipient may receive the message twice.
    """

    mode = DispatchMode.BULK

    def resume_point(self, processed: int, batch_size: int) -> ResumePoint:
        offset = processed % batch_size
        return ResumePoint(batch_index=processed // batch_size, offset=offset, full_retry=offset > 0)

    async def send_batch(
        self,
        batch: Sequence[Recipient],
        *,
        template: str,
        channel: str,
        tracker: ProgressTracker,
        failures: list[FailedRecipient],
        already_counted: int = 0,
    ) -> None:
        # Recipients counted before an interruption are resent but not counted twice.
        uncounted = len(batch) - already_counted

        valid: list[str] = []
        invalid: list[FailedRecipient] = []
        for recipient in batch:
            phone, error = self.check_phone(recipient)
            if error is not None:
                invalid.append(recipient.fail(error))
            else:
                valid.append(phone)

        if not valid:
            logger.error("No valid phone numbers in batch of %s", len(batch))
            await tracker.apply(Outcome(processed=uncounted, failed=uncounted, unit_size=len(batch)))
            failures.extend(invalid)
            return

        if invalid:
            logger.warning("%s invalid phone number(s) in batch, %s valid", len(invalid), len(valid))

        try:
            await self.gateway.send_bulk(phones=valid, message=template, channel=channel)
        except ConfigurationError:
            raise
        except SMSDeliveryError as exc:
            logger.error("Bulk batch of %s failed: %s", len(batch), exc)
            await tracker.apply(Outcome(processed=uncounted, failed=uncounted, unit_size=len(batch)))
            failures.extend(recipient.fail(str(exc)) for recipient in batch)
            return

        await tracker.apply(
            Outcome(processed=uncounted, failed=min(len(invalid), uncounted), unit_size=len(valid))
        )
        failures.extend(invalid)
        logger.info("Bulk batch done: %s sent, %s failed normalization", len(valid), len(invalid))


def select_strategy(
    template: str,
    gateway: BaseSMSGateway,
    *,
    normalizer: PhoneNormalizer = normalize_phone,
    send_delay_seconds: float = 0.0,
) -> SendStrategy:
    strategy_cls = PersonalizedSendStrategy if has_placeholders(template) else BulkSendStrategy
    return strategy_cls(gateway, normalizer=normalizer, send_delay_seconds=send_delay_seconds)

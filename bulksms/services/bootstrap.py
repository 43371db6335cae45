"""Builds services from settings for the API, the worker and the scripts."""

import logging
from functools import partial

from bulksms.core.config import Settings, get_settings
from bulksms.core.phone import normalize_phone

from .batch_dispatcher import BatchDispatcher
from .progress_feed import ProgressFeed
from .progress_store import FailedBatchStore, ProgressStore
from .recipient_service import PhoneFieldResolver, RecipientService
from .send_strategies import PhoneNormalizer
from .sms_gateways import BaseSMSGateway, DryRunSMSGateway, TermiiSMSGateway

logger = logging.getLogger(__name__)


def build_gateway(settings: Settings | None = None) -> BaseSMSGateway:
    settings = settings or get_settings()
    if settings.SMS_DRY_RUN:
        logger.warning("SMS_DRY_RUN is enabled; messages are logged, not sent")
        return DryRunSMSGateway(bulk_limit=settings.GATEWAY_BULK_LIMIT)
    return TermiiSMSGateway(
        api_key=settings.TERMII_API_KEY,
        base_url=settings.TERMII_BASE_URL,
        sender_id=settings.SMS_SENDER_ID,
        timeout_seconds=settings.GATEWAY_TIMEOUT_SECONDS,
        bulk_limit=settings.GATEWAY_BULK_LIMIT,
    )


def build_phone_normalizer(settings: Settings | None = None) -> PhoneNormalizer:
    settings = settings or get_settings()
    return partial(
        normalize_phone,
        country_code=settings.PHONE_COUNTRY_CODE,
        local_length=settings.PHONE_LOCAL_LENGTH,
        trunk_prefix=settings.PHONE_TRUNK_PREFIX,
    )


def build_recipient_service(settings: Settings | None = None) -> RecipientService:
    settings = settings or get_settings()
    return RecipientService(PhoneFieldResolver(settings.PHONE_COLUMN))


def build_failed_batch_store(settings: Settings | None = None) -> FailedBatchStore:
    settings = settings or get_settings()
    return FailedBatchStore(ttl_seconds=settings.FAILED_BATCH_TTL_SECONDS)


def build_dispatcher(
    settings: Settings | None = None,
    *,
    gateway: BaseSMSGateway | None = None,
) -> BatchDispatcher:
    settings = settings or get_settings()
    return BatchDispatcher(
        gateway or build_gateway(settings),
        ProgressStore(),
        build_failed_batch_store(settings),
        batch_size=settings.DISPATCH_BATCH_SIZE,
        batch_delay_seconds=settings.BATCH_DELAY_MS / 1000,
        send_delay_seconds=settings.SEND_DELAY_MS / 1000,
        normalizer=build_phone_normalizer(settings),
    )


def build_progress_feed(settings: Settings | None = None) -> ProgressFeed:
    settings = settings or get_settings()
    return ProgressFeed(
        ProgressStore(),
        poll_interval_seconds=settings.PROGRESS_POLL_INTERVAL_MS / 1000,
        heartbeat_interval_seconds=settings.PROGRESS_HEARTBEAT_SECONDS,
        close_grace_seconds=settings.PROGRESS_CLOSE_GRACE_SECONDS,
    )

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Sequence

import anyio

from bulksms.core.phone import normalize_phone

from .progress_store import FailedBatchStore, ProgressRecord, ProgressStore, ProgressTracker
from .recipient_service import FailedRecipient, Recipient
from .send_strategies import PhoneNormalizer, ResumePoint, SendStrategy, select_strategy
from .sms_gateways import BaseSMSGateway

logger = logging.getLogger("campaign.dispatcher")


@dataclass
class DispatchSummary:
    success: bool
    total: int
    processed: int
    failed: int
    duration_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "total": self.total,
            "processed": self.processed,
            "failed": self.failed,
            "durationMs": self.duration_ms,
        }


def partition(recipients: Sequence[Recipient], batch_size: int) -> list[list[Recipient]]:
    return [list(recipients[start:start + batch_size]) for start in range(0, len(recipients), batch_size)]


class BatchDispatcher:
    """Sends a job's recipients batch by batch, resuming from stored progress.

    Recipient and batch failures are recorded, never raised. Only
    ``ConfigurationError`` and unexpected errors leave ``dispatch``.
    """

    def __init__(
        self,
        gateway: BaseSMSGateway,
        progress_store: ProgressStore,
        failed_batch_store: FailedBatchStore,
        *,
        batch_size: int = 100,
        batch_delay_seconds: float = 2.0,
        send_delay_seconds: float = 0.1,
        normalizer: PhoneNormalizer = normalize_phone,
    ):
        if not 1 <= batch_size <= gateway.bulk_limit:
            raise ValueError(f"batch_size must be between 1 and {gateway.bulk_limit}")
        self.gateway = gateway
        self.progress_store = progress_store
        self.failed_batch_store = failed_batch_store
        self.batch_size = batch_size
        self.batch_delay_seconds = batch_delay_seconds
        self.send_delay_seconds = send_delay_seconds
        self.normalizer = normalizer

    async def dispatch(
        self,
        job_id: str,
        recipients: Sequence[Recipient],
        template: str,
        channel: str,
    ) -> DispatchSummary:
        started = time.monotonic()
        self.gateway.ensure_configured()

        strategy = select_strategy(
            template,
            self.gateway,
            normalizer=self.normalizer,
            send_delay_seconds=self.send_delay_seconds,
        )
        logger.info(
            "Dispatching job %s: %s recipients, mode=%s, channel=%s",
            job_id,
            len(recipients),
            strategy.mode.value,
            channel,
        )

        tracker = ProgressTracker(job_id, await self._initial_record(job_id, len(recipients)), self.progress_store)
        await tracker.flush()

        batches = partition(recipients, self.batch_size)
        resume = self._resume_point(strategy, tracker.record, len(recipients), len(batches))
        if tracker.record.processed:
            logger.info(
                "Resuming job %s at processed=%s (batch %s, offset %s, full_retry=%s)",
                job_id,
                tracker.record.processed,
                resume.batch_index + 1,
                resume.offset,
                resume.full_retry,
            )

        last_index = len(batches) - 1
        for index in range(resume.batch_index, len(batches)):
            batch = batches[index]
            already_counted = 0
            if index == resume.batch_index and resume.offset:
                if resume.full_retry:
                    already_counted = resume.offset
                else:
                    batch = batch[resume.offset:]

            batch_started = time.monotonic()
            logger.info("Processing batch %s/%s (%s recipients)", index + 1, len(batches), len(batch))
            failures: list[FailedRecipient] = []
            try:
                await strategy.send_batch(
                    batch,
                    template=template,
                    channel=channel,
                    tracker=tracker,
                    failures=failures,
                    already_counted=already_counted,
                )
            finally:
                # Failures already counted in progress must stay retryable after a crash.
                if failures:
                    await self._record_failures(job_id, failures)
            logger.info(
                "Batch %s/%s completed in %sms",
                index + 1,
                len(batches),
                int((time.monotonic() - batch_started) * 1000),
            )

            if index < last_index and self.batch_delay_seconds:
                await asyncio.sleep(self.batch_delay_seconds)

        tracker.record.finalize_total(len(recipients))
        await tracker.flush()

        record = tracker.record
        summary = DispatchSummary(
            success=True,
            total=record.total,
            processed=record.processed,
            failed=record.failed,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        logger.info(
            "Job %s dispatched: total=%s processed=%s failed=%s duration=%sms",
            job_id,
            summary.total,
            summary.processed,
            summary.failed,
            summary.duration_ms,
        )
        return summary

    async def _record_failures(self, job_id: str, failures: list[FailedRecipient]) -> None:
        with anyio.CancelScope(shield=True):
            await anyio.to_thread.run_sync(self.failed_batch_store.record, job_id, failures)

    async def _initial_record(self, job_id: str, total: int) -> ProgressRecord:
        record = await anyio.to_thread.run_sync(self.progress_store.load, job_id)
        if record is None:
            return ProgressRecord.fresh(total, self.batch_size)
        if not record.total:
            record.total = max(total, record.processed)
        if not record.batches:
            record.batches = ProgressRecord.fresh(record.total, self.batch_size).batches
        return record

    def _resume_point(
        self,
        strategy: SendStrategy,
        record: ProgressRecord,
        recipient_count: int,
        batch_count: int,
    ) -> ResumePoint:
        if record.processed >= recipient_count:
            return ResumePoint(batch_index=batch_count)
        return strategy.resume_point(record.processed, self.batch_size)

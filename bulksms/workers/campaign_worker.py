from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any

import anyio

from bulksms.core.config import Settings, get_settings
from bulksms.core.db import session_scope
from bulksms.core.locking import make_lock
from bulksms.core.observability import correlation_context
from bulksms.core.store import store_manager
from bulksms.models import JobState
from bulksms.services.batch_dispatcher import BatchDispatcher
from bulksms.services.bootstrap import build_dispatcher, build_recipient_service
from bulksms.services.campaign_job_service import CampaignJobService
from bulksms.services.recipient_service import RecipientService

logger = logging.getLogger("campaign.worker")


class CampaignWorker:
    """The single consumer of ``campaign_jobs``; processes one job at a time."""

    LOCK_WAIT_SECONDS = 0.2
    LOCK_RETRY_INTERVAL_SECONDS = 0.05
    STUCK_RECOVERY_LIMIT = 200
    METRICS_LOG_INTERVAL_SECONDS = 60
    PURGE_INTERVAL_SECONDS = 60

    def __init__(
        self,
        *,
        worker_id: str | None = None,
        dispatcher: BatchDispatcher | None = None,
        recipient_service: RecipientService | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.worker_id = worker_id or f"campaign-worker-{uuid.uuid4().hex[:8]}"
        self.dispatcher = dispatcher or build_dispatcher(self.settings)
        self.recipient_service = recipient_service or build_recipient_service(self.settings)
        self.poll_interval_seconds = self.settings.WORKER_POLL_INTERVAL_SECONDS
        self.lock_ttl_seconds = self.settings.JOB_LOCK_TTL_SECONDS
        self._redis_client = store_manager.redis_client()
        self._metrics: dict[str, int] = {
            "iterations": 0,
            "claimed": 0,
            "completed": 0,
            "failed": 0,
            "lock_busy": 0,
            "stuck_recovered": 0,
            "purged": 0,
        }
        self._last_metrics_log = time.monotonic()
        self._last_purge: float | None = None
        self._stopping = False
        self._task: asyncio.Task | None = None

    @property
    def metrics(self) -> dict[str, int]:
        return dict(self._metrics)

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stopping = False
        self._task = asyncio.create_task(self.run_forever(), name=self.worker_id)

    async def stop(self) -> None:
        self._stopping = True
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("campaign_worker_stopped", extra={"worker_id": self.worker_id})

    async def run_forever(self) -> None:
        logger.info("campaign_worker_started", extra={"worker_id": self.worker_id})
        recovered = await anyio.to_thread.run_sync(self._recover_abandoned)
        if recovered:
            logger.warning(
                "campaign_worker_recovered_abandoned_jobs",
                extra={"worker_id": self.worker_id, "count": recovered},
            )
        while not self._stopping:
            self._inc_metric("iterations")
            processed = await self.run_once()
            if processed == 0:
                await asyncio.sleep(self.poll_interval_seconds)
            self._log_metrics_if_due()

    async def run_once(self) -> int:
        job_id = await anyio.to_thread.run_sync(self._claim_next)
        if job_id is None:
            return 0
        self._inc_metric("claimed")
        await self.process_job(job_id)
        return 1

    async def process_job(self, job_id: str) -> dict[str, Any] | None:
        """Run one claimed job. Returns the stored result for completed jobs."""

        job_state = await anyio.to_thread.run_sync(self._load_job, job_id)
        if job_state is None:
            return None
        state, result, payload = job_state
        if state == JobState.COMPLETED.value:
            logger.info("campaign_job_already_completed", extra={"job_id": job_id})
            return result
        if payload is None:
            return None

        lock = make_lock(
            f"campaign:job:{job_id}",
            redis_client=self._redis_client,
            ttl_seconds=self.lock_ttl_seconds,
            wait_timeout=self.LOCK_WAIT_SECONDS,
            retry_interval=self.LOCK_RETRY_INTERVAL_SECONDS,
            log=logger,
        )
        acquired = await anyio.to_thread.run_sync(lock.acquire)
        if not acquired:
            self._inc_metric("lock_busy")
            await anyio.to_thread.run_sync(self._requeue_lock_busy, job_id)
            return None

        try:
            with correlation_context(job_id):
                logger.info(
                    "campaign_job_started",
                    extra={"job_id": job_id, "is_retry": bool(payload.get("is_retry"))},
                )
                recipients = self.recipient_service.recipients_from_payload(payload)
                summary = await self.dispatcher.dispatch(
                    job_id,
                    recipients,
                    payload.get("template", ""),
                    payload.get("channel", self.settings.SMS_DEFAULT_CHANNEL),
                )
        except Exception as exc:
            self._inc_metric("failed")
            logger.exception("campaign_job_failed", extra={"job_id": job_id})
            await anyio.to_thread.run_sync(self._mark_failed, job_id, str(exc) or exc.__class__.__name__)
            return None
        finally:
            await anyio.to_thread.run_sync(lock.release)

        result = summary.to_dict()
        await anyio.to_thread.run_sync(self._mark_completed, job_id, result)
        self._inc_metric("completed")
        logger.info("campaign_job_completed", extra={"job_id": job_id, **result})
        return result

    def _recover_abandoned(self) -> int:
        with session_scope() as session:
            return CampaignJobService(session).recover_abandoned_jobs(limit=self.STUCK_RECOVERY_LIMIT)

    def _claim_next(self) -> str | None:
        with session_scope() as session:
            service = CampaignJobService(session)
            recovered = service.recover_stuck_jobs(
                stale_after_seconds=self.lock_ttl_seconds,
                limit=self.STUCK_RECOVERY_LIMIT,
            )
            purged = self._purge_if_due(service)
            job = service.claim_next_job(worker_id=self.worker_id)
            job_id = job.id if job else None
        if recovered:
            self._inc_metric("stuck_recovered", recovered)
            logger.warning(
                "campaign_worker_recovered_stuck_jobs",
                extra={"worker_id": self.worker_id, "count": recovered},
            )
        if purged:
            self._inc_metric("purged", purged)
            logger.info("campaign_worker_purged_jobs", extra={"worker_id": self.worker_id, "count": purged})
        return job_id

    def _purge_if_due(self, service: CampaignJobService) -> int:
        now = time.monotonic()
        if self._last_purge is not None and now - self._last_purge < self.PURGE_INTERVAL_SECONDS:
            return 0
        self._last_purge = now
        return service.purge_expired_jobs(
            completed_max_age_seconds=self.settings.COMPLETED_JOB_RETENTION_SECONDS,
            completed_max_count=self.settings.COMPLETED_JOB_RETENTION_COUNT,
            failed_max_age_seconds=self.settings.FAILED_JOB_RETENTION_SECONDS,
        )

    def _load_job(self, job_id: str) -> tuple[str, dict[str, Any] | None, dict[str, Any] | None] | None:
        with session_scope() as session:
            service = CampaignJobService(session)
            job = service.get_job(job_id)
            if job is None:
                return None
            if job.state == JobState.COMPLETED.value:
                return job.state, job.result, None
            claimed = service.get_claimed_job(job_id=job_id, worker_id=self.worker_id)
            if claimed is None:
                logger.warning("campaign_job_not_claimed", extra={"job_id": job_id, "state": job.state})
                return job.state, None, None
            return job.state, None, dict(claimed.payload or {})

    def _requeue_lock_busy(self, job_id: str) -> None:
        with session_scope() as session:
            CampaignJobService(session).requeue_lock_busy(
                job_id=job_id,
                worker_id=self.worker_id,
                reason="job_lock_busy",
            )

    def _mark_completed(self, job_id: str, result: dict[str, Any]) -> None:
        with session_scope() as session:
            CampaignJobService(session).mark_completed(job_id=job_id, worker_id=self.worker_id, result=result)

    def _mark_failed(self, job_id: str, error: str) -> None:
        with session_scope() as session:
            CampaignJobService(session).mark_failed(job_id=job_id, worker_id=self.worker_id, error=error)

    def _inc_metric(self, key: str, amount: int = 1) -> None:
        self._metrics[key] = self._metrics.get(key, 0) + amount

    def _log_metrics_if_due(self) -> None:
        now = time.monotonic()
        if now - self._last_metrics_log < self.METRICS_LOG_INTERVAL_SECONDS:
            return
        self._last_metrics_log = now
        logger.info(
            "campaign_worker_metrics",
            extra={"worker_id": self.worker_id, **self._metrics},
        )


def main() -> None:
    from bulksms.core.database_init import init_database_schema
    from bulksms.core.logging import configure_logging

    configure_logging()
    init_database_schema()
    store_manager.init_backend()
    asyncio.run(CampaignWorker().run_forever())


if __name__ == "__main__":
    main()

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bulksms.models import CampaignJob, JobState

logger = logging.getLogger("campaign.jobs")


class CampaignJobService:
    """SQL-backed job queue: one row per campaign, claimed by lease."""

    ENQUEUE_CREATED = "created"
    ENQUEUE_REQUEUED = "requeued"
    ENQUEUE_EXISTING = "existing"

    DEFAULT_LIST_LIMIT = 20
    MAX_LIST_LIMIT = 200

    def __init__(self, db: Session):
        self.db = db

    def enqueue(
        self,
        *,
        job_id: str,
        payload: dict[str, Any],
        progress: dict[str, Any] | None = None,
        parent_job_id: str | None = None,
    ) -> tuple[CampaignJob, str]:
        """Create a job, or return the existing one with the same id.

        A failed job with the same id is put back to ``waiting`` and keeps its
        progress so the dispatcher resumes it.
        """

        existing = self.get_job(job_id)
        if existing:
            if existing.state != JobState.FAILED.value:
                return existing, self.ENQUEUE_EXISTING
            existing.state = JobState.WAITING.value
            existing.failed_reason = None
            existing.finished_at = None
            existing.lock_owner = None
            existing.locked_at = None
            self.db.add(existing)
            self.db.commit()
            self.db.refresh(existing)
            logger.info("Failed job %s re-queued", job_id)
            return existing, self.ENQUEUE_REQUEUED

        job = CampaignJob(
            id=job_id,
            state=JobState.WAITING.value,
            payload=payload,
            progress=progress,
            parent_job_id=parent_job_id,
            attempts=0,
        )
        self.db.add(job)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.get_job(job_id)
            if existing is None:
                raise
            return existing, self.ENQUEUE_EXISTING
        self.db.refresh(job)
        logger.info("Job %s enqueued", job_id)
        return job, self.ENQUEUE_CREATED

    def get_job(self, job_id: str) -> CampaignJob | None:
        return self.db.get(CampaignJob, job_id)

    def list_jobs(self, *, limit: int = DEFAULT_LIST_LIMIT) -> list[CampaignJob]:
        limit = max(1, min(limit, self.MAX_LIST_LIMIT))
        query = select(CampaignJob).order_by(CampaignJob.created_at.desc(), CampaignJob.id.asc()).limit(limit)
        return list(self.db.scalars(query))

    def claim_next_job(self, *, worker_id: str) -> CampaignJob | None:
        now = self._now()
        query = (
            select(CampaignJob)
            .where(CampaignJob.state == JobState.WAITING.value)
            .order_by(CampaignJob.created_at.asc(), CampaignJob.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        job = self.db.scalars(query).first()
        if job is None:
            return None

        job.state = JobState.ACTIVE.value
        job.lock_owner = worker_id
        job.locked_at = now
        job.attempts = job.attempts + 1
        if job.started_at is None:
            job.started_at = now
        self.db.add(job)
        self.db.commit()
        self.db.refresh(job)
        return job

    def get_claimed_job(self, *, job_id: str, worker_id: str) -> CampaignJob | None:
        return self.db.scalars(
            select(CampaignJob).where(
                CampaignJob.id == job_id,
                CampaignJob.state == JobState.ACTIVE.value,
                CampaignJob.lock_owner == worker_id,
            )
        ).first()

    def requeue_lock_busy(self, *, job_id: str, worker_id: str, reason: str) -> bool:
        job = self.get_claimed_job(job_id=job_id, worker_id=worker_id)
        if not job:
            return False
        job.state = JobState.WAITING.value
        job.lock_owner = None
        job.locked_at = None
        self.db.add(job)
        self.db.commit()
        logger.warning("Job %s re-queued: %s", job_id, reason)
        return True

    def update_progress(self, job_id: str, progress: dict[str, Any]) -> None:
        self.db.execute(update(CampaignJob).where(CampaignJob.id == job_id).values(progress=progress))

    def mark_completed(self, *, job_id: str, worker_id: str, result: dict[str, Any]) -> bool:
        job = self.get_claimed_job(job_id=job_id, worker_id=worker_id)
        if not job:
            return False
        job.state = JobState.COMPLETED.value
        job.result = result
        job.failed_reason = None
        job.finished_at = self._now()
        job.lock_owner = None
        job.locked_at = None
        self.db.add(job)
        self.db.commit()
        return True

    def mark_failed(self, *, job_id: str, worker_id: str, error: str) -> bool:
        job = self.get_claimed_job(job_id=job_id, worker_id=worker_id)
        if not job:
            return False
        job.state = JobState.FAILED.value
        job.failed_reason = self._truncate_error(error)
        job.finished_at = self._now()
        job.lock_owner = None
        job.locked_at = None
        self.db.add(job)
        self.db.commit()
        return True

    def recover_stuck_jobs(self, *, stale_after_seconds: int, limit: int = 100) -> int:
        """Return active jobs whose lease is older than ``stale_after_seconds`` to the queue."""

        cutoff = self._now() - timedelta(seconds=max(1, stale_after_seconds))
        query = (
            select(CampaignJob)
            .where(
                CampaignJob.state == JobState.ACTIVE.value,
                CampaignJob.locked_at.isnot(None),
                CampaignJob.locked_at <= cutoff,
            )
            .order_by(CampaignJob.locked_at.asc(), CampaignJob.id.asc())
            .limit(max(1, limit))
            .with_for_update(skip_locked=True)
        )
        return self._requeue(list(self.db.scalars(query)))

    def recover_abandoned_jobs(self, *, limit: int = 100) -> int:
        """Re-queue every active job. Only safe when called by the single worker at start-up."""

        query = (
            select(CampaignJob)
            .where(CampaignJob.state == JobState.ACTIVE.value)
            .order_by(CampaignJob.locked_at.asc(), CampaignJob.id.asc())
            .limit(max(1, limit))
        )
        return self._requeue(list(self.db.scalars(query)))

    def purge_expired_jobs(
        self,
        *,
        completed_max_age_seconds: int,
        completed_max_count: int,
        failed_max_age_seconds: int,
    ) -> int:
        now = self._now()
        completed_cutoff = now - timedelta(seconds=completed_max_age_seconds)
        failed_cutoff = now - timedelta(seconds=failed_max_age_seconds)

        expired_ids = set(
            self.db.scalars(
                select(CampaignJob.id).where(
                    CampaignJob.state == JobState.COMPLETED.value,
                    CampaignJob.finished_at <= completed_cutoff,
                )
            )
        )
        expired_ids.update(
            self.db.scalars(
                select(CampaignJob.id)
                .where(CampaignJob.state == JobState.COMPLETED.value)
                .order_by(CampaignJob.finished_at.desc(), CampaignJob.id.desc())
                .offset(max(0, completed_max_count))
            )
        )
        expired_ids.update(
            self.db.scalars(
                select(CampaignJob.id).where(
                    CampaignJob.state == JobState.FAILED.value,
                    CampaignJob.finished_at <= failed_cutoff,
                )
            )
        )
        if not expired_ids:
            return 0

        self.db.execute(delete(CampaignJob).where(CampaignJob.id.in_(list(expired_ids))))
        self.db.commit()
        return len(expired_ids)

    def _requeue(self, jobs: list[CampaignJob]) -> int:
        if not jobs:
            return 0
        for job in jobs:
            job.state = JobState.WAITING.value
            job.lock_owner = None
            job.locked_at = None
            self.db.add(job)
        self.db.commit()
        return len(jobs)

    def _truncate_error(self, value: str) -> str:
        return value[:2000]

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

from __future__ import annotations

import json
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, ContextManager, Mapping, Sequence

import anyio
from sqlalchemy.orm import Session

from bulksms.core.db import session_scope
from bulksms.core.store import KeyValueBackend, store_manager
from bulksms.models import CampaignJob

from .campaign_job_service import CampaignJobService
from .recipient_service import FailedRecipient

logger = logging.getLogger(__name__)

FAILED_BATCH_KEY_PREFIX = "failed_batch"
FAILED_BATCH_INDEX_PREFIX = "failed_batches"
DEFAULT_FAILED_BATCH_TTL_SECONDS = 7 * 86400


def _isoformat(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_timestamp() -> str:
    return _isoformat(datetime.now(tz=timezone.utc))


@dataclass(frozen=True)
class Outcome:
    """Result of one unit of dispatch work: a recipient or a whole batch."""

    processed: int
    failed: int = 0
    unit_size: int = 1


@dataclass
class ProgressRecord:
    """Per-job counters. ``failed <= processed <= total`` holds after every update."""

    total: int = 0
    processed: int = 0
    failed: int = 0
    batches: int = 0
    current_batch: int = 0
    last_batch_time: str | None = None

    @classmethod
    def fresh(cls, total: int, batch_size: int) -> "ProgressRecord":
        batches = -(-total // batch_size) if total else 0
        return cls(total=total, batches=batches)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "ProgressRecord":
        data = data or {}
        return cls(
            total=int(data.get("total") or 0),
            processed=int(data.get("processed") or 0),
            failed=int(data.get("failed") or 0),
            batches=int(data.get("batches") or 0),
            current_batch=int(data.get("currentBatch") or 0),
            last_batch_time=data.get("lastBatchTime"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "processed": self.processed,
            "failed": self.failed,
            "batches": self.batches,
            "currentBatch": self.current_batch,
            "lastBatchTime": self.last_batch_time,
        }

    def apply_outcome(self, outcome: Outcome, *, at: datetime | None = None) -> None:
        if outcome.processed < 0 or outcome.failed < 0:
            raise ValueError(f"Outcome counts must be non-negative: {outcome}")
        if outcome.failed > outcome.processed:
            raise ValueError(f"Outcome reports more failures than processed recipients: {outcome}")
        processed = self.processed + outcome.processed
        failed = self.failed + outcome.failed
        if processed > self.total:
            raise ValueError(f"processed ({processed}) would exceed total ({self.total})")

        self.processed = processed
        self.failed = failed
        self.current_batch = outcome.unit_size
        self.last_batch_time = _isoformat(at or datetime.now(tz=timezone.utc))

    def finalize_total(self, total: int) -> None:
        if not self.total:
            self.total = max(total, self.processed)

    @property
    def is_complete(self) -> bool:
        return self.processed >= self.total


@dataclass
class JobSnapshot:
    job_id: str
    state: str
    progress: ProgressRecord

    def to_dict(self) -> dict[str, Any]:
        return {"jobId": self.job_id, "state": self.state, "progress": self.progress.to_dict()}


class ProgressStore:
    """Reads and writes the progress column of ``campaign_jobs``.

    Every save is a single-row UPDATE of one JSON value, so readers never see
    a partially written record.
    """

    def __init__(self, session_factory: Callable[[], ContextManager[Session]] = session_scope):
        self._session_factory = session_factory

    def load(self, job_id: str) -> ProgressRecord | None:
        with self._session_factory() as session:
            job = session.get(CampaignJob, job_id)
            if job is None or not job.progress:
                return None
            return ProgressRecord.from_dict(job.progress)

    def save(self, job_id: str, record: ProgressRecord) -> None:
        with self._session_factory() as session:
            CampaignJobService(session).update_progress(job_id, record.to_dict())

    def read_snapshot(self, job_id: str) -> JobSnapshot | None:
        with self._session_factory() as session:
            job = session.get(CampaignJob, job_id)
            if job is None:
                return None
            return JobSnapshot(job_id=job.id, state=job.state, progress=ProgressRecord.from_dict(job.progress))


@dataclass
class FailedBatchRecord:
    key: str
    job_id: str
    batch: list[dict[str, Any]] = field(default_factory=list)
    error: str = ""
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch": self.batch,
            "error": self.error,
            "timestamp": self.timestamp,
            "jobId": self.job_id,
        }

    @classmethod
    def from_json(cls, key: str, raw: str) -> "FailedBatchRecord":
        data = json.loads(raw)
        return cls(
            key=key,
            job_id=data.get("jobId", ""),
            batch=list(data.get("batch") or []),
            error=data.get("error") or "",
            timestamp=data.get("timestamp") or "",
        )


def failed_batch_index_key(job_id: str) -> str:
    return f"{FAILED_BATCH_INDEX_PREFIX}:{job_id}"


class FailedBatchStore:
    """Immutable failed-batch payloads plus a per-job index list of their keys."""

    def __init__(
        self,
        backend: KeyValueBackend | None = None,
        *,
        ttl_seconds: int = DEFAULT_FAILED_BATCH_TTL_SECONDS,
    ):
        self._backend = backend
        self.ttl_seconds = ttl_seconds

    @property
    def backend(self) -> KeyValueBackend:
        return self._backend or store_manager.get_backend()

    def record(self, job_id: str, failed: Sequence[FailedRecipient]) -> FailedBatchRecord:
        if not failed:
            raise ValueError("A failed batch needs at least one recipient")
        key = f"{FAILED_BATCH_KEY_PREFIX}:{job_id}:{int(time.time() * 1000)}-{secrets.token_hex(3)}"
        record = FailedBatchRecord(
            key=key,
            job_id=job_id,
            batch=[item.to_payload() for item in failed],
            error=failed[0].error,
            timestamp=utc_timestamp(),
        )
        backend = self.backend
        backend.set(key, json.dumps(record.to_dict()), self.ttl_seconds)
        backend.list_push(failed_batch_index_key(job_id), key, self.ttl_seconds)
        logger.info("Failed batch stored: %s (%s recipients)", key, len(failed))
        return record

    def get(self, key: str) -> FailedBatchRecord | None:
        raw = self.backend.get(key)
        if raw is None:
            return None
        return FailedBatchRecord.from_json(key, raw)

    def keys_for_job(self, job_id: str) -> list[str]:
        return self.backend.list_range(failed_batch_index_key(job_id))

    def list_for_job(self, job_id: str) -> list[FailedBatchRecord]:
        records: list[FailedBatchRecord] = []
        for key in self.keys_for_job(job_id):
            record = self.get(key)
            if record is not None:
                records.append(record)
        return records


class ProgressTracker:
    """Owns a job's ``ProgressRecord`` during dispatch and persists each outcome."""

    def __init__(self, job_id: str, record: ProgressRecord, store: ProgressStore):
        self.job_id = job_id
        self.record = record
        self._store = store

    async def apply(self, outcome: Outcome) -> None:
        self.record.apply_outcome(outcome)
        await self.flush()

    async def flush(self) -> None:
        await anyio.to_thread.run_sync(self._store.save, self.job_id, self.record)

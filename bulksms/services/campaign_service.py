from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Sequence

from sqlalchemy.orm import Session

from bulksms.core.config import get_settings
from bulksms.core.template import extract_variables, has_placeholders, render
from bulksms.models import CampaignJob, DispatchMode, JobState, SMSChannel

from .bootstrap import build_failed_batch_store, build_phone_normalizer, build_recipient_service
from .campaign_job_service import CampaignJobService
from .exceptions import NotFoundError, ValidationError
from .progress_store import FailedBatchRecord, FailedBatchStore, ProgressRecord
from .recipient_service import RecipientService

logger = logging.getLogger(__name__)

PREVIEW_SAMPLE_SIZE = 3


@dataclass
class SubmissionResult:
    job_id: str
    message: str
    already_exists: bool = False
    recipients: int | None = None


@dataclass
class PreviewResult:
    columns: list[str]
    phone_column: str | None
    rows: int
    recipients: int
    valid_phones: int
    invalid_phones: int
    variables: list[str]
    missing_variables: list[str]
    mode: DispatchMode
    samples: list[dict[str, Any]] = field(default_factory=list)


def fingerprint_job_id(csv_text: str, template: str, channel: str) -> str:
    """Same upload, template and channel always map to the same job id."""

    digest = hashlib.md5(f"{csv_text}{template}{channel}".encode("utf-8")).hexdigest()
    return f"sms-{digest[:16]}"


def retry_job_id() -> str:
    return f"retry-{uuid.uuid4().hex[:16]}"


class CampaignService:
    def __init__(
        self,
        db: Session,
        *,
        recipient_service: RecipientService | None = None,
        failed_batch_store: FailedBatchStore | None = None,
    ):
        self.db = db
        self.jobs = CampaignJobService(db)
        settings = get_settings()
        self.recipient_service = recipient_service or build_recipient_service(settings)
        self.failed_batch_store = failed_batch_store or build_failed_batch_store(settings)
        self.batch_size = settings.DISPATCH_BATCH_SIZE
        self._normalize_phone = build_phone_normalizer(settings)

    def submit_upload(self, *, csv_text: str, template: str, channel: str) -> SubmissionResult:
        template = self._require_template(template)
        channel = self._validate_channel(channel)
        rows = self.recipient_service.parse_csv(csv_text)
        if not rows:
            raise ValidationError("CSV file contains no data rows")

        job_id = fingerprint_job_id(csv_text, template, channel)
        payload = {
            "source_rows": rows,
            "template": template,
            "channel": channel,
            "is_retry": False,
        }
        job, status = self.jobs.enqueue(
            job_id=job_id,
            payload=payload,
            progress=ProgressRecord().to_dict(),
        )
        if status == CampaignJobService.ENQUEUE_CREATED:
            logger.info("Job %s created from upload (%s rows, channel=%s)", job_id, len(rows), channel)
            return SubmissionResult(job_id=job.id, message="Job created successfully")
        if status == CampaignJobService.ENQUEUE_REQUEUED:
            return SubmissionResult(job_id=job.id, message="Failed job re-queued", already_exists=True)
        if job.state == JobState.COMPLETED.value:
            logger.info("Job %s already completed", job_id)
            return SubmissionResult(job_id=job.id, message="Job already completed", already_exists=True)
        logger.info("Job %s already exists and is %s", job_id, job.state)
        return SubmissionResult(
            job_id=job.id,
            message="Job already exists and is processing",
            already_exists=True,
        )

    def retry_failed_batches(self, job_id: str, batch_keys: Sequence[str]) -> SubmissionResult:
        if not batch_keys:
            raise ValidationError("batchKeys array is required")
        original = self.get_job(job_id)

        records: list[FailedBatchRecord] = []
        for key in batch_keys:
            record = self.failed_batch_store.get(key)
            if record is None:
                logger.warning("Failed batch %s not found or expired", key)
                continue
            if record.job_id != job_id:
                logger.warning("Failed batch %s belongs to job %s, not %s", key, record.job_id, job_id)
                continue
            records.append(record)

        recipients = self.recipient_service.flatten_failed(record.batch for record in records)
        if not recipients:
            raise ValidationError("No recipients found in selected batches")

        payload = original.payload or {}
        new_job_id = retry_job_id()
        self.jobs.enqueue(
            job_id=new_job_id,
            payload={
                "recipients": recipients,
                "template": payload.get("template", ""),
                "channel": payload.get("channel", get_settings().SMS_DEFAULT_CHANNEL),
                "is_retry": True,
                "parent_job_id": job_id,
            },
            progress=ProgressRecord.fresh(len(recipients), self.batch_size).to_dict(),
            parent_job_id=job_id,
        )
        logger.info("Retry job %s created from %s batch(es) of job %s", new_job_id, len(records), job_id)
        return SubmissionResult(
            job_id=new_job_id,
            message="Retry job created successfully",
            recipients=len(recipients),
        )

    def list_failed_batches(self, job_id: str) -> list[FailedBatchRecord]:
        return self.failed_batch_store.list_for_job(job_id)

    def get_job(self, job_id: str) -> CampaignJob:
        job = self.jobs.get_job(job_id)
        if job is None:
            raise NotFoundError("Job not found")
        return job

    def list_jobs(self, *, limit: int = CampaignJobService.DEFAULT_LIST_LIMIT) -> list[CampaignJob]:
        return self.jobs.list_jobs(limit=limit)

    def preview(self, *, csv_text: str, template: str) -> PreviewResult:
        template = self._require_template(template)
        rows = self.recipient_service.parse_csv(csv_text)
        if not rows:
            raise ValidationError("CSV file contains no data rows")

        columns = self.recipient_service.columns(rows)
        recipients = self.recipient_service.normalize_rows(rows)
        normalized = [self._normalize_phone(recipient.phone) for recipient in recipients]
        valid = sum(1 for phone in normalized if phone)

        variables = extract_variables(template)
        known = set(columns) | {"originalIndex"}
        samples = [
            {
                "originalIndex": recipient.original_index,
                "phone": recipient.phone,
                "normalizedPhone": phone,
                "message": render(template, recipient.template_context()),
            }
            for recipient, phone in zip(recipients[:PREVIEW_SAMPLE_SIZE], normalized)
        ]
        return PreviewResult(
            columns=columns,
            phone_column=self.recipient_service.resolver.detect_field(columns),
            rows=len(rows),
            recipients=len(recipients),
            valid_phones=valid,
            invalid_phones=len(recipients) - valid,
            variables=variables,
            missing_variables=[name for name in variables if name not in known],
            mode=DispatchMode.PERSONALIZED if has_placeholders(template) else DispatchMode.BULK,
            samples=samples,
        )

    def _require_template(self, template: str | None) -> str:
        if not template or not template.strip():
            raise ValidationError("Template is required")
        return template

    def _validate_channel(self, channel: str | None) -> str:
        channel = (channel or get_settings().SMS_DEFAULT_CHANNEL).strip().lower()
        allowed = [item.value for item in SMSChannel]
        if channel not in allowed:
            raise ValidationError(f"Unsupported channel '{channel}'. Allowed: {', '.join(allowed)}")
        return channel

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from bulksms.core.dependencies import get_campaign_service, get_progress_feed
from bulksms.models import CampaignJob
from bulksms.schemas import (
    FailedBatchListResponse,
    FailedBatchRead,
    JobListResponse,
    JobStatusResponse,
    ProgressRead,
    RetryRequest,
    RetryResponse,
)
from bulksms.services import CampaignService, FeedEvent, ProgressFeed
from bulksms.services import exceptions as service_exceptions
from bulksms.services.progress_feed import EVENT_HEARTBEAT

router = APIRouter(prefix="/jobs", tags=["jobs"])
logger = logging.getLogger("campaign.api")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _job_status(job: CampaignJob) -> JobStatusResponse:
    return JobStatusResponse(
        jobId=job.id,
        state=job.state,
        progress=ProgressRead(**(job.progress or {})),
        result=job.result,
        failedReason=job.failed_reason,
        isRetry=job.is_retry,
        parentJobId=job.parent_job_id,
        createdAt=job.created_at,
        finishedAt=job.finished_at,
    )


def format_sse(event: FeedEvent) -> str:
    if event.kind == EVENT_HEARTBEAT:
        return ": heartbeat\n\n"
    return f"data: {json.dumps(event.data)}\n\n"


@router.get("", response_model=JobListResponse)
def list_jobs(
    limit: int = Query(20, ge=1, le=200),
    service: CampaignService = Depends(get_campaign_service),
):
    return JobListResponse(jobs=[_job_status(job) for job in service.list_jobs(limit=limit)])


@router.get("/{job_id}", response_model=JobStatusResponse)
def get_job(job_id: str, service: CampaignService = Depends(get_campaign_service)):
    try:
        job = service.get_job(job_id)
    except service_exceptions.NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return _job_status(job)


@router.get("/{job_id}/progress")
async def stream_progress(
    job_id: str,
    request: Request,
    feed: ProgressFeed = Depends(get_progress_feed),
):
    logger.info("Progress stream requested for job %s", job_id)

    async def event_stream():
        subscription = feed.subscribe(job_id)
        try:
            async for event in subscription:
                if await request.is_disconnected():
                    logger.info("Progress stream client disconnected for job %s", job_id)
                    break
                yield format_sse(event)
        finally:
            await subscription.aclose()

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/{job_id}/failed", response_model=FailedBatchListResponse)
def list_failed_batches(job_id: str, service: CampaignService = Depends(get_campaign_service)):
    records = service.list_failed_batches(job_id)
    logger.info("Returning %s failed batches for job %s", len(records), job_id)
    return FailedBatchListResponse(
        failedBatches=[
            FailedBatchRead(
                key=record.key,
                jobId=record.job_id,
                batch=record.batch,
                error=record.error,
                timestamp=record.timestamp,
            )
            for record in records
        ]
    )


@router.post("/{job_id}/retry", response_model=RetryResponse)
def retry_failed_batches(
    job_id: str,
    payload: RetryRequest,
    service: CampaignService = Depends(get_campaign_service),
):
    try:
        result = service.retry_failed_batches(job_id, payload.batchKeys)
    except service_exceptions.NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except service_exceptions.ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return RetryResponse(jobId=result.job_id, message=result.message, recipients=result.recipients or 0)

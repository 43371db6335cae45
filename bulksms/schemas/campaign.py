from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class ProgressRead(BaseModel):
    total: int = 0
    processed: int = 0
    failed: int = 0
    batches: int = 0
    currentBatch: int = 0
    lastBatchTime: Optional[str] = None


class UploadResponse(BaseModel):
    jobId: str
    message: str
    alreadyExists: bool = False


class JobStatusResponse(BaseModel):
    jobId: str
    state: str
    progress: ProgressRead
    result: Optional[dict[str, Any]] = None
    failedReason: Optional[str] = None
    isRetry: bool = False
    parentJobId: Optional[str] = None
    createdAt: Optional[datetime] = None
    finishedAt: Optional[datetime] = None


class JobListResponse(BaseModel):
    jobs: list[JobStatusResponse]


class FailedBatchRead(BaseModel):
    key: str
    jobId: str
    batch: list[dict[str, Any]]
    error: str
    timestamp: str


class FailedBatchListResponse(BaseModel):
    failedBatches: list[FailedBatchRead]


class RetryRequest(BaseModel):
    batchKeys: list[str] = Field(default_factory=list)


class RetryResponse(BaseModel):
    jobId: str
    message: str
    recipients: int


class PreviewSample(BaseModel):
    originalIndex: int
    phone: Optional[str] = None
    normalizedPhone: Optional[str] = None
    message: str


class PreviewResponse(BaseModel):
    columns: list[str]
    phoneColumn: Optional[str] = None
    rows: int
    recipients: int
    validPhones: int
    invalidPhones: int
    variables: list[str]
    missingVariables: list[str]
    mode: str
    samples: list[PreviewSample]

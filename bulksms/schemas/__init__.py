from .campaign import (
    FailedBatchListResponse,
    FailedBatchRead,
    JobListResponse,
    JobStatusResponse,
    PreviewResponse,
    PreviewSample,
    ProgressRead,
    RetryRequest,
    RetryResponse,
    UploadResponse,
)
from .common import HealthResponse

__all__ = [
    "FailedBatchListResponse",
    "FailedBatchRead",
    "HealthResponse",
    "JobListResponse",
    "JobStatusResponse",
    "PreviewResponse",
    "PreviewSample",
    "ProgressRead",
    "RetryRequest",
    "RetryResponse",
    "UploadResponse",
]

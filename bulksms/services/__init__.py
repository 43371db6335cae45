from .batch_dispatcher import BatchDispatcher, DispatchSummary
from .campaign_job_service import CampaignJobService
from .campaign_service import CampaignService
from .progress_feed import FeedEvent, ProgressFeed
from .progress_store import FailedBatchStore, ProgressStore
from .recipient_service import RecipientService

__all__ = [
    "BatchDispatcher",
    "CampaignJobService",
    "CampaignService",
    "DispatchSummary",
    "FailedBatchStore",
    "FeedEvent",
    "ProgressFeed",
    "ProgressStore",
    "RecipientService",
]

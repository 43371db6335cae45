from .base import Base
from .campaign_job import CampaignJob
from .enums import DispatchMode, JobState, SMSChannel, TERMINAL_JOB_STATES

__all__ = [
    "Base",
    "CampaignJob",
    "DispatchMode",
    "JobState",
    "SMSChannel",
    "TERMINAL_JOB_STATES",
]

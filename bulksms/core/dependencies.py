from fastapi import Depends
from sqlalchemy.orm import Session

from bulksms.core.db import get_db_session
from bulksms.services import CampaignService, ProgressFeed
from bulksms.services.bootstrap import build_progress_feed


def get_db() -> Session:
    yield from get_db_session()


def get_campaign_service(db: Session = Depends(get_db)) -> CampaignService:
    return CampaignService(db)


def get_progress_feed() -> ProgressFeed:
    return build_progress_feed()

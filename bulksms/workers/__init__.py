__all__ = ["CampaignWorker"]


def __getattr__(name: str):
    if name == "CampaignWorker":
        from .campaign_worker import CampaignWorker

        return CampaignWorker
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

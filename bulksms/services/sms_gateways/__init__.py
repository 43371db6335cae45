from .base import BaseSMSGateway, SMSSendResult
from .dry_run_gateway import DryRunSMSGateway
from .termii_gateway import TermiiSMSGateway

__all__ = [
    "BaseSMSGateway",
    "SMSSendResult",
    "DryRunSMSGateway",
    "TermiiSMSGateway",
]

from enum import Enum


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})


class SMSChannel(str, Enum):
    DND = "dnd"
    GENERIC = "generic"
    WHATSAPP = "whatsapp"


class DispatchMode(str, Enum):
    PERSONALIZED = "personalized"
    BULK = "bulk"

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable

import anyio
from sqlalchemy.exc import SQLAlchemyError

from bulksms.models import TERMINAL_JOB_STATES

from .progress_store import ProgressStore, utc_timestamp

logger = logging.getLogger("campaign.feed")

EVENT_SNAPSHOT = "snapshot"
EVENT_HEARTBEAT = "heartbeat"
EVENT_ERROR = "error"

_TERMINAL_STATES = {state.value for state in TERMINAL_JOB_STATES}


@dataclass(frozen=True)
class FeedEvent:
    kind: str
    data: dict[str, Any] | None = None


class ProgressFeed:
    """Polls the progress store and yields a snapshot only when it changed.

    A heartbeat is yielded every ``heartbeat_interval_seconds`` regardless of
    changes. Once the job is completed or failed the final snapshot is yielded
    and the subscription ends after ``close_grace_seconds``. Closing the
    iterator stops all polling for that subscriber.
    """

    def __init__(
        self,
        progress_store: ProgressStore,
        *,
        poll_interval_seconds: float = 0.5,
        heartbeat_interval_seconds: float = 30.0,
        close_grace_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.progress_store = progress_store
        self.poll_interval_seconds = poll_interval_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.close_grace_seconds = close_grace_seconds
        self._clock = clock

    async def subscribe(self, job_id: str) -> AsyncIterator[FeedEvent]:
        last_emitted: str | None = None
        last_heartbeat = self._clock()
        logger.info("Progress subscription opened for job %s", job_id)
        try:
            while True:
                try:
                    snapshot = await anyio.to_thread.run_sync(self.progress_store.read_snapshot, job_id)
                except SQLAlchemyError as exc:
                    logger.exception("Error reading progress for job %s", job_id)
                    yield FeedEvent(EVENT_ERROR, {"error": str(exc)})
                    return

                if snapshot is None:
                    yield FeedEvent(EVENT_ERROR, {"error": "Job not found"})
                    return

                data = snapshot.to_dict()
                serialized = json.dumps(data, sort_keys=True)
                if serialized != last_emitted:
                    last_emitted = serialized
                    yield FeedEvent(EVENT_SNAPSHOT, {**data, "timestamp": utc_timestamp()})

                if snapshot.state in _TERMINAL_STATES:
                    await asyncio.sleep(self.close_grace_seconds)
                    return

                now = self._clock()
                if now - last_heartbeat >= self.heartbeat_interval_seconds:
                    last_heartbeat = now
                    yield FeedEvent(EVENT_HEARTBEAT)

                await asyncio.sleep(self.poll_interval_seconds)
        finally:
            logger.info("Progress subscription closed for job %s", job_id)

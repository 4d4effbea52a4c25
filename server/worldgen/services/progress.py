# ─────────────────────────────────────────────────────────────────────────────
# Progress Publisher: per-job pub/sub for pipeline progress events
# ─────────────────────────────────────────────────────────────────────────────
# Observers are async callables keyed by job id (a WebSocket sender in
# production, a list.append wrapper in tests). Delivery goes to whoever is
# subscribed at publish time: no queue, no replay. A late subscriber gets
# current state from GET /status, not from history.
#
# An observer that raises is logged and unsubscribed; it never affects the
# pipeline task that published.
# ─────────────────────────────────────────────────────────────────────────────

from collections import defaultdict
from typing import Awaitable, Callable

import structlog

from worldgen.schemas import ProgressEvent

logger = structlog.get_logger(__name__)

Observer = Callable[[ProgressEvent], Awaitable[None]]


class ProgressPublisher:
    """Broadcast ProgressEvents to the observers of one job."""

    def __init__(self) -> None:
        self._observers: dict[str, list[Observer]] = defaultdict(list)

    def subscribe(self, job_id: str, observer: Observer) -> None:
        observers = self._observers[job_id]
        if observer not in observers:
            observers.append(observer)
        logger.debug("progress_subscribed", job_id=job_id, subscribers=len(observers))

    def unsubscribe(self, job_id: str, observer: Observer) -> None:
        observers = self._observers.get(job_id)
        if not observers:
            return
        if observer in observers:
            observers.remove(observer)
        if not observers:
            del self._observers[job_id]
        logger.debug("progress_unsubscribed", job_id=job_id)

    def subscriber_count(self, job_id: str) -> int:
        return len(self._observers.get(job_id, ()))

    async def publish(self, event: ProgressEvent) -> int:
        """Deliver ``event`` to the job's current observers.

        Returns the number of observers that received it.
        """
        # Snapshot: observers may unsubscribe themselves while we iterate.
        observers = list(self._observers.get(event.job_id, ()))
        delivered = 0
        for observer in observers:
            try:
                await observer(event)
                delivered += 1
            except Exception as e:
                logger.warning(
                    "progress_delivery_failed",
                    job_id=event.job_id,
                    stage=event.stage,
                    error=str(e),
                )
                self.unsubscribe(event.job_id, observer)

        logger.info(
            "progress",
            job_id=event.job_id,
            stage=event.stage,
            progress=event.progress,
            message=event.message,
            delivered=delivered,
        )
        return delivered

"""Room-scoped publish/subscribe for job progress events.

Observers subscribe to a single job id. Fan-out is synchronous and
at-most-once: an event published while the room is empty is dropped, and a
late subscriber must read the job record from the state store instead.
Workers never call observers directly; they ``send`` events into a
``BroadcastChannel`` whose dispatcher thread drains them into the broadcaster.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from typing import Protocol

from content_digest.pipeline.events import JobEvent

logger = logging.getLogger(__name__)

Observer = Callable[[JobEvent], None]

_CLOSE = object()


class EventSink(Protocol):
    """Anything a worker can hand job events to."""

    def send(self, event: JobEvent) -> None: ...


def room_name(job_id: str) -> str:
    return f"job-{job_id}"


class ProgressBroadcaster:
    """Injected registry of per-job observer rooms."""

    def __init__(self) -> None:
        self._rooms: dict[str, list[Observer]] = {}
        self._lock = threading.Lock()

    def subscribe(self, job_id: str, observer: Observer) -> None:
        with self._lock:
            room = self._rooms.setdefault(room_name(job_id), [])
            if observer not in room:
                room.append(observer)
        logger.debug("Observer joined %s", room_name(job_id))

    def unsubscribe(self, job_id: str, observer: Observer) -> bool:
        name = room_name(job_id)
        with self._lock:
            room = self._rooms.get(name)
            if room is None or observer not in room:
                return False
            room.remove(observer)
            if not room:
                del self._rooms[name]
        logger.debug("Observer left %s", name)
        return True

    def publish(self, job_id: str, event: JobEvent) -> int:
        """Deliver ``event`` to the current subscribers of ``job_id``.

        Returns the number of observers that accepted the event.
        """

        with self._lock:
            observers = list(self._rooms.get(room_name(job_id), ()))
        if not observers:
            logger.debug("Dropped %s event for job %s: no subscribers", event.event_type, job_id)
            return 0

        delivered = 0
        for observer in observers:
            try:
                observer(event)
            except Exception:
                logger.exception(
                    "Observer failed on %s event for job %s",
                    event.event_type,
                    job_id,
                )
                continue
            delivered += 1
        return delivered

    def send(self, event: JobEvent) -> None:
        """Publish synchronously; lets the broadcaster act as an ``EventSink``."""

        self.publish(event.job_id, event)

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._rooms.get(room_name(job_id), ()))

    def status(self) -> dict[str, object]:
        """Rooms and their subscriber counts."""

        with self._lock:
            rooms = {name: len(observers) for name, observers in self._rooms.items()}
        return {
            "rooms": rooms,
            "totalRooms": len(rooms),
            "totalSubscribers": sum(rooms.values()),
        }


class BroadcastChannel:
    """Message-passing seam between workers and the broadcaster.

    ``send`` only enqueues; a single dispatcher thread publishes events in the
    order they were sent.
    """

    def __init__(self, broadcaster: ProgressBroadcaster, *, name: str = "progress-dispatch") -> None:
        self.broadcaster = broadcaster
        self._queue: queue.Queue[object] = queue.Queue()
        self._closed = threading.Event()
        self._thread = threading.Thread(target=self._dispatch_loop, daemon=True, name=name)
        self._thread.start()

    def send(self, event: JobEvent) -> None:
        if self._closed.is_set():
            logger.warning("Channel closed, dropping %s event for job %s", event.event_type, event.job_id)
            return
        self._queue.put(event)

    def flush(self) -> None:
        """Block until every event sent so far has been published."""

        self._queue.join()

    def close(self, *, timeout: float | None = 10.0) -> None:
        """Publish pending events and stop the dispatcher."""

        if self._closed.is_set():
            return
        self._closed.set()
        self._queue.put(_CLOSE)
        self._thread.join(timeout=timeout)

    def __enter__(self) -> BroadcastChannel:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _dispatch_loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _CLOSE:
                    return
                self.broadcaster.send(item)  # type: ignore[arg-type]
            except Exception:
                logger.exception("Progress dispatch error")
            finally:
                self._queue.task_done()

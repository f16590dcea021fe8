"""Event bus for engine events.

The healer's ``emit`` callable points here. Events are persisted to the
SQLite events table and pushed to subscriber queues (the SSE stream of
the HTTP API).
"""

import logging
import queue
import sqlite3
import threading
import time

from streamheal.server.database import Database

logger = logging.getLogger(__name__)

EVENT_TYPES = (
    "stall", "heal", "no_heal_point", "play_error", "switch",
    "failover", "refresh", "reset", "signal",
)


class EventBus:
    """Thread-safe event bus with subscriber management.

    Events are emitted from the engine loop and pushed to all connected
    stream clients. Events are also persisted to the database for
    recent-events queries.
    """

    def __init__(self, db: Database, max_queue: int = 50):
        self._db = db
        self._max_queue = max_queue
        self._subscribers: list[queue.Queue] = []
        self._lock = threading.Lock()

    def emit(
        self,
        event_type: str,
        title: str = "",
        detail: str = "",
        video_id: str | None = None,
    ):
        """Emit an event to all subscribers and persist to DB.

        Args:
            event_type: Category (one of EVENT_TYPES)
            title: Short human-readable summary
            detail: Longer detail text
            video_id: Handle the event concerns, if any
        """
        now = time.time()

        try:
            self._db.execute(
                "INSERT INTO events (event_type, video_id, title, detail, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (event_type, video_id, title, detail, now),
            )
            self._db.commit()
        except sqlite3.Error as e:
            logger.warning("Failed to persist %s event: %s", event_type, e)

        event_data = {
            "type": event_type,
            "title": title,
            "detail": detail,
            "video_id": video_id,
            "timestamp": now,
        }

        dead = []
        with self._lock:
            for q in self._subscribers:
                try:
                    q.put_nowait(event_data)
                except queue.Full:
                    dead.append(q)

            for q in dead:
                self._subscribers.remove(q)
                logger.debug("Removed dead subscriber (queue full)")

        logger.debug("Emitted event: %s - %s", event_type, title)

    def subscribe(self) -> queue.Queue:
        """Create a new subscriber queue receiving event dicts."""
        q = queue.Queue(maxsize=self._max_queue)
        with self._lock:
            self._subscribers.append(q)
        logger.debug("New subscriber (total: %d)", len(self._subscribers))
        return q

    def unsubscribe(self, q: queue.Queue):
        """Remove a subscriber queue."""
        with self._lock:
            try:
                self._subscribers.remove(q)
            except ValueError:
                pass
        logger.debug("Subscriber removed (total: %d)", len(self._subscribers))

    def recent(self, limit: int = 20, event_type: str | None = None) -> list[dict]:
        """Fetch recent events from the database, newest first."""
        if event_type:
            return self._db.fetchall(
                "SELECT * FROM events WHERE event_type = ? ORDER BY created_at DESC, id DESC LIMIT ?",
                (event_type, limit),
            )
        return self._db.fetchall(
            "SELECT * FROM events ORDER BY created_at DESC, id DESC LIMIT ?", (limit,)
        )

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

"""Tests for EventBus and SSE endpoints."""

import queue
import threading
import time


class TestEventBus:
    def test_emit_persists_to_db(self, event_bus, db):
        event_bus.emit("heal", "Heal success on video-1", "reason=heal_success", video_id="video-1")
        rows = db.fetchall("SELECT * FROM events")
        assert len(rows) == 1
        assert rows[0]["event_type"] == "heal"
        assert rows[0]["title"] == "Heal success on video-1"
        assert rows[0]["detail"] == "reason=heal_success"
        assert rows[0]["video_id"] == "video-1"

    def test_emit_pushes_to_subscriber(self, event_bus):
        q = event_bus.subscribe()
        event_bus.emit("stall", "Stall on video-1", "trigger=WATCHDOG")
        event = q.get(timeout=1)
        assert event["type"] == "stall"
        assert event["title"] == "Stall on video-1"
        assert event["detail"] == "trigger=WATCHDOG"
        assert event["video_id"] is None
        assert "timestamp" in event
        event_bus.unsubscribe(q)

    def test_multiple_subscribers(self, event_bus):
        q1 = event_bus.subscribe()
        q2 = event_bus.subscribe()
        event_bus.emit("switch", "Test")
        assert q1.get(timeout=1)["type"] == "switch"
        assert q2.get(timeout=1)["type"] == "switch"
        event_bus.unsubscribe(q1)
        event_bus.unsubscribe(q2)

    def test_unsubscribe(self, event_bus):
        q = event_bus.subscribe()
        assert event_bus.subscriber_count == 1
        event_bus.unsubscribe(q)
        assert event_bus.subscriber_count == 0
        event_bus.emit("heal", "After unsub")

    def test_unsubscribe_nonexistent(self, event_bus):
        event_bus.unsubscribe(queue.Queue())

    def test_dead_subscriber_cleanup(self, event_bus):
        """Full queues get cleaned up on next emit."""
        event_bus.subscribe()
        for i in range(50):
            event_bus.emit("stall", f"Event {i}")
        assert event_bus.subscriber_count == 1
        event_bus.emit("stall", "This triggers cleanup")
        assert event_bus.subscriber_count == 0

    def test_recent(self, event_bus):
        event_bus.emit("stall", "First")
        event_bus.emit("heal", "Second")
        event_bus.emit("stall", "Third")
        recent = event_bus.recent(limit=2)
        assert [e["title"] for e in recent] == ["Third", "Second"]

    def test_recent_by_type(self, event_bus):
        event_bus.emit("stall", "First")
        event_bus.emit("heal", "Second")
        event_bus.emit("stall", "Third")
        assert [e["title"] for e in event_bus.recent(event_type="stall")] == ["Third", "First"]

    def test_recent_empty(self, event_bus):
        assert event_bus.recent() == []

    def test_thread_safety(self, event_bus):
        """Concurrent emit and subscribe should not crash."""
        errors = []

        def emitter():
            try:
                for i in range(20):
                    event_bus.emit("stall", f"Event {i}")
            except Exception as e:
                errors.append(e)

        def subscriber():
            try:
                q = event_bus.subscribe()
                time.sleep(0.05)
                event_bus.unsubscribe(q)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=emitter) for _ in range(3)]
        threads += [threading.Thread(target=subscriber) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert errors == []


class TestSSEEndpoint:
    def test_sse_content_type(self, client):
        """SSE endpoint returns text/event-stream."""
        resp = client.get("/api/events", buffered=False)
        assert resp.status_code == 200
        assert "text/event-stream" in resp.content_type
        resp.close()

    def test_events_recent_endpoint(self, client):
        resp = client.get("/api/events/recent")
        assert resp.status_code == 200
        assert resp.get_json() == []

    def test_events_recent_with_data(self, client):
        client.application.event_bus.emit("heal", "Heal success on video-1")
        resp = client.get("/api/events/recent")
        data = resp.get_json()
        assert len(data) == 1
        assert data[0]["title"] == "Heal success on video-1"

    def test_events_recent_filter_and_limit(self, client):
        bus = client.application.event_bus
        for i in range(3):
            bus.emit("stall", f"Stall {i}")
        bus.emit("heal", "Heal")
        data = client.get("/api/events/recent?type=stall&limit=2").get_json()
        assert [e["title"] for e in data] == ["Stall 2", "Stall 1"]

    def test_events_recent_bad_limit(self, client):
        resp = client.get("/api/events/recent?limit=many")
        assert resp.status_code == 400

    def test_engine_events_reach_bus(self, client):
        app = client.application
        app.supervisor._emit("refresh", "Refresh requested for video-1", "reason=no_source")
        data = client.get("/api/events/recent").get_json()
        assert data[0]["event_type"] == "refresh"

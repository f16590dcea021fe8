"""Flask REST API for streamheal.

Exposes engine status, per-handle monitor snapshots, recent events (and
their live stream), and accepts external signals from whatever watches
the player's console.
"""

import json
import logging
import os
import queue

from flask import Flask, Response, jsonify, request

from streamheal.__about__ import __version__
from streamheal.config import Config, validate_config
from streamheal.server.database import Database
from streamheal.server.events import EventBus
from streamheal.server.supervisor import HealerSupervisor

logger = logging.getLogger(__name__)

SIGNAL_TYPES = ("playhead_stall", "processing_asset", "decoder_error", "adblock_block", "adblock_hint")


def create_app(
    config: Config | None = None,
    supervisor: HealerSupervisor | None = None,
    start: bool = True,
) -> Flask:
    """Create and configure the Flask application.

    Args:
        config: Full configuration. Uses defaults if None.
        supervisor: Pre-built engine runner (tests inject one with a
            ManualScheduler). Built from config if None.
        start: Start the supervisor loop.
    """
    if config is None:
        config = Config()

    os.makedirs(config.server.data_dir, exist_ok=True)

    app = Flask(__name__)
    app.config["STREAMHEAL"] = config

    db = Database(config.server.db_file)
    event_bus = EventBus(db)
    if supervisor is None:
        supervisor = HealerSupervisor(config, db=db, event_bus=event_bus)
    elif supervisor.event_bus is None:
        supervisor.event_bus = event_bus
    healer = supervisor.healer

    if start:
        supervisor.start()

    @app.teardown_appcontext
    def close_db(exc):
        db.close()

    # Global JSON error handler, no bare HTML 500s
    @app.errorhandler(Exception)
    def handle_exception(e):
        from werkzeug.exceptions import HTTPException
        if isinstance(e, HTTPException):
            return jsonify({"error": e.description}), e.code
        logger.exception("Unhandled error: %s", e)
        return jsonify({"error": str(e)}), 500

    @app.after_request
    def add_cors_headers(response):
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        return response

    app.db = db
    app.event_bus = event_bus
    app.supervisor = supervisor
    app.healer = healer

    # --- Status ---

    @app.route("/api/status")
    def status():
        """Engine status: sockets, active handle, failover and metrics."""
        return jsonify(supervisor.get_status())

    @app.route("/api/monitors")
    def monitors():
        """Per-handle state and candidate score, active first."""
        return jsonify(supervisor.get_monitors())

    @app.route("/api/metrics")
    def metrics():
        return jsonify(healer.metrics.summary())

    @app.route("/api/health")
    def health():
        return jsonify({
            "status": "ok",
            "version": __version__,
            "running": supervisor.is_running,
            **supervisor.get_health(),
            "config_warnings": validate_config(config),
            "last_auto_refresh": db.get_last_auto_refresh(),
        })

    # --- Input ---

    @app.route("/api/signal", methods=["POST"])
    def signal():
        """Accept one external signal ({"type", "level", "message", ...})."""
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"error": "JSON object required"}), 400
        signal_type = str(data.get("type", "")).strip()
        if not signal_type:
            return jsonify({"error": "type required"}), 400
        if signal_type not in SIGNAL_TYPES:
            logger.info("Accepting unknown signal type %r", signal_type)
        supervisor.submit_signal(data)
        return jsonify({"ok": True, "type": signal_type}), 202

    @app.route("/api/scan", methods=["POST"])
    def scan():
        data = request.get_json(silent=True) or {}
        supervisor.request_scan(str(data.get("reason") or "api"))
        return jsonify({"ok": True}), 202

    # --- Events ---

    @app.route("/api/events")
    def events_stream():
        """SSE stream of engine events."""
        def generate():
            q = event_bus.subscribe()
            try:
                while True:
                    try:
                        event = q.get(timeout=30)
                    except queue.Empty:
                        yield ": heartbeat\n\n"
                        continue
                    yield f"event: {event['type']}\ndata: {json.dumps(event)}\n\n"
            finally:
                event_bus.unsubscribe(q)

        return Response(generate(), mimetype="text/event-stream")

    @app.route("/api/events/recent")
    def events_recent():
        """Get recent events, newest first."""
        try:
            limit = int(request.args.get("limit", 20))
        except ValueError:
            return jsonify({"error": "limit must be an integer"}), 400
        limit = max(1, min(limit, 500))
        return jsonify(event_bus.recent(limit, request.args.get("type")))

    return app

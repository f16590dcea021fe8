"""CLI entry points for streamheal.

streamheal-server: Runs the healing engine against mpv and serves the API
streamheal: Queries a running server and pushes external signals
"""

import argparse
import logging
import sys
import time


def run_server():
    """Entry point for streamheal-server command."""
    parser = argparse.ArgumentParser(
        description="streamheal server - stall detection and healing for mpv streams"
    )
    parser.add_argument(
        "--host", default=None, help="Host to bind to (default: 127.0.0.1)"
    )
    parser.add_argument(
        "--port", type=int, default=None, help="Port to listen on (default: 5070)"
    )
    parser.add_argument(
        "--config", default=None, help="Path to streamheal.toml config file"
    )
    parser.add_argument(
        "--socket", action="append", default=None, dest="sockets",
        help="mpv IPC socket to monitor (repeatable, overrides config)"
    )
    parser.add_argument(
        "--log-level", default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)"
    )
    parser.add_argument(
        "--quiet", action="store_true",
        help="Suppress per-request werkzeug logs"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    if args.quiet:
        logging.getLogger("werkzeug").setLevel(logging.WARNING)

    from streamheal.config import load_config, validate_config
    from streamheal.server.app import create_app

    config = load_config(args.config)

    # CLI args override config file
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port
    if args.sockets:
        config.server.mpv_sockets = args.sockets

    log = logging.getLogger("streamheal")
    for warning in validate_config(config):
        log.warning("Config: %s", warning)

    app = create_app(config)
    try:
        app.run(
            host=config.server.host,
            port=config.server.port,
            threaded=True,
            use_reloader=False,  # The supervisor owns a background thread
        )
    finally:
        app.supervisor.stop()


def _print_status(status: dict):
    print(f"Running:   {status.get('running')}")
    print(f"Active:    {status.get('active_id') or '-'}   (last good: {status.get('last_good_id') or '-'})")
    print(f"Monitors:  {status.get('monitored_count', 0)}   healing: {status.get('is_healing')}")
    failover = status.get("failover") or {}
    if failover.get("in_progress"):
        print(f"Failover:  {failover.get('from')} -> {failover.get('to')}")
    for sock in status.get("sockets", []):
        state = "up" if sock.get("connected") else "down"
        print(f"  {sock['name']:<30s} {state:<5s} {sock.get('video_id') or ''}")
    metrics = status.get("metrics") or {}
    if metrics:
        print(f"Stalls:    {metrics.get('stalls_detected', 0)}   heals ok: "
              f"{metrics.get('heals_successful', 0)}   failed: {metrics.get('heals_failed', 0)}   "
              f"rate: {metrics.get('heal_rate', 'N/A')}")


def _print_monitors(monitors: list[dict]):
    if not monitors:
        print("No monitored handles")
        return
    print(f"  {'id':<10s} {'state':<8s} {'score':>5s}  {'trusted':<8s} reasons")
    print("-" * 60)
    for m in monitors:
        marker = "*" if m.get("active") else " "
        print(f"{marker} {m['id']:<10s} {m.get('state', ''):<8s} {m.get('score', 0):>5d}  "
              f"{str(m.get('trusted')):<8s} {','.join(m.get('reasons', []))}")


def _print_events(events: list[dict]):
    if not events:
        print("No events")
        return
    for e in events:
        stamp = time.strftime("%H:%M:%S", time.localtime(e.get("created_at", 0)))
        detail = f"  ({e['detail']})" if e.get("detail") else ""
        print(f"{stamp}  {e.get('event_type', ''):<14s} {e.get('title', '')}{detail}")


def run_client(argv: list[str] | None = None) -> int:
    """Entry point for the streamheal command."""
    parser = argparse.ArgumentParser(description="Query or signal a running streamheal server")
    parser.add_argument("--host", default="127.0.0.1", help="Server host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=5070, help="Server port (default: 5070)")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("status", help="Show engine status")
    sub.add_parser("monitors", help="List monitored handles and scores")

    p_events = sub.add_parser("events", help="Show recent events")
    p_events.add_argument("--limit", type=int, default=20, help="Number of events")
    p_events.add_argument("--type", default=None, help="Filter by event type")

    p_signal = sub.add_parser("signal", help="Push an external signal")
    p_signal.add_argument("type", help="Signal type (playhead_stall, processing_asset, decoder_error...)")
    p_signal.add_argument("message", nargs="?", default="", help="Signal message")
    p_signal.add_argument("--level", default="warning", help="Signal level")
    p_signal.add_argument("--playhead", type=float, default=None, help="Playhead seconds")

    p_scan = sub.add_parser("scan", help="Ask the server to rescan handles")
    p_scan.add_argument("--reason", default="cli", help="Reason recorded in the logs")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    from streamheal.client import StreamHealAPIError, StreamHealClient

    with StreamHealClient(args.host, args.port) as client:
        try:
            if args.command == "status":
                _print_status(client.get_status())
            elif args.command == "monitors":
                _print_monitors(client.get_monitors())
            elif args.command == "events":
                _print_events(client.recent_events(args.limit, args.type))
            elif args.command == "signal":
                result = client.send_signal(args.type, args.message, args.level,
                                            playhead_seconds=args.playhead)
                print(f"Signal {result.get('type')} accepted")
            elif args.command == "scan":
                client.scan(args.reason)
                print("Scan requested")
        except StreamHealAPIError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
    return 0

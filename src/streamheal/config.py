"""Configuration loader for streamheal.

All engine thresholds are named durations/counts grouped by concern. Values
in ``*_ms`` fields are milliseconds, ``*_s`` fields are seconds of media time.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # Python 3.10 fallback


@dataclass
class StallConfig:
    """Stall detection, backoff and escalation thresholds."""

    watchdog_interval_ms: int = 1000
    stall_confirm_ms: int = 2500
    stall_confirm_buffer_ok_ms: int = 1500   # Extra tolerance while buffer remains
    paused_stall_grace_ms: int = 3000
    init_progress_grace_ms: int = 5000
    reset_grace_ms: int = 2000
    heal_poll_interval_ms: int = 200
    heal_timeout_s: float = 15
    recovery_window_ms: int = 1500
    retry_cooldown_ms: int = 2000

    buffer_starve_threshold_s: float = 0.5
    buffer_starve_confirm_ms: int = 2000
    buffer_starve_backoff_ms: int = 5000
    buffer_starve_rescan_cooldown_ms: int = 15000

    no_heal_point_backoff_base_ms: int = 5000
    no_heal_point_backoff_max_ms: int = 60000
    no_heal_point_emergency_switch: bool = True
    no_heal_point_emergency_after: int = 3
    no_heal_point_emergency_cooldown_ms: int = 15000
    no_heal_point_emergency_min_ready_state: int = 2
    no_heal_point_emergency_require_src: bool = True
    no_heal_point_emergency_allow_dead: bool = False
    no_heal_point_last_resort_switch: bool = True
    no_heal_point_last_resort_after: int = 4
    no_heal_point_last_resort_require_starved: bool = True
    no_heal_point_last_resort_min_ready_state: int = 1
    no_heal_point_last_resort_require_src: bool = False
    no_heal_point_last_resort_allow_dead: bool = True
    no_heal_point_quiet_after: int = 5
    no_heal_point_quiet_ms: int = 30000
    no_heal_point_refresh_delay_ms: int = 15000
    no_heal_point_refresh_min_ready_state: int = 2
    refresh_after_no_heal_points: int = 5
    refresh_cooldown_ms: int = 120000

    play_error_backoff_base_ms: int = 2000
    play_error_backoff_max_ms: int = 20000
    play_abort_backoff_base_ms: int = 500
    play_abort_backoff_max_ms: int = 5000
    play_error_decay_ms: int = 15000
    play_stuck_refresh_after: int = 3

    failover_after_no_heal_points: int = 3
    failover_after_play_errors: int = 3
    failover_after_stall_ms: int = 30000
    failover_cooldown_ms: int = 30000
    failover_progress_timeout_ms: int = 8000
    fast_switch_after_no_heal_points: int = 2
    fast_switch_after_stall_ms: int = 10000
    healpoint_repeat_failover_count: int = 3

    probation_after_no_heal_points: int = 2
    probation_after_play_errors: int = 2
    probation_rescan_cooldown_ms: int = 15000
    processing_asset_last_resort_switch: bool = True

    self_recover_grace_ms: int = 2000
    self_recover_extra_ms: int = 4000
    self_recover_max_ms: int = 10000


@dataclass
class MonitoringConfig:
    """Candidate scoring, trust and selection thresholds."""

    candidate_min_progress_ms: int = 3000
    candidate_switch_delta: int = 2
    dead_candidate_after_ms: int = 10000
    dead_candidate_cooldown_ms: int = 30000
    max_video_monitors: int = 8
    probation_min_progress_ms: int = 500
    probation_ready_state: int = 2
    probation_window_ms: int = 10000
    probe_cooldown_ms: int = 5000
    progress_recent_ms: int = 2000
    progress_stale_ms: int = 5000
    progress_streak_reset_ms: int = 2500
    trust_stale_ms: int = 5000


@dataclass
class RecoveryConfig:
    """Heal pipeline timings and heal-point acceptance limits."""

    catch_up_delay_ms: int = 4000
    catch_up_max_attempts: int = 3
    catch_up_min_s: float = 3.0
    catch_up_retry_ms: int = 2000
    catch_up_stable_ms: int = 3000
    gap_override_min_gap_s: float = 0.5
    gap_override_min_headroom_s: float = 1.0
    heal_defer_abort_ms: int = 6000
    heal_edge_guard_s: float = 0.35
    heal_retry_delay_ms: int = 250
    min_heal_headroom_s: float = 2.0
    min_heal_buffer_s: float = 0.5
    playback_verify_ms: int = 400
    seek_settle_ms: int = 150


@dataclass
class LoggingConfig:
    """Throttle intervals for repetitive log lines."""

    backoff_log_interval_ms: int = 5000
    non_active_log_ms: int = 30000
    starve_log_ms: int = 10000
    heal_defer_log_ms: int = 2000
    log_message_max_len: int = 300


@dataclass
class ServerConfig:
    """Configuration for the streamheal server process."""

    host: str = "127.0.0.1"
    port: int = 5070
    mpv_sockets: list[str] = field(default_factory=lambda: ["/tmp/mpv-socket"])
    db_file: str = ""
    data_dir: str = ""
    poll_interval_ms: int = 250          # How often mpv handles are sampled

    def __post_init__(self):
        if not self.data_dir:
            self.data_dir = os.path.expanduser("~/.streamheal")
        if not self.db_file:
            self.db_file = os.path.join(self.data_dir, "streamheal.db")


@dataclass
class Config:
    """Top-level streamheal configuration."""

    stall: StallConfig = field(default_factory=StallConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def load_config(path: str | None = None) -> Config:
    """Load configuration from streamheal.toml.

    Search order:
    1. Explicit path argument
    2. ./streamheal.toml
    3. ~/.config/streamheal/streamheal.toml
    4. Defaults
    """
    search_paths = []
    if path:
        search_paths.append(Path(path))
    search_paths.extend([
        Path("streamheal.toml"),
        Path.home() / ".config" / "streamheal" / "streamheal.toml",
    ])

    for p in search_paths:
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            return _parse_config(data)

    return Config()


def _parse_section(cls, values: dict):
    """Build a section dataclass, keeping defaults for missing or unknown keys."""
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in values.items() if k in known})


def _parse_config(data: dict) -> Config:
    """Parse a TOML dict into Config."""
    config = Config()

    if "stall" in data:
        config.stall = _parse_section(StallConfig, data["stall"])
    if "monitoring" in data:
        config.monitoring = _parse_section(MonitoringConfig, data["monitoring"])
    if "recovery" in data:
        config.recovery = _parse_section(RecoveryConfig, data["recovery"])
    if "logging" in data:
        config.logging = _parse_section(LoggingConfig, data["logging"])

    if "server" in data:
        s = data["server"]
        sockets = s.get("mpv_sockets")
        if sockets is None and "mpv_socket" in s:
            sockets = [s["mpv_socket"]]
        config.server = ServerConfig(
            host=s.get("host", config.server.host),
            port=s.get("port", config.server.port),
            mpv_sockets=sockets or config.server.mpv_sockets,
            db_file=s.get("db_file", ""),
            data_dir=s.get("data_dir", ""),
            poll_interval_ms=s.get("poll_interval_ms", config.server.poll_interval_ms),
        )

    return config


def validate_config(config: Config) -> list[str]:
    """Sanity-check thresholds that only make sense in a certain order.

    Returns a list of human-readable warnings; an empty list means the
    configuration is consistent.
    """
    warnings = []
    stall = config.stall

    if stall.stall_confirm_ms <= 0:
        warnings.append(f"stall_confirm_ms must be positive (got {stall.stall_confirm_ms})")
    if stall.self_recover_max_ms and stall.self_recover_grace_ms > stall.self_recover_max_ms:
        warnings.append("self_recover_grace_ms exceeds self_recover_max_ms")
    if stall.no_heal_point_backoff_base_ms > stall.no_heal_point_backoff_max_ms:
        warnings.append("no_heal_point_backoff_base_ms exceeds no_heal_point_backoff_max_ms")
    if stall.play_error_backoff_base_ms > stall.play_error_backoff_max_ms:
        warnings.append("play_error_backoff_base_ms exceeds play_error_backoff_max_ms")
    if stall.play_abort_backoff_base_ms > stall.play_abort_backoff_max_ms:
        warnings.append("play_abort_backoff_base_ms exceeds play_abort_backoff_max_ms")
    if stall.heal_timeout_s * 1000 < stall.stall_confirm_ms:
        warnings.append("heal_timeout_s is shorter than stall_confirm_ms")

    return warnings

"""
Fleet Orchestrator Configuration

Defines the configuration consumed by the scheduler, the lifecycle stages,
the health monitor and the duplex channel.
"""

import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _env_int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class FleetConfig:
    """
    Global configuration for the fleet orchestrator.

    All settings can be overridden via environment variables; the layered
    YAML loader in config_loader can override them again per deployment.
    Durations are in seconds.
    """

    # Admission
    max_concurrent_starts: int = field(
        default_factory=lambda: _env_int("FLEET_MAX_CONCURRENT_STARTS", "2")
    )
    bot_quota: int = field(default_factory=lambda: _env_int("FLEET_BOT_QUOTA", "10"))
    scheduler_interval: float = field(
        default_factory=lambda: _env_float("FLEET_SCHEDULER_INTERVAL", "1.0")
    )

    # Lifecycle stages
    poll_interval: float = field(
        default_factory=lambda: _env_float("FLEET_POLL_INTERVAL", "0.5")
    )
    environment_settle_delay: float = field(
        default_factory=lambda: _env_float("FLEET_ENVIRONMENT_SETTLE_DELAY", "1.0")
    )
    bypass_agent_enabled: bool = field(
        default_factory=lambda: _env_bool("FLEET_BYPASS_AGENT_ENABLED", "true")
    )
    bypass_agent_executable: str = field(
        default_factory=lambda: os.getenv("FLEET_BYPASS_AGENT_EXECUTABLE", "")
    )
    bypass_agent_settle_delay: float = field(
        default_factory=lambda: _env_float("FLEET_BYPASS_AGENT_SETTLE_DELAY", "20")
    )
    launch_delay: float = field(
        default_factory=lambda: _env_float("FLEET_LAUNCH_DELAY", "5")
    )
    target_executable: str = field(
        default_factory=lambda: os.getenv("FLEET_TARGET_EXECUTABLE", "")
    )
    target_args: str = field(default_factory=lambda: os.getenv("FLEET_TARGET_ARGS", ""))
    process_ready_delay: float = field(
        default_factory=lambda: _env_float("FLEET_PROCESS_READY_DELAY", "3")
    )
    preload_delay_enabled: bool = field(
        default_factory=lambda: _env_bool("FLEET_PRELOAD_DELAY_ENABLED", "false")
    )
    preload_delay: float = field(
        default_factory=lambda: _env_float("FLEET_PRELOAD_DELAY", "1.5")
    )
    payload_delay: float = field(
        default_factory=lambda: _env_float("FLEET_PAYLOAD_DELAY", "5")
    )
    injector_executable: str = field(
        default_factory=lambda: os.getenv("FLEET_INJECTOR_EXECUTABLE", "")
    )
    preload_module: str = field(
        default_factory=lambda: os.getenv("FLEET_PRELOAD_MODULE", "")
    )
    payload_module: str = field(
        default_factory=lambda: os.getenv("FLEET_PAYLOAD_MODULE", "")
    )
    injection_success_marker: str = field(
        default_factory=lambda: os.getenv(
            "FLEET_INJECTION_SUCCESS_MARKER", "Successfully injected module"
        )
    )
    injection_recheck_delay: float = field(
        default_factory=lambda: _env_float("FLEET_INJECTION_RECHECK_DELAY", "1")
    )
    injection_reappear_timeout: float = field(
        default_factory=lambda: _env_float("FLEET_INJECTION_REAPPEAR_TIMEOUT", "10")
    )

    # Health monitoring / auto-restart
    auto_restart_enabled: bool = field(
        default_factory=lambda: _env_bool("FLEET_AUTO_RESTART_ENABLED", "false")
    )
    monitor_interval: float = field(
        default_factory=lambda: _env_float("FLEET_MONITOR_INTERVAL", "5")
    )
    restart_grace_period: float = field(
        default_factory=lambda: _env_float("FLEET_RESTART_GRACE_PERIOD", "60")
    )
    heartbeat_stale_after: float = field(
        default_factory=lambda: _env_float("FLEET_HEARTBEAT_STALE_AFTER", "20")
    )
    restart_cooldown: float = field(
        default_factory=lambda: _env_float("FLEET_RESTART_COOLDOWN", "10")
    )
    restart_bypass_settle: float = field(
        default_factory=lambda: _env_float("FLEET_RESTART_BYPASS_SETTLE", "5")
    )
    manual_restart_delay: float = field(
        default_factory=lambda: _env_float("FLEET_MANUAL_RESTART_DELAY", "5")
    )

    # Duplex channel
    channel_address: str = field(
        default_factory=lambda: os.getenv("FLEET_CHANNEL_ADDRESS", "fleet.sock")
    )
    reconnect_notice_after: float = field(
        default_factory=lambda: _env_float("FLEET_RECONNECT_NOTICE_AFTER", "30")
    )
    listener_backoff_base: float = field(
        default_factory=lambda: _env_float("FLEET_LISTENER_BACKOFF_BASE", "1.0")
    )
    listener_backoff_factor: float = field(
        default_factory=lambda: _env_float("FLEET_LISTENER_BACKOFF_FACTOR", "1.5")
    )
    listener_max_attempts: int = field(
        default_factory=lambda: _env_int("FLEET_LISTENER_MAX_ATTEMPTS", "10")
    )
    telemetry_extra_limit: int = field(
        default_factory=lambda: _env_int("FLEET_TELEMETRY_EXTRA_LIMIT", "32")
    )

    # Collaborators
    environment_root: str = field(
        default_factory=lambda: os.getenv("FLEET_ENVIRONMENT_ROOT", "environments")
    )
    credentials_file: str = field(
        default_factory=lambda: os.getenv("FLEET_CREDENTIALS_FILE", "files/accounts.txt")
    )
    redis_url: Optional[str] = field(default_factory=lambda: os.getenv("REDIS_URL"))
    event_channel_prefix: str = field(
        default_factory=lambda: os.getenv("FLEET_EVENT_CHANNEL_PREFIX", "fleet")
    )

    # Shutdown settings
    shutdown_timeout: float = field(
        default_factory=lambda: _env_float("FLEET_SHUTDOWN_TIMEOUT", "5")
    )

    def __post_init__(self):
        """Validate configuration after initialization"""
        if self.max_concurrent_starts < 1:
            raise ValueError("max_concurrent_starts must be at least 1")
        if self.bot_quota < 1:
            raise ValueError("bot_quota must be at least 1")
        for name in (
            "scheduler_interval",
            "poll_interval",
            "monitor_interval",
            "shutdown_timeout",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        for name in (
            "environment_settle_delay",
            "bypass_agent_settle_delay",
            "launch_delay",
            "process_ready_delay",
            "preload_delay",
            "payload_delay",
            "injection_recheck_delay",
            "injection_reappear_timeout",
            "restart_grace_period",
            "heartbeat_stale_after",
            "restart_cooldown",
            "restart_bypass_settle",
            "manual_restart_delay",
            "reconnect_notice_after",
            "listener_backoff_base",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative")
        if self.listener_backoff_factor < 1:
            raise ValueError("listener_backoff_factor must be >= 1")
        if self.listener_max_attempts < 0:
            raise ValueError("listener_max_attempts must be non-negative")
        if self.telemetry_extra_limit < 0:
            raise ValueError("telemetry_extra_limit must be non-negative")

    @property
    def bypass_agent_configured(self) -> bool:
        """The bypass stage only runs when enabled and an executable is set."""
        return self.bypass_agent_enabled and bool(self.bypass_agent_executable)

    @classmethod
    def from_mapping(cls, values: Dict[str, Any]) -> "FleetConfig":
        """
        Build a config from a flat mapping, ignoring unknown keys.

        Keys that are absent fall back to the environment-backed defaults.
        """
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in values.items() if k in known})

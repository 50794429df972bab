"""Runtime configuration for the export job queue and its orchestrators."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from export_dispatch.orchestrator.models import HandoffMode


@dataclass(slots=True)
class StoreSettings:
    """Job store settings."""

    sqlite_busy_timeout_ms: int = 5_000
    max_retries: int = 3
    default_organization_id: int = 1


@dataclass(slots=True)
class GatewaySettings:
    """Agent Executor webhook settings."""

    url: str = "http://localhost:18789"
    token: str = "local-dev-hooks-token"
    default_model: str = "nvidia/moonshotai/kimi-k2.5"
    request_timeout_seconds: float = 30.0
    agent_timeout_seconds: int = 300


@dataclass(slots=True)
class MailboxSettings:
    """Spawn mailbox handoff settings."""

    path: Path = Path("/tmp/worker-spawn-request.json")  # noqa: S108
    pickup_timeout_seconds: float = 5.0
    handoff_mode: HandoffMode = HandoffMode.MAILBOX


@dataclass(slots=True)
class WorkerSettings:
    """Queue consumer and mailbox relay loop settings."""

    poll_interval_seconds: float = 10.0
    max_concurrent: int = 3
    relay_poll_interval_seconds: float = 1.0
    relay_max_concurrent: int = 5
    monitor_checks: int = 20
    monitor_interval_seconds: float = 30.0
    shutdown_grace_seconds: float = 60.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".export_dispatch.db")
    export_root: Path = Path("exports")
    store: StoreSettings = field(default_factory=StoreSettings)
    gateway: GatewaySettings = field(default_factory=GatewaySettings)
    mailbox: MailboxSettings = field(default_factory=MailboxSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("EXPORT_DISPATCH_DB_PATH", ".export_dispatch.db")),
            export_root=Path(os.getenv("EXPORT_DISPATCH_EXPORT_ROOT", "exports")),
            store=StoreSettings(
                sqlite_busy_timeout_ms=_env_int("EXPORT_DISPATCH_SQLITE_BUSY_TIMEOUT_MS", 5000),
                max_retries=_env_int("EXPORT_DISPATCH_MAX_RETRIES", 3),
                default_organization_id=_env_int("EXPORT_DISPATCH_DEFAULT_ORG_ID", 1),
            ),
            gateway=GatewaySettings(
                url=os.getenv("EXPORT_DISPATCH_GATEWAY_URL", "http://localhost:18789").rstrip("/"),
                token=os.getenv("EXPORT_DISPATCH_GATEWAY_TOKEN", "local-dev-hooks-token"),
                default_model=os.getenv(
                    "EXPORT_DISPATCH_DEFAULT_MODEL",
                    "nvidia/moonshotai/kimi-k2.5",
                ),
                request_timeout_seconds=_env_float(
                    "EXPORT_DISPATCH_GATEWAY_TIMEOUT_SECONDS",
                    30.0,
                ),
                agent_timeout_seconds=_env_int("EXPORT_DISPATCH_AGENT_TIMEOUT_SECONDS", 300),
            ),
            mailbox=MailboxSettings(
                path=Path(
                    os.getenv(
                        "EXPORT_DISPATCH_MAILBOX_PATH",
                        "/tmp/worker-spawn-request.json",  # noqa: S108
                    ),
                ),
                pickup_timeout_seconds=_env_float("EXPORT_DISPATCH_MAILBOX_PICKUP_SECONDS", 5.0),
                handoff_mode=_env_handoff_mode(),
            ),
            worker=WorkerSettings(
                poll_interval_seconds=_env_float("EXPORT_DISPATCH_WORKER_POLL_SECONDS", 10.0),
                max_concurrent=_env_int("EXPORT_DISPATCH_WORKER_MAX_CONCURRENT", 3),
                relay_poll_interval_seconds=_env_float("EXPORT_DISPATCH_RELAY_POLL_SECONDS", 1.0),
                relay_max_concurrent=_env_int("EXPORT_DISPATCH_RELAY_MAX_CONCURRENT", 5),
                monitor_checks=_env_int("EXPORT_DISPATCH_MONITOR_CHECKS", 20),
                monitor_interval_seconds=_env_float(
                    "EXPORT_DISPATCH_MONITOR_INTERVAL_SECONDS",
                    30.0,
                ),
                shutdown_grace_seconds=_env_float("EXPORT_DISPATCH_SHUTDOWN_GRACE_SECONDS", 60.0),
            ),
        )

    def validate_for_orchestrator(self) -> None:
        """Raise configuration error if orchestrator loop settings are unusable."""

        positive = {
            "EXPORT_DISPATCH_WORKER_POLL_SECONDS": self.worker.poll_interval_seconds,
            "EXPORT_DISPATCH_WORKER_MAX_CONCURRENT": self.worker.max_concurrent,
            "EXPORT_DISPATCH_RELAY_POLL_SECONDS": self.worker.relay_poll_interval_seconds,
            "EXPORT_DISPATCH_RELAY_MAX_CONCURRENT": self.worker.relay_max_concurrent,
            "EXPORT_DISPATCH_MONITOR_CHECKS": self.worker.monitor_checks,
            "EXPORT_DISPATCH_MONITOR_INTERVAL_SECONDS": self.worker.monitor_interval_seconds,
            "EXPORT_DISPATCH_MAX_RETRIES": self.store.max_retries,
            "EXPORT_DISPATCH_MAILBOX_PICKUP_SECONDS": self.mailbox.pickup_timeout_seconds,
            "EXPORT_DISPATCH_GATEWAY_TIMEOUT_SECONDS": self.gateway.request_timeout_seconds,
            "EXPORT_DISPATCH_AGENT_TIMEOUT_SECONDS": self.gateway.agent_timeout_seconds,
        }
        for name, value in positive.items():
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        if self.worker.shutdown_grace_seconds < 0:
            raise ValueError("EXPORT_DISPATCH_SHUTDOWN_GRACE_SECONDS must be >= 0.")

        parsed = urlparse(self.gateway.url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                f"EXPORT_DISPATCH_GATEWAY_URL must be an http(s) URL, got {self.gateway.url!r}.",
            )
        if not self.gateway.token.strip():
            raise ValueError("EXPORT_DISPATCH_GATEWAY_TOKEN must not be empty.")
        if not self.gateway.default_model.strip():
            raise ValueError("EXPORT_DISPATCH_DEFAULT_MODEL must not be empty.")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as error:
        raise ValueError(f"{name} must be an integer, got {raw!r}.") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as error:
        raise ValueError(f"{name} must be a number, got {raw!r}.") from error


def _env_handoff_mode() -> HandoffMode:
    raw = os.getenv("EXPORT_DISPATCH_HANDOFF_MODE", HandoffMode.MAILBOX.value).strip().lower()
    try:
        return HandoffMode(raw)
    except ValueError as error:
        allowed = ", ".join(mode.value for mode in HandoffMode)
        raise ValueError(
            f"EXPORT_DISPATCH_HANDOFF_MODE must be one of: {allowed}; got {raw!r}.",
        ) from error

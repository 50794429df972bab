from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import allure
import pytest

from export_dispatch.config import GatewaySettings, Settings, WorkerSettings
from export_dispatch.orchestrator.models import HandoffMode

pytestmark = [
    allure.epic("Export Queue"),
    allure.feature("Configuration"),
]


def test_from_env_uses_local_development_fallbacks(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("EXPORT_DISPATCH_MAILBOX_PATH", raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".export_dispatch.db")
    assert settings.gateway.url == "http://localhost:18789"
    assert settings.gateway.default_model == "nvidia/moonshotai/kimi-k2.5"
    assert settings.gateway.agent_timeout_seconds == 300
    assert settings.mailbox.path == Path("/tmp/worker-spawn-request.json")  # noqa: S108
    assert settings.mailbox.pickup_timeout_seconds == 5.0
    assert settings.mailbox.handoff_mode is HandoffMode.MAILBOX
    assert settings.worker.poll_interval_seconds == 10.0
    assert settings.worker.max_concurrent == 3
    assert settings.worker.relay_poll_interval_seconds == 1.0
    assert settings.worker.relay_max_concurrent == 5
    assert settings.worker.monitor_checks == 20
    assert settings.worker.monitor_interval_seconds == 30.0
    assert settings.worker.shutdown_grace_seconds == 60.0
    assert settings.store.max_retries == 3
    assert settings.store.default_organization_id == 1
    settings.validate_for_orchestrator()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("EXPORT_DISPATCH_GATEWAY_URL", "https://agents.example.com/")
    monkeypatch.setenv("EXPORT_DISPATCH_GATEWAY_TOKEN", "prod-token")
    monkeypatch.setenv("EXPORT_DISPATCH_HANDOFF_MODE", "DIRECT")
    monkeypatch.setenv("EXPORT_DISPATCH_WORKER_MAX_CONCURRENT", "7")
    monkeypatch.setenv("EXPORT_DISPATCH_MONITOR_INTERVAL_SECONDS", "2.5")

    settings = Settings.from_env(db_path=tmp_path / "jobs.db")

    assert settings.db_path == tmp_path / "jobs.db"
    assert settings.gateway.url == "https://agents.example.com"
    assert settings.gateway.token == "prod-token"
    assert settings.mailbox.handoff_mode is HandoffMode.DIRECT
    assert settings.worker.max_concurrent == 7
    assert settings.worker.monitor_interval_seconds == 2.5


def test_from_env_rejects_malformed_numbers(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EXPORT_DISPATCH_MAX_RETRIES", "three")

    with pytest.raises(ValueError, match="EXPORT_DISPATCH_MAX_RETRIES must be an integer"):
        Settings.from_env()


def test_from_env_rejects_unknown_handoff_mode(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("EXPORT_DISPATCH_HANDOFF_MODE", "carrier-pigeon")

    with pytest.raises(ValueError, match="EXPORT_DISPATCH_HANDOFF_MODE must be one of"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(worker=WorkerSettings(max_concurrent=0)), "WORKER_MAX_CONCURRENT"),
        (Settings(worker=WorkerSettings(poll_interval_seconds=0)), "WORKER_POLL_SECONDS"),
        (Settings(worker=WorkerSettings(monitor_checks=0)), "MONITOR_CHECKS"),
        (Settings(worker=WorkerSettings(shutdown_grace_seconds=-1)), "SHUTDOWN_GRACE_SECONDS"),
        (Settings(gateway=GatewaySettings(url="ftp://gateway")), "GATEWAY_URL"),
        (Settings(gateway=GatewaySettings(token=" ")), "GATEWAY_TOKEN"),
    ],
)
def test_validate_for_orchestrator_names_the_bad_setting(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate_for_orchestrator()


def test_zero_grace_period_is_allowed() -> None:
    settings = Settings()
    settings = replace(settings, worker=WorkerSettings(shutdown_grace_seconds=0))

    settings.validate_for_orchestrator()

"""Tests for the calsync CLI."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import httpx
import pytest
from click.testing import CliRunner

import calsync.cli as cli_mod
from calsync.cli import cli
from calsync.config import CalsyncConfig
from calsync.core.state import InMemoryStateStore
from calsync.sync.engine import CalendarSyncEngine
from calsync.sync.scheduler import SyncOptions

pytestmark = pytest.mark.unit

CONFIG_TOML = """\
[calsync]
name = "cli-test"

[calsync.endpoints]
base_url = "https://app.example.com"
"""


class _FakeHost:
    def __init__(self) -> None:
        self.connected = True
        self.events_status = 200
        self.events: list[dict[str, Any]] = [
            {
                "id": "a",
                "summary": "Planning",
                "location": "Room 4",
                "start": {"dateTime": "2024-03-05T09:00:00Z"},
                "end": {"dateTime": "2024-03-05T10:00:00Z"},
            }
        ]
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("google-status"):
            return httpx.Response(200, json={"hasIntegration": self.connected})
        if self.events_status != 200:
            return httpx.Response(self.events_status, json={"error": "failure"})
        return httpx.Response(200, json={"success": True, "events": self.events})


@pytest.fixture
def host() -> _FakeHost:
    return _FakeHost()


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture(autouse=True)
def _wire_engine(monkeypatch, host, store):
    """Route every CLI-built engine through the fake host and a shared store."""

    def _build_engine(config: CalsyncConfig, options: SyncOptions) -> CalendarSyncEngine:
        client = httpx.AsyncClient(transport=httpx.MockTransport(host.handler))
        engine = CalendarSyncEngine.from_config(
            config, options, http_client=client, store=store
        )
        # Let the engine close the client it was handed.
        engine._owned_client = client
        return engine

    monkeypatch.setattr(cli_mod, "_build_engine", _build_engine)
    monkeypatch.setattr(cli_mod, "configure_logging", lambda **kwargs: None)


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    (tmp_path / "calsync.toml").write_text(CONFIG_TOML)
    return tmp_path


def _invoke(config_dir: Path, *args: str):
    return CliRunner().invoke(cli, ["--config", str(config_dir), *args])


# ---------------------------------------------------------------------------
# Top-level group
# ---------------------------------------------------------------------------


class TestGroup:
    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_help_lists_commands(self):
        result = CliRunner().invoke(cli, ["--help"])
        assert result.exit_code == 0
        for name in ("run", "sync", "status", "errors"):
            assert name in result.output

    def test_missing_config_exits_with_error(self, tmp_path):
        result = _invoke(tmp_path, "status")
        assert result.exit_code == 2
        assert "Config file not found" in result.output


# ---------------------------------------------------------------------------
# sync
# ---------------------------------------------------------------------------


class TestSyncCommand:
    def test_today_is_default(self, config_dir, host):
        result = _invoke(config_dir, "sync")

        assert result.exit_code == 0, result.output
        assert "Planning @ Room 4" in result.output
        assert host.requests[-1].url.params["todayOnly"] == "true"

    def test_month(self, config_dir, host):
        result = _invoke(config_dir, "sync", "--month", "2024-03")

        assert result.exit_code == 0, result.output
        params = host.requests[-1].url.params
        assert params["start"] == "2024-03-01T00:00:00"
        assert params["end"] == "2024-03-31T23:59:59"

    def test_bad_month(self, config_dir):
        result = _invoke(config_dir, "sync", "--month", "March")
        assert result.exit_code == 2
        assert "YYYY-MM" in result.output

    def test_start_end(self, config_dir, host):
        result = _invoke(config_dir, "sync", "--start", "2024-03-04", "--end", "2024-03-08")

        assert result.exit_code == 0, result.output
        params = host.requests[-1].url.params
        assert params["start"] == "2024-03-04T00:00:00"
        assert params["end"] == "2024-03-08T23:59:59"

    def test_conflicting_windows(self, config_dir):
        result = _invoke(config_dir, "sync", "--today", "--month", "2024-03")
        assert result.exit_code == 2

    def test_no_events(self, config_dir, host):
        host.events = []
        result = _invoke(config_dir, "sync")
        assert result.exit_code == 0
        assert "No events" in result.output

    def test_failure_prints_error_and_steps(self, config_dir, host):
        host.events_status = 429
        result = _invoke(config_dir, "sync")

        assert result.exit_code == 1
        assert "RATE_LIMIT" in result.output
        assert "1. Wait a moment" in result.output

    def test_disconnected(self, config_dir, host):
        host.connected = False
        result = _invoke(config_dir, "sync")

        assert result.exit_code == 1
        assert "AUTH_ERROR" in result.output


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


class TestStatusCommand:
    def test_connected(self, config_dir):
        result = _invoke(config_dir, "status")
        assert result.exit_code == 0
        assert "connected" in result.output

    def test_not_connected(self, config_dir, host):
        host.connected = False
        result = _invoke(config_dir, "status")
        assert result.exit_code == 1
        assert "not connected" in result.output


# ---------------------------------------------------------------------------
# errors
# ---------------------------------------------------------------------------


class TestErrorsCommand:
    def test_empty(self, config_dir):
        result = _invoke(config_dir, "errors")
        assert result.exit_code == 0
        assert "No recorded errors" in result.output

    def test_lists_then_clears(self, config_dir, host):
        host.events_status = 503
        _invoke(config_dir, "sync")

        listed = _invoke(config_dir, "errors")
        assert listed.exit_code == 0
        assert "sync_events" in listed.output
        assert "SERVER_ERROR" in listed.output

        cleared = _invoke(config_dir, "errors", "--clear")
        assert cleared.exit_code == 0
        assert "Error log cleared" in cleared.output

        assert "No recorded errors" in _invoke(config_dir, "errors").output

from pathlib import Path

import pytest
from click.testing import CliRunner

from signal_trader import __version__
from signal_trader.config import RunMode, Settings
from signal_trader.main import cli
from signal_trader.resilience import JsonFileStateStore
from signal_trader.schemas import CircuitBreakerState, SystemState


def _use_settings(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, **overrides: object
) -> Settings:
    settings = Settings(  # type: ignore[arg-type]
        journal_dir=tmp_path / "journal",
        state_path=tmp_path / "state" / "system_state.json",
        **overrides,
    )
    monkeypatch.setattr("signal_trader.main.get_settings", lambda: settings)
    return settings


def test_cli_version() -> None:
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert f"signal-trader version {__version__}" in result.output


def test_cli_status_without_snapshot(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    settings = _use_settings(monkeypatch, tmp_path)
    result = CliRunner().invoke(cli, ["status"])
    assert result.exit_code == 0
    assert "[PAPER] Mode: Paper Trading" in result.output
    assert f"No snapshot at {settings.state_path}" in result.output


def test_cli_reset_errors_clears_saved_counters(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    settings = _use_settings(monkeypatch, tmp_path)
    store = JsonFileStateStore(settings.state_path)
    store.save(
        SystemState(
            error_counts={"ai": 4, "exchange": 1},
            circuit_breakers={"ai": CircuitBreakerState(is_open=True, failure_count=10)},
        )
    )

    status = CliRunner().invoke(cli, ["status"])
    assert "Errors [ai]: 4" in status.output
    assert "[OPEN] Circuit breaker ai" in status.output

    result = CliRunner().invoke(cli, ["reset-errors", "ai"])
    assert result.exit_code == 0
    assert "[OK] Error tracking reset for ai" in result.output

    saved = store.load()
    assert saved is not None
    assert saved.error_counts == {"exchange": 1}
    assert not saved.circuit_breakers["ai"].is_open
    assert not saved.is_running


def test_cli_reset_errors_rejects_unknown_service() -> None:
    result = CliRunner().invoke(cli, ["reset-errors", "database"])
    assert result.exit_code != 0


def test_cli_run_refuses_live_mode(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _use_settings(monkeypatch, tmp_path, mode=RunMode.LIVE)
    result = CliRunner().invoke(cli, ["run"])
    assert result.exit_code == 1


def test_cli_run_requires_openrouter_key(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _use_settings(monkeypatch, tmp_path, openrouter_api_key="")
    result = CliRunner().invoke(cli, ["run", "--signals", "openrouter"])
    assert result.exit_code == 1


def test_cli_check_lists_dependencies() -> None:
    result = CliRunner().invoke(cli, ["check"])
    assert result.exit_code == 0
    assert "[OK] pydantic" in result.output
    assert "[OK] binance" in result.output

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest
import yaml

from feed_agent import cli


def test_print_help_includes_subcommands(capsys: pytest.CaptureFixture[str]) -> None:
    cli._print_help()
    output = capsys.readouterr().out
    assert "calendar-feed-agent check" in output
    assert "calendar-feed-agent doctor" in output


def test_main_setup_subcommand_prints_setup_and_exits(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    calls = {}

    def fake_get_settings() -> SimpleNamespace:
        return SimpleNamespace(agent_id="calendar", http_port=4280, http_host="0.0.0.0")

    def fake_setup_banner(agent_id: str, port: int, *, for_startup: bool) -> None:
        calls["agent_id"] = agent_id
        calls["port"] = port
        calls["for_startup"] = for_startup

    monkeypatch.delenv("PORT", raising=False)
    monkeypatch.setattr("feed_agent.config.get_settings", fake_get_settings)
    monkeypatch.setattr(cli, "_print_setup_banner", fake_setup_banner)
    monkeypatch.setattr(cli.sys, "argv", ["calendar-feed-agent", "setup"])

    with pytest.raises(SystemExit) as exc:
        cli.main()

    assert exc.value.code == 0
    assert calls == {"agent_id": "calendar", "port": 4280, "for_startup": False}


def test_setup_banner_lists_feed_urls(capsys: pytest.CaptureFixture[str]) -> None:
    cli._print_setup_banner(agent_id="calendar", port=9000, for_startup=False)
    output = capsys.readouterr().out
    assert "http://localhost:9000/feeds/<secret>.ics" in output
    assert "POST http://localhost:9000/events" in output


def test_check_reports_valid_and_invalid_agents(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
    tmp_path: Path,
) -> None:
    (tmp_path / "good.yaml").write_text(
        yaml.safe_dump({"secrets": ["abc"], "expected_receive_period_in_days": 1}),
        encoding="utf-8",
    )
    (tmp_path / "bad.yaml").write_text(yaml.safe_dump({"secrets": ["a/b"]}), encoding="utf-8")
    monkeypatch.setenv("AGENT_OPTIONS_DIR", str(tmp_path))
    monkeypatch.setattr(cli.sys, "argv", ["calendar-feed-agent", "check"])

    with pytest.raises(SystemExit) as exc:
        cli.main()

    output = capsys.readouterr().out
    assert exc.value.code == 1
    assert "good: ok (events_to_show=40, secrets=1)" in output
    assert "bad: invalid" in output
    assert "  - secret may not contain a slash or dot" in output


def test_check_with_no_options(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_OPTIONS_DIR", str(tmp_path / "missing"))
    assert cli._run_check() == 1


def test_print_doctor_reports_runtime_info(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("DB_PATH", "/tmp/feed-doctor.db")
    monkeypatch.setattr(cli.shutil, "which", lambda _name: "/tmp/calendar-feed-agent")
    monkeypatch.setattr(cli.subprocess, "check_output", lambda *_args, **_kwargs: "pip X.Y.Z")

    cli._print_doctor()
    output = capsys.readouterr().out
    assert "Calendar Feed Agent Doctor" in output
    assert "PATH bin: /tmp/calendar-feed-agent" in output
    assert "pip X.Y.Z" in output
    assert "Database: /tmp/feed-doctor.db" in output


def test_main_serves_on_configured_host_and_port(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    calls = {}

    def fake_run(app: str, **kwargs) -> None:
        calls["app"] = app
        calls.update(kwargs)

    monkeypatch.setenv("PORT", "9100")
    monkeypatch.setenv("HOST", "127.0.0.1")
    monkeypatch.setattr("uvicorn.run", fake_run)
    monkeypatch.setattr(cli, "_print_setup_banner", lambda **kwargs: None)
    monkeypatch.setattr(cli.sys, "argv", ["calendar-feed-agent"])

    cli.main()

    assert calls["app"] == "feed_agent.main:app"
    assert calls["host"] == "127.0.0.1"
    assert calls["port"] == 9100

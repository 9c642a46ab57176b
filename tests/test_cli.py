from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from mahpy import __version__, cli
from mahpy.cli import app, register_ping_handlers
from mahpy.core.exceptions import TransportError
from mahpy.dispatcher import Dispatcher
from mahpy.events import decode
from mahpy.transport import TransportClient

runner = CliRunner()


def test_version_flag_prints_version() -> None:
    result = runner.invoke(app, ["--version"])

    assert result.exit_code == 0
    assert result.output.strip() == f"mahpy {__version__}"


def test_about_prints_server_version(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: dict[str, object] = {}

    async def fake_about(base_url: str, *, timeout: float) -> dict:
        seen.update(base_url=base_url, timeout=timeout)
        return {"version": "2.10.0"}

    monkeypatch.setattr(cli, "about", fake_about)

    result = runner.invoke(app, ["about", "http://bot.local:8080", "--timeout", "3"])

    assert result.exit_code == 0
    assert "version: 2.10.0" in result.output
    assert seen == {"base_url": "http://bot.local:8080", "timeout": 3.0}


def test_about_failure_exits_non_zero(monkeypatch: pytest.MonkeyPatch) -> None:
    async def failing_about(base_url: str, *, timeout: float) -> dict:
        raise TransportError("connection refused")

    monkeypatch.setattr(cli, "about", failing_about)

    result = runner.invoke(app, ["about", "http://bot.local:8080"])

    assert result.exit_code == 1
    assert "about failed" in result.output


def test_listen_requires_account_id(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = tmp_path / "mahpy.yml"
    config_path.write_text("server:\n  base_url: http://bot.local:8080\n", encoding="utf-8")
    monkeypatch.setattr(cli, "setup_logging", lambda config: None)

    result = runner.invoke(app, ["listen", "--config", str(config_path)])

    assert result.exit_code == 1
    assert "account_id" in result.output


def test_listen_reports_invalid_config(tmp_path: Path) -> None:
    config_path = tmp_path / "mahpy.yml"
    config_path.write_text("adapter: carrier-pigeon\n", encoding="utf-8")

    result = runner.invoke(app, ["listen", "--config", str(config_path)])

    assert result.exit_code == 1
    assert "adapter must be one of" in result.output


@pytest.mark.anyio
async def test_ping_handler_answers_friend_ping(
    fake_server, body_of, make_friend_message
) -> None:
    fake_server.on("POST", "/sendFriendMessage", {"code": 0, "msg": "success", "messageId": 9})
    dispatcher = Dispatcher()
    register_ping_handlers(dispatcher, TransportClient(fake_server.session()))

    await dispatcher.accept(decode(make_friend_message(1, "ping", sender_id=7)), source="s")
    await dispatcher.accept(decode(make_friend_message(2, "hello")), source="s")
    await dispatcher.wait_idle()

    sent = fake_server.calls("/sendFriendMessage")
    assert len(sent) == 1
    assert body_of(sent[0]) == {
        "messageChain": [{"type": "Plain", "text": "pong"}],
        "target": 7,
    }

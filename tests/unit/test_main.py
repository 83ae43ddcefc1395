"""
tests/unit/test_main.py — Entry Point Tests

Argument parsing, config bootstrap failures, and main() wiring the client
into the chat front-end. Logging setup and the REPL are patched out.
"""

from __future__ import annotations

import textwrap
from unittest.mock import AsyncMock, patch

import pytest

from clawchat.main import bootstrap, main, parse_args


class TestParseArgs:
    def test_defaults(self):
        args = parse_args([])
        assert args.gateway_url is None
        assert args.host is None
        assert args.session is None
        assert args.config is None
        assert args.log_level is None

    def test_flags(self):
        args = parse_args([
            "--gateway-url", "wss://gw:18789",
            "--host", "dash.example.com",
            "--session", "work",
            "--log-level", "DEBUG",
        ])
        assert args.gateway_url == "wss://gw:18789"
        assert args.host == "dash.example.com"
        assert args.session == "work"
        assert args.log_level == "DEBUG"

    def test_bad_log_level_rejected(self):
        with pytest.raises(SystemExit):
            parse_args(["--log-level", "LOUD"])


class TestBootstrap:
    def test_invalid_yaml_value_exits_1(self, tmp_path, capsys):
        cfg = tmp_path / "config.yaml"
        cfg.write_text(textwrap.dedent("""
            reconnect:
              max_attempts: -1
        """))
        with patch("clawchat.observability.logger.setup_logging"):
            with pytest.raises(SystemExit) as exc_info:
                bootstrap(parse_args(["--config", str(cfg)]))
        assert exc_info.value.code == 1
        assert "reconnect" in capsys.readouterr().err

    def test_cross_field_problem_exits_1(self, tmp_path, capsys):
        cfg = tmp_path / "config.yaml"
        cfg.write_text(textwrap.dedent("""
            gateway:
              remote_url: "ws://gw.example.com:18789"
        """))
        with patch("clawchat.observability.logger.setup_logging"):
            with pytest.raises(SystemExit) as exc_info:
                bootstrap(parse_args(["--config", str(cfg)]))
        assert exc_info.value.code == 1
        assert "OPENCLAW_TOKEN" in capsys.readouterr().err

    def test_log_level_flag_wins(self, tmp_path):
        with patch("clawchat.observability.logger.setup_logging") as setup:
            bootstrap(parse_args(["--config", str(tmp_path / "none.yaml"), "--log-level", "DEBUG"]))
        assert setup.call_args.kwargs["level"] == "DEBUG"


class TestMain:
    @pytest.mark.asyncio
    async def test_wires_client_into_chat(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        run = AsyncMock(return_value=0)
        with patch("clawchat.observability.logger.setup_logging"), \
             patch("clawchat.interfaces.chat_cli.run_chat_cli", run):
            code = await main([
                "--config", str(tmp_path / "none.yaml"),
                "--gateway-url", "ws://override:1",
                "--session", "work",
            ])

        assert code == 0
        client = run.call_args.args[0]
        assert client.url == "ws://override:1"
        assert run.call_args.kwargs == {"session_key": "work", "history_limit": 100}

    @pytest.mark.asyncio
    async def test_session_defaults_from_config(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        cfg = tmp_path / "config.yaml"
        cfg.write_text(textwrap.dedent("""
            gateway:
              session_key: "team"
              history_limit: 20
        """))
        run = AsyncMock(return_value=0)
        with patch("clawchat.observability.logger.setup_logging"), \
             patch("clawchat.interfaces.chat_cli.run_chat_cli", run):
            await main(["--config", str(cfg)])

        client = run.call_args.args[0]
        assert client.url == "ws://127.0.0.1:18789"
        assert run.call_args.kwargs == {"session_key": "team", "history_limit": 20}

"""Tests for the command-line entry point."""

import pytest
import yaml

from twitch_webhooks.main import build_parser, redact_secrets, run


def _write_config(tmp_path):
    path = tmp_path / "twitch-webhooks.yaml"
    path.write_text(
        yaml.dump(
            {
                "webhooks": {"hostname": "https://hooks.example.com", "client_id": "abc"},
                "subscriptions": [
                    {"type": "stream_changed", "params": {"user_id": "42"}},
                    {"type": "user_follows", "params": {"to_id": "7", "first": "1"}},
                ],
            }
        )
    )
    return path


def test_check_prints_callback_urls(tmp_path, capsys):
    run(["check", "-c", str(_write_config(tmp_path))])
    lines = capsys.readouterr().out.splitlines()
    assert lines == [
        "stream_changed https://hooks.example.com/webhooks/stream_changed/stream_changed?user_id=42",
        "user_follows https://hooks.example.com/webhooks/user_follows/user_follows?first=1&to_id=7",
    ]


def test_missing_config_exits_1(tmp_path, capsys):
    with pytest.raises(SystemExit) as exc_info:
        run(["check", "-c", str(tmp_path / "nope.yaml")])
    assert exc_info.value.code == 1
    assert "Config file not found" in capsys.readouterr().err


def test_invalid_config_exits_1(tmp_path, capsys):
    path = tmp_path / "bad.yaml"
    path.write_text(yaml.dump({"webhooks": {"hostname": "no-scheme", "client_id": "abc"}}))
    with pytest.raises(SystemExit):
        run(["check", "-c", str(path)])
    assert "Configuration error" in capsys.readouterr().err


def test_default_command_is_run():
    args = build_parser().parse_args([])
    assert args.command == "run"
    assert args.config == "twitch-webhooks.yaml"


def test_redact_secrets():
    event = redact_secrets(None, "info", {"event": "x", "secret": "s3cr3t", "webhook_id": "id"})
    assert event == {"event": "x", "secret": "***", "webhook_id": "id"}

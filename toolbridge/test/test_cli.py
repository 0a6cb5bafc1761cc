import json
import sys

from toolbridge.cli import main
from toolbridge.test.fakes import server


def run_cli(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["toolbridge", *argv])
    return main()


def test_list_servers(write_servers, config_path, capsys, monkeypatch):
    write_servers([server("fs", args=["-y", "fs-server"])])

    assert run_cli(monkeypatch, "--config", str(config_path), "list-servers") == 0

    data = json.loads(capsys.readouterr().out)
    assert data["servers"][0]["id"] == "fs"
    assert data["servers"][0]["args"] == ["-y", "fs-server"]


def test_validate_unknown_server(write_servers, config_path, capsys, monkeypatch):
    write_servers([])

    assert run_cli(monkeypatch, "--config", str(config_path), "validate", "ghost") == 1

    data = json.loads(capsys.readouterr().out)
    assert data == {"valid": False, "error": "Server ghost not found", "fixedCommand": ""}


def test_validate_reports_unreadable_config(config_path, capsys, monkeypatch):
    config_path.write_text("servers: [unclosed")

    assert run_cli(monkeypatch, "--config", str(config_path), "validate", "fs") == 1
    assert run_cli(monkeypatch, "--config", str(config_path), "fix", "fs") == 1
    assert run_cli(monkeypatch, "--config", str(config_path), "list-servers") == 1

    captured = capsys.readouterr()
    assert captured.out == ""
    assert "Failed to read server config" in captured.err


def test_call_rejects_bad_arguments(config_path, capsys, monkeypatch):
    assert run_cli(monkeypatch, "--config", str(config_path), "call", "search", "--args", "{bad") == 1
    assert "Invalid --args JSON" in capsys.readouterr().err


def test_status_with_no_servers(config_path, capsys, monkeypatch):
    assert run_cli(monkeypatch, "--config", str(config_path), "status") == 0

    data = json.loads(capsys.readouterr().out)
    assert data == {"totalServers": 0, "connectedServers": 0, "servers": []}


def test_no_command_prints_help(capsys, monkeypatch):
    assert run_cli(monkeypatch) == 1
    assert "usage: toolbridge" in capsys.readouterr().out

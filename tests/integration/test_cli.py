import json

import pytest

from toolwire import __version__
from toolwire.argument_parser import parse_args
from toolwire.cli.main import app_entrypoint


@pytest.fixture
def workspace(tmp_path, monkeypatch, stdio_config):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("TOOLWIRE_HOME", str(tmp_path / "home"))
    monkeypatch.setenv("TOOLWIRE_CONNECT_TIMEOUT", "10")
    raw = stdio_config("files")
    mcp_json = tmp_path / "mcp.json"
    mcp_json.write_text(json.dumps({"mcpServers": {"files": {"command": raw["command"], "args": raw["args"]}}}))
    return mcp_json


def run(*argv):
    return app_entrypoint(parse_args(list(argv)))


def test_version(capsys):
    assert run("--version") == 0
    assert f"toolwire version: {__version__}" in capsys.readouterr().out


def test_call_without_tool_is_rejected():
    assert run("--mode", "call") == 2


def test_status(workspace, capsys):
    assert run("--config", str(workspace)) == 0

    out = capsys.readouterr().out
    assert "files" in out
    assert "connected" in out


def test_tools(workspace, capsys):
    assert run("--config", str(workspace), "--mode", "tools") == 0

    assert "files:echo" in capsys.readouterr().out


def test_call(workspace, capsys):
    assert run("--config", str(workspace), "--mode", "call", "--tool", "echo", "--args", '{"text": "from the cli"}') == 0

    assert "files: from the cli" in capsys.readouterr().out


def test_failed_call(workspace, capsys):
    assert run("--config", str(workspace), "--mode", "call", "--tool", "fail") == 1

    assert "execution" in capsys.readouterr().out

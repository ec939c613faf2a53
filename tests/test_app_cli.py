from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from types import SimpleNamespace

import pytest

from envision.app import main


def _flat(text: str) -> str:
    return " ".join(text.split())


@pytest.fixture
def cli_home(tmp_path: Path, monkeypatch):
    for name in list(os.environ):
        if name.startswith("ENVISION_") or name == "NO_COLOR":
            monkeypatch.delenv(name)
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("ENVISION_SCOPE", "cli-test")
    monkeypatch.setattr("sys.stdin", SimpleNamespace(isatty=lambda: False))

    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    yield tmp_path
    for handler in root.handlers:
        if handler not in saved_handlers:
            handler.close()
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)


def test_init_creates_scoped_session_and_log(cli_home: Path, capsys) -> None:
    assert main(["session", "init"]) == 0

    session_file = cli_home / "data" / "envision" / "sessions" / "cli-test.json"
    assert session_file.exists()
    assert (cli_home / "data" / "envision" / "logs" / "envision.log").exists()
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "Session initialized" in captured.err

    assert main(["init"]) == 1
    assert "--force" in _flat(capsys.readouterr().err)
    assert main(["init", "--resume"]) == 0
    assert main(["init", "--force"]) == 0


def test_status_without_session_fails(cli_home: Path, capsys) -> None:
    assert main(["status"]) == 1
    assert "session init" in _flat(capsys.readouterr().err)


def test_set_emits_export_and_status_tracks_it(cli_home: Path, capsys, monkeypatch) -> None:
    main(["init"])
    capsys.readouterr()

    assert main(["set", "FOO", "bar baz"]) == 0
    captured = capsys.readouterr()
    assert captured.out == "export FOO='bar baz'\n"
    assert "Set FOO=bar baz" in captured.err

    # The shell hook evaluates the export.
    monkeypatch.setenv("FOO", "bar baz")
    assert main(["status"]) == 0
    assert "State: clean" in capsys.readouterr().err

    monkeypatch.setenv("FOO", "changed elsewhere")
    assert main(["status"]) == 1
    assert "State: dirty" in capsys.readouterr().err


def test_set_rejects_invalid_name(cli_home: Path, capsys) -> None:
    main(["init"])
    capsys.readouterr()

    assert main(["set", "1BAD", "x"]) == 1
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "Invalid variable name" in captured.err


def test_unset_missing_variable_is_a_warning(cli_home: Path, capsys) -> None:
    main(["init"])
    capsys.readouterr()

    assert main(["unset", "CLI_MISSING_VAR"]) == 0
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "is not set" in captured.err


def test_diff_json_reports_categories(cli_home: Path, capsys, monkeypatch) -> None:
    main(["init"])
    main(["set", "FOO", "bar"])
    monkeypatch.setenv("FOO", "bar")
    monkeypatch.setenv("SNEAKY", "1")
    capsys.readouterr()

    assert main(["diff", "--format", "json"]) == 0
    payload = json.loads(capsys.readouterr().out)
    categories = {e["name"]: e["category"] for e in payload["entries"]}
    assert categories == {"FOO": "tracked_set", "SNEAKY": "untracked"}
    assert payload["summary"]["dirty"] is True

    assert main(["diff", "--untracked", "--format", "csv"]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == "name,category,kind,old,new,target,source"
    assert [line.split(",")[0] for line in lines[1:]] == ["SNEAKY"]


def test_clear_needs_confirmation_or_force(cli_home: Path, capsys, monkeypatch) -> None:
    main(["init"])
    main(["set", "FOO", "bar"])
    monkeypatch.setenv("FOO", "bar")
    capsys.readouterr()

    assert main(["clear"]) == 1
    captured = capsys.readouterr()
    assert captured.out == ""
    assert "--force" in _flat(captured.err)

    assert main(["clear", "--force"]) == 0
    captured = capsys.readouterr()
    assert captured.out == "unset FOO\n"
    assert "Removed" in captured.err

    monkeypatch.delenv("FOO")
    assert main(["clear"]) == 0
    assert "Nothing to clear" in capsys.readouterr().err


def test_corrupt_session_exits_with_storage_code(cli_home: Path, capsys) -> None:
    session_file = cli_home / "data" / "envision" / "sessions" / "cli-test.json"
    session_file.parent.mkdir(parents=True)
    session_file.write_text("not json", encoding="utf-8")

    assert main(["status"]) == 3
    assert main(["diff"]) == 3
    assert main(["set", "FOO", "bar"]) == 3
    assert capsys.readouterr().out == ""


def test_snapshots_listing(cli_home: Path, capsys) -> None:
    main(["init"])
    main(["set", "FOO", "bar"])
    capsys.readouterr()

    assert main(["snapshots"]) == 0
    assert "auto-0001" in capsys.readouterr().err


def test_missing_explicit_config_is_a_usage_error(cli_home: Path, capsys) -> None:
    assert main(["--config", str(cli_home / "missing.yaml"), "status"]) == 2
    assert "invalid configuration" in capsys.readouterr().err


def test_missing_command_is_a_usage_error(cli_home: Path) -> None:
    with pytest.raises(SystemExit) as exc_info:
        main([])
    assert exc_info.value.code == 2

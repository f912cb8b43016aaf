import subprocess

import pytest

import script_runner
from script_runner import build_wrapped_script, uri_with_database


def test_uri_with_database_keeps_options():
    assert (
        uri_with_database("mongodb://u:p@host:27017/admin?authSource=admin", "app")
        == "mongodb://u:p@host:27017/app?authSource=admin"
    )
    assert uri_with_database("mongodb://host", "app") == "mongodb://host/app"


def test_build_wrapped_script_escapes_uri():
    wrapped = build_wrapped_script("mongodb://h/a`b", "db.x.find()")
    assert wrapped == "db = connect(`mongodb://h/a\\`b`);\ndb.x.find()"


def test_empty_input_is_rejected():
    with pytest.raises(ValueError):
        script_runner.execute_script_with_database("mongodb://h", "app", "")
    with pytest.raises(ValueError):
        script_runner.execute_script_with_database("mongodb://h", "", "db.x.find()")


def test_missing_shell(monkeypatch):
    monkeypatch.setattr(script_runner, "find_shell", lambda: None)
    assert script_runner.check_mongosh_available() == (False, "")
    with pytest.raises(RuntimeError, match="not found"):
        script_runner.execute_script_with_database("mongodb://h", "app", "db.x.find()")


def test_script_is_piped_through_stdin(monkeypatch):
    captured = {}

    def fake_run(args, **kwargs):
        captured["args"] = args
        captured["input"] = kwargs["input"]
        return subprocess.CompletedProcess(args, 0, stdout='[{"a": 1}]', stderr="")

    monkeypatch.setattr(script_runner, "find_shell", lambda: "/usr/bin/mongosh")
    monkeypatch.setattr(script_runner.subprocess, "run", fake_run)

    result = script_runner.execute_script_with_database("mongodb://h:1/?tls=true", "app", "db.x.find()")

    assert result == {"output": '[{"a": 1}]', "exitCode": 0, "error": ""}
    assert captured["args"] == ["/usr/bin/mongosh", "--nodb", "--quiet", "--norc"]
    assert captured["input"].startswith("db = connect(`mongodb://h:1/app?tls=true`);")
    assert "mongodb://" not in " ".join(captured["args"])


def test_timeout_is_reported(monkeypatch):
    def slow_run(args, **kwargs):
        raise subprocess.TimeoutExpired(args, kwargs["timeout"])

    monkeypatch.setattr(script_runner, "find_shell", lambda: "/usr/bin/mongosh")
    monkeypatch.setattr(script_runner.subprocess, "run", slow_run)

    result = script_runner.execute_script_with_database("mongodb://h", "app", "while(true){}", timeout=5)

    assert result["exitCode"] == -1
    assert result["error"] == "script execution timed out (5s limit)"
    assert result["output"] == result["error"]

"""Tests for the command line: exit codes, overrides, inspect, export."""

import json
import textwrap

import pytest

from surge.cli import (
    EXIT_INVALID_CONFIG,
    EXIT_OK,
    EXIT_SETUP_FAILED,
    EXIT_THRESHOLDS_FAILED,
    main,
)

SCRIPT = """
options = {{
    "vus": 1,
    "duration": "0.2s",
    "thresholds": {{"errors": ["rate<0.1"]}},
}}

profiles = {{
    "dev": {{"vus": 2, "duration": "0.2s"}},
}}


def setup(session):
    {setup}
    return {{"ok": {ok}}}


def default(session, data):
    session.check(data, {{"ok": lambda d: d["ok"]}})
    session.sleep(0.01)
"""


def write_script(tmp_path, *, ok: bool = True, setup: str = "pass") -> str:
    path = tmp_path / "load_test.py"
    path.write_text(
        textwrap.dedent(SCRIPT.format(ok=ok, setup=setup)), encoding="utf-8"
    )
    return str(path)


def run(*argv: str) -> int:
    return main(["run", *argv, "--tick", "0.02"])


class TestRunCommand:
    def test_passing_run(self, tmp_path, capsys):
        assert run(write_script(tmp_path)) == EXIT_OK
        out = capsys.readouterr().out
        assert "RESULT: PASSED" in out
        assert "[PASS] errors: rate<0.1" in out

    def test_threshold_failure(self, tmp_path, capsys):
        assert run(write_script(tmp_path, ok=False)) == EXIT_THRESHOLDS_FAILED
        captured = capsys.readouterr()
        assert "RESULT: FAILED" in captured.out
        assert "threshold failed: errors: rate<0.1" in captured.err

    def test_setup_failure(self, tmp_path, capsys):
        script = write_script(tmp_path, setup="raise RuntimeError('no login')")
        assert run(script) == EXIT_SETUP_FAILED
        assert "no login" in capsys.readouterr().err

    def test_unknown_profile(self, tmp_path, capsys):
        assert run(write_script(tmp_path), "--profile", "soak") == EXIT_INVALID_CONFIG
        assert "Unknown profile" in capsys.readouterr().err

    def test_profile_from_env(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("SURGE_PROFILE", "dev")
        assert main(["inspect", write_script(tmp_path)]) == EXIT_OK
        payload = json.loads(capsys.readouterr().out)
        assert payload["options"]["vus"] == 2

    def test_missing_script(self, tmp_path):
        assert run(str(tmp_path / "missing.py")) == EXIT_INVALID_CONFIG

    def test_summary_export(self, tmp_path):
        target = tmp_path / "summary.json"
        assert run(write_script(tmp_path), "--summary-export", str(target)) == EXIT_OK
        data = json.loads(target.read_text(encoding="utf-8"))
        assert data["passed"] is True
        assert data["metrics"]["errors"]["values"]["rate"] == 0.0


class TestInspectCommand:
    def test_resolved_options(self, tmp_path, capsys):
        assert main(["inspect", write_script(tmp_path)]) == EXIT_OK
        payload = json.loads(capsys.readouterr().out)
        assert payload["scenario"] == "load_test"
        assert payload["options"]["executor"] == "constant-vus"
        assert payload["options"]["gracefulStop"] == 30.0

    def test_stage_overrides(self, tmp_path, capsys):
        script = write_script(tmp_path)
        code = main(["inspect", script, "--stage", "1m:20", "--stage", "30s:0"])
        assert code == EXIT_OK
        payload = json.loads(capsys.readouterr().out)
        assert payload["options"]["executor"] == "ramping-vus"
        assert payload["options"]["stages"] == [
            {"duration": 60.0, "target": 20},
            {"duration": 30.0, "target": 0},
        ]
        assert payload["max_vus"] == 20
        assert payload["total_duration"] == "1m30s"
        assert payload["options"]["thresholds"]["errors"][0]["threshold"] == "rate<0.1"

    def test_vus_and_duration_overrides(self, tmp_path, capsys):
        script = write_script(tmp_path)
        assert main(["inspect", script, "--vus", "7", "--duration", "2m"]) == EXIT_OK
        options = json.loads(capsys.readouterr().out)["options"]
        assert options["vus"] == 7
        assert options["duration"] == 120.0

    @pytest.mark.parametrize("stage", ["30s", "30s:many", ":5"])
    def test_invalid_stage(self, tmp_path, stage):
        code = main(["inspect", write_script(tmp_path), "--stage", stage])
        assert code == EXIT_INVALID_CONFIG

from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

import pytest

from mas_orchestrator.__main__ import PrintEventSink, load_request, main

REPO_ROOT = Path(__file__).resolve().parents[1]


def test_load_request_prefers_inline_text(tmp_path: Path) -> None:
    assert load_request(request_file=None, request_text="  build a blog  ") == "build a blog"
    request_file = tmp_path / "request.md"
    request_file.write_text("build a shop\n", encoding="utf-8")
    assert load_request(request_file=request_file, request_text=None) == "build a shop\n"
    with pytest.raises(ValueError):
        load_request(request_file=None, request_text="   ")
    with pytest.raises(FileNotFoundError):
        load_request(request_file=tmp_path / "missing.md", request_text=None)


def test_main_rejects_missing_request_and_bare_resume() -> None:
    assert main([]) == 1
    assert main(["--resume"]) == 1


def test_print_sink_shows_user_events_only(capsys: pytest.CaptureFixture[str]) -> None:
    sink = PrintEventSink()
    sink.write({"stage": "QC1_SYNTAX_STYLE", "agent": "qc", "summary": "QC1 started", "visibility": "user"})
    sink.write({"stage": "QC1_SYNTAX_STYLE", "agent": "qc", "summary": "hidden", "visibility": "internal"})
    assert capsys.readouterr().out == "[QC1_SYNTAX_STYLE] qc: QC1 started\n"


def test_cli_module_reports_missing_request_file(tmp_path: Path) -> None:
    env = os.environ.copy()
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(REPO_ROOT / "src"), env.get("PYTHONPATH")]))

    result = subprocess.run(
        [sys.executable, "-m", "mas_orchestrator", "--request-file", str(tmp_path / "nope.md")],
        cwd=tmp_path,
        env=env,
        capture_output=True,
        text=True,
        check=False,
    )

    assert result.returncode == 1
    assert "Unable to load request input" in result.stderr

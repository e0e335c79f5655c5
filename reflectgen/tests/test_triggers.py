"""
Tests for the triggers and their visibility policies.
"""

from __future__ import annotations

import json
import logging
import threading
import time

import pytest
from click.testing import CliRunner
from watchfiles import Change

from reflectgen.pipeline.models import ReflectionRequest
from reflectgen.pipeline.orchestrator import ReflectionOrchestrator
from reflectgen.reflectgen import reflectgen
from reflectgen.triggers import ReflectionInputFilter, run_background, run_explicit, run_watch

OUTPUT = "typings/reflectgen_typegen"


@pytest.fixture
def failing_project(make_project, sample_app):
    return make_project({"app.py": sample_app("failing_app")})


class TestExplicit:
    def test_success(self, project, capsys):
        assert run_explicit(ReflectionRequest(project, timeout_ms=30_000)) == 0
        assert capsys.readouterr().err == ""
        assert (project.project_root / OUTPUT / "context.pyi").exists()

    def test_failure_is_reported(self, failing_project, capsys):
        assert run_explicit(ReflectionRequest(failing_project, timeout_ms=30_000)) == 1
        err = capsys.readouterr().err
        assert err.startswith("reflectgen: runner channel failed")
        assert "boom while importing" in err

    def test_extractor_diagnostics_are_warnings(self, project, caplog):
        (project.project_root / "broken.py").write_text("def broken(:\n")
        with caplog.at_level(logging.WARNING, logger="reflectgen"):
            assert run_explicit(ReflectionRequest(project, timeout_ms=30_000)) == 0

        assert any("broken.py:1" in r.getMessage() for r in caplog.records if r.levelno == logging.WARNING)


class TestBackground:
    def test_failure_is_silent(self, failing_project, capsys):
        assert run_background(failing_project) == 0
        assert capsys.readouterr().err == ""
        assert not (failing_project.project_root / OUTPUT).exists()

    def test_extractor_diagnostics_stay_below_warning(self, project, caplog):
        (project.project_root / "broken.py").write_text("def broken(:\n")
        with caplog.at_level(logging.DEBUG, logger="reflectgen"):
            assert run_background(project) == 0

        assert (project.project_root / OUTPUT / "context.pyi").exists()
        assert not [r for r in caplog.records if r.name.startswith("reflectgen") and r.levelno >= logging.WARNING]

    def test_unexpected_errors_are_swallowed(self, project):
        class Broken(ReflectionOrchestrator):
            def reflect(self, request):
                raise RuntimeError("unexpected")

        assert run_background(project, Broken()) == 0


class TestWatch:
    def test_failure_keeps_previous_types(self, project, sample_app, snapshot, caplog):
        run_watch(project, stop_event=threading.Event(), max_iterations=0)
        before = snapshot(project.project_root / OUTPUT)
        (project.project_root / "app.py").write_text(sample_app("failing_app"))

        stop = threading.Event()
        stop.set()
        with caplog.at_level(logging.WARNING, logger="reflectgen"):
            assert run_watch(project, stop_event=stop) == 0

        assert "keeping the previous types" in caplog.text
        assert snapshot(project.project_root / OUTPUT) == before

    def test_regenerates_on_change(self, project):
        stop = threading.Event()
        thread = threading.Thread(target=run_watch, args=(project,), kwargs={"stop_event": stop, "max_iterations": 1})
        thread.start()
        try:
            manifest = project.project_root / OUTPUT / "manifest.json"
            deadline = time.monotonic() + 30
            while not manifest.exists() and time.monotonic() < deadline:
                time.sleep(0.05)
            time.sleep(1)

            (project.project_root / "helpers.py").write_text(
                'from reflectgen import schema\nschema.add_to_context(lambda r: {"debug": True})\n'
            )
            thread.join(60)
        finally:
            stop.set()
            thread.join(10)

        assert "    debug: bool\n" in (project.project_root / OUTPUT / "context.pyi").read_text()

    def test_input_filter(self, project):
        root = project.project_root.resolve()
        watch_filter = ReflectionInputFilter(project, OUTPUT, ".reflectgen")

        assert watch_filter(Change.modified, str(root / "app.py"))
        assert watch_filter(Change.modified, str(root / "pyproject.toml"))
        assert not watch_filter(Change.modified, str(root / "README.md"))
        assert not watch_filter(Change.modified, str(root / OUTPUT / "context.pyi"))
        assert not watch_filter(Change.added, str(root / ".reflectgen" / "analysis.py"))
        assert not watch_filter(Change.added, str(root / "__pycache__" / "app.py"))


class TestCommandLine:
    """The reflectgen command."""

    @pytest.fixture(autouse=True)
    def restore_logging(self):
        logger = logging.getLogger("reflectgen")
        handlers, level = list(logger.handlers), logger.level
        yield
        logger.handlers[:] = handlers
        logger.setLevel(level)

    def test_generate(self, project):
        result = CliRunner().invoke(reflectgen, ["generate", "--project", str(project.project_root)])
        assert result.exit_code == 0, result.output
        assert (project.project_root / OUTPUT / "manifest.json").exists()

    def test_generate_full_mode(self, project):
        result = CliRunner().invoke(
            reflectgen, ["generate", "--project", str(project.project_root), "--mode", "full", "--force"]
        )
        assert result.exit_code == 0, result.output
        schema = json.loads((project.project_root / OUTPUT / "schema.json").read_text())
        assert schema["plugins"] == []

    def test_generate_failure(self, failing_project):
        result = CliRunner().invoke(reflectgen, ["generate", "--project", str(failing_project.project_root)])
        assert result.exit_code == 1
        assert "boom while importing" in result.output

    def test_generate_without_project(self, tmp_path):
        result = CliRunner().invoke(reflectgen, ["generate", "--project", str(tmp_path)])
        assert result.exit_code == 1
        assert "No pyproject.toml found" in result.output

    def test_postinstall_without_project(self, tmp_path):
        result = CliRunner().invoke(reflectgen, ["postinstall", "--project", str(tmp_path)])
        assert result.exit_code == 0
        assert result.output == ""

    def test_postinstall_failure(self, failing_project):
        result = CliRunner().invoke(reflectgen, ["postinstall", "--project", str(failing_project.project_root)])
        assert result.exit_code == 0
        assert result.output == ""

    def test_invalid_timeout(self, project):
        result = CliRunner().invoke(reflectgen, ["generate", "--project", str(project.project_root), "--timeout", "0"])
        assert result.exit_code == 2

"""
End-to-end tests for the reflection orchestrator. The runner channel
spawns real child processes; the extractor runs in a worker thread
unless a test asks for the process pool.
"""

from __future__ import annotations

import threading
import time

import portalocker
import pytest

from reflectgen.errors import (
    Channel,
    ExtractionFailure,
    PartialReflectionFailure,
    ReflectionAborted,
    ReflectionFailure,
    RunnerFailure,
    TimedOut,
)
from reflectgen.pipeline import orchestrator as orchestrator_module
from reflectgen.pipeline.models import ReflectionMode, ReflectionRequest
from reflectgen.pipeline.orchestrator import LOCK_FILE, ReflectionOrchestrator, single_flight
from reflectgen.pipeline.protocol import ErrorResponse, encode_message
from reflectgen.pipeline.runner import IsolatedRunner, RunnerState

OUTPUT = "typings/reflectgen_typegen"
STUBS = ["__init__.pyi", "backing_types.pyi", "context.pyi", "schema.json"]


class CountingRunner(IsolatedRunner):
    def __init__(self):
        super().__init__()
        self.calls = 0

    def run(self, layout, timeout_ms, mode=ReflectionMode.ARTIFACTS_ONLY):
        self.calls += 1
        return super().run(layout, timeout_ms, mode)


def request(layout, **kwargs) -> ReflectionRequest:
    kwargs.setdefault("timeout_ms", 30_000)
    return ReflectionRequest(layout, **kwargs)


def failing_extraction(layout_data, config_data):
    return encode_message(ErrorResponse("ExtractionFailure", "source root 'missing' does not exist"))


class TestReflect:
    """Successful runs and the artifact cache."""

    def test_writes_artifacts(self, project):
        manifest = ReflectionOrchestrator().reflect(request(project))

        output = project.project_root / OUTPUT
        assert sorted(p.name for p in output.iterdir()) == sorted([*STUBS, "manifest.json"])
        assert [f.path for f in manifest.files] == [f"{OUTPUT}/{name}" for name in STUBS]

        context = (output / "context.pyi").read_text()
        assert "class Context(TypedDict):\n    user_id: int\n    locale: str\n" in context
        backing = (output / "backing_types.pyi").read_text()
        assert 'Role = Literal["ADMIN", "MEMBER"]' in backing
        assert "    email: str | None\n" in backing

    def test_cache_hit_skips_both_channels(self, project):
        runner = CountingRunner()
        orchestrator = ReflectionOrchestrator(runner)
        first = orchestrator.reflect(request(project))
        context = project.project_root / OUTPUT / "context.pyi"
        mtime = context.stat().st_mtime_ns

        second = orchestrator.reflect(request(project))

        assert runner.calls == 1
        assert second.content_hash == first.content_hash
        assert context.stat().st_mtime_ns == mtime

    def test_source_change_misses_cache(self, project):
        runner = CountingRunner()
        orchestrator = ReflectionOrchestrator(runner)
        orchestrator.reflect(request(project))

        (project.project_root / "helpers.py").write_text(
            'from reflectgen import schema\nschema.add_to_context(lambda r: {"debug": True})\n'
        )
        orchestrator.reflect(request(project))

        assert runner.calls == 2
        assert "    debug: bool\n" in (project.project_root / OUTPUT / "context.pyi").read_text()

    def test_mode_is_part_of_the_key(self, project):
        runner = CountingRunner()
        orchestrator = ReflectionOrchestrator(runner)
        orchestrator.reflect(request(project))
        orchestrator.reflect(request(project, mode=ReflectionMode.FULL))
        assert runner.calls == 2

    def test_force_bypasses_cache(self, project, snapshot):
        runner = CountingRunner()
        orchestrator = ReflectionOrchestrator(runner)
        orchestrator.reflect(request(project))
        output = project.project_root / OUTPUT
        before = snapshot(output)
        mtimes = {name: (output / name).stat().st_mtime_ns for name in STUBS}

        orchestrator.reflect(request(project, force=True))

        assert runner.calls == 2
        after = snapshot(output)
        assert {name: after[name] for name in STUBS} == {name: before[name] for name in STUBS}
        assert {name: (output / name).stat().st_mtime_ns for name in STUBS} == mtimes

    def test_extractor_in_worker_process(self, make_project, sample_app):
        layout = make_project(
            {"app.py": sample_app("app")},
            pyproject='[project]\nname = "demo"\n\n[tool.reflectgen]\nextract_in_worker = true\n',
        )
        ReflectionOrchestrator().reflect(request(layout))
        assert "    user_id: int\n" in (layout.project_root / OUTPUT / "context.pyi").read_text()


class TestFailures:
    """A failed run never touches the previous artifacts."""

    @pytest.fixture
    def reflected(self, project, snapshot):
        ReflectionOrchestrator().reflect(request(project))
        return project, snapshot(project.project_root / OUTPUT)

    def test_runner_failure(self, reflected, sample_app, snapshot):
        project, before = reflected
        (project.project_root / "app.py").write_text(sample_app("failing_app"))

        with pytest.raises(PartialReflectionFailure) as exc_info:
            ReflectionOrchestrator().reflect(request(project))

        assert exc_info.value.channel is Channel.RUNNER
        assert isinstance(exc_info.value.cause, RunnerFailure)
        assert snapshot(project.project_root / OUTPUT) == before

    def test_timeout(self, reflected, sample_app, snapshot):
        project, before = reflected
        (project.project_root / "app.py").write_text(sample_app("slow_app"))

        with pytest.raises(PartialReflectionFailure) as exc_info:
            ReflectionOrchestrator().reflect(request(project, timeout_ms=500))

        assert exc_info.value.channel is Channel.RUNNER
        assert isinstance(exc_info.value.cause, TimedOut)
        assert snapshot(project.project_root / OUTPUT) == before

    def test_extractor_failure(self, reflected, snapshot, monkeypatch):
        project, before = reflected
        monkeypatch.setattr(orchestrator_module, "run_extraction", failing_extraction)

        with pytest.raises(PartialReflectionFailure) as exc_info:
            ReflectionOrchestrator().reflect(request(project, force=True))

        assert exc_info.value.channel is Channel.EXTRACTOR
        assert isinstance(exc_info.value.cause, ExtractionFailure)
        assert "source root 'missing'" in str(exc_info.value)
        assert snapshot(project.project_root / OUTPUT) == before

    def test_both_channels_fail(self, reflected, sample_app, snapshot, monkeypatch):
        project, before = reflected
        (project.project_root / "app.py").write_text(sample_app("failing_app"))
        monkeypatch.setattr(orchestrator_module, "run_extraction", failing_extraction)

        with pytest.raises(ReflectionFailure) as exc_info:
            ReflectionOrchestrator().reflect(request(project))

        assert isinstance(exc_info.value.runner_error, RunnerFailure)
        assert isinstance(exc_info.value.extractor_error, ExtractionFailure)
        assert snapshot(project.project_root / OUTPUT) == before

    def test_abort(self, make_project, sample_app, snapshot):
        layout = make_project({"app.py": sample_app("slow_app")})
        orchestrator = ReflectionOrchestrator()
        errors = []

        def reflect():
            try:
                orchestrator.reflect(request(layout, timeout_ms=None))
            except ReflectionAborted as e:
                errors.append(e)

        thread = threading.Thread(target=reflect)
        thread.start()
        deadline = time.monotonic() + 20
        while orchestrator.runner.state is not RunnerState.RUNNING and time.monotonic() < deadline:
            time.sleep(0.01)
        orchestrator.abort()
        thread.join(20)

        assert not thread.is_alive()
        assert len(errors) == 1
        assert snapshot(layout.project_root / OUTPUT) == {}


class TestSingleFlight:
    """Serialization of runs of the same project."""

    def test_lock_held_by_another_process(self, tmp_path, monkeypatch):
        monkeypatch.setattr(orchestrator_module, "LOCK_TIMEOUT_SECONDS", 0.2)
        cache_dir = tmp_path / ".reflectgen"
        cache_dir.mkdir()

        with portalocker.Lock(str(cache_dir / LOCK_FILE), mode="a", timeout=1):
            with pytest.raises(ReflectionAborted):
                with single_flight(tmp_path, cache_dir):
                    pass

    def test_threads_take_turns(self, tmp_path):
        cache_dir = tmp_path / ".reflectgen"
        active = []
        overlaps = []

        def hold():
            with single_flight(tmp_path, cache_dir):
                if active:
                    overlaps.append(True)
                active.append(True)
                time.sleep(0.05)
                active.pop()

        threads = [threading.Thread(target=hold) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        assert overlaps == []
        assert (cache_dir / LOCK_FILE).exists()

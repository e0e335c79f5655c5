"""
Tests for typed startup plans.
"""

from __future__ import annotations

import sys

import pytest

from reflectgen.pipeline.runner.startup import (
    STAGE_RUNTIME,
    EmitReflection,
    EntryDescriptor,
    ExtendImportPath,
    LoadUserModule,
    SetMode,
    StartListener,
    StartupPlanBuilder,
    plan_for,
)
from reflectgen.runtime import App, RuntimeMode


class TestStartupPlan:
    """Plans built from entry descriptors."""

    def test_reflection_plan(self):
        plan = plan_for(EntryDescriptor(project_root="/p", entrypoint_path="/p/app.py", include_plugins=True))
        assert [type(step) for step in plan.steps] == [SetMode, ExtendImportPath, LoadUserModule, EmitReflection]
        assert plan.steps[0] == SetMode(RuntimeMode.REFLECTION)
        assert plan.steps[-1] == EmitReflection(include_plugins=True)

    def test_runtime_plan(self):
        plan = plan_for(EntryDescriptor(project_root="/p", entrypoint_path="/p/src/app.py", stage=STAGE_RUNTIME))
        assert [type(step) for step in plan.steps] == [SetMode, ExtendImportPath, LoadUserModule, StartListener]
        assert plan.steps[1] == ExtendImportPath(("/p", "/p/src"))

    def test_builder_requires_mode_first(self):
        with pytest.raises(ValueError):
            StartupPlanBuilder().load_user_module("app.py").set_mode(RuntimeMode.REFLECTION).build()

    def test_builder_requires_user_module(self):
        with pytest.raises(ValueError):
            StartupPlanBuilder().set_mode(RuntimeMode.REFLECTION).emit_reflection().build()

    def test_descriptor_rejects_unknown_stage(self):
        with pytest.raises(ValueError):
            EntryDescriptor.from_dict({"project_root": "/p", "entrypoint_path": "/p/app.py", "stage": "deploy"})

    def test_execute(self, tmp_path, monkeypatch):
        monkeypatch.setattr(sys, "argv", list(sys.argv))
        monkeypatch.setattr(sys, "path", list(sys.path))
        entry = tmp_path / "app.py"
        entry.write_text("x = 1\n")

        app = App()
        app.schema.enum_type("Role", ["ADMIN"])
        app.on_start(lambda a: pytest.fail("listener ran during reflection"))
        plan = plan_for(EntryDescriptor(project_root=str(tmp_path), entrypoint_path=str(entry)))
        state = plan.execute(app)

        assert app.mode is RuntimeMode.REFLECTION
        assert state.reflection == {"types": [{"kind": "enum", "name": "Role", "values": ["ADMIN"]}], "plugins": []}
        assert str(tmp_path) in sys.path

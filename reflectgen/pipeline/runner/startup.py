"""
Typed startup plans for the user's application.

An EntryDescriptor says what to start and how; StartupPlanBuilder turns
it into an ordered sequence of steps that the child process executes.
"""

from __future__ import annotations

import runpy
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ...runtime import App, RuntimeMode

STAGE_REFLECTION = "reflection"
STAGE_RUNTIME = "runtime"


@dataclass(frozen=True)
class EntryDescriptor:
    """What the child process should start.

    Attributes:
        project_root: Project root, also the child's working directory
        entrypoint_path: The user's application module
        stage: "reflection" to emit the API surface, "runtime" to serve
        include_plugins: Report registered plugins along with the schema
        import_paths: Extra sys.path entries, searched before site-packages
    """

    project_root: str
    entrypoint_path: str
    stage: str = STAGE_REFLECTION
    include_plugins: bool = False
    import_paths: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "project_root": self.project_root,
            "entrypoint_path": self.entrypoint_path,
            "stage": self.stage,
            "include_plugins": self.include_plugins,
            "import_paths": list(self.import_paths),
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> EntryDescriptor:
        stage = d.get("stage", STAGE_REFLECTION)
        if stage not in (STAGE_REFLECTION, STAGE_RUNTIME):
            raise ValueError(f"Unknown stage {stage!r}")
        return EntryDescriptor(
            project_root=str(d["project_root"]),
            entrypoint_path=str(d["entrypoint_path"]),
            stage=stage,
            include_plugins=bool(d.get("include_plugins", False)),
            import_paths=tuple(str(p) for p in d.get("import_paths", [])),
        )


@dataclass
class StartupState:
    """Mutable state threaded through the steps of a plan."""

    app: App
    reflection: dict | None = None


class StartupStep(ABC):
    @abstractmethod
    def run(self, state: StartupState) -> None:
        """Apply this step."""


@dataclass(frozen=True)
class SetMode(StartupStep):
    mode: RuntimeMode

    def run(self, state: StartupState) -> None:
        state.app.set_mode(self.mode)


@dataclass(frozen=True)
class ExtendImportPath(StartupStep):
    paths: tuple[str, ...]

    def run(self, state: StartupState) -> None:
        for path in reversed(self.paths):
            if path not in sys.path:
                sys.path.insert(0, path)


@dataclass(frozen=True)
class LoadUserModule(StartupStep):
    """Execute the entrypoint as __main__."""

    path: str

    def run(self, state: StartupState) -> None:
        sys.argv = [self.path]
        runpy.run_path(self.path, run_name="__main__")


@dataclass(frozen=True)
class StartListener(StartupStep):
    def run(self, state: StartupState) -> None:
        if not state.app.started:
            state.app.start()


@dataclass(frozen=True)
class EmitReflection(StartupStep):
    include_plugins: bool = False

    def run(self, state: StartupState) -> None:
        state.reflection = state.app.reflect(include_plugins=self.include_plugins)


@dataclass(frozen=True)
class StartupPlan:
    steps: tuple[StartupStep, ...] = field(default_factory=tuple)

    def execute(self, app: App) -> StartupState:
        state = StartupState(app=app)
        for step in self.steps:
            step.run(state)
        return state


class StartupPlanBuilder:
    """Assembles a StartupPlan step by step."""

    def __init__(self):
        self._steps: list[StartupStep] = []

    def set_mode(self, mode: RuntimeMode) -> StartupPlanBuilder:
        self._steps.append(SetMode(mode))
        return self

    def extend_import_path(self, *paths: str) -> StartupPlanBuilder:
        if paths:
            self._steps.append(ExtendImportPath(tuple(paths)))
        return self

    def load_user_module(self, path: str) -> StartupPlanBuilder:
        self._steps.append(LoadUserModule(path))
        return self

    def start_listener(self) -> StartupPlanBuilder:
        self._steps.append(StartListener())
        return self

    def emit_reflection(self, include_plugins: bool = False) -> StartupPlanBuilder:
        self._steps.append(EmitReflection(include_plugins))
        return self

    def build(self) -> StartupPlan:
        if not any(isinstance(s, LoadUserModule) for s in self._steps):
            raise ValueError("A startup plan must load the user module")
        if not isinstance(self._steps[0], SetMode):
            raise ValueError("A startup plan must set the mode first")
        return StartupPlan(tuple(self._steps))


def plan_for(descriptor: EntryDescriptor) -> StartupPlan:
    """Build the plan matching a descriptor's stage."""
    entry_dir = str(Path(descriptor.entrypoint_path).parent)
    import_paths = [descriptor.project_root, *descriptor.import_paths]
    if entry_dir not in import_paths:
        import_paths.append(entry_dir)

    builder = StartupPlanBuilder()
    if descriptor.stage == STAGE_REFLECTION:
        builder.set_mode(RuntimeMode.REFLECTION)
    else:
        builder.set_mode(RuntimeMode.RUNTIME)
    builder.extend_import_path(*import_paths).load_user_module(descriptor.entrypoint_path)

    if descriptor.stage == STAGE_REFLECTION:
        builder.emit_reflection(include_plugins=descriptor.include_plugins)
    else:
        builder.start_listener()
    return builder.build()

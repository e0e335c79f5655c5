"""
Project layout resolution.

A Layout is the immutable description of the project being reflected.
It is resolved once per invocation and only read afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .config import DEFAULT_ENTRYPOINTS, load_config
from .errors import LayoutNotFound

logger = logging.getLogger(__name__)

COMPILER_CONFIG_NAME = "pyproject.toml"

# Lock file -> package manager, checked in order
_LOCK_FILES = [
    ("uv.lock", "uv"),
    ("poetry.lock", "poetry"),
    ("pdm.lock", "pdm"),
    ("Pipfile.lock", "pipenv"),
]


@dataclass(frozen=True)
class Layout:
    """Resolved project description."""

    project_root: Path
    entrypoint_path: Path
    compiler_config_path: Path
    package_manager_kind: str = "pip"

    def project_path(self, *parts: str) -> Path:
        return self.project_root.joinpath(*parts)

    def to_data(self) -> dict:
        """Plain data form, used to cross process boundaries."""
        return {
            "project_root": str(self.project_root),
            "entrypoint_path": str(self.entrypoint_path),
            "compiler_config_path": str(self.compiler_config_path),
            "package_manager_kind": self.package_manager_kind,
        }

    @staticmethod
    def from_data(data: dict) -> Layout:
        return Layout(
            project_root=Path(data["project_root"]),
            entrypoint_path=Path(data["entrypoint_path"]),
            compiler_config_path=Path(data["compiler_config_path"]),
            package_manager_kind=data.get("package_manager_kind", "pip"),
        )


def find_project_root(start: Path) -> Path:
    """Walk up from start to the nearest directory holding pyproject.toml."""
    start = start.resolve()
    for candidate in [start, *start.parents]:
        if (candidate / COMPILER_CONFIG_NAME).is_file():
            return candidate
    raise LayoutNotFound(f"No {COMPILER_CONFIG_NAME} found in {start} or any parent directory")


def detect_package_manager(project_root: Path) -> str:
    for lock_file, kind in _LOCK_FILES:
        if (project_root / lock_file).exists():
            return kind
    return "pip"


def resolve_layout(start: Path, entrypoint: str | Path | None = None) -> Layout:
    """Resolve the project layout.

    Args:
        start: Directory to start searching from
        entrypoint: Optional explicit entrypoint (relative to the project root)

    Returns:
        The resolved Layout

    Raises:
        LayoutNotFound: If no project root or entrypoint exists
        CompilerConfigInvalid: If pyproject.toml is malformed
    """
    project_root = find_project_root(start)
    config_path = project_root / COMPILER_CONFIG_NAME
    config = load_config(config_path)

    if entrypoint is not None:
        candidates = [str(entrypoint)]
    elif config.entrypoint:
        candidates = [config.entrypoint]
    else:
        candidates = DEFAULT_ENTRYPOINTS

    for candidate in candidates:
        path = (project_root / candidate).resolve()
        if path.is_file():
            layout = Layout(
                project_root=project_root,
                entrypoint_path=path,
                compiler_config_path=config_path,
                package_manager_kind=detect_package_manager(project_root),
            )
            logger.debug("resolved layout %s", layout)
            return layout

    raise LayoutNotFound(f"No entrypoint found in {project_root} (looked for: {', '.join(candidates)})")

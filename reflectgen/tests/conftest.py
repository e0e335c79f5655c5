"""
Shared fixtures: small throwaway projects built under tmp_path.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from reflectgen.layout import Layout

FIXTURES = Path(__file__).parent / "fixtures"

PYPROJECT = """\
[project]
name = "demo"
version = "0.1.0"

[tool.reflectgen]
extract_in_worker = false
"""

ProjectFactory = Callable[..., Layout]


def app_source(name: str) -> str:
    """Source of one of the sample applications in fixtures/."""
    return (FIXTURES / f"{name}.py").read_text(encoding="utf-8")


def write_project(root: Path, files: dict[str, str], pyproject: str = PYPROJECT) -> Layout:
    """Write files into root and return its layout (entrypoint app.py)."""
    root.mkdir(parents=True, exist_ok=True)
    (root / "pyproject.toml").write_text(pyproject, encoding="utf-8")
    for relpath, content in files.items():
        path = root / relpath
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return Layout(
        project_root=root,
        entrypoint_path=root / "app.py",
        compiler_config_path=root / "pyproject.toml",
    )


@pytest.fixture
def make_project(tmp_path: Path) -> ProjectFactory:
    """Factory writing a project under tmp_path/<name>.

    Without files, the project holds the sample application.
    """

    def factory(files: dict[str, str] | None = None, pyproject: str = PYPROJECT, name: str = "project") -> Layout:
        return write_project(tmp_path / name, {"app.py": app_source("app")} if files is None else files, pyproject)

    return factory


@pytest.fixture
def project(make_project: ProjectFactory) -> Layout:
    return make_project()


@pytest.fixture
def sample_app() -> Callable[[str], str]:
    return app_source


def _snapshot(directory: Path) -> dict[str, bytes]:
    if not directory.exists():
        return {}
    return {p.relative_to(directory).as_posix(): p.read_bytes() for p in sorted(directory.rglob("*")) if p.is_file()}


@pytest.fixture
def snapshot() -> Callable[[Path], dict[str, bytes]]:
    """Contents of every file under a directory, by relative path."""
    return _snapshot

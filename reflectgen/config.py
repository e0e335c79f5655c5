"""
Configuration for the reflection pipeline.

Read from the [tool.reflectgen] table of the project's pyproject.toml,
which also plays the role of the compiler config: its raw bytes are part
of the artifact cache key.
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from .errors import CompilerConfigInvalid

DEFAULT_ENTRYPOINTS = ["app.py", "main.py", "src/app.py", "src/main.py"]

DEFAULT_CONTEXT_ENTRY_POINTS = [
    "reflectgen.schema.add_to_context",
    "reflectgen.app.schema.add_to_context",
    "reflectgen.runtime.schema.add_to_context",
    "reflectgen.runtime.app.schema.add_to_context",
]

DEFAULT_EXCLUDE = [
    ".git/**",
    ".venv/**",
    "venv/**",
    "env/**",
    "**/site-packages/**",
    "**/__pycache__/**",
    "build/**",
    "dist/**",
    ".tox/**",
    ".nox/**",
    "node_modules/**",
]


@dataclass
class ReflectionConfig:
    """Configuration options for reflection and type generation."""

    # Entrypoint module, relative to the project root (empty = auto-detect)
    entrypoint: str = ""

    # Directories scanned by the static extractor, relative to the project root
    source_roots: list[str] = field(default_factory=lambda: ["."])

    # Glob patterns selecting source files within each source root
    include: list[str] = field(default_factory=lambda: ["**/*.py"])

    # Glob patterns excluded from the source file set
    exclude: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDE))

    # Where generated stubs and their manifest are written
    output_dir: str = "typings/reflectgen_typegen"

    # Where the incremental analysis cache and lock file live
    cache_dir: str = ".reflectgen"

    # Recognized context extension entry points, as "<receiver>.<method>"
    context_entry_points: list[str] = field(default_factory=lambda: list(DEFAULT_CONTEXT_ENTRY_POINTS))

    # Run the extractor in a separate process (False = worker thread)
    extract_in_worker: bool = True

    # Runner timeouts for the non-interactive triggers
    background_timeout_ms: int = 10_000
    watch_timeout_ms: int = 30_000

    @staticmethod
    def from_dict(d: dict) -> ReflectionConfig:
        """Create a config from a dictionary, checking value types."""
        config = ReflectionConfig()
        for k, v in d.items():
            if not hasattr(config, k):
                continue
            expected = type(getattr(config, k))
            if expected is list:
                if not isinstance(v, list) or not all(isinstance(item, str) for item in v):
                    raise CompilerConfigInvalid(f"[tool.reflectgen] {k} must be a list of strings")
            elif expected is int:
                if isinstance(v, bool) or not isinstance(v, int):
                    raise CompilerConfigInvalid(f"[tool.reflectgen] {k} must be an integer")
            elif not isinstance(v, expected):
                raise CompilerConfigInvalid(f"[tool.reflectgen] {k} must be of type {expected.__name__}")
            setattr(config, k, v)

        for dotted in config.context_entry_points:
            receiver, _, method = dotted.strip().rpartition(".")
            if not receiver or not method:
                raise CompilerConfigInvalid(
                    f"[tool.reflectgen] context_entry_points entry {dotted!r} must look like 'module.receiver.method'"
                )
        return config

    def to_dict(self) -> dict:
        """Convert config to a dictionary."""
        return {
            "entrypoint": self.entrypoint,
            "source_roots": self.source_roots,
            "include": self.include,
            "exclude": self.exclude,
            "output_dir": self.output_dir,
            "cache_dir": self.cache_dir,
            "context_entry_points": self.context_entry_points,
            "extract_in_worker": self.extract_in_worker,
            "background_timeout_ms": self.background_timeout_ms,
            "watch_timeout_ms": self.watch_timeout_ms,
        }

    def output_path(self, project_root: Path) -> Path:
        return project_root / self.output_dir

    def cache_path(self, project_root: Path) -> Path:
        return project_root / self.cache_dir


def read_config_bytes(path: Path) -> bytes:
    """Read the raw compiler config contents.

    Raises:
        CompilerConfigInvalid: If the file cannot be read
    """
    try:
        return path.read_bytes()
    except OSError as e:
        raise CompilerConfigInvalid(f"Cannot read {path}: {e}") from e


def load_config(path: Path) -> ReflectionConfig:
    """Load ReflectionConfig from a pyproject.toml file.

    Args:
        path: Path to pyproject.toml

    Returns:
        The parsed configuration (defaults when the table is absent)

    Raises:
        CompilerConfigInvalid: If the file is unreadable or malformed
    """
    raw = read_config_bytes(path)
    try:
        data = tomllib.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, tomllib.TOMLDecodeError) as e:
        raise CompilerConfigInvalid(f"{path} is not valid TOML: {e}") from e

    table = data.get("tool", {}).get("reflectgen", {})
    if not isinstance(table, dict):
        raise CompilerConfigInvalid(f"[tool.reflectgen] in {path} must be a table")
    return ReflectionConfig.from_dict(table)

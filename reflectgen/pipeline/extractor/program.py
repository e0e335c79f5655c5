"""
The project's compilation unit: the ordered set of source files the
extractor analyses, plus an on-disk cache of per-file results so
unchanged files are not re-analysed between runs.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from fnmatch import fnmatch
from functools import cached_property
from pathlib import Path

from ...config import ReflectionConfig
from ...errors import ExtractionFailure
from ...log import trace
from ...utils import sha256_bytes, sha256_text
from ..models import ContextTypeSignature
from ..writer.atomic_writer import AtomicWriter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceFile:
    """One file of the compilation unit."""

    path: Path
    relpath: str  # posix, relative to the project root
    module: str
    is_package: bool
    content: bytes

    @cached_property
    def digest(self) -> str:
        return sha256_bytes(self.content)


def _matches(relpath: str, patterns: list[str]) -> bool:
    for pattern in patterns:
        if fnmatch(relpath, pattern):
            return True
        # "**/x/**" should also match "x/..." at the top level
        if pattern.startswith("**/") and fnmatch(relpath, pattern[3:]):
            return True
    return False


def module_name(relative_to_root: Path) -> tuple[str, bool]:
    """Dotted module name for a path relative to its source root."""
    parts = list(relative_to_root.with_suffix("").parts)
    is_package = parts[-1] == "__init__"
    if is_package:
        parts = parts[:-1]
    return ".".join(parts), is_package


class ProjectProgram:
    """Discovers and reads the project's source files."""

    def __init__(self, project_root: Path, config: ReflectionConfig):
        self.project_root = project_root
        self.config = config

    @cached_property
    def files(self) -> list[SourceFile]:
        """Source files in deterministic (sorted relative path) order.

        Raises:
            ExtractionFailure: If a source root is missing or a file is unreadable
        """
        exclude = [
            *self.config.exclude,
            f"{self.config.output_dir.strip('/')}/**",
            f"{self.config.cache_dir.strip('/')}/**",
        ]
        found: dict[str, SourceFile] = {}
        for root_name in self.config.source_roots:
            root = (self.project_root / root_name).resolve()
            if not root.is_dir():
                raise ExtractionFailure(f"Source root {root_name!r} is not a directory")
            for pattern in self.config.include:
                for path in root.glob(pattern):
                    if not path.is_file() or path.suffix != ".py":
                        continue
                    try:
                        relpath = path.resolve().relative_to(self.project_root.resolve()).as_posix()
                    except ValueError:
                        continue
                    if relpath in found or _matches(relpath, exclude):
                        continue
                    module, is_package = module_name(path.resolve().relative_to(root))
                    try:
                        content = path.read_bytes()
                    except OSError as e:
                        raise ExtractionFailure(f"Cannot read {relpath}: {e}") from e
                    found[relpath] = SourceFile(path, relpath, module, is_package, content)

        files = [found[k] for k in sorted(found)]
        trace(logger, "program has %d source file(s)", len(files))
        return files

    def fingerprint(self) -> str:
        """Order-independent hash over (path, content hash) of every file."""
        lines = sorted(f"{f.relpath}:{f.digest}" for f in self.files)
        return sha256_text("\n".join(lines))


class AnalysisCache:
    """Per-file extraction results keyed by content hash.

    The salt captures everything besides file content that affects
    results (the entry point allow-list); a salt change empties the cache.
    """

    VERSION = 2

    def __init__(self, path: Path, salt: str = ""):
        self.path = path
        self.salt = salt
        self._entries: dict[str, dict] = {}
        self._dirty = False
        self._load()

    def _load(self) -> None:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return
        if isinstance(data, dict) and data.get("version") == self.VERSION and data.get("salt") == self.salt:
            entries = data.get("files")
            if isinstance(entries, dict):
                self._entries = entries

    def get(self, source: SourceFile) -> tuple[list[ContextTypeSignature], str | None] | None:
        entry = self._entries.get(source.relpath)
        if not entry or entry.get("hash") != source.digest:
            return None
        try:
            signatures = [ContextTypeSignature.from_dict(s) for s in entry["signatures"]]
        except (KeyError, TypeError, ValueError):
            return None
        return signatures, entry.get("diagnostic")

    def put(self, source: SourceFile, signatures: list[ContextTypeSignature], diagnostic: str | None) -> None:
        self._entries[source.relpath] = {
            "hash": source.digest,
            "signatures": [s.to_dict() for s in signatures],
            "diagnostic": diagnostic,
        }
        self._dirty = True

    def prune(self, keep: set[str]) -> None:
        for relpath in list(self._entries):
            if relpath not in keep:
                del self._entries[relpath]
                self._dirty = True

    def save(self) -> None:
        if not self._dirty:
            return
        payload = {"version": self.VERSION, "salt": self.salt, "files": self._entries}
        AtomicWriter().write(self.path, json.dumps(payload, indent=1, sort_keys=True) + "\n", "json")
        self._dirty = False

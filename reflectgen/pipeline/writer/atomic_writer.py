"""
Atomic file writer for generated artifacts.

Ensures that file writes are atomic so an interrupted run never leaves
a stub file, the analysis cache or the manifest sidecar half written.
"""

from __future__ import annotations

import ast
import json
import logging
import os
import tempfile
from collections.abc import Callable
from pathlib import Path

from ...errors import ArtifactWriteFailure
from ...log import trace

logger = logging.getLogger(__name__)


def language_for(path: Path) -> str:
    """Validation language for a target path, by suffix."""
    return {".pyi": "pyi", ".py": "python", ".json": "json"}.get(path.suffix, "")


class AtomicWriter:
    """Handles atomic file writes with validation.

    Uses a two-phase commit approach:
    1. Write to a temporary file in the same directory
    2. Validate the content
    3. Atomically replace the target file

    write_many() extends this to a set of files: every file is staged and
    validated before the first one is replaced, and files already replaced
    are restored if a later replace fails.
    """

    def __init__(
        self,
        validate_python: Callable[[str], None] | None = None,
        validate_json: Callable[[str], None] | None = None,
    ):
        """Initialize the atomic writer.

        Args:
            validate_python: Optional validation function for Python and stub code
            validate_json: Optional validation function for JSON documents
        """
        self._validate_python = validate_python or self._default_validate_python
        self._validate_json = validate_json or self._default_validate_json

    def write(
        self,
        path: Path,
        content: str,
        language: str,
        validate: bool = True,
    ) -> None:
        """Write content to file atomically.

        Args:
            path: Target file path
            content: Content to write
            language: Language for validation ("python", "pyi" or "json")
            validate: Whether to validate before finalizing

        Raises:
            ArtifactWriteFailure: If validation or a file operation fails
        """
        if validate:
            self._validate_content(content, language, path)
        try:
            temp_path = self._stage(path, content)
        except OSError as e:
            raise ArtifactWriteFailure(f"Cannot write {path}: {e}") from e
        try:
            temp_path.replace(path)
        except OSError as e:
            self._discard(temp_path)
            raise ArtifactWriteFailure(f"Cannot write {path}: {e}") from e

    def write_if_changed(
        self,
        path: Path,
        content: str,
        language: str,
        validate: bool = True,
    ) -> bool:
        """Write content only if it differs from what is on disk.

        Leaving identical files alone keeps their mtime, so type checkers
        and file watchers do not see spurious changes.

        Returns:
            True if the file was written, False if it was already up to date

        Raises:
            ArtifactWriteFailure: If validation or a file operation fails
        """
        if self._unchanged(path, content):
            trace(logger, "unchanged: %s", path)
            return False
        self.write(path, content, language, validate)
        return True

    def write_many(
        self,
        files: dict[Path, str],
        validate: bool = True,
        before_replace: Callable[[], None] | None = None,
    ) -> list[Path]:
        """Write a set of files as one unit.

        Args:
            files: Target path -> content
            validate: Whether to validate every file before replacing any
            before_replace: Called once after staging, before the first target
                is replaced; not called when nothing changed

        Returns:
            The paths that were actually replaced (identical files are skipped)

        Raises:
            ArtifactWriteFailure: If validation or a file operation fails; no
                target is left modified in that case
        """
        if validate:
            for path, content in files.items():
                self._validate_content(content, language_for(path), path)

        changed = {path: content for path, content in files.items() if not self._unchanged(path, content)}
        if not changed:
            trace(logger, "all %d file(s) unchanged", len(files))
            return []

        # Phase 1: stage everything next to its target
        staged: dict[Path, Path] = {}
        try:
            for path, content in changed.items():
                staged[path] = self._stage(path, content)
        except OSError as e:
            for temp_path in staged.values():
                self._discard(temp_path)
            raise ArtifactWriteFailure(f"Cannot stage {path}: {e}") from e

        if before_replace is not None:
            try:
                before_replace()
            except Exception:
                for temp_path in staged.values():
                    self._discard(temp_path)
                raise

        # Phase 2: keep what is being replaced, then replace
        backups: dict[Path, bytes | None] = {}
        replaced: list[Path] = []
        try:
            for path, temp_path in staged.items():
                backups[path] = path.read_bytes() if path.exists() else None
                os.replace(temp_path, path)
                replaced.append(path)
        except OSError as e:
            self._rollback(replaced, backups)
            for temp_path in staged.values():
                self._discard(temp_path)
            raise ArtifactWriteFailure(f"Cannot replace {path}: {e}") from e

        for path in replaced:
            trace(logger, "wrote %s", path)
        return replaced

    def _stage(self, path: Path, content: str) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)

        # Same directory ensures atomic rename on the same filesystem
        temp_fd, temp_path_str = tempfile.mkstemp(
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
        )
        temp_path = Path(temp_path_str)
        try:
            with open(temp_fd, "wb") as f:
                f.write(content.encode("utf-8"))
        except OSError:
            self._discard(temp_path)
            raise
        return temp_path

    def _rollback(self, replaced: list[Path], backups: dict[Path, bytes | None]) -> None:
        for path in reversed(replaced):
            previous = backups.get(path)
            try:
                if previous is None:
                    path.unlink(missing_ok=True)
                else:
                    path.write_bytes(previous)
            except OSError as e:
                logger.error("Could not restore %s after a failed write: %s", path, e)

    @staticmethod
    def _discard(temp_path: Path) -> None:
        try:
            temp_path.unlink(missing_ok=True)
        except OSError:
            pass  # Best effort cleanup

    @staticmethod
    def _unchanged(path: Path, content: str) -> bool:
        try:
            return path.read_bytes() == content.encode("utf-8")
        except OSError:
            return False

    def _validate_content(self, content: str, language: str, path: Path | None = None) -> None:
        """Validate content based on language.

        Raises:
            ArtifactWriteFailure: If validation fails
        """
        try:
            if language in ("python", "pyi"):
                self._validate_python(content)
            elif language == "json":
                self._validate_json(content)
        except ArtifactWriteFailure as e:
            raise ArtifactWriteFailure(f"{path}: {e}" if path else str(e)) from e

    def _default_validate_python(self, content: str) -> None:
        try:
            ast.parse(content)
        except SyntaxError as e:
            raise ArtifactWriteFailure(f"Generated Python code is not valid: {e}") from e

    def _default_validate_json(self, content: str) -> None:
        try:
            json.loads(content)
        except ValueError as e:
            raise ArtifactWriteFailure(f"Generated JSON is not valid: {e}") from e

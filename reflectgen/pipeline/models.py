"""
Data model shared by the pipeline stages.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..layout import Layout
from .types import ANY, TypeExpr, type_from_dict


class ReflectionMode(str, Enum):
    """What the runtime channel reports."""

    ARTIFACTS_ONLY = "artifacts"  # Schema only
    FULL = "full"  # Schema and the plugins the app registered


@dataclass(frozen=True)
class ReflectionRequest:
    """One pipeline run.

    Attributes:
        layout: The project to reflect
        mode: What the runtime channel reports
        timeout_ms: Runner timeout in milliseconds, None for unbounded
        force: Regenerate even when the cache says artifacts are current
        diagnostic_level: Log level of per-file extractor diagnostics
    """

    layout: Layout
    mode: ReflectionMode = ReflectionMode.ARTIFACTS_ONLY
    timeout_ms: int | None = None
    force: bool = False
    diagnostic_level: int = logging.WARNING


@dataclass(frozen=True)
class TypeImport:
    """A type referenced by an extracted type expression."""

    name: str
    module: str
    is_exported: bool = True

    def to_dict(self) -> dict:
        return {"name": self.name, "module": self.module, "is_exported": self.is_exported}

    @staticmethod
    def from_dict(d: dict) -> TypeImport:
        return TypeImport(name=d["name"], module=d["module"], is_exported=d.get("is_exported", True))


@dataclass(frozen=True)
class ContextTypeSignature:
    """The inferred return type of one context extension call site."""

    source_file: str
    line: int
    column: int
    type_expression: str
    shape: TypeExpr = ANY
    type_imports: tuple[TypeImport, ...] = ()

    def to_dict(self) -> dict:
        return {
            "source_file": self.source_file,
            "line": self.line,
            "column": self.column,
            "type_expression": self.type_expression,
            "shape": self.shape.to_dict(),
            "type_imports": [ti.to_dict() for ti in self.type_imports],
        }

    @staticmethod
    def from_dict(d: dict) -> ContextTypeSignature:
        return ContextTypeSignature(
            source_file=d["source_file"],
            line=d["line"],
            column=d["column"],
            type_expression=d["type_expression"],
            shape=type_from_dict(d["shape"]),
            type_imports=tuple(TypeImport.from_dict(ti) for ti in d.get("type_imports", [])),
        )


@dataclass(frozen=True)
class SchemaReflection:
    """The API surface reported by the runtime channel, kept as received."""

    payload: dict[str, Any]

    @property
    def types(self) -> list[dict]:
        return list(self.payload.get("types", []))

    @property
    def plugins(self) -> list[str]:
        return list(self.payload.get("plugins", []))


@dataclass(frozen=True)
class ManifestFile:
    path: str  # posix, relative to the project root
    hash: str


@dataclass(frozen=True)
class ArtifactManifest:
    """Record of a committed artifact set."""

    content_hash: str
    generated_at: str
    files: tuple[ManifestFile, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "content_hash": self.content_hash,
            "generated_at": self.generated_at,
            "files": [{"path": f.path, "hash": f.hash} for f in self.files],
        }

    @staticmethod
    def from_dict(d: dict) -> ArtifactManifest:
        return ArtifactManifest(
            content_hash=d["content_hash"],
            generated_at=d["generated_at"],
            files=tuple(ManifestFile(path=f["path"], hash=f["hash"]) for f in d["files"]),
        )

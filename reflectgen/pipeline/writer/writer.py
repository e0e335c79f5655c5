"""
Artifact writer: renders the generated stub package and commits it.

The stub package holds:
    context.pyi        the Context TypedDict merged from every context extension
    backing_types.pyi  TypedDicts and aliases for the schema's types
    __init__.pyi       re-exports of the above
    schema.json        the schema reflection, as reported by the runtime
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

import jinja2

from ...log import trace
from ...utils import is_identifier, sha256_bytes, sha256_text, snake_to_pascal_case
from ..models import ArtifactManifest, ContextTypeSignature, ManifestFile, SchemaReflection, TypeImport
from ..types import GenericType, ObjectType, TypeExpr, UnionType, union_of
from .atomic_writer import AtomicWriter

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent.parent.parent / "templates"

CONTEXT_FILE = "context.pyi"
BACKING_TYPES_FILE = "backing_types.pyi"
INIT_FILE = "__init__.pyi"
SCHEMA_FILE = "schema.json"

CONTEXT_TYPE_NAME = "Context"

# Schema scalar -> Python type
SCALAR_MAP = {
    "ID": "str",
    "String": "str",
    "Int": "int",
    "Float": "float",
    "Boolean": "bool",
}


class CacheInvalidator(Protocol):
    def invalidate(self) -> None: ...


@dataclass
class TypedDictField:
    key: str
    annotation: str
    required: bool = True

    @property
    def rendered(self) -> str:
        return self.annotation if self.required else f"NotRequired[{self.annotation}]"


@dataclass
class TypedDictModel:
    name: str
    fields: list[TypedDictField] = field(default_factory=list)
    description: str | None = None

    @property
    def functional(self) -> bool:
        """Keys that are not identifiers need the functional syntax."""
        return not all(is_identifier(f.key) for f in self.fields)


@dataclass
class AliasModel:
    name: str
    value: str


@dataclass
class _MergedField:
    types: list[TypeExpr] = field(default_factory=list)
    required: bool = False


def _py_str(value: str) -> str:
    # JSON string literals are valid Python string literals
    return json.dumps(value)


class ArtifactWriter:
    """Renders and atomically writes the generated stub package."""

    def __init__(
        self,
        output_dir: Path,
        project_root: Path,
        cache: CacheInvalidator | None = None,
        atomic_writer: AtomicWriter | None = None,
    ):
        """Initialize the writer.

        Args:
            output_dir: Directory receiving the stub package
            project_root: Root that manifest paths are relative to
            cache: Invalidated before any file is replaced
            atomic_writer: Writer used for the commit
        """
        self.output_dir = output_dir
        self.project_root = project_root
        self.cache = cache
        self.atomic_writer = atomic_writer or AtomicWriter()
        self._setup_templates()

    def _setup_templates(self) -> None:
        """Set up Jinja2 templates."""
        self.jinja_env = jinja2.Environment(
            loader=jinja2.FileSystemLoader(str(TEMPLATE_DIR)),
            lstrip_blocks=True,
            trim_blocks=True,
            keep_trailing_newline=True,
        )
        self.jinja_env.filters["py_str"] = _py_str
        self.context_template = self.jinja_env.get_template("context.pyi.jinja2")
        self.backing_types_template = self.jinja_env.get_template("backing_types.pyi.jinja2")
        self.init_template = self.jinja_env.get_template("__init__.pyi.jinja2")

    def render(self, reflection: SchemaReflection, signatures: list[ContextTypeSignature]) -> dict[str, str]:
        """Render every artifact.

        Returns:
            File name -> content, always the same for the same inputs
        """
        context_imports, context_types = self._context_models(signatures)
        backing_imports, backing_types = self._backing_models(reflection)
        exports = sorted(t.name for t in backing_types if t.name != CONTEXT_TYPE_NAME)
        return {
            CONTEXT_FILE: self.context_template.render(imports=context_imports, typed_dicts=context_types),
            BACKING_TYPES_FILE: self.backing_types_template.render(
                imports=backing_imports,
                aliases=[t for t in backing_types if isinstance(t, AliasModel)],
                typed_dicts=[t for t in backing_types if isinstance(t, TypedDictModel)],
            ),
            INIT_FILE: self.init_template.render(context=CONTEXT_TYPE_NAME, backing_types=exports),
            SCHEMA_FILE: json.dumps(reflection.payload, indent=2, ensure_ascii=False) + "\n",
        }

    def write(self, reflection: SchemaReflection, signatures: list[ContextTypeSignature]) -> ArtifactManifest:
        """Render and commit the artifact set.

        Returns:
            The manifest describing the files now on disk

        Raises:
            ArtifactWriteFailure: If the files could not be written; no file
                is left modified in that case
        """
        rendered = self.render(reflection, signatures)
        files = {self.output_dir / name: content for name, content in rendered.items()}
        replaced = self.atomic_writer.write_many(files, before_replace=self._invalidate_cache)
        logger.info("Wrote %d of %d artifact(s) to %s", len(replaced), len(files), self.output_dir)
        return self.manifest_for(files)

    def manifest_for(self, files: dict[Path, str]) -> ArtifactManifest:
        entries = tuple(
            sorted(
                (ManifestFile(path=self._relative(path), hash=sha256_bytes(content.encode("utf-8"))) for path, content in files.items()),
                key=lambda f: f.path,
            )
        )
        content_hash = sha256_text("\n".join(f"{f.path}:{f.hash}" for f in entries))
        generated_at = datetime.now(UTC).isoformat(timespec="seconds")
        return ArtifactManifest(content_hash=content_hash, generated_at=generated_at, files=entries)

    def _relative(self, path: Path) -> str:
        try:
            return path.resolve().relative_to(self.project_root.resolve()).as_posix()
        except ValueError:
            return path.as_posix()

    def _invalidate_cache(self) -> None:
        if self.cache is not None:
            self.cache.invalidate()

    # Context

    def _context_models(self, signatures: list[ContextTypeSignature]) -> tuple[list[str], list[TypedDictModel]]:
        merged: dict[str, _MergedField] = {}
        imports: dict[tuple[str, str], TypeImport] = {}
        for signature in signatures:
            where = f"{signature.source_file}:{signature.line}:{signature.column}"
            members = _object_members(signature.shape)
            if members is None:
                logger.warning(
                    "%s: context extension returns %s, expected a dict with string keys; skipped",
                    where,
                    signature.type_expression,
                )
                continue
            for name, (types, required) in _merge_members(members).items():
                entry = merged.setdefault(name, _MergedField())
                entry.types.extend(types)
                entry.required = entry.required or required
            for type_import in signature.type_imports:
                imports.setdefault((type_import.module, type_import.name), type_import)

        models: list[TypedDictModel] = []
        names: set[str] = {CONTEXT_TYPE_NAME}
        context = TypedDictModel(name=CONTEXT_TYPE_NAME)
        for key, entry in merged.items():
            annotation = self._annotation(union_of(entry.types), [key], models, names)
            context.fields.append(TypedDictField(key=key, annotation=annotation, required=entry.required))
        models.append(context)
        return _import_lines(imports.values()), models

    def _annotation(self, t: TypeExpr, path: list[str], models: list[TypedDictModel], names: set[str]) -> str:
        """Python annotation for t, emitting nested TypedDicts into models."""
        if isinstance(t, ObjectType):
            if not t.fields:
                return "dict[str, Any]"
            name = _unique_name(CONTEXT_TYPE_NAME + "".join(snake_to_pascal_case(p) for p in path), names)
            model = TypedDictModel(name=name)
            for key, value in t.fields:
                model.fields.append(TypedDictField(key=key, annotation=self._annotation(value, [*path, key], models, names)))
            models.append(model)
            return name
        if isinstance(t, GenericType):
            if not t.args:
                return t.origin
            args = ", ".join(self._annotation(a, path, models, names) for a in t.args)
            return f"{t.origin}[{args}]"
        if isinstance(t, UnionType):
            return " | ".join(self._annotation(m, path, models, names) for m in t.members)
        return t.render()

    # Backing types

    def _backing_models(self, reflection: SchemaReflection) -> tuple[list[str], list[AliasModel | TypedDictModel]]:
        declared: dict[str, dict] = {}
        for type_def in reflection.types:
            name = type_def.get("name") if isinstance(type_def, dict) else None
            if not isinstance(name, str) or not is_identifier(name):
                logger.warning("Schema type %r has no usable name; skipped", name)
                continue
            declared[name] = type_def

        imports: set[str] = set()
        models: list[AliasModel | TypedDictModel] = []
        for name, type_def in declared.items():
            kind = type_def.get("kind")
            if kind == "enum":
                values = [v for v in type_def.get("values", []) if isinstance(v, str)]
                value = f"Literal[{', '.join(_py_str(v) for v in values)}]" if values else "str"
                models.append(AliasModel(name=name, value=value))
            elif kind == "scalar":
                models.append(AliasModel(name=name, value=self._backing(type_def.get("backing"), imports)))
            elif kind in ("object", "input") and type_def.get("backing"):
                models.append(AliasModel(name=name, value=self._backing(type_def["backing"], imports)))
            elif kind in ("object", "input"):
                model = TypedDictModel(name=name, description=type_def.get("description"))
                for field_def in type_def.get("fields", []):
                    key = field_def.get("name") if isinstance(field_def, dict) else None
                    if not isinstance(key, str):
                        logger.warning("Schema type %s has a field without a name; skipped", name)
                        continue
                    model.fields.append(TypedDictField(key=key, annotation=self._field_annotation(field_def, declared, imports)))
                models.append(model)
            else:
                logger.warning("Schema type %s has unknown kind %r; skipped", name, kind)
        return sorted(imports), models

    def _field_annotation(self, field_def: dict, declared: dict[str, dict], imports: set[str]) -> str:
        type_name = field_def.get("type")
        if type_name in SCALAR_MAP:
            annotation = SCALAR_MAP[type_name]
        elif type_name in declared:
            target = declared[type_name]
            if target.get("kind") == "scalar":
                annotation = self._backing(target.get("backing"), imports)
            else:
                annotation = type_name
        else:
            trace(logger, "field type %r is not declared, using Any", type_name)
            annotation = "Any"
        if field_def.get("list"):
            annotation = f"list[{annotation}]"
        if field_def.get("nullable"):
            annotation = f"{annotation} | None"
        return annotation

    @staticmethod
    def _backing(backing: Any, imports: set[str]) -> str:
        if not isinstance(backing, str) or not backing:
            return "Any"
        if backing in SCALAR_MAP:
            return SCALAR_MAP[backing]
        module, _, name = backing.rpartition(".")
        if not all(is_identifier(part) for part in backing.split(".")):
            logger.warning("Backing type %r is not a dotted name, using Any", backing)
            return "Any"
        if module:
            imports.add(f"import {module}")
        return backing if module else name


def _object_members(shape: TypeExpr) -> list[ObjectType] | None:
    """The object shapes a signature contributes, or None if it is not an object."""
    if isinstance(shape, ObjectType):
        return [shape]
    if isinstance(shape, UnionType) and all(isinstance(m, ObjectType) for m in shape.members):
        return list(shape.members)
    return None


def _merge_members(members: list[ObjectType]) -> dict[str, tuple[list[TypeExpr], bool]]:
    """Merge a union of object shapes field-wise.

    A field is required only when every member has it.
    """
    merged: dict[str, tuple[list[TypeExpr], bool]] = {}
    for member in members:
        for key, value in member.fields:
            types, _ = merged.get(key, ([], False))
            merged[key] = ([*types, value], False)
    for key, (types, _) in merged.items():
        merged[key] = (types, all(key in dict(m.fields) for m in members))
    return merged


def _unique_name(name: str, taken: set[str]) -> str:
    candidate = name
    suffix = 2
    while candidate in taken:
        candidate = f"{name}{suffix}"
        suffix += 1
    taken.add(candidate)
    return candidate


def _import_lines(type_imports) -> list[str]:
    lines: set[str] = set()
    for type_import in type_imports:
        if not type_import.is_exported:
            logger.warning("%s is not exported by %s; not imported in %s", type_import.name, type_import.module, CONTEXT_FILE)
            continue
        if type_import.module:
            lines.add(f"from {type_import.module} import {type_import.name}")
        else:
            lines.add(f"import {type_import.name}")
    return sorted(lines)

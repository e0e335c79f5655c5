"""
Schema builder used by applications to declare their API surface.

Declarations are plain data; reflect() returns the serializable form
consumed by the backing types generator.
"""

from __future__ import annotations

import inspect
from collections.abc import Callable
from dataclasses import dataclass, field as dataclass_field
from typing import Any

BUILTIN_SCALARS = ("ID", "String", "Int", "Float", "Boolean")


@dataclass(frozen=True)
class FieldDef:
    """A field of an object or input type."""

    type: str
    nullable: bool = False
    list: bool = False
    description: str | None = None

    def to_dict(self, name: str) -> dict:
        d: dict[str, Any] = {
            "name": name,
            "type": self.type,
            "nullable": self.nullable,
            "list": self.list,
        }
        if self.description:
            d["description"] = self.description
        return d


@dataclass
class TypeDef:
    kind: str  # "object", "input", "enum", "scalar"
    name: str
    description: str | None = None
    fields: dict[str, FieldDef] = dataclass_field(default_factory=dict)
    values: list[str] = dataclass_field(default_factory=list)
    backing: str | None = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"kind": self.kind, "name": self.name}
        if self.description:
            d["description"] = self.description
        if self.kind in ("object", "input"):
            d["fields"] = [f.to_dict(name) for name, f in self.fields.items()]
            if self.backing:
                d["backing"] = self.backing
        elif self.kind == "enum":
            d["values"] = list(self.values)
        elif self.kind == "scalar":
            d["backing"] = self.backing
        return d


ContextContributor = Callable[[Any], Any]


class Schema:
    """Collects type declarations and context contributors."""

    def __init__(self):
        self._types: dict[str, TypeDef] = {}
        self._context_contributors: list[ContextContributor] = []

    @staticmethod
    def field(type: str, nullable: bool = False, list: bool = False, description: str | None = None) -> FieldDef:
        return FieldDef(type=type, nullable=nullable, list=list, description=description)

    def object_type(
        self,
        name: str,
        fields: dict[str, FieldDef | str],
        description: str | None = None,
        backing: str | None = None,
    ) -> TypeDef:
        """Declare an object type.

        Args:
            name: Type name
            fields: Field types by field name
            description: Rendered as the docstring of the generated type
            backing: Dotted path of the class that implements the type, e.g.
                ``myapp.models.Account``; the generated type aliases it
        """
        return self._add(TypeDef("object", name, description, self._normalize_fields(fields), backing=backing))

    def input_type(
        self,
        name: str,
        fields: dict[str, FieldDef | str],
        description: str | None = None,
        backing: str | None = None,
    ) -> TypeDef:
        return self._add(TypeDef("input", name, description, self._normalize_fields(fields), backing=backing))

    def enum_type(self, name: str, values: list[str], description: str | None = None) -> TypeDef:
        return self._add(TypeDef("enum", name, description, values=[str(v) for v in values]))

    def scalar_type(self, name: str, backing: str | None = None, description: str | None = None) -> TypeDef:
        if name in BUILTIN_SCALARS:
            raise ValueError(f"{name} is a builtin scalar")
        return self._add(TypeDef("scalar", name, description, backing=backing))

    def add_to_context(self, contributor: ContextContributor) -> ContextContributor:
        """Register a callable whose returned mapping is merged into each request context.

        Can be used as a decorator.
        """
        if not callable(contributor):
            raise TypeError("add_to_context expects a callable")
        self._context_contributors.append(contributor)
        return contributor

    async def create_context(self, request: Any) -> dict[str, Any]:
        context: dict[str, Any] = {}
        for contributor in self._context_contributors:
            contribution = contributor(request)
            if inspect.isawaitable(contribution):
                contribution = await contribution
            if contribution:
                context.update(contribution)
        return context

    def reflect(self) -> dict:
        """Serializable API surface, in declaration order."""
        return {"types": [t.to_dict() for t in self._types.values()]}

    def _add(self, type_def: TypeDef) -> TypeDef:
        if type_def.name in self._types:
            raise ValueError(f"Type {type_def.name} is already declared")
        self._types[type_def.name] = type_def
        return type_def

    @staticmethod
    def _normalize_fields(fields: dict[str, FieldDef | str]) -> dict[str, FieldDef]:
        return {name: f if isinstance(f, FieldDef) else FieldDef(type=f) for name, f in fields.items()}

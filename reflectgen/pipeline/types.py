"""
Structural type model produced by static inference.

Nodes are immutable and hashable so unions can be deduplicated, and
serialize to tagged dicts for the incremental analysis cache and the
worker channel.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class TypeExpr:
    """Base class for inferred types."""

    def render(self) -> str:
        raise NotImplementedError

    def to_dict(self) -> dict:
        raise NotImplementedError

    def __str__(self) -> str:
        return self.render()


@dataclass(frozen=True)
class PrimitiveType(TypeExpr):
    """A builtin scalar: int, float, str, bool, bytes, complex, None or Any."""

    name: str

    def render(self) -> str:
        return self.name

    def to_dict(self) -> dict:
        return {"kind": "primitive", "name": self.name}


@dataclass(frozen=True)
class NamedType(TypeExpr):
    """A type referenced by its source text, e.g. an annotation or a class."""

    text: str

    def render(self) -> str:
        return self.text

    def to_dict(self) -> dict:
        return {"kind": "named", "text": self.text}


@dataclass(frozen=True)
class ObjectType(TypeExpr):
    """A mapping with known string keys (a dict display)."""

    fields: tuple[tuple[str, TypeExpr], ...] = ()

    def render(self) -> str:
        if not self.fields:
            return "{}"
        inner = " ".join(f"{name}: {t.render()};" for name, t in self.fields)
        return f"{{ {inner} }}"

    def to_dict(self) -> dict:
        return {"kind": "object", "fields": [[name, t.to_dict()] for name, t in self.fields]}


@dataclass(frozen=True)
class GenericType(TypeExpr):
    """A parametrized container: list[T], set[T], dict[K, V], tuple[...]."""

    origin: str
    args: tuple[TypeExpr, ...] = ()

    def render(self) -> str:
        if not self.args:
            return self.origin
        return f"{self.origin}[{', '.join(a.render() for a in self.args)}]"

    def to_dict(self) -> dict:
        return {"kind": "generic", "origin": self.origin, "args": [a.to_dict() for a in self.args]}


@dataclass(frozen=True)
class UnionType(TypeExpr):
    members: tuple[TypeExpr, ...]

    def render(self) -> str:
        return " | ".join(m.render() for m in self.members)

    def to_dict(self) -> dict:
        return {"kind": "union", "members": [m.to_dict() for m in self.members]}


ANY = PrimitiveType("Any")
NONE = PrimitiveType("None")
INT = PrimitiveType("int")
FLOAT = PrimitiveType("float")
STR = PrimitiveType("str")
BOOL = PrimitiveType("bool")
BYTES = PrimitiveType("bytes")
COMPLEX = PrimitiveType("complex")


def union_of(types: list[TypeExpr]) -> TypeExpr:
    """Union preserving first-seen order; flattens nested unions.

    Any absorbs every other member.
    """
    members: list[TypeExpr] = []
    for t in types:
        for m in t.members if isinstance(t, UnionType) else (t,):
            if m not in members:
                members.append(m)
    if not members:
        return ANY
    if ANY in members:
        return ANY
    if len(members) == 1:
        return members[0]
    return UnionType(tuple(members))


def type_from_dict(d: dict[str, Any]) -> TypeExpr:
    kind = d.get("kind")
    if kind == "primitive":
        return PrimitiveType(d["name"])
    if kind == "named":
        return NamedType(d["text"])
    if kind == "object":
        return ObjectType(tuple((name, type_from_dict(t)) for name, t in d["fields"]))
    if kind == "generic":
        return GenericType(d["origin"], tuple(type_from_dict(a) for a in d["args"]))
    if kind == "union":
        return UnionType(tuple(type_from_dict(m) for m in d["members"]))
    raise ValueError(f"Unknown type kind: {kind!r}")

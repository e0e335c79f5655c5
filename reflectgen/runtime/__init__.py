"""
Runtime framework for applications whose types reflectgen generates.

    from reflectgen import app, schema

    schema.object_type("User", {"id": "ID", "name": schema.field("String", nullable=True)})
    schema.add_to_context(lambda request: {"user_id": 1})

    app.start()
"""

from __future__ import annotations

from .app import App, RuntimeMode, app, schema
from .schema import FieldDef, Schema, TypeDef

__all__ = [
    "App",
    "RuntimeMode",
    "Schema",
    "FieldDef",
    "TypeDef",
    "app",
    "schema",
]

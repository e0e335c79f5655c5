"""reflectgen

Reflection-driven type generation for Python web applications.
Runs the application in an isolated process to capture its schema,
statically infers the types its context extensions contribute, and
writes typed stubs atomically behind a content-addressed cache.
"""

__version__ = "0.1.0"

from .errors import ReflectionError
from .layout import Layout, resolve_layout
from .pipeline import (
    ArtifactManifest,
    ReflectionMode,
    ReflectionOrchestrator,
    ReflectionRequest,
)
from .runtime import App, RuntimeMode, Schema, app, schema

__all__ = [
    "app",
    "schema",
    "App",
    "Schema",
    "RuntimeMode",
    "Layout",
    "resolve_layout",
    "ReflectionOrchestrator",
    "ReflectionRequest",
    "ReflectionMode",
    "ArtifactManifest",
    "ReflectionError",
]

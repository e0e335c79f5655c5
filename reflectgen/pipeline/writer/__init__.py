"""
Artifact writer: jinja2-rendered stubs committed with an atomic two-phase write.
"""

from __future__ import annotations

from .atomic_writer import AtomicWriter
from .writer import ArtifactWriter

__all__ = ["AtomicWriter", "ArtifactWriter"]

"""
Pipeline - reflection-driven type generation.

One run goes through these phases:

1. Phase 1 (Guard): Serialize runs of the same project
2. Phase 2 (Cache): Hash the config and sources; stop if artifacts are current
3. Phase 3 (Runner): Execute the app in a child process and capture its schema
4. Phase 4 (Extractor): Statically infer context extension types, in parallel with phase 3
5. Phase 5 (Writer): Render the stubs and commit them atomically with the cache entry
"""

from __future__ import annotations

from .cache import ArtifactCache, compute_cache_key
from .extractor import ContextTypeExtractor, extract
from .models import (
    ArtifactManifest,
    ContextTypeSignature,
    ManifestFile,
    ReflectionMode,
    ReflectionRequest,
    SchemaReflection,
    TypeImport,
)
from .orchestrator import ReflectionOrchestrator
from .runner import IsolatedRunner, RunnerState
from .writer import ArtifactWriter, AtomicWriter

__all__ = [
    "ReflectionOrchestrator",
    "ReflectionRequest",
    "ReflectionMode",
    "ArtifactManifest",
    "ManifestFile",
    "ContextTypeSignature",
    "SchemaReflection",
    "TypeImport",
    "ArtifactCache",
    "compute_cache_key",
    "ContextTypeExtractor",
    "extract",
    "IsolatedRunner",
    "RunnerState",
    "ArtifactWriter",
    "AtomicWriter",
]

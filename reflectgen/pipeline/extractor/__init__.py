"""
Context type extractor: static analysis of context extension call sites.
"""

from __future__ import annotations

from .extractor import ContextTypeExtractor, EntryPoint, ExtractionResult, extract, extract_with_diagnostics
from .program import AnalysisCache, ProjectProgram, SourceFile
from ..types import GenericType, NamedType, ObjectType, PrimitiveType, TypeExpr, UnionType

__all__ = [
    "ContextTypeExtractor",
    "EntryPoint",
    "ExtractionResult",
    "extract",
    "extract_with_diagnostics",
    "AnalysisCache",
    "ProjectProgram",
    "SourceFile",
    "TypeExpr",
    "PrimitiveType",
    "NamedType",
    "ObjectType",
    "GenericType",
    "UnionType",
]

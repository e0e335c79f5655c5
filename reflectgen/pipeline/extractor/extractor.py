"""
Context type extractor.

Finds calls to recognized context extension entry points (by default
``schema.add_to_context`` on the reflectgen schema) and statically infers
the return type of the callable passed to them.
"""

from __future__ import annotations

import ast
import logging
from collections.abc import Set
from dataclasses import dataclass, field
from pathlib import Path

from ...config import ReflectionConfig
from ...layout import Layout
from ...log import trace
from ...utils import sha256_text
from ..models import ContextTypeSignature
from .inference import ModuleScope, ScopeNode, TypeInferrer, local_bindings
from .program import AnalysisCache, ProjectProgram, SourceFile

logger = logging.getLogger(__name__)

ANALYSIS_CACHE_NAME = "analysis.json"

# Keyword accepted in place of the positional contributor argument
_CONTRIBUTOR_KEYWORD = "contributor"


@dataclass(frozen=True)
class EntryPoint:
    """A capability-bearing method: calls to ``<receiver>.<method>(fn)``."""

    receiver: str
    method: str

    @staticmethod
    def parse(dotted: str) -> EntryPoint:
        receiver, _, method = dotted.strip().rpartition(".")
        if not receiver or not method:
            raise ValueError(f"Entry point {dotted!r} must look like 'module.receiver.method'")
        return EntryPoint(receiver=receiver, method=method)

    def __str__(self) -> str:
        return f"{self.receiver}.{self.method}"


@dataclass
class ExtractionResult:
    signatures: list[ContextTypeSignature] = field(default_factory=list)
    diagnostics: list[str] = field(default_factory=list)


class ContextTypeExtractor:
    """Extracts context type signatures from source code."""

    def __init__(self, entry_points: list[str] | None = None):
        specs = entry_points if entry_points is not None else ReflectionConfig().context_entry_points
        self.entry_points = [EntryPoint.parse(s) for s in specs]

    @property
    def salt(self) -> str:
        """Identifies the allow-list, for cache invalidation."""
        return sha256_text("\n".join(sorted(str(ep) for ep in self.entry_points)))

    def extract_source(
        self,
        source: str | bytes,
        source_file: str = "<string>",
        module: str = "__main__",
        is_package: bool = False,
    ) -> list[ContextTypeSignature]:
        """Extract signatures from one module's source.

        Raises:
            SyntaxError: If the source does not parse
        """
        tree = ast.parse(source, filename=source_file)
        scope = ModuleScope(tree, module, is_package)
        visitor = _CallSiteVisitor(self, scope, source_file)
        visitor.visit(tree)
        return sorted(visitor.signatures, key=lambda s: (s.line, s.column))

    def extract_program(self, program: ProjectProgram, cache: AnalysisCache | None = None) -> ExtractionResult:
        """Extract signatures from every file of the program, in program order."""
        result = ExtractionResult()
        for source in program.files:
            cached = cache.get(source) if cache is not None else None
            if cached is not None:
                signatures, diagnostic = cached
                trace(logger, "reusing analysis of %s", source.relpath)
            else:
                signatures, diagnostic = self._extract_file(source)
                if cache is not None:
                    cache.put(source, signatures, diagnostic)
            result.signatures.extend(signatures)
            if diagnostic:
                result.diagnostics.append(diagnostic)

        if cache is not None:
            cache.prune({f.relpath for f in program.files})
            cache.save()
        trace(logger, "extracted %d context type(s)", len(result.signatures))
        return result

    def _extract_file(self, source: SourceFile) -> tuple[list[ContextTypeSignature], str | None]:
        try:
            return self.extract_source(source.content, source.relpath, source.module, source.is_package), None
        except SyntaxError as e:
            diagnostic = f"{source.relpath}:{e.lineno or 0}: skipped, could not parse: {e.msg}"
        except ValueError as e:
            diagnostic = f"{source.relpath}: skipped, could not parse: {e}"
        logger.debug(diagnostic)
        return [], diagnostic

    def matches(self, call: ast.Call, scope: ModuleScope, local_names: Set[str] = frozenset()) -> EntryPoint | None:
        """The entry point a call targets, if any.

        Only direct method calls count: the callee must be an attribute whose
        receiver resolves, through imports and module-level aliases, to a
        recognized receiver. A receiver rooted at a name in ``local_names``
        refers to a local variable, not to the module-level binding.
        """
        func = call.func
        if not isinstance(func, ast.Attribute):
            return None
        candidates = [ep for ep in self.entry_points if ep.method == func.attr]
        if not candidates:
            return None
        root = func.value
        while isinstance(root, ast.Attribute):
            root = root.value
        if isinstance(root, ast.Name) and root.id in local_names:
            return None
        receiver = scope.qualify(func.value)
        if receiver is None:
            return None
        for ep in candidates:
            if ep.receiver == receiver:
                return ep
        return None


class _CallSiteVisitor(ast.NodeVisitor):
    def __init__(self, extractor: ContextTypeExtractor, scope: ModuleScope, source_file: str):
        self.extractor = extractor
        self.scope = scope
        self.source_file = source_file
        self.inferrer = TypeInferrer(scope)
        self.signatures: list[ContextTypeSignature] = []
        # (names bound, is a class body) for each enclosing scope, innermost last
        self.scopes: list[tuple[set[str], bool]] = []

    def _visit_scope(self, node: ScopeNode) -> None:
        self.scopes.append((local_bindings(node), isinstance(node, ast.ClassDef)))
        try:
            self.generic_visit(node)
        finally:
            self.scopes.pop()

    visit_FunctionDef = _visit_scope
    visit_AsyncFunctionDef = _visit_scope
    visit_Lambda = _visit_scope
    visit_ClassDef = _visit_scope
    visit_ListComp = _visit_scope
    visit_SetComp = _visit_scope
    visit_DictComp = _visit_scope
    visit_GeneratorExp = _visit_scope

    def _local_names(self) -> set[str]:
        # Class bodies are not visible from the functions nested in them
        names: set[str] = set()
        for depth, (bound, is_class) in enumerate(self.scopes, 1):
            if not is_class or depth == len(self.scopes):
                names |= bound
        return names

    def visit_Call(self, node: ast.Call) -> None:
        entry_point = self.extractor.matches(node, self.scope, self._local_names())
        if entry_point is None:
            self.generic_visit(node)
            return

        where = f"{self.source_file}:{node.lineno}"
        trace(logger, "found call to %s at %s", entry_point, where)
        argument = self._contributor_argument(node)
        if argument is None:
            trace(logger, "%s: expected exactly one argument, skipping (the type checker reports this)", where)
            return

        shape = self.inferrer.infer_callable_return(argument)
        if shape is None:
            trace(logger, "%s: argument is not callable, skipping (the type checker reports this)", where)
            return

        self.signatures.append(
            ContextTypeSignature(
                source_file=self.source_file,
                line=node.lineno,
                column=node.col_offset + 1,
                type_expression=shape.render(),
                shape=shape,
                type_imports=self.inferrer.take_imports(),
            )
        )

    @staticmethod
    def _contributor_argument(node: ast.Call) -> ast.expr | None:
        if len(node.args) == 1 and not node.keywords and not isinstance(node.args[0], ast.Starred):
            return node.args[0]
        if not node.args and len(node.keywords) == 1 and node.keywords[0].arg == _CONTRIBUTOR_KEYWORD:
            return node.keywords[0].value
        return None


def extract(layout: Layout, config: ReflectionConfig | None = None) -> list[ContextTypeSignature]:
    """Extract context type signatures for a whole project.

    Raises:
        ExtractionFailure: If the source file set cannot be assembled
    """
    return extract_with_diagnostics(layout, config).signatures


def extract_with_diagnostics(layout: Layout, config: ReflectionConfig | None = None) -> ExtractionResult:
    config = config or ReflectionConfig()
    extractor = ContextTypeExtractor(config.context_entry_points)
    program = ProjectProgram(layout.project_root, config)
    cache = AnalysisCache(analysis_cache_path(layout, config), salt=extractor.salt)
    return extractor.extract_program(program, cache)


def analysis_cache_path(layout: Layout, config: ReflectionConfig) -> Path:
    return config.cache_path(layout.project_root) / ANALYSIS_CACHE_NAME

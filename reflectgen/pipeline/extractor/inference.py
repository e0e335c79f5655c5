"""
Static type inference over a single module.

Nothing is imported or executed: types come from literals, annotations
and module-level bindings. Whatever cannot be determined is Any.
"""

from __future__ import annotations

import ast
import builtins
import copy
from collections.abc import Iterator

from ..models import TypeImport
from ..types import (
    ANY,
    BOOL,
    BYTES,
    COMPLEX,
    FLOAT,
    INT,
    NONE,
    STR,
    GenericType,
    NamedType,
    ObjectType,
    TypeExpr,
    union_of,
)

_BUILTIN_NAMES = set(dir(builtins))

_CONSTRUCTORS: dict[str, TypeExpr] = {
    "int": INT,
    "float": FLOAT,
    "str": STR,
    "bool": BOOL,
    "bytes": BYTES,
    "complex": COMPLEX,
    "repr": STR,
    "format": STR,
    "len": INT,
    "list": GenericType("list", (ANY,)),
    "set": GenericType("set", (ANY,)),
    "frozenset": GenericType("frozenset", (ANY,)),
    "tuple": GenericType("tuple", (ANY, NamedType("..."))),
    "dict": GenericType("dict", (ANY, ANY)),
    "sorted": GenericType("list", (ANY,)),
}

_NUMERIC_RANK = {INT: 0, FLOAT: 1, COMPLEX: 2}

FunctionNode = ast.FunctionDef | ast.AsyncFunctionDef


class ModuleScope:
    """Module-level bindings of one source file.

    Attributes:
        imports: Local name -> qualified dotted name it was imported as
        aliases: Local name -> qualified name of a module-level alias (x = a.b)
        assignments: Name -> value of its last plain module-level assignment
        annotations: Name -> annotation of a module-level annotated binding
        functions: Name -> module-level function definition
        classes: Name -> module-level class definition
    """

    def __init__(self, tree: ast.Module, module: str, is_package: bool = False):
        self.module = module
        self.package = module if is_package else module.rpartition(".")[0]
        self.imports: dict[str, str] = {}
        self.aliases: dict[str, str] = {}
        self.assignments: dict[str, ast.expr] = {}
        self.annotations: dict[str, ast.expr] = {}
        self.functions: dict[str, FunctionNode] = {}
        self.classes: dict[str, ast.ClassDef] = {}
        self.exported: set[str] | None = None

        # Imports inside functions count too: they are how apps usually reach the schema
        for node in ast.walk(tree):
            if isinstance(node, (ast.Import, ast.ImportFrom)):
                self._bind_import(node)
        for node in tree.body:
            self._bind_statement(node)

    def _bind_import(self, node: ast.Import | ast.ImportFrom) -> None:
        if isinstance(node, ast.Import):
            for alias in node.names:
                if alias.asname:
                    self.imports[alias.asname] = alias.name
                else:
                    top = alias.name.split(".")[0]
                    self.imports[top] = top
            return

        base = self._resolve_from(node)
        if base is None:
            return
        for alias in node.names:
            if alias.name == "*":
                continue
            self.imports[alias.asname or alias.name] = f"{base}.{alias.name}" if base else alias.name

    def _resolve_from(self, node: ast.ImportFrom) -> str | None:
        if not node.level:
            return node.module or ""
        parts = self.package.split(".") if self.package else []
        if node.level - 1 > len(parts):
            return None
        parts = parts[: len(parts) - (node.level - 1)]
        if node.module:
            parts.append(node.module)
        return ".".join(parts)

    def _bind_statement(self, node: ast.stmt) -> None:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            self.functions[node.name] = node
        elif isinstance(node, ast.ClassDef):
            self.classes[node.name] = node
        elif isinstance(node, ast.AnnAssign) and isinstance(node.target, ast.Name):
            self.annotations[node.target.id] = node.annotation
            if node.value is not None:
                self.assignments[node.target.id] = node.value
        elif isinstance(node, ast.Assign) and len(node.targets) == 1 and isinstance(node.targets[0], ast.Name):
            name = node.targets[0].id
            if name == "__all__":
                self._bind_all(node.value)
                return
            qualified = self.qualify(node.value) if isinstance(node.value, (ast.Name, ast.Attribute)) else None
            if qualified:
                self.aliases[name] = qualified
            else:
                self.aliases.pop(name, None)
                self.imports.pop(name, None)
            self.assignments[name] = node.value
        elif isinstance(node, (ast.If, ast.Try)):
            # Conditional definitions (TYPE_CHECKING blocks, import fallbacks)
            for child in ast.iter_child_nodes(node):
                if isinstance(child, ast.stmt):
                    self._bind_statement(child)

    def _bind_all(self, value: ast.expr) -> None:
        if isinstance(value, (ast.List, ast.Tuple)):
            self.exported = {e.value for e in value.elts if isinstance(e, ast.Constant) and isinstance(e.value, str)}

    def qualify(self, expr: ast.expr) -> str | None:
        """Resolve a Name/Attribute chain to the dotted name it is bound to."""
        if isinstance(expr, ast.Name):
            if expr.id in self.aliases:
                return self.aliases[expr.id]
            return self.imports.get(expr.id)
        if isinstance(expr, ast.Attribute):
            base = self.qualify(expr.value)
            if base:
                return f"{base}.{expr.attr}"
        return None

    def is_exported(self, name: str) -> bool:
        if self.exported is not None:
            return name in self.exported
        return not name.startswith("_")

    def is_local_type(self, name: str) -> bool:
        return name in self.classes or name in self.annotations or name in self.assignments


class TypeInferrer:
    """Infers types of expressions within one ModuleScope.

    Type imports needed by rendered annotations are collected in
    ``imports`` as a side effect, in first-seen order.
    """

    def __init__(self, scope: ModuleScope):
        self.scope = scope
        self.imports: dict[tuple[str, str], TypeImport] = {}
        self._resolving: set[str] = set()

    def take_imports(self) -> tuple[TypeImport, ...]:
        imports = tuple(self.imports.values())
        self.imports = {}
        return imports

    # Callables

    def infer_callable_return(self, node: ast.expr) -> TypeExpr | None:
        """Return type of calling node, or None when node is not callable."""
        if isinstance(node, ast.Lambda):
            return self.infer(node.body, self._parameter_types(node.args))
        if isinstance(node, ast.Name):
            name = node.id
            if name in self.scope.functions:
                return self.function_return(self.scope.functions[name])
            if name in self.scope.classes:
                return self._named(ast.Name(id=name))
            if isinstance(self.scope.assignments.get(name), ast.Lambda):
                if name in self._resolving:
                    return ANY
                self._resolving.add(name)
                try:
                    return self.infer_callable_return(self.scope.assignments[name])
                finally:
                    self._resolving.discard(name)
            if name in self.scope.imports or name in self.scope.aliases:
                return ANY
            return None
        if isinstance(node, (ast.Attribute, ast.Call, ast.Subscript)):
            return ANY
        return None

    def function_return(self, fn: FunctionNode) -> TypeExpr:
        if fn.returns is not None:
            return self.annotation(fn.returns)
        key = f"def:{fn.name}:{fn.lineno}"
        if key in self._resolving:
            return ANY
        self._resolving.add(key)
        try:
            local_types = self._parameter_types(fn.args)
            returns: list[ast.Return] = []
            for stmt in _own_nodes(fn.body):
                if isinstance(stmt, (ast.Yield, ast.YieldFrom)):
                    return ANY
                if isinstance(stmt, ast.Return):
                    returns.append(stmt)
                elif isinstance(stmt, ast.Assign) and len(stmt.targets) == 1 and isinstance(stmt.targets[0], ast.Name):
                    name = stmt.targets[0].id
                    inferred = self.infer(stmt.value, local_types)
                    local_types[name] = union_of([local_types[name], inferred]) if name in local_types else inferred
                elif isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name):
                    local_types[stmt.target.id] = self.annotation(stmt.annotation)
            if not returns:
                return NONE
            return union_of([self.infer(r.value, local_types) if r.value is not None else NONE for r in returns])
        finally:
            self._resolving.discard(key)

    def _parameter_types(self, args: ast.arguments) -> dict[str, TypeExpr]:
        local_types: dict[str, TypeExpr] = {}
        for arg in [*args.posonlyargs, *args.args, *args.kwonlyargs]:
            local_types[arg.arg] = self.annotation(arg.annotation) if arg.annotation is not None else ANY
        if args.vararg:
            local_types[args.vararg.arg] = GenericType("tuple", (ANY, NamedType("...")))
        if args.kwarg:
            local_types[args.kwarg.arg] = GenericType("dict", (STR, ANY))
        return local_types

    # Annotations

    def annotation(self, node: ast.expr) -> TypeExpr:
        """Render an annotation, recording the imports its names need."""
        if isinstance(node, ast.Constant):
            if node.value is None:
                return NONE
            if isinstance(node.value, str):
                try:
                    node = ast.parse(node.value, mode="eval").body
                except SyntaxError:
                    return ANY
        return self._named(node)

    def _named(self, node: ast.expr) -> TypeExpr:
        node = _RenameImported(self).visit(copy.deepcopy(node))
        return NamedType(ast.unparse(node))

    def _record(self, name: str, module: str, is_exported: bool = True) -> None:
        self.imports.setdefault((module, name), TypeImport(name=name, module=module, is_exported=is_exported))

    # Expressions

    def infer(self, node: ast.expr | None, local_types: dict[str, TypeExpr] | None = None) -> TypeExpr:
        if node is None:
            return NONE
        local_types = local_types or {}
        method = getattr(self, f"_infer_{type(node).__name__}", None)
        if method is None:
            return ANY
        return method(node, local_types)

    def _infer_Constant(self, node: ast.Constant, local_types) -> TypeExpr:
        value = node.value
        if value is None:
            return NONE
        if isinstance(value, bool):
            return BOOL
        for kind, t in ((int, INT), (float, FLOAT), (complex, COMPLEX), (str, STR), (bytes, BYTES)):
            if isinstance(value, kind):
                return t
        return ANY

    def _infer_JoinedStr(self, node, local_types) -> TypeExpr:
        return STR

    def _infer_Dict(self, node: ast.Dict, local_types) -> TypeExpr:
        string_keys = all(k is None or (isinstance(k, ast.Constant) and isinstance(k.value, str)) for k in node.keys)
        if string_keys:
            fields: dict[str, TypeExpr] = {}
            for key, value in zip(node.keys, node.values, strict=True):
                value_type = self.infer(value, local_types)
                if key is None:
                    if not isinstance(value_type, ObjectType):
                        return GenericType("dict", (STR, ANY))
                    fields.update(value_type.fields)
                else:
                    fields[key.value] = value_type
            return ObjectType(tuple(fields.items()))
        keys = [self.infer(k, local_types) for k in node.keys if k is not None]
        values = [self.infer(v, local_types) for k, v in zip(node.keys, node.values, strict=True) if k is not None]
        return GenericType("dict", (union_of(keys), union_of(values)))

    def _infer_elements(self, elts: list[ast.expr], local_types) -> TypeExpr:
        if any(isinstance(e, ast.Starred) for e in elts):
            return ANY
        return union_of([self.infer(e, local_types) for e in elts])

    def _infer_List(self, node: ast.List, local_types) -> TypeExpr:
        return GenericType("list", (self._infer_elements(node.elts, local_types),))

    def _infer_Set(self, node: ast.Set, local_types) -> TypeExpr:
        return GenericType("set", (self._infer_elements(node.elts, local_types),))

    def _infer_Tuple(self, node: ast.Tuple, local_types) -> TypeExpr:
        if not node.elts:
            return NamedType("tuple[()]")
        if any(isinstance(e, ast.Starred) for e in node.elts):
            return GenericType("tuple", (ANY, NamedType("...")))
        return GenericType("tuple", tuple(self.infer(e, local_types) for e in node.elts))

    def _comprehension_locals(self, node, local_types) -> dict[str, TypeExpr]:
        scoped = dict(local_types)
        for generator in node.generators:
            for target in ast.walk(generator.target):
                if isinstance(target, ast.Name):
                    scoped[target.id] = ANY
        return scoped

    def _infer_ListComp(self, node: ast.ListComp, local_types) -> TypeExpr:
        return GenericType("list", (self.infer(node.elt, self._comprehension_locals(node, local_types)),))

    def _infer_SetComp(self, node: ast.SetComp, local_types) -> TypeExpr:
        return GenericType("set", (self.infer(node.elt, self._comprehension_locals(node, local_types)),))

    def _infer_DictComp(self, node: ast.DictComp, local_types) -> TypeExpr:
        scoped = self._comprehension_locals(node, local_types)
        return GenericType("dict", (self.infer(node.key, scoped), self.infer(node.value, scoped)))

    def _infer_Name(self, node: ast.Name, local_types) -> TypeExpr:
        name = node.id
        if name in local_types:
            return local_types[name]
        scope = self.scope
        if name in scope.annotations:
            return self.annotation(scope.annotations[name])
        if name in scope.assignments:
            if name in self._resolving:
                return ANY
            self._resolving.add(name)
            try:
                return self.infer(scope.assignments[name])
            finally:
                self._resolving.discard(name)
        if name in scope.functions:
            self._record("Callable", "collections.abc")
            return NamedType("Callable[..., Any]")
        if name in scope.classes:
            inner = self._named(ast.Name(id=name))
            return NamedType(f"type[{inner.render()}]")
        return ANY

    def _infer_Call(self, node: ast.Call, local_types) -> TypeExpr:
        func = node.func
        if isinstance(func, ast.Name) and func.id not in local_types:
            name = func.id
            scope = self.scope
            if name in scope.classes:
                return self._named(ast.Name(id=name))
            if name in scope.functions:
                fn = scope.functions[name]
                returned = self.function_return(fn)
                if isinstance(fn, ast.AsyncFunctionDef):
                    self._record("Coroutine", "collections.abc")
                    return NamedType(f"Coroutine[Any, Any, {returned.render()}]")
                return returned
            if isinstance(scope.assignments.get(name), ast.Lambda):
                return self.infer_callable_return(func) or ANY
            if name in _CONSTRUCTORS and name in _BUILTIN_NAMES and not scope.is_local_type(name) and name not in scope.imports:
                return _CONSTRUCTORS[name]
        return ANY

    def _infer_Await(self, node: ast.Await, local_types) -> TypeExpr:
        value = node.value
        if isinstance(value, ast.Call) and isinstance(value.func, ast.Name):
            fn = self.scope.functions.get(value.func.id)
            if isinstance(fn, ast.AsyncFunctionDef) and value.func.id not in local_types:
                return self.function_return(fn)
        return ANY

    def _infer_BinOp(self, node: ast.BinOp, local_types) -> TypeExpr:
        left = self.infer(node.left, local_types)
        right = self.infer(node.right, local_types)
        if left in _NUMERIC_RANK and right in _NUMERIC_RANK:
            if isinstance(node.op, ast.Div):
                return COMPLEX if COMPLEX in (left, right) else FLOAT
            return left if _NUMERIC_RANK[left] >= _NUMERIC_RANK[right] else right
        if left == STR and (isinstance(node.op, ast.Mod) or (isinstance(node.op, ast.Add) and right == STR)):
            return STR
        if isinstance(node.op, ast.Mult) and STR in (left, right) and INT in (left, right):
            return STR
        if isinstance(node.op, ast.Add) and isinstance(left, GenericType) and isinstance(right, GenericType):
            if left.origin == right.origin == "list":
                return GenericType("list", (union_of([*left.args, *right.args]),))
        return ANY

    def _infer_UnaryOp(self, node: ast.UnaryOp, local_types) -> TypeExpr:
        if isinstance(node.op, ast.Not):
            return BOOL
        operand = self.infer(node.operand, local_types)
        if operand in _NUMERIC_RANK:
            return operand
        if operand == BOOL:
            return INT
        return ANY

    def _infer_BoolOp(self, node: ast.BoolOp, local_types) -> TypeExpr:
        return union_of([self.infer(v, local_types) for v in node.values])

    def _infer_Compare(self, node, local_types) -> TypeExpr:
        return BOOL

    def _infer_IfExp(self, node: ast.IfExp, local_types) -> TypeExpr:
        return union_of([self.infer(node.body, local_types), self.infer(node.orelse, local_types)])

    def _infer_NamedExpr(self, node: ast.NamedExpr, local_types) -> TypeExpr:
        return self.infer(node.value, local_types)


class _RenameImported(ast.NodeTransformer):
    """Rewrites names in an annotation to their importable form and records the imports."""

    def __init__(self, inferrer: TypeInferrer):
        self.inferrer = inferrer

    def visit_Name(self, node: ast.Name) -> ast.Name:
        scope = self.inferrer.scope
        name = node.id
        qualified = scope.aliases.get(name) or scope.imports.get(name)
        if qualified:
            module, _, attr = qualified.rpartition(".")
            if module:
                self.inferrer._record(attr, module)
                return ast.copy_location(ast.Name(id=attr, ctx=node.ctx), node)
            self.inferrer._record(attr, "")
            return ast.copy_location(ast.Name(id=attr, ctx=node.ctx), node)
        if scope.is_local_type(name) and name not in _BUILTIN_NAMES:
            self.inferrer._record(name, scope.module, scope.is_exported(name))
        return node

    def visit_Constant(self, node: ast.Constant) -> ast.AST:
        # Nested forward references: list["Foo"]
        if isinstance(node.value, str):
            try:
                parsed = ast.parse(node.value, mode="eval").body
            except SyntaxError:
                return node
            return self.visit(parsed)
        return node


def _own_nodes(body: list[ast.stmt]) -> Iterator[ast.AST]:
    """Walk a function body without entering nested functions, lambdas or classes."""
    stack: list[ast.AST] = list(reversed(body))
    while stack:
        node = stack.pop()
        yield node
        for child in reversed(list(ast.iter_child_nodes(node))):
            if isinstance(child, (ast.FunctionDef, ast.AsyncFunctionDef, ast.Lambda, ast.ClassDef)):
                continue
            stack.append(child)


ScopeNode = FunctionNode | ast.Lambda | ast.ClassDef | ast.ListComp | ast.SetComp | ast.DictComp | ast.GeneratorExp


def local_bindings(node: ScopeNode) -> set[str]:
    """Names a function, lambda, class body or comprehension binds in its own scope.

    Imports are left out: ModuleScope already resolves them wherever they occur.
    """
    names: set[str] = set()
    if isinstance(node, (ast.ListComp, ast.SetComp, ast.DictComp, ast.GeneratorExp)):
        for generator in node.generators:
            names.update(n.id for n in ast.walk(generator.target) if isinstance(n, ast.Name))
        return names

    if not isinstance(node, ast.ClassDef):
        args = node.args
        for arg in [*args.posonlyargs, *args.args, *args.kwonlyargs, args.vararg, args.kwarg]:
            if arg is not None:
                names.add(arg.arg)
    if isinstance(node, ast.Lambda):
        return names

    declared_elsewhere: set[str] = set()
    for child in _own_nodes(node.body):
        if isinstance(child, ast.Name) and isinstance(child.ctx, (ast.Store, ast.Del)):
            names.add(child.id)
        elif isinstance(child, ast.ExceptHandler) and child.name:
            names.add(child.name)
        elif isinstance(child, (ast.MatchAs, ast.MatchStar)) and child.name:
            names.add(child.name)
        elif isinstance(child, ast.MatchMapping) and child.rest:
            names.add(child.rest)
        elif isinstance(child, (ast.Global, ast.Nonlocal)):
            declared_elsewhere.update(child.names)
        for nested in ast.iter_child_nodes(child):
            if isinstance(nested, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
                names.add(nested.name)
    for stmt in node.body:
        if isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            names.add(stmt.name)
    return names - declared_elsewhere

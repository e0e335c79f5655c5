"""
Tests for the context type extractor.
"""

from __future__ import annotations

import json

import pytest

from reflectgen.config import ReflectionConfig
from reflectgen.errors import ExtractionFailure
from reflectgen.pipeline.extractor import ContextTypeExtractor, EntryPoint, extract, extract_with_diagnostics
from reflectgen.pipeline.extractor.extractor import analysis_cache_path
from reflectgen.pipeline.models import TypeImport


def extract_types(source: str) -> list[str]:
    return [s.type_expression for s in ContextTypeExtractor().extract_source(source, "app.py", "app")]


class TestCallSiteMatching:
    """Which calls are recognized as context extensions."""

    def test_no_call_sites(self):
        assert extract_types("from reflectgen import schema\n\nx = 1\n") == []

    def test_unrelated_receiver_is_ignored(self):
        source = """
from reflectgen import schema

foobar.add_to_context(lambda r: {"a": 1})
"""
        assert extract_types(source) == []

    def test_bare_call_is_ignored(self):
        source = """
from reflectgen.runtime.schema import Schema

add_to_context(lambda r: {"a": 1})
"""
        assert extract_types(source) == []

    def test_same_name_from_other_module_is_ignored(self):
        source = """
from other_framework import schema

schema.add_to_context(lambda r: {"a": 1})
"""
        assert extract_types(source) == []

    def test_simple_dict(self):
        source = """
from reflectgen import schema

schema.add_to_context(lambda r: {"a": 1})
"""
        assert extract_types(source) == ["{ a: int; }"]

    def test_through_app(self):
        source = """
from reflectgen import app

app.schema.add_to_context(lambda r: {"name": "x"})
"""
        assert extract_types(source) == ["{ name: str; }"]

    def test_module_import_and_alias(self):
        source = """
import reflectgen as rg

s = rg.schema
s.add_to_context(lambda r: {"flag": True})
rg.schema.add_to_context(lambda r: {"ratio": 0.5})
"""
        assert extract_types(source) == ["{ flag: bool; }", "{ ratio: float; }"]

    def test_import_inside_function(self):
        source = """
def setup():
    from reflectgen import schema

    schema.add_to_context(lambda r: {"a": 1})
"""
        assert extract_types(source) == ["{ a: int; }"]

    def test_local_variable_shadows_import(self):
        source = """
from reflectgen import schema

def configure():
    schema = object()
    schema.add_to_context(lambda r: {"x": 1})

schema.add_to_context(lambda r: {"y": 2})
"""
        assert extract_types(source) == ["{ y: int; }"]

    @pytest.mark.parametrize(
        "binding",
        [
            "def configure(schema):\n    {call}\n",
            "def configure():\n    for schema in []:\n        {call}\n",
            "def configure():\n    with open('f') as schema:\n        {call}\n",
            "handler = lambda schema: {call}\n",
            "items = [{call} for schema in []]\n",
        ],
    )
    def test_local_bindings_shadow_import(self, binding):
        call = 'schema.add_to_context(lambda r: {"x": 1})'
        source = "from reflectgen import schema\n\n" + binding.replace("{call}", call)
        assert extract_types(source) == []

    def test_global_declaration_does_not_shadow(self):
        source = """
from reflectgen import schema

def configure():
    global schema
    schema.add_to_context(lambda r: {"x": 1})
"""
        assert extract_types(source) == ["{ x: int; }"]

    def test_class_attribute_is_not_visible_in_methods(self):
        source = """
from reflectgen import schema

class Plugin:
    schema = None

    def install(self):
        schema.add_to_context(lambda r: {"x": 1})
"""
        assert extract_types(source) == ["{ x: int; }"]

    def test_contributor_keyword(self):
        source = """
from reflectgen import schema

schema.add_to_context(contributor=lambda r: {"a": 1})
"""
        assert extract_types(source) == ["{ a: int; }"]

    def test_wrong_arity_is_skipped(self):
        source = """
from reflectgen import schema

schema.add_to_context()
schema.add_to_context(lambda r: {"a": 1}, lambda r: {"b": 2})
"""
        assert extract_types(source) == []

    def test_non_callable_argument_is_skipped(self):
        source = """
from reflectgen import schema

schema.add_to_context({"a": 1})
"""
        assert extract_types(source) == []

    def test_custom_entry_point(self):
        source = """
from myframework import registry

registry.extend(lambda r: {"a": 1})
"""
        extractor = ContextTypeExtractor(["myframework.registry.extend"])
        assert [s.type_expression for s in extractor.extract_source(source)] == ["{ a: int; }"]

    def test_entry_point_parse(self):
        assert EntryPoint.parse("reflectgen.schema.add_to_context") == EntryPoint("reflectgen.schema", "add_to_context")
        with pytest.raises(ValueError):
            EntryPoint.parse("add_to_context")


class TestSignatures:
    """Locations, ordering and type imports of extracted signatures."""

    def test_location_and_source_order(self):
        source = """from reflectgen import schema

schema.add_to_context(lambda r: {"first": 1})
if True:
    schema.add_to_context(lambda r: {"second": "x"})
"""
        signatures = ContextTypeExtractor().extract_source(source, "app.py", "app")
        assert [(s.line, s.column) for s in signatures] == [(3, 1), (5, 5)]
        assert [s.type_expression for s in signatures] == ["{ first: int; }", "{ second: str; }"]
        assert all(s.source_file == "app.py" for s in signatures)

    def test_function_referencing_module_values(self):
        source = """
from reflectgen import schema

DEFAULT_LOCALE = "en"


def build_context(request):
    return {"locale": DEFAULT_LOCALE, "user": {"id": 1, "tags": ["a", "b"]}}


schema.add_to_context(build_context)
"""
        assert extract_types(source) == ["{ locale: str; user: { id: int; tags: list[str]; }; }"]

    def test_annotated_binding_records_import(self):
        source = """
from decimal import Decimal

from reflectgen import schema

RATE: Decimal = Decimal("1.5")

schema.add_to_context(lambda r: {"rate": RATE})
"""
        (signature,) = ContextTypeExtractor().extract_source(source, "app.py", "app")
        assert signature.type_expression == "{ rate: Decimal; }"
        assert signature.type_imports == (TypeImport(name="Decimal", module="decimal"),)

    def test_local_class_is_imported_from_its_module(self):
        source = """
from reflectgen import schema


class Session:
    pass


schema.add_to_context(lambda r: {"session": Session()})
"""
        (signature,) = ContextTypeExtractor().extract_source(source, "myapp/context.py", "myapp.context")
        assert signature.type_expression == "{ session: Session; }"
        assert signature.type_imports == (TypeImport(name="Session", module="myapp.context"),)

    def test_return_annotation_wins(self):
        source = """
from reflectgen import schema


async def load(request) -> dict[str, int]:
    return {}


schema.add_to_context(load)
"""
        assert extract_types(source) == ["dict[str, int]"]


class TestProgramExtraction:
    """Whole-project extraction over the source file set."""

    def test_files_in_program_order(self, make_project):
        layout = make_project(
            {
                "app.py": 'from reflectgen import schema\nschema.add_to_context(lambda r: {"a": 1})\n',
                "pkg/__init__.py": "",
                "pkg/extra.py": 'from reflectgen import schema\nschema.add_to_context(lambda r: {"b": "x"})\n',
            }
        )
        signatures = extract(layout)
        assert [(s.source_file, s.type_expression) for s in signatures] == [
            ("app.py", "{ a: int; }"),
            ("pkg/extra.py", "{ b: str; }"),
        ]

    def test_malformed_file_is_skipped(self, make_project):
        layout = make_project(
            {
                "app.py": 'from reflectgen import schema\nschema.add_to_context(lambda r: {"a": 1})\n',
                "broken.py": "def broken(:\n",
            }
        )
        result = extract_with_diagnostics(layout, ReflectionConfig())
        assert [s.type_expression for s in result.signatures] == ["{ a: int; }"]
        assert len(result.diagnostics) == 1
        assert result.diagnostics[0].startswith("broken.py:1:")

    def test_excluded_directories(self, make_project):
        layout = make_project(
            {
                "app.py": "",
                ".venv/lib/site.py": 'from reflectgen import schema\nschema.add_to_context(lambda r: {"a": 1})\n',
                "typings/reflectgen_typegen/stub.py": 'from reflectgen import schema\nschema.add_to_context(lambda r: {"b": 1})\n',
            }
        )
        assert extract(layout) == []

    def test_missing_source_root(self, make_project):
        layout = make_project({"app.py": ""})
        with pytest.raises(ExtractionFailure):
            extract(layout, ReflectionConfig(source_roots=["missing"]))

    def test_analysis_cache_is_reused(self, make_project):
        layout = make_project({"app.py": 'from reflectgen import schema\nschema.add_to_context(lambda r: {"a": 1})\n'})
        config = ReflectionConfig()
        first = extract(layout, config)

        cache_file = analysis_cache_path(layout, config)
        data = json.loads(cache_file.read_text())
        assert set(data["files"]) == {"app.py"}

        # A cached entry is trusted as long as the file hash matches
        data["files"]["app.py"]["signatures"][0]["type_expression"] = "{ cached: int; }"
        cache_file.write_text(json.dumps(data))
        assert [s.type_expression for s in extract(layout, config)] == ["{ cached: int; }"]

        (layout.project_root / "app.py").write_text('from reflectgen import schema\nschema.add_to_context(lambda r: {"a": 1})\n\n')
        assert extract(layout, config) == first

    def test_analysis_cache_ignores_other_allow_list(self, make_project):
        layout = make_project({"app.py": 'from reflectgen import schema\nschema.add_to_context(lambda r: {"a": 1})\n'})
        assert len(extract(layout, ReflectionConfig())) == 1
        assert extract(layout, ReflectionConfig(context_entry_points=["other.registry.extend"])) == []

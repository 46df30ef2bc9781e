import json

import pytest

from testflow_engine.template import TemplateContext, extract_references, resolve, resolve_body
from testflow_engine.template.renderer import resolve_json_text, split_arguments
from testflow_engine.template.tokenizer import TemplateSource, find_spans
from testflow_engine.utils.exceptions import ResolutionError


def _ctx(**kw):
    defaults = {
        "responses": {"step1-0": {"id": 42, "user": {"name": "Alice"}, "items": [1, 2]}},
        "transformations": {"step1-0": {"names": ["a", "b"], "total": {"count": 3}}},
        "parameters": {"count": 5, "flag": True, "name": "Bob"},
        "environment": {"BASE": "https://api.example.com"},
    }
    defaults.update(kw)
    return TemplateContext(**defaults)


class TestTokenizer:
    def test_finds_both_forms(self):
        spans = find_spans("a {{param:x}} b {{{res:step1-0.$.id}}}")
        assert [s.source for s in spans] == [TemplateSource.PARAM, TemplateSource.RES]
        assert [s.preserve_type for s in spans] == [False, True]

    def test_unknown_source_is_not_a_template(self):
        assert find_spans("{{mustache}} {{other:thing}}") == ()

    def test_source_aliases(self):
        assert find_spans("{{environment:X}}")[0].source == TemplateSource.ENV


class TestResolve:
    def test_triple_brace_preserves_number(self):
        assert resolve("{{{param:count}}}", _ctx()) == 5

    def test_triple_brace_preserves_bool(self):
        assert resolve("{{{param:flag}}}", _ctx()) is True

    def test_double_brace_stringifies(self):
        assert resolve("{{param:count}}", _ctx()) == "5"

    def test_embedded_interpolation(self):
        result = resolve("Hello {{param:name}}, id={{res:step1-0.$.id}}", _ctx())
        assert result == "Hello Bob, id=42"

    def test_response_path(self):
        assert resolve("{{{res:step1-0.$.user.name}}}", _ctx()) == "Alice"

    def test_whole_response(self):
        assert resolve("{{{res:step1-0}}}", _ctx())["id"] == 42

    def test_transformation_alias_and_path(self):
        ctx = _ctx()
        assert resolve("{{{proc:step1-0.$.names}}}", ctx) == ["a", "b"]
        assert resolve("{{{proc:step1-0.total.count}}}", ctx) == 3
        assert resolve("{{{proc:step1-0.$.names[1]}}}", ctx) == "b"
        assert resolve("{{proc:step1-0.names[-1]}}", ctx) == "b"

    def test_environment_and_defaults(self):
        ctx = _ctx(environment_defaults={"TIMEOUT": 10}, parameter_defaults={"page": 1})
        assert resolve("{{env:BASE}}/v1", ctx) == "https://api.example.com/v1"
        assert resolve("{{{env:TIMEOUT}}}", ctx) == 10
        assert resolve("{{{param:page}}}", ctx) == 1

    def test_nested_structures(self):
        template = {"user": {"id": "{{{res:step1-0.$.id}}}"}, "tags": ["{{param:name}}", "x"]}
        assert resolve(template, _ctx()) == {"user": {"id": 42}, "tags": ["Bob", "x"]}

    def test_non_string_passthrough(self):
        assert resolve(7, _ctx()) == 7
        assert resolve(None, _ctx()) is None

    def test_unresolved_double_brace_left_in_place(self):
        assert resolve("x={{param:missing}}", _ctx()) == "x={{param:missing}}"

    def test_unresolved_triple_brace_raises(self):
        with pytest.raises(ResolutionError, match="Parameter not found: missing"):
            resolve("{{{param:missing}}}", _ctx())

    def test_missing_response_lists_available_keys(self):
        with pytest.raises(ResolutionError, match="Available keys: step1-0"):
            resolve("{{{res:nope.$.id}}}", _ctx())

    def test_path_miss_is_none(self):
        assert resolve("{{{res:step1-0.$.absent}}}", _ctx()) is None


class TestFunctions:
    def test_custom_function_with_arguments(self):
        ctx = _ctx(functions={"add": lambda a, b: a + b})
        assert resolve("{{{func:add(2, 3)}}}", ctx) == 5

    def test_builtin_base64(self):
        assert resolve("{{func:base64Encode('hi')}}", _ctx()) == "aGk="

    def test_unknown_function_raises(self):
        with pytest.raises(ResolutionError, match="Function not found"):
            resolve("{{{func:nope()}}}", _ctx())

    def test_uuid_is_fresh_each_time(self):
        ctx = _ctx()
        assert resolve("{{func:uuid()}}", ctx) != resolve("{{func:uuid()}}", ctx)

    def test_split_arguments_respects_quotes_and_brackets(self):
        assert split_arguments("'a,b', [1, 2], 3") == ["'a,b'", "[1, 2]", "3"]


class TestJsonText:
    def test_quoted_triple_brace_becomes_native(self):
        text = '{"id": "{{{res:step1-0.$.id}}}", "label": "n={{param:count}}"}'
        assert json.loads(resolve_json_text(text, _ctx())) == {"id": 42, "label": "n=5"}

    def test_unquoted_triple_brace_object(self):
        text = '{"user": {{{res:step1-0.$.user}}}}'
        assert json.loads(resolve_json_text(text, _ctx())) == {"user": {"name": "Alice"}}

    def test_string_values_are_escaped(self):
        ctx = _ctx(parameters={"quote": 'say "hi"'})
        text = '{"msg": "{{param:quote}}"}'
        assert json.loads(resolve_json_text(text, ctx)) == {"msg": 'say "hi"'}

    def test_resolve_body_parses_text(self):
        assert resolve_body('{"n": {{{param:count}}}}', _ctx()) == {"n": 5}

    def test_resolve_body_structure(self):
        assert resolve_body({"n": "{{{param:count}}}"}, _ctx()) == {"n": 5}


def test_round_trip_preserves_types():
    values = {"count": 5, "ratio": 0.5, "flag": False, "items": [1, "a"], "obj": {"k": None}, "none": None}
    ctx = _ctx(parameters=values)
    for name, value in values.items():
        assert resolve("{{{param:%s}}}" % name, ctx) == value


def test_extract_references_walks_structures():
    refs = extract_references({"a": ["{{res:s1-0.$.id}}"], "b": "{{{param:x}}} {{env:Y}}"})
    assert [(r.source, r.expression) for r in refs] == [
        (TemplateSource.RES, "s1-0.$.id"),
        (TemplateSource.PARAM, "x"),
        (TemplateSource.ENV, "Y"),
    ]

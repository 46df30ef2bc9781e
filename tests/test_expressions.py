from unittest.mock import patch

import pytest

from testflow_engine.template import TemplateContext
from testflow_engine.transform.expressions import (
    evaluate_condition,
    evaluate_expression,
    parse,
    tokenize,
)
from testflow_engine.utils.exceptions import ExpressionSyntaxError

ITEM = {"name": "Alice", "age": 30, "tags": ["admin", "dev"], "price": 2.5, "email": "alice@example.com", "nick": None}


class TestComparisons:
    def test_numeric_comparison(self):
        assert evaluate_condition("$.age > 18", ITEM)
        assert not evaluate_condition("$.age < 18", ITEM)
        assert evaluate_condition("$.age >= 30 && $.age <= 30", ITEM)

    def test_equality_coerces_numeric_strings(self):
        assert evaluate_condition("$.age == '30'", ITEM)
        assert evaluate_condition("$.name != 'Bob'", ITEM)

    def test_bare_identifiers_read_the_element(self):
        assert evaluate_condition("name == 'Alice'", ITEM)

    def test_missing_field_compares_false(self):
        assert not evaluate_condition("$.missing > 1", ITEM)
        assert not evaluate_condition("$.missing < 1", ITEM)

    def test_string_operators(self):
        assert evaluate_condition("$.email endsWith '@example.com'", ITEM)
        assert evaluate_condition("$.name startswith 'Al'", ITEM)
        assert evaluate_condition("$.name contains 'lic'", ITEM)

    def test_list_membership(self):
        assert evaluate_condition("$.tags contains 'dev'", ITEM)
        assert evaluate_condition("'admin' in $.tags", ITEM)
        assert evaluate_condition("'ops' notin $.tags", ITEM)

    def test_matches(self):
        assert evaluate_condition("$.email matches '^[a-z]+@'", ITEM)

    def test_unsafe_regex_never_matches(self):
        assert not evaluate_condition("$.name matches '(a+)+$'", ITEM)


class TestLogic:
    def test_word_and_symbol_forms(self):
        assert evaluate_condition("$.age > 18 and not ($.name == 'Bob')", ITEM)
        assert evaluate_condition("$.age < 18 || $.name == 'Alice'", ITEM)

    def test_and_short_circuits(self):
        with patch("testflow_engine.transform.expressions.query_path") as mock_query:
            assert evaluate_condition("false && $.age > 1", ITEM) is False
        mock_query.assert_not_called()

    def test_or_short_circuits(self):
        with patch("testflow_engine.transform.expressions.query_path") as mock_query:
            assert evaluate_condition("true || $.age > 1", ITEM) is True
        mock_query.assert_not_called()


class TestValues:
    def test_arithmetic(self):
        assert evaluate_expression("$.price * 2", ITEM) == 5.0
        assert evaluate_expression("$.price*2", ITEM) == 5.0
        assert evaluate_expression("10 / 4", ITEM) == 2.5
        assert evaluate_expression("8 / 4", ITEM) == 2
        assert evaluate_expression("7 % 3", ITEM) == 1

    def test_division_by_zero_is_none(self):
        assert evaluate_expression("1 / 0", ITEM) is None

    def test_string_concatenation(self):
        assert evaluate_expression("$.name + '!'", ITEM) == "Alice!"

    def test_functions(self):
        assert evaluate_expression("length($.tags)", ITEM) == 2
        assert evaluate_expression("round(2.5)", ITEM) == 3
        assert evaluate_expression("round(-2.5)", ITEM) == -3
        assert evaluate_expression("max(1, $.age, 7)", ITEM) == 30
        assert evaluate_expression("int('42')", ITEM) == 42
        assert evaluate_condition("isNull($.nick) && exists($.name)", ITEM)

    def test_quantifiers(self):
        data = {"items": [{"n": 1}, {"n": 5}]}
        assert evaluate_condition("any($.items, $.n > 3)", data)
        assert not evaluate_condition("all($.items, $.n > 3)", data)

    def test_list_literal(self):
        assert evaluate_condition("$.age in [10, 30]", ITEM)

    def test_item_refers_to_element(self):
        assert evaluate_expression("item * 2", 21) == 42

    def test_template_operand(self):
        ctx = TemplateContext(parameters={"limit": 18})
        assert evaluate_condition("$.age > {{{param:limit}}}", ITEM, ctx)

    def test_template_without_context_is_none(self):
        assert evaluate_expression("{{{param:limit}}}", ITEM) is None


class TestSyntax:
    def test_tokenize_paths_and_words(self):
        kinds = [t.kind for t in tokenize("$.a[0].b >= 3 AND name")]
        assert kinds == ["path", "op", "number", "op", "ident", "eof"]

    def test_parse_is_cached(self):
        assert parse("$.a == 1") is parse("$.a == 1")

    @pytest.mark.parametrize("expression", ["$.a ==", "($.a > 1", "'open", "unknownfn(1)", "$.a # 2", ""])
    def test_invalid_expressions(self, expression):
        with pytest.raises(ExpressionSyntaxError):
            parse(expression)

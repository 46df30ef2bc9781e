import pytest

from testflow_engine.assertions.engine import evaluate_all, evaluate_assertion, extract_value
from testflow_engine.assertions.operators import OPERATORS, get_operator
from testflow_engine.executor.http_client import DispatchResponse
from testflow_engine.models.assertion import (
    Assertion,
    AssertionDataSource,
    AssertionOperator,
    AssertionType,
)
from testflow_engine.template import TemplateContext


def _response(status=200, body=None, headers=None, timing_ms=12.0):
    return DispatchResponse(
        status=status,
        reason="OK" if status < 400 else "Not Found",
        headers=headers or {"Content-Type": "application/json"},
        body=body if body is not None else {"user": {"id": 7, "roles": ["a", "b"]}, "items": [1, 2, 3]},
        timing_ms=timing_ms,
    )


def _assertion(**kw):
    fields = {"id": "a1", "assertion_type": AssertionType.JSON_BODY, "operator": AssertionOperator.EQUALS}
    fields.update(kw)
    return Assertion(**fields)


def test_every_operator_has_a_handler():
    assert set(OPERATORS) == set(AssertionOperator)


def test_status_equals_passes():
    report = evaluate_all(
        [_assertion(assertion_type=AssertionType.STATUS_CODE, expected_value=200)],
        _response(),
    )
    assert report.passed
    assert report.results[0].message.startswith("Assertion passed")


def test_between_failure_reports_actual_value():
    report = evaluate_all(
        [_assertion(assertion_type=AssertionType.STATUS_CODE, operator=AssertionOperator.BETWEEN, expected_value=[200, 299])],
        _response(status=404),
    )
    assert not report.passed
    assert report.failure_index == 0
    assert "404" in report.failure_message


def test_response_only_types_force_response_source():
    a = _assertion(assertion_type=AssertionType.HEADER, data_source=AssertionDataSource.TRANSFORMED_DATA)
    assert a.data_source == AssertionDataSource.RESPONSE


def test_header_lookup_is_case_insensitive():
    a = _assertion(assertion_type=AssertionType.HEADER, data_id="content-type", operator=AssertionOperator.CONTAINS, expected_value="json")
    assert extract_value(a, _response()) == "application/json"
    assert evaluate_all([a], _response()).passed


def test_response_time():
    a = _assertion(assertion_type=AssertionType.RESPONSE_TIME, operator=AssertionOperator.LESS_THAN, expected_value=100)
    assert evaluate_all([a], _response(timing_ms=50)).passed
    assert not evaluate_all([a], _response(timing_ms=150)).passed


def test_json_body_path_and_pipeline():
    assert extract_value(_assertion(data_id="$.user.id"), _response()) == 7
    assert extract_value(_assertion(data_id="$.items | sum()"), _response()) == 6


def test_transformed_data_source():
    a = _assertion(data_source=AssertionDataSource.TRANSFORMED_DATA, data_id="ids", operator=AssertionOperator.HAS_LENGTH, expected_value=2)
    assert evaluate_all([a], _response(), transformed_data={"ids": [1, 2]}).passed


def test_template_expected_value():
    ctx = TemplateContext(parameters={"uid": 7})
    a = _assertion(data_id="$.user.id", expected_value="{{{param:uid}}}", is_template_expression=True)
    result = evaluate_assertion(a, 7, ctx)
    assert result.passed
    assert result.expected_value == 7
    assert result.original_expected_value == "{{{param:uid}}}"
    assert "{{{param:uid}}} → 7" in result.message


def test_template_resolution_failure_fails_assertion():
    a = _assertion(expected_value="{{{param:missing}}}", is_template_expression=True)
    result = evaluate_assertion(a, 1, TemplateContext())
    assert not result.passed
    assert result.message.startswith("Template resolution failed")


def test_extraction_error_is_reported():
    report = evaluate_all([_assertion(data_id="$.items | nope()")], _response())
    assert not report.passed
    assert report.results[0].message.startswith("Error extracting assertion value")


def test_stop_at_first_failure():
    assertions = [
        _assertion(id="a1", assertion_type=AssertionType.STATUS_CODE, expected_value=201),
        _assertion(id="a2", data_id="$.user.id", expected_value=8),
    ]
    assert len(evaluate_all(assertions, _response()).results) == 1
    report = evaluate_all(assertions, _response(), stop_at_first_failure=False)
    assert len(report.results) == 2
    assert report.failure_index == 0


def test_disabled_assertions_are_skipped():
    report = evaluate_all([_assertion(expected_value="nope", enabled=False)], _response())
    assert report.passed
    assert report.results == []


@pytest.mark.parametrize(
    "operator, actual, expected, outcome",
    [
        (AssertionOperator.EQUALS, {"a": [1, 2]}, {"a": [1, 2]}, True),
        (AssertionOperator.EQUALS, 200, "200", True),
        (AssertionOperator.EQUALS, True, 1, False),
        (AssertionOperator.NOT_EQUALS, "a", "b", True),
        (AssertionOperator.CONTAINS, ["a", "b"], "b", True),
        (AssertionOperator.NOT_CONTAINS, "hello", "xyz", True),
        (AssertionOperator.EXISTS, 0, None, True),
        (AssertionOperator.GREATER_THAN_OR_EQUAL, "5", 5, True),
        (AssertionOperator.STARTS_WITH, "abc", "ab", True),
        (AssertionOperator.MATCHES_REGEX, "order-123", r"^order-\d+$", True),
        (AssertionOperator.IS_EMPTY, [], None, True),
        (AssertionOperator.NOT_BETWEEN, 5, "[1, 3]", True),
        (AssertionOperator.LENGTH_GREATER_THAN, "abcd", 3, True),
        (AssertionOperator.CONTAINS_ALL, ["a", "b", "c"], "a, c", True),
        (AssertionOperator.NOT_CONTAINS_ANY, ["a"], ["b", "c"], True),
        (AssertionOperator.ONE_OF, "b", ["a", "b"], True),
        (AssertionOperator.NOT_ONE_OF, "z", "a,b", True),
        (AssertionOperator.IS_TYPE, [1], "array", True),
        (AssertionOperator.IS_NULL, None, None, True),
        (AssertionOperator.IS_NOT_NULL, None, None, False),
    ],
)
def test_operators(operator, actual, expected, outcome):
    assert get_operator(operator)(actual, expected) is outcome

import json
import logging
from typing import Any

from testflow_engine.assertions.operators import get_operator
from testflow_engine.executor.http_client import DispatchResponse
from testflow_engine.models.assertion import (
    Assertion,
    AssertionDataSource,
    AssertionReport,
    AssertionResult,
    AssertionType,
)
from testflow_engine.template.renderer import TemplateContext, resolve
from testflow_engine.transform import pipeline
from testflow_engine.utils.exceptions import FlowEngineError

logger = logging.getLogger(__name__)


def extract_value(
    assertion: Assertion,
    response: DispatchResponse,
    transformed_data: dict[str, Any] | None = None,
    context: TemplateContext | None = None,
) -> Any:
    """Pick the value an assertion checks. Raises on a malformed ``data_id``."""
    if assertion.assertion_type == AssertionType.STATUS_CODE:
        return response.status
    if assertion.assertion_type == AssertionType.RESPONSE_TIME:
        return response.timing_ms
    if assertion.assertion_type == AssertionType.HEADER:
        return response.header(assertion.data_id)

    if assertion.data_source == AssertionDataSource.TRANSFORMED_DATA:
        source = transformed_data or {}
    else:
        source = response.body
    if not assertion.data_id.strip():
        return source
    return pipeline.run(assertion.data_id, source, context, alias=assertion.id)


def evaluate_assertion(
    assertion: Assertion,
    actual: Any,
    context: TemplateContext | None = None,
) -> AssertionResult:
    expected = assertion.expected_value
    if assertion.is_template_expression and context is not None:
        try:
            expected = resolve(assertion.expected_value, context)
        except FlowEngineError as e:
            return AssertionResult(
                assertion_id=assertion.id,
                passed=False,
                actual_value=actual,
                expected_value=assertion.expected_value,
                original_expected_value=assertion.expected_value,
                message=f"Template resolution failed: {e}",
                error=str(e),
            )

    passed = get_operator(assertion.operator)(actual, expected)

    shown = _render(expected)
    if assertion.is_template_expression:
        shown = f"{assertion.expected_value} → {shown}"
    description = f"{assertion.assertion_type.value} {assertion.data_id} {assertion.operator.value} {shown}"
    if passed:
        message = f"Assertion passed: {description}"
    else:
        message = f"Assertion failed: {description}, actual value: {_render(actual)}"

    return AssertionResult(
        assertion_id=assertion.id,
        passed=passed,
        actual_value=actual,
        expected_value=expected,
        original_expected_value=assertion.expected_value if assertion.is_template_expression else None,
        message=message,
    )


def evaluate_all(
    assertions: list[Assertion],
    response: DispatchResponse,
    transformed_data: dict[str, Any] | None = None,
    context: TemplateContext | None = None,
    stop_at_first_failure: bool = True,
) -> AssertionReport:
    """Evaluate enabled assertions in list order.

    ``failure_index`` is the position of the first failing assertion in
    *assertions*; with *stop_at_first_failure* nothing after it is evaluated.
    """
    report = AssertionReport()
    for index, assertion in enumerate(assertions):
        if not assertion.enabled:
            continue
        try:
            actual = extract_value(assertion, response, transformed_data, context)
        except FlowEngineError as e:
            message = f"Error extracting assertion value: {e}"
            result = AssertionResult(
                assertion_id=assertion.id,
                passed=False,
                expected_value=assertion.expected_value,
                original_expected_value=assertion.expected_value if assertion.is_template_expression else None,
                message=message,
                error=str(e),
            )
        else:
            result = evaluate_assertion(assertion, actual, context)

        report.results.append(result)
        logger.debug(result.message)
        if not result.passed and report.failure_index is None:
            report.passed = False
            report.failure_index = index
            report.failure_message = result.message
            if stop_at_first_failure:
                break
    return report


def _render(value: Any) -> str:
    try:
        return json.dumps(value, default=str)
    except (TypeError, ValueError):
        return str(value)

import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

from testflow_engine.assertions.engine import evaluate_all
from testflow_engine.config.settings import ExecutionPreferences
from testflow_engine.executor.http_client import (
    CookieJar,
    DispatchRequest,
    DispatchResponse,
    dispatch_with_retry,
)
from testflow_engine.executor.state_manager import RuntimeState
from testflow_engine.models.endpoint import EndpointDefinition, EndpointParameter
from testflow_engine.models.flow import StepEndpoint
from testflow_engine.models.run import (
    EndpointState,
    EndpointStatus,
    LogFn,
    LogLevel,
    RequestSnapshot,
    ResponseSnapshot,
    no_log,
)
from testflow_engine.template.renderer import TemplateContext, resolve, resolve_body
from testflow_engine.transform import pipeline
from testflow_engine.utils.exceptions import AssertionFailure, FlowEngineError, RunCancelledError
from testflow_engine.utils.values import stringify

_SEPARATORS = {
    "csv": ",",
    "form": ",",
    "ssv": " ",
    "spaceDelimited": " ",
    "tsv": "\t",
    "pipes": "|",
    "pipeDelimited": "|",
}


@dataclass
class EndpointJob:
    key: str
    step_endpoint: StepEndpoint
    definition: EndpointDefinition
    host: str


# ── Request building ────────────────────────────────────────────────


def build_request(job: EndpointJob, context: TemplateContext) -> DispatchRequest:
    """Resolve every templated part of the call. Raises ResolutionError."""
    step_endpoint, definition = job.step_endpoint, job.definition

    url = job.host.rstrip("/") + "/" + definition.path.lstrip("/")
    for name, value in step_endpoint.path_params.items():
        resolved = stringify(resolve(value, context))
        url = url.replace("{" + name + "}", quote(resolved, safe=""))

    query: dict[str, Any] = {}
    for name, value in step_endpoint.query_params.items():
        resolved = resolve(value, context)
        if resolved is None:
            continue
        param = definition.parameter(name)
        if param is not None and param.type == "array":
            serialized = serialize_array(resolved, param)
        elif isinstance(resolved, list):
            serialized = [stringify(v) for v in resolved]
        else:
            serialized = stringify(resolved)
        query[name] = serialized

    headers = {
        h.name: stringify(resolve(h.value, context))
        for h in step_endpoint.headers
        if h.enabled
    }
    body = resolve_body(step_endpoint.body, context) if step_endpoint.body is not None else None

    return DispatchRequest(method=definition.method.upper(), url=url, headers=headers, query=query, body=body)


def split_array(value: Any, param: EndpointParameter) -> list[Any]:
    if isinstance(value, list):
        return value
    text = stringify(value)
    style = param.collection_format or param.style or "csv"
    if style == "multi":
        return [text]
    return text.split(_SEPARATORS.get(style, ","))


def serialize_array(value: Any, param: EndpointParameter) -> str | list[str]:
    """Query serialization of an array parameter.

    A list return value repeats the key once per item.
    """
    items = [stringify(v) for v in split_array(value, param)]
    style = param.collection_format or param.style or "csv"
    explode = param.explode is not False
    if style in ("csv", "form"):
        return items if explode else ",".join(items)
    if style in _SEPARATORS:
        return _SEPARATORS[style].join(items)
    return items


# ── Execution ───────────────────────────────────────────────────────


def execute(
    job: EndpointJob,
    context: TemplateContext,
    state: RuntimeState,
    generation: int,
    preferences: ExecutionPreferences,
    cookie_jar: CookieJar | None = None,
    cancel_event: threading.Event | None = None,
    timeout: float | None = None,
    log: LogFn = no_log,
) -> EndpointState:
    """Resolve, dispatch, transform and assert one step endpoint.

    Results are written to *state* under ``job.key`` (and the
    ``store_response_as`` alias) unless *generation* went stale meanwhile.
    Per-endpoint failures are captured in the returned state;
    RunCancelledError propagates.
    """
    step_endpoint = job.step_endpoint
    endpoint_state = EndpointState(status=EndpointStatus.RUNNING, started_at=datetime.now(timezone.utc))
    state.set_endpoint_state(generation, job.key, endpoint_state)

    try:
        request = build_request(job, context)
        endpoint_state.request = RequestSnapshot(**request.model_dump())
        log(LogLevel.DEBUG, f"Request {job.key}: {request.method} {request.url}", _headers_detail(request.headers))

        proxy_url = preferences.proxy_url if preferences.server_cookie_handling else None
        response, attempts = dispatch_with_retry(
            request,
            retry_count=preferences.retry_count,
            retry_delay=preferences.retry_delay,
            cancel_event=cancel_event,
            timeout=timeout if timeout is not None else preferences.timeout,
            proxy_url=proxy_url,
            cookie_jar=cookie_jar,
        )
        endpoint_state.attempts = attempts
        endpoint_state.timing_ms = response.timing_ms
        endpoint_state.response = ResponseSnapshot(
            status=response.status, reason=response.reason, headers=response.headers, body=response.body
        )
        if response.decode_note:
            log(LogLevel.DEBUG, f"Decoded response for {job.key}", f"Decoder: {response.decode_note}")

        if not state.store_response(generation, job.key, response.body, alias=step_endpoint.store_response_as):
            log(LogLevel.DEBUG, f"Discarding stale response for {job.key}", f"Generation {generation}")
            return endpoint_state
        log(LogLevel.DEBUG, f"Stored response for endpoint: {job.key}", f"Status {response.status}")

        # The endpoint's own response is visible to its transformations and assertions
        context.responses[job.key] = response.body
        if step_endpoint.store_response_as:
            context.responses[step_endpoint.store_response_as] = response.body

        transformed = _apply_transformations(job, response, context, log)
        endpoint_state.transformations = transformed
        if step_endpoint.transformations:
            state.store_transformations(generation, job.key, transformed)
            context.transformations[job.key] = transformed

        _finish(job, endpoint_state, response, transformed, context, preferences, log)
    except RunCancelledError:
        raise
    except FlowEngineError as e:
        endpoint_state.status = EndpointStatus.FAILED
        endpoint_state.error = str(e)
        log(LogLevel.ERROR, f"Endpoint {job.key} failed", str(e))

    endpoint_state.finished_at = datetime.now(timezone.utc)
    if not state.set_endpoint_state(generation, job.key, endpoint_state):
        log(LogLevel.DEBUG, f"Discarding stale endpoint state for {job.key}", f"Generation {generation}")
    return endpoint_state


def _apply_transformations(
    job: EndpointJob,
    response: DispatchResponse,
    context: TemplateContext,
    log: LogFn,
) -> dict[str, Any]:
    transformed: dict[str, Any] = {}
    for transformation in job.step_endpoint.transformations:
        if not transformation.expression.strip():
            transformed[transformation.alias] = response.body
            continue
        value = pipeline.run(transformation.expression, response.body, context, alias=transformation.alias)
        transformed[transformation.alias] = value
        if value is None:
            log(LogLevel.WARNING, f"Transformation returned no value: {transformation.alias}", f"Expression: {transformation.expression}")
        else:
            log(LogLevel.DEBUG, f"Applied transformation: {transformation.alias}", f"Value: {json.dumps(value, default=str)}")
    return transformed


def _finish(
    job: EndpointJob,
    endpoint_state: EndpointState,
    response: DispatchResponse,
    transformed: dict[str, Any],
    context: TemplateContext,
    preferences: ExecutionPreferences,
    log: LogFn,
) -> None:
    """Check assertions, then the status code. Raises AssertionFailure."""
    step_endpoint = job.step_endpoint
    if step_endpoint.assertions:
        report = evaluate_all(
            step_endpoint.assertions,
            response,
            transformed,
            context,
            stop_at_first_failure=preferences.stop_on_error,
        )
        endpoint_state.assertions = report
        for result in report.results:
            log(LogLevel.DEBUG if result.passed else LogLevel.ERROR, result.message, result.error)
        if not report.passed:
            failed = step_endpoint.assertions[report.failure_index]
            raise AssertionFailure(failed.id, report.failure_message or f"Assertion failed: {failed.id}")

    if step_endpoint.skip_default_status_check:
        log(LogLevel.DEBUG, f"Skipped default status check for endpoint {job.key}", f"Response status: {response.status}")
    elif not response.ok:
        endpoint_state.status = EndpointStatus.FAILED
        endpoint_state.error = f"Request failed with status {response.status}: {response.reason}"
        return

    endpoint_state.status = EndpointStatus.COMPLETED


def _headers_detail(headers: dict[str, str]) -> str | None:
    if not headers:
        return None
    return "Headers: " + ", ".join(headers)

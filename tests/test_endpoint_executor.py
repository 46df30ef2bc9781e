import pytest
import responses

from testflow_engine.config.settings import ExecutionPreferences
from testflow_engine.executor.endpoint_executor import EndpointJob, build_request, execute, serialize_array
from testflow_engine.executor.state_manager import RuntimeState
from testflow_engine.models.assertion import Assertion, AssertionOperator, AssertionType
from testflow_engine.models.endpoint import EndpointDefinition, EndpointParameter
from testflow_engine.models.flow import HeaderEntry, StepEndpoint, Transformation
from testflow_engine.models.run import EndpointStatus
from testflow_engine.template import TemplateContext
from testflow_engine.utils.exceptions import ResolutionError

HOST = "http://api.test"

SEARCH = EndpointDefinition(
    id="search",
    api_id="shop",
    method="get",
    path="/items/{category}",
    parameters=[
        EndpointParameter(name="category", location="path"),
        EndpointParameter(name="tags", type="array"),
        EndpointParameter(name="ids", type="array", collection_format="pipes"),
        EndpointParameter(name="sizes", type="array", style="form", explode=False),
    ],
)


def _job(step_endpoint, definition=SEARCH, key="s1-0"):
    return EndpointJob(key=key, step_endpoint=step_endpoint, definition=definition, host=HOST)


class TestBuildRequest:
    def test_path_query_headers_and_body(self):
        ctx = TemplateContext(parameters={"cat": "a b/c", "ids": [1, 2], "token": "t"})
        step_endpoint = StepEndpoint(
            endpoint_id="search",
            path_params={"category": "{{param:cat}}"},
            query_params={"ids": "{{{param:ids}}}", "tags": "x,y", "sizes": ["s", "m"], "q": 3},
            headers=[
                HeaderEntry(name="Authorization", value="Bearer {{param:token}}"),
                HeaderEntry(name="X-Off", value="1", enabled=False),
            ],
            body='{"ids": {{{param:ids}}}}',
        )
        request = build_request(_job(step_endpoint), ctx)
        assert request.method == "GET"
        assert request.url == "http://api.test/items/a%20b%2Fc"
        assert request.query == {"ids": "1|2", "tags": ["x", "y"], "sizes": "s,m", "q": "3"}
        assert request.headers == {"Authorization": "Bearer t"}
        assert request.body == {"ids": [1, 2]}

    def test_unresolved_native_value_raises(self):
        step_endpoint = StepEndpoint(endpoint_id="search", query_params={"q": "{{{res:missing.$.id}}}"})
        with pytest.raises(ResolutionError):
            build_request(_job(step_endpoint), TemplateContext())

    @pytest.mark.parametrize(
        "param, value, expected",
        [
            (EndpointParameter(name="p", type="array"), "a,b", ["a", "b"]),
            (EndpointParameter(name="p", type="array", explode=False), ["a", "b"], "a,b"),
            (EndpointParameter(name="p", type="array", collection_format="ssv"), "a b", "a b"),
            (EndpointParameter(name="p", type="array", style="spaceDelimited"), ["a", "b"], "a b"),
            (EndpointParameter(name="p", type="array", collection_format="tsv"), ["a", "b"], "a\tb"),
            (EndpointParameter(name="p", type="array", style="pipeDelimited"), "a|b", "a|b"),
            (EndpointParameter(name="p", type="array", collection_format="multi"), "a", ["a"]),
            (EndpointParameter(name="p", type="array", collection_format="multi"), [1, True], ["1", "true"]),
        ],
    )
    def test_array_serialization(self, param, value, expected):
        assert serialize_array(value, param) == expected


def _run(step_endpoint, prefs=None, state=None):
    state = state or RuntimeState(generation=1)
    endpoint_state = execute(_job(step_endpoint), state.template_context(), state, 1, prefs or ExecutionPreferences())
    return endpoint_state, state


@responses.activate
def test_success_stores_response_transformations_and_alias():
    responses.add(responses.GET, f"{HOST}/items/books", json={"items": [{"id": 1, "p": 5}, {"id": 2, "p": 15}]})
    step_endpoint = StepEndpoint(
        endpoint_id="search",
        path_params={"category": "books"},
        transformations=[Transformation(alias="cheap", expression="$.items | where($.p < 10) | map($.id)")],
        assertions=[
            Assertion(id="a1", assertion_type=AssertionType.STATUS_CODE, operator=AssertionOperator.EQUALS, expected_value=200),
            Assertion(id="a2", assertion_type=AssertionType.JSON_BODY, data_source="transformed_data",
                      data_id="cheap", operator=AssertionOperator.EQUALS, expected_value=[1]),
        ],
        store_response_as="catalog",
    )
    endpoint_state, state = _run(step_endpoint)
    assert endpoint_state.status == EndpointStatus.COMPLETED
    assert endpoint_state.attempts == 1
    assert endpoint_state.request.url == f"{HOST}/items/books"
    assert endpoint_state.transformations == {"cheap": [1]}
    assert endpoint_state.assertions.passed
    snapshot = state.snapshot()
    assert snapshot["responses"]["s1-0"] == snapshot["responses"]["catalog"]
    assert snapshot["transformations"]["s1-0"] == {"cheap": [1]}
    assert snapshot["endpoint_states"]["s1-0"].status == EndpointStatus.COMPLETED


@responses.activate
def test_non_2xx_fails_unless_check_skipped():
    responses.add(responses.GET, f"{HOST}/items/x", json={"error": "gone"}, status=410)
    failed, _ = _run(StepEndpoint(endpoint_id="search", path_params={"category": "x"}))
    assert failed.status == EndpointStatus.FAILED
    assert "410" in failed.error

    skipped, _ = _run(StepEndpoint(endpoint_id="search", path_params={"category": "x"}, skip_default_status_check=True))
    assert skipped.status == EndpointStatus.COMPLETED


@responses.activate
def test_failed_assertion_fails_endpoint():
    responses.add(responses.GET, f"{HOST}/items/x", json={"n": 1})
    step_endpoint = StepEndpoint(
        endpoint_id="search",
        path_params={"category": "x"},
        assertions=[Assertion(id="a1", assertion_type=AssertionType.JSON_BODY, data_id="$.n",
                              operator=AssertionOperator.GREATER_THAN, expected_value=5)],
    )
    logged = []
    state = RuntimeState(generation=1)
    endpoint_state = execute(_job(step_endpoint), state.template_context(), state, 1, ExecutionPreferences(),
                             log=lambda level, message, details=None: logged.append((message, details)))
    assert endpoint_state.status == EndpointStatus.FAILED
    assert endpoint_state.error == endpoint_state.assertions.failure_message
    assert endpoint_state.error.startswith("Assertion failed: json_body $.n greater_than 5")
    assert endpoint_state.assertions.failure_index == 0
    assert ("Endpoint s1-0 failed", endpoint_state.error) in logged


@responses.activate
def test_bad_transformation_fails_endpoint():
    responses.add(responses.GET, f"{HOST}/items/x", json={"n": 1})
    step_endpoint = StepEndpoint(
        endpoint_id="search",
        path_params={"category": "x"},
        transformations=[Transformation(alias="bad", expression="$.n | nosuchstage()")],
    )
    endpoint_state, _ = _run(step_endpoint)
    assert endpoint_state.status == EndpointStatus.FAILED
    assert "Transformation 'bad' failed" in endpoint_state.error


def test_resolution_error_is_captured_without_dispatch():
    step_endpoint = StepEndpoint(endpoint_id="search", path_params={"category": "{{{res:nope.$.id}}}"})
    endpoint_state, _ = _run(step_endpoint)
    assert endpoint_state.status == EndpointStatus.FAILED
    assert "Response data not found" in endpoint_state.error
    assert endpoint_state.response is None


@responses.activate
def test_stale_generation_is_discarded():
    responses.add(responses.GET, f"{HOST}/items/x", json={"n": 1})
    state = RuntimeState(generation=1)
    context = state.template_context()
    state.advance(2)
    execute(_job(StepEndpoint(endpoint_id="search", path_params={"category": "x"})), context, state, 1, ExecutionPreferences())
    snapshot = state.snapshot()
    assert snapshot["responses"] == {}
    assert snapshot["endpoint_states"] == {}


@responses.activate
def test_stage_time_path_error_is_recorded_on_endpoint():
    responses.add(responses.GET, f"{HOST}/items/x", json={"items": [{"a": 2}, {"a": 1}]})
    step_endpoint = StepEndpoint(
        endpoint_id="search",
        path_params={"category": "x"},
        transformations=[Transformation(alias="ordered", expression='$.items | sort("a[")')],
    )
    endpoint_state, state = _run(step_endpoint)
    assert endpoint_state.status == EndpointStatus.FAILED
    assert endpoint_state.error.startswith("Transformation 'ordered' failed: Unterminated bracket")
    assert state.snapshot()["endpoint_states"]["s1-0"].status == EndpointStatus.FAILED


@responses.activate
def test_assertions_can_reference_own_response():
    responses.add(responses.GET, f"{HOST}/items/x", json={"items": [{"id": 3}], "first": 3})
    step_endpoint = StepEndpoint(
        endpoint_id="search",
        path_params={"category": "x"},
        transformations=[Transformation(alias="ids", expression="$.items | map($.id)")],
        assertions=[
            Assertion(id="a1", assertion_type=AssertionType.JSON_BODY, data_id="$.first",
                      operator=AssertionOperator.EQUALS, expected_value="{{{res:s1-0.$.items[0].id}}}",
                      is_template_expression=True),
            Assertion(id="a2", assertion_type=AssertionType.JSON_BODY, data_id="$.first",
                      operator=AssertionOperator.EQUALS, expected_value="{{{proc:s1-0.$.ids[0]}}}",
                      is_template_expression=True),
        ],
    )
    endpoint_state, _ = _run(step_endpoint)
    assert endpoint_state.status == EndpointStatus.COMPLETED
    assert endpoint_state.assertions.passed

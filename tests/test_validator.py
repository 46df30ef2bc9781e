import pytest

from testflow_engine.executor.validator import resolve_host, validate
from testflow_engine.models.assertion import Assertion, AssertionOperator, AssertionType
from testflow_engine.models.endpoint import EndpointDefinition
from testflow_engine.models.flow import (
    ApiHost,
    EnvironmentContext,
    FlowDefinition,
    FlowSettings,
    FlowStep,
    StepEndpoint,
    Transformation,
)
from testflow_engine.utils.exceptions import ConfigurationError

ENDPOINTS = {
    "get-user": EndpointDefinition(id="get-user", api_id="users", path="/users/{id}"),
    "list": EndpointDefinition(id="list", api_id="users", path="/users"),
}


def _flow(steps, hosts=None):
    return FlowDefinition(
        id="f",
        steps=steps,
        settings=FlowSettings(api_hosts=hosts if hosts is not None else {"users": ApiHost(url="http://flow.host")}),
    )


def test_valid_flow_passes():
    flow = _flow([
        FlowStep(step_id="s1", endpoints=[StepEndpoint(endpoint_id="list")]),
        FlowStep(step_id="s2", endpoints=[StepEndpoint(endpoint_id="get-user", path_params={"id": "{{res:s1-0.$[0].id}}"})]),
    ])
    validate(flow, ENDPOINTS)


def test_environment_host_overrides_flow_host():
    flow = _flow([])
    env = EnvironmentContext(api_hosts={"users": "http://env.host"})
    assert resolve_host("users", flow, env) == "http://env.host"
    assert resolve_host("users", flow, None) == "http://flow.host"
    assert resolve_host("other", flow, env) is None


def test_duplicate_step_ids():
    flow = _flow([FlowStep(step_id="s1"), FlowStep(step_id="s1")])
    with pytest.raises(ConfigurationError, match="Duplicate step id"):
        validate(flow, ENDPOINTS)


def test_unknown_endpoint():
    flow = _flow([FlowStep(step_id="s1", endpoints=[StepEndpoint(endpoint_id="nope")])])
    with pytest.raises(ConfigurationError, match="unknown endpoint: nope"):
        validate(flow, ENDPOINTS)


def test_missing_host():
    flow = _flow([FlowStep(step_id="s1", endpoints=[StepEndpoint(endpoint_id="list")])], hosts={})
    with pytest.raises(ConfigurationError, match="No host configured for API"):
        validate(flow, ENDPOINTS)


def test_forward_reference_rejected():
    flow = _flow([
        FlowStep(step_id="s1", endpoints=[StepEndpoint(endpoint_id="get-user", path_params={"id": "{{res:s2-0.$.id}}"})]),
        FlowStep(step_id="s2", endpoints=[StepEndpoint(endpoint_id="list")]),
    ])
    with pytest.raises(ConfigurationError, match="has not run yet"):
        validate(flow, ENDPOINTS)


def test_sibling_reference_depends_on_mode():
    flow = _flow([
        FlowStep(step_id="s1", endpoints=[
            StepEndpoint(endpoint_id="list"),
            StepEndpoint(endpoint_id="get-user", path_params={"id": "{{res:s1-0.$[0].id}}"}),
        ]),
    ])
    validate(flow, ENDPOINTS, parallel=False)
    with pytest.raises(ConfigurationError):
        validate(flow, ENDPOINTS, parallel=True)


def test_own_response_usable_after_dispatch_only():
    checks_own = StepEndpoint(
        endpoint_id="list",
        store_response_as="people",
        transformations=[Transformation(alias="n", expression="$ | where($.id == {{{res:people.$[0].id}}}) | count()")],
        assertions=[Assertion(id="a1", assertion_type=AssertionType.JSON_BODY, data_id="$[0].id",
                              operator=AssertionOperator.EQUALS, expected_value="{{{res:s1-0.$[0].id}}}",
                              is_template_expression=True)],
    )
    validate(_flow([FlowStep(step_id="s1", endpoints=[checks_own])]), ENDPOINTS)

    uses_own_in_request = StepEndpoint(endpoint_id="get-user", path_params={"id": "{{res:s1-0.$.id}}"})
    with pytest.raises(ConfigurationError, match="references s1-0"):
        validate(_flow([FlowStep(step_id="s1", endpoints=[uses_own_in_request])]), ENDPOINTS)

from typing import Any

from testflow_engine.executor.state_manager import endpoint_key
from testflow_engine.models.endpoint import EndpointDefinition
from testflow_engine.models.flow import EnvironmentContext, FlowDefinition, StepEndpoint
from testflow_engine.template.renderer import extract_references
from testflow_engine.template.tokenizer import TemplateSource
from testflow_engine.utils.exceptions import ConfigurationError


def resolve_host(api_id: str, flow: FlowDefinition, environment: EnvironmentContext | None) -> str | None:
    """Base URL for *api_id*: environment override first, then flow settings."""
    if environment is not None:
        url = environment.api_hosts.get(str(api_id))
        if url:
            return url
    host = flow.settings.api_hosts.get(str(api_id))
    if host is not None and host.url:
        return host.url
    return None


def api_id_for(step_endpoint: StepEndpoint, definition: EndpointDefinition) -> str:
    return str(step_endpoint.api_id or definition.api_id)


def validate(
    flow: FlowDefinition,
    endpoints: dict[str, EndpointDefinition],
    environment: EnvironmentContext | None = None,
    parallel: bool = True,
) -> None:
    _check_unique_step_ids(flow)
    _check_endpoint_definitions(flow, endpoints)
    _check_hosts(flow, endpoints, environment)
    _check_references(flow, parallel)


def _check_unique_step_ids(flow: FlowDefinition) -> None:
    seen: set[str] = set()
    for step in flow.steps:
        if step.step_id in seen:
            raise ConfigurationError(f"Duplicate step id: {step.step_id}")
        seen.add(step.step_id)


def _check_endpoint_definitions(flow: FlowDefinition, endpoints: dict[str, EndpointDefinition]) -> None:
    for step in flow.steps:
        for step_endpoint in step.endpoints:
            if str(step_endpoint.endpoint_id) not in endpoints:
                raise ConfigurationError(
                    f"Step {step.step_id} references unknown endpoint: {step_endpoint.endpoint_id}"
                )


def _check_hosts(
    flow: FlowDefinition,
    endpoints: dict[str, EndpointDefinition],
    environment: EnvironmentContext | None,
) -> None:
    missing: set[str] = set()
    for step in flow.steps:
        for step_endpoint in step.endpoints:
            definition = endpoints[str(step_endpoint.endpoint_id)]
            api_id = api_id_for(step_endpoint, definition)
            if resolve_host(api_id, flow, environment) is None:
                missing.add(api_id)
    if missing:
        raise ConfigurationError(
            f"No host configured for API(s): {', '.join(sorted(missing))}. "
            "Set a host in the flow settings or the selected environment."
        )


def _check_references(flow: FlowDefinition, parallel: bool) -> None:
    all_keys = {
        endpoint_key(step.step_id, i)
        for step in flow.steps
        for i in range(len(step.endpoints))
    } | {e.store_response_as for step in flow.steps for e in step.endpoints if e.store_response_as}

    available: set[str] = set()
    for step in flow.steps:
        step_keys: set[str] = set()
        for index, step_endpoint in enumerate(step.endpoints):
            visible = available if parallel else available | step_keys
            own = {endpoint_key(step.step_id, index)}
            if step_endpoint.store_response_as:
                own.add(step_endpoint.store_response_as)

            # Transformations and assertions run after the endpoint's own response is stored
            checks = [(_request_keys(step_endpoint), visible), (_response_keys(step_endpoint), visible | own)]
            for keys, allowed in checks:
                for key in keys:
                    if key not in all_keys:
                        continue  # unknown keys are reported at resolution time
                    if key not in allowed:
                        raise ConfigurationError(
                            f"Step {step.step_id} endpoint {index} references {key}, "
                            "which has not run yet at that point"
                        )
            step_keys |= own
        available |= step_keys


def _request_keys(step_endpoint: StepEndpoint) -> set[str]:
    return _keys_in([
        step_endpoint.path_params,
        step_endpoint.query_params,
        [h.value for h in step_endpoint.headers if h.enabled],
        step_endpoint.body,
    ])


def _response_keys(step_endpoint: StepEndpoint) -> set[str]:
    return _keys_in([
        [t.expression for t in step_endpoint.transformations],
        [a.expected_value for a in step_endpoint.assertions if a.is_template_expression],
    ])


def _keys_in(templated: list[Any]) -> set[str]:
    keys: set[str] = set()
    for span in extract_references(templated):
        if span.source in (TemplateSource.RES, TemplateSource.PROC):
            keys.add(span.expression.split(".", 1)[0])
    return keys

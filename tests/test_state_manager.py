from testflow_engine.executor.state_manager import RuntimeState, endpoint_key
from testflow_engine.models.run import EndpointState, EndpointStatus


def test_endpoint_key():
    assert endpoint_key("login", 0) == "login-0"


def test_store_and_snapshot():
    state = RuntimeState(generation=1)
    assert state.store_response(1, "s-0", {"id": 1}, alias="user")
    assert state.store_transformations(1, "s-0", {"ids": [1]})
    assert state.set_endpoint_state(1, "s-0", EndpointState(status=EndpointStatus.COMPLETED))

    snapshot = state.snapshot()
    assert snapshot["responses"] == {"s-0": {"id": 1}, "user": {"id": 1}}
    assert snapshot["transformations"] == {"s-0": {"ids": [1]}}
    assert state.endpoint_state("s-0").status == EndpointStatus.COMPLETED


def test_stale_generation_writes_are_rejected():
    state = RuntimeState(generation=1)
    state.advance(2)
    assert not state.is_current(1)
    assert not state.store_response(1, "s-0", {"id": 1})
    assert not state.store_transformations(1, "s-0", {})
    assert not state.set_endpoint_state(1, "s-0", EndpointState(status=EndpointStatus.FAILED))
    assert state.snapshot() == {"responses": {}, "transformations": {}, "endpoint_states": {}}


def test_template_context_is_a_copy():
    state = RuntimeState(generation=1, parameters={"p": 1}, environment={"E": "x"})
    state.store_response(1, "s-0", {"items": [1]})
    ctx = state.template_context()
    ctx.responses["s-0"]["items"].append(2)
    state.store_response(1, "s-1", {})

    assert state.snapshot()["responses"]["s-0"] == {"items": [1]}
    assert "s-1" not in ctx.responses
    assert ctx.parameters == {"p": 1}
    assert ctx.environment == {"E": "x"}

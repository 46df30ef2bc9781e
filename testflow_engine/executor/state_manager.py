import copy
import threading
from typing import Any

from testflow_engine.models.run import EndpointState
from testflow_engine.template.renderer import TemplateContext
from testflow_engine.template.functions import TemplateFunction


def endpoint_key(step_id: str, index: int) -> str:
    return f"{step_id}-{index}"


class RuntimeState:
    """Per-run store of responses, transformed values and endpoint states.

    Every write carries the generation it was produced under; writes from an
    older generation are rejected so a reset never sees stale results.
    """

    def __init__(
        self,
        generation: int = 0,
        parameters: dict[str, Any] | None = None,
        environment: dict[str, Any] | None = None,
        parameter_defaults: dict[str, Any] | None = None,
        environment_defaults: dict[str, Any] | None = None,
        functions: dict[str, TemplateFunction] | None = None,
    ) -> None:
        self.generation = generation
        self._parameters = dict(parameters or {})
        self._environment = dict(environment or {})
        self._parameter_defaults = dict(parameter_defaults or {})
        self._environment_defaults = dict(environment_defaults or {})
        self._functions = dict(functions or {})
        self._responses: dict[str, Any] = {}
        self._transformations: dict[str, dict[str, Any]] = {}
        self._endpoint_states: dict[str, EndpointState] = {}
        self._lock = threading.Lock()

    @property
    def parameters(self) -> dict[str, Any]:
        return dict(self._parameters)

    def is_current(self, generation: int) -> bool:
        return generation == self.generation

    def advance(self, generation: int) -> None:
        """Move to *generation*; writes tagged with the old one are rejected."""
        with self._lock:
            self.generation = generation

    def store_response(self, generation: int, key: str, body: Any, alias: str | None = None) -> bool:
        with self._lock:
            if not self.is_current(generation):
                return False
            self._responses[key] = body
            if alias:
                self._responses[alias] = body
            return True

    def store_transformations(self, generation: int, key: str, values: dict[str, Any]) -> bool:
        with self._lock:
            if not self.is_current(generation):
                return False
            self._transformations[key] = dict(values)
            return True

    def set_endpoint_state(self, generation: int, key: str, state: EndpointState) -> bool:
        with self._lock:
            if not self.is_current(generation):
                return False
            self._endpoint_states[key] = state
            return True

    def endpoint_state(self, key: str) -> EndpointState | None:
        with self._lock:
            return self._endpoint_states.get(key)

    def template_context(self) -> TemplateContext:
        """A frozen view for template resolution; later writes do not leak in."""
        with self._lock:
            return TemplateContext(
                responses=copy.deepcopy(self._responses),
                transformations=copy.deepcopy(self._transformations),
                parameters=dict(self._parameters),
                environment=dict(self._environment),
                parameter_defaults=dict(self._parameter_defaults),
                environment_defaults=dict(self._environment_defaults),
                functions=dict(self._functions),
            )

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "responses": copy.deepcopy(self._responses),
                "transformations": copy.deepcopy(self._transformations),
                "endpoint_states": {k: s.model_copy(deep=True) for k, s in self._endpoint_states.items()},
            }

import json
from typing import Any

from testflow_engine.models.flow import EnvironmentContext, FlowDefinition, FlowParameter
from testflow_engine.models.run import LogFn, LogLevel, no_log


class ParameterManager:
    """Resolves flow parameter values for one run.

    Precedence: value supplied by the caller, then the mapped environment
    variable, then the parameter's stored value, then its default.
    """

    def __init__(
        self,
        flow: FlowDefinition,
        environment: EnvironmentContext | None = None,
        log: LogFn | None = None,
    ) -> None:
        self.flow = flow
        self.environment = environment or EnvironmentContext()
        self.log = log or no_log

    def prepare(self, supplied: dict[str, Any] | None = None) -> dict[str, Any]:
        supplied = supplied or {}
        values: dict[str, Any] = {}
        mappings = self.flow.settings.parameter_mappings

        for parameter in self.flow.parameters:
            value, source = self._resolve_one(parameter, supplied, mappings)
            if value is None:
                self.log(LogLevel.WARNING, f"Parameter '{parameter.name}' has no value", None)
                continue
            values[parameter.name] = value
            self.log(LogLevel.INFO, f"Parameter '{parameter.name}' = {json.dumps(value, default=str)} (from {source})", None)

        # Values for names the flow does not declare are passed through
        for name, value in supplied.items():
            values.setdefault(name, value)
        return values

    def _resolve_one(
        self,
        parameter: FlowParameter,
        supplied: dict[str, Any],
        mappings: dict[str, str],
    ) -> tuple[Any, str]:
        if supplied.get(parameter.name) is not None:
            return supplied[parameter.name], "caller"

        variable = mappings.get(parameter.name)
        if variable:
            env_value = self.environment.variables.get(variable)
            if env_value is None:
                env_value = self.environment.defaults.get(variable)
            if env_value is not None:
                self.log(LogLevel.DEBUG, f"Parameter '{parameter.name}' resolved from environment variable '{variable}'", None)
                return env_value, f"environment variable '{variable}'"
            self.log(
                LogLevel.WARNING,
                f"Environment variable '{variable}' not found for parameter '{parameter.name}', falling back to default value",
                None,
            )

        if parameter.value is not None:
            return parameter.value, "stored value"
        if parameter.default_value is not None:
            return parameter.default_value, "default value"
        return None, "none"

    def defaults(self) -> dict[str, Any]:
        return {p.name: p.default_value for p in self.flow.parameters if p.default_value is not None}

    def missing_required(self, values: dict[str, Any]) -> list[FlowParameter]:
        missing = [p for p in self.flow.parameters if p.required and values.get(p.name) is None]
        for parameter in missing:
            self.log(LogLevel.WARNING, f"Required parameter '{parameter.name}' is missing a value", None)
        return missing

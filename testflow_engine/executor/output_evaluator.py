import json
from typing import Any

from testflow_engine.models.flow import FlowOutput, ParameterType
from testflow_engine.models.run import LogFn, LogLevel, no_log
from testflow_engine.template.renderer import TemplateContext, resolve
from testflow_engine.utils.exceptions import FlowEngineError
from testflow_engine.utils.values import to_bool, to_float, to_string


def evaluate_outputs(
    outputs: list[FlowOutput],
    context: TemplateContext,
    log: LogFn = no_log,
) -> dict[str, Any]:
    """Evaluate named flow outputs; a failing output yields None."""
    results: dict[str, Any] = {}
    if not outputs:
        return results

    log(LogLevel.INFO, "Evaluating flow outputs", f"{len(outputs)} outputs to evaluate")
    for output in outputs:
        try:
            value = resolve(output.value, context) if output.is_template else output.value
            if output.type is not None:
                value = cast_output(value, output.type)
        except FlowEngineError as e:
            log(LogLevel.ERROR, f"Failed to evaluate output '{output.name}'", str(e))
            results[output.name] = None
            continue
        results[output.name] = value
        log(LogLevel.DEBUG, f"Output '{output.name}' evaluated", json.dumps(value, default=str))
    return results


def cast_output(value: Any, type_: ParameterType) -> Any:
    if type_ == ParameterType.STRING:
        return to_string(value, value)
    if type_ == ParameterType.NUMBER:
        return to_float(value, value)
    if type_ == ParameterType.BOOLEAN:
        return to_bool(value, value)
    if type_ == ParameterType.OBJECT:
        return _parse_json(value) if isinstance(value, str) else value
    if type_ == ParameterType.ARRAY:
        if isinstance(value, str):
            parsed = _parse_json(value)
            return parsed if isinstance(parsed, list) else [value]
        return value if isinstance(value, list) else [value]
    return None


def _parse_json(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        return text

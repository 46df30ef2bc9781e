class FlowEngineError(Exception):
    pass


class ConfigurationError(FlowEngineError):
    """Flow cannot start: missing host, unknown endpoint, missing parameter."""


class ResolutionError(FlowEngineError):
    pass


class ExpressionSyntaxError(FlowEngineError):
    pass


class PathSyntaxError(ExpressionSyntaxError):
    pass


class TransformationError(FlowEngineError):
    def __init__(self, alias: str | None, message: str) -> None:
        self.alias = alias
        prefix = f"Transformation '{alias}' failed: " if alias else "Transformation failed: "
        super().__init__(prefix + message)


class AssertionFailure(FlowEngineError):
    def __init__(self, assertion_id: str, message: str) -> None:
        self.assertion_id = assertion_id
        super().__init__(message)


class NetworkError(FlowEngineError):
    pass


# Named apart from the builtin TimeoutError so both can be caught separately.
class DispatchTimeoutError(NetworkError):
    pass


class RunCancelledError(FlowEngineError):
    pass

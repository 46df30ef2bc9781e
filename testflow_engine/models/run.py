from collections.abc import Callable
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel

from testflow_engine.models.assertion import AssertionReport


class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


class EndpointStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class LogEntry(BaseModel):
    level: LogLevel
    message: str
    details: str | None = None
    timestamp: datetime


class RequestSnapshot(BaseModel):
    url: str
    method: str
    headers: dict[str, str] = {}
    query: dict[str, Any] = {}
    body: Any = None


class ResponseSnapshot(BaseModel):
    status: int
    reason: str = ""
    headers: dict[str, str] = {}
    body: Any = None


class EndpointState(BaseModel):
    status: EndpointStatus
    request: RequestSnapshot | None = None
    response: ResponseSnapshot | None = None
    error: str | None = None
    timing_ms: float | None = None
    attempts: int = 0
    transformations: dict[str, Any] = {}
    assertions: AssertionReport | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class ExecutionResult(BaseModel):
    run_id: str
    flow_id: str
    status: RunStatus
    success: bool = False
    error: str | None = None
    progress: int = 0
    current_step: int | None = None
    responses: dict[str, Any] = {}
    transformations: dict[str, dict[str, Any]] = {}
    endpoint_states: dict[str, EndpointState] = {}
    outputs: dict[str, Any] = {}
    logs: list[LogEntry] = []
    started_at: datetime | None = None
    finished_at: datetime | None = None


LogFn = Callable[[LogLevel, str, str | None], None]


def no_log(level: LogLevel, message: str, details: str | None = None) -> None:
    pass

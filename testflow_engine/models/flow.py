from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from testflow_engine.models.assertion import Assertion


class ParameterType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"
    NULL = "null"


class HeaderEntry(BaseModel):
    name: str
    value: str = ""
    enabled: bool = True


class Transformation(BaseModel):
    alias: str
    expression: str


class StepEndpoint(BaseModel):
    endpoint_id: str
    api_id: str | None = None  # overrides the endpoint definition's api
    path_params: dict[str, Any] = {}
    query_params: dict[str, Any] = {}
    headers: list[HeaderEntry] = []
    body: Any = None
    transformations: list[Transformation] = []
    assertions: list[Assertion] = []
    store_response_as: str | None = None
    skip_default_status_check: bool = False


class FlowStep(BaseModel):
    step_id: str
    label: str = ""
    endpoints: list[StepEndpoint] = []
    clear_cookies_before_execution: bool = False
    timeout: float | None = None


class FlowParameter(BaseModel):
    name: str
    type: ParameterType = ParameterType.STRING
    value: Any = None
    default_value: Any = None
    required: bool = False
    description: str = ""


class FlowOutput(BaseModel):
    name: str
    value: Any = None
    is_template: bool = False
    type: ParameterType | None = None
    description: str = ""


class ApiHost(BaseModel):
    url: str
    name: str = ""


class FlowSettings(BaseModel):
    api_hosts: dict[str, ApiHost] = {}
    parameter_mappings: dict[str, str] = {}  # flow parameter -> environment variable


class FlowDefinition(BaseModel):
    id: str
    name: str = ""
    description: str = ""
    steps: list[FlowStep] = []
    parameters: list[FlowParameter] = []
    outputs: list[FlowOutput] = []
    settings: FlowSettings = Field(default_factory=FlowSettings)


class EnvironmentContext(BaseModel):
    """Resolved variables of the selected (sub-)environment."""

    name: str = ""
    variables: dict[str, Any] = {}
    defaults: dict[str, Any] = {}
    api_hosts: dict[str, str] = {}  # api_id -> base url

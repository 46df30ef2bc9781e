from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ParameterLocation(str, Enum):
    PATH = "path"
    QUERY = "query"
    HEADER = "header"
    COOKIE = "cookie"
    BODY = "body"


class EndpointParameter(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    location: ParameterLocation = Field(default=ParameterLocation.QUERY, alias="in")
    required: bool = False
    type: str | None = None
    # Array serialization for query parameters
    style: str | None = None
    explode: bool | None = None
    collection_format: str | None = None
    description: str = ""


class EndpointDefinition(BaseModel):
    id: str
    api_id: str
    method: str = "GET"
    path: str
    operation_id: str | None = None
    summary: str = ""
    tags: list[str] = []
    parameters: list[EndpointParameter] = []

    def parameter(self, name: str) -> EndpointParameter | None:
        for param in self.parameters:
            if param.name == name:
                return param
        return None

from enum import Enum
from typing import Any

from pydantic import BaseModel, model_validator


class AssertionDataSource(str, Enum):
    RESPONSE = "response"
    TRANSFORMED_DATA = "transformed_data"


class AssertionType(str, Enum):
    STATUS_CODE = "status_code"
    RESPONSE_TIME = "response_time"
    HEADER = "header"
    JSON_BODY = "json_body"


class AssertionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    EXISTS = "exists"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    MATCHES_REGEX = "matches_regex"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    BETWEEN = "between"
    NOT_BETWEEN = "not_between"
    HAS_LENGTH = "has_length"
    LENGTH_GREATER_THAN = "length_greater_than"
    LENGTH_LESS_THAN = "length_less_than"
    CONTAINS_ALL = "contains_all"
    CONTAINS_ANY = "contains_any"
    NOT_CONTAINS_ANY = "not_contains_any"
    ONE_OF = "one_of"
    NOT_ONE_OF = "not_one_of"
    IS_TYPE = "is_type"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"


_RESPONSE_ONLY = {AssertionType.STATUS_CODE, AssertionType.RESPONSE_TIME, AssertionType.HEADER}


class Assertion(BaseModel):
    id: str
    data_source: AssertionDataSource = AssertionDataSource.RESPONSE
    assertion_type: AssertionType
    data_id: str = ""  # JSONPath, header name or transformation alias
    operator: AssertionOperator
    expected_value: Any = None
    enabled: bool = True
    is_template_expression: bool = False

    @model_validator(mode="after")
    def _force_response_source(self) -> "Assertion":
        if self.assertion_type in _RESPONSE_ONLY:
            self.data_source = AssertionDataSource.RESPONSE
        return self


class AssertionResult(BaseModel):
    assertion_id: str
    passed: bool
    actual_value: Any = None
    expected_value: Any = None
    original_expected_value: Any = None
    message: str = ""
    error: str | None = None


class AssertionReport(BaseModel):
    passed: bool = True
    results: list[AssertionResult] = []
    failure_index: int | None = None
    failure_message: str | None = None

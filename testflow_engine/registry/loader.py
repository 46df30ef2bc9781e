import json
from pathlib import Path

import yaml
from pydantic import ValidationError

from testflow_engine.models.endpoint import EndpointDefinition
from testflow_engine.utils.exceptions import ConfigurationError


def load_from_yaml(path: str | Path) -> list[EndpointDefinition]:
    """Load endpoint definitions from a YAML (or JSON) file.

    A file holds either one definition, a list of them, or a mapping with an
    ``endpoints`` list.
    """
    path = Path(path)
    with open(path) as f:
        try:
            data = json.load(f) if path.suffix == ".json" else yaml.safe_load(f)
        except (ValueError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot parse endpoint file {path}: {e}") from e

    if isinstance(data, dict) and "endpoints" in data:
        data = data["endpoints"]
    items = data if isinstance(data, list) else [data]
    try:
        return [EndpointDefinition.model_validate(item) for item in items if item]
    except ValidationError as e:
        raise ConfigurationError(f"Invalid endpoint definition in {path}: {e}") from e

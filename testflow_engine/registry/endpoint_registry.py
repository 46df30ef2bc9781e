from pathlib import Path

from testflow_engine.models.endpoint import EndpointDefinition
from testflow_engine.registry.loader import load_from_yaml


class EndpointRegistry:
    def __init__(self) -> None:
        self._endpoints: dict[str, EndpointDefinition] = {}

    def load_directory(self, directory: str | Path) -> None:
        directory = Path(directory)
        for pattern in ("*.yaml", "*.yml", "*.json"):
            for endpoint_file in sorted(directory.glob(pattern)):
                for endpoint in load_from_yaml(endpoint_file):
                    self._endpoints[endpoint.id] = endpoint

    def register(self, endpoint: EndpointDefinition) -> None:
        self._endpoints[endpoint.id] = endpoint

    def get_endpoint(self, endpoint_id: str) -> EndpointDefinition:
        if endpoint_id not in self._endpoints:
            raise KeyError(f"Endpoint not found: {endpoint_id}")
        return self._endpoints[endpoint_id]

    def list_endpoints(self) -> list[EndpointDefinition]:
        return list(self._endpoints.values())

    def get_endpoint_map(self) -> dict[str, EndpointDefinition]:
        return dict(self._endpoints)

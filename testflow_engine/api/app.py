import logging
import os
from pathlib import Path

from fastapi import FastAPI

from testflow_engine.api.routes import router
from testflow_engine.api.run_store import RunStore
from testflow_engine.config.settings import Settings, load_settings
from testflow_engine.registry.endpoint_registry import EndpointRegistry

logger = logging.getLogger(__name__)


def create_app(
    endpoints_dir: str | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    app = FastAPI(title="Test Flow Engine")
    app.include_router(router)

    @app.on_event("startup")
    def startup():
        app.state.settings = settings or load_settings()
        app.state.store = RunStore()
        registry = EndpointRegistry()
        ed = endpoints_dir or os.environ.get("TFE_ENDPOINTS_DIR", app.state.settings.server.endpoints_dir)
        if Path(ed).is_dir():
            registry.load_directory(ed)
            logger.info("Loaded %d endpoint definitions from %s", len(registry.list_endpoints()), ed)
        app.state.registry = registry

    return app

import logging
import queue
import threading
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ValidationError

from testflow_engine.api import sse
from testflow_engine.config.settings import ExecutionPreferences
from testflow_engine.executor.flow_executor import FlowRunner
from testflow_engine.executor.validator import validate
from testflow_engine.models.endpoint import EndpointDefinition
from testflow_engine.models.flow import EnvironmentContext, FlowDefinition
from testflow_engine.models.run import ExecutionResult, RunStatus
from testflow_engine.utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

_TERMINAL = (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.STOPPED)


class RunRequest(BaseModel):
    flow: FlowDefinition
    endpoints: list[EndpointDefinition] = []  # merged over the registry
    environment: EnvironmentContext | None = None
    parameters: dict[str, Any] = {}
    preferences: dict[str, Any] = {}  # overrides of the configured preferences


# --- Endpoints ---

@router.get("/endpoints")
def list_endpoints(request: Request):
    registry = request.app.state.registry
    return [e.model_dump(mode="json", by_alias=True) for e in registry.list_endpoints()]


# --- Runs ---

@router.post("/runs")
def create_run(body: RunRequest, request: Request):
    store = request.app.state.store
    registry = request.app.state.registry
    settings = request.app.state.settings

    try:
        merged = {**settings.execution.model_dump(), **body.preferences}
        preferences = ExecutionPreferences.model_validate(merged)
    except ValidationError as e:
        raise HTTPException(400, f"Invalid preferences: {e}")

    endpoint_map = registry.get_endpoint_map()
    endpoint_map.update({e.id: e for e in body.endpoints})

    try:
        validate(body.flow, endpoint_map, body.environment, parallel=preferences.parallel_execution)
    except ConfigurationError as e:
        raise HTTPException(400, str(e))

    runner = FlowRunner(preferences=preferences)
    run_id = runner.run_id

    def on_update(result: ExecutionResult):
        sse.notify(run_id, result.model_dump(mode="json"))

    runner.on_update = on_update
    store.save_runner(runner)

    def run_in_background():
        try:
            runner.run(body.flow, endpoint_map, body.environment, body.parameters)
        except ConfigurationError as e:
            logger.warning("Run %s rejected: %s", run_id, e)
        except Exception as e:
            logger.error("Run %s crashed: %s", run_id, e)
        sse.notify(run_id, {**runner.result.model_dump(mode="json"), "done": True})
        sse.complete(run_id)

    thread = threading.Thread(target=run_in_background, daemon=True)
    thread.start()

    return {"run_id": run_id}


@router.get("/runs")
def list_runs(request: Request):
    store = request.app.state.store
    return [r.result.model_dump(mode="json") for r in store.list_runners()]


@router.get("/runs/{run_id}")
def get_run(run_id: str, request: Request):
    return _runner(request, run_id).result.model_dump(mode="json")


@router.post("/runs/{run_id}/stop")
def stop_run(run_id: str, request: Request):
    runner = _runner(request, run_id)
    runner.stop()
    return runner.result.model_dump(mode="json")


@router.post("/runs/{run_id}/reset")
def reset_run(run_id: str, request: Request):
    runner = _runner(request, run_id)
    runner.reset()
    return runner.result.model_dump(mode="json")


@router.get("/runs/{run_id}/stream")
def stream_run(run_id: str, request: Request):
    runner = _runner(request, run_id)
    q = sse.subscribe(run_id)

    def event_generator():
        try:
            current = runner.result
            if current.status in _TERMINAL:
                yield sse.format_event(current.model_dump(mode="json"), done=True)
                return
            while True:
                try:
                    data = q.get(timeout=30)
                except queue.Empty:
                    yield sse.KEEPALIVE
                    continue
                if data is None:
                    return
                yield sse.format_event(data)
        finally:
            sse.unsubscribe(run_id, q)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def _runner(request: Request, run_id: str) -> FlowRunner:
    store = request.app.state.store
    try:
        return store.load_runner(run_id)
    except KeyError:
        raise HTTPException(404, f"Run '{run_id}' not found")

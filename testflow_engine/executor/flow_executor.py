import logging
import threading
import uuid
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any

from testflow_engine.config.settings import ExecutionPreferences
from testflow_engine.executor import endpoint_executor
from testflow_engine.executor.endpoint_executor import EndpointJob
from testflow_engine.executor.http_client import CookieJar
from testflow_engine.executor.output_evaluator import evaluate_outputs
from testflow_engine.executor.parameter_manager import ParameterManager
from testflow_engine.executor.state_manager import RuntimeState, endpoint_key
from testflow_engine.executor.validator import api_id_for, resolve_host, validate
from testflow_engine.models.endpoint import EndpointDefinition
from testflow_engine.models.flow import EnvironmentContext, FlowDefinition, FlowStep
from testflow_engine.models.run import (
    EndpointState,
    EndpointStatus,
    ExecutionResult,
    LogEntry,
    LogFn,
    LogLevel,
    RunStatus,
)
from testflow_engine.template.functions import TemplateFunction
from testflow_engine.template.renderer import TemplateContext
from testflow_engine.utils.exceptions import ConfigurationError, RunCancelledError

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class FlowRunner:
    """Runs flows one at a time and tracks the state of the latest run.

    Status moves ``idle -> running -> completed | failed | stopped`` and back
    to ``idle`` on :meth:`reset`. Each run is tagged with a generation; a reset
    bumps it, so results still in flight from the previous run are dropped.
    """

    def __init__(
        self,
        preferences: ExecutionPreferences | None = None,
        on_update: Callable[[ExecutionResult], None] | None = None,
        on_log: Callable[[LogEntry], None] | None = None,
        functions: dict[str, TemplateFunction] | None = None,
        run_id: str | None = None,
    ) -> None:
        self.preferences = preferences or ExecutionPreferences()
        self.on_update = on_update
        self.on_log = on_log
        self.functions = dict(functions or {})
        self.run_id = run_id or str(uuid.uuid4())
        self._lock = threading.RLock()
        self._generation = 0
        self._cancel = threading.Event()
        self._state: RuntimeState | None = None
        self._result = self._idle_result("")

    # ── Public API ──────────────────────────────────────────────────

    @property
    def status(self) -> RunStatus:
        with self._lock:
            return self._result.status

    @property
    def result(self) -> ExecutionResult:
        with self._lock:
            return self._result.model_copy(deep=True)

    def run(
        self,
        flow: FlowDefinition,
        endpoints: Mapping[str, EndpointDefinition] | Iterable[EndpointDefinition],
        environment: EnvironmentContext | None = None,
        parameters: dict[str, Any] | None = None,
    ) -> ExecutionResult:
        """Execute *flow* to completion and return the final result.

        Raises ConfigurationError, before any request is sent, when the flow
        is structurally invalid, an API has no host or a required parameter
        has no value.
        """
        with self._lock:
            if self._result.status == RunStatus.RUNNING:
                raise ConfigurationError("A flow is already running; stop or reset it first")
            self._generation += 1
            generation = self._generation
            self._cancel = threading.Event()
            cancel = self._cancel
            self._result = ExecutionResult(
                run_id=self.run_id,
                flow_id=flow.id,
                status=RunStatus.RUNNING,
                started_at=datetime.now(timezone.utc),
            )
        log = self._logger_for(generation)
        environment = environment or EnvironmentContext()
        endpoint_map = _endpoint_map(endpoints)
        prefs = self.preferences

        log(LogLevel.INFO, f"Starting flow '{flow.name or flow.id}'", f"{len(flow.steps)} steps")
        try:
            state = self._prepare(flow, endpoint_map, environment, parameters, generation, log)
        except ConfigurationError as e:
            log(LogLevel.ERROR, "Flow configuration is invalid", str(e))
            self._finish(generation, RunStatus.FAILED, success=False, error=str(e))
            raise

        cookie_jar = CookieJar()
        total = len(flow.steps)
        halted_by: str | None = None
        try:
            for index, step in enumerate(flow.steps):
                if cancel.is_set():
                    raise RunCancelledError("Run stopped before step " + step.step_id)
                self._update(generation, current_step=index)
                failure = self._run_step(flow, step, endpoint_map, environment, state, generation, cookie_jar, cancel, log)
                if not state.is_current(generation):
                    break
                self._update(generation, state=state, progress=int((index + 1) / total * 100))
                if failure is not None and prefs.stop_on_error:
                    halted_by = failure
                    log(LogLevel.ERROR, f"Stopping flow after step {step.step_id}", failure)
                    break
        except RunCancelledError as e:
            log(LogLevel.INFO, "Execution stopped", str(e))
            self._update(generation, state=state)
            return self._finish(generation, RunStatus.STOPPED, success=False, error=None)
        except Exception as e:
            logger.exception("Run %s crashed", self.run_id)
            self._finish(generation, RunStatus.FAILED, success=False, error=str(e))
            raise

        if not state.is_current(generation):
            logger.debug("Run %s generation %d was reset mid-run", self.run_id, generation)
            return self._finish(generation, RunStatus.STOPPED, success=False, error=None)

        if halted_by is not None:
            return self._finish(generation, RunStatus.FAILED, success=False, error=halted_by)

        outputs = evaluate_outputs(flow.outputs, state.template_context(), log)
        log(LogLevel.INFO, f"Flow '{flow.name or flow.id}' completed")
        return self._finish(generation, RunStatus.COMPLETED, success=True, error=None, outputs=outputs, progress=100)

    def stop(self) -> None:
        """Request cooperative cancellation of the current run."""
        with self._lock:
            if self._result.status != RunStatus.RUNNING:
                return
            self._cancel.set()
        self._logger_for(self._generation)(LogLevel.INFO, "Stop requested")

    def reset(self) -> None:
        """Discard all runtime state and return to idle. Safe mid-run."""
        with self._lock:
            self._generation += 1
            self._cancel.set()
            if self._state is not None:
                self._state.advance(self._generation)
                self._state = None
            self._result = self._idle_result(self._result.flow_id)
            snapshot = self._result.model_copy(deep=True)
        logger.debug("Run %s reset to generation %d", self.run_id, self._generation)
        if self.on_update:
            self.on_update(snapshot)

    # ── Run phases ──────────────────────────────────────────────────

    def _prepare(
        self,
        flow: FlowDefinition,
        endpoint_map: dict[str, EndpointDefinition],
        environment: EnvironmentContext,
        parameters: dict[str, Any] | None,
        generation: int,
        log: LogFn,
    ) -> RuntimeState:
        manager = ParameterManager(flow, environment, log)
        values = manager.prepare(parameters)
        missing = manager.missing_required(values)
        if missing:
            names = ", ".join(p.name for p in missing)
            raise ConfigurationError(f"Required parameters have no value: {names}")

        validate(flow, endpoint_map, environment, parallel=self.preferences.parallel_execution)

        state = RuntimeState(
            generation=generation,
            parameters=values,
            environment=environment.variables,
            parameter_defaults=manager.defaults(),
            environment_defaults=environment.defaults,
            functions=self.functions,
        )
        with self._lock:
            if generation == self._generation:
                self._state = state
        return state

    def _run_step(
        self,
        flow: FlowDefinition,
        step: FlowStep,
        endpoint_map: dict[str, EndpointDefinition],
        environment: EnvironmentContext,
        state: RuntimeState,
        generation: int,
        cookie_jar: CookieJar,
        cancel: threading.Event,
        log: LogFn,
    ) -> str | None:
        """Run one step; return the first failure message, if any."""
        if not step.endpoints:
            log(LogLevel.DEBUG, f"Step {step.step_id} has no endpoints, skipping")
            return None

        log(LogLevel.INFO, f"Executing step {step.step_id}", step.label or None)
        if step.clear_cookies_before_execution:
            cookie_jar.clear()
            log(LogLevel.INFO, f"Cleared cookies before step {step.step_id}")

        jobs = []
        for index, step_endpoint in enumerate(step.endpoints):
            definition = endpoint_map[str(step_endpoint.endpoint_id)]
            host = resolve_host(api_id_for(step_endpoint, definition), flow, environment)
            jobs.append(EndpointJob(endpoint_key(step.step_id, index), step_endpoint, definition, host or ""))

        def run_job(job: EndpointJob, context: TemplateContext) -> EndpointState:
            return endpoint_executor.execute(
                job,
                context,
                state,
                generation,
                self.preferences,
                cookie_jar=cookie_jar,
                cancel_event=cancel,
                timeout=step.timeout,
                log=log,
            )

        results: list[tuple[EndpointJob, EndpointState]] = []
        if self.preferences.parallel_execution:
            # Every endpoint sees the state as it was before the step began
            contexts = [state.template_context() for _ in jobs]
            workers = max(1, min(self.preferences.max_workers, len(jobs)))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = [pool.submit(run_job, job, ctx) for job, ctx in zip(jobs, contexts)]
                for job, future in zip(jobs, futures):
                    results.append((job, future.result()))
                    self._update(generation, state=state)
        else:
            for job in jobs:
                if cancel.is_set():
                    raise RunCancelledError(f"Run stopped before {job.key}")
                endpoint_state = run_job(job, state.template_context())
                results.append((job, endpoint_state))
                self._update(generation, state=state)
                if endpoint_state.status == EndpointStatus.FAILED and self.preferences.stop_on_error:
                    break

        for job, endpoint_state in results:
            if endpoint_state.status == EndpointStatus.FAILED:
                return f"{job.key}: {endpoint_state.error}"
        return None

    # ── Result bookkeeping ──────────────────────────────────────────

    def _idle_result(self, flow_id: str) -> ExecutionResult:
        return ExecutionResult(run_id=self.run_id, flow_id=flow_id, status=RunStatus.IDLE)

    def _logger_for(self, generation: int) -> LogFn:
        def log(level: LogLevel, message: str, details: str | None = None) -> None:
            logger.log(_LOG_LEVELS[level], "%s%s", message, f" ({details})" if details else "")
            entry = LogEntry(level=level, message=message, details=details, timestamp=datetime.now(timezone.utc))
            with self._lock:
                if generation != self._generation:
                    return
                self._result.logs.append(entry)
            if self.on_log:
                self.on_log(entry)

        return log

    def _update(
        self,
        generation: int,
        state: RuntimeState | None = None,
        progress: int | None = None,
        current_step: int | None = None,
    ) -> None:
        with self._lock:
            if generation != self._generation:
                return
            if state is not None:
                snapshot = state.snapshot()
                self._result.responses = snapshot["responses"]
                self._result.transformations = snapshot["transformations"]
                self._result.endpoint_states = snapshot["endpoint_states"]
            if progress is not None:
                self._result.progress = max(self._result.progress, progress)
            if current_step is not None:
                self._result.current_step = current_step
            published = self._result.model_copy(deep=True)
        if self.on_update:
            self.on_update(published)

    def _finish(
        self,
        generation: int,
        status: RunStatus,
        success: bool,
        error: str | None,
        outputs: dict[str, Any] | None = None,
        progress: int | None = None,
    ) -> ExecutionResult:
        with self._lock:
            if generation != self._generation:
                # Superseded by a reset; report without touching the live result
                return ExecutionResult(
                    run_id=self.run_id,
                    flow_id=self._result.flow_id,
                    status=RunStatus.STOPPED,
                    finished_at=datetime.now(timezone.utc),
                )
            self._result.status = status
            self._result.success = success
            self._result.error = error
            self._result.outputs = outputs or {}
            if progress is not None:
                self._result.progress = max(self._result.progress, progress)
            self._result.finished_at = datetime.now(timezone.utc)
            published = self._result.model_copy(deep=True)
        if self.on_update:
            self.on_update(published)
        return published


def _endpoint_map(
    endpoints: Mapping[str, EndpointDefinition] | Iterable[EndpointDefinition],
) -> dict[str, EndpointDefinition]:
    if isinstance(endpoints, Mapping):
        return {str(k): v for k, v in endpoints.items()}
    return {str(e.id): e for e in endpoints}

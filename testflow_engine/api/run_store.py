import threading

from testflow_engine.executor.flow_executor import FlowRunner


class RunStore:
    """In-memory registry of flow runners keyed by run id."""

    def __init__(self) -> None:
        self._runners: dict[str, FlowRunner] = {}
        self._lock = threading.Lock()

    def save_runner(self, runner: FlowRunner) -> None:
        with self._lock:
            self._runners[runner.run_id] = runner

    def load_runner(self, run_id: str) -> FlowRunner:
        with self._lock:
            if run_id not in self._runners:
                raise KeyError(f"Run '{run_id}' not found")
            return self._runners[run_id]

    def list_runners(self) -> list[FlowRunner]:
        with self._lock:
            return list(self._runners.values())

"""Fan-out of run snapshots to server-sent event listeners, keyed by run id."""

import json
import queue
import threading
from typing import Any

KEEPALIVE = ": keepalive\n\n"

_listeners: dict[str, list[queue.Queue]] = {}
_lock = threading.Lock()


def subscribe(run_id: str) -> queue.Queue:
    q: queue.Queue = queue.Queue()
    with _lock:
        _listeners.setdefault(run_id, []).append(q)
    return q


def unsubscribe(run_id: str, q: queue.Queue) -> None:
    with _lock:
        listeners = _listeners.get(run_id, [])
        if q in listeners:
            listeners.remove(q)
        if not listeners:
            _listeners.pop(run_id, None)


def notify(run_id: str, snapshot: dict[str, Any]) -> None:
    with _lock:
        for q in _listeners.get(run_id, []):
            q.put(snapshot)


def complete(run_id: str) -> None:
    """Wake every listener of *run_id* with the end-of-stream marker."""
    with _lock:
        for q in _listeners.pop(run_id, []):
            q.put(None)


def format_event(snapshot: dict[str, Any], done: bool = False) -> str:
    if done:
        snapshot = {**snapshot, "done": True}
    return f"data: {json.dumps(snapshot, default=str)}\n\n"

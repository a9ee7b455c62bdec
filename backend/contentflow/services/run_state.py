"""
Run state tracker: the single owner of per-node status for one run.

Every status change goes through `transition()`, which validates the
move, stamps timing, and fans an immutable StatusChange out to callbacks
and subscriber queues. Nothing else mutates node records.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

from contentflow.models.graph import Graph
from contentflow.models.run import (
    ALLOWED_TRANSITIONS,
    NodeRunRecord,
    NodeStatus,
    StatusChange,
    utcnow,
)
from contentflow.services.errors import InvalidTransitionError

logger = logging.getLogger(__name__)

StatusCallback = Callable[[StatusChange], Any]

_UNSET: Any = object()


class RunStateTracker:
    def __init__(self, run_id: str, graph: Graph):
        self.run_id = run_id
        self.graph = graph
        self._records: dict[str, NodeRunRecord] = {
            nid: NodeRunRecord(node_id=nid, node_type=node.type)
            for nid, node in graph.nodes.items()
        }
        self._started: dict[str, float] = {}
        self._injected: dict[str, dict[int, Any]] = {}
        self._callbacks: list[StatusCallback] = []
        self._subscribers: list[asyncio.Queue] = []
        self._history: list[StatusChange] = []
        self._closed = False

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def status(self, node_id: str) -> NodeStatus:
        return self._records[node_id].status

    def value(self, node_id: str) -> Any:
        return self._records[node_id].value

    def is_terminal(self, node_id: str) -> bool:
        return self._records[node_id].status.is_terminal

    def with_status(self, *statuses: NodeStatus) -> list[str]:
        return [nid for nid, rec in self._records.items() if rec.status in statuses]

    def snapshot(self) -> dict[str, NodeRunRecord]:
        """Copies of every node record; safe to hand to observers."""
        return {nid: rec.model_copy() for nid, rec in self._records.items()}

    @property
    def history(self) -> list[StatusChange]:
        return list(self._history)

    # ------------------------------------------------------------------
    # Loop feedback injection
    # ------------------------------------------------------------------

    def inject(self, node_id: str, port: int, value: Any) -> None:
        self._injected.setdefault(node_id, {})[port] = value

    def injected(self, node_id: str) -> dict[int, Any]:
        return dict(self._injected.get(node_id, {}))

    def clear_injected(self, node_id: str) -> None:
        self._injected.pop(node_id, None)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def transition(
        self,
        node_id: str,
        status: NodeStatus,
        *,
        value: Any = _UNSET,
        error: str | None = None,
        reason: str | None = None,
        iteration: int | None = None,
    ) -> StatusChange:
        record = self._records[node_id]
        previous = record.status
        if status not in ALLOWED_TRANSITIONS[previous]:
            raise InvalidTransitionError(node_id, previous.value, status.value)

        now = utcnow()
        record.status = status
        if status == NodeStatus.EXECUTING:
            record.started_at = now
            record.finished_at = None
            record.error = None
            record.reason = None
            self._started[node_id] = time.perf_counter()
        elif status in (NodeStatus.COMPLETED, NodeStatus.FAILED):
            record.finished_at = now
            started = self._started.pop(node_id, None)
            if started is not None:
                record.execution_time_ms = int((time.perf_counter() - started) * 1000)
            if status == NodeStatus.COMPLETED:
                record.value = None if value is _UNSET else value
                record.iterations += 1
            else:
                record.error = error
                record.reason = reason
        elif status == NodeStatus.SKIPPED:
            record.finished_at = now
            record.reason = reason
        elif status == NodeStatus.IDLE:
            record.value = None
            record.error = None
            record.reason = None
            record.started_at = None
            record.finished_at = None

        change = StatusChange(
            run_id=self.run_id,
            node_id=node_id,
            node_type=record.node_type,
            state=status,
            previous=previous,
            value=record.value if status == NodeStatus.COMPLETED else None,
            error=record.error if status == NodeStatus.FAILED else None,
            reason=reason,
            iteration=iteration,
            timestamp=now,
        )
        self._history.append(change)
        self._emit(change)
        return change

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def on_status_change(self, callback: StatusCallback) -> Callable[[], None]:
        """Register a synchronous callback; returns an unsubscribe function."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def subscribe(self) -> asyncio.Queue:
        """
        Queue receiving every later StatusChange, then a None sentinel
        once the run is closed.
        """
        queue: asyncio.Queue = asyncio.Queue()
        if self._closed:
            queue.put_nowait(None)
        else:
            self._subscribers.append(queue)
        return queue

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for queue in self._subscribers:
            queue.put_nowait(None)

    def _emit(self, change: StatusChange) -> None:
        for callback in list(self._callbacks):
            try:
                callback(change)
            except Exception:
                logger.exception(
                    "Status callback failed for run %s node %s", self.run_id, change.node_id
                )
        for queue in self._subscribers:
            queue.put_nowait(change)

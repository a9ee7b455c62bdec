"""
Run models: per-node status, status-change events, loop contexts and the
final result of a workflow run.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from contentflow import config


class NodeStatus(str, Enum):
    IDLE = "idle"
    READY = "ready"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({NodeStatus.COMPLETED, NodeStatus.FAILED, NodeStatus.SKIPPED})

# Allowed (previous -> next) pairs. Terminal -> idle is only used by loop resets.
ALLOWED_TRANSITIONS: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.IDLE: frozenset({NodeStatus.READY, NodeStatus.SKIPPED}),
    NodeStatus.READY: frozenset({NodeStatus.EXECUTING, NodeStatus.SKIPPED}),
    NodeStatus.EXECUTING: frozenset({NodeStatus.COMPLETED, NodeStatus.FAILED}),
    NodeStatus.COMPLETED: frozenset({NodeStatus.IDLE}),
    NodeStatus.FAILED: frozenset({NodeStatus.IDLE}),
    NodeStatus.SKIPPED: frozenset({NodeStatus.IDLE}),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StatusChange(BaseModel):
    """Immutable record of one node status transition."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    node_id: str
    node_type: str
    state: NodeStatus
    previous: NodeStatus
    value: Any = None
    error: str | None = None
    reason: str | None = None
    iteration: int | None = None
    timestamp: datetime = Field(default_factory=utcnow)

    def to_event(self) -> dict[str, Any]:
        """Shape used by the SSE stream."""
        return {
            "event": "node_status",
            **self.model_dump(),
        }


class NodeRunRecord(BaseModel):
    node_id: str
    node_type: str
    status: NodeStatus = NodeStatus.IDLE
    value: Any = None
    error: str | None = None
    reason: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    execution_time_ms: int = 0
    iterations: int = 0


class LoopContext(BaseModel):
    loop_id: str
    iteration_count: int = 0
    max_iterations: int = 10
    current_iteration: int = 1
    body: list[str] = Field(default_factory=list)
    feedback_sources: list[str] = Field(default_factory=list)
    active: bool = True
    stop_reason: str | None = None


class RunResult(BaseModel):
    run_id: str
    status: Literal["completed", "failed", "cancelled"]
    success: bool
    outputs: dict[str, Any] = Field(default_factory=dict)
    nodes: dict[str, NodeRunRecord] = Field(default_factory=dict)
    loops: dict[str, LoopContext] = Field(default_factory=dict)
    total_execution_time_ms: int = 0
    error: str | None = None


class RunOptions(BaseModel):
    halt_on_failure: bool = False
    continue_on_partial: bool = False
    node_timeout_seconds: float | None = None
    default_max_iterations: int = 10
    api_keys: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_env(cls, **overrides: Any) -> "RunOptions":
        """Defaults from the environment; keyword overrides win."""
        values: dict[str, Any] = {
            "halt_on_failure": config.halt_on_failure(),
            "continue_on_partial": config.continue_on_partial(),
            "node_timeout_seconds": config.node_timeout_seconds(),
            "default_max_iterations": config.max_loop_iterations(),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)

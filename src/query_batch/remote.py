from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, List, Optional, Protocol, Sequence, runtime_checkable

if TYPE_CHECKING:
    from query_batch.config import QueryConfig


class RemoteState(str, Enum):
    """Normalized remote execution lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Return True for states after which the remote side never changes."""
        return self in (RemoteState.SUCCEEDED, RemoteState.FAILED, RemoteState.CANCELLED)


@dataclass(frozen=True)
class ExecutionStatus:
    """One poll observation of a remote execution."""

    execution_id: str
    state: RemoteState
    query: Optional[str] = None
    failure_reason: Optional[str] = None
    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    engine_execution_ms: Optional[int] = None
    data_scanned_bytes: Optional[int] = None
    output_location: Optional[str] = None


@dataclass(frozen=True)
class ResultPage:
    """One page of query results; ``next_token`` is None on the last page."""

    columns: List[str]
    rows: List[List[Optional[str]]] = field(default_factory=list)
    next_token: Optional[str] = None


@runtime_checkable
class RemoteQueryClient(Protocol):
    """Capability the orchestrator needs from the remote query service."""

    async def submit(self, statement: str, config: "QueryConfig") -> str:
        """Start executing a single statement and return its execution id."""
        ...

    async def poll_status(self, execution_id: str) -> ExecutionStatus:
        """Return the current status of an execution."""
        ...

    async def stop(self, execution_id: str) -> None:
        """Request that a running execution be stopped (best-effort, idempotent)."""
        ...

    async def fetch_results(
        self, execution_id: str, next_token: Optional[str] = None
    ) -> ResultPage:
        """Fetch one page of results of a succeeded execution."""
        ...

    async def list_executions(self, max_items: int) -> Sequence[ExecutionStatus]:
        """List recent executions, newest pages first."""
        ...

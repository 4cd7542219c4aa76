"""Concurrent SQL statement execution against asynchronous query services.

This package exposes the orchestrator that fans statements out under a
concurrency limit, the per-statement execution state machine, and the
batch-wide cancellation primitives.
"""

from query_batch.cancellation import CancellationBridge, CancellationToken, Phase, PhaseListener
from query_batch.config import QueryConfig
from query_batch.errors import (
    CanceledError,
    QueryBatchError,
    RemoteFailure,
    StatementError,
    SubmissionError,
    TransportError,
    ValidationError,
)
from query_batch.execution import ExecutionSnapshot, ExecutionState, QueryExecution
from query_batch.orchestrator import (
    BatchStatus,
    BatchSummary,
    Orchestrator,
    ResultEnvelope,
    ResultSink,
)
from query_batch.remote import ExecutionStatus, RemoteQueryClient, RemoteState, ResultPage

__all__ = [
    "BatchStatus",
    "BatchSummary",
    "CancellationBridge",
    "CancellationToken",
    "CanceledError",
    "ExecutionSnapshot",
    "ExecutionState",
    "ExecutionStatus",
    "Orchestrator",
    "Phase",
    "PhaseListener",
    "QueryBatchError",
    "QueryConfig",
    "QueryExecution",
    "RemoteFailure",
    "RemoteQueryClient",
    "RemoteState",
    "ResultEnvelope",
    "ResultPage",
    "ResultSink",
    "StatementError",
    "SubmissionError",
    "TransportError",
    "ValidationError",
]

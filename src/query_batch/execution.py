"""Per-statement execution state machine.

A ``QueryExecution`` is driven by exactly one task, strictly sequentially:

    CREATED -> SUBMITTED -> POLLING -> SUCCEEDED | FAILED | CANCELED

Submission failures and pre-submission cancellation jump straight from
CREATED to a terminal state without an execution id. Once terminal, the
owning task hands an immutable ``ExecutionSnapshot`` to whoever renders it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

from common.observability.metrics import batch_metrics
from query_batch.cancellation import CancellationToken
from query_batch.config import QueryConfig
from query_batch.errors import (
    CanceledError,
    RemoteFailure,
    StatementError,
    SubmissionError,
    TransportError,
    ValidationError,
)
from query_batch.remote import ExecutionStatus, RemoteQueryClient, RemoteState

logger = logging.getLogger(__name__)


class ExecutionState(str, Enum):
    """Local lifecycle states of one statement."""

    CREATED = "created"
    SUBMITTED = "submitted"
    POLLING = "polling"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        """Return True for states with no outgoing transitions."""
        return self in _TERMINAL


_TERMINAL = {ExecutionState.SUCCEEDED, ExecutionState.FAILED, ExecutionState.CANCELED}

_ALLOWED = {
    ExecutionState.CREATED: {
        ExecutionState.SUBMITTED,
        ExecutionState.FAILED,
        ExecutionState.CANCELED,
    },
    ExecutionState.SUBMITTED: {ExecutionState.POLLING},
    ExecutionState.POLLING: _TERMINAL,
}

_REMOTE_TO_LOCAL = {
    RemoteState.SUCCEEDED: ExecutionState.SUCCEEDED,
    RemoteState.FAILED: ExecutionState.FAILED,
    RemoteState.CANCELLED: ExecutionState.CANCELED,
}


class InvalidTransitionError(RuntimeError):
    """An operation was called in a state that does not allow it."""


@dataclass(frozen=True)
class ExecutionMetadata:
    """Details reported by the remote service, refreshed on every poll."""

    submitted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    remote_state: Optional[RemoteState] = None
    failure_reason: Optional[str] = None
    engine_execution_ms: Optional[int] = None
    data_scanned_bytes: Optional[int] = None
    output_location: Optional[str] = None

    def merged(self, status: ExecutionStatus) -> "ExecutionMetadata":
        """Return a copy updated with the non-empty fields of ``status``."""
        return ExecutionMetadata(
            submitted_at=status.submitted_at or self.submitted_at,
            completed_at=status.completed_at or self.completed_at,
            remote_state=status.state,
            failure_reason=status.failure_reason or self.failure_reason,
            engine_execution_ms=_first(status.engine_execution_ms, self.engine_execution_ms),
            data_scanned_bytes=_first(status.data_scanned_bytes, self.data_scanned_bytes),
            output_location=status.output_location or self.output_location,
        )


def _first(*values):
    for value in values:
        if value is not None:
            return value
    return None


@dataclass(frozen=True)
class ExecutionSnapshot:
    """Immutable view of a terminal execution, safe to share across tasks."""

    statement: str
    execution_id: Optional[str]
    state: ExecutionState
    metadata: ExecutionMetadata
    columns: Tuple[str, ...] = ()
    rows: Optional[Tuple[Tuple[Optional[str], ...], ...]] = None
    error: Optional[StatementError] = None


class QueryExecution:
    """Drive one statement through submit, completion and result fetching.

    Not safe for concurrent use: exactly one task owns an instance until it
    reaches a terminal state.
    """

    def __init__(
        self,
        client: RemoteQueryClient,
        config: QueryConfig,
        statement: str,
        token: Optional[CancellationToken] = None,
    ) -> None:
        """Create an execution; empty statement text is rejected."""
        text = (statement or "").strip()
        if not text:
            raise ValidationError("statement text is empty", field="statement")

        self._client = client
        self._config = config
        self._statement = text
        self._token = token
        self._wait_interval = config.wait_interval_seconds

        self._state = ExecutionState.CREATED
        self._execution_id: Optional[str] = None
        self._metadata = ExecutionMetadata()
        self._columns: List[str] = []
        self._rows: Optional[List[List[Optional[str]]]] = None
        self._error: Optional[StatementError] = None
        self._stop_requested = False
        self._started_monotonic: Optional[float] = None

    @classmethod
    def from_status(
        cls,
        client: RemoteQueryClient,
        config: QueryConfig,
        status: ExecutionStatus,
        token: Optional[CancellationToken] = None,
    ) -> "QueryExecution":
        """Rebuild a SUCCEEDED execution from a previously finished remote one."""
        if status.state is not RemoteState.SUCCEEDED:
            raise ValidationError(
                f"query execution {status.execution_id} has not succeeded", field="state"
            )
        execution = cls(client, config, status.query or "", token)
        execution._execution_id = status.execution_id
        execution._metadata = execution._metadata.merged(status)
        execution._state = ExecutionState.SUCCEEDED
        return execution

    @property
    def statement(self) -> str:
        """Return the single statement this execution runs."""
        return self._statement

    @property
    def execution_id(self) -> Optional[str]:
        """Return the remote execution id, None before submission."""
        return self._execution_id

    @property
    def state(self) -> ExecutionState:
        """Return the current local state."""
        return self._state

    @property
    def metadata(self) -> ExecutionMetadata:
        """Return the latest remote metadata."""
        return self._metadata

    @property
    def result_rows(self) -> Optional[List[List[Optional[str]]]]:
        """Return fetched rows, None until ``fetch_results`` succeeds."""
        return self._rows

    @property
    def error(self) -> Optional[StatementError]:
        """Return the typed error of a FAILED or CANCELED execution."""
        return self._error

    def _transition(self, new_state: ExecutionState) -> None:
        if new_state not in _ALLOWED.get(self._state, set()):
            raise InvalidTransitionError(
                f"cannot move query execution from {self._state.value} to {new_state.value}"
            )
        logger.debug(
            "Query execution %s: %s -> %s",
            self._execution_id or "<unsubmitted>",
            self._state.value,
            new_state.value,
        )
        self._state = new_state
        if new_state.is_terminal:
            duration_ms = None
            if self._started_monotonic is not None:
                duration_ms = (time.monotonic() - self._started_monotonic) * 1000
            batch_metrics.record_execution(new_state.value, duration_ms)

    def _terminate(self, state: ExecutionState, error: Optional[StatementError]) -> None:
        self._error = error
        self._transition(state)

    async def submit(self) -> bool:
        """Send the statement; return True when it was accepted."""
        if self._state is not ExecutionState.CREATED:
            raise InvalidTransitionError(f"submit() called in state {self._state.value}")

        if self._token is not None and self._token.is_canceled:
            logger.debug("Not submitting %r: batch already canceled", self._statement)
            self._terminate(ExecutionState.CANCELED, CanceledError(self._statement))
            return False

        logger.info("Start running %r", self._statement)
        try:
            execution_id = await self._client.submit(self._statement, self._config)
        except CanceledError as exc:
            self._terminate(ExecutionState.CANCELED, exc)
            return False
        except Exception as exc:
            logger.warning("Submission of %r failed: %s", self._statement, exc)
            self._terminate(ExecutionState.FAILED, SubmissionError(self._statement, exc))
            return False

        self._execution_id = execution_id
        self._started_monotonic = time.monotonic()
        self._metadata = replace(self._metadata, submitted_at=datetime.now(timezone.utc))
        self._transition(ExecutionState.SUBMITTED)
        return True

    async def _request_stop(self) -> None:
        self._stop_requested = True
        logger.info("Requesting stop of query execution %s", self._execution_id)
        try:
            await self._client.stop(self._execution_id)
        except Exception as exc:
            logger.warning("StopQueryExecution failed for %s: %s", self._execution_id, exc)

    async def await_completion(self) -> ExecutionState:
        """Poll until the remote side reports a terminal state.

        If the batch is canceled meanwhile, a stop request is sent once and
        polling continues until the remote side confirms a terminal state.
        """
        if self._state is not ExecutionState.SUBMITTED:
            raise InvalidTransitionError(f"await_completion() called in state {self._state.value}")
        self._transition(ExecutionState.POLLING)

        while True:
            if self._token is not None and self._token.is_canceled and not self._stop_requested:
                await self._request_stop()

            try:
                status = await self._client.poll_status(self._execution_id)
            except Exception as exc:
                logger.warning("Polling %s failed: %s", self._execution_id, exc)
                self._terminate(
                    ExecutionState.FAILED,
                    TransportError(self._statement, self._execution_id, "GetQueryExecution", exc),
                )
                return self._state

            self._metadata = self._metadata.merged(status)
            logger.debug("State of query execution %s: %s", self._execution_id, status.state.value)

            if status.state.is_terminal:
                self._finish(status)
                return self._state

            if self._token is None or self._stop_requested:
                await asyncio.sleep(self._wait_interval)
            else:
                await self._token.sleep(self._wait_interval)

    def _finish(self, status: ExecutionStatus) -> None:
        state = _REMOTE_TO_LOCAL[status.state]
        error: Optional[StatementError] = None
        if state is ExecutionState.FAILED:
            error = RemoteFailure(self._statement, self._execution_id, status.failure_reason or "")
        elif state is ExecutionState.CANCELED:
            error = CanceledError(self._statement, self._execution_id)
        self._terminate(state, error)

    async def fetch_results(self) -> List[List[Optional[str]]]:
        """Read every result page; repeated calls return the cached rows."""
        if self._state is not ExecutionState.SUCCEEDED:
            raise InvalidTransitionError(f"fetch_results() called in state {self._state.value}")
        if self._rows is not None:
            return self._rows

        columns: Optional[List[str]] = None
        rows: List[List[Optional[str]]] = []
        next_token: Optional[str] = None
        while True:
            try:
                page = await self._client.fetch_results(self._execution_id, next_token)
            except Exception as exc:
                raise TransportError(
                    self._statement, self._execution_id, "GetQueryResults", exc
                ) from exc
            if columns is None:
                columns = list(page.columns)
            rows.extend(list(row) for row in page.rows)
            next_token = page.next_token
            if not next_token:
                break

        logger.debug("Fetched %d rows of query execution %s", len(rows), self._execution_id)
        self._columns = columns or []
        self._rows = rows
        return rows

    async def run(self) -> ExecutionSnapshot:
        """Submit, wait and fetch; raise the typed error unless it succeeded."""
        if self._state is ExecutionState.CREATED and await self.submit():
            await self.await_completion()

        if self._state is ExecutionState.SUCCEEDED:
            if self._token is not None and self._token.is_canceled:
                raise CanceledError(self._statement, self._execution_id)
            await self.fetch_results()

        if self._error is not None:
            raise self._error
        return self.snapshot()

    def snapshot(self) -> ExecutionSnapshot:
        """Return an immutable copy of the current state."""
        rows = None
        if self._rows is not None:
            rows = tuple(tuple(row) for row in self._rows)
        return ExecutionSnapshot(
            statement=self._statement,
            execution_id=self._execution_id,
            state=self._state,
            metadata=self._metadata,
            columns=tuple(self._columns),
            rows=rows,
            error=self._error,
        )

"""Bounded-concurrency batch runner.

``Orchestrator.run`` fans a list of statements out into one task per
statement, gated by a counting semaphore sized to ``config.concurrency``, and
fans their results back in through a queue drained by a single consumer that
delivers to the sink. Excess statements wait for a permit; none are dropped.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from common.observability.context import batch_id_var, statement_index_var
from common.observability.metrics import batch_metrics
from query_batch.cancellation import CancellationBridge, CancellationToken, PhaseListener
from query_batch.config import QueryConfig
from query_batch.errors import StatementError
from query_batch.execution import ExecutionSnapshot, QueryExecution
from query_batch.remote import RemoteQueryClient

logger = logging.getLogger(__name__)

NO_STATEMENTS_FOUND = "No SQL statements found to execute"


class ResultSink(Protocol):
    """Receives each delivered result exactly once."""

    def render(self, snapshot: ExecutionSnapshot) -> None:
        """Render a succeeded execution."""
        ...

    def render_error(self, statement: str, error: StatementError) -> None:
        """Render a statement-scoped failure."""
        ...


@dataclass(frozen=True)
class ResultEnvelope:
    """Outcome of one statement: a snapshot or a statement-scoped error."""

    index: int
    statement: str
    snapshot: Optional[ExecutionSnapshot] = None
    error: Optional[StatementError] = None
    suppressed: bool = False

    @property
    def ok(self) -> bool:
        """Return True when the envelope carries a result."""
        return self.error is None


class BatchStatus(str, Enum):
    """How a ``run`` call ended."""

    COMPLETED = "completed"
    CANCELED = "canceled"
    NOTHING_TO_EXECUTE = "nothing_to_execute"


@dataclass
class BatchSummary:
    """Counters describing one finished ``run`` call."""

    status: BatchStatus
    total: int = 0
    delivered: int = 0
    failed: int = 0
    suppressed: int = 0
    message: Optional[str] = None

    @property
    def canceled(self) -> bool:
        """Return True when the batch was interrupted."""
        return self.status is BatchStatus.CANCELED


def normalize_statements(statements: Sequence[str]) -> List[str]:
    """Strip statements and drop the empty ones."""
    return [text.strip() for text in statements if text and text.strip()]


class Orchestrator:
    """Run batches of statements against a remote query service."""

    def __init__(
        self,
        client: RemoteQueryClient,
        sink: ResultSink,
        listeners: Sequence[PhaseListener] = (),
        bridge_factory: Callable[[CancellationToken], CancellationBridge] = CancellationBridge,
    ) -> None:
        """Bind the remote client, the sink and optional phase listeners."""
        self._client = client
        self._sink = sink
        self._listeners = list(listeners)
        self._bridge_factory = bridge_factory
        self._bridge: Optional[CancellationBridge] = None

    def interrupt(self) -> bool:
        """Deliver an interrupt to the running batch, as SIGINT would."""
        if self._bridge is None:
            return False
        return self._bridge.interrupt()

    async def run(self, statements: Sequence[str], config: QueryConfig) -> BatchSummary:
        """Execute ``statements`` and deliver one envelope per statement to the sink.

        Raises:
            ValidationError: the config cannot run statements; nothing is started.
        """
        config.validate_for_run()

        stmts = normalize_statements(statements)
        logger.info("%d SQL statements to execute", len(stmts))
        if not stmts:
            return BatchSummary(status=BatchStatus.NOTHING_TO_EXECUTE, message=NO_STATEMENTS_FOUND)

        return await self.run_executions(
            lambda token: [QueryExecution(self._client, config, text, token) for text in stmts],
            config,
        )

    async def run_executions(
        self,
        build: Callable[[CancellationToken], List[QueryExecution]],
        config: QueryConfig,
    ) -> BatchSummary:
        """Run the executions returned by ``build(token)`` as one batch.

        ``build`` receives the batch cancellation token and must bind every
        execution it creates to it. The config is not validated here.
        """
        if self._bridge is not None:
            raise RuntimeError("a batch is already running on this orchestrator")

        token = CancellationToken([] if config.silent else self._listeners)
        executions = build(token)
        summary = BatchSummary(status=BatchStatus.COMPLETED, total=len(executions))
        gate = asyncio.Semaphore(config.concurrency)
        completed: asyncio.Queue[ResultEnvelope] = asyncio.Queue()

        batch_token = batch_id_var.set(uuid.uuid4().hex)
        self._bridge = self._bridge_factory(token)
        try:
            async with self._bridge:
                token.begin()
                workers = [
                    asyncio.create_task(self._run_one(index, execution, gate, token, completed))
                    for index, execution in enumerate(executions)
                ]
                consumer = asyncio.create_task(
                    self._deliver(len(executions), completed, config.ordered, summary)
                )
                try:
                    await asyncio.gather(*workers)
                    await consumer
                finally:
                    for task in (*workers, consumer):
                        if not task.done():
                            task.cancel()
        finally:
            token.close()
            self._bridge = None
            batch_id_var.reset(batch_token)

        if token.is_canceled:
            summary.status = BatchStatus.CANCELED
        batch_metrics.record_batch(summary.status.value, summary.total, summary.suppressed)
        logger.info(
            "Batch finished: %s (%d delivered, %d suppressed)",
            summary.status.value,
            summary.delivered,
            summary.suppressed,
        )
        return summary

    async def _run_one(
        self,
        index: int,
        execution: QueryExecution,
        gate: asyncio.Semaphore,
        token: CancellationToken,
        completed: "asyncio.Queue[ResultEnvelope]",
    ) -> None:
        statement_index_var.set(index)
        async with gate:
            snapshot: Optional[ExecutionSnapshot] = None
            error: Optional[StatementError] = None
            try:
                snapshot = await execution.run()
            except StatementError as exc:
                error = exc
            except Exception as exc:
                logger.exception("Unexpected failure running %r", execution.statement)
                error = StatementError(
                    f"unexpected error: {exc}",
                    statement=execution.statement,
                    execution_id=execution.execution_id,
                    cause=exc,
                )
            suppressed = token.is_canceled
        await completed.put(
            ResultEnvelope(
                index=index,
                statement=execution.statement,
                snapshot=snapshot,
                error=error,
                suppressed=suppressed,
            )
        )

    async def _deliver(
        self,
        total: int,
        completed: "asyncio.Queue[ResultEnvelope]",
        ordered: bool,
        summary: BatchSummary,
    ) -> None:
        pending: Dict[int, ResultEnvelope] = {}
        next_index = 0
        for _ in range(total):
            envelope = await completed.get()
            if not ordered:
                self._emit(envelope, summary)
                continue
            pending[envelope.index] = envelope
            while next_index in pending:
                self._emit(pending.pop(next_index), summary)
                next_index += 1
        logger.debug("All query executions have been completed")

    def _emit(self, envelope: ResultEnvelope, summary: BatchSummary) -> None:
        if envelope.suppressed:
            logger.debug("Suppressing result of %r: batch was canceled", envelope.statement)
            summary.suppressed += 1
            return
        try:
            if envelope.error is not None:
                self._sink.render_error(envelope.statement, envelope.error)
            else:
                self._sink.render(envelope.snapshot)
        except Exception:
            logger.exception("Sink failed to render result of %r", envelope.statement)
            return
        summary.delivered += 1
        if envelope.error is not None:
            summary.failed += 1

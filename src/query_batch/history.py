"""Browse recent successful executions and re-display their results."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Protocol, Sequence

from query_batch.cancellation import PhaseListener
from query_batch.config import QueryConfig
from query_batch.execution import QueryExecution
from query_batch.orchestrator import BatchStatus, BatchSummary, Orchestrator, ResultSink
from query_batch.remote import ExecutionStatus, RemoteQueryClient, RemoteState
from query_batch.render import format_bytes

logger = logging.getLogger(__name__)

NO_EXECUTIONS_SELECTED = "No query executions selected"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class HistoryEntry:
    """One selectable line of the history listing."""

    text: str
    status: ExecutionStatus

    def __str__(self) -> str:
        return self.text


class HistoryFilter(Protocol):
    """Chooses which history entries to display."""

    def filter(self, candidates: Sequence[HistoryEntry]) -> Sequence[HistoryEntry]:
        """Return the selected subset of ``candidates``, in display order."""
        ...


class SubstringFilter:
    """Select entries containing every term, case-insensitively.

    With no terms every entry is selected.
    """

    def __init__(self, terms: Optional[Sequence[str]] = None) -> None:
        self._terms = [term.lower() for term in (terms or []) if term]

    def filter(self, candidates: Sequence[HistoryEntry]) -> List[HistoryEntry]:
        return [
            entry
            for entry in candidates
            if all(term in entry.text.lower() for term in self._terms)
        ]


def format_entry(status: ExecutionStatus) -> str:
    """Format an execution as a tab-separated history line."""
    submitted = status.submitted_at.strftime(TIMESTAMP_FORMAT) if status.submitted_at else ""
    query = " ".join((status.query or "").split())
    seconds = (status.engine_execution_ms or 0) / 1000
    scanned = format_bytes(status.data_scanned_bytes or 0)
    return f"{submitted}\t{query}\t{status.state.value.upper()}\t{seconds:.2f} seconds\t{scanned}"


def _submitted_key(status: ExecutionStatus) -> datetime:
    submitted = status.submitted_at
    if submitted is None:
        return _EPOCH
    if submitted.tzinfo is None:
        return submitted.replace(tzinfo=timezone.utc)
    return submitted


class HistoryBrowser:
    """List recent executions and show the results of the selected ones."""

    def __init__(
        self,
        client: RemoteQueryClient,
        sink: ResultSink,
        listeners: Sequence[PhaseListener] = (),
        orchestrator: Optional[Orchestrator] = None,
    ) -> None:
        self._client = client
        self._orchestrator = orchestrator or Orchestrator(client, sink, listeners)

    def interrupt(self) -> bool:
        """Interrupt the fetches in progress."""
        return self._orchestrator.interrupt()

    async def entries(self, count: int) -> List[HistoryEntry]:
        """Return up to ``count`` recent SUCCEEDED executions, newest first."""
        statuses = await self._client.list_executions(count)
        succeeded = [
            status
            for status in statuses
            if status.state is RemoteState.SUCCEEDED and (status.query or "").strip()
        ]
        logger.debug("%d of %d listed executions succeeded", len(succeeded), len(statuses))
        succeeded.sort(key=_submitted_key, reverse=True)
        return [HistoryEntry(format_entry(status), status) for status in succeeded]

    async def browse(
        self,
        count: int,
        config: QueryConfig,
        history_filter: Optional[HistoryFilter] = None,
    ) -> BatchSummary:
        """Fetch and deliver the results of the entries the filter selects.

        Results are delivered in selection order regardless of
        ``config.ordered``.
        """
        candidates = await self.entries(count)
        selected = list((history_filter or SubstringFilter()).filter(candidates))
        logger.info("%d query executions selected", len(selected))
        if not selected:
            return BatchSummary(
                status=BatchStatus.NOTHING_TO_EXECUTE, message=NO_EXECUTIONS_SELECTED
            )

        ordered_config = config.model_copy(update={"ordered": True})
        return await self._orchestrator.run_executions(
            lambda token: [
                QueryExecution.from_status(self._client, ordered_config, entry.status, token)
                for entry in selected
            ],
            ordered_config,
        )

"""Tests for the historical execution browser."""

from datetime import datetime, timezone

import pytest

from query_batch.cancellation import CancellationBridge
from query_batch.config import QueryConfig
from query_batch.history import (
    NO_EXECUTIONS_SELECTED,
    HistoryBrowser,
    SubstringFilter,
    format_entry,
)
from query_batch.orchestrator import BatchStatus, Orchestrator
from query_batch.remote import ExecutionStatus, RemoteState, ResultPage
from tests._support.fake_remote import FakeRemoteClient, RecordingSink, Script

CONFIG = QueryConfig(wait_interval_seconds=0.001)


def _status(execution_id, query, day, state=RemoteState.SUCCEEDED):
    return ExecutionStatus(
        execution_id=execution_id,
        state=state,
        query=query,
        submitted_at=datetime(2024, 5, day, 12, 30, tzinfo=timezone.utc),
        engine_execution_ms=1250,
        data_scanned_bytes=4096,
    )


def _browser(client, sink):
    orchestrator = Orchestrator(
        client, sink, bridge_factory=lambda token: CancellationBridge(token, signals=())
    )
    return HistoryBrowser(client, sink, orchestrator=orchestrator)


def test_format_entry():
    status = _status("q-1", "SELECT *\n  FROM elb_logs\n  LIMIT 10", 3)
    assert format_entry(status) == (
        "2024-05-03 12:30:00\tSELECT * FROM elb_logs LIMIT 10\tSUCCEEDED\t1.25 seconds\t4.10 KB"
    )


def test_substring_filter_matches_all_terms_case_insensitively():
    class Entry:
        def __init__(self, text):
            self.text = text

    entries = [Entry("SELECT * FROM Orders"), Entry("select count(*) from users")]

    assert SubstringFilter(["select", "ORDERS"]).filter(entries) == [entries[0]]
    assert SubstringFilter().filter(entries) == entries


@pytest.mark.asyncio
async def test_entries_keep_only_succeeded_newest_first():
    client = FakeRemoteClient()
    client.history = [
        _status("q-1", "SELECT 1", 1),
        _status("q-2", "SELECT 2", 3),
        _status("q-3", "SELEC 3", 4, state=RemoteState.FAILED),
        _status("q-4", "SELECT 4", 2),
    ]

    entries = await _browser(client, RecordingSink()).entries(10)

    assert [entry.status.execution_id for entry in entries] == ["q-2", "q-4", "q-1"]
    assert str(entries[0]) == entries[0].text


@pytest.mark.asyncio
async def test_browse_delivers_selected_results_in_selection_order():
    client = FakeRemoteClient(
        {
            "SELECT 1": Script(pages=[ResultPage(columns=["a"], rows=[["one"]])]),
            "SELECT 2": Script(pages=[ResultPage(columns=["a"], rows=[["two"]])]),
        }
    )
    client.history = [
        _status("q-1", "SELECT 1", 1),
        _status("q-2", "SELECT 2", 2),
        _status("q-3", "SHOW TABLES", 3),
    ]
    sink = RecordingSink()

    summary = await _browser(client, sink).browse(10, CONFIG, SubstringFilter(["select"]))

    assert sink.statements == ["SELECT 2", "SELECT 1"]
    assert [payload.rows for _, _, payload in sink.delivered] == [(("two",),), (("one",),)]
    assert client.submitted == []
    assert summary.delivered == 2


@pytest.mark.asyncio
async def test_browse_with_nothing_selected():
    client = FakeRemoteClient()
    client.history = [_status("q-1", "SELECT 1", 1)]

    summary = await _browser(client, RecordingSink()).browse(
        10, CONFIG, SubstringFilter(["nomatch"])
    )

    assert summary.status is BatchStatus.NOTHING_TO_EXECUTE
    assert summary.message == NO_EXECUTIONS_SELECTED
    assert client.fetch_calls == []

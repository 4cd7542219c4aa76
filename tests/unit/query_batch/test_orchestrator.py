"""Tests for the bounded-concurrency batch orchestrator."""

import asyncio

import pytest

from query_batch.cancellation import CancellationBridge, Phase
from query_batch.config import EncryptionOption, QueryConfig
from query_batch.errors import RemoteFailure, SubmissionError, TransportError, ValidationError
from query_batch.orchestrator import NO_STATEMENTS_FOUND, BatchStatus, Orchestrator
from query_batch.remote import RemoteState
from tests._support.fake_remote import (
    FakeRemoteClient,
    RecordingListener,
    RecordingSink,
    Script,
    wait_until,
)


def _config(**overrides):
    values = {"output_location": "s3://bucket/out/", "wait_interval_seconds": 0.001}
    values.update(overrides)
    return QueryConfig(**values)


def _no_signals(token):
    return CancellationBridge(token, signals=())


def _orchestrator(client, sink, listeners=()):
    return Orchestrator(client, sink, listeners, bridge_factory=_no_signals)


@pytest.mark.asyncio
async def test_all_statements_run_in_parallel_and_deliver_in_completion_order():
    """Three statements under concurrency 5 overlap and arrive as they finish."""
    gates = {name: asyncio.Event() for name in ("s1", "s2", "s3")}
    client = FakeRemoteClient({name: Script(gate=gate) for name, gate in gates.items()})
    sink = RecordingSink()
    orchestrator = _orchestrator(client, sink)

    task = asyncio.create_task(orchestrator.run(["s1", "s2", "s3"], _config(concurrency=5)))
    await wait_until(lambda: client.in_flight == 3)

    for expected, name in enumerate(("s3", "s1", "s2"), start=1):
        gates[name].set()
        await wait_until(lambda n=expected: len(sink.delivered) == n)

    summary = await task
    assert sink.statements == ["s3", "s1", "s2"]
    assert client.max_in_flight == 3
    assert summary.status is BatchStatus.COMPLETED
    assert summary.delivered == 3
    assert summary.suppressed == 0


@pytest.mark.asyncio
async def test_concurrency_limit_bounds_executions_in_flight():
    """No more than `concurrency` executions are submitted and unfinished at once."""
    statements = [f"SELECT {i}" for i in range(6)]
    running = [RemoteState.RUNNING, RemoteState.RUNNING, RemoteState.SUCCEEDED]
    client = FakeRemoteClient({stmt: Script(states=list(running)) for stmt in statements})
    sink = RecordingSink()

    summary = await _orchestrator(client, sink).run(statements, _config(concurrency=2))

    assert client.max_in_flight == 2
    assert sorted(sink.statements) == sorted(statements)
    assert summary.delivered == 6


@pytest.mark.asyncio
async def test_each_statement_yields_exactly_one_envelope():
    """Successes and failures alike are delivered once each."""
    client = FakeRemoteClient(
        {
            "bad submit": Script(submit_error=RuntimeError("InvalidRequestException")),
            "bad query": Script(states=[RemoteState.FAILED], failure_reason="boom"),
        }
    )
    sink = RecordingSink()
    statements = ["ok 1", "bad submit", "ok 2", "bad query", "ok 3"]

    summary = await _orchestrator(client, sink).run(statements, _config(concurrency=2))

    assert sorted(sink.statements) == sorted(statements)
    assert summary.total == 5
    assert summary.delivered == 5
    assert summary.failed == 2


@pytest.mark.asyncio
async def test_blank_statements_report_nothing_to_execute():
    """Whitespace-only input creates no executions and touches no remote call."""
    client = FakeRemoteClient()
    sink = RecordingSink()

    summary = await _orchestrator(client, sink).run(["   ", "\n\t"], _config())

    assert summary.status is BatchStatus.NOTHING_TO_EXECUTE
    assert summary.message == NO_STATEMENTS_FOUND
    assert summary.total == 0
    assert client.submitted == []
    assert sink.delivered == []


@pytest.mark.asyncio
async def test_missing_output_location_fails_before_submitting():
    """An unusable config raises ValidationError and never calls submit."""
    client = FakeRemoteClient()
    sink = RecordingSink()

    with pytest.raises(ValidationError) as excinfo:
        await _orchestrator(client, sink).run(["SELECT 1"], _config(output_location=""))

    assert excinfo.value.field == "output_location"
    assert client.submitted == []
    assert sink.delivered == []


@pytest.mark.asyncio
async def test_kms_encryption_without_key_fails_before_submitting():
    client = FakeRemoteClient()

    with pytest.raises(ValidationError) as excinfo:
        await _orchestrator(client, RecordingSink()).run(
            ["SELECT 1"], _config(encryption_option=EncryptionOption.SSE_KMS)
        )

    assert excinfo.value.field == "kms_key"
    assert client.submitted == []


@pytest.mark.asyncio
async def test_cancel_after_first_success_with_single_permit():
    """Only the finished statement is delivered; the in-flight one is stopped.

    The third statement is still waiting for the permit when the batch is
    canceled, so it is never submitted and needs no stop request.
    """
    client = FakeRemoteClient({"s2": Script(gate=asyncio.Event())})
    sink = RecordingSink()
    orchestrator = _orchestrator(client, sink)

    task = asyncio.create_task(orchestrator.run(["s1", "s2", "s3"], _config(concurrency=1)))
    await wait_until(lambda: sink.statements == ["s1"] and "s2" in client.submitted)
    assert orchestrator.interrupt() is True

    summary = await task
    assert sink.statements == ["s1"]
    assert client.stop_calls == [client.execution_id("s2")]
    assert "s3" not in client.submitted
    assert summary.status is BatchStatus.CANCELED
    assert summary.canceled
    assert summary.delivered == 1
    assert summary.suppressed == 2


@pytest.mark.asyncio
async def test_cancel_stops_every_statement_still_polling():
    """Each execution that has not finished gets exactly one stop request."""
    client = FakeRemoteClient(
        {"s2": Script(gate=asyncio.Event()), "s3": Script(gate=asyncio.Event())}
    )
    sink = RecordingSink()
    orchestrator = _orchestrator(client, sink)

    task = asyncio.create_task(orchestrator.run(["s1", "s2", "s3"], _config(concurrency=3)))
    await wait_until(lambda: sink.statements == ["s1"] and client.in_flight == 2)
    orchestrator.interrupt()

    summary = await task
    assert sink.statements == ["s1"]
    assert sorted(client.stop_calls) == sorted(
        [client.execution_id("s2"), client.execution_id("s3")]
    )
    assert summary.delivered == 1
    assert summary.suppressed == 2


@pytest.mark.asyncio
async def test_repeated_interrupt_is_ignored():
    client = FakeRemoteClient({"s1": Script(gate=asyncio.Event())})
    listener = RecordingListener()
    orchestrator = _orchestrator(client, RecordingSink(), [listener])

    task = asyncio.create_task(orchestrator.run(["s1"], _config()))
    await wait_until(lambda: client.in_flight == 1)

    assert orchestrator.interrupt() is True
    assert orchestrator.interrupt() is False

    await task
    assert client.stop_calls == [client.execution_id("s1")]
    assert listener.phases == [Phase.RUNNING, Phase.CANCELING]


@pytest.mark.asyncio
async def test_cancel_between_success_and_fetch_suppresses_the_result():
    client = FakeRemoteClient()
    sink = RecordingSink()
    orchestrator = _orchestrator(client, sink)
    client.script("s1").on_terminal = orchestrator.interrupt

    summary = await orchestrator.run(["s1"], _config())

    assert client.fetch_calls == []
    assert client.stop_calls == []
    assert sink.delivered == []
    assert summary.status is BatchStatus.CANCELED
    assert summary.delivered == 0
    assert summary.suppressed == 1


@pytest.mark.asyncio
async def test_token_is_closed_when_the_batch_finishes():
    """An interrupt arriving after the run neither cancels nor announces anything."""
    tokens = []

    def recording_bridge(token):
        tokens.append(token)
        return _no_signals(token)

    listener = RecordingListener()
    orchestrator = Orchestrator(
        FakeRemoteClient(), RecordingSink(), [listener], bridge_factory=recording_bridge
    )

    summary = await orchestrator.run(["SELECT 1"], _config())

    (token,) = tokens
    assert token.is_closed
    assert token.cancel() is False
    assert not token.is_canceled
    assert listener.phases == [Phase.RUNNING]
    assert summary.status is BatchStatus.COMPLETED


@pytest.mark.asyncio
async def test_remote_failure_keeps_reason_and_spares_siblings():
    """A FAILED execution surfaces the remote reason verbatim."""
    client = FakeRemoteClient(
        {"SELEC 1": Script(states=[RemoteState.FAILED], failure_reason="syntax error")}
    )
    sink = RecordingSink()

    summary = await _orchestrator(client, sink).run(
        ["SELECT 1", "SELEC 1", "SELECT 2"], _config()
    )

    assert len(sink.errors) == 1
    error = sink.errors[0]
    assert isinstance(error, RemoteFailure)
    assert error.reason == "syntax error"
    assert error.statement == "SELEC 1"
    results = [stmt for kind, stmt, _ in sink.delivered if kind == "result"]
    assert sorted(results) == ["SELECT 1", "SELECT 2"]
    assert summary.failed == 1


@pytest.mark.asyncio
async def test_ordered_mode_buffers_until_earlier_statements_finish():
    gates = {name: asyncio.Event() for name in ("s1", "s2", "s3")}
    client = FakeRemoteClient({name: Script(gate=gate) for name, gate in gates.items()})
    sink = RecordingSink()
    orchestrator = _orchestrator(client, sink)

    task = asyncio.create_task(
        orchestrator.run(["s1", "s2", "s3"], _config(concurrency=3, ordered=True))
    )
    await wait_until(lambda: client.in_flight == 3)

    gates["s3"].set()
    await wait_until(lambda: client.in_flight == 2)
    gates["s2"].set()
    await wait_until(lambda: client.in_flight == 1)
    await asyncio.sleep(0.01)
    assert sink.delivered == []

    gates["s1"].set()
    await task
    assert sink.statements == ["s1", "s2", "s3"]


@pytest.mark.asyncio
async def test_ordered_mode_still_delivers_results_finished_before_cancel():
    client = FakeRemoteClient({"s1": Script(gate=asyncio.Event())})
    sink = RecordingSink()
    orchestrator = _orchestrator(client, sink)

    task = asyncio.create_task(
        orchestrator.run(["s1", "s2"], _config(concurrency=2, ordered=True))
    )
    def s2_fetched():
        return any(call[0] == client.execution_id("s2") for call in client.fetch_calls)

    await wait_until(s2_fetched)
    await asyncio.sleep(0.01)
    orchestrator.interrupt()

    summary = await task
    assert sink.statements == ["s2"]
    assert client.stop_calls == [client.execution_id("s1")]
    assert summary.suppressed == 1


@pytest.mark.asyncio
async def test_submission_and_transport_failures_are_typed():
    client = FakeRemoteClient(
        {
            "rejected": Script(submit_error=RuntimeError("InvalidRequestException: bad")),
            "lost poll": Script(poll_error=ConnectionError("connection reset by peer")),
            "lost fetch": Script(fetch_error=ConnectionError("connection reset by peer")),
        }
    )
    sink = RecordingSink()

    await _orchestrator(client, sink).run(["rejected", "lost poll", "lost fetch"], _config())

    errors = {stmt: payload for kind, stmt, payload in sink.delivered if kind == "error"}
    assert isinstance(errors["rejected"], SubmissionError)
    assert errors["rejected"].execution_id is None
    assert isinstance(errors["lost poll"], TransportError)
    assert errors["lost poll"].operation == "GetQueryExecution"
    assert errors["lost poll"].category == "connectivity"
    assert isinstance(errors["lost fetch"], TransportError)
    assert errors["lost fetch"].operation == "GetQueryResults"


@pytest.mark.asyncio
async def test_phase_notifications():
    """RUNNING is announced once per batch; nothing is announced when silent."""
    listener = RecordingListener()
    await _orchestrator(FakeRemoteClient(), RecordingSink(), [listener]).run(
        ["SELECT 1"], _config()
    )
    assert listener.phases == [Phase.RUNNING]

    silent_listener = RecordingListener()
    await _orchestrator(FakeRemoteClient(), RecordingSink(), [silent_listener]).run(
        ["SELECT 1"], _config(silent=True)
    )
    assert silent_listener.phases == []


@pytest.mark.asyncio
async def test_sink_failure_is_logged_and_does_not_stop_delivery(caplog):
    def explode(snapshot):
        if snapshot.statement == "s1":
            raise RuntimeError("terminal closed")

    sink = RecordingSink(on_render=explode)

    summary = await _orchestrator(FakeRemoteClient(), sink).run(
        ["s1", "s2"], _config(ordered=True)
    )

    assert sink.statements == ["s1", "s2"]
    assert summary.delivered == 1
    assert any("Sink failed to render" in r.message for r in caplog.records)


@pytest.mark.asyncio
async def test_overlapping_runs_on_one_orchestrator_are_rejected():
    gate = asyncio.Event()
    client = FakeRemoteClient({"s1": Script(gate=gate)})
    orchestrator = _orchestrator(client, RecordingSink())

    task = asyncio.create_task(orchestrator.run(["s1"], _config()))
    await wait_until(lambda: client.in_flight == 1)

    with pytest.raises(RuntimeError):
        await orchestrator.run(["s2"], _config())

    gate.set()
    summary = await task
    assert summary.delivered == 1


@pytest.mark.asyncio
async def test_interrupt_outside_a_run_is_a_no_op():
    orchestrator = _orchestrator(FakeRemoteClient(), RecordingSink())
    assert orchestrator.interrupt() is False

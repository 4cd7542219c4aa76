"""Unit test environment helpers."""

import pytest

_ENV_VARS = (
    "AWS_REGION",
    "AWS_PROFILE",
    "ATHENA_DATABASE",
    "ATHENA_OUTPUT_LOCATION",
    "ATHENA_WORKGROUP",
    "QUERY_BATCH_CONCURRENCY",
    "QUERY_BATCH_WAIT_INTERVAL",
    "QUERY_BATCH_SILENT",
    "QUERY_BATCH_TRACE_QUERIES",
    "QUERY_BATCH_METRICS_ENABLED",
    "OTEL_EXPORTER_OTLP_ENDPOINT",
    "OTEL_EXPORTER_OTLP_METRICS_ENDPOINT",
    "OTEL_METRICS_EXPORTER",
    "OTEL_DISABLE_EXPORTER",
)


@pytest.fixture(autouse=True)
def _minimal_env(monkeypatch, tmp_path):
    """Isolate unit tests from the developer's environment and config file."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    yield

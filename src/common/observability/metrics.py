"""Optional low-cardinality metrics for batch executions.

Every instrument is declared once below and labelled only by terminal state
or batch status. Nothing is emitted unless ``QUERY_BATCH_METRICS_ENABLED`` is
true, or is unset while an OTLP exporter is configured.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from opentelemetry import metrics

from common.config.env import get_env_bool

logger = logging.getLogger(__name__)


def is_otel_exporter_configured() -> bool:
    """Return True when OTLP export is configured through the standard env vars."""
    if get_env_bool("OTEL_DISABLE_EXPORTER", False):
        return False
    if (os.getenv("OTEL_METRICS_EXPORTER") or "").strip().lower() == "none":
        return False
    endpoints = ("OTEL_EXPORTER_OTLP_ENDPOINT", "OTEL_EXPORTER_OTLP_METRICS_ENDPOINT")
    return any((os.getenv(name) or "").strip() for name in endpoints)


def is_metrics_enabled(enabled_env_var: str) -> bool:
    """Resolve enablement: an explicit env flag wins, else exporter presence decides."""
    if os.getenv(enabled_env_var) is None:
        return is_otel_exporter_configured()
    try:
        return get_env_bool(enabled_env_var, False) is True
    except ValueError:
        logger.warning("Ignoring malformed %s; metrics disabled.", enabled_env_var)
        return False


@dataclass(frozen=True)
class Instrument:
    """Declaration of one OTEL instrument; ``kind`` is counter or histogram."""

    kind: str
    name: str
    description: str
    unit: str = "1"


EXECUTIONS = Instrument(
    "counter", "query_batch.executions", "Query executions that reached a terminal state"
)
EXECUTION_DURATION = Instrument(
    "histogram",
    "query_batch.execution.duration",
    "Time from submission to terminal state",
    unit="ms",
)
BATCHES = Instrument("counter", "query_batch.batches", "Batches that finished running")
BATCH_SIZE = Instrument("histogram", "query_batch.batch.statements", "Statements per batch")
SUPPRESSED = Instrument(
    "counter", "query_batch.suppressed", "Results withheld because their batch was canceled"
)


@dataclass
class BatchMetrics:
    """Execution and batch outcome metrics, no-ops unless enabled."""

    meter_name: str
    enabled_env_var: str
    _meter: Any = None
    _instruments: Dict[str, Any] = field(default_factory=dict)

    def _get(self, declared: Instrument):
        instrument = self._instruments.get(declared.name)
        if instrument is None:
            if self._meter is None:
                self._meter = metrics.get_meter(self.meter_name)
            create = getattr(self._meter, f"create_{declared.kind}")
            instrument = create(
                name=declared.name, description=declared.description, unit=declared.unit
            )
            self._instruments[declared.name] = instrument
        return instrument

    def _emit(self, declared: Instrument, value: float, labels: Dict[str, str]) -> None:
        try:
            instrument = self._get(declared)
            if declared.kind == "counter":
                instrument.add(int(value), labels)
            else:
                instrument.record(float(value), labels)
        except Exception as exc:
            logger.debug("Metric emission failed for %s: %s", declared.name, exc)

    def record_execution(self, state: str, duration_ms: Optional[float]) -> None:
        """Count a terminal execution and record its wall-clock duration."""
        if not is_metrics_enabled(self.enabled_env_var):
            return
        labels = {"state": state}
        self._emit(EXECUTIONS, 1, labels)
        if duration_ms is not None:
            self._emit(EXECUTION_DURATION, duration_ms, labels)

    def record_batch(self, status: str, statements: int, suppressed: int) -> None:
        """Count a finished batch with its size and withheld results."""
        if not is_metrics_enabled(self.enabled_env_var):
            return
        labels = {"status": status}
        self._emit(BATCHES, 1, labels)
        self._emit(BATCH_SIZE, statements, labels)
        if suppressed:
            self._emit(SUPPRESSED, suppressed, labels)


batch_metrics = BatchMetrics(
    meter_name="query-batch",
    enabled_env_var="QUERY_BATCH_METRICS_ENABLED",
)

import hashlib
from typing import Awaitable, Optional

from common.observability.context import batch_id_var, statement_index_var
from common.observability.metrics import is_metrics_enabled


def trace_enabled() -> bool:
    """Return True when remote-call tracing is enabled or OTEL exporter defaults apply."""
    return is_metrics_enabled("QUERY_BATCH_TRACE_QUERIES")


def _hash_sql(sql: str) -> str:
    return hashlib.sha256(sql.encode("utf-8")).hexdigest()


async def trace_query_operation(
    name: str,
    provider: str,
    operation: Awaitable,
    sql: Optional[str] = None,
    execution_id: Optional[str] = None,
):
    """Await a remote call inside an OTEL span when tracing is enabled."""
    if not trace_enabled():
        return await operation

    from opentelemetry import trace

    tracer = trace.get_tracer("query_batch")
    with tracer.start_as_current_span(name) as span:
        batch_id = batch_id_var.get()
        if batch_id:
            span.set_attribute("batch.id", batch_id)
        index = statement_index_var.get()
        if index is not None:
            span.set_attribute("batch.statement_index", index)
        span.set_attribute("db.provider", provider)
        if sql:
            span.set_attribute("db.statement_hash", _hash_sql(sql))
        if execution_id:
            span.set_attribute("db.execution_id", execution_id)
        try:
            result = await operation
            span.set_attribute("db.status", "ok")
            return result
        except Exception:
            span.set_attribute("db.status", "error")
            raise

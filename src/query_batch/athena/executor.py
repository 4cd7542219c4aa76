import asyncio
import logging
from typing import Any, Dict, List, Optional

from query_batch.config import QueryConfig
from query_batch.remote import ExecutionStatus, RemoteState, ResultPage
from query_batch.tracing import trace_query_operation

logger = logging.getLogger(__name__)

PROVIDER = "athena"

# Upper bound accepted by GetQueryResults for MaxResults.
GET_QUERY_RESULTS_MAX_RESULTS = 1000

# ListQueryExecutions pages and BatchGetQueryExecution both cap at 50 ids.
LIST_PAGE_SIZE = 50


class AthenaQueryClient:
    """RemoteQueryClient backed by the boto3 Athena API."""

    def __init__(
        self,
        region: Optional[str] = None,
        profile: Optional[str] = None,
        client: Any = None,
    ) -> None:
        """Use an injected boto3 client or build one from region/profile."""
        if client is None:
            import boto3

            session = boto3.Session(profile_name=profile, region_name=region)
            client = session.client("athena")
        self._client = client

    async def submit(self, statement: str, config: QueryConfig) -> str:
        """Start a query execution without waiting for it."""
        execution_id = await trace_query_operation(
            "query_batch.remote.submit",
            provider=PROVIDER,
            sql=statement,
            operation=asyncio.to_thread(
                _start_query_execution, self._client, statement, config
            ),
        )
        logger.debug("Query execution ID: %s", execution_id)
        return execution_id

    async def poll_status(self, execution_id: str) -> ExecutionStatus:
        """Fetch the current status of one execution."""
        response = await trace_query_operation(
            "query_batch.remote.poll",
            provider=PROVIDER,
            execution_id=execution_id,
            operation=asyncio.to_thread(
                self._client.get_query_execution, QueryExecutionId=execution_id
            ),
        )
        return _status_from_query_execution(response["QueryExecution"])

    async def stop(self, execution_id: str) -> None:
        """Request that Athena stop an execution."""
        await trace_query_operation(
            "query_batch.remote.stop",
            provider=PROVIDER,
            execution_id=execution_id,
            operation=asyncio.to_thread(
                self._client.stop_query_execution, QueryExecutionId=execution_id
            ),
        )

    async def fetch_results(
        self, execution_id: str, next_token: Optional[str] = None
    ) -> ResultPage:
        """Fetch one page of results; the header row is stripped from the first page."""
        return await trace_query_operation(
            "query_batch.remote.fetch",
            provider=PROVIDER,
            execution_id=execution_id,
            operation=asyncio.to_thread(
                _get_results_page, self._client, execution_id, next_token
            ),
        )

    async def list_executions(self, max_items: int) -> List[ExecutionStatus]:
        """List up to ``max_items`` recent executions with their details."""
        return await trace_query_operation(
            "query_batch.remote.list",
            provider=PROVIDER,
            operation=asyncio.to_thread(_list_query_executions, self._client, max_items),
        )


def _start_query_execution(client, statement: str, config: QueryConfig) -> str:
    result_configuration: Dict[str, Any] = {"OutputLocation": config.output_location}
    if config.encryption_option is not None:
        encryption: Dict[str, Any] = {"EncryptionOption": config.encryption_option.value}
        if config.kms_key:
            encryption["KmsKey"] = config.kms_key
        result_configuration["EncryptionConfiguration"] = encryption

    params: Dict[str, Any] = {
        "QueryString": statement,
        "ResultConfiguration": result_configuration,
    }
    if config.database:
        params["QueryExecutionContext"] = {"Database": config.database}
    if config.workgroup:
        params["WorkGroup"] = config.workgroup

    response = client.start_query_execution(**params)
    return response["QueryExecutionId"]


def _get_results_page(client, execution_id: str, next_token: Optional[str]) -> ResultPage:
    kwargs: Dict[str, Any] = {
        "QueryExecutionId": execution_id,
        "MaxResults": GET_QUERY_RESULTS_MAX_RESULTS,
    }
    if next_token:
        kwargs["NextToken"] = next_token
    response = client.get_query_results(**kwargs)

    result_set = response["ResultSet"]
    column_info = result_set.get("ResultSetMetadata", {}).get("ColumnInfo", [])
    columns = [col.get("Label") or col.get("Name") for col in column_info]
    rows = [
        [datum.get("VarCharValue") for datum in row.get("Data", [])]
        for row in result_set.get("Rows", [])
    ]

    # SELECT results repeat the column labels as the first row of the first page.
    if next_token is None and rows and rows[0] == columns:
        rows = rows[1:]

    return ResultPage(columns=columns, rows=rows, next_token=response.get("NextToken"))


def _list_query_executions(client, max_items: int) -> List[ExecutionStatus]:
    ids: List[str] = []
    next_token = None
    while len(ids) < max_items:
        kwargs: Dict[str, Any] = {"MaxResults": LIST_PAGE_SIZE}
        if next_token:
            kwargs["NextToken"] = next_token
        response = client.list_query_executions(**kwargs)
        ids.extend(response.get("QueryExecutionIds", []))
        next_token = response.get("NextToken")
        if not next_token:
            break
    ids = ids[:max_items]
    logger.debug("%d query execution ids listed", len(ids))

    statuses: List[ExecutionStatus] = []
    for start in range(0, len(ids), LIST_PAGE_SIZE):
        chunk = ids[start : start + LIST_PAGE_SIZE]
        response = client.batch_get_query_execution(QueryExecutionIds=chunk)
        statuses.extend(
            _status_from_query_execution(qx) for qx in response.get("QueryExecutions", [])
        )
    return statuses


def _status_from_query_execution(qx: Dict[str, Any]) -> ExecutionStatus:
    status = qx.get("Status", {})
    statistics = qx.get("Statistics", {})
    return ExecutionStatus(
        execution_id=qx["QueryExecutionId"],
        state=_map_state(status.get("State", "")),
        query=qx.get("Query"),
        failure_reason=status.get("StateChangeReason"),
        submitted_at=status.get("SubmissionDateTime"),
        completed_at=status.get("CompletionDateTime"),
        engine_execution_ms=statistics.get("EngineExecutionTimeInMillis"),
        data_scanned_bytes=statistics.get("DataScannedInBytes"),
        output_location=qx.get("ResultConfiguration", {}).get("OutputLocation"),
    )


def _map_state(state: str) -> RemoteState:
    if state == "SUCCEEDED":
        return RemoteState.SUCCEEDED
    if state == "FAILED":
        return RemoteState.FAILED
    if state == "CANCELLED":
        return RemoteState.CANCELLED
    if state == "QUEUED":
        return RemoteState.QUEUED
    return RemoteState.RUNNING

"""Error taxonomy for batch query execution.

Only ``ValidationError`` escapes ``Orchestrator.run``. Every other error is
scoped to a single statement and reaches the sink inside a ``ResultEnvelope``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

QUERY_REQUEST_CANCELED = "query execution request has been canceled"


@dataclass(frozen=True)
class ErrorClassification:
    """Provider-aware error category with retryability."""

    category: str
    is_retryable: bool
    retry_after_seconds: Optional[float] = None


_RETRYABLE_CATEGORIES = {"timeout", "connectivity", "throttling", "transient"}

# Ordered: the first matching rule wins.
_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("timeout", ("timeout", "timed out", "execution time limit")),
    (
        "connectivity",
        ("could not connect", "connection refused", "connection reset", "endpoint url"),
    ),
    ("auth", ("access denied", "accessdenied", "not authorized", "unrecognizedclient")),
    ("syntax", ("syntax error", "mismatched input", "parse error", "line 1:")),
    ("schema", ("does not exist", "table not found", "column cannot be resolved")),
    (
        "throttling",
        ("too many requests", "throttling", "rate exceeded", "toomanyrequestsexception"),
    ),
    ("transient", ("service unavailable", "temporarily unavailable", "internal server")),
)


def classify_error(exc: BaseException) -> ErrorClassification:
    """Classify a remote error by message and exception type."""
    message = str(exc).lower()
    class_name = exc.__class__.__name__.lower()

    retry_after = None
    match = re.search(r"retry after\s+(\d+(?:\.\d+)?)", message)
    if match:
        retry_after = float(match.group(1))

    category = "unknown"
    if isinstance(exc, TimeoutError) or class_name in {"timeout", "timeouterror"}:
        category = "timeout"
    elif class_name in {"connectionerror", "endpointconnectionerror"}:
        category = "connectivity"
    else:
        for candidate, fragments in _RULES:
            if any(fragment in message for fragment in fragments):
                category = candidate
                break

    return ErrorClassification(
        category=category,
        is_retryable=category in _RETRYABLE_CATEGORIES,
        retry_after_seconds=retry_after,
    )


class QueryBatchError(Exception):
    """Base class for every error raised by this package."""


class ValidationError(QueryBatchError, ValueError):
    """Configuration or input is unusable; raised before any execution starts."""

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        """Record the offending field name alongside the message."""
        super().__init__(message)
        self.field = field


class StatementError(QueryBatchError):
    """An error scoped to one statement of a batch."""

    def __init__(
        self,
        message: str,
        *,
        statement: str = "",
        execution_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        """Attach the originating statement and classification."""
        super().__init__(message)
        self.statement = statement
        self.execution_id = execution_id
        self.cause = cause
        self.classification = classify_error(cause if cause is not None else self)

    @property
    def category(self) -> str:
        """Return the classified error category."""
        return self.classification.category


class SubmissionError(StatementError):
    """The remote service rejected the statement outright."""

    def __init__(self, statement: str, cause: BaseException) -> None:
        """Wrap the submission failure."""
        super().__init__(
            f"failed to start query execution: {cause}",
            statement=statement,
            cause=cause,
        )


class TransportError(StatementError):
    """A poll or fetch call failed for reasons unrelated to query correctness."""

    def __init__(
        self, statement: str, execution_id: Optional[str], operation: str, cause: BaseException
    ) -> None:
        """Wrap the failed remote call with the operation name."""
        super().__init__(
            f"{operation} failed for query execution {execution_id}: {cause}",
            statement=statement,
            execution_id=execution_id,
            cause=cause,
        )
        self.operation = operation


class RemoteFailure(StatementError):
    """The remote service ran the statement and reported it failed."""

    def __init__(self, statement: str, execution_id: str, reason: str) -> None:
        """Keep the remote reason string verbatim."""
        super().__init__(
            f"query execution {execution_id} has failed. Reason: {reason}",
            statement=statement,
            execution_id=execution_id,
        )
        self.reason = reason
        self.classification = classify_error(Exception(reason))


class CanceledError(StatementError):
    """The statement was canceled, remotely or before it was ever submitted."""

    def __init__(self, statement: str, execution_id: Optional[str] = None) -> None:
        """Build the message from whether an execution id had been assigned."""
        if execution_id:
            message = f"query execution {execution_id} has been canceled"
        else:
            message = QUERY_REQUEST_CANCELED
        super().__init__(message, statement=statement, execution_id=execution_id)

from contextvars import ContextVar
from typing import Optional

batch_id_var: ContextVar[Optional[str]] = ContextVar("batch_id", default=None)
statement_index_var: ContextVar[Optional[int]] = ContextVar("statement_index", default=None)

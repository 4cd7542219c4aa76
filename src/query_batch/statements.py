import logging
from pathlib import Path
from typing import Callable, Iterable, List, Optional

logger = logging.getLogger(__name__)

FILE_PREFIX = "file://"
STATEMENT_SEPARATOR = ";"


def read_statement_file(arg: str) -> str:
    """Read the file named by a ``file://`` argument."""
    filename = arg[len(FILE_PREFIX) :] if arg.startswith(FILE_PREFIX) else arg
    logger.debug("Reading statements from %s", filename)
    return Path(filename).expanduser().read_text(encoding="utf-8")


def split_statements(
    args: Iterable[str],
    on_error: Optional[Callable[[str, Exception], None]] = None,
) -> List[str]:
    """Split arguments on semicolons into single statements, dropping empty ones.

    Arguments prefixed with ``file://`` are replaced by the file's content.
    Files that cannot be read or are not valid UTF-8 are reported to
    ``on_error`` and skipped.
    """
    stmts: List[str] = []
    for arg in args:
        text = arg
        if arg.startswith(FILE_PREFIX):
            try:
                text = read_statement_file(arg)
            except (OSError, UnicodeDecodeError) as exc:
                logger.warning("Failed to read %s: %s", arg, exc)
                if on_error is not None:
                    on_error(arg, exc)
                continue

        for part in text.split(STATEMENT_SEPARATOR):
            stmt = part.strip()
            if stmt:
                stmts.append(stmt)
    return stmts

"""Terminal rendering of results and progress."""

from __future__ import annotations

import abc
import asyncio
import csv
import logging
import threading
from typing import IO, List, Optional, Sequence

from query_batch.cancellation import Phase
from query_batch.config import OutputFormat
from query_batch.errors import CanceledError, StatementError
from query_batch.execution import ExecutionSnapshot

logger = logging.getLogger(__name__)

NO_OUTPUT = "(No output)"

_BYTE_UNITS = ("B", "KB", "MB", "GB", "TB", "PB", "EB")

SPINNER_FRAMES = ("⠋", "⠙", "⠚", "⠞", "⠖", "⠦", "⠴", "⠲", "⠳", "⠓")
SPINNER_REFRESH_SECONDS = 0.1
PHASE_MESSAGES = {
    Phase.RUNNING: "Running query...",
    Phase.CANCELING: "Canceling...",
}


def format_bytes(size: int) -> str:
    """Format a byte count in SI units, e.g. 82854982 -> '82.85 MB'."""
    if size < 1000:
        return f"{size} B"
    value = float(size)
    for unit in _BYTE_UNITS[1:]:
        value /= 1000
        if value < 1000:
            break
    return f"{value:.2f} {unit}"


class SafeWriter:
    """Serialize writes to a stream shared by concurrent writers."""

    def __init__(self, stream: IO[str]) -> None:
        self._stream = stream
        self._lock = threading.Lock()

    def write(self, text: str) -> None:
        with self._lock:
            self._stream.write(text)
            self._stream.flush()


def _cell(value: Optional[str]) -> str:
    return "" if value is None else value


class _BaseSink(abc.ABC):
    """Shared result layout; subclasses format the rows."""

    def __init__(self, out: IO[str], err: IO[str]) -> None:
        self._out = out if isinstance(out, SafeWriter) else SafeWriter(out)
        self._err = err if isinstance(err, SafeWriter) else SafeWriter(err)

    def render(self, snapshot: ExecutionSnapshot) -> None:
        """Print the statement, its rows and the execution statistics."""
        if snapshot.rows is None:
            return
        parts = ["\n", f"Query: {snapshot.statement};\n"]
        rows = [[_cell(value) for value in row] for row in snapshot.rows]
        if rows:
            parts.append(self._format_rows(list(snapshot.columns), rows))
        else:
            parts.append(NO_OUTPUT + "\n")
        parts.append(self._footer(snapshot))
        self._out.write("".join(parts))

    def render_error(self, statement: str, error: StatementError) -> None:
        """Print a failure; cancellations are only logged."""
        if isinstance(error, CanceledError):
            logger.info("%s", error)
            return
        self._err.write(f"\nError: query execution failed: {error}\n")

    @abc.abstractmethod
    def _format_rows(self, columns: List[str], rows: List[List[str]]) -> str:
        """Return the rows as text ending in a newline."""

    @staticmethod
    def _footer(snapshot: ExecutionSnapshot) -> str:
        meta = snapshot.metadata
        run_time = (meta.engine_execution_ms or 0) / 1000
        scanned = format_bytes(meta.data_scanned_bytes or 0)
        footer = f"Run time: {run_time:.2f} seconds | Data scanned: {scanned}\n"
        if meta.output_location:
            footer += f"Location: {meta.output_location}\n"
        return footer


class TableSink(_BaseSink):
    """Render rows as a bordered text table."""

    def _format_rows(self, columns: List[str], rows: List[List[str]]) -> str:
        body = [list(columns)] + rows if columns else rows
        width = max(len(row) for row in body)
        body = [row + [""] * (width - len(row)) for row in body]
        sizes = [max(len(row[i]) for row in body) for i in range(width)]

        border = "+" + "+".join("-" * (size + 2) for size in sizes) + "+\n"

        def line(row: Sequence[str]) -> str:
            cells = (f" {value.ljust(size)} " for value, size in zip(row, sizes))
            return "|" + "|".join(cells) + "|\n"

        out = [border]
        if columns:
            out.extend([line(body[0]), border])
            body = body[1:]
        out.extend(line(row) for row in body)
        out.append(border)
        return "".join(out)


class _LineBuffer:
    def __init__(self) -> None:
        self.parts: List[str] = []

    def write(self, text: str) -> None:
        self.parts.append(text)


class CsvSink(_BaseSink):
    """Render rows as CSV with a header line."""

    def _format_rows(self, columns: List[str], rows: List[List[str]]) -> str:
        buffer = _LineBuffer()
        writer = csv.writer(buffer, lineterminator="\n")
        if columns:
            writer.writerow(columns)
        writer.writerows(rows)
        return "".join(buffer.parts)


def create_sink(output: OutputFormat, out: IO[str], err: IO[str]) -> _BaseSink:
    """Return the sink for an output format."""
    if output is OutputFormat.CSV:
        return CsvSink(out, err)
    return TableSink(out, err)


class Spinner:
    """Phase listener that animates a progress message on a terminal stream."""

    def __init__(self, stream: IO[str], refresh_seconds: float = SPINNER_REFRESH_SECONDS) -> None:
        self._stream = stream if isinstance(stream, SafeWriter) else SafeWriter(stream)
        self._refresh_seconds = refresh_seconds
        self._message = ""
        self._task: Optional[asyncio.Task] = None

    @property
    def message(self) -> str:
        """Return the message currently shown."""
        return self._message

    def on_phase_change(self, phase: Phase) -> None:
        """Start spinning on RUNNING, switch the message on CANCELING."""
        self._message = PHASE_MESSAGES[phase]
        if phase is Phase.CANCELING:
            self._stream.write("\n")
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._spin())

    async def _spin(self) -> None:
        frame = 0
        while True:
            glyph = SPINNER_FRAMES[frame % len(SPINNER_FRAMES)]
            self._stream.write(f"\r{glyph} {self._message}")
            frame += 1
            await asyncio.sleep(self._refresh_seconds)

    async def stop(self) -> None:
        """Stop the animation and clear the line."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self._stream.write("\r\033[K")

"""
Row streaming between two live connections.

A step's rows travel from ``COPY ... TO STDOUT`` on the source to
``COPY ... FROM STDIN`` on the destination through a CopyPipe, a bounded
in-memory byte channel that psycopg2's ``copy_expert`` uses as its file
object on both ends. The export and the import run on their own threads.

The pipe can be closed in two ways. ``close()`` means the export finished,
and the import sees end of data. ``close_with_error(exc)`` means one side
failed, and every blocked or later ``read``/``write`` raises PipeClosedError
carrying ``exc``. The import therefore aborts its COPY (so no partial data is
committed) instead of treating a failed export as a short table.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import List, Optional, Tuple

from pg_partialcopy.CopyConfig import Step
from pg_partialcopy.errors import StreamError

LOG = logging.getLogger(__name__)

DEFAULT_MAX_CHUNKS = 16


class PipeClosedError(Exception):
    def __init__(self, cause: BaseException):
        super().__init__(f"copy pipe closed: {cause}")
        self.cause = cause


class CopyPipe:
    def __init__(self, max_chunks: int = DEFAULT_MAX_CHUNKS):
        if max_chunks < 1:
            raise ValueError("max_chunks must be at least 1")
        self.max_chunks = max_chunks
        self._chunks: deque = deque()
        self._cond = threading.Condition()
        self._eof = False
        self._error: Optional[BaseException] = None
        self.bytes_written = 0

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    @property
    def closed(self) -> bool:
        return self._eof or self._error is not None

    # ---------- writer side (COPY TO) ----------

    def write(self, data) -> int:
        data = bytes(data)
        with self._cond:
            while len(self._chunks) >= self.max_chunks and self._error is None:
                self._cond.wait()
            if self._error is not None:
                raise PipeClosedError(self._error)
            if self._eof:
                raise ValueError("write to a closed copy pipe")
            if data:
                self._chunks.append(data)
                self.bytes_written += len(data)
                self._cond.notify_all()
        return len(data)

    def close(self) -> None:
        with self._cond:
            if self.closed:
                return
            self._eof = True
            self._cond.notify_all()

    def close_with_error(self, exc: BaseException) -> None:
        with self._cond:
            if self.closed:
                return
            self._error = exc
            self._chunks.clear()
            self._cond.notify_all()

    # ---------- reader side (COPY FROM) ----------

    def read(self, size: int = -1) -> bytes:
        with self._cond:
            while not self._chunks and not self.closed:
                self._cond.wait()
            if self._error is not None:
                raise PipeClosedError(self._error)
            if not self._chunks:
                return b""
            chunk = self._chunks.popleft()
            if size is not None and 0 <= size < len(chunk):
                self._chunks.appendleft(chunk[size:])
                chunk = chunk[:size]
            self._cond.notify_all()
            return chunk


class RowStreamer:
    """Copy one step's rows from the source connection into the destination connection."""

    def __init__(self, source_conn, destination_conn, logger: logging.Logger | None = None,
                 max_chunks: int = DEFAULT_MAX_CHUNKS):
        self.src = source_conn
        self.dst = destination_conn
        self.log = logger or LOG
        self.max_chunks = max_chunks
        self._lock = threading.RLock()  # re-entered by abort() from a signal handler
        self._pipe: Optional[CopyPipe] = None

    def abort(self, exc: BaseException) -> None:
        """Fail the transfer in progress, if any, with ``exc``."""
        with self._lock:
            pipe = self._pipe
        if pipe is not None:
            pipe.close_with_error(exc)

    def stream(self, step: Step) -> int:
        """
        Transfer the rows for ``step`` and return the row count reported by the
        destination (-1 when the driver does not report one).

        Both workers have finished when this returns or raises. The first
        failure observed from either side is raised as StreamError.
        """
        t0 = time.perf_counter()
        pipe = CopyPipe(self.max_chunks)
        errors: List[Tuple[str, BaseException]] = []
        errors_lock = threading.Lock()
        export_done = threading.Event()
        rows = {"count": -1}

        def fail(side: str, exc: BaseException) -> None:
            with errors_lock:
                errors.append((side, exc))
            pipe.close_with_error(exc)

        def export_rows() -> None:
            try:
                if LOG.isEnabledFor(logging.DEBUG):
                    LOG.debug("Source: %s", step.copy_to_sql)
                with self.src.cursor() as c:
                    c.copy_expert(step.copy_to_sql, pipe)
            except BaseException as e:
                fail("source", e)
            else:
                pipe.close()
            finally:
                export_done.set()

        def import_rows() -> None:
            try:
                if LOG.isEnabledFor(logging.DEBUG):
                    LOG.debug("Destination: %s", step.copy_from_sql)
                with self.dst.cursor() as c:
                    c.copy_expert(step.copy_from_sql, pipe)
                    rows["count"] = c.rowcount
            except BaseException as e:
                fail("destination", e)
                # the export may be blocked on the server rather than on the pipe
                if not export_done.is_set():
                    cancel_query(self.src, "source")

        workers = [
            threading.Thread(target=export_rows, name=f"copy-to:{step.table_name}"),
            threading.Thread(target=import_rows, name=f"copy-from:{step.table_name}"),
        ]
        with self._lock:
            self._pipe = pipe
        try:
            for w in workers:
                w.start()
            try:
                for w in workers:
                    w.join()
            except BaseException as e:
                pipe.close_with_error(e)
                cancel_query(self.src, "source")
                cancel_query(self.dst, "destination")
                for w in workers:
                    w.join()
                raise
        finally:
            with self._lock:
                self._pipe = None

        if errors:
            side, exc = errors[0]
            cause = exc.cause if isinstance(exc, PipeClosedError) else exc
            raise StreamError(
                f"error copying rows ({side} side): {cause}", side=side, cause=cause
            ) from cause

        self.log.info(
            "Copied %s row(s) into %s (%d bytes, %.3fs)",
            rows["count"], step.table_name, pipe.bytes_written, time.perf_counter() - t0,
        )
        return rows["count"]


def cancel_query(conn, role: str) -> None:
    try:
        conn.cancel()
        LOG.debug("Requested cancel of running %s query", role)
    except Exception:
        LOG.warning("Could not cancel running %s query", role, exc_info=True)

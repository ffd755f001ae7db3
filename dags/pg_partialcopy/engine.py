from __future__ import annotations

import logging
import threading
import time
from contextlib import ExitStack
from typing import Any, Dict, List

import psycopg2

from pg_partialcopy import connections, constraints, tools
from pg_partialcopy.CopyConfig import CopyConfig, Step
from pg_partialcopy.errors import (
    ConstraintDropError,
    ConstraintRecreateError,
    CopyCancelledError,
    PartialCopyError,
    StepSQLError,
)
from pg_partialcopy.stream import DEFAULT_MAX_CHUNKS, RowStreamer, cancel_query

# Module-level logger for helpers
LOG = logging.getLogger(__name__)

# ============================== Engine (single class) ===============================

class PartialCopyEngine:
    """
    Copy a source database into a destination from one consistent snapshot.

    ``run()`` goes through these phases in order and stops at the first error:
    connect to the source, run before_transaction_sql, open the snapshot
    transaction, dump the structure, prepare the destination, load the
    structure, connect to the destination, drop foreign keys, run every step,
    recreate foreign keys. Both connections are closed and the snapshot
    transaction is rolled back on every exit path. Foreign keys are not
    restored after a failure; the raised error then has
    ``constraints_missing`` set.
    """

    def __init__(self, config: CopyConfig, logger: logging.Logger | None = None,
                 max_chunks: int = DEFAULT_MAX_CHUNKS):
        self.config = config
        self.log = logger or logging.getLogger(__name__)
        self.max_chunks = max_chunks
        self._cancelled = threading.Event()
        self._lock = threading.RLock()  # re-entered by cancel() from a signal handler
        self._conns: Dict[str, Any] = {}
        self._streamer: RowStreamer | None = None
        self.log.debug("PartialCopyEngine initialized with logger=%r", self.log.name)

    # ------------------------ Cancellation ------------------------

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Ask a running ``run()`` to stop; safe to call from another thread or a signal handler."""
        self._cancelled.set()
        with self._lock:
            streamer = self._streamer
            conns = list(self._conns.items())
        self.log.warning("Cancellation requested")
        if streamer is not None:
            streamer.abort(CopyCancelledError())
        for role, conn in conns:
            cancel_query(conn, role)

    def _check_cancelled(self, phase: str) -> None:
        if self._cancelled.is_set():
            raise CopyCancelledError(phase=phase)

    def _track(self, role: str, conn) -> None:
        with self._lock:
            self._conns[role] = conn

    def _untrack(self, role: str) -> None:
        with self._lock:
            self._conns.pop(role, None)

    def _set_streamer(self, streamer: RowStreamer | None) -> None:
        with self._lock:
            self._streamer = streamer

    # ------------------------ Full run ------------------------

    def run(self) -> Dict[str, Any]:
        cfg = self.config
        self.log.info("run: %d step(s)", len(cfg.steps))
        t0_run = time.perf_counter()
        try:
            result = self._run(cfg)
        except PartialCopyError as e:
            if self._cancelled.is_set() and not isinstance(e, CopyCancelledError):
                cancelled = CopyCancelledError(
                    phase=e.phase, step_index=e.step_index, table_name=e.table_name
                )
                if e.constraints_missing:
                    cancelled.mark_constraints_missing(e.pending_constraints)
                raise cancelled from e
            raise
        result["duration_s"] = round(time.perf_counter() - t0_run, 3)
        self.log.info("run result: %s", result)
        return result

    def _run(self, cfg: CopyConfig) -> Dict[str, Any]:
        with ExitStack() as stack:
            self._check_cancelled("connect_source")
            src = stack.enter_context(connections.pg_conn(cfg.source.database_url, "source"))
            self._track("source", src)
            stack.callback(self._untrack, "source")
            self.log.info("Connected to source")

            if cfg.source.before_transaction_sql:
                self._check_cancelled("before_transaction_sql")
                try:
                    connections.execute_sql(src, cfg.source.before_transaction_sql)
                except psycopg2.Error as e:
                    raise PartialCopyError(
                        f"error executing before transaction SQL: {e}", phase="before_transaction_sql"
                    ) from e
                self.log.info("Executed before transaction SQL")

            self._check_cancelled("snapshot")
            snapshot_id = stack.enter_context(connections.snapshot_transaction(src))
            self.log.info("Began transaction on source, snapshot_id=%s", snapshot_id)

            self._check_cancelled("dump_structure")
            t0 = time.perf_counter()
            structure_sql = tools.dump_structure(cfg.source.database_url, snapshot_id, self._cancelled)
            self.log.info(
                "Dumped structure from source (%d bytes, %.3fs)", len(structure_sql), time.perf_counter() - t0
            )

            self._check_cancelled("prepare_destination")
            if tools.prepare_destination(cfg.destination.prepare_command, self._cancelled):
                self.log.info("Prepared destination")
            else:
                self.log.info("No prepare_command configured; destination used as is")

            self._check_cancelled("load_structure")
            t0 = time.perf_counter()
            tools.load_structure(cfg.destination.database_url, structure_sql, self._cancelled)
            self.log.info("Loaded structure to destination (%.3fs)", time.perf_counter() - t0)

            self._check_cancelled("connect_destination")
            dst = stack.enter_context(connections.pg_conn(cfg.destination.database_url, "destination"))
            self._track("destination", dst)
            stack.callback(self._untrack, "destination")
            self.log.info("Connected to destination")

            self._check_cancelled("drop_constraints")
            try:
                fks = constraints.drop_foreign_keys(dst)
            except ConstraintDropError as e:
                self._report_missing_constraints(e, [fk.recreate_sql for fk in e.dropped])
                raise

            self._set_streamer(RowStreamer(src, dst, logger=self.log, max_chunks=self.max_chunks))
            stack.callback(self._set_streamer, None)

            steps: List[Dict[str, Any]] = []
            phase = "step"
            try:
                for idx, step in enumerate(cfg.steps):
                    self._check_cancelled("step")
                    steps.append(self.run_step(idx, step))

                phase = "recreate_constraints"
                self._check_cancelled(phase)
                constraints.recreate_foreign_keys(dst, fks)
            except ConstraintRecreateError as e:
                self._report_missing_constraints(e, [fk.recreate_sql for fk in e.pending])
                raise
            except PartialCopyError as e:
                self._report_missing_constraints(e, [fk.recreate_sql for fk in fks])
                raise
            except psycopg2.Error as e:
                err = PartialCopyError(f"database error: {e}", phase=phase)
                self._report_missing_constraints(err, [fk.recreate_sql for fk in fks])
                raise err from e
            self.log.info("Recreated foreign key constraints")

            return {
                "snapshot_id": snapshot_id,
                "constraints": len(fks),
                "steps": steps,
            }

    def _report_missing_constraints(self, err: PartialCopyError, pending: List[str]) -> None:
        if not pending:
            return
        err.mark_constraints_missing(pending)
        self.log.error(
            "Run stopped with %d foreign key constraint(s) missing on the destination; "
            "restore them with:\n%s",
            len(pending), ";\n".join(pending) + ";",
        )

    # ------------------------ One step ------------------------

    def run_step(self, idx: int, step: Step) -> Dict[str, Any]:
        """before_copy_sql, row stream, after_copy_sql, strictly in that order."""
        streamer = self._streamer
        if streamer is None:
            raise RuntimeError("run_step() is only valid while run() holds both connections")

        self.log.info("Executing step %d (%s)", idx, step.table_name)
        t0 = time.perf_counter()
        try:
            if step.before_copy_sql:
                self._step_sql(streamer.dst, step.before_copy_sql, "before_copy")
            rows = streamer.stream(step)
            if step.after_copy_sql:
                self._step_sql(streamer.dst, step.after_copy_sql, "after_copy")
        except PartialCopyError as e:
            e.phase = "step"
            e.step_index = idx
            e.table_name = step.table_name
            raise

        result = {
            "idx": idx,
            "table_name": step.table_name,
            "rows": rows,
            "duration_s": round(time.perf_counter() - t0, 3),
        }
        self.log.info("Executed step idx=%d table_name=%s rows=%s", idx, step.table_name, rows)
        return result

    def _step_sql(self, conn, sql: str, when: str) -> None:
        try:
            connections.execute_sql(conn, sql)
        except psycopg2.Error as e:
            raise StepSQLError(f"error executing {when.replace('_', ' ')} SQL: {e}", when=when) from e
        self.log.debug("Executed %s SQL", when)

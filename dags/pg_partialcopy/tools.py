"""
External PostgreSQL tooling: pg_dump for the source structure, psql to load it
into the destination, and ``sh`` for the destination prepare command.

Each helper takes an optional ``cancelled`` event. While it is unset the tool
runs to completion; once it is set the tool is terminated and
CopyCancelledError is raised.
"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from typing import List, Optional, Tuple

from pg_partialcopy.errors import CopyCancelledError, ExternalToolError

LOG = logging.getLogger(__name__)

# how often a running tool checks for cancellation
POLL_INTERVAL_S = 0.5
# time a terminated tool gets before it is killed
TERMINATE_GRACE_S = 10


def _communicate(process, input_bytes: Optional[bytes], cancelled: Optional[threading.Event],
                 tool: str, phase: str) -> Tuple[bytes, bytes]:
    if cancelled is None:
        return process.communicate(input=input_bytes)
    # stdin is only handed over on the first call
    pending_input = input_bytes
    while True:
        try:
            return process.communicate(input=pending_input, timeout=POLL_INTERVAL_S)
        except subprocess.TimeoutExpired:
            pending_input = None
            if not cancelled.is_set():
                continue
        LOG.warning("Terminating %s after cancellation", tool)
        process.terminate()
        try:
            process.communicate(timeout=TERMINATE_GRACE_S)
        except subprocess.TimeoutExpired:
            process.kill()
            process.communicate()
        raise CopyCancelledError(f"{tool} terminated by cancellation", phase=phase)


def _run(tool: str, cmd: List[str], input_bytes: Optional[bytes] = None, phase: str = "",
         cancelled: Optional[threading.Event] = None) -> bytes:
    # connection strings are the last argument of pg_dump/psql and may carry a password
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Running %s: %s", tool, cmd if tool == "sh" else cmd[:-1])
    t0 = time.perf_counter()
    try:
        process = subprocess.Popen(
            cmd,
            stdin=subprocess.PIPE if input_bytes is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as e:
        raise ExternalToolError(f"error running {tool}: {e}", tool=tool, phase=phase) from e

    stdout, stderr = _communicate(process, input_bytes, cancelled, tool, phase)
    stderr_text = stderr.decode("utf-8", errors="ignore").strip()

    if process.returncode != 0:
        raise ExternalToolError(
            f"{tool} exited with status {process.returncode}: {stderr_text or '<no output>'}",
            tool=tool,
            returncode=process.returncode,
            stderr=stderr_text,
            phase=phase,
        )
    if stderr_text:
        LOG.debug("%s stderr: %s", tool, stderr_text)
    LOG.debug("%s finished in %.3fs", tool, time.perf_counter() - t0)
    return stdout


def dump_structure(database_url: str, snapshot_id: str,
                   cancelled: Optional[threading.Event] = None) -> bytes:
    """Schema-only dump of the source as of ``snapshot_id``, without owners or grants."""
    return _run(
        "pg_dump",
        [
            "pg_dump",
            "--snapshot", snapshot_id,
            "--schema-only",
            "--no-owner",
            "--no-privileges",
            database_url,
        ],
        phase="dump_structure",
        cancelled=cancelled,
    )


def prepare_destination(command: Optional[str], cancelled: Optional[threading.Event] = None) -> bool:
    """Run the destination prepare command with ``sh -c``. Returns False when there is none."""
    if not command:
        return False
    _run("sh", ["sh", "-c", command], phase="prepare_destination", cancelled=cancelled)
    return True


def load_structure(database_url: str, structure_sql: bytes,
                   cancelled: Optional[threading.Event] = None) -> None:
    """Apply ``structure_sql`` to the destination; the first failing statement fails the load."""
    _run(
        "psql",
        [
            "psql",
            "--no-psqlrc",
            "--quiet",
            "-v", "ON_ERROR_STOP=1",
            database_url,
        ],
        input_bytes=structure_sql,
        phase="load_structure",
        cancelled=cancelled,
    )

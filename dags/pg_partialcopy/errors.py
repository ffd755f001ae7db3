"""
Exceptions raised by a partial copy run.

Every error is fatal to the run. The engine fills in the phase, and for step
failures the step index and table name, before surfacing the error. When a run
stops between dropping and recreating the destination's foreign keys the error
has ``constraints_missing`` set and ``pending_constraints`` lists the
``alter table ... add constraint`` statements an operator still has to apply.
"""

from __future__ import annotations

from typing import List, Optional


class PartialCopyError(Exception):
    def __init__(
        self,
        message: str,
        *,
        phase: Optional[str] = None,
        step_index: Optional[int] = None,
        table_name: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.phase = phase
        self.step_index = step_index
        self.table_name = table_name
        self.constraints_missing = False
        self.pending_constraints: List[str] = []

    def mark_constraints_missing(self, pending: List[str]) -> None:
        self.constraints_missing = True
        self.pending_constraints = list(pending)

    def __str__(self) -> str:
        if self.step_index is not None:
            text = f"error executing step {self.step_index} ({self.table_name}): {self.message}"
        else:
            text = self.message
        if self.constraints_missing:
            text += (
                f" [{len(self.pending_constraints)} foreign key constraint(s) were not restored"
                " on the destination and must be recreated manually]"
            )
        return text


class DatabaseConnectionError(PartialCopyError):
    """Cannot reach the source or destination database."""

    def __init__(self, message: str, *, role: str, **kwargs):
        super().__init__(message, **kwargs)
        self.role = role


class SnapshotError(PartialCopyError):
    """Beginning the snapshot transaction or exporting its snapshot failed."""


class ExternalToolError(PartialCopyError):
    """pg_dump, psql or the prepare command failed."""

    def __init__(self, message: str, *, tool: str, returncode: Optional[int] = None,
                 stderr: str = "", **kwargs):
        super().__init__(message, **kwargs)
        self.tool = tool
        self.returncode = returncode
        self.stderr = stderr


class ConstraintError(PartialCopyError):
    pass


class ConstraintDiscoveryError(ConstraintError):
    pass


class ConstraintDropError(ConstraintError):
    def __init__(self, message: str, *, dropped=None, **kwargs):
        super().__init__(message, **kwargs)
        self.dropped = list(dropped or [])


class ConstraintRecreateError(ConstraintError):
    def __init__(self, message: str, *, recreated=None, pending=None, **kwargs):
        super().__init__(message, **kwargs)
        self.recreated = list(recreated or [])
        self.pending = list(pending or [])


class StepSQLError(PartialCopyError):
    """A step's before_copy_sql or after_copy_sql failed on the destination."""

    def __init__(self, message: str, *, when: str, **kwargs):
        super().__init__(message, **kwargs)
        self.when = when


class StreamError(PartialCopyError):
    """One side of a row transfer failed. ``side`` is "source" or "destination"."""

    def __init__(self, message: str, *, side: str, cause: BaseException, **kwargs):
        super().__init__(message, **kwargs)
        self.side = side
        self.cause = cause


class CopyCancelledError(PartialCopyError):
    def __init__(self, message: str = "copy cancelled", **kwargs):
        super().__init__(message, **kwargs)

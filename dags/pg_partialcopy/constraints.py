from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import List

import psycopg2

from pg_partialcopy.errors import (
    ConstraintDiscoveryError,
    ConstraintDropError,
    ConstraintRecreateError,
)

LOG = logging.getLogger(__name__)

# Partitions inherit foreign keys from their parent (conparentid <> 0); those go with the parent.
FOREIGN_KEYS_SQL = """
    SELECT conrelid::regclass::text AS table_name,
           quote_ident(conname)     AS constraint_name,
           pg_get_constraintdef(oid) AS constraint_definition
    FROM pg_constraint
    WHERE contype = 'f'
      AND conparentid = 0
    ORDER BY conrelid::regclass::text, conname
"""


@dataclass(frozen=True)
class ForeignKeyConstraint:
    table_name: str          # already quoted by regclass output
    constraint_name: str     # already quoted by quote_ident
    definition: str          # verbatim pg_get_constraintdef output

    @property
    def drop_sql(self) -> str:
        return f"alter table {self.table_name} drop constraint {self.constraint_name}"

    @property
    def recreate_sql(self) -> str:
        return f"alter table {self.table_name} add constraint {self.constraint_name} {self.definition}"


def discover_foreign_keys(conn) -> List[ForeignKeyConstraint]:
    try:
        with conn.cursor() as c:
            c.execute(FOREIGN_KEYS_SQL)
            rows = c.fetchall()
    except psycopg2.Error as e:
        raise ConstraintDiscoveryError(
            f"error querying foreign key constraints: {e}", phase="drop_constraints"
        ) from e
    fks = [ForeignKeyConstraint(*row) for row in rows]
    LOG.info("Discovered %d foreign key constraint(s) on destination", len(fks))
    return fks


def drop_foreign_keys(conn) -> List[ForeignKeyConstraint]:
    """
    Drop every foreign key on the destination and return them in drop order.

    Each constraint's definition is captured before it is dropped; the
    returned list is what recreate_foreign_keys needs to restore them.
    """
    t0 = time.perf_counter()
    fks = discover_foreign_keys(conn)
    dropped: List[ForeignKeyConstraint] = []
    for fk in fks:
        LOG.debug("Dropping %s", fk.drop_sql)
        try:
            with conn.cursor() as c:
                c.execute(fk.drop_sql)
        except psycopg2.Error as e:
            raise ConstraintDropError(
                f"error dropping constraint {fk.constraint_name} on {fk.table_name}: {e}",
                dropped=dropped,
                phase="drop_constraints",
            ) from e
        dropped.append(fk)
    LOG.info("Dropped %d foreign key constraint(s) (%.3fs)", len(dropped), time.perf_counter() - t0)
    return dropped


def recreate_foreign_keys(conn, constraints: List[ForeignKeyConstraint]) -> None:
    t0 = time.perf_counter()
    for i, fk in enumerate(constraints):
        LOG.debug("Recreating %s", fk.recreate_sql)
        try:
            with conn.cursor() as c:
                c.execute(fk.recreate_sql)
        except psycopg2.Error as e:
            raise ConstraintRecreateError(
                f"error recreating constraint {fk.constraint_name} on {fk.table_name}: {e}",
                recreated=constraints[:i],
                pending=constraints[i:],
                phase="recreate_constraints",
            ) from e
    LOG.info(
        "Recreated %d foreign key constraint(s) (%.3fs)", len(constraints), time.perf_counter() - t0
    )

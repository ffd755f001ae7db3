from __future__ import annotations

import psycopg2
import pytest

from fakes import pg_error
from pg_partialcopy.constraints import (
    FOREIGN_KEYS_SQL,
    ForeignKeyConstraint,
    drop_foreign_keys,
    recreate_foreign_keys,
)
from pg_partialcopy.errors import (
    ConstraintDiscoveryError,
    ConstraintDropError,
    ConstraintRecreateError,
)

FK_ROWS = [
    ("b", "b_id_fkey", "FOREIGN KEY (id) REFERENCES a(id)"),
    ('public."Orders"', '"Orders_customer_fkey"',
     "FOREIGN KEY (customer_id) REFERENCES customers(id) ON DELETE CASCADE"),
]


@pytest.fixture()
def catalog(dst):
    dst.results["FROM pg_constraint"] = FK_ROWS
    return dst


def test_recreate_statement_uses_captured_definition_verbatim():
    fk = ForeignKeyConstraint(*FK_ROWS[1])
    assert fk.drop_sql == 'alter table public."Orders" drop constraint "Orders_customer_fkey"'
    assert fk.recreate_sql == (
        'alter table public."Orders" add constraint "Orders_customer_fkey" '
        "FOREIGN KEY (customer_id) REFERENCES customers(id) ON DELETE CASCADE"
    )


def test_drop_captures_then_drops_in_discovery_order(catalog):
    dropped = drop_foreign_keys(catalog)

    assert [fk.constraint_name for fk in dropped] == ["b_id_fkey", '"Orders_customer_fkey"']
    assert catalog.statements() == [
        FOREIGN_KEYS_SQL,
        "alter table b drop constraint b_id_fkey",
        'alter table public."Orders" drop constraint "Orders_customer_fkey"',
    ]


def test_drop_with_no_foreign_keys(dst):
    assert drop_foreign_keys(dst) == []
    assert dst.statements() == [FOREIGN_KEYS_SQL]


def test_discovery_failure(dst):
    dst.fail_on["FROM pg_constraint"] = pg_error("permission denied")
    with pytest.raises(ConstraintDiscoveryError) as ei:
        drop_foreign_keys(dst)
    assert ei.value.phase == "drop_constraints"


def test_drop_failure_reports_what_was_already_dropped(catalog):
    catalog.fail_on["drop constraint \"Orders_customer_fkey\""] = pg_error("lock timeout")
    with pytest.raises(ConstraintDropError) as ei:
        drop_foreign_keys(catalog)
    assert [fk.constraint_name for fk in ei.value.dropped] == ["b_id_fkey"]


def test_recreate_in_capture_order(catalog):
    fks = drop_foreign_keys(catalog)
    recreate_foreign_keys(catalog, fks)

    assert catalog.statements()[-2:] == [fk.recreate_sql for fk in fks]


def test_recreate_failure_splits_recreated_and_pending(dst):
    fks = [ForeignKeyConstraint(*row) for row in FK_ROWS]
    dst.fail_on["add constraint \"Orders_customer_fkey\""] = pg_error(
        'insert or update on table "Orders" violates foreign key constraint'
    )
    with pytest.raises(ConstraintRecreateError) as ei:
        recreate_foreign_keys(dst, fks)

    assert ei.value.recreated == fks[:1]
    assert ei.value.pending == fks[1:]
    assert ei.value.phase == "recreate_constraints"


def test_recreate_on_closed_connection_leaves_everything_pending(dst):
    fks = [ForeignKeyConstraint(*row) for row in FK_ROWS]
    dst.cursor_error = psycopg2.InterfaceError("connection already closed")

    with pytest.raises(ConstraintRecreateError) as ei:
        recreate_foreign_keys(dst, fks)

    assert ei.value.recreated == []
    assert ei.value.pending == fks


def test_drop_on_connection_closed_after_discovery(catalog):
    catalog.hooks["FROM pg_constraint"] = lambda: setattr(
        catalog, "cursor_error", psycopg2.InterfaceError("connection already closed")
    )
    with pytest.raises(ConstraintDropError) as ei:
        drop_foreign_keys(catalog)
    assert ei.value.dropped == []

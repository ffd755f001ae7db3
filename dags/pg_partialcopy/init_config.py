from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List

from pg_partialcopy import connections
from pg_partialcopy.CopyConfig import Step

LOG = logging.getLogger(__name__)

# a select list longer than this gets one column per line
MAX_INLINE_COLUMNS_LEN = 114

TABLES_SQL = """
    SELECT quote_ident(table_schema) || '.' || quote_ident(table_name) AS table_name,
           array_agg(quote_ident(column_name) ORDER BY columns.ordinal_position) AS column_names
    FROM information_schema.tables
    JOIN information_schema.columns USING (table_schema, table_name)
    WHERE table_schema NOT IN ('information_schema', 'pg_catalog')
      AND table_type = 'BASE TABLE'
    GROUP BY table_schema, table_name
    ORDER BY table_schema, table_name
"""

CONFIG_TEMPLATE = """\
# source is the database from which data will be copied.
[source]
# database_url is a URL or key-value connection string. It is required.
database_url = {source_url}

# before_transaction_sql is SQL that is run before the read-only transaction is started. A common use case would be to
# create a temporary table and populate it with data that will be used in steps with select_sql.
# before_transaction_sql = ""

# destination is the database to which data will be copied.
[destination]
# database_url is a URL or key-value connection string. It is required.
database_url = {destination_url}

# prepare_command is command(s) that will be run to prepare the destination database. It is run with the "sh" shell.
# Generally, it will optionally drop and create the empty destination database.
# prepare_command = "dropdb --if-exists destination && createdb destination"

# steps is an array of steps to execute.
"""


def _toml_str(value: str) -> str:
    # JSON string escapes are valid TOML basic-string escapes
    return json.dumps(value, ensure_ascii=False)


def build_select_sql(table_name: str, column_names: List[str]) -> str:
    total_len = sum(len(c) + 2 for c in column_names)  # + 2 for ", "
    if total_len > MAX_INLINE_COLUMNS_LEN:
        cols = "select\n" + ",\n".join(f"  {c}" for c in column_names)
    else:
        cols = "select " + ", ".join(column_names)
    return f"{cols}\nfrom {table_name}"


def collect_steps(conn, omit_select_sql: bool = False) -> List[Step]:
    with conn.cursor() as c:
        c.execute(TABLES_SQL)
        rows = c.fetchall()
    steps = [
        Step(
            table_name=table_name,
            select_sql=None if omit_select_sql else build_select_sql(table_name, list(column_names)),
        )
        for table_name, column_names in rows
    ]
    LOG.info("Found %d table(s) in source", len(steps))
    return steps


def render_config(source_url: str, destination_url: str, steps: List[Step]) -> str:
    parts = [CONFIG_TEMPLATE.format(
        source_url=_toml_str(source_url),
        destination_url=_toml_str(destination_url),
    )]
    for step in steps:
        parts.append(f"[[steps]]\ntable_name = {_toml_str(step.table_name)}\n")
        if step.select_sql:
            parts.append(f"select_sql = '''\n{step.select_sql}\n'''\n")
        parts.append("\n")
    return "".join(parts)


def init_config_file(path: str | Path, source_url: str, destination_url: str = "",
                     omit_select_sql: bool = False) -> Path:
    """Write a starter config with one step per source table. Never overwrites ``path``."""
    path = Path(path)
    if path.exists():
        raise FileExistsError(f"Config file {path} already exists")

    with connections.pg_conn(source_url, "source") as conn:
        steps = collect_steps(conn, omit_select_sql=omit_select_sql)

    text = render_config(source_url, destination_url, steps)
    with open(path, "x", encoding="utf-8") as fh:
        fh.write(text)
    LOG.info("Wrote config with %d step(s) to %s", len(steps), path)
    return path

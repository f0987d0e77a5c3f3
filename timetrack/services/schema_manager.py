"""Idempotent table bootstrap and forward migration.

Every store table is created from its ``Table`` factory when absent. Existing
tables are evolved in place: a legacy non-UUID ``id`` is rewritten to a UUID
primary key, late-added columns are appended with their defaults, and missing
indexes are created. One ``ensure`` call runs in a single transaction.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import CHAR, Column, Index, MetaData, Table, Uuid, inspect, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.types import NullType

from timetrack.models import time_entry, user

logger = logging.getLogger(__name__)

TABLE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_UUID_EXPRESSIONS = {
    "postgresql": "gen_random_uuid()",
    # Same 32-char hex layout SQLAlchemy's Uuid type uses on SQLite.
    "sqlite": "lower(hex(randomblob(16)))",
}


def validate_table_name(name: Optional[str]) -> str:
    if not name or not TABLE_NAME_RE.match(name):
        raise ValueError("Invalid table name")
    return name


@dataclass
class SchemaResult:
    success: bool
    message: Optional[str] = None
    error: Optional[str] = None
    changes: list[str] = field(default_factory=list)


class SchemaManager:
    def __init__(
        self,
        engine: Engine,
        *,
        time_entries_table: str = "time_entries_jobs",
        users_table: str = "time_entries_users",
    ):
        self.engine = engine
        self._tables: dict[str, tuple[Table, tuple[str, ...]]] = {
            "time_entries": (
                time_entry.time_entries_table(validate_table_name(time_entries_table)),
                time_entry.EVOLVED_COLUMNS,
            ),
            "users": (
                user.users_table(validate_table_name(users_table)),
                user.EVOLVED_COLUMNS,
            ),
        }

    def table(self, kind: str) -> Table:
        return self._tables[kind][0]

    def ensure(self, kind: str) -> SchemaResult:
        if kind not in self._tables:
            return SchemaResult(success=False, error=f"Unknown table kind: {kind}")

        table, evolved = self._tables[kind]
        changes: list[str] = []
        try:
            with self.engine.begin() as conn:
                self._ensure_table(conn, table, evolved, changes)
        except Exception as exc:
            logger.exception(
                "Error ensuring table",
                extra={"table": table.name, "kind": kind},
            )
            return SchemaResult(success=False, error=str(exc))

        if changes:
            logger.info("Table schema updated", extra={"table": table.name, "changes": changes})
        return SchemaResult(success=True, message="Table ready", changes=changes)

    def ensure_all(self) -> dict[str, SchemaResult]:
        return {kind: self.ensure(kind) for kind in self._tables}

    # ---------- steps ----------

    def _ensure_table(
        self,
        conn: Connection,
        table: Table,
        evolved: tuple[str, ...],
        changes: list[str],
    ) -> None:
        if not inspect(conn).has_table(table.name):
            table.create(conn)
            changes.append(f"create table {table.name}")
            return

        columns = _columns(conn, table.name)
        id_column = columns.get("id")
        if id_column is not None and not _is_uuid_type(id_column["type"], conn.dialect.name):
            self._migrate_to_uuid(conn, table, evolved, list(columns.values()))
            changes.append(f"convert {table.name}.id to uuid")
            columns = _columns(conn, table.name)

        for name in evolved:
            if name not in columns:
                _add_column(conn, table, name)
                changes.append(f"add column {table.name}.{name}")

        self._ensure_indexes(conn, table, changes)

    def _migrate_to_uuid(
        self,
        conn: Connection,
        table: Table,
        evolved: tuple[str, ...],
        legacy_columns: list[dict],
    ) -> None:
        """Rebuild ``table`` with a UUID primary key, keeping every legacy row.

        The new table comes from the target definition, so unique constraints
        such as ``emp_code`` survive. Legacy ids are replaced.
        """
        dialect = conn.dialect.name
        uuid_expression = _UUID_EXPRESSIONS.get(dialect)
        if uuid_expression is None:
            raise RuntimeError(f"UUID migration is not supported on {dialect}")

        name = table.name
        q = conn.dialect.identifier_preparer.quote
        backup = f"{name}_backup"
        if inspect(conn).has_table(backup):
            raise RuntimeError(f"Backup table {backup} already exists; restore it before migrating {name}")

        logger.warning("Converting table id column to UUID", extra={"table": name})

        conn.execute(text(f"CREATE TABLE {q(backup)} AS SELECT * FROM {q(name)}"))
        conn.execute(text(f"DROP TABLE {q(name)}"))

        legacy = {col["name"]: col for col in legacy_columns if col["name"] != "id"}
        rebuilt = _rebuild_definition(table, evolved, set(legacy))
        rebuilt.create(conn)

        for col in legacy.values():
            if col["name"] not in rebuilt.c:
                conn.execute(
                    text(f"ALTER TABLE {q(name)} ADD COLUMN {q(col['name'])} {_compile_type(col['type'], conn)}")
                )

        names = ", ".join(q(col_name) for col_name in legacy)
        conn.execute(
            text(
                f"INSERT INTO {q(name)} (id, {names}) "
                f"SELECT {uuid_expression}, {names} FROM {q(backup)}"
            )
        )
        conn.execute(text(f"DROP TABLE {q(backup)}"))

    def _ensure_indexes(self, conn: Connection, table: Table, changes: list[str]) -> None:
        existing = {ix["name"] for ix in inspect(conn).get_indexes(table.name)}

        for index in sorted(table.indexes, key=lambda ix: ix.name):
            if index.name in existing:
                continue

            if not index.unique:
                index.create(conn)
                changes.append(f"create index {index.name}")
                continue

            # Existing duplicate active rows must not block the rest of the bootstrap.
            try:
                with conn.begin_nested():
                    index.create(conn)
            except SQLAlchemyError as exc:
                logger.warning(
                    "Could not create unique active-timer index; duplicate active rows exist",
                    extra={"table": table.name, "index": index.name, "error": str(exc)},
                )
                continue
            changes.append(f"create index {index.name}")


def _columns(conn: Connection, table_name: str) -> dict[str, dict]:
    return {col["name"]: col for col in inspect(conn).get_columns(table_name)}


def _compile_type(column_type, conn: Connection) -> str:
    if isinstance(column_type, NullType):
        return "TEXT"
    return column_type.compile(dialect=conn.dialect)


def _add_column(conn: Connection, table: Table, name: str) -> None:
    column = table.c[name]
    q = conn.dialect.identifier_preparer.quote

    ddl = f"ALTER TABLE {q(table.name)} ADD COLUMN {q(name)} {_compile_type(column.type, conn)}"
    if column.server_default is not None:
        default = column.server_default.arg
        if hasattr(default, "text"):
            ddl += f" DEFAULT {default.text}"
        else:
            ddl += f" DEFAULT {default.compile(dialect=conn.dialect)}"
    conn.execute(text(ddl))


def _is_uuid_type(column_type, dialect: str) -> bool:
    if isinstance(column_type, Uuid):
        return True
    # SQLite stores Uuid as CHAR(32) and reflects it as such.
    return dialect == "sqlite" and isinstance(column_type, CHAR) and column_type.length == 32


def _rebuild_definition(table: Table, evolved: tuple[str, ...], legacy: set[str]) -> Table:
    """Target definition limited to the columns a legacy table can fill.

    Evolved columns the legacy table lacks are left for the regular
    add-column step, and evolved columns are nullable there, so they are
    nullable here too. Indexes over missing columns are created later.
    """
    keep = [col for col in table.c if col.name not in evolved or col.name in legacy]
    rebuilt = Table(
        table.name,
        MetaData(),
        *[
            Column(
                col.name,
                col.type,
                primary_key=col.primary_key,
                nullable=col.nullable or col.name in evolved,
                unique=col.unique,
                server_default=col.server_default.arg if col.server_default is not None else None,
            )
            for col in keep
        ],
    )
    for index in table.indexes:
        if all(col.name in rebuilt.c for col in index.columns):
            Index(
                index.name,
                *[rebuilt.c[col.name] for col in index.columns],
                unique=index.unique,
                **index.dialect_kwargs,
            )
    return rebuilt

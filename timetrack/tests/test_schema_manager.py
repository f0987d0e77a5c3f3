from datetime import datetime, timezone
import hashlib
import uuid

import pytest
from sqlalchemy import Boolean, Column, DateTime, Integer, MetaData, Table, Text, inspect, text

from timetrack.models.time_entry import active_index_name, time_entries_table
from timetrack.services.schema_manager import SchemaManager, validate_table_name
from timetrack.services.time_entry_store import TimeEntryStore
from timetrack.services.user_store import UserStore


@pytest.fixture
def scratch_tables(engine):
    names = []
    yield names
    with engine.begin() as conn:
        for name in names:
            conn.execute(text(f'DROP TABLE IF EXISTS "{name}"'))


def _scratch_name(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


def test_validate_table_name_rejects_unsafe_names():
    assert validate_table_name("time_entries_jobs") == "time_entries_jobs"
    for bad in ("", "1jobs", "jobs; DROP TABLE x", "jobs-2", 'jobs"'):
        with pytest.raises(ValueError, match="Invalid table name"):
            validate_table_name(bad)


def test_stores_reject_invalid_table_names(engine):
    with pytest.raises(ValueError):
        TimeEntryStore(engine, "bad name")
    with pytest.raises(ValueError):
        UserStore(engine, "users;--")
    with pytest.raises(ValueError):
        SchemaManager(engine, time_entries_table="ok_name", users_table="not ok")


def test_ensure_creates_missing_tables_then_is_a_no_op(engine, scratch_tables):
    entries_name = _scratch_name("entries")
    users_name = _scratch_name("users")
    scratch_tables.extend([entries_name, users_name])

    manager = SchemaManager(engine, time_entries_table=entries_name, users_table=users_name)
    first = manager.ensure_all()
    assert all(r.success for r in first.values())
    assert first["time_entries"].changes == [f"create table {entries_name}"]
    assert first["users"].changes == [f"create table {users_name}"]

    for _ in range(3):
        again = manager.ensure_all()
        assert all(r.success for r in again.values())
        assert all(r.changes == [] for r in again.values())

    indexes = {ix["name"] for ix in inspect(engine).get_indexes(entries_name)}
    assert active_index_name(entries_name) in indexes
    assert f"idx_{entries_name}_employee_code" in indexes


def test_ensure_unknown_kind_fails_without_raising(engine):
    result = SchemaManager(engine).ensure("invoices")
    assert result.success is False
    assert "Unknown table kind" in result.error


def test_ensure_migrates_integer_ids_and_adds_columns(engine, scratch_tables):
    name = _scratch_name("legacy_entries")
    scratch_tables.append(name)

    legacy = Table(
        name,
        MetaData(),
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("job_no", Text, nullable=False),
        Column("job_name", Text, nullable=False),
        Column("start_time", DateTime(timezone=True)),
        Column("end_time", DateTime(timezone=True)),
        Column("status", Text),
        Column("created_at", DateTime(timezone=True)),
        Column("updated_at", DateTime(timezone=True)),
        Column("legacy_note", Text),
    )
    started = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
    with engine.begin() as conn:
        legacy.create(conn)
        conn.execute(
            legacy.insert(),
            [
                {"job_no": "400", "job_name": "Fit-out", "start_time": started, "status": "active",
                 "created_at": started, "updated_at": started, "legacy_note": "kept"},
                {"job_no": "401", "job_name": "Repairs", "start_time": started, "status": "paused",
                 "created_at": started, "updated_at": started, "legacy_note": None},
            ],
        )

    manager = SchemaManager(engine, time_entries_table=name, users_table=_scratch_name("unused"))
    result = manager.ensure("time_entries")

    assert result.success, result.error
    assert f"convert {name}.id to uuid" in result.changes
    assert f"add column {name}.employee_code" in result.changes
    assert f"add column {name}.spire_status" in result.changes
    assert f"create index {active_index_name(name)}" in result.changes

    columns = {col["name"] for col in inspect(engine).get_columns(name)}
    assert "legacy_note" in columns
    assert not inspect(engine).has_table(f"{name}_backup")

    store = TimeEntryStore(engine, name)
    rows = store.get_all()
    assert rows.success, rows.error
    by_job = {r["job_no"]: r for r in rows.data}
    assert sorted(by_job) == ["400", "401"]
    assert all(isinstance(r["id"], uuid.UUID) for r in rows.data)
    assert {r["spire_status"] for r in rows.data} == {"new"}
    assert by_job["400"]["job_name"] == "Fit-out"
    assert by_job["400"]["status"] == "active"
    assert by_job["400"]["start_time"] == started
    assert by_job["401"]["status"] == "paused"
    with engine.connect() as conn:
        notes = dict(conn.execute(text(f'SELECT job_no, legacy_note FROM "{name}"')).all())
    assert notes == {"400": "kept", "401": None}

    # Migrated rows are addressable by their new ids.
    assert store.get_by_id(by_job["401"]["id"]).data["job_name"] == "Repairs"

    assert manager.ensure("time_entries").changes == []


@pytest.mark.parametrize("id_type", [Integer, Text])
def test_ensure_migrates_legacy_user_ids_and_keeps_emp_code_unique(engine, scratch_tables, id_type):
    name = _scratch_name("legacy_users")
    scratch_tables.append(name)

    legacy = Table(
        name,
        MetaData(),
        Column("id", id_type, primary_key=True),
        Column("emp_code", Text, nullable=False, unique=True),
        Column("password", Text, nullable=False),
        Column("verified", Boolean),
        Column("created", DateTime(timezone=True)),
        Column("updated", DateTime(timezone=True)),
    )
    legacy_id = 7 if id_type is Integer else "user-7"
    with engine.begin() as conn:
        legacy.create(conn)
        conn.execute(
            legacy.insert(),
            [{"id": legacy_id, "emp_code": "E7", "password": hashlib.sha256(b"secret123").hexdigest(),
              "verified": True}],
        )

    manager = SchemaManager(engine, time_entries_table=_scratch_name("unused"), users_table=name)
    result = manager.ensure("users")

    assert result.success, result.error
    assert f"convert {name}.id to uuid" in result.changes
    assert f"add column {name}.emp_name" in result.changes
    assert f"add column {name}.favorites" in result.changes
    assert manager.ensure("users").changes == []

    store = UserStore(engine, name)
    migrated = store.verify_password("E7", "secret123")
    assert migrated.success, migrated.error
    assert isinstance(migrated.data["id"], uuid.UUID)
    assert migrated.data["verified"] is True
    assert store.get_favorites("E7").data == []

    first = store.create("E9", "secret123")
    assert first.success, first.error
    second = store.create("E9", "other-pass")
    assert second.success is False
    assert second.reason == "exists"
    assert second.error == "Account already exists. Please go to login page."
    assert store.create("E7", "secret123").reason == "exists"


def test_duplicate_active_rows_do_not_block_ensure(engine, scratch_tables):
    name = _scratch_name("dupe_entries")
    scratch_tables.append(name)

    table = time_entries_table(name)
    now = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
    with engine.begin() as conn:
        table.create(conn)
        conn.execute(text(f'DROP INDEX "{active_index_name(name)}"'))
        conn.execute(
            table.insert(),
            [
                {"id": uuid.uuid4(), "job_no": "400", "job_name": "Fit-out", "employee_code": "E1",
                 "status": "active", "start_time": now},
                {"id": uuid.uuid4(), "job_no": "400", "job_name": "Fit-out", "employee_code": "E1",
                 "status": "active", "start_time": now},
            ],
        )

    result = SchemaManager(engine, time_entries_table=name, users_table=_scratch_name("unused")).ensure("time_entries")

    assert result.success, result.error
    assert f"create index {active_index_name(name)}" not in result.changes
    assert len(TimeEntryStore(engine, name).get_active("E1").data) == 2

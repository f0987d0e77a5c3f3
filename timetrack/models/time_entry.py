import uuid
from typing import Optional

from sqlalchemy import JSON, Column, DateTime, Index, Integer, MetaData, Table, Text, Uuid, func, text

# Columns added after the first deployments; ensured one by one on existing tables.
EVOLVED_COLUMNS = (
    "spire_status",
    "employee_code",
    "employee_name",
    "start_location",
    "end_location",
    "total_seconds",
    "comment",
    "account_no",
    "account_name",
)

INDEXED_COLUMNS = ("job_no", "status", "start_time", "spire_status", "employee_code")

UPDATABLE_FIELDS = (
    "job_no",
    "job_name",
    "employee_code",
    "employee_name",
    "account_no",
    "account_name",
    "comment",
    "spire_status",
    "status",
    "total_seconds",
    "start_time",
    "start_location",
    "end_location",
)

ACTIVE_PREDICATE = "status = 'active' AND end_time IS NULL"


def active_index_name(table_name: str) -> str:
    return f"uq_{table_name}_active_job_employee"


def time_entries_table(name: str, metadata: Optional[MetaData] = None) -> Table:
    metadata = metadata if metadata is not None else MetaData()
    active = text(ACTIVE_PREDICATE)

    return Table(
        name,
        metadata,
        Column("id", Uuid, primary_key=True, default=uuid.uuid4),
        Column("job_no", Text, nullable=False),
        Column("job_name", Text, nullable=False),
        Column("employee_code", Text, nullable=False),
        Column("employee_name", Text, nullable=True),
        Column("account_no", Text, nullable=True),
        Column("account_name", Text, nullable=True),
        Column("start_time", DateTime(timezone=True), server_default=func.now()),
        Column("end_time", DateTime(timezone=True), nullable=True),
        Column("total_seconds", Integer, nullable=True),
        Column("comment", Text, nullable=True),
        Column("status", Text, server_default=text("'active'")),
        Column("spire_status", Text, server_default=text("'new'")),
        Column("start_location", JSON, server_default=text("'[]'")),
        Column("end_location", JSON, server_default=text("'[]'")),
        Column("created_at", DateTime(timezone=True), server_default=func.now()),
        Column("updated_at", DateTime(timezone=True), server_default=func.now()),
        *[Index(f"idx_{name}_{col}", col) for col in INDEXED_COLUMNS],
        Index(
            active_index_name(name),
            "job_no",
            "employee_code",
            unique=True,
            postgresql_where=active,
            sqlite_where=active,
        ),
    )

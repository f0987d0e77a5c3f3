import uuid
from typing import Optional

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, MetaData, Table, Text, Uuid, func, text

EVOLVED_COLUMNS = ("emp_name", "favorites")

INDEXED_COLUMNS = ("emp_code", "verified")

# Columns safe to hand back to callers.
PUBLIC_COLUMNS = ("id", "emp_code", "emp_name", "verified", "created", "updated")


def users_table(name: str, metadata: Optional[MetaData] = None) -> Table:
    metadata = metadata if metadata is not None else MetaData()

    return Table(
        name,
        metadata,
        Column("id", Uuid, primary_key=True, default=uuid.uuid4),
        Column("emp_code", Text, nullable=False, unique=True),
        Column("emp_name", Text, nullable=True),
        Column("password", Text, nullable=False),
        Column("verified", Boolean, server_default=text("false")),
        Column("favorites", JSON, server_default=text("'[]'")),
        Column("created", DateTime(timezone=True), server_default=func.now()),
        Column("updated", DateTime(timezone=True), server_default=func.now()),
        *[Index(f"idx_{name}_{col}", col) for col in INDEXED_COLUMNS],
    )

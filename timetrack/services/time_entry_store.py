import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import Table, delete, insert, inspect, or_, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from timetrack.models.time_entry import UPDATABLE_FIELDS, active_index_name, time_entries_table
from timetrack.services.results import StoreResult
from timetrack.services.schema_manager import validate_table_name

logger = logging.getLogger(__name__)

DUPLICATE_ACTIVE = "An active timer already exists for this job and employee combination"
NOT_FOUND = "Entry not found"
NOT_FOUND_OR_STOPPED = "Entry not found or already stopped"

COMPLETED_STATUS = "Completed"
MAX_SANE_SECONDS = 86400 * 365


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back naive; they are always written as UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _parse_datetime(value: Any) -> Any:
    if isinstance(value, str):
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    if isinstance(value, datetime):
        return as_utc(value)
    return value


def _parse_id(entry_id: Any) -> Optional[uuid.UUID]:
    if isinstance(entry_id, uuid.UUID):
        return entry_id
    try:
        return uuid.UUID(str(entry_id))
    except (TypeError, ValueError):
        return None


def as_fix_list(value: Any) -> Any:
    """GPS fixes are stored as an ordered list; a single fix is wrapped."""
    if value is None or isinstance(value, list):
        return value
    return [value]


def _clean(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


class TimeEntryStore:
    def __init__(self, engine: Engine, table_name: str = "time_entries_jobs"):
        self.engine = engine
        self.table_name = validate_table_name(table_name)
        self.table: Table = time_entries_table(self.table_name)

    # ---------- helpers ----------

    def _live_columns(self, conn: Connection) -> set[str]:
        return {col["name"] for col in inspect(conn).get_columns(self.table_name)}

    def _select(self, live: set[str]):
        return select(*[col for col in self.table.c if col.name in live])

    def _scope(self, live: set[str], entry_id: uuid.UUID, employee_code: Optional[str]) -> list:
        conditions = [self.table.c.id == entry_id]
        if employee_code and "employee_code" in live:
            conditions.append(self.table.c.employee_code == employee_code)
        return conditions

    def _has_active(
        self,
        conn: Connection,
        job_no: Optional[str],
        employee_code: Optional[str],
        exclude_id: Optional[uuid.UUID] = None,
    ) -> bool:
        t = self.table
        query = select(t.c.id).where(
            t.c.job_no == (job_no or ""),
            t.c.employee_code == (employee_code or ""),
            t.c.status == "active",
            t.c.end_time.is_(None),
        )
        if exclude_id is not None:
            query = query.where(t.c.id != exclude_id)
        return conn.execute(query.limit(1)).first() is not None

    def _fetch(self, conn: Connection, live: set[str], conditions: list) -> Optional[dict]:
        row = conn.execute(self._select(live).where(*conditions)).mappings().first()
        return _row_dict(row) if row is not None else None

    def _is_active_violation(self, exc: IntegrityError) -> bool:
        message = str(exc.orig)
        return active_index_name(self.table_name) in message or (
            "UNIQUE constraint failed" in message and "job_no" in message
        )

    # ---------- operations ----------

    def create(self, entry: dict, *, now: Optional[datetime] = None) -> StoreResult:
        now = now or utcnow()
        job_no = _clean(entry.get("job_no"))
        employee_code = _clean(entry.get("employee_code"))
        status = entry.get("status") or "active"

        try:
            with self.engine.begin() as conn:
                live = self._live_columns(conn)

                # Manual back-fill (completed) entries may coexist with a running timer.
                if "employee_code" in live and status == "active":
                    if self._has_active(conn, job_no, employee_code):
                        return StoreResult.fail(DUPLICATE_ACTIVE, "conflict")

                candidates = {
                    "job_no": job_no,
                    "job_name": entry.get("job_name"),
                    "employee_code": employee_code,
                    "employee_name": entry.get("employee_name"),
                    "account_no": entry.get("account_no"),
                    "account_name": entry.get("account_name"),
                    "start_time": _parse_datetime(entry.get("start_time")) or now,
                    "end_time": _parse_datetime(entry.get("end_time")),
                    "total_seconds": entry.get("total_seconds"),
                    "comment": entry.get("comment"),
                    "status": status,
                    "spire_status": entry.get("spire_status"),
                    "start_location": as_fix_list(entry.get("start_location")),
                    "end_location": as_fix_list(entry.get("end_location")),
                    "created_at": _parse_datetime(entry.get("created_at")) or now,
                    "updated_at": _parse_datetime(entry.get("updated_at")) or now,
                }
                values = {k: v for k, v in candidates.items() if k in live and v is not None}
                if not values:
                    return StoreResult.fail("No valid columns to insert into", "invalid")

                entry_id = uuid.uuid4()
                conn.execute(insert(self.table).values(id=entry_id, **values))
        except ValueError as exc:
            return StoreResult.fail(f"Invalid timestamp: {exc}", "invalid")
        except IntegrityError as exc:
            if self._is_active_violation(exc):
                return StoreResult.fail(DUPLICATE_ACTIVE, "conflict")
            logger.warning("Time entry rejected by database", extra={"error": str(exc.orig)})
            return StoreResult.fail(str(exc.orig), "invalid")
        except SQLAlchemyError as exc:
            logger.exception("Error creating entry", extra={"table": self.table_name})
            return StoreResult.fail(str(exc))

        logger.info(
            "Time entry created",
            extra={"entry_id": str(entry_id), "job_no": job_no, "employee_code": employee_code, "status": status},
        )
        return StoreResult.ok({"id": entry_id})

    def stop(
        self,
        entry_id: Any,
        employee_code: Optional[str] = None,
        *,
        total_seconds: Optional[int] = None,
        comment: Optional[str] = None,
        end_location: Any = None,
        now: Optional[datetime] = None,
    ) -> StoreResult:
        """Close an open entry.

        ``total_seconds`` defaults to the wall-clock time since ``start_time``;
        the client passes its confirmed total when the user adjusted it.
        """
        entry_uuid = _parse_id(entry_id)
        if entry_uuid is None:
            return StoreResult.fail(NOT_FOUND_OR_STOPPED, "not_found")
        now = now or utcnow()

        try:
            with self.engine.begin() as conn:
                live = self._live_columns(conn)
                conditions = self._scope(live, entry_uuid, employee_code)
                conditions.append(self.table.c.end_time.is_(None))

                current = self._fetch(conn, live, conditions)
                if current is None:
                    return StoreResult.fail(NOT_FOUND_OR_STOPPED, "not_found")

                if total_seconds is None:
                    started = current.get("start_time") or now
                    total_seconds = int((now - started).total_seconds())

                candidates = {
                    "end_time": now,
                    "total_seconds": max(0, int(total_seconds)),
                    "status": COMPLETED_STATUS,
                    "updated_at": now,
                }
                if comment is not None:
                    candidates["comment"] = comment
                if end_location is not None:
                    candidates["end_location"] = as_fix_list(end_location)

                values = {k: v for k, v in candidates.items() if k in live}
                conn.execute(update(self.table).where(*conditions).values(**values))
                stopped = self._fetch(conn, live, [self.table.c.id == entry_uuid])
        except SQLAlchemyError as exc:
            logger.exception("Error stopping entry", extra={"entry_id": str(entry_id)})
            return StoreResult.fail(str(exc))

        logger.info(
            "Time entry stopped",
            extra={"entry_id": str(entry_uuid), "total_seconds": stopped.get("total_seconds")},
        )
        return StoreResult.ok(stopped)

    def get_active(self, employee_code: Optional[str] = None) -> StoreResult:
        try:
            with self.engine.begin() as conn:
                live = self._live_columns(conn)
                query = self._select(live).where(self.table.c.end_time.is_(None))
                if employee_code and "employee_code" in live:
                    query = query.where(self.table.c.employee_code == employee_code)
                rows = conn.execute(query.order_by(self.table.c.start_time.desc())).mappings().all()
        except SQLAlchemyError as exc:
            logger.exception("Error getting active entries")
            return StoreResult.fail(str(exc))
        return StoreResult.ok([_row_dict(r) for r in rows])

    def get_all(self, limit: int = 100, employee_code: Optional[str] = None) -> StoreResult:
        try:
            with self.engine.begin() as conn:
                live = self._live_columns(conn)
                query = self._select(live)
                if employee_code and "employee_code" in live:
                    query = query.where(self.table.c.employee_code == employee_code)
                query = query.order_by(self.table.c.created_at.desc()).limit(int(limit))
                rows = conn.execute(query).mappings().all()
        except SQLAlchemyError as exc:
            logger.exception("Error getting all entries")
            return StoreResult.fail(str(exc))
        return StoreResult.ok([_row_dict(r) for r in rows])

    def get_by_id(self, entry_id: Any, employee_code: Optional[str] = None) -> StoreResult:
        entry_uuid = _parse_id(entry_id)
        if entry_uuid is None:
            return StoreResult.fail(NOT_FOUND, "not_found")
        try:
            with self.engine.begin() as conn:
                live = self._live_columns(conn)
                row = self._fetch(conn, live, self._scope(live, entry_uuid, employee_code))
        except SQLAlchemyError as exc:
            logger.exception("Error getting entry by id", extra={"entry_id": str(entry_id)})
            return StoreResult.fail(str(exc))
        if row is None:
            return StoreResult.fail(NOT_FOUND, "not_found")
        return StoreResult.ok(row)

    def update(
        self,
        entry_id: Any,
        fields: dict,
        employee_code: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> StoreResult:
        entry_uuid = _parse_id(entry_id)
        if entry_uuid is None:
            return StoreResult.fail(NOT_FOUND, "not_found")
        now = now or utcnow()

        try:
            with self.engine.begin() as conn:
                live = self._live_columns(conn)
                values = {k: fields[k] for k in UPDATABLE_FIELDS if k in fields and k in live}
                if not values:
                    return StoreResult.fail("No valid fields to update", "invalid")

                if "start_time" in values:
                    values["start_time"] = _parse_datetime(values["start_time"])
                for key in ("start_location", "end_location"):
                    if key in values:
                        values[key] = as_fix_list(values[key])
                for key in ("job_no", "employee_code"):
                    if key in values:
                        values[key] = _clean(values[key])

                conditions = self._scope(live, entry_uuid, employee_code)
                current = self._fetch(conn, live, conditions)
                if current is None:
                    return StoreResult.fail(NOT_FOUND, "not_found")

                # Resuming must not produce a second running timer for the pair.
                if values.get("status") == "active" and current.get("end_time") is None:
                    job_no = values.get("job_no", current.get("job_no"))
                    owner = values.get("employee_code", current.get("employee_code"))
                    if self._has_active(conn, job_no, owner, exclude_id=entry_uuid):
                        return StoreResult.fail(DUPLICATE_ACTIVE, "conflict")

                if "updated_at" in live:
                    values["updated_at"] = now

                conn.execute(update(self.table).where(*conditions).values(**values))
                updated = self._fetch(conn, live, [self.table.c.id == entry_uuid])
        except ValueError as exc:
            return StoreResult.fail(f"Invalid timestamp: {exc}", "invalid")
        except IntegrityError as exc:
            if self._is_active_violation(exc):
                return StoreResult.fail(DUPLICATE_ACTIVE, "conflict")
            return StoreResult.fail(str(exc.orig), "invalid")
        except SQLAlchemyError as exc:
            logger.exception("Error updating entry", extra={"entry_id": str(entry_id)})
            return StoreResult.fail(str(exc))

        return StoreResult.ok(updated)

    def delete(self, entry_id: Any, employee_code: Optional[str] = None) -> StoreResult:
        entry_uuid = _parse_id(entry_id)
        if entry_uuid is None:
            return StoreResult.fail(NOT_FOUND, "not_found")
        try:
            with self.engine.begin() as conn:
                live = self._live_columns(conn)
                conditions = self._scope(live, entry_uuid, employee_code)
                row = self._fetch(conn, live, conditions)
                if row is None:
                    return StoreResult.fail(NOT_FOUND, "not_found")
                conn.execute(delete(self.table).where(*conditions))
        except SQLAlchemyError as exc:
            logger.exception("Error deleting entry", extra={"entry_id": str(entry_id)})
            return StoreResult.fail(str(exc))

        logger.info("Time entry deleted", extra={"entry_id": str(entry_uuid)})
        return StoreResult.ok(row)

    def fix_invalid_durations(self) -> StoreResult:
        """Recompute totals that are negative or longer than a year."""
        t = self.table
        try:
            with self.engine.begin() as conn:
                live = self._live_columns(conn)
                if "total_seconds" not in live:
                    return StoreResult.ok({"fixed_count": 0, "message": "total_seconds column does not exist"})

                rows = conn.execute(
                    select(t.c.id, t.c.start_time, t.c.end_time).where(
                        t.c.end_time.is_not(None),
                        or_(t.c.total_seconds < 0, t.c.total_seconds > MAX_SANE_SECONDS),
                    )
                ).all()
                for row in rows:
                    seconds = int((as_utc(row.end_time) - as_utc(row.start_time)).total_seconds())
                    conn.execute(update(t).where(t.c.id == row.id).values(total_seconds=max(0, seconds)))
        except SQLAlchemyError as exc:
            logger.exception("Error fixing invalid durations")
            return StoreResult.fail(str(exc))

        if rows:
            logger.info("Fixed invalid durations", extra={"fixed_count": len(rows)})
        return StoreResult.ok({"fixed_count": len(rows)})


def _row_dict(row) -> dict:
    data = dict(row)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = as_utc(value)
    return data

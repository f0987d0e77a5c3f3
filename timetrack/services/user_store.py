import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import Table, delete, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from timetrack.models.user import PUBLIC_COLUMNS, users_table
from timetrack.services import auth_service
from timetrack.services.results import StoreResult
from timetrack.services.schema_manager import validate_table_name
from timetrack.services.time_entry_store import as_utc

logger = logging.getLogger(__name__)

ACCOUNT_EXISTS = "Account already exists. Please go to login page."
USER_NOT_FOUND = "User not found"
INVALID_PASSWORD = "Invalid password"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _public(row) -> dict:
    data = {key: row[key] for key in PUBLIC_COLUMNS if key in row}
    for key in ("created", "updated"):
        if isinstance(data.get(key), datetime):
            data[key] = as_utc(data[key])
    return data


class UserStore:
    def __init__(self, engine: Engine, table_name: str = "time_entries_users"):
        self.engine = engine
        self.table_name = validate_table_name(table_name)
        self.table: Table = users_table(self.table_name)

    def _public_select(self):
        return select(*[self.table.c[name] for name in PUBLIC_COLUMNS])

    def _by_code(self, conn: Connection, emp_code: str) -> Optional[dict]:
        row = conn.execute(
            self._public_select().where(self.table.c.emp_code == emp_code)
        ).mappings().first()
        return _public(row) if row is not None else None

    # ---------- accounts ----------

    def create(self, emp_code: str, password: str, emp_name: Optional[str] = None) -> StoreResult:
        if not emp_code or not password:
            return StoreResult.fail("Employee code and password are required", "invalid")

        now = _utcnow()
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    insert(self.table).values(
                        id=uuid.uuid4(),
                        emp_code=emp_code,
                        emp_name=emp_name or None,
                        password=auth_service.hash_password(password),
                        verified=False,
                        favorites=[],
                        created=now,
                        updated=now,
                    )
                )
                user = self._by_code(conn, emp_code)
        except IntegrityError:
            return StoreResult.fail(ACCOUNT_EXISTS, "exists")
        except SQLAlchemyError as exc:
            logger.exception("Error creating user", extra={"emp_code": emp_code})
            return StoreResult.fail(str(exc))

        logger.info("User created", extra={"emp_code": emp_code})
        return StoreResult.ok(user)

    def get(self, emp_code: str) -> StoreResult:
        try:
            with self.engine.begin() as conn:
                user = self._by_code(conn, emp_code)
        except SQLAlchemyError as exc:
            logger.exception("Error getting user", extra={"emp_code": emp_code})
            return StoreResult.fail(str(exc))
        if user is None:
            return StoreResult.fail(USER_NOT_FOUND, "not_found")
        return StoreResult.ok(user)

    def exists(self, emp_code: str) -> StoreResult:
        """Lookup without a password check, so login can tell 'no account' apart."""
        return self.get(emp_code)

    def verify_password(self, emp_code: str, password: str) -> StoreResult:
        try:
            with self.engine.begin() as conn:
                row = conn.execute(
                    select(self.table).where(self.table.c.emp_code == emp_code)
                ).mappings().first()
                if row is None:
                    return StoreResult.fail(USER_NOT_FOUND, "not_found")

                if not auth_service.verify_password(password, row["password"]):
                    return StoreResult.fail(INVALID_PASSWORD, "invalid")

                if auth_service.needs_rehash(row["password"]):
                    conn.execute(
                        update(self.table)
                        .where(self.table.c.emp_code == emp_code)
                        .values(password=auth_service.hash_password(password))
                    )
                    logger.info("Upgraded password hash", extra={"emp_code": emp_code})
        except SQLAlchemyError as exc:
            logger.exception("Error verifying password", extra={"emp_code": emp_code})
            return StoreResult.fail(str(exc))
        return StoreResult.ok(_public(row))

    def find_identity(self, user_id: Any, emp_code: str) -> Optional[dict]:
        """Return ``{id, emp_code, verified}`` or None.

        Database errors propagate; the auth gate decides how to degrade.
        """
        try:
            user_uuid = uuid.UUID(str(user_id))
        except (TypeError, ValueError):
            return None

        t = self.table
        with self.engine.begin() as conn:
            row = conn.execute(
                select(t.c.id, t.c.emp_code, t.c.verified).where(t.c.id == user_uuid, t.c.emp_code == emp_code)
            ).mappings().first()
        return dict(row) if row is not None else None

    def verify(self, emp_code: str) -> StoreResult:
        return self._set(emp_code, {"verified": True}, action="verified")

    def update_password(self, emp_code: str, new_password: str) -> StoreResult:
        if not new_password:
            return StoreResult.fail("New password is required", "invalid")
        return self._set(emp_code, {"password": auth_service.hash_password(new_password)}, action="password updated")

    def delete(self, emp_code: str) -> StoreResult:
        try:
            with self.engine.begin() as conn:
                user = self._by_code(conn, emp_code)
                if user is None:
                    return StoreResult.fail(USER_NOT_FOUND, "not_found")
                conn.execute(delete(self.table).where(self.table.c.emp_code == emp_code))
        except SQLAlchemyError as exc:
            logger.exception("Error deleting user", extra={"emp_code": emp_code})
            return StoreResult.fail(str(exc))

        logger.info("User deleted", extra={"emp_code": emp_code})
        return StoreResult.ok(user)

    def _set(self, emp_code: str, values: dict, *, action: str) -> StoreResult:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    update(self.table)
                    .where(self.table.c.emp_code == emp_code)
                    .values(updated=_utcnow(), **values)
                )
                if result.rowcount == 0:
                    return StoreResult.fail(USER_NOT_FOUND, "not_found")
                user = self._by_code(conn, emp_code)
        except SQLAlchemyError as exc:
            logger.exception("Error updating user", extra={"emp_code": emp_code, "action": action})
            return StoreResult.fail(str(exc))

        logger.info("User %s", action, extra={"emp_code": emp_code})
        return StoreResult.ok(user)

    # ---------- favorites ----------

    def _read_favorites(self, conn: Connection, emp_code: str) -> Optional[list]:
        row = conn.execute(
            select(self.table.c.favorites).where(self.table.c.emp_code == emp_code)
        ).first()
        if row is None:
            return None
        return list(row.favorites or [])

    def _write_favorites(self, conn: Connection, emp_code: str, favorites: list) -> list:
        conn.execute(
            update(self.table)
            .where(self.table.c.emp_code == emp_code)
            .values(favorites=favorites, updated=_utcnow())
        )
        return favorites

    def get_favorites(self, emp_code: str) -> StoreResult:
        try:
            with self.engine.begin() as conn:
                favorites = self._read_favorites(conn, emp_code)
        except SQLAlchemyError as exc:
            logger.exception("Error getting favorites", extra={"emp_code": emp_code})
            return StoreResult.fail(str(exc))
        if favorites is None:
            return StoreResult.fail(USER_NOT_FOUND, "not_found")
        return StoreResult.ok(favorites)

    def is_favorite(self, emp_code: str, job_no: str) -> StoreResult:
        result = self.get_favorites(emp_code)
        if not result.success:
            return result
        return StoreResult.ok(any(fav.get("job_no") == job_no for fav in result.data))

    def add_favorite(self, emp_code: str, favorite: dict) -> StoreResult:
        """Upsert by ``job_no``: an existing favorite takes the new account fields."""
        stamp = _utcnow().isoformat()
        try:
            with self.engine.begin() as conn:
                favorites = self._read_favorites(conn, emp_code)
                if favorites is None:
                    return StoreResult.fail(USER_NOT_FOUND, "not_found")

                for index, existing in enumerate(favorites):
                    if existing.get("job_no") == favorite.get("job_no"):
                        favorites[index] = {
                            **existing,
                            "acc_no": favorite.get("acc_no"),
                            "acc_name": favorite.get("acc_name"),
                            "updated_at": stamp,
                        }
                        action = "updated"
                        break
                else:
                    favorites.append({**favorite, "added_at": stamp})
                    action = "added"

                favorites = self._write_favorites(conn, emp_code, favorites)
        except SQLAlchemyError as exc:
            logger.exception("Error adding favorite", extra={"emp_code": emp_code})
            return StoreResult.fail(str(exc))

        logger.info("Favorite %s", action, extra={"emp_code": emp_code, "job_no": favorite.get("job_no")})
        return StoreResult.ok(favorites)

    def remove_favorite(self, emp_code: str, job_no: str) -> StoreResult:
        try:
            with self.engine.begin() as conn:
                favorites = self._read_favorites(conn, emp_code)
                if favorites is None:
                    return StoreResult.fail(USER_NOT_FOUND, "not_found")
                remaining = [fav for fav in favorites if fav.get("job_no") != job_no]
                remaining = self._write_favorites(conn, emp_code, remaining)
        except SQLAlchemyError as exc:
            logger.exception("Error removing favorite", extra={"emp_code": emp_code})
            return StoreResult.fail(str(exc))
        return StoreResult.ok(remaining)

    def list(self, limit: int = 100) -> StoreResult:
        try:
            with self.engine.begin() as conn:
                rows = conn.execute(
                    self._public_select().order_by(self.table.c.created.desc()).limit(int(limit))
                ).mappings().all()
        except SQLAlchemyError as exc:
            logger.exception("Error listing users")
            return StoreResult.fail(str(exc))
        return StoreResult.ok([_public(r) for r in rows])

import logging
from dataclasses import dataclass

from fastapi import Depends, Request
from sqlalchemy.exc import SQLAlchemyError

from timetrack.core.config import Settings
from timetrack.core.errors import ApiError
from timetrack.deps.stores import get_settings, get_users
from timetrack.services.auth_service import verify_token
from timetrack.services.user_store import UserStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    id: str
    emp_code: str
    verified: bool


def _parse_bearer_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        raise ApiError(401, "Access token required")

    parts = auth_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise ApiError(401, "Access token required")

    return parts[1].strip()


def require_auth(
    request: Request,
    users: UserStore = Depends(get_users),
    settings: Settings = Depends(get_settings),
) -> Identity:
    token = _parse_bearer_token(request)

    try:
        claims = verify_token(token)
    except ValueError as exc:
        raise ApiError(403, "Invalid or expired token") from exc

    user_id = str(claims.get("sub"))
    emp_code = claims.get("empcode")
    if not emp_code:
        raise ApiError(400, "Employee code not found in user data. Please log out and log back in.")

    verified = bool(claims.get("verified"))
    try:
        user = users.find_identity(user_id, emp_code)
    except SQLAlchemyError as exc:
        if settings.auth_recheck_policy == "closed":
            logger.error("User recheck failed; rejecting request", extra={"emp_code": emp_code, "error": str(exc)})
            raise ApiError(503, "Authentication service unavailable") from exc
        logger.warning("User recheck failed; allowing request on token", extra={"emp_code": emp_code, "error": str(exc)})
    else:
        if user is None:
            raise ApiError(401, "User no longer exists or has been deleted", "USER_DELETED")
        if not user["verified"]:
            raise ApiError(401, "User account is not verified", "USER_NOT_VERIFIED")
        verified = True

    identity = Identity(id=user_id, emp_code=emp_code, verified=verified)
    request.state.user_id = identity.id
    request.state.emp_code = identity.emp_code
    return identity

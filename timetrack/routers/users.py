import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.exc import SQLAlchemyError

from timetrack.core.authorization import require_admin
from timetrack.core.errors import ApiError, raise_for_result
from timetrack.deps.auth import Identity, require_auth
from timetrack.deps.stores import get_users
from timetrack.schemas.user import (
    MIN_PASSWORD_LENGTH,
    FavoriteAdd,
    FavoriteRemove,
    LoginRequest,
    PasswordUpdate,
    RefreshRequest,
    SignupRequest,
)
from timetrack.services import auth_service
from timetrack.services.user_store import UserStore

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/users",
    tags=["Users"],
)


def _own_emp_code(identity: Identity, requested) -> str:
    if requested and requested != identity.emp_code:
        raise ApiError(403, "Cannot modify another user's favorites")
    return identity.emp_code


@router.post("/signup", status_code=201)
def signup(payload: SignupRequest, users: UserStore = Depends(get_users)):
    emp_code = payload.emp_code.strip()
    if not emp_code or not payload.password:
        raise ApiError(400, "Employee code and password are required")
    if len(payload.password) < MIN_PASSWORD_LENGTH:
        raise ApiError(400, f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")

    result = users.create(emp_code, payload.password, payload.emp_name)
    raise_for_result(result)
    return {"success": True, "message": "User account created successfully", "user": result.data}


@router.post("/login")
def login(payload: LoginRequest, users: UserStore = Depends(get_users)):
    emp_code = payload.emp_code.strip()
    if not emp_code or not payload.password:
        raise ApiError(400, "Employee code and password are required")

    found = users.exists(emp_code)
    if not found.success:
        if found.reason == "not_found":
            logger.info("Login for unknown employee", extra={"emp_code": emp_code})
            raise ApiError(401, "User not found. Please go to register.", "USER_NOT_FOUND")
        raise_for_result(found)

    result = users.verify_password(emp_code, payload.password)
    if not result.success:
        if result.reason in {"invalid", "not_found"}:
            logger.info("Login with invalid password", extra={"emp_code": emp_code})
            raise ApiError(401, "Invalid credentials", "INVALID_PASSWORD")
        raise_for_result(result)

    user = result.data
    if not user["verified"]:
        raise ApiError(
            403,
            "Account not verified. Please contact your administrator.",
            "USER_NOT_VERIFIED",
        )

    logger.info("Login successful", extra={"emp_code": emp_code})
    return {
        "success": True,
        "message": "Login successful",
        "token": auth_service.create_access_token(user),
        "refreshToken": auth_service.create_refresh_token(user),
        "user": user,
    }


@router.post("/refresh")
def refresh(payload: RefreshRequest, users: UserStore = Depends(get_users)):
    try:
        claims = auth_service.verify_token(payload.refresh_token, expected_type="refresh")
    except ValueError as exc:
        raise ApiError(403, "Invalid or expired token") from exc

    try:
        user = users.find_identity(claims["sub"], claims.get("empcode"))
    except SQLAlchemyError as exc:
        logger.error("User lookup failed during refresh", extra={"error": str(exc)})
        raise ApiError(503, "Authentication service unavailable") from exc

    if user is None:
        raise ApiError(401, "User no longer exists or has been deleted", "USER_DELETED")
    if not user["verified"]:
        raise ApiError(401, "User account is not verified", "USER_NOT_VERIFIED")

    return {"success": True, "token": auth_service.create_access_token(user)}


@router.get("/validate")
def validate(identity: Identity = Depends(require_auth)):
    return {"success": True, "message": "User is valid and exists", "user": identity}


@router.get("/verify-token")
def verify_token(identity: Identity = Depends(require_auth)):
    return {"success": True, "message": "Token is valid", "user": identity}


@router.post("/favorites")
def add_favorite(
    payload: FavoriteAdd,
    identity: Identity = Depends(require_auth),
    users: UserStore = Depends(get_users),
):
    emp_code = _own_emp_code(identity, payload.emp_code)
    result = users.add_favorite(emp_code, payload.favorite.model_dump())
    raise_for_result(result)
    return {"success": True, "message": "Favorite added successfully", "favorites": result.data}


@router.delete("/favorites")
def remove_favorite(
    payload: FavoriteRemove,
    identity: Identity = Depends(require_auth),
    users: UserStore = Depends(get_users),
):
    emp_code = _own_emp_code(identity, payload.emp_code)
    result = users.remove_favorite(emp_code, payload.job_no)
    raise_for_result(result)
    return {"success": True, "message": "Favorite removed successfully", "favorites": result.data}


@router.get("", dependencies=[Depends(require_admin)])
def list_users(
    limit: int = Query(default=100, ge=1, le=1000),
    users: UserStore = Depends(get_users),
):
    result = users.list(limit)
    raise_for_result(result)
    return {"success": True, "users": result.data, "count": len(result.data)}


@router.get("/{emp_code}")
def get_user(emp_code: str, users: UserStore = Depends(get_users)):
    result = users.get(emp_code)
    raise_for_result(result)
    return {"success": True, "user": result.data}


@router.get("/{emp_code}/favorites")
def get_favorites(emp_code: str, users: UserStore = Depends(get_users)):
    result = users.get_favorites(emp_code)
    raise_for_result(result)
    return {"success": True, "favorites": result.data}


@router.get("/{emp_code}/favorites/{job_no}")
def is_favorite(emp_code: str, job_no: str, users: UserStore = Depends(get_users)):
    result = users.is_favorite(emp_code, job_no)
    raise_for_result(result)
    return {"success": True, "is_favorite": result.data}


@router.put("/{emp_code}/verify", dependencies=[Depends(require_admin)])
def verify_user(emp_code: str, users: UserStore = Depends(get_users)):
    result = users.verify(emp_code)
    raise_for_result(result)
    return {"success": True, "message": "User verified successfully", "user": result.data}


@router.put("/{emp_code}/password", dependencies=[Depends(require_admin)])
def update_password(emp_code: str, payload: PasswordUpdate, users: UserStore = Depends(get_users)):
    if len(payload.new_password) < MIN_PASSWORD_LENGTH:
        raise ApiError(400, f"New password must be at least {MIN_PASSWORD_LENGTH} characters long")

    result = users.update_password(emp_code, payload.new_password)
    raise_for_result(result)
    return {"success": True, "message": "Password updated successfully", "user": result.data}


@router.delete("/{emp_code}", dependencies=[Depends(require_admin)])
def delete_user(emp_code: str, users: UserStore = Depends(get_users)):
    result = users.delete(emp_code)
    raise_for_result(result)
    return {"success": True, "message": "User deleted successfully", "user": result.data}

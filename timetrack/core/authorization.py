import hmac
from typing import Optional

from fastapi import Depends, Header

from timetrack.core.config import Settings
from timetrack.core.errors import ApiError
from timetrack.deps.stores import get_settings


def require_admin(
    x_admin_key: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Gate for user administration and maintenance routes.

    Without ``ADMIN_API_KEY`` the routes exist only in development
    environments and look absent everywhere else.
    """
    if not settings.admin_api_key:
        if settings.is_dev:
            return
        raise ApiError(404, "Endpoint not found")

    if not x_admin_key or not hmac.compare_digest(x_admin_key.encode(), settings.admin_api_key.encode()):
        raise ApiError(403, "Admin key required")

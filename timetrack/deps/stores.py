from fastapi import Request

from timetrack.core.config import Settings
from timetrack.core.errors import ApiError
from timetrack.services.spire_client import SpireClient
from timetrack.services.time_entry_store import TimeEntryStore
from timetrack.services.user_store import UserStore


def _state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise ApiError(503, "Service unavailable")
    return value


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_time_entries(request: Request) -> TimeEntryStore:
    return _state(request, "time_entries")


def get_users(request: Request) -> UserStore:
    return _state(request, "users")


def get_spire(request: Request) -> SpireClient:
    return _state(request, "spire")

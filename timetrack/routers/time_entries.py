from typing import Optional

from fastapi import APIRouter, Depends, Query

from timetrack.core.authorization import require_admin
from timetrack.core.errors import raise_for_result
from timetrack.deps.auth import Identity, require_auth
from timetrack.deps.stores import get_time_entries
from timetrack.schemas.time_entry import TimeEntryCreate, TimeEntryStop, TimeEntryUpdate
from timetrack.services.time_entry_store import TimeEntryStore, utcnow

router = APIRouter(
    prefix="/api/time-entries",
    tags=["Time Entries"],
)


@router.get("")
def list_time_entries(
    limit: int = Query(default=100, ge=1, le=1000),
    identity: Identity = Depends(require_auth),
    store: TimeEntryStore = Depends(get_time_entries),
):
    result = store.get_all(limit, identity.emp_code)
    raise_for_result(result)
    return {"success": True, "data": result.data, "count": len(result.data)}


@router.get("/active")
def list_active_time_entries(
    identity: Identity = Depends(require_auth),
    store: TimeEntryStore = Depends(get_time_entries),
):
    result = store.get_active(identity.emp_code)
    raise_for_result(result)
    return {"success": True, "data": result.data, "count": len(result.data)}


@router.post("/maintenance/fix-durations", dependencies=[Depends(require_admin)])
def fix_invalid_durations(store: TimeEntryStore = Depends(get_time_entries)):
    result = store.fix_invalid_durations()
    raise_for_result(result)
    return {"success": True, "data": result.data}


@router.get("/{entry_id}")
def get_time_entry(
    entry_id: str,
    identity: Identity = Depends(require_auth),
    store: TimeEntryStore = Depends(get_time_entries),
):
    result = store.get_by_id(entry_id, identity.emp_code)
    raise_for_result(result)
    return {"success": True, "data": result.data}


@router.post("", status_code=201)
def create_time_entry(
    payload: TimeEntryCreate,
    identity: Identity = Depends(require_auth),
    store: TimeEntryStore = Depends(get_time_entries),
):
    now = utcnow()
    entry = payload.model_dump(exclude_none=True)
    entry.update(
        employee_code=identity.emp_code,
        start_time=now,
        created_at=now,
        updated_at=now,
    )

    result = store.create(entry, now=now)
    raise_for_result(result)
    return {
        "success": True,
        "data": {"id": result.data["id"]},
        "message": "Time entry created successfully",
    }


@router.put("/{entry_id}/stop")
def stop_time_entry(
    entry_id: str,
    payload: Optional[TimeEntryStop] = None,
    identity: Identity = Depends(require_auth),
    store: TimeEntryStore = Depends(get_time_entries),
):
    overrides = payload.model_dump(exclude_none=True) if payload is not None else {}
    result = store.stop(entry_id, identity.emp_code, **overrides)
    raise_for_result(result)
    return {"success": True, "data": result.data, "message": "Time entry stopped successfully"}


@router.put("/{entry_id}")
def update_time_entry(
    entry_id: str,
    payload: TimeEntryUpdate,
    identity: Identity = Depends(require_auth),
    store: TimeEntryStore = Depends(get_time_entries),
):
    result = store.update(entry_id, payload.model_dump(exclude_none=True), identity.emp_code)
    raise_for_result(result)
    return {"success": True, "data": result.data, "message": "Time entry updated successfully"}


@router.delete("/{entry_id}")
def delete_time_entry(
    entry_id: str,
    identity: Identity = Depends(require_auth),
    store: TimeEntryStore = Depends(get_time_entries),
):
    result = store.delete(entry_id, identity.emp_code)
    raise_for_result(result)
    return {"success": True, "data": result.data, "message": "Time entry deleted successfully"}

import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, Query

from timetrack.core.errors import ApiError
from timetrack.deps.stores import get_spire
from timetrack.services.spire_client import (
    SpireClient,
    SpireError,
    normalize_account,
    normalize_employee,
    normalize_job,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api",
    tags=["Spire"],
)


def _records(records: list[dict]) -> dict:
    return {"success": True, "records": records, "count": len(records)}


@router.get("/jobs")
async def list_jobs(
    search: Optional[str] = None,
    spire: SpireClient = Depends(get_spire),
):
    started = time.monotonic()
    jobs = await spire.fetch_jobs(search)

    records = [normalize_job(job) for job in jobs]
    logger.info(
        "Jobs fetched",
        extra={"count": len(records), "search": search, "duration_ms": int((time.monotonic() - started) * 1000)},
    )
    return _records(records)


@router.get("/employees")
async def list_employees(
    search: Optional[str] = None,
    spire: SpireClient = Depends(get_spire),
):
    started = time.monotonic()
    employees = await spire.fetch_employees(search)

    records = [normalize_employee(employee) for employee in employees]
    logger.info(
        "Employees fetched",
        extra={"count": len(records), "search": search, "duration_ms": int((time.monotonic() - started) * 1000)},
    )
    return _records(records)


async def _accounts(spire: SpireClient, job_code: Optional[str]) -> dict:
    if not job_code or not job_code.strip():
        raise ApiError(400, "Job code is required")
    try:
        accounts = await spire.fetch_job_costing_accounts(job_code.strip())
    except SpireError as exc:
        logger.error("Failed to fetch job costing accounts", extra={"job_code": job_code, "error": str(exc)})
        raise ApiError(500, str(exc) or "Failed to fetch job costing accounts") from exc
    return _records([normalize_account(account) for account in accounts])


@router.get("/job-costing-accounts")
async def list_job_costing_accounts(
    job_code: Optional[str] = Query(default=None, alias="jobCode"),
    spire: SpireClient = Depends(get_spire),
):
    return await _accounts(spire, job_code)


@router.get("/job-costing-accounts/{job_code}")
async def list_job_costing_accounts_for_job(
    job_code: str,
    spire: SpireClient = Depends(get_spire),
):
    return await _accounts(spire, job_code)

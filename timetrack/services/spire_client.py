"""
Spire ERP client
Paginated job, employee and job-costing account lookups over the Spire v2 API.
"""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx

from timetrack.core.config import Settings

logger = logging.getLogger(__name__)

JOBS_PAGE_SIZE = 50
JOBS_MAX_PAGES = 10
EMPLOYEES_PAGE_SIZE = 100
ACCOUNTS_LIMIT = 100
MIN_SEARCH_LENGTH = 2

UNREACHABLE_MESSAGE = (
    "Spire API is unreachable. Check that the server is running and that this "
    "host is allowed to connect to it."
)


class SpireError(Exception):
    """Upstream request failed after retries, or answered with an error status."""


class SpireUnreachableError(SpireError):
    """The Spire host refused or could not accept the connection; never retried."""


def _search_filter(base: dict, search: Optional[str], fields: tuple[str, str]) -> dict:
    filter_obj = dict(base)
    term = (search or "").strip()
    if len(term) >= MIN_SEARCH_LENGTH:
        filter_obj["$or"] = [{field: {"$like": f"%{term}%"}} for field in fields]
    return filter_obj


def normalize_job(job: dict) -> dict:
    customer = job.get("customer") or {}
    return {
        "id": job.get("id"),
        "code": job.get("code"),
        "orderNo": job.get("code"),
        "name": job.get("name") or "Unnamed Job",
        "description": job.get("description") or "No Description",
        "status": job.get("status") or "Unknown",
        "company": customer.get("name") or "Unknown Company",
        "startDate": job.get("startDate"),
        "endDate": job.get("endDate"),
    }


def normalize_employee(employee: dict) -> dict:
    return {
        "id": employee.get("employeeNo") or employee.get("id"),
        "employeeNo": employee.get("employeeNo"),
        "name": employee.get("name") or "Unknown Employee",
        "role": employee.get("role") or "Employee",
        "status": employee.get("status") or "Unknown",
    }


def normalize_account(account: dict) -> dict:
    return {
        "id": account.get("id"),
        "code": account.get("code"),
        "jobNo": account.get("jobNo"),
        "accountNo": account.get("accountNo"),
        "name": account.get("name"),
        "memo": account.get("memo"),
        "job": account.get("job"),
    }


class SpireClient:
    """Async client for the Spire API.

    ``transport`` and ``sleep`` exist so tests can swap in ``httpx.MockTransport``
    and skip the retry backoff.
    """

    def __init__(
        self,
        base_url: str,
        company: str,
        auth: str = "",
        *,
        timeout: float = 45.0,
        retries: int = 2,
        retry_delay: float = 2.0,
        verify: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.company = company
        self.retries = retries
        self.retry_delay = retry_delay
        self._sleep = sleep

        headers = {"Content-Type": "application/json"}
        if auth:
            headers["Authorization"] = auth
        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers=headers,
            transport=transport,
            verify=verify,
        )

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "SpireClient":
        return cls(
            settings.spire_base_url,
            settings.spire_company,
            settings.spire_auth,
            timeout=settings.spire_timeout_seconds,
            retries=settings.spire_retries,
            retry_delay=settings.spire_retry_delay_seconds,
            verify=settings.spire_verify_tls,
            **kwargs,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/api/v2/companies/{self.company}/{path.lstrip('/')}"

    async def _get_json(self, url: str, params: dict) -> dict:
        attempt = 0
        while True:
            try:
                response = await self._client.get(url, params=params)
            except httpx.ConnectError as exc:
                logger.error("Spire unreachable", extra={"url": url, "error": str(exc)})
                raise SpireUnreachableError(UNREACHABLE_MESSAGE) from exc
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                if attempt < self.retries:
                    attempt += 1
                    logger.warning(
                        "Spire request failed, retrying",
                        extra={"url": url, "error": str(exc) or type(exc).__name__, "retry": attempt, "max_retries": self.retries},
                    )
                    await self._sleep(self.retry_delay * attempt)
                    continue
                logger.error(
                    "Spire request failed permanently",
                    extra={"url": url, "error": str(exc) or type(exc).__name__, "retries": attempt},
                )
                message = "Request timeout" if isinstance(exc, httpx.TimeoutException) else str(exc)
                raise SpireError(message) from exc

            if response.is_error:
                raise SpireError(f"HTTP {response.status_code}: {response.reason_phrase}")
            try:
                return response.json()
            except ValueError as exc:
                raise SpireError("Invalid JSON from Spire API") from exc

    def _page_params(self, filter_obj: dict, limit: int, offset: int) -> dict:
        return {"filter": json.dumps(filter_obj), "limit": limit, "offset": offset}

    async def fetch_jobs(self, search: Optional[str] = None) -> list[dict]:
        """Collect up to ``JOBS_MAX_PAGES`` pages.

        Failed pages are skipped and an unreachable host ends pagination;
        neither raises.
        """
        url = self._url("job_costing/jobs")
        filter_obj = _search_filter({}, search, ("code", "name"))

        jobs: list[dict] = []
        total: Optional[int] = None
        offset = 0
        page = 0
        while page < JOBS_MAX_PAGES:
            page += 1
            try:
                data = await self._get_json(url, self._page_params(filter_obj, JOBS_PAGE_SIZE, offset))
            except SpireUnreachableError:
                logger.error("Stopping job pagination", extra={"page": page})
                break
            except SpireError as exc:
                logger.error("Error fetching jobs page", extra={"page": page, "error": str(exc)})
                offset += JOBS_PAGE_SIZE
                continue

            records = data.get("records") or []
            if total is None:
                total = data.get("count") or 0

            if not records:
                break
            jobs.extend(records)
            offset += JOBS_PAGE_SIZE
            if len(jobs) >= total or len(records) < JOBS_PAGE_SIZE:
                break
        else:
            logger.warning("Reached job page limit", extra={"max_pages": JOBS_MAX_PAGES})

        if total and len(jobs) > total:
            del jobs[total:]

        logger.info("Fetched jobs", extra={"count": len(jobs), "pages": page, "search": search})
        return jobs

    async def fetch_employees(self, search: Optional[str] = None) -> list[dict]:
        """Collect active employees until the first failed page; never raises."""
        url = self._url("payroll/employees")
        filter_obj = _search_filter({"status": "A"}, search, ("employeeNo", "name"))

        employees: list[dict] = []
        total: Optional[int] = None
        offset = 0
        page = 0
        while True:
            page += 1
            try:
                data = await self._get_json(url, self._page_params(filter_obj, EMPLOYEES_PAGE_SIZE, offset))
            except SpireError as exc:
                logger.error("Stopping employee fetch", extra={"page": page, "error": str(exc)})
                break

            records = data.get("records") or []
            if total is None:
                total = data.get("count") or 0

            if not records:
                break
            employees.extend(records)
            offset += EMPLOYEES_PAGE_SIZE
            if len(employees) >= total or len(records) < EMPLOYEES_PAGE_SIZE:
                break

        if total and len(employees) > total:
            del employees[total:]

        logger.info("Fetched employees", extra={"count": len(employees), "pages": page, "search": search})
        return employees

    async def fetch_job_costing_accounts(self, job_code: str) -> list[dict]:
        if not job_code:
            raise ValueError("Job code is required to fetch accounts")

        filter_obj = {"job.jobNo": {"$eq": job_code}}
        data = await self._get_json(
            self._url("job_costing/accounts"),
            {"filter": json.dumps(filter_obj), "limit": ACCOUNTS_LIMIT},
        )
        accounts = data.get("records") or []
        logger.info("Fetched job costing accounts", extra={"count": len(accounts), "job_code": job_code})
        return accounts

"""
Client-side timer engine.

Each open entry on the server is mirrored by a local ``Timer``. Elapsed time
is always derived from the server fields, never accumulated locally:

    elapsed = total_seconds + (now - start_time)

Pause stores the elapsed seconds in ``total_seconds`` and moves
``start_time`` to the pause instant; resume only moves ``start_time``. Start
10:00:00, pause 10:01:00, resume 10:04:00 and read at 10:06:00 gives
60 + 120 = 180 seconds. While paused the timer shows ``total_seconds``.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from timetrack.client.api import ApiError, ErrorReporter, NetworkError, TimeTrackingClient
from timetrack.client.location import Locate, LocationError, LocationFix

logger = logging.getLogger(__name__)

SYNC_INTERVAL_SECONDS = 30
SYNC_DRIFT_SECONDS = 10
ADJUST_STEP_MINUTES = 10
MAX_END_SECONDS = 24 * 3600 - 1

Clock = Callable[[], datetime]


class TimerError(Exception):
    """An action the timer rules do not allow; nothing was sent to the server."""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_duration(total_seconds: int) -> str:
    hours, rest = divmod(max(0, int(total_seconds)), 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


@dataclass
class Timer:
    id: str
    job_no: str
    job_name: str
    status: str
    start_time: datetime
    total_seconds: int = 0
    account_no: Optional[str] = None
    account_name: Optional[str] = None
    comment: Optional[str] = None
    elapsed_ms: int = 0

    @classmethod
    def from_entry(cls, entry: dict) -> "Timer":
        return cls(
            id=str(entry["id"]),
            job_no=entry.get("job_no") or "",
            job_name=entry.get("job_name") or "",
            status=entry.get("status") or "active",
            start_time=_parse_time(entry["start_time"]),
            total_seconds=int(entry.get("total_seconds") or 0),
            account_no=entry.get("account_no"),
            account_name=entry.get("account_name"),
            comment=entry.get("comment"),
        )

    @property
    def paused(self) -> bool:
        return self.status == "paused"

    def elapsed_at(self, now: datetime) -> int:
        """Elapsed milliseconds; frozen at ``total_seconds`` while paused."""
        if self.paused:
            return self.total_seconds * 1000
        running = int((now - self.start_time).total_seconds() * 1000)
        return self.total_seconds * 1000 + max(0, running)

    @property
    def elapsed_seconds(self) -> int:
        return self.elapsed_ms // 1000


@dataclass
class EndConfirmation:
    timer_id: str
    total_seconds: int
    comment: str = ""

    def adjust(self, minutes: int = ADJUST_STEP_MINUTES) -> int:
        self.total_seconds = min(MAX_END_SECONDS, max(0, self.total_seconds + minutes * 60))
        return self.total_seconds

    @property
    def formatted(self) -> str:
        return format_duration(self.total_seconds)


class TimerEngine:
    def __init__(
        self,
        api: TimeTrackingClient,
        locate: Locate,
        employee_code: str,
        employee_name: Optional[str] = None,
        clock: Clock = _utcnow,
        *,
        reporter: Optional[ErrorReporter] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.api = api
        self.locate = locate
        self.employee_code = employee_code
        self.employee_name = employee_name
        self.clock = clock
        self.reporter = reporter or ErrorReporter()
        self._sleep = sleep
        self.timers: dict[str, Timer] = {}

    # ---------- state ----------

    def _timer(self, timer_id: str) -> Timer:
        timer = self.timers.get(str(timer_id))
        if timer is None:
            raise TimerError("Timer not found")
        return timer

    def running(self) -> list[Timer]:
        return [t for t in self.timers.values() if not t.paused]

    async def load(self) -> list[Timer]:
        entries = await self.api.active_entries()
        now = self.clock()

        timers = {}
        for entry in entries:
            timer = Timer.from_entry(entry)
            timer.elapsed_ms = timer.elapsed_at(now)
            timers[timer.id] = timer
        self.timers = timers

        logger.info("Loaded timers", extra={"count": len(timers), "employee_code": self.employee_code})
        return list(timers.values())

    def tick(self) -> None:
        now = self.clock()
        for timer in self.running():
            timer.elapsed_ms = timer.elapsed_at(now)

    async def sync(self) -> list[str]:
        """Checkpoint running timers whose elapsed time drifted from the server total."""
        synced = []
        for timer in self.running():
            now = self.clock()
            computed = timer.elapsed_at(now) // 1000
            if abs(computed - timer.total_seconds) <= SYNC_DRIFT_SECONDS:
                continue

            try:
                await self.api.update_entry(
                    timer.id,
                    {"total_seconds": computed, "start_time": now.isoformat()},
                )
            except (NetworkError, ApiError) as exc:
                self.reporter.report(exc)
                continue

            timer.total_seconds = computed
            timer.start_time = now
            timer.elapsed_ms = computed * 1000
            synced.append(timer.id)

        if synced:
            logger.debug("Synced timers", extra={"timer_ids": synced})
        return synced

    async def _fix(self, action: str) -> LocationFix:
        try:
            return await self.locate()
        except LocationError as exc:
            logger.warning("Location capture failed", extra={"action": action, "error": str(exc)})
            raise TimerError(
                f"Failed to get location: {exc}. Please ensure location permissions are enabled."
            ) from exc

    # ---------- actions ----------

    async def start(self, job: dict, account: Optional[dict] = None, comment: Optional[str] = None) -> Timer:
        if self.running():
            raise TimerError("Please pause or end your current timer before starting a new one")

        job_no = str(job.get("code") or job.get("job_no") or "")
        if any(t.paused and t.job_no == job_no for t in self.timers.values()):
            raise TimerError("This job already has a paused timer. Resume it instead.")

        fix = await self._fix("start")
        account = account or {}
        entry = {
            "job_no": job_no,
            "job_name": job.get("name") or job.get("job_name") or "",
            "employee_name": self.employee_name,
            "account_no": account.get("accountNo") or account.get("account_no"),
            "account_name": account.get("name") or account.get("account_name"),
            "comment": comment,
            "status": "active",
            "spire_status": "new",
            "start_location": [fix.as_dict()],
        }
        created = await self.api.create_entry({k: v for k, v in entry.items() if v is not None})

        timer = Timer(
            id=str(created["id"]),
            job_no=entry["job_no"],
            job_name=entry["job_name"],
            status="active",
            start_time=self.clock(),
            account_no=entry["account_no"],
            account_name=entry["account_name"],
            comment=comment,
        )
        self.timers[timer.id] = timer
        logger.info("Timer started", extra={"timer_id": timer.id, "job_no": job_no})
        return timer

    async def pause(self, timer_id: str) -> Timer:
        timer = self._timer(timer_id)
        if timer.paused:
            raise TimerError("Timer is already paused")

        now = self.clock()
        seconds = timer.elapsed_at(now) // 1000
        await self.api.update_entry(
            timer.id,
            {"total_seconds": seconds, "start_time": now.isoformat(), "status": "paused"},
        )

        timer.total_seconds = seconds
        timer.start_time = now
        timer.status = "paused"
        timer.elapsed_ms = seconds * 1000
        return timer

    async def resume(self, timer_id: str) -> Timer:
        timer = self._timer(timer_id)
        if not timer.paused:
            raise TimerError("Timer is not paused")
        if any(t.id != timer.id for t in self.running()):
            raise TimerError("Please pause or end your current timer before resuming another one")

        now = self.clock()
        await self.api.update_entry(timer.id, {"status": "active", "start_time": now.isoformat()})

        timer.start_time = now
        timer.status = "active"
        timer.elapsed_ms = timer.total_seconds * 1000
        return timer

    def begin_end(self, timer_id: str) -> EndConfirmation:
        timer = self._timer(timer_id)
        if timer.paused:
            seconds = timer.total_seconds
        else:
            seconds = timer.elapsed_at(self.clock()) // 1000
        return EndConfirmation(
            timer_id=timer.id,
            total_seconds=min(MAX_END_SECONDS, seconds),
            comment=timer.comment or "",
        )

    async def end(self, confirmation: EndConfirmation) -> dict:
        timer = self._timer(confirmation.timer_id)
        fix = await self._fix("end")

        stopped = await self.api.stop_entry(
            timer.id,
            total_seconds=confirmation.total_seconds,
            comment=confirmation.comment,
            end_location=[fix.as_dict()],
        )
        self.timers.pop(timer.id, None)
        logger.info("Timer ended", extra={"timer_id": timer.id, "total_seconds": confirmation.total_seconds})
        return stopped

    async def add_time(
        self,
        job: dict,
        account: dict,
        hours: int,
        minutes: int,
        comment: Optional[str] = None,
    ) -> dict:
        """Back-fill a completed entry without running a timer."""
        total_seconds = int(hours or 0) * 3600 + int(minutes or 0) * 60
        if total_seconds <= 0:
            raise TimerError("Please enter a valid time greater than 0")

        job_no = job.get("code") or job.get("job_no")
        account_no = account.get("accountNo") or account.get("account_no")
        if not job_no:
            raise TimerError("Job data is missing. Please select a job again.")
        if not account_no:
            raise TimerError("Account data is missing. Please select an account again.")

        fix = await self._fix("add time")
        location = [fix.as_dict()]
        entry = {
            "job_no": str(job_no),
            "job_name": job.get("name") or job.get("job_name") or "",
            "employee_name": self.employee_name,
            "account_no": str(account_no),
            "account_name": account.get("name") or account.get("account_name"),
            "comment": comment,
            "status": "completed",
            "spire_status": "new",
            "total_seconds": total_seconds,
            "end_time": self.clock().isoformat(),
            "start_location": location,
            "end_location": location,
        }
        return await self.api.create_entry({k: v for k, v in entry.items() if v is not None})

    async def run(self, tick_interval: float = 1.0, sync_interval: float = SYNC_INTERVAL_SECONDS) -> None:
        """Tick every ``tick_interval`` and sync every ``sync_interval`` until cancelled."""
        ticks_per_sync = max(1, round(sync_interval / tick_interval))
        ticks = 0
        while True:
            await self._sleep(tick_interval)
            self.tick()
            ticks += 1
            if ticks % ticks_per_sync == 0:
                await self.sync()

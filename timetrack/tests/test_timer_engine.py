import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from timetrack.client.api import ErrorReporter, NetworkError
from timetrack.client.engine import EndConfirmation, TimerEngine, TimerError, format_duration
from timetrack.client.location import LocationError, LocationFix

T0 = datetime(2024, 5, 6, 10, 0, 0, tzinfo=timezone.utc)

JOB = {"id": 13, "code": "400", "name": "Clinic fit-out"}
OTHER_JOB = {"id": 26, "code": "401", "name": "Repairs"}
ACCOUNT = {"id": 1, "accountNo": "5100", "name": "Labour"}


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **delta):
        self.now += timedelta(**delta)


class FakeApi:
    def __init__(self, active=None):
        self.active = list(active or [])
        self.created = []
        self.updates = []
        self.stops = []
        self.fail_updates = None

    async def active_entries(self):
        return self.active

    async def create_entry(self, entry):
        self.created.append(entry)
        return {"id": f"entry-{len(self.created)}"}

    async def update_entry(self, entry_id, fields):
        if self.fail_updates is not None:
            raise self.fail_updates
        self.updates.append((entry_id, fields))
        return {"id": entry_id, **fields}

    async def stop_entry(self, entry_id, **overrides):
        self.stops.append((entry_id, overrides))
        return {"id": entry_id, "status": "Completed", **overrides}


def _locator(fail=False):
    async def locate():
        if fail:
            raise LocationError("User denied Geolocation")
        return LocationFix.from_coordinates(49.28, -123.12, 12.0, T0)

    return locate


def _engine(api=None, clock=None, fail_location=False, **kwargs):
    return TimerEngine(
        api or FakeApi(),
        _locator(fail_location),
        "E100",
        "Sam Lee",
        clock or FakeClock(),
        **kwargs,
    )


def test_load_computes_elapsed_from_server_fields():
    clock = FakeClock(T0 + timedelta(minutes=6))
    api = FakeApi(active=[
        {"id": "a", "job_no": "400", "job_name": "Fit-out", "status": "active",
         "start_time": "2024-05-06T10:04:00+00:00", "total_seconds": 60},
        {"id": "p", "job_no": "401", "job_name": "Repairs", "status": "paused",
         "start_time": "2024-05-06T09:00:00Z", "total_seconds": 900},
    ])
    engine = _engine(api, clock)

    asyncio.run(engine.load())

    assert engine.timers["a"].elapsed_seconds == 180
    assert engine.timers["p"].elapsed_seconds == 900


def test_tick_only_advances_running_timers():
    clock = FakeClock()
    api = FakeApi(active=[
        {"id": "a", "job_no": "400", "status": "active", "start_time": T0.isoformat(), "total_seconds": 0},
        {"id": "p", "job_no": "401", "status": "paused", "start_time": T0.isoformat(), "total_seconds": 30},
    ])
    engine = _engine(api, clock)
    asyncio.run(engine.load())

    clock.advance(seconds=5)
    engine.tick()

    assert engine.timers["a"].elapsed_ms == 5000
    assert engine.timers["p"].elapsed_ms == 30000


def test_start_creates_active_entry_with_start_location():
    api = FakeApi()
    engine = _engine(api)

    timer = asyncio.run(engine.start(JOB, ACCOUNT, "Framing"))

    assert timer.id == "entry-1"
    created = api.created[0]
    assert created["job_no"] == "400"
    assert created["account_no"] == "5100"
    assert created["status"] == "active"
    assert created["spire_status"] == "new"
    assert created["start_location"][0]["accuracy_status"] == "excellent"
    assert "employee_code" not in created


def test_start_rejected_while_another_timer_runs():
    api = FakeApi()
    engine = _engine(api)
    asyncio.run(engine.start(JOB))

    with pytest.raises(TimerError):
        asyncio.run(engine.start(OTHER_JOB))
    assert len(api.created) == 1


def test_start_rejected_for_job_with_paused_timer():
    api = FakeApi()
    engine = _engine(api)
    timer = asyncio.run(engine.start(JOB))
    asyncio.run(engine.pause(timer.id))

    with pytest.raises(TimerError, match="paused timer"):
        asyncio.run(engine.start(JOB))

    # A different job may start while the first is paused.
    asyncio.run(engine.start(OTHER_JOB))
    assert len(api.created) == 2


def test_start_requires_location_fix():
    api = FakeApi()
    engine = _engine(api, fail_location=True)

    with pytest.raises(TimerError, match="Failed to get location"):
        asyncio.run(engine.start(JOB))
    assert api.created == []
    assert engine.timers == {}


def test_pause_resume_round_trip():
    clock = FakeClock()
    api = FakeApi()
    engine = _engine(api, clock)
    timer = asyncio.run(engine.start(JOB))

    clock.advance(minutes=1)
    asyncio.run(engine.pause(timer.id))
    assert api.updates[-1] == (
        timer.id,
        {"total_seconds": 60, "start_time": (T0 + timedelta(minutes=1)).isoformat(), "status": "paused"},
    )

    clock.advance(minutes=3)
    engine.tick()
    assert timer.elapsed_seconds == 60

    asyncio.run(engine.resume(timer.id))
    assert api.updates[-1] == (
        timer.id,
        {"status": "active", "start_time": (T0 + timedelta(minutes=4)).isoformat()},
    )

    clock.advance(minutes=2)
    engine.tick()
    assert timer.elapsed_seconds == 180


def test_resume_rejected_while_another_timer_runs():
    api = FakeApi()
    engine = _engine(api)
    first = asyncio.run(engine.start(JOB))
    asyncio.run(engine.pause(first.id))
    asyncio.run(engine.start(OTHER_JOB))

    with pytest.raises(TimerError):
        asyncio.run(engine.resume(first.id))


def test_sync_checkpoints_drifted_timers_only():
    clock = FakeClock()
    api = FakeApi(active=[
        {"id": "a", "job_no": "400", "status": "active", "start_time": T0.isoformat(), "total_seconds": 0},
    ])
    engine = _engine(api, clock)
    asyncio.run(engine.load())

    clock.advance(seconds=8)
    assert asyncio.run(engine.sync()) == []

    clock.advance(seconds=22)
    assert asyncio.run(engine.sync()) == ["a"]
    assert api.updates[-1] == ("a", {"total_seconds": 30, "start_time": (T0 + timedelta(seconds=30)).isoformat()})

    # The checkpoint keeps total + (now - start) equal to the real elapsed time.
    clock.advance(seconds=30)
    engine.tick()
    assert engine.timers["a"].elapsed_seconds == 60


def test_sync_reports_network_error_once():
    clock = FakeClock()
    api = FakeApi(active=[
        {"id": "a", "job_no": "400", "status": "active", "start_time": T0.isoformat(), "total_seconds": 0},
    ])
    notices = []
    engine = _engine(api, clock, reporter=ErrorReporter(notices.append))
    asyncio.run(engine.load())
    api.fail_updates = NetworkError("offline")

    for _ in range(3):
        clock.advance(seconds=30)
        assert asyncio.run(engine.sync()) == []

    assert notices == ["offline"]
    assert engine.timers["a"].total_seconds == 0


def test_begin_end_seeds_and_clamps_confirmation():
    clock = FakeClock()
    engine = _engine(FakeApi(), clock)
    timer = asyncio.run(engine.start(JOB, comment="Framing"))
    clock.advance(minutes=25, seconds=5)

    confirmation = engine.begin_end(timer.id)
    assert confirmation.total_seconds == 1505
    assert confirmation.comment == "Framing"
    assert confirmation.formatted == "00:25:05"

    confirmation.adjust(-10)
    confirmation.adjust(-10)
    assert confirmation.total_seconds == 305
    confirmation.adjust(-10)
    assert confirmation.total_seconds == 0

    late = EndConfirmation("x", 23 * 3600 + 55 * 60)
    late.adjust(10)
    assert late.total_seconds == 86399
    assert late.formatted == "23:59:59"


def test_begin_end_uses_stored_total_when_paused():
    clock = FakeClock()
    engine = _engine(FakeApi(), clock)
    timer = asyncio.run(engine.start(JOB))
    clock.advance(minutes=2)
    asyncio.run(engine.pause(timer.id))
    clock.advance(hours=1)

    assert engine.begin_end(timer.id).total_seconds == 120


def test_end_stops_with_adjusted_total_and_location():
    clock = FakeClock()
    api = FakeApi()
    engine = _engine(api, clock)
    timer = asyncio.run(engine.start(JOB))
    clock.advance(minutes=30)

    confirmation = engine.begin_end(timer.id)
    confirmation.adjust(10)
    confirmation.comment = "Finished"
    asyncio.run(engine.end(confirmation))

    entry_id, overrides = api.stops[0]
    assert entry_id == timer.id
    assert overrides["total_seconds"] == 2400
    assert overrides["comment"] == "Finished"
    assert overrides["end_location"][0]["latitude"] == 49.28
    assert timer.id not in engine.timers


def test_end_requires_location_fix():
    api = FakeApi()
    engine = _engine(api)
    timer = asyncio.run(engine.start(JOB))
    engine.locate = _locator(fail=True)

    with pytest.raises(TimerError):
        asyncio.run(engine.end(engine.begin_end(timer.id)))
    assert api.stops == []
    assert timer.id in engine.timers


def test_add_time_creates_completed_entry():
    clock = FakeClock()
    api = FakeApi()
    engine = _engine(api, clock)

    asyncio.run(engine.add_time(JOB, ACCOUNT, 1, 30, "Site visit"))

    created = api.created[0]
    assert created["status"] == "completed"
    assert created["total_seconds"] == 5400
    assert created["end_time"] == T0.isoformat()
    assert created["start_location"] == created["end_location"]
    assert len(created["start_location"]) == 1


def test_add_time_validation():
    engine = _engine(FakeApi())

    with pytest.raises(TimerError, match="greater than 0"):
        asyncio.run(engine.add_time(JOB, ACCOUNT, 0, 0))
    with pytest.raises(TimerError, match="Account data"):
        asyncio.run(engine.add_time(JOB, {}, 1, 0))


class _StopLoop(Exception):
    pass


def test_run_ticks_every_second_and_syncs_every_thirty():
    clock = FakeClock()
    api = FakeApi(active=[
        {"id": "a", "job_no": "400", "status": "active", "start_time": T0.isoformat(), "total_seconds": 0},
    ])
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) > 61:
            raise _StopLoop()
        clock.advance(seconds=seconds)

    engine = _engine(api, clock, sleep=fake_sleep)
    asyncio.run(engine.load())

    with pytest.raises(_StopLoop):
        asyncio.run(engine.run())

    assert set(sleeps) == {1.0}
    assert [fields["total_seconds"] for _, fields in api.updates] == [30, 60]
    assert engine.timers["a"].elapsed_seconds == 61


def test_format_duration():
    assert format_duration(0) == "00:00:00"
    assert format_duration(3723) == "01:02:03"
    assert format_duration(-5) == "00:00:00"

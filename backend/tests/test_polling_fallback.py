from __future__ import annotations

import asyncio
import threading

from portal_realtime import PollingFallbackEngine, Viewer
from portal_store.time_utils import to_iso, utc_now


class FakeMessages:
    def __init__(self, existing_max: int = 0) -> None:
        self.existing_max = existing_max
        self.batches: list[list[dict]] = []
        self.fail_next = 0
        self.queries: list[int] = []

    def latest_id(self) -> int:
        return self.existing_max

    def newer_than(self, message_id: int) -> list[dict]:
        self.queries.append(message_id)
        if self.fail_next:
            self.fail_next -= 1
            raise ConnectionError("store unreachable")
        return self.batches.pop(0) if self.batches else []


class FakeAppointments:
    def __init__(self) -> None:
        self.rows: list[dict] = []
        self.queries: list[tuple[str, str]] = []

    def updated_since(self, user_id: str, since_iso: str) -> list[dict]:
        self.queries.append((user_id, since_iso))
        return [row for row in self.rows if row["user_id"] == user_id and row["updated_at"] > since_iso]


def _msg(message_id: int) -> dict:
    return {"id": message_id, "user_id": "patient-p", "contact_name": "A. Smith", "is_from_user": True}


def _engine(viewer: Viewer, messages, appointments, received: list, interval: float = 5.0):
    return PollingFallbackEngine(
        messages=messages,
        appointments=appointments,
        viewer=viewer,
        on_message=received.append,
        on_appointment=received.append,
        interval_seconds=interval,
    )


def test_baseline_suppresses_existing_messages(doctor):
    messages = FakeMessages(existing_max=50)
    received: list = []
    engine = _engine(doctor, messages, FakeAppointments(), received)

    async def scenario():
        await engine.baseline()
        assert engine.cursor.last_message_id == 50
        messages.batches = [[_msg(48), _msg(50)], [_msg(51)]]
        assert await engine.poll_once() == 0
        assert engine.cursor.last_message_id == 50
        assert await engine.poll_once() == 1
        assert engine.cursor.last_message_id == 51

    asyncio.run(scenario())
    assert [event.new["id"] for event in received] == [51]


def test_cursor_tracks_maximum_and_never_regresses(doctor):
    messages = FakeMessages(existing_max=10)
    received: list = []
    engine = _engine(doctor, messages, FakeAppointments(), received)
    ticks = [[_msg(14), _msg(12), _msg(13)], [], [_msg(11)], [_msg(20), _msg(15)]]

    async def scenario():
        await engine.baseline()
        messages.batches = [list(batch) for batch in ticks]
        cursors = []
        for _ in ticks:
            await engine.poll_once()
            cursors.append(engine.cursor.last_message_id)
        return cursors

    cursors = asyncio.run(scenario())
    assert cursors == [14, 14, 14, 20]
    assert cursors == sorted(cursors)
    assert [event.new["id"] for event in received] == [12, 13, 14, 15, 20]
    assert messages.queries == [10, 14, 14, 14]


def test_patient_poll_reports_appointment_changes_without_old_snapshot(patient):
    appointments = FakeAppointments()
    received: list = []
    engine = _engine(patient, FakeMessages(), appointments, received)

    async def scenario():
        await engine.baseline()
        baseline_time = engine.cursor.last_check_time
        appointments.rows = [
            {"id": "a1", "user_id": patient.id, "status": "approved", "updated_at": to_iso(utc_now())},
        ]
        assert await engine.poll_once() == 1
        assert engine.cursor.last_check_time > baseline_time
        assert await engine.poll_once() == 0

    asyncio.run(scenario())
    assert len(received) == 1
    assert received[0].old is None
    assert received[0].polled


def test_clinician_poll_skips_appointments(doctor):
    appointments = FakeAppointments()
    engine = _engine(doctor, FakeMessages(), appointments, [])

    async def scenario():
        await engine.baseline()
        await engine.poll_once()

    asyncio.run(scenario())
    assert appointments.queries == []


def test_failed_tick_is_retried_on_next_interval(doctor):
    messages = FakeMessages(existing_max=5)
    received: list = []
    engine = _engine(doctor, messages, FakeAppointments(), received, interval=0.01)

    async def scenario():
        await engine.start()
        messages.fail_next = 2
        messages.batches = [[_msg(6)]]
        for _ in range(100):
            if received:
                break
            await asyncio.sleep(0.01)
        assert engine.running
        engine.stop()

    asyncio.run(scenario())
    assert [event.new["id"] for event in received] == [6]
    assert len(messages.queries) >= 3


def test_start_is_idempotent(doctor):
    messages = FakeMessages(existing_max=3)
    engine = _engine(doctor, messages, FakeAppointments(), [], interval=10)

    async def scenario():
        await engine.start()
        first_task = engine._task
        await engine.start()
        assert engine._task is first_task
        engine.stop()
        assert not engine.running

    asyncio.run(scenario())


def test_response_arriving_after_stop_is_discarded(doctor):
    gate = threading.Event()

    class GatedMessages(FakeMessages):
        def newer_than(self, message_id: int) -> list[dict]:
            gate.wait(timeout=2)
            return [_msg(51)]

    received: list = []
    engine = _engine(doctor, GatedMessages(existing_max=50), FakeAppointments(), received)

    async def scenario():
        await engine.baseline()
        in_flight = asyncio.create_task(engine.poll_once())
        await asyncio.sleep(0.05)
        engine.stop()
        gate.set()
        assert await in_flight == 0

    asyncio.run(scenario())
    assert received == []
    assert engine.cursor.last_message_id == 50

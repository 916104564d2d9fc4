from __future__ import annotations

import asyncio

import pytest

from portal_realtime import (
    FEED_CHANNEL_ERROR,
    FEED_SUBSCRIBED,
    FEED_TIMED_OUT,
    AppointmentStatusMachine,
    ChangeFeedClient,
    Notice,
    NoticeBoard,
    NotificationSession,
    QueueSurface,
    TransportError,
    TransportStateMachine,
    write_payload,
)
from portal_realtime.session import FALLBACK_NOTICE, LIVE_NOTICE
from portal_store.changes import BUS_OFFLINE, BUS_STALLED


async def _drain(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def _session(db, messages, appointments, viewer, notices: list, *, interval: float = 0.02) -> NotificationSession:
    board = NoticeBoard()
    board.mount(notices.append)
    feed = ChangeFeedClient(db.changes, viewer, loop=asyncio.get_running_loop())
    return NotificationSession(
        viewer=viewer,
        feed=feed,
        messages=messages,
        appointments=appointments,
        board=board,
        poll_interval_seconds=interval,
    )


def _titles(notices: list[Notice]) -> list[str]:
    return [notice.title for notice in notices]


def test_feed_forwards_inserts_and_reports_subscribed(db, messages, doctor, patient, doctor_contact):
    inserts, updates, statuses = [], [], []
    feed = ChangeFeedClient(db.changes, doctor)
    handle = feed.subscribe(inserts.append, updates.append, statuses.append)
    assert statuses == [FEED_SUBSCRIBED]
    assert db.changes.subscriber_count() == 2

    row = messages.insert(write_payload(patient, doctor_contact, "hi"))
    assert [event.new["id"] for event in inserts] == [row["id"]]

    feed.unsubscribe(handle)
    assert db.changes.subscriber_count() == 0
    messages.insert(write_payload(patient, doctor_contact, "after teardown"))
    assert len(inserts) == 1


def test_feed_filters_appointment_updates_to_viewer(db, appointments, patient, doctor):
    updates = []
    ChangeFeedClient(db.changes, patient).subscribe(lambda event: None, updates.append, lambda status: None)
    machine = AppointmentStatusMachine(appointments)
    mine = machine.book(patient, date="2026-11-02T09:00:00")
    other = appointments.book(user_id="patient-q", date="2026-11-02T10:00:00")

    machine.transition(other["id"], "approved", doctor)
    machine.transition(mine["id"], "approved", doctor)
    assert [(event.old["status"], event.new["status"]) for event in updates] == [("pending", "approved")]


@pytest.mark.parametrize(
    ("bus_state", "expected"),
    [(BUS_OFFLINE, FEED_CHANNEL_ERROR), (BUS_STALLED, FEED_TIMED_OUT)],
)
def test_feed_reports_subscribe_failures(db, doctor, bus_state, expected):
    db.changes.set_state(bus_state)
    statuses = []
    handle = ChangeFeedClient(db.changes, doctor).subscribe(lambda e: None, lambda e: None, statuses.append)
    assert statuses == [expected]
    assert handle.subscriptions == []
    assert db.changes.subscriber_count() == 0


def test_feed_reports_timeout_when_ack_exceeds_deadline(db, doctor):
    statuses = []
    feed = ChangeFeedClient(db.changes, doctor, connect_timeout_seconds=-1)
    feed.subscribe(lambda e: None, lambda e: None, statuses.append)
    assert statuses == [FEED_TIMED_OUT]
    assert db.changes.subscriber_count() == 0


def test_feed_reports_channel_error_once_on_disconnect(db, doctor):
    statuses = []
    ChangeFeedClient(db.changes, doctor).subscribe(lambda e: None, lambda e: None, statuses.append)
    db.changes.disconnect("socket closed")
    assert statuses == [FEED_SUBSCRIBED, FEED_CHANNEL_ERROR]


def test_transport_rejects_invalid_transitions():
    transport = TransportStateMachine(label="doc-smith")
    with pytest.raises(TransportError):
        transport.transition("polling")
    transport.transition("subscribing")
    transport.transition("live")
    assert transport.active_transport == "live"
    with pytest.raises(TransportError):
        transport.transition("polling")
    transport.transition("closed")
    assert transport.active_transport is None
    assert not transport.can("subscribing")


def test_notice_board_drops_without_surface_and_survives_broken_surface():
    board = NoticeBoard()
    notice = Notice(title="New Patient Message", category="message")
    assert board.emit(notice) == 0

    def broken(_notice):
        raise RuntimeError("toast layer gone")

    received = []
    broken_token = board.mount(broken)
    board.mount(received.append)
    assert board.emit(notice) == 1
    board.unmount(broken_token)
    assert board.emit(notice) == 1
    assert received == [notice, notice]


def test_queue_surface_drops_when_full():
    async def scenario():
        surface = QueueSurface(maxsize=1)
        surface(Notice(title="first", category="status"))
        surface(Notice(title="second", category="status"))
        return surface.queue.qsize(), surface.queue.get_nowait().title

    assert asyncio.run(scenario()) == (1, "first")


def test_session_goes_live_and_notifies_clinician(db, messages, appointments, doctor, patient, doctor_contact):
    notices: list[Notice] = []

    async def scenario():
        async with _session(db, messages, appointments, doctor, notices) as session:
            await _drain()
            assert session.transport.state == "live"
            messages.insert(write_payload(patient, doctor_contact, "I need a refill"))
            await _drain()
            return session

    session = asyncio.run(scenario())
    assert _titles(notices) == [LIVE_NOTICE, "New Patient Message"]
    assert session.transport.history == ["disconnected", "subscribing", "live", "closed"]
    assert session.poller is None


def test_session_notifies_patient_of_live_approval(db, messages, appointments, doctor, patient):
    notices: list[Notice] = []
    machine = AppointmentStatusMachine(appointments)
    appt = machine.book(patient, date="2026-11-02T09:00:00")

    async def scenario():
        async with _session(db, messages, appointments, patient, notices):
            await _drain()
            machine.transition(appt["id"], "approved", doctor)
            await _drain()

    asyncio.run(scenario())
    assert _titles(notices) == [LIVE_NOTICE, "Appointment approved"]
    assert notices[1].data["appointment_id"] == appt["id"]


def test_session_falls_back_to_polling_exactly_once(db, messages, appointments, doctor, patient, doctor_contact):
    notices: list[Notice] = []

    async def scenario():
        session = await _session(db, messages, appointments, doctor, notices).open()
        await _drain()
        messages.insert(write_payload(patient, doctor_contact, "while live"))
        await _drain()

        db.changes.disconnect("socket closed")
        await _drain()
        await session.wait_until_polling()
        first_poller = session.poller
        db.changes.disconnect("socket closed again")
        await _drain()
        assert session.poller is first_poller

        messages.insert(write_payload(patient, doctor_contact, "while polling"))
        await _wait_for(lambda: len(notices) >= 4)
        await asyncio.sleep(0.1)
        session.close()
        return session

    session = asyncio.run(scenario())
    assert _titles(notices) == [LIVE_NOTICE, "New Patient Message", FALLBACK_NOTICE, "New Patient Message"]
    assert session.transport.history == ["disconnected", "subscribing", "live", "degraded", "polling", "closed"]
    assert session.poller.stopped


def test_polling_session_skips_rows_that_predate_fallback(db, messages, appointments, doctor, patient, doctor_contact):
    for text in ["one", "two", "three"]:
        messages.insert(write_payload(patient, doctor_contact, text))
    db.changes.set_state(BUS_OFFLINE)
    notices: list[Notice] = []

    async def scenario():
        async with _session(db, messages, appointments, doctor, notices) as session:
            await _drain()
            await session.wait_until_polling()
            assert session.transport.state == "polling"
            assert session.poller.cursor.last_message_id == messages.latest_id()
            row = messages.insert(write_payload(patient, doctor_contact, "four"))
            await _wait_for(lambda: len(notices) >= 2)
            await asyncio.sleep(0.1)
            return row

    row = asyncio.run(scenario())
    assert _titles(notices) == [FALLBACK_NOTICE, "New Patient Message"]
    assert notices[1].data["message_id"] == row["id"]


def test_session_discards_deliveries_queued_before_close(db, messages, appointments, doctor, patient, doctor_contact):
    notices: list[Notice] = []

    async def scenario():
        session = await _session(db, messages, appointments, doctor, notices).open()
        await _drain()
        messages.insert(write_payload(patient, doctor_contact, "racing teardown"))
        session.close()
        await _drain()
        return session

    session = asyncio.run(scenario())
    assert session.classified == 0
    assert _titles(notices) == [LIVE_NOTICE]
    assert db.changes.subscriber_count() == 0
    assert session.transport.state == "closed"


def test_session_close_is_idempotent(db, messages, appointments, patient):
    async def scenario():
        session = await _session(db, messages, appointments, patient, []).open()
        session.close()
        session.close()
        return session

    session = asyncio.run(scenario())
    assert session.closed
    assert session.transport.history[-1] == "closed"

from datetime import datetime, timedelta, timezone

import pytest

from routehub.src.tracking import TripLocationTracker
from routehub.src.travel import TravelHistory, durationMinutes


@pytest.fixture
def completed(session, fleet, locks):
    """One finished trip on each bus, and a trip still running on `bus`."""
    tracker = TripLocationTracker(session, locks.acquire, locks.release)
    finished = tracker.startTrip(fleet["bus"].id, fleet["route"].id, fleet["driver"].id)
    tracker.endTrip(finished.id)
    other = tracker.startTrip(
        fleet["otherBus"].id, fleet["route"].id, fleet["otherDriver"].id
    )
    tracker.endTrip(other.id)
    tracker.startTrip(fleet["bus"].id, fleet["route"].id, fleet["driver"].id)
    return {"bus": finished, "otherBus": other}


def test_student_travels_with_assigned_bus(session, fleet, completed):
    records = TravelHistory(session).ofStudent(fleet["aliceStudent"])

    assert [record.trip_id for record in records] == [completed["bus"].id]
    record = records[0]
    assert record.bus_number == "KL-01-0001"
    assert record.route_name == "Morning route"
    assert record.driver_name == "driver"
    assert record.duration_minutes is not None and record.duration_minutes >= 0


def test_unassigned_student_has_no_history(session, fleet, completed):
    student = fleet["bobStudent"]
    student.assigned_bus_id = None
    session.commit()
    assert TravelHistory(session).ofStudent(student) == []


def test_bus_and_driver_history(session, fleet, completed):
    travel = TravelHistory(session)
    assert [r.trip_id for r in travel.ofBus(fleet["otherBus"].id)] == [completed["otherBus"].id]
    assert [r.trip_id for r in travel.ofDriver(fleet["driver"].id)] == [completed["bus"].id]
    assert travel.ofDriver(fleet["alice"].id) == []


def test_history_date_range(session, fleet, completed):
    travel = TravelHistory(session)
    today = datetime.now(timezone.utc).date()
    assert len(travel.ofBus(fleet["bus"].id, today, today)) == 1
    assert travel.ofBus(fleet["bus"].id, startDate=today + timedelta(days=1)) == []
    assert travel.ofBus(fleet["bus"].id, endDate=today - timedelta(days=1)) == []


def test_duration_minutes():
    start = datetime(2026, 1, 5, 7, 0, tzinfo=timezone.utc)
    assert durationMinutes(start, start + timedelta(minutes=42, seconds=30)) == 42.5
    assert durationMinutes(start, None) is None

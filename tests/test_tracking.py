from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import event
from sqlalchemy.exc import OperationalError

from routehub.src import exceptions
from routehub.src.db import LocationTracking, Trip
from routehub.src.enums import TripStatus
from routehub.src.tracking import (
    TripLocationTracker,
    studentOwner,
    tripOwner,
)


class QueryCanceled(Exception):
    pgcode = "57014"


def history(registry, tenant, tripId):
    with registry.session(tenant) as session:
        return (
            session.query(LocationTracking)
            .filter(LocationTracking.trip_id == tripId)
            .order_by(LocationTracking.recorded_at)
            .all()
        )


def reload(registry, tenant, tripId) -> Trip:
    with registry.session(tenant) as session:
        return session.query(Trip).filter(Trip.id == tripId).one()


# ----------------------------------- Locations -----------------------------------------------#
def test_record_location_updates_snapshot_and_history(registry, tenant, session, trip):
    TripLocationTracker(session).recordLocation(trip.id, 12.97, 77.59, speed=32)

    stored = reload(registry, tenant, trip.id)
    assert stored.current_latitude == pytest.approx(12.97)
    assert stored.current_longitude == pytest.approx(77.59)
    assert stored.speed_kmh == pytest.approx(32)
    assert stored.last_update_time is not None

    rows = history(registry, tenant, trip.id)
    assert len(rows) == 1
    assert rows[0].latitude == pytest.approx(12.97)
    assert rows[0].longitude == pytest.approx(77.59)
    assert rows[0].recorded_at == stored.last_update_time


def test_interrupted_write_changes_nothing(registry, tenant, session, trip):
    tracker = TripLocationTracker(session)
    tripId = trip.id
    tracker.recordLocation(tripId, 10.0, 76.0, speed=20)

    def interrupt(session, flushContext):
        raise RuntimeError("connection lost")

    event.listen(session, "after_flush", interrupt)
    try:
        with pytest.raises(RuntimeError):
            tracker.recordLocation(tripId, 12.97, 77.59, speed=32)
    finally:
        event.remove(session, "after_flush", interrupt)

    stored = reload(registry, tenant, tripId)
    assert stored.current_latitude == pytest.approx(10.0)
    assert stored.speed_kmh == pytest.approx(20)
    assert len(history(registry, tenant, tripId)) == 1


def test_history_newest_first(session, trip):
    tracker = TripLocationTracker(session)
    for latitude in (10.0, 11.0, 12.0):
        tracker.recordLocation(trip.id, latitude, 76.0)

    rows = tracker.getLocationHistory(trip.id, limit=2)
    assert [row.latitude for row in rows] == [12.0, 11.0]
    assert rows[0].recorded_at > rows[1].recorded_at


def test_history_of_unknown_trip(session):
    with pytest.raises(exceptions.InvalidIdentifier):
        TripLocationTracker(session).getLocationHistory(uuid4())


def test_concurrent_updates_keep_every_sample(registry, tenant, trip):
    samples = [(12.0, 77.0, 30.0), (13.0, 78.0, 40.0)]

    def send(sample):
        with registry.session(tenant) as session:
            latitude, longitude, speed = sample
            TripLocationTracker(session).recordLocation(trip.id, latitude, longitude, speed)

    with ThreadPoolExecutor(max_workers=2) as executor:
        list(executor.map(send, samples))

    rows = history(registry, tenant, trip.id)
    assert sorted((row.latitude, row.longitude, row.speed_kmh) for row in rows) == samples

    # The snapshot is one whole sample, the one committed last
    stored = reload(registry, tenant, trip.id)
    last = rows[-1]
    snapshot = (stored.current_latitude, stored.current_longitude, stored.speed_kmh)
    assert snapshot in samples
    assert snapshot == (last.latitude, last.longitude, last.speed_kmh)


def test_location_requires_trip_in_progress(session, trip):
    tracker = TripLocationTracker(session)
    tracker.endTrip(trip.id)
    with pytest.raises(exceptions.InvalidStateTransition):
        tracker.recordLocation(trip.id, 12.0, 77.0)
    with pytest.raises(exceptions.InvalidIdentifier):
        tracker.recordLocation(uuid4(), 12.0, 77.0)


def test_timeout_is_retryable(registry, tenant, session, trip, monkeypatch):
    tracker = TripLocationTracker(session)
    tripId = trip.id

    def slow(tripId, forUpdate=False):
        raise OperationalError("SELECT", {}, QueryCanceled("canceling statement"))

    monkeypatch.setattr(tracker, "_trip", slow)
    with pytest.raises(exceptions.TransactionTimeout) as error:
        tracker.recordLocation(tripId, 12.0, 77.0)
    assert error.value.status_code == 503
    assert error.value.headers["Retry-After"] == "1"
    assert history(registry, tenant, tripId) == []


# ----------------------------------- Lifecycle -----------------------------------------------#
def test_start_trip(registry, tenant, session, fleet, locks):
    tracker = TripLocationTracker(session, locks.acquire, locks.release)
    trip = tracker.startTrip(
        fleet["bus"].id, fleet["route"].id, fleet["driver"].id, 9.93, 76.26
    )

    assert trip.status == TripStatus.IN_PROGRESS.value
    assert trip.passenger_count == 1
    assert trip.start_time is not None
    assert trip.current_latitude == pytest.approx(9.93)
    assert len(history(registry, tenant, trip.id)) == 1
    assert f"lock:trips:{fleet['bus'].id}" in locks.names
    assert tracker.activeTripOf(fleet["bus"].id).id == trip.id


def test_start_trip_checks(session, fleet):
    tracker = TripLocationTracker(session)
    bus, route = fleet["bus"], fleet["route"]

    with pytest.raises(exceptions.UnknownValue):
        tracker.startTrip(uuid4(), route.id, fleet["driver"].id)
    with pytest.raises(exceptions.UnknownValue):
        tracker.startTrip(bus.id, uuid4(), fleet["driver"].id)
    with pytest.raises(exceptions.DriverNotAssigned):
        tracker.startTrip(bus.id, route.id, fleet["otherDriver"].id)

    tracker.startTrip(bus.id, route.id, fleet["driver"].id)
    with pytest.raises(exceptions.ActiveTripExists):
        tracker.startTrip(bus.id, route.id, fleet["driver"].id)


def test_active_trip_index_backs_the_check(session, fleet, trip, monkeypatch):
    tracker = TripLocationTracker(session)
    calls = []

    def stale(busId):
        calls.append(busId)
        # First look misses the running trip, as a racing request would
        return None if len(calls) == 1 else trip

    monkeypatch.setattr(tracker, "activeTripOf", stale)
    with pytest.raises(exceptions.ActiveTripExists):
        tracker.startTrip(fleet["bus"].id, fleet["route"].id, fleet["driver"].id)


def test_end_trip_requires_progress(session, fleet):
    tracker = TripLocationTracker(session)
    trip = Trip(
        bus_id=fleet["bus"].id,
        route_id=fleet["route"].id,
        driver_id=fleet["driver"].id,
        status=TripStatus.NOT_STARTED.value,
    )
    session.add(trip)
    session.commit()

    with pytest.raises(exceptions.InvalidStateTransition):
        tracker.endTrip(trip.id)

    # A trip that never started can still be cancelled
    cancelled = tracker.cancelTrip(trip.id)
    assert cancelled.status == TripStatus.CANCELLED.value
    assert cancelled.end_time is not None
    with pytest.raises(exceptions.InvalidStateTransition):
        tracker.cancelTrip(trip.id)


def test_end_trip(session, trip):
    tracker = TripLocationTracker(session)
    ended = tracker.endTrip(trip.id)
    assert ended.status == TripStatus.COMPLETED.value
    assert ended.end_time is not None
    with pytest.raises(exceptions.InvalidStateTransition):
        tracker.cancelTrip(trip.id)


def test_delete_trip(registry, tenant, session, trip):
    tracker = TripLocationTracker(session)
    tracker.recordLocation(trip.id, 12.0, 77.0)

    with pytest.raises(exceptions.TripInProgress):
        tracker.deleteTrip(trip.id)

    tracker.endTrip(trip.id)
    tracker.deleteTrip(trip.id)
    assert history(registry, tenant, trip.id) == []
    with pytest.raises(exceptions.InvalidIdentifier):
        tracker.getTrip(trip.id)


def test_list_active_trips(session, fleet, trip, locks):
    tracker = TripLocationTracker(session, locks.acquire, locks.release)
    other = tracker.startTrip(
        fleet["otherBus"].id, fleet["route"].id, fleet["otherDriver"].id
    )

    assert {t.id for t in tracker.listActiveTrips()} == {trip.id, other.id}
    assert [t.id for t in tracker.listActiveTrips(driverId=fleet["driver"].id)] == [trip.id]
    assert [t.id for t in tracker.listActiveTrips(parentId=fleet["bob"].id)] == [other.id]

    tracker.endTrip(other.id)
    assert [t.id for t in tracker.listActiveTrips()] == [trip.id]


# ----------------------------------- Ownership -----------------------------------------------#
def test_trip_owner(session, fleet, trip):
    owner = tripOwner(session, trip)
    assert owner.driver_id == fleet["driver"].id
    assert owner.parent_ids == frozenset({fleet["alice"].id})


def test_student_owner(session, fleet):
    owner = studentOwner(session, fleet["bobStudent"])
    assert owner.parent_ids == frozenset({fleet["bob"].id})
    assert owner.driver_id == fleet["otherDriver"].id


def test_list_trips_filters(session, fleet, trip, locks):
    tracker = TripLocationTracker(session, locks.acquire, locks.release)
    other = tracker.startTrip(
        fleet["otherBus"].id, fleet["route"].id, fleet["otherDriver"].id
    )
    tracker.endTrip(other.id)
    today = datetime.now(timezone.utc).date()

    assert {t.id for t in tracker.listTrips()} == {trip.id, other.id}
    assert [t.id for t in tracker.listTrips(status=TripStatus.COMPLETED)] == [other.id]
    assert [t.id for t in tracker.listTrips(busId=fleet["bus"].id)] == [trip.id]
    assert [t.id for t in tracker.listTrips(driverId=fleet["otherDriver"].id)] == [other.id]
    assert [t.id for t in tracker.listTrips(parentId=fleet["alice"].id)] == [trip.id]
    assert len(tracker.listTrips(startDate=today, endDate=today)) == 2
    assert tracker.listTrips(startDate=today + timedelta(days=1)) == []
    assert tracker.listTrips(endDate=today - timedelta(days=1)) == []
    assert len(tracker.listTrips(limit=1)) == 1


def test_trip_detail_carries_recent_history(session, trip):
    tracker = TripLocationTracker(session)
    for latitude in (10.0, 11.0, 12.0):
        tracker.recordLocation(trip.id, latitude, 76.0)

    detail = tracker.getTripDetail(trip.id, limit=2)
    assert detail.trip.id == trip.id
    assert [row.latitude for row in detail.location_history] == [12.0, 11.0]
    with pytest.raises(exceptions.InvalidIdentifier):
        tracker.getTripDetail(uuid4())

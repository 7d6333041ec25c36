"""
Trip lifecycle and live location tracking.

A trip moves through `not_started -> in_progress -> {completed, cancelled}`.
While a trip is in progress, every accepted location sample updates the
trip's current position snapshot and appends one row to the location
history, both inside a single transaction.

Concurrent samples for the same trip are not ordered by the tracker: the
last committed transaction wins the snapshot, the history keeps them all.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from logging import getLogger
from typing import Callable, List, Optional
from uuid import UUID

from psycopg2.errorcodes import LOCK_NOT_AVAILABLE, QUERY_CANCELED
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from routehub.src import exceptions, validators
from routehub.src.constants import (
    LOCATION_HISTORY_LIMIT,
    LOCATION_UPDATE_TIMEOUT,
    MAX_LOCATION_HISTORY_LIMIT,
)
from routehub.src.db import Bus, LocationTracking, Route, Student, Trip
from routehub.src.enums import TripStatus
from routehub.src.permissions import Owner

logger = getLogger("TripTracker")

TRIP_TRANSITIONS = {
    TripStatus.NOT_STARTED.value: [
        TripStatus.IN_PROGRESS.value,
        TripStatus.CANCELLED.value,
    ],
    TripStatus.IN_PROGRESS.value: [
        TripStatus.COMPLETED.value,
        TripStatus.CANCELLED.value,
    ],
}

TIMEOUT_SQLSTATES = (QUERY_CANCELED, LOCK_NOT_AVAILABLE)


def isTimeout(e: OperationalError) -> bool:
    return getattr(e.orig, "pgcode", None) in TIMEOUT_SQLSTATES


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def startOfDay(value: date) -> datetime:
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def withinDates(query, column, startDate: Optional[date] = None, endDate: Optional[date] = None):
    """Restrict `column` to the UTC days from `startDate` to `endDate`, both inclusive."""
    if startDate is not None:
        query = query.filter(column >= startOfDay(startDate))
    if endDate is not None:
        query = query.filter(column < startOfDay(endDate + timedelta(days=1)))
    return query


def busesOfParent(parentId: UUID):
    return select(Student.assigned_bus_id).where(
        Student.parent_id == parentId,
        Student.is_active.is_(True),
        Student.assigned_bus_id.is_not(None),
    )


@dataclass
class TripDetail:
    trip: Trip
    location_history: List[LocationTracking]


# ---------------------------------------------------------------------------
# Ownership facts
# ---------------------------------------------------------------------------
def parentsOnBus(session: Session, busId: Optional[UUID]) -> frozenset:
    if busId is None:
        return frozenset()
    rows = session.query(Student.parent_id).filter(
        Student.assigned_bus_id == busId, Student.is_active.is_(True)
    )
    return frozenset(row.parent_id for row in rows)


def tripOwner(session: Session, trip: Trip) -> Owner:
    """The trip's driver and the parents of the students riding its bus."""
    return Owner(parent_ids=parentsOnBus(session, trip.bus_id), driver_id=trip.driver_id)


def busOwner(session: Session, bus: Bus) -> Owner:
    return Owner(parent_ids=parentsOnBus(session, bus.id), driver_id=bus.driver_id)


def studentOwner(session: Session, student: Student) -> Owner:
    """The student's parent and the driver of the bus the student rides."""
    driverId = None
    if student.assigned_bus_id is not None:
        bus = session.query(Bus.driver_id).filter(Bus.id == student.assigned_bus_id).first()
        driverId = bus.driver_id if bus else None
    return Owner(parent_ids=frozenset({student.parent_id}), driver_id=driverId)


class TripLocationTracker:
    """
    Trip state machine and location writes on one tenant session.

    Args:
        session (Session): Session bound to the tenant database.
        acquireLock (Callable): Optional cluster wide mutex factory used to
            serialize trip starts per bus, `acquireLock(resource, key)`.
        releaseLock (Callable): Counterpart of `acquireLock`.
        timeout (int): Statement and lock timeout of a location update, in milliseconds.
    """

    def __init__(
        self,
        session: Session,
        acquireLock: Optional[Callable] = None,
        releaseLock: Optional[Callable] = None,
        timeout: int = LOCATION_UPDATE_TIMEOUT,
    ):
        self.session = session
        self.acquireLock = acquireLock
        self.releaseLock = releaseLock
        self.timeout = timeout

    def _trip(self, tripId: UUID, forUpdate: bool = False) -> Trip:
        query = self.session.query(Trip).filter(Trip.id == tripId)
        if forUpdate:
            query = query.with_for_update().populate_existing()
        trip = query.first()
        if trip is None:
            raise exceptions.InvalidIdentifier()
        return trip

    def _applyTimeout(self) -> None:
        if self.session.get_bind().dialect.name != "postgresql":
            return
        timeout = int(self.timeout)
        self.session.execute(text(f"SET LOCAL statement_timeout = {timeout}"))
        self.session.execute(text(f"SET LOCAL lock_timeout = {timeout}"))

    def _nextTimestamp(self, trip: Trip) -> datetime:
        """Current time, kept strictly increasing over the samples of a trip."""
        now = datetime.now(timezone.utc)
        last = _aware(trip.last_update_time)
        if last is not None and now <= last:
            now = last + timedelta(microseconds=1)
        return now

    def _transition(self, tripId: UUID, newStatus: TripStatus) -> Trip:
        try:
            trip = self._trip(tripId, forUpdate=True)
            validators.stateTransition(
                TRIP_TRANSITIONS, trip.status, newStatus.value, Trip.status
            )
            trip.status = newStatus.value
            trip.end_time = datetime.now(timezone.utc)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info("Trip %s is %s", trip.id, trip.status)
        return trip

    # ------------------------------------------------------------------ #
    # Location
    # ------------------------------------------------------------------ #
    def recordLocation(
        self,
        tripId: UUID,
        latitude: float,
        longitude: float,
        speed: Optional[float] = None,
        heading: Optional[float] = None,
        accuracy: Optional[float] = None,
    ) -> Trip:
        """
        Accept a location sample of an in progress trip.

        The trip snapshot update and the history insert commit together or
        are both rolled back. The trip row is locked for the duration of the
        transaction, which is bounded by the configured timeout.

        Raises:
            exceptions.InvalidIdentifier: If the trip does not exist.
            exceptions.InvalidStateTransition: If the trip is not in progress.
            exceptions.TransactionTimeout: If the transaction hit its time limit.
        """
        try:
            self._applyTimeout()
            trip = self._trip(tripId, forUpdate=True)
            if trip.status != TripStatus.IN_PROGRESS.value:
                raise exceptions.InvalidStateTransition(Trip.status)
            recordedAt = self._nextTimestamp(trip)
            trip.current_latitude = latitude
            trip.current_longitude = longitude
            trip.speed_kmh = speed
            trip.last_update_time = recordedAt
            self.session.add(
                LocationTracking(
                    trip_id=trip.id,
                    latitude=latitude,
                    longitude=longitude,
                    speed_kmh=speed,
                    heading=heading,
                    accuracy=accuracy,
                    recorded_at=recordedAt,
                )
            )
            self.session.commit()
            return trip
        except OperationalError as e:
            self.session.rollback()
            if isTimeout(e):
                logger.warning("Location update of trip %s timed out", tripId)
                raise exceptions.TransactionTimeout() from e
            raise
        except Exception:
            self.session.rollback()
            raise

    def getLocationHistory(
        self, tripId: UUID, limit: int = LOCATION_HISTORY_LIMIT
    ) -> List[LocationTracking]:
        """Most recent `limit` samples of a trip, newest first."""
        self._trip(tripId)
        limit = max(1, min(int(limit), MAX_LOCATION_HISTORY_LIMIT))
        return (
            self.session.query(LocationTracking)
            .filter(LocationTracking.trip_id == tripId)
            .order_by(LocationTracking.recorded_at.desc())
            .limit(limit)
            .all()
        )

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    def startTrip(
        self,
        busId: UUID,
        routeId: UUID,
        driverId: UUID,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> Trip:
        """
        Start a trip of a bus on a route.

        The passenger count is the number of active students on the bus. An
        initial location sample is stored when coordinates are given.

        Raises:
            exceptions.UnknownValue: If the bus or the route does not exist.
            exceptions.DriverNotAssigned: If the driver does not drive this bus.
            exceptions.ActiveTripExists: If the bus already has a trip in progress.
        """
        lock = self.acquireLock("trips", str(busId)) if self.acquireLock else None
        try:
            bus = self.session.query(Bus).filter(Bus.id == busId).first()
            if bus is None:
                raise exceptions.UnknownValue(Trip.bus_id, busId)
            route = self.session.query(Route.id).filter(Route.id == routeId).first()
            if route is None:
                raise exceptions.UnknownValue(Trip.route_id, routeId)
            if bus.driver_id is None or bus.driver_id != driverId:
                raise exceptions.DriverNotAssigned()
            if self.activeTripOf(busId) is not None:
                raise exceptions.ActiveTripExists()

            passengers = (
                self.session.query(Student.id)
                .filter(Student.assigned_bus_id == busId, Student.is_active.is_(True))
                .count()
            )
            now = datetime.now(timezone.utc)
            trip = Trip(
                bus_id=busId,
                route_id=routeId,
                driver_id=driverId,
                status=TripStatus.IN_PROGRESS.value,
                start_time=now,
                passenger_count=passengers,
            )
            self.session.add(trip)
            self.session.flush()
            if latitude is not None and longitude is not None:
                trip.current_latitude = latitude
                trip.current_longitude = longitude
                trip.last_update_time = now
                self.session.add(
                    LocationTracking(
                        trip_id=trip.id,
                        latitude=latitude,
                        longitude=longitude,
                        recorded_at=now,
                    )
                )
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            if self.activeTripOf(busId) is not None:
                raise exceptions.ActiveTripExists() from e
            raise
        except Exception:
            self.session.rollback()
            raise
        finally:
            if lock is not None:
                self.releaseLock(lock)
        logger.info("Started trip %s on bus %s", trip.id, busId)
        return trip

    def endTrip(self, tripId: UUID) -> Trip:
        """Complete an in progress trip and stamp its end time."""
        return self._transition(tripId, TripStatus.COMPLETED)

    def cancelTrip(self, tripId: UUID) -> Trip:
        """Cancel a trip that has not finished yet, started or not."""
        return self._transition(tripId, TripStatus.CANCELLED)

    def deleteTrip(self, tripId: UUID) -> None:
        """Remove a trip and, by cascade, its location history."""
        trip = self._trip(tripId)
        if trip.status == TripStatus.IN_PROGRESS.value:
            raise exceptions.TripInProgress()
        try:
            self.session.query(LocationTracking).filter(
                LocationTracking.trip_id == trip.id
            ).delete(synchronize_session=False)
            self.session.delete(trip)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #
    def getTrip(self, tripId: UUID) -> Trip:
        return self._trip(tripId)

    def getTripDetail(self, tripId: UUID, limit: int = LOCATION_HISTORY_LIMIT) -> TripDetail:
        """A trip together with its most recent location samples, newest first."""
        trip = self._trip(tripId)
        return TripDetail(trip=trip, location_history=self.getLocationHistory(tripId, limit))

    def activeTripOf(self, busId: UUID) -> Optional[Trip]:
        return (
            self.session.query(Trip)
            .filter(Trip.bus_id == busId, Trip.status == TripStatus.IN_PROGRESS.value)
            .first()
        )

    def listTrips(
        self,
        status: Optional[TripStatus] = None,
        busId: Optional[UUID] = None,
        driverId: Optional[UUID] = None,
        parentId: Optional[UUID] = None,
        startDate: Optional[date] = None,
        endDate: Optional[date] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Trip]:
        """
        Trips, newest start first.

        Args:
            status (TripStatus): Only trips in this state.
            busId (UUID): Only trips of this bus.
            driverId (UUID): Only trips driven by this driver.
            parentId (UUID): Only trips of the buses carrying this parent's students.
            startDate (date), endDate (date): Inclusive range of start days.
            offset (int), limit (int): Pagination, no limit when None.
        """
        query = self.session.query(Trip)
        if status is not None:
            query = query.filter(Trip.status == TripStatus(status).value)
        if busId is not None:
            query = query.filter(Trip.bus_id == busId)
        if driverId is not None:
            query = query.filter(Trip.driver_id == driverId)
        if parentId is not None:
            query = query.filter(Trip.bus_id.in_(busesOfParent(parentId)))
        query = withinDates(query, Trip.start_time, startDate, endDate)
        query = query.order_by(Trip.start_time.desc(), Trip.created_at.desc()).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def listActiveTrips(
        self, driverId: Optional[UUID] = None, parentId: Optional[UUID] = None
    ) -> List[Trip]:
        """Trips in progress, optionally restricted to a driver or to a parent's buses."""
        return self.listTrips(TripStatus.IN_PROGRESS, driverId=driverId, parentId=parentId)

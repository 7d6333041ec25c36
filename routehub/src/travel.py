"""
Travel history of students, buses and drivers.

Only completed trips count as travelled. A student travels on the trips
of the bus the student is currently assigned to.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from routehub.src.db import Bus, Route, Student, Trip, User
from routehub.src.enums import TripStatus
from routehub.src.tracking import withinDates


@dataclass
class TravelRecord:
    trip_id: UUID
    bus_id: UUID
    bus_number: str
    route_id: UUID
    route_name: str
    driver_id: UUID
    driver_name: str
    start_time: Optional[datetime]
    end_time: Optional[datetime]
    duration_minutes: Optional[float]
    passenger_count: int


def durationMinutes(start: Optional[datetime], end: Optional[datetime]) -> Optional[float]:
    if start is None or end is None:
        return None
    return round((end - start).total_seconds() / 60, 2)


class TravelHistory:
    def __init__(self, session: Session):
        self.session = session

    def _records(
        self, startDate: Optional[date], endDate: Optional[date], *criteria
    ) -> List[TravelRecord]:
        query = (
            self.session.query(Trip, Bus.bus_number, Route.name, User.name)
            .join(Bus, Trip.bus_id == Bus.id)
            .join(Route, Trip.route_id == Route.id)
            .join(User, Trip.driver_id == User.id)
            .filter(Trip.status == TripStatus.COMPLETED.value, *criteria)
        )
        query = withinDates(query, Trip.start_time, startDate, endDate)
        rows = query.order_by(Trip.start_time.desc()).all()
        return [
            TravelRecord(
                trip_id=trip.id,
                bus_id=trip.bus_id,
                bus_number=busNumber,
                route_id=trip.route_id,
                route_name=routeName,
                driver_id=trip.driver_id,
                driver_name=driverName,
                start_time=trip.start_time,
                end_time=trip.end_time,
                duration_minutes=durationMinutes(trip.start_time, trip.end_time),
                passenger_count=trip.passenger_count,
            )
            for trip, busNumber, routeName, driverName in rows
        ]

    def ofStudent(
        self, student: Student, startDate: Optional[date] = None, endDate: Optional[date] = None
    ) -> List[TravelRecord]:
        if student.assigned_bus_id is None:
            return []
        return self._records(startDate, endDate, Trip.bus_id == student.assigned_bus_id)

    def ofBus(
        self, busId: UUID, startDate: Optional[date] = None, endDate: Optional[date] = None
    ) -> List[TravelRecord]:
        return self._records(startDate, endDate, Trip.bus_id == busId)

    def ofDriver(
        self, driverId: UUID, startDate: Optional[date] = None, endDate: Optional[date] = None
    ) -> List[TravelRecord]:
        return self._records(startDate, endDate, Trip.driver_id == driverId)

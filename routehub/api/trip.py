from datetime import date, datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query, Response, status, Form
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field

from routehub.api.bearer import bearer_organization
from routehub.src.constants import LOCATION_HISTORY_LIMIT, MAX_LOCATION_HISTORY_LIMIT
from routehub.src.db import Bus, Student, Trip, User
from routehub.src import exceptions, validators, getters
from routehub.src.enums import Tier, TripStatus, UserRole
from routehub.src.loggers import logEvent
from routehub.src.functions import enumStr, makeExceptionResponses
from routehub.src.permissions import CREATE, DELETE, LOCATION, READ, TRIP, UPDATE, Owner
from routehub.src.tracking import TripLocationTracker, busOwner, studentOwner, tripOwner
from routehub.src.travel import TravelHistory
from routehub.src.urls import URL_TRIP, URL_TRIP_HISTORY, URL_TRIP_LOCATION

route_organization = APIRouter()


class FinalStatus(str, Enum):
    COMPLETED = TripStatus.COMPLETED.value
    CANCELLED = TripStatus.CANCELLED.value


## Output Schema
class TripSchema(BaseModel):
    id: UUID
    bus_id: UUID
    route_id: UUID
    driver_id: UUID
    status: TripStatus
    start_time: Optional[datetime]
    end_time: Optional[datetime]
    current_latitude: Optional[float]
    current_longitude: Optional[float]
    speed_kmh: Optional[float]
    last_update_time: Optional[datetime]
    passenger_count: int
    updated_at: Optional[datetime]
    created_at: datetime


class LocationSchema(BaseModel):
    id: UUID
    trip_id: UUID
    latitude: float
    longitude: float
    speed_kmh: Optional[float]
    heading: Optional[float]
    accuracy: Optional[float]
    recorded_at: datetime


class TripDetailSchema(TripSchema):
    location_history: List[LocationSchema] = []


class TravelRecordSchema(BaseModel):
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


## Input Forms
class CreateForm(BaseModel):
    bus_id: UUID = Field(Form())
    route_id: UUID = Field(Form())
    driver_id: UUID | None = Field(Form(default=None))
    latitude: float | None = Field(Form(ge=-90, le=90, default=None))
    longitude: float | None = Field(Form(ge=-180, le=180, default=None))


class LocationForm(BaseModel):
    trip_id: UUID = Field(Form())
    latitude: float = Field(Form(ge=-90, le=90))
    longitude: float = Field(Form(ge=-180, le=180))
    speed_kmh: float | None = Field(Form(ge=0, lt=1000, default=None))
    heading: float | None = Field(Form(ge=0, lt=360, default=None))
    accuracy: float | None = Field(Form(ge=0, lt=1000, default=None))


class UpdateForm(BaseModel):
    id: UUID = Field(Form())
    status: FinalStatus = Field(Form(description=enumStr(FinalStatus)))


class DeleteForm(BaseModel):
    id: UUID = Field(Form())


## Query Parameters
class QueryParams(BaseModel):
    id: UUID | None = Field(Query(default=None))
    status: TripStatus | None = Field(
        Query(default=None, description=enumStr(TripStatus))
    )
    bus_id: UUID | None = Field(Query(default=None))
    driver_id: UUID | None = Field(Query(default=None))
    start_date: date | None = Field(Query(default=None))
    end_date: date | None = Field(Query(default=None))
    # Samples returned with a trip fetched by id
    history_limit: int = Field(
        Query(default=LOCATION_HISTORY_LIMIT, gt=0, le=MAX_LOCATION_HISTORY_LIMIT)
    )
    # Pagination
    offset: int = Field(Query(default=0, ge=0))
    limit: int = Field(Query(default=20, gt=0, le=100))


class HistoryQueryParams(BaseModel):
    student_id: UUID | None = Field(Query(default=None))
    bus_id: UUID | None = Field(Query(default=None))
    driver_id: UUID | None = Field(Query(default=None))
    start_date: date | None = Field(Query(default=None))
    end_date: date | None = Field(Query(default=None))


class LocationQueryParams(BaseModel):
    trip_id: UUID = Field(Query())
    limit: int = Field(
        Query(default=LOCATION_HISTORY_LIMIT, gt=0, le=MAX_LOCATION_HISTORY_LIMIT)
    )


## API endpoints [Organization]
@route_organization.post(
    URL_TRIP,
    tags=["Trip"],
    response_model=TripSchema,
    status_code=status.HTTP_201_CREATED,
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.UnknownValue(Trip.bus_id, "<id>"),
            exceptions.DriverNotAssigned,
            exceptions.ActiveTripExists,
            exceptions.MissingParameter(Trip.driver_id),
        ]
    ),
    description="""
    Start a trip of a bus on a route.
    Drivers start their own trips, admins name the driver with `driver_id`.
    The driver must be assigned to the bus and the bus must not have another trip in progress.
    When coordinates are given, they are stored as the first location of the trip.
    Log the trip creation activity.
    """,
)
async def create_trip(
    fParam: CreateForm = Depends(),
    organization_code: str | None = Query(default=None),
    bearer=Depends(bearer_organization),
    request_info=Depends(getters.requestInfo),
    registry=Depends(getters.registry),
):
    identity = validators.identity(bearer.credentials)
    session = registry.resolve(getters.organizationCode(identity, organization_code))
    try:
        validators.permission(identity, getters.grants(identity, session), TRIP, CREATE)

        driverId = identity.id if identity.role == UserRole.DRIVER else fParam.driver_id
        if driverId is None:
            raise exceptions.MissingParameter(Trip.driver_id)

        tracker = TripLocationTracker(session, registry.acquireLock, registry.releaseLock)
        trip = tracker.startTrip(
            fParam.bus_id, fParam.route_id, driverId, fParam.latitude, fParam.longitude
        )
        session.refresh(trip)
        tripData = jsonable_encoder(trip)
        logEvent(identity, request_info, tripData)
        return tripData
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_organization.post(
    URL_TRIP_LOCATION,
    tags=["Trip"],
    response_model=TripSchema,
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.OwnRecordsOnly,
            exceptions.InvalidIdentifier,
            exceptions.InvalidStateTransition(Trip.status),
            exceptions.TransactionTimeout,
        ]
    ),
    description="""
    Record the current location of a trip in progress.
    Updates the current position of the trip and appends the sample to its history atomically.
    Drivers can only update the trips they drive.
    A transaction hitting its time limit is rolled back and reported as retryable.
    """,
)
async def create_location(
    fParam: LocationForm = Depends(),
    organization_code: str | None = Query(default=None),
    bearer=Depends(bearer_organization),
    request_info=Depends(getters.requestInfo),
    registry=Depends(getters.registry),
):
    identity = validators.identity(bearer.credentials)
    session = registry.resolve(getters.organizationCode(identity, organization_code))
    try:
        grants = getters.grants(identity, session)
        tracker = TripLocationTracker(session)
        owner = tripOwner(session, tracker.getTrip(fParam.trip_id))
        validators.permission(identity, grants, LOCATION, UPDATE, owner)
        # End the read transaction, the write below runs in its own
        session.rollback()

        trip = tracker.recordLocation(
            fParam.trip_id,
            fParam.latitude,
            fParam.longitude,
            fParam.speed_kmh,
            fParam.heading,
            fParam.accuracy,
        )
        session.refresh(trip)
        tripData = jsonable_encoder(trip)
        logEvent(identity, request_info, tripData)
        return tripData
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_organization.get(
    URL_TRIP_LOCATION,
    tags=["Trip"],
    response_model=List[LocationSchema],
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.OwnRecordsOnly,
            exceptions.InvalidIdentifier,
        ]
    ),
    description="""
    Fetch the most recent locations of a trip, newest first.
    Parents only see the trips of the buses carrying their students, drivers their own trips.
    """,
)
async def fetch_location(
    qParam: LocationQueryParams = Depends(),
    organization_code: str | None = Query(default=None),
    bearer=Depends(bearer_organization),
    registry=Depends(getters.registry),
):
    identity = validators.identity(bearer.credentials)
    session = registry.resolve(getters.organizationCode(identity, organization_code))
    try:
        tracker = TripLocationTracker(session)
        owner = tripOwner(session, tracker.getTrip(qParam.trip_id))
        validators.permission(
            identity, getters.grants(identity, session), LOCATION, READ, owner
        )
        return tracker.getLocationHistory(qParam.trip_id, qParam.limit)
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_organization.patch(
    URL_TRIP,
    tags=["Trip"],
    response_model=TripSchema,
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.OwnRecordsOnly,
            exceptions.InvalidIdentifier,
            exceptions.InvalidStateTransition(Trip.status),
        ]
    ),
    description="""
    Complete or cancel a trip.
    Only a trip in progress can be completed, a trip that has not finished can be cancelled.
    Log the trip updating activity.
    """,
)
async def update_trip(
    fParam: UpdateForm = Depends(),
    organization_code: str | None = Query(default=None),
    bearer=Depends(bearer_organization),
    request_info=Depends(getters.requestInfo),
    registry=Depends(getters.registry),
):
    identity = validators.identity(bearer.credentials)
    session = registry.resolve(getters.organizationCode(identity, organization_code))
    try:
        grants = getters.grants(identity, session)
        tracker = TripLocationTracker(session)
        owner = tripOwner(session, tracker.getTrip(fParam.id))
        validators.permission(identity, grants, TRIP, UPDATE, owner)
        # End the read transaction, the write below runs in its own
        session.rollback()

        if fParam.status == FinalStatus.COMPLETED:
            trip = tracker.endTrip(fParam.id)
        else:
            trip = tracker.cancelTrip(fParam.id)
        session.refresh(trip)
        tripData = jsonable_encoder(trip)
        logEvent(identity, request_info, tripData)
        return tripData
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_organization.delete(
    URL_TRIP,
    tags=["Trip"],
    status_code=status.HTTP_204_NO_CONTENT,
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.InvalidIdentifier,
            exceptions.TripInProgress,
        ]
    ),
    description="""
    Delete a trip that is not in progress, together with its location history.
    Log the trip deletion activity.
    """,
)
async def delete_trip(
    fParam: DeleteForm = Depends(),
    organization_code: str | None = Query(default=None),
    bearer=Depends(bearer_organization),
    request_info=Depends(getters.requestInfo),
    registry=Depends(getters.registry),
):
    identity = validators.identity(bearer.credentials)
    session = registry.resolve(getters.organizationCode(identity, organization_code))
    try:
        validators.permission(identity, getters.grants(identity, session), TRIP, DELETE)

        TripLocationTracker(session).deleteTrip(fParam.id)
        logEvent(identity, request_info, {"id": str(fParam.id)})
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_organization.get(
    URL_TRIP,
    tags=["Trip"],
    response_model=List[TripDetailSchema],
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.OwnRecordsOnly,
            exceptions.InvalidIdentifier,
        ]
    ),
    description="""
    Fetch a trip by id together with its most recent locations, newest first.
    Without an id, list trips filtered by status, bus, driver and a range of start days.
    Drivers see their own trips, parents the trips of the buses carrying their students.
    """,
)
async def fetch_trip(
    qParam: QueryParams = Depends(),
    organization_code: str | None = Query(default=None),
    bearer=Depends(bearer_organization),
    registry=Depends(getters.registry),
):
    identity = validators.identity(bearer.credentials)
    session = registry.resolve(getters.organizationCode(identity, organization_code))
    try:
        grants = getters.grants(identity, session)
        tracker = TripLocationTracker(session)
        if qParam.id is not None:
            detail = tracker.getTripDetail(qParam.id, qParam.history_limit)
            owner = tripOwner(session, detail.trip)
            validators.permission(identity, grants, TRIP, READ, owner)
            tripData = jsonable_encoder(detail.trip)
            tripData["location_history"] = jsonable_encoder(detail.location_history)
            return [tripData]

        decision = validators.permission(identity, grants, TRIP, READ)
        driverId, parentId = qParam.driver_id, None
        if decision.tier == Tier.OWN:
            if identity.role == UserRole.DRIVER:
                if driverId not in (None, identity.id):
                    return []
                driverId = identity.id
            else:
                parentId = identity.id
        return tracker.listTrips(
            status=qParam.status,
            busId=qParam.bus_id,
            driverId=driverId,
            parentId=parentId,
            startDate=qParam.start_date,
            endDate=qParam.end_date,
            offset=qParam.offset,
            limit=qParam.limit,
        )
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_organization.get(
    URL_TRIP_HISTORY,
    tags=["Trip"],
    response_model=List[TravelRecordSchema],
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.OwnRecordsOnly,
            exceptions.InvalidIdentifier,
            exceptions.MissingParameter(Trip.id),
        ]
    ),
    description="""
    Fetch the completed trips of one student, bus or driver, newest first.
    Give exactly one of `student_id`, `bus_id` or `driver_id`.
    A student travels on the trips of the bus the student is assigned to.
    Parents see the history of their own students and of the buses carrying them,
    drivers their own history and that of their buses.
    """,
)
async def fetch_travel_history(
    qParam: HistoryQueryParams = Depends(),
    organization_code: str | None = Query(default=None),
    bearer=Depends(bearer_organization),
    registry=Depends(getters.registry),
):
    identity = validators.identity(bearer.credentials)
    session = registry.resolve(getters.organizationCode(identity, organization_code))
    try:
        grants = getters.grants(identity, session)
        travel = TravelHistory(session)
        dates = (qParam.start_date, qParam.end_date)
        subjects = [qParam.student_id, qParam.bus_id, qParam.driver_id]
        if sum(subject is not None for subject in subjects) != 1:
            raise exceptions.MissingParameter(Trip.id)

        if qParam.student_id is not None:
            student = session.query(Student).filter(Student.id == qParam.student_id).first()
            if student is None:
                raise exceptions.InvalidIdentifier()
            owner = studentOwner(session, student)
            validators.permission(identity, grants, TRIP, READ, owner)
            return travel.ofStudent(student, *dates)

        if qParam.bus_id is not None:
            bus = session.query(Bus).filter(Bus.id == qParam.bus_id).first()
            if bus is None:
                raise exceptions.InvalidIdentifier()
            validators.permission(identity, grants, TRIP, READ, busOwner(session, bus))
            return travel.ofBus(bus.id, *dates)

        driver = (
            session.query(User.id)
            .filter(User.id == qParam.driver_id, User.role == UserRole.DRIVER.value)
            .first()
        )
        if driver is None:
            raise exceptions.InvalidIdentifier()
        validators.permission(identity, grants, TRIP, READ, Owner(driver_id=driver.id))
        return travel.ofDriver(driver.id, *dates)
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()

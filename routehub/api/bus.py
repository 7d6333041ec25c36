from datetime import datetime
from typing import List, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query, status, Form
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field
from sqlalchemy.orm.session import Session

from routehub.api.bearer import bearer_organization
from routehub.src.db import Bus, User
from routehub.src import exceptions, validators, getters
from routehub.src.enums import Tier, UserRole
from routehub.src.loggers import logEvent
from routehub.src.functions import makeExceptionResponses, updateIfChanged
from routehub.src.permissions import BUS, CREATE, READ, UPDATE
from routehub.src.urls import URL_BUS

route_organization = APIRouter()


## Output Schema
class BusSchema(BaseModel):
    id: UUID
    bus_number: str
    capacity: int
    driver_id: Optional[UUID]
    assigned_route_id: Optional[UUID]
    is_active: bool
    updated_at: Optional[datetime]
    created_at: datetime


## Input Forms
class CreateForm(BaseModel):
    bus_number: str = Field(Form(max_length=32))
    capacity: int = Field(Form(gt=0, le=200))
    driver_id: UUID | None = Field(Form(default=None))
    assigned_route_id: UUID | None = Field(Form(default=None))


class UpdateForm(BaseModel):
    id: UUID = Field(Form())
    bus_number: str | None = Field(Form(max_length=32, default=None))
    capacity: int | None = Field(Form(gt=0, le=200, default=None))
    driver_id: UUID | None = Field(Form(default=None))
    assigned_route_id: UUID | None = Field(Form(default=None))
    is_active: bool | None = Field(Form(default=None))


## Query Parameters
class QueryParams(BaseModel):
    id: UUID | None = Field(Query(default=None))
    is_active: bool | None = Field(Query(default=None))
    # Pagination
    offset: int = Field(Query(default=0, ge=0))
    limit: int = Field(Query(default=20, gt=0, le=100))


def checkDriver(session: Session, driverId: UUID | None) -> None:
    if driverId is None:
        return
    driver = (
        session.query(User.id)
        .filter(User.id == driverId, User.role == UserRole.DRIVER.value)
        .first()
    )
    if driver is None:
        raise exceptions.UnknownValue(Bus.driver_id, driverId)


## API endpoints [Organization]
@route_organization.post(
    URL_BUS,
    tags=["Bus"],
    response_model=BusSchema,
    status_code=status.HTTP_201_CREATED,
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.DuplicateValue(Bus.bus_number),
            exceptions.UnknownValue(Bus.driver_id, "<id>"),
        ]
    ),
    description="""
    Register a bus of the organization fleet, optionally assigning its driver.
    Log the bus creation activity.
    """,
)
async def create_bus(
    fParam: CreateForm = Depends(),
    organization_code: str | None = Query(default=None),
    bearer=Depends(bearer_organization),
    request_info=Depends(getters.requestInfo),
    registry=Depends(getters.registry),
):
    identity = validators.identity(bearer.credentials)
    session = registry.resolve(getters.organizationCode(identity, organization_code))
    try:
        validators.permission(identity, getters.grants(identity, session), BUS, CREATE)

        if session.query(Bus.id).filter(Bus.bus_number == fParam.bus_number).first():
            raise exceptions.DuplicateValue(Bus.bus_number)
        checkDriver(session, fParam.driver_id)

        bus = Bus(
            bus_number=fParam.bus_number,
            capacity=fParam.capacity,
            driver_id=fParam.driver_id,
            assigned_route_id=fParam.assigned_route_id,
        )
        session.add(bus)
        session.commit()
        session.refresh(bus)

        busData = jsonable_encoder(bus)
        logEvent(identity, request_info, busData)
        return busData
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_organization.patch(
    URL_BUS,
    tags=["Bus"],
    response_model=BusSchema,
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission, exceptions.InvalidIdentifier]
    ),
    description="""
    Updates a bus, including the assignment of its driver.
    Log the bus updating activity.
    """,
)
async def update_bus(
    fParam: UpdateForm = Depends(),
    organization_code: str | None = Query(default=None),
    bearer=Depends(bearer_organization),
    request_info=Depends(getters.requestInfo),
    registry=Depends(getters.registry),
):
    identity = validators.identity(bearer.credentials)
    session = registry.resolve(getters.organizationCode(identity, organization_code))
    try:
        validators.permission(identity, getters.grants(identity, session), BUS, UPDATE)

        bus = session.query(Bus).filter(Bus.id == fParam.id).first()
        if bus is None:
            raise exceptions.InvalidIdentifier()
        checkDriver(session, fParam.driver_id)

        updateIfChanged(
            bus,
            fParam,
            [
                Bus.bus_number.key,
                Bus.capacity.key,
                Bus.driver_id.key,
                Bus.assigned_route_id.key,
                Bus.is_active.key,
            ],
        )
        if session.is_modified(bus):
            session.commit()
            session.refresh(bus)
            logEvent(identity, request_info, jsonable_encoder(bus))
        return bus
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_organization.get(
    URL_BUS,
    tags=["Bus"],
    response_model=List[BusSchema],
    responses=makeExceptionResponses([exceptions.InvalidToken, exceptions.NoPermission]),
    description="""
    Fetch buses. Drivers only see the buses assigned to them.
    """,
)
async def fetch_bus(
    qParam: QueryParams = Depends(),
    organization_code: str | None = Query(default=None),
    bearer=Depends(bearer_organization),
    registry=Depends(getters.registry),
):
    identity = validators.identity(bearer.credentials)
    session = registry.resolve(getters.organizationCode(identity, organization_code))
    try:
        decision = validators.permission(
            identity, getters.grants(identity, session), BUS, READ
        )

        query = session.query(Bus)
        if decision.tier == Tier.OWN:
            query = query.filter(Bus.driver_id == identity.id)
        if qParam.id is not None:
            query = query.filter(Bus.id == qParam.id)
        if qParam.is_active is not None:
            query = query.filter(Bus.is_active == qParam.is_active)
        query = query.order_by(Bus.bus_number)
        return query.offset(qParam.offset).limit(qParam.limit).all()
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()

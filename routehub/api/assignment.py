from typing import List
from uuid import UUID
from fastapi import APIRouter, Depends, Query, Form
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field

from routehub.api.bearer import bearer_organization
from routehub.api.student import StudentSchema
from routehub.src.assignment import StudentAssignment
from routehub.src.db import Bus, Student
from routehub.src import exceptions, validators, getters
from routehub.src.loggers import logEvent
from routehub.src.functions import makeExceptionResponses
from routehub.src.permissions import BUS, ROUTE, UPDATE
from routehub.src.tracking import busOwner
from routehub.src.urls import URL_ASSIGNMENT_BUS, URL_ASSIGNMENT_ROUTE

route_organization = APIRouter()


## Input Forms
class RouteForm(BaseModel):
    student_ids: List[UUID] = Field(Form())
    route_id: UUID = Field(Form())
    bus_id: UUID | None = Field(Form(default=None))


class BusForm(BaseModel):
    student_ids: List[UUID] = Field(Form())
    bus_id: UUID = Field(Form())


## API endpoints [Organization]
@route_organization.post(
    URL_ASSIGNMENT_ROUTE,
    tags=["Assignment"],
    response_model=List[StudentSchema],
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.UnknownValue(Student.id, "<id>"),
            exceptions.CapacityExceeded(0),
        ]
    ),
    description="""
    Assign students to a route, and to a bus when `bus_id` is given.
    Either every student is assigned or none is.
    Log the assignment activity.
    """,
)
async def assign_route(
    fParam: RouteForm = Depends(),
    organization_code: str | None = Query(default=None),
    bearer=Depends(bearer_organization),
    request_info=Depends(getters.requestInfo),
    registry=Depends(getters.registry),
):
    identity = validators.identity(bearer.credentials)
    session = registry.resolve(getters.organizationCode(identity, organization_code))
    try:
        validators.permission(identity, getters.grants(identity, session), ROUTE, UPDATE)

        students = StudentAssignment(session).toRoute(
            fParam.student_ids, fParam.route_id, fParam.bus_id
        )
        for student in students:
            session.refresh(student)
        studentData = jsonable_encoder(students)
        logEvent(identity, request_info, jsonable_encoder(fParam))
        return studentData
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_organization.post(
    URL_ASSIGNMENT_BUS,
    tags=["Assignment"],
    response_model=List[StudentSchema],
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.OwnRecordsOnly,
            exceptions.UnknownValue(Student.id, "<id>"),
            exceptions.CapacityExceeded(0),
        ]
    ),
    description="""
    Assign students to a bus without exceeding its capacity.
    Either every student is assigned or none is.
    Log the assignment activity.
    """,
)
async def assign_bus(
    fParam: BusForm = Depends(),
    organization_code: str | None = Query(default=None),
    bearer=Depends(bearer_organization),
    request_info=Depends(getters.requestInfo),
    registry=Depends(getters.registry),
):
    identity = validators.identity(bearer.credentials)
    session = registry.resolve(getters.organizationCode(identity, organization_code))
    try:
        bus = session.query(Bus).filter(Bus.id == fParam.bus_id).first()
        if bus is None:
            raise exceptions.UnknownValue(Student.assigned_bus_id, fParam.bus_id)
        validators.permission(
            identity, getters.grants(identity, session), BUS, UPDATE, busOwner(session, bus)
        )
        # End the read transaction, the write below runs in its own
        session.rollback()

        students = StudentAssignment(session).toBus(fParam.student_ids, fParam.bus_id)
        for student in students:
            session.refresh(student)
        studentData = jsonable_encoder(students)
        logEvent(identity, request_info, jsonable_encoder(fParam))
        return studentData
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()

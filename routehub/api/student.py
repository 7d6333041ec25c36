from datetime import datetime
from typing import List, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query, status, Form
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field
from sqlalchemy import select

from routehub.api.bearer import bearer_organization
from routehub.src.db import Bus, Student, User
from routehub.src import exceptions, validators, getters
from routehub.src.enums import Tier, UserRole
from routehub.src.loggers import logEvent
from routehub.src.functions import makeExceptionResponses
from routehub.src.permissions import CREATE, READ, STUDENT
from routehub.src.tracking import studentOwner
from routehub.src.urls import URL_STUDENT

route_organization = APIRouter()


## Output Schema
class StudentSchema(BaseModel):
    id: UUID
    name: str
    class_grade: str
    section: str
    parent_id: UUID
    parent_contact: str
    assigned_bus_id: Optional[UUID]
    assigned_route_id: Optional[UUID]
    is_active: bool
    updated_at: Optional[datetime]
    created_at: datetime


## Input Forms
class CreateForm(BaseModel):
    name: str = Field(Form(max_length=128))
    class_grade: str = Field(Form(max_length=16))
    section: str = Field(Form(max_length=16))
    parent_id: UUID = Field(Form())
    parent_contact: str = Field(Form(max_length=32))
    assigned_bus_id: UUID | None = Field(Form(default=None))
    assigned_route_id: UUID | None = Field(Form(default=None))


## Query Parameters
class QueryParams(BaseModel):
    id: UUID | None = Field(Query(default=None))
    assigned_bus_id: UUID | None = Field(Query(default=None))
    assigned_route_id: UUID | None = Field(Query(default=None))
    # Pagination
    offset: int = Field(Query(default=0, ge=0))
    limit: int = Field(Query(default=20, gt=0, le=100))


## API endpoints [Organization]
@route_organization.post(
    URL_STUDENT,
    tags=["Student"],
    response_model=StudentSchema,
    status_code=status.HTTP_201_CREATED,
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.UnknownValue(Student.parent_id, "<id>"),
        ]
    ),
    description="""
    Enrol a student, owned by a parent account of the organization.
    Log the student creation activity.
    """,
)
async def create_student(
    fParam: CreateForm = Depends(),
    organization_code: str | None = Query(default=None),
    bearer=Depends(bearer_organization),
    request_info=Depends(getters.requestInfo),
    registry=Depends(getters.registry),
):
    identity = validators.identity(bearer.credentials)
    session = registry.resolve(getters.organizationCode(identity, organization_code))
    try:
        validators.permission(
            identity, getters.grants(identity, session), STUDENT, CREATE
        )

        parent = (
            session.query(User.id)
            .filter(User.id == fParam.parent_id, User.role == UserRole.PARENT.value)
            .first()
        )
        if parent is None:
            raise exceptions.UnknownValue(Student.parent_id, fParam.parent_id)
        if fParam.assigned_bus_id is not None:
            if session.query(Bus.id).filter(Bus.id == fParam.assigned_bus_id).first() is None:
                raise exceptions.UnknownValue(Student.assigned_bus_id, fParam.assigned_bus_id)

        student = Student(
            name=fParam.name,
            class_grade=fParam.class_grade,
            section=fParam.section,
            parent_id=fParam.parent_id,
            parent_contact=fParam.parent_contact,
            assigned_bus_id=fParam.assigned_bus_id,
            assigned_route_id=fParam.assigned_route_id,
        )
        session.add(student)
        session.commit()
        session.refresh(student)

        studentData = jsonable_encoder(student)
        logEvent(identity, request_info, studentData)
        return studentData
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_organization.get(
    URL_STUDENT,
    tags=["Student"],
    response_model=List[StudentSchema],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission, exceptions.OwnRecordsOnly]
    ),
    description="""
    Fetch students.
    Parents only see their own students, drivers only the students riding their buses.
    """,
)
async def fetch_student(
    qParam: QueryParams = Depends(),
    organization_code: str | None = Query(default=None),
    bearer=Depends(bearer_organization),
    registry=Depends(getters.registry),
):
    identity = validators.identity(bearer.credentials)
    session = registry.resolve(getters.organizationCode(identity, organization_code))
    try:
        grants = getters.grants(identity, session)
        if qParam.id is not None:
            student = session.query(Student).filter(Student.id == qParam.id).first()
            if student is None:
                raise exceptions.InvalidIdentifier()
            validators.permission(
                identity, grants, STUDENT, READ, studentOwner(session, student)
            )
            return [student]

        decision = validators.permission(identity, grants, STUDENT, READ)
        query = session.query(Student)
        if decision.tier == Tier.OWN:
            if identity.role == UserRole.PARENT:
                query = query.filter(Student.parent_id == identity.id)
            else:
                buses = select(Bus.id).where(Bus.driver_id == identity.id)
                query = query.filter(Student.assigned_bus_id.in_(buses))
        if qParam.assigned_bus_id is not None:
            query = query.filter(Student.assigned_bus_id == qParam.assigned_bus_id)
        if qParam.assigned_route_id is not None:
            query = query.filter(Student.assigned_route_id == qParam.assigned_route_id)
        query = query.order_by(Student.name)
        return query.offset(qParam.offset).limit(qParam.limit).all()
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()

from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query, status, Form
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field

from routehub.api.bearer import bearer_organization
from routehub.src.db import Role, User
from routehub.src import argon2, exceptions, validators, getters
from routehub.src.enums import UserRole
from routehub.src.loggers import logEvent
from routehub.src.functions import enumStr, makeExceptionResponses, updateIfChanged
from routehub.src.permissions import CREATE, READ, UPDATE, USER
from routehub.src.urls import URL_USER

route_organization = APIRouter()


class OrganizationRole(str, Enum):
    ADMIN = UserRole.ADMIN.value
    DRIVER = UserRole.DRIVER.value
    PARENT = UserRole.PARENT.value


## Output Schema
class UserSchema(BaseModel):
    id: UUID
    email: str
    phone: Optional[str]
    name: str
    role: UserRole
    driver_id: Optional[str]
    role_id: Optional[UUID]
    is_active: bool
    last_login: Optional[datetime]
    updated_at: Optional[datetime]
    created_at: datetime


## Input Forms
class CreateForm(BaseModel):
    email: str = Field(Form(max_length=256))
    name: str = Field(Form(max_length=128))
    password: str = Field(Form(min_length=8, max_length=128))
    role: OrganizationRole = Field(Form(description=enumStr(OrganizationRole)))
    phone: str | None = Field(Form(max_length=32, default=None))
    driver_id: str | None = Field(Form(max_length=64, default=None))
    role_id: UUID | None = Field(Form(default=None))


class UpdateForm(BaseModel):
    id: UUID = Field(Form())
    name: str | None = Field(Form(max_length=128, default=None))
    phone: str | None = Field(Form(max_length=32, default=None))
    password: str | None = Field(Form(min_length=8, max_length=128, default=None))
    role_id: UUID | None = Field(Form(default=None))
    clear_role: bool = Field(Form(default=False))
    is_active: bool | None = Field(Form(default=None))


## Query Parameters
class QueryParams(BaseModel):
    id: UUID | None = Field(Query(default=None))
    role: OrganizationRole | None = Field(Query(default=None))
    role_id: UUID | None = Field(Query(default=None))
    is_active: bool | None = Field(Query(default=None))
    # Pagination
    offset: int = Field(Query(default=0, ge=0))
    limit: int = Field(Query(default=20, gt=0, le=100))


def checkRole(session, roleId: UUID | None) -> None:
    if roleId is None:
        return
    if session.query(Role.id).filter(Role.id == roleId).first() is None:
        raise exceptions.UnknownValue(User.role_id, roleId)


## API endpoints [Organization]
@route_organization.post(
    URL_USER,
    tags=["User"],
    response_model=UserSchema,
    status_code=status.HTTP_201_CREATED,
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.DuplicateValue(User.email),
            exceptions.ReservedValue(User.email),
            exceptions.UnknownValue(User.role_id, "<id>"),
        ]
    ),
    description="""
    Create an admin, driver or parent account inside the organization.
    An optional custom role augments the permissions of the fixed role.
    Log the user creation activity.
    """,
)
async def create_user(
    fParam: CreateForm = Depends(),
    organization_code: str | None = Query(default=None),
    bearer=Depends(bearer_organization),
    request_info=Depends(getters.requestInfo),
    registry=Depends(getters.registry),
):
    identity = validators.identity(bearer.credentials)
    session = registry.resolve(getters.organizationCode(identity, organization_code))
    try:
        validators.permission(identity, getters.grants(identity, session), USER, CREATE)

        email = validators.tenantEmail(fParam.email, User.email)
        if session.query(User.id).filter(User.email == email).first():
            raise exceptions.DuplicateValue(User.email)
        checkRole(session, fParam.role_id)

        user = User(
            email=email,
            name=fParam.name,
            phone=fParam.phone,
            password_hash=argon2.makePassword(fParam.password),
            role=fParam.role.value,
            driver_id=fParam.driver_id,
            role_id=fParam.role_id,
        )
        session.add(user)
        session.commit()
        session.refresh(user)

        userData = jsonable_encoder(user, exclude={User.password_hash.key})
        logEvent(identity, request_info, userData)
        return userData
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_organization.patch(
    URL_USER,
    tags=["User"],
    response_model=UserSchema,
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.InvalidIdentifier,
            exceptions.UnknownValue(User.role_id, "<id>"),
        ]
    ),
    description="""
    Updates an organization account.
    `role_id` assigns a custom role, `clear_role` removes it.
    Log the user updating activity.
    """,
)
async def update_user(
    fParam: UpdateForm = Depends(),
    organization_code: str | None = Query(default=None),
    bearer=Depends(bearer_organization),
    request_info=Depends(getters.requestInfo),
    registry=Depends(getters.registry),
):
    identity = validators.identity(bearer.credentials)
    session = registry.resolve(getters.organizationCode(identity, organization_code))
    try:
        validators.permission(identity, getters.grants(identity, session), USER, UPDATE)

        user = session.query(User).filter(User.id == fParam.id).first()
        if user is None:
            raise exceptions.InvalidIdentifier()
        checkRole(session, fParam.role_id)

        updateIfChanged(
            user,
            fParam,
            [User.name.key, User.phone.key, User.role_id.key, User.is_active.key],
        )
        if fParam.clear_role:
            user.role_id = None
        if fParam.password is not None:
            user.password_hash = argon2.makePassword(fParam.password)

        if session.is_modified(user):
            session.commit()
            session.refresh(user)
            logEvent(
                identity,
                request_info,
                jsonable_encoder(user, exclude={User.password_hash.key}),
            )
        return user
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_organization.get(
    URL_USER,
    tags=["User"],
    response_model=List[UserSchema],
    responses=makeExceptionResponses([exceptions.InvalidToken, exceptions.NoPermission]),
    description="""
    Fetch the accounts of the organization, with filtering and pagination.
    """,
)
async def fetch_user(
    qParam: QueryParams = Depends(),
    organization_code: str | None = Query(default=None),
    bearer=Depends(bearer_organization),
    registry=Depends(getters.registry),
):
    identity = validators.identity(bearer.credentials)
    session = registry.resolve(getters.organizationCode(identity, organization_code))
    try:
        validators.permission(identity, getters.grants(identity, session), USER, READ)

        query = session.query(User)
        if qParam.id is not None:
            query = query.filter(User.id == qParam.id)
        if qParam.role is not None:
            query = query.filter(User.role == qParam.role.value)
        if qParam.role_id is not None:
            query = query.filter(User.role_id == qParam.role_id)
        if qParam.is_active is not None:
            query = query.filter(User.is_active == qParam.is_active)
        query = query.order_by(User.created_at.desc())
        return query.offset(qParam.offset).limit(qParam.limit).all()
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()

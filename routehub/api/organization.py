from datetime import datetime
from enum import IntEnum
from typing import List, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query, status, Form
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError

from routehub.api.bearer import bearer_platform
from routehub.src.constants import REGEX_ORGANIZATION_CODE
from routehub.src.db import Organization, Role, User, sessionMaker
from routehub.src import argon2, exceptions, validators, getters
from routehub.src.enums import OrderIn, UserRole
from routehub.src.loggers import logEvent
from routehub.src.functions import enumStr, makeExceptionResponses, updateIfChanged
from routehub.src.permissions import (
    CREATE,
    ORGANIZATION,
    READ,
    UPDATE,
    grantsFor,
)
from routehub.src.urls import URL_ORGANIZATION, URL_ORGANIZATION_MIGRATE

route_platform = APIRouter()

ADMIN_ROLE_NAME = "Organization Admin"


## Output Schema
class OrganizationSchema(BaseModel):
    id: UUID
    code: str
    database: str
    name: str
    primary_color: str
    contact_email: Optional[str]
    contact_phone: Optional[str]
    address: Optional[str]
    is_active: bool
    updated_at: Optional[datetime]
    created_at: datetime


## Input Forms
class CreateForm(BaseModel):
    code: str = Field(Form(max_length=64, pattern=REGEX_ORGANIZATION_CODE))
    name: str = Field(Form(max_length=128))
    primary_color: str = Field(Form(max_length=16, default="#2196F3"))
    contact_email: str | None = Field(Form(max_length=256, default=None))
    contact_phone: str | None = Field(Form(max_length=32, default=None))
    address: str | None = Field(Form(max_length=512, default=None))
    # Optional first admin of the organization
    admin_email: str | None = Field(Form(max_length=256, default=None))
    admin_name: str | None = Field(Form(max_length=128, default=None))
    admin_password: str | None = Field(Form(min_length=8, max_length=128, default=None))


class UpdateForm(BaseModel):
    id: UUID = Field(Form())
    name: str | None = Field(Form(max_length=128, default=None))
    primary_color: str | None = Field(Form(max_length=16, default=None))
    contact_email: str | None = Field(Form(max_length=256, default=None))
    contact_phone: str | None = Field(Form(max_length=32, default=None))
    address: str | None = Field(Form(max_length=512, default=None))
    is_active: bool | None = Field(Form(default=None))


class MigrateForm(BaseModel):
    id: UUID = Field(Form())


## Query Parameters
class OrderBy(IntEnum):
    code = 1
    updated_at = 2
    created_at = 3


class QueryParams(BaseModel):
    id: UUID | None = Field(Query(default=None))
    code: str | None = Field(Query(default=None))
    name: str | None = Field(Query(default=None))
    is_active: bool | None = Field(Query(default=None))
    # Ordering
    order_by: OrderBy = Field(
        Query(default=OrderBy.created_at, description=enumStr(OrderBy))
    )
    order_in: OrderIn = Field(Query(default=OrderIn.DESC, description=enumStr(OrderIn)))
    # Pagination
    offset: int = Field(Query(default=0, ge=0))
    limit: int = Field(Query(default=20, gt=0, le=100))


def searchOrganization(session, qParam: QueryParams) -> List[Organization]:
    query = session.query(Organization)

    # Filters
    if qParam.id is not None:
        query = query.filter(Organization.id == qParam.id)
    if qParam.code is not None:
        query = query.filter(Organization.code == qParam.code)
    if qParam.name is not None:
        query = query.filter(Organization.name.ilike(f"%{qParam.name}%"))
    if qParam.is_active is not None:
        query = query.filter(Organization.is_active == qParam.is_active)

    # Ordering
    orderingAttribute = getattr(Organization, OrderBy(qParam.order_by).name)
    if qParam.order_in == OrderIn.ASC:
        query = query.order_by(orderingAttribute.asc())
    else:
        query = query.order_by(orderingAttribute.desc())

    # Pagination
    query = query.offset(qParam.offset).limit(qParam.limit)
    return query.all()


def adminEmail(fParam: CreateForm) -> Optional[str]:
    """Validated email of the first admin, None when no admin is requested."""
    given = (fParam.admin_email, fParam.admin_name, fParam.admin_password)
    if not any(given):
        return None
    if not fParam.admin_email:
        raise exceptions.MissingParameter(User.email)
    if not fParam.admin_name:
        raise exceptions.MissingParameter(User.name)
    if not fParam.admin_password:
        raise exceptions.MissingParameter(User.password_hash)
    return validators.tenantEmail(fParam.admin_email, User.email)


def createAdmin(registry, organization: Organization, email: str, fParam: CreateForm) -> None:
    with registry.session(organization.code) as session:
        adminRole = session.query(Role).filter(Role.name == ADMIN_ROLE_NAME).first()
        session.add(
            User(
                email=email,
                name=fParam.admin_name,
                password_hash=argon2.makePassword(fParam.admin_password),
                role=UserRole.ADMIN.value,
                role_id=adminRole.id if adminRole else None,
            )
        )
        session.commit()


## API endpoints [Platform]
@route_platform.post(
    URL_ORGANIZATION,
    tags=["Organization"],
    response_model=OrganizationSchema,
    status_code=status.HTTP_201_CREATED,
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.DuplicateValue(Organization.code),
            exceptions.ReservedValue(User.email),
            exceptions.MissingParameter(User.email),
            exceptions.ProvisioningFailed("<database>", "<reason>"),
        ]
    ),
    description="""
    Creates a new organization and provisions its isolated database.
    Only the platform superadmin can create an organization.
    The organization code must derive a database name no other organization uses.
    When admin credentials are given, the first admin of the organization is created.
    Logs the organization creation activity.
    """,
)
async def create_organization(
    fParam: CreateForm = Depends(),
    bearer=Depends(bearer_platform),
    request_info=Depends(getters.requestInfo),
    registry=Depends(getters.registry),
):
    try:
        session = sessionMaker()
        identity = validators.identity(bearer.credentials)
        validators.permission(identity, grantsFor(identity.role), ORGANIZATION, CREATE)

        email = adminEmail(fParam)
        database = registry.databaseName(fParam.code)
        if session.query(Organization.id).filter(Organization.database == database).first():
            raise exceptions.DuplicateValue(Organization.code)

        organization = Organization(
            code=fParam.code,
            name=fParam.name,
            primary_color=fParam.primary_color,
            contact_email=fParam.contact_email,
            contact_phone=fParam.contact_phone,
            address=fParam.address,
            database=database,
        )
        session.add(organization)
        try:
            session.commit()
        except IntegrityError as e:
            # A concurrent create derived the same database name
            session.rollback()
            raise exceptions.DuplicateValue(Organization.code) from e
        session.refresh(organization)

        if not registry.provision(organization.id, organization.code):
            # The database predates this organization
            session.delete(organization)
            session.commit()
            raise exceptions.DuplicateValue(Organization.code)
        if email is not None:
            createAdmin(registry, organization, email, fParam)

        organizationData = jsonable_encoder(organization)
        logEvent(identity, request_info, organizationData)
        return organizationData
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_platform.patch(
    URL_ORGANIZATION,
    tags=["Organization"],
    response_model=OrganizationSchema,
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission, exceptions.InvalidIdentifier]
    ),
    description="""
    Updates an existing organization. The code can never be changed.
    Deactivating an organization disposes its cached connection pool.
    Logs the organization updating activity.
    """,
)
async def update_organization(
    fParam: UpdateForm = Depends(),
    bearer=Depends(bearer_platform),
    request_info=Depends(getters.requestInfo),
    registry=Depends(getters.registry),
):
    try:
        session = sessionMaker()
        identity = validators.identity(bearer.credentials)
        validators.permission(identity, grantsFor(identity.role), ORGANIZATION, UPDATE)

        organization = (
            session.query(Organization).filter(Organization.id == fParam.id).first()
        )
        if organization is None:
            raise exceptions.InvalidIdentifier()

        updateIfChanged(
            organization,
            fParam,
            [
                Organization.name.key,
                Organization.primary_color.key,
                Organization.contact_email.key,
                Organization.contact_phone.key,
                Organization.address.key,
                Organization.is_active.key,
            ],
        )
        if session.is_modified(organization):
            session.commit()
            session.refresh(organization)
            if not organization.is_active:
                registry.evict(organization.code)
            logEvent(identity, request_info, jsonable_encoder(organization))
        return organization
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_platform.post(
    URL_ORGANIZATION_MIGRATE,
    tags=["Organization"],
    response_model=OrganizationSchema,
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.InvalidIdentifier,
            exceptions.UnknownOrganization,
        ]
    ),
    description="""
    Re-applies the tenant schema and the default roles to the database of an organization.
    Used to remediate a provisioning that failed halfway.
    """,
)
async def migrate_organization(
    fParam: MigrateForm = Depends(),
    bearer=Depends(bearer_platform),
    request_info=Depends(getters.requestInfo),
    registry=Depends(getters.registry),
):
    try:
        session = sessionMaker()
        identity = validators.identity(bearer.credentials)
        validators.permission(identity, grantsFor(identity.role), ORGANIZATION, UPDATE)

        organization = (
            session.query(Organization).filter(Organization.id == fParam.id).first()
        )
        if organization is None:
            raise exceptions.InvalidIdentifier()
        if not registry.exists(organization.code):
            registry.provision(organization.id, organization.code)
        else:
            registry.migrate(organization.code)

        organizationData = jsonable_encoder(organization)
        logEvent(identity, request_info, organizationData)
        return organizationData
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_platform.get(
    URL_ORGANIZATION,
    tags=["Organization"],
    response_model=List[OrganizationSchema],
    responses=makeExceptionResponses([exceptions.InvalidToken, exceptions.NoPermission]),
    description="""
    Fetches organizations, with filtering, ordering and pagination.
    """,
)
async def fetch_organization(
    qParam: QueryParams = Depends(),
    bearer=Depends(bearer_platform),
):
    try:
        session = sessionMaker()
        identity = validators.identity(bearer.credentials)
        validators.permission(identity, grantsFor(identity.role), ORGANIZATION, READ)

        return searchOrganization(session, qParam)
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()

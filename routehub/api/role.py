from datetime import datetime
from typing import List, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query, Response, status, Form
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field

from routehub.api.bearer import bearer_organization
from routehub.src.db import Role
from routehub.src import exceptions, validators, getters
from routehub.src.enums import RoleType
from routehub.src.loggers import logEvent
from routehub.src.functions import makeExceptionResponses
from routehub.src.permissions import CREATE, DELETE, READ, ROLE, UPDATE
from routehub.src.roles import ExpandedRole, RoleRegistry
from routehub.src.urls import URL_ROLE

route_organization = APIRouter()


## Output Schema
class PermissionSchema(BaseModel):
    id: UUID
    name: str
    code: str
    description: Optional[str]


class RoleSchema(BaseModel):
    id: UUID
    name: str
    description: Optional[str]
    type: RoleType
    allow_delete: bool
    permissions: List[PermissionSchema]
    updated_at: Optional[datetime]
    created_at: datetime


## Input Forms
class CreateForm(BaseModel):
    name: str = Field(Form(max_length=128))
    description: str | None = Field(Form(max_length=512, default=None))
    permission_ids: List[UUID] = Field(Form(default=[]))


class UpdateForm(BaseModel):
    id: UUID = Field(Form())
    name: str | None = Field(Form(max_length=128, default=None))
    description: str | None = Field(Form(max_length=512, default=None))
    permission_ids: List[UUID] | None = Field(Form(default=None))
    clear_permissions: bool = Field(Form(default=False))


class DeleteForm(BaseModel):
    id: UUID = Field(Form())


## Query Parameters
class QueryParams(BaseModel):
    id: UUID | None = Field(Query(default=None))
    # Pagination
    offset: int = Field(Query(default=0, ge=0))
    limit: int = Field(Query(default=20, gt=0, le=100))


def roleData(expanded: ExpandedRole) -> dict:
    data = jsonable_encoder(expanded.role)
    data.pop(Role.permission_ids.key, None)
    data["permissions"] = jsonable_encoder(expanded.permissions)
    return data


## API endpoints [Organization]
@route_organization.post(
    URL_ROLE,
    tags=["Role"],
    response_model=RoleSchema,
    status_code=status.HTTP_201_CREATED,
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.DuplicateValue(Role.name),
            exceptions.UnknownValue(Role.permission_ids, "<id>"),
        ]
    ),
    description="""
    Create a new custom role inside the organization.
    Every permission id must exist in the organization.
    Duplicate names are not allowed.
    The platform superadmin names the organization with `organization_code`.
    Log the role creation activity.
    """,
)
async def create_role(
    fParam: CreateForm = Depends(),
    organization_code: str | None = Query(default=None),
    bearer=Depends(bearer_organization),
    request_info=Depends(getters.requestInfo),
    registry=Depends(getters.registry),
):
    identity = validators.identity(bearer.credentials)
    session = registry.resolve(getters.organizationCode(identity, organization_code))
    try:
        validators.permission(identity, getters.grants(identity, session), ROLE, CREATE)

        role = RoleRegistry(session).createRole(
            fParam.name, fParam.description, fParam.permission_ids
        )
        data = roleData(role)
        logEvent(identity, request_info, data)
        return data
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_organization.patch(
    URL_ROLE,
    tags=["Role"],
    response_model=RoleSchema,
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.InvalidIdentifier,
            exceptions.DuplicateValue(Role.name),
            exceptions.UnknownValue(Role.permission_ids, "<id>"),
        ]
    ),
    description="""
    Updates an existing role.
    A given permission list replaces the current one, `clear_permissions` empties it.
    Log the role updating activity.
    """,
)
async def update_role(
    fParam: UpdateForm = Depends(),
    organization_code: str | None = Query(default=None),
    bearer=Depends(bearer_organization),
    request_info=Depends(getters.requestInfo),
    registry=Depends(getters.registry),
):
    identity = validators.identity(bearer.credentials)
    session = registry.resolve(getters.organizationCode(identity, organization_code))
    try:
        validators.permission(identity, getters.grants(identity, session), ROLE, UPDATE)

        permissionIds = [] if fParam.clear_permissions else fParam.permission_ids
        role = RoleRegistry(session).updateRole(
            fParam.id, fParam.name, fParam.description, permissionIds
        )
        data = roleData(role)
        logEvent(identity, request_info, data)
        return data
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_organization.delete(
    URL_ROLE,
    tags=["Role"],
    status_code=status.HTTP_204_NO_CONTENT,
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.InvalidIdentifier,
            exceptions.DataInUse(Role, ["<email>"]),
            exceptions.ProtectedResource(Role),
        ]
    ),
    description="""
    Delete a role.
    A role still assigned to users cannot be deleted, the users are listed in the error.
    Default roles can only be deleted by the platform superadmin.
    Log the role deletion activity.
    """,
)
async def delete_role(
    fParam: DeleteForm = Depends(),
    organization_code: str | None = Query(default=None),
    bearer=Depends(bearer_organization),
    request_info=Depends(getters.requestInfo),
    registry=Depends(getters.registry),
):
    identity = validators.identity(bearer.credentials)
    session = registry.resolve(getters.organizationCode(identity, organization_code))
    try:
        validators.permission(identity, getters.grants(identity, session), ROLE, DELETE)

        RoleRegistry(session).deleteRole(fParam.id, identity)
        logEvent(identity, request_info, {"id": str(fParam.id)})
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_organization.get(
    URL_ROLE,
    tags=["Role"],
    response_model=List[RoleSchema],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission, exceptions.InvalidIdentifier]
    ),
    description="""
    Fetch roles with their permissions expanded.
    The total number of roles is returned in the `X-Total-Count` header.
    """,
)
async def fetch_role(
    response: Response,
    qParam: QueryParams = Depends(),
    organization_code: str | None = Query(default=None),
    bearer=Depends(bearer_organization),
    registry=Depends(getters.registry),
):
    identity = validators.identity(bearer.credentials)
    session = registry.resolve(getters.organizationCode(identity, organization_code))
    try:
        validators.permission(identity, getters.grants(identity, session), ROLE, READ)

        roleRegistry = RoleRegistry(session)
        if qParam.id is not None:
            roles, total = [roleRegistry.getRole(qParam.id)], 1
        else:
            roles, total = roleRegistry.listRoles(qParam.offset, qParam.limit)
        response.headers["X-Total-Count"] = str(total)
        return [roleData(role) for role in roles]
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()

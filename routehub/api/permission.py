from datetime import datetime
from typing import List, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query, Response, status, Form
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field

from routehub.api.bearer import bearer_organization
from routehub.src.constants import REGEX_PERMISSION_CODE
from routehub.src.db import Permission
from routehub.src import exceptions, validators, getters
from routehub.src.loggers import logEvent
from routehub.src.functions import makeExceptionResponses
from routehub.src.permissions import CREATE, DELETE, PERMISSION, READ
from routehub.src.roles import RoleRegistry
from routehub.src.urls import URL_PERMISSION

route_organization = APIRouter()


## Output Schema
class PermissionSchema(BaseModel):
    id: UUID
    name: str
    code: str
    description: Optional[str]
    updated_at: Optional[datetime]
    created_at: datetime


## Input Forms
class CreateForm(BaseModel):
    name: str = Field(Form(max_length=128))
    code: str = Field(Form(max_length=64, pattern=REGEX_PERMISSION_CODE))
    description: str | None = Field(Form(max_length=512, default=None))


class DeleteForm(BaseModel):
    id: UUID = Field(Form())


## Query Parameters
class QueryParams(BaseModel):
    id: UUID | None = Field(Query(default=None))
    # Pagination
    offset: int = Field(Query(default=0, ge=0))
    limit: int = Field(Query(default=100, gt=0, le=500))


## API endpoints [Organization]
@route_organization.post(
    URL_PERMISSION,
    tags=["Permission"],
    response_model=PermissionSchema,
    status_code=status.HTTP_201_CREATED,
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.DuplicateValue(Permission.code),
        ]
    ),
    description="""
    Create a new permission inside the organization.
    The code follows `<resource>:<action>` or `<resource>:<action>:own`.
    Duplicate codes and names are not allowed.
    Log the permission creation activity.
    """,
)
async def create_permission(
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
            identity, getters.grants(identity, session), PERMISSION, CREATE
        )

        permission = RoleRegistry(session).createPermission(
            fParam.name, fParam.code, fParam.description
        )
        permissionData = jsonable_encoder(permission)
        logEvent(identity, request_info, permissionData)
        return permissionData
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_organization.delete(
    URL_PERMISSION,
    tags=["Permission"],
    status_code=status.HTTP_204_NO_CONTENT,
    responses=makeExceptionResponses(
        [
            exceptions.InvalidToken,
            exceptions.NoPermission,
            exceptions.InvalidIdentifier,
            exceptions.DataInUse(Permission, ["<role>"]),
        ]
    ),
    description="""
    Delete a permission.
    A permission referenced by any role cannot be deleted, the roles are listed in the error.
    Log the permission deletion activity.
    """,
)
async def delete_permission(
    fParam: DeleteForm = Depends(),
    organization_code: str | None = Query(default=None),
    bearer=Depends(bearer_organization),
    request_info=Depends(getters.requestInfo),
    registry=Depends(getters.registry),
):
    identity = validators.identity(bearer.credentials)
    session = registry.resolve(getters.organizationCode(identity, organization_code))
    try:
        validators.permission(
            identity, getters.grants(identity, session), PERMISSION, DELETE
        )

        RoleRegistry(session).deletePermission(fParam.id)
        logEvent(identity, request_info, {"id": str(fParam.id)})
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_organization.get(
    URL_PERMISSION,
    tags=["Permission"],
    response_model=List[PermissionSchema],
    responses=makeExceptionResponses(
        [exceptions.InvalidToken, exceptions.NoPermission, exceptions.InvalidIdentifier]
    ),
    description="""
    Fetch the permissions of the organization, ordered by code.
    The total number of permissions is returned in the `X-Total-Count` header.
    """,
)
async def fetch_permission(
    response: Response,
    qParam: QueryParams = Depends(),
    organization_code: str | None = Query(default=None),
    bearer=Depends(bearer_organization),
    registry=Depends(getters.registry),
):
    identity = validators.identity(bearer.credentials)
    session = registry.resolve(getters.organizationCode(identity, organization_code))
    try:
        validators.permission(identity, getters.grants(identity, session), PERMISSION, READ)

        roleRegistry = RoleRegistry(session)
        if qParam.id is not None:
            permissions, total = [roleRegistry.getPermission(qParam.id)], 1
        else:
            permissions, total = roleRegistry.listPermissions(qParam.offset, qParam.limit)
        response.headers["X-Total-Count"] = str(total)
        return permissions
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()

from datetime import datetime, time
from typing import List, Optional
from uuid import UUID
from fastapi import APIRouter, Depends, Query, status, Form
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field

from routehub.api.bearer import bearer_organization
from routehub.src.db import Route
from routehub.src import exceptions, validators, getters
from routehub.src.loggers import logEvent
from routehub.src.functions import makeExceptionResponses
from routehub.src.permissions import CREATE, READ, ROUTE
from routehub.src.urls import URL_ROUTE

route_organization = APIRouter()


## Output Schema
class RouteSchema(BaseModel):
    id: UUID
    name: str
    start_time: time
    end_time: time
    estimated_duration_minutes: Optional[int]
    total_distance_km: Optional[float]
    assigned_bus_id: Optional[UUID]
    is_active: bool
    updated_at: Optional[datetime]
    created_at: datetime


## Input Forms
class CreateForm(BaseModel):
    name: str = Field(Form(max_length=256))
    start_time: time = Field(Form())
    end_time: time = Field(Form())
    estimated_duration_minutes: int | None = Field(Form(gt=0, default=None))
    total_distance_km: float | None = Field(Form(gt=0, default=None))
    assigned_bus_id: UUID | None = Field(Form(default=None))
    route_polyline: str | None = Field(Form(default=None))


## Query Parameters
class QueryParams(BaseModel):
    id: UUID | None = Field(Query(default=None))
    name: str | None = Field(Query(default=None))
    # Pagination
    offset: int = Field(Query(default=0, ge=0))
    limit: int = Field(Query(default=20, gt=0, le=100))


## API endpoints [Organization]
@route_organization.post(
    URL_ROUTE,
    tags=["Route"],
    response_model=RouteSchema,
    status_code=status.HTTP_201_CREATED,
    responses=makeExceptionResponses([exceptions.InvalidToken, exceptions.NoPermission]),
    description="""
    Create a route of the organization.
    Log the route creation activity.
    """,
)
async def create_route(
    fParam: CreateForm = Depends(),
    organization_code: str | None = Query(default=None),
    bearer=Depends(bearer_organization),
    request_info=Depends(getters.requestInfo),
    registry=Depends(getters.registry),
):
    identity = validators.identity(bearer.credentials)
    session = registry.resolve(getters.organizationCode(identity, organization_code))
    try:
        validators.permission(identity, getters.grants(identity, session), ROUTE, CREATE)

        route = Route(
            name=fParam.name,
            start_time=fParam.start_time,
            end_time=fParam.end_time,
            estimated_duration_minutes=fParam.estimated_duration_minutes,
            total_distance_km=fParam.total_distance_km,
            assigned_bus_id=fParam.assigned_bus_id,
            route_polyline=fParam.route_polyline,
        )
        session.add(route)
        session.commit()
        session.refresh(route)

        routeData = jsonable_encoder(route)
        logEvent(identity, request_info, routeData)
        return routeData
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


@route_organization.get(
    URL_ROUTE,
    tags=["Route"],
    response_model=List[RouteSchema],
    responses=makeExceptionResponses([exceptions.InvalidToken, exceptions.NoPermission]),
    description="""
    Fetch the routes of the organization.
    """,
)
async def fetch_route(
    qParam: QueryParams = Depends(),
    organization_code: str | None = Query(default=None),
    bearer=Depends(bearer_organization),
    registry=Depends(getters.registry),
):
    identity = validators.identity(bearer.credentials)
    session = registry.resolve(getters.organizationCode(identity, organization_code))
    try:
        validators.permission(identity, getters.grants(identity, session), ROUTE, READ)

        query = session.query(Route)
        if qParam.id is not None:
            query = query.filter(Route.id == qParam.id)
        if qParam.name is not None:
            query = query.filter(Route.name.ilike(f"%{qParam.name}%"))
        query = query.order_by(Route.start_time)
        return query.offset(qParam.offset).limit(qParam.limit).all()
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()

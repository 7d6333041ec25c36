from typing import Optional
from uuid import UUID
from pydantic import BaseModel

from routehub.src.enums import UserRole


class RequestInfo(BaseModel):
    method: str
    path: str
    app_id: int


class HealthStatus(BaseModel):
    status: str
    version: str
    tenant_pools: int


class ErrorResponse(BaseModel):
    detail: str


class Identity(BaseModel):
    """Authenticated caller, as carried inside the bearer token."""

    id: UUID
    organization_id: Optional[UUID] = None
    role: UserRole
    role_id: Optional[UUID] = None
    email: Optional[str] = None

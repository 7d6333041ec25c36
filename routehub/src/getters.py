from typing import Dict, Optional, Tuple
from fastapi import Request
from sqlalchemy.orm.session import Session

from routehub.src import exceptions, schemas
from routehub.src.db import Organization, sessionMaker
from routehub.src.enums import Tier, UserRole
from routehub.src.permissions import grantsFor
from routehub.src.roles import RoleRegistry
from routehub.src.tenancy import TenantDatabaseRegistry


def requestInfo(request: Request) -> schemas.RequestInfo:
    """
    Extract metadata about the incoming request.

    Returns:
        schemas.RequestInfo: HTTP method, URL path and the id of the mounted app.
    """
    return schemas.RequestInfo(
        method=request.method,
        path=request.url.path,
        app_id=request.scope["app"].state.id,
    )


def registry(request: Request) -> TenantDatabaseRegistry:
    """The tenant database registry shared by the mounted app."""
    return request.scope["app"].state.registry


def organization(
    identity: schemas.Identity, organizationCode: Optional[str] = None
) -> Organization:
    """
    Find the active organization a request operates on.

    Organization users always operate on their own organization. The
    platform superadmin names the organization explicitly by its code.

    Raises:
        exceptions.MissingParameter: If a superadmin did not name an organization.
        exceptions.UnknownOrganization: If the organization is absent or inactive.
    """
    session = sessionMaker()
    try:
        query = session.query(Organization)
        if identity.role == UserRole.SUPERADMIN:
            if not organizationCode:
                raise exceptions.MissingParameter(Organization.code)
            query = query.filter(Organization.code == organizationCode)
        else:
            if identity.organization_id is None:
                raise exceptions.InvalidToken()
            query = query.filter(Organization.id == identity.organization_id)
        organization = query.first()
        if organization is None or not organization.is_active:
            raise exceptions.UnknownOrganization()
        return organization
    finally:
        session.close()


def organizationCode(
    identity: schemas.Identity, organizationCode: Optional[str] = None
) -> str:
    return organization(identity, organizationCode).code


def grants(identity: schemas.Identity, session: Session) -> Dict[Tuple[str, str], Tier]:
    """
    Effective grants of the caller inside a tenant: its fixed role matrix
    augmented by the permission codes of its custom role.
    """
    codes = RoleRegistry(session).resolvePermissionCodes(identity.role_id)
    return grantsFor(identity.role, codes)

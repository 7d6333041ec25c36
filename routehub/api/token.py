from datetime import datetime, timezone
from typing import Optional
from uuid import UUID
from fastapi import APIRouter, Depends, status, Form
from pydantic import BaseModel, Field

from routehub.src.constants import MAX_TOKEN_VALIDITY, REGEX_ORGANIZATION_CODE
from routehub.src.db import Organization, PlatformUser, User, sessionMaker
from routehub.src import argon2, exceptions, getters
from routehub.src.enums import UserRole
from routehub.src.jwt import makeToken
from routehub.src.loggers import logEvent
from routehub.src.functions import makeExceptionResponses
from routehub.src.schemas import Identity
from routehub.src.urls import URL_TOKEN

route_platform = APIRouter()
route_organization = APIRouter()


## Output Schema
class TokenSchema(BaseModel):
    access_token: str
    token_type: Optional[str] = "bearer"
    expires_in: int
    user_id: UUID
    organization_id: Optional[UUID]
    role: UserRole
    role_id: Optional[UUID]


## Input Forms
class PlatformForm(BaseModel):
    email: str = Field(Form(max_length=256))
    password: str = Field(Form(max_length=128))


class OrganizationForm(PlatformForm):
    organization_code: str = Field(
        Form(max_length=64, pattern=REGEX_ORGANIZATION_CODE)
    )


def issueToken(identity: Identity, request_info) -> dict:
    tokenData = {
        "access_token": makeToken(identity),
        "token_type": "bearer",
        "expires_in": MAX_TOKEN_VALIDITY,
        "user_id": identity.id,
        "organization_id": identity.organization_id,
        "role": identity.role,
        "role_id": identity.role_id,
    }
    logEvent(identity, request_info, {"action": "login"})
    return tokenData


## API endpoints [Platform]
@route_platform.post(
    URL_TOKEN,
    tags=["Token"],
    response_model=TokenSchema,
    status_code=status.HTTP_201_CREATED,
    responses=makeExceptionResponses(
        [exceptions.InactiveAccount, exceptions.InvalidCredentials]
    ),
    description="""
    Issues an access token for the platform superadmin after validating credentials.
    The token expires after MAX_TOKEN_VALIDITY seconds.
    Logs the authentication event for audit tracking.
    """,
)
async def create_platform_token(
    fParam: PlatformForm = Depends(),
    request_info=Depends(getters.requestInfo),
):
    try:
        session = sessionMaker()
        account = (
            session.query(PlatformUser)
            .filter(PlatformUser.email == fParam.email.lower())
            .first()
        )
        if account is None:
            raise exceptions.InvalidCredentials()
        if not argon2.checkPassword(fParam.password, account.password_hash):
            raise exceptions.InvalidCredentials()
        if not account.is_active:
            raise exceptions.InactiveAccount()

        account.last_login = datetime.now(timezone.utc)
        session.commit()

        identity = Identity(id=account.id, role=UserRole.SUPERADMIN, email=account.email)
        return issueToken(identity, request_info)
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()


## API endpoints [Organization]
@route_organization.post(
    URL_TOKEN,
    tags=["Token"],
    response_model=TokenSchema,
    status_code=status.HTTP_201_CREATED,
    responses=makeExceptionResponses(
        [
            exceptions.InactiveAccount,
            exceptions.InvalidCredentials,
            exceptions.UnknownOrganization,
        ]
    ),
    description="""
    Issues an access token for an organization user (admin, driver or parent).
    The user is looked up inside the database of the given organization.
    The token embeds the user id, organization id, role and custom role id.
    Logs the authentication event for audit tracking.
    """,
)
async def create_organization_token(
    fParam: OrganizationForm = Depends(),
    request_info=Depends(getters.requestInfo),
    registry=Depends(getters.registry),
):
    platformSession = sessionMaker()
    try:
        organization = (
            platformSession.query(Organization)
            .filter(Organization.code == fParam.organization_code)
            .first()
        )
    finally:
        platformSession.close()
    if organization is None or not organization.is_active:
        raise exceptions.UnknownOrganization()

    session = registry.resolve(organization.code)
    try:
        account = session.query(User).filter(User.email == fParam.email.lower()).first()
        if account is None:
            raise exceptions.InvalidCredentials()
        if not argon2.checkPassword(fParam.password, account.password_hash):
            raise exceptions.InvalidCredentials()
        if not account.is_active:
            raise exceptions.InactiveAccount()

        account.last_login = datetime.now(timezone.utc)
        session.commit()

        identity = Identity(
            id=account.id,
            organization_id=organization.id,
            role=account.role,
            role_id=account.role_id,
            email=account.email,
        )
        return issueToken(identity, request_info)
    except Exception as e:
        exceptions.handle(e)
    finally:
        session.close()

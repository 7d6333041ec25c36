"""
Validation and permission checks for RouteHub API.

This module centralizes guard logic such as:
- Access token validation
- Permission checks through the hierarchical resolver
- State transition enforcement

All functions raise appropriate exceptions from `routehub.src.exceptions`
when validation fails, ensuring consistent error handling.
"""

from typing import Any, Dict, Optional, Tuple
from jwt import InvalidTokenError
from pydantic import ValidationError
from sqlalchemy import Column

from routehub.src import exceptions
from routehub.src.constants import DEFAULT_SUPERADMIN_EMAIL
from routehub.src.enums import Tier
from routehub.src.functions import isValidTransition
from routehub.src.jwt import readToken
from routehub.src.permissions import (
    REASON_OWN_RECORDS_ONLY,
    Decision,
    Owner,
    authorize,
)
from routehub.src.schemas import Identity


# ---------------------------------------------------------------------------
# Token validation
# ---------------------------------------------------------------------------
def identity(accessToken: str) -> Identity:
    """
    Validate a bearer access token and return the identity it carries.

    Raises:
        exceptions.InvalidToken: If the token is expired, tampered or malformed.
    """
    try:
        payload = readToken(accessToken)
        return Identity(
            id=payload.get("sub"),
            organization_id=payload.get("organization_id"),
            role=payload.get("role"),
            role_id=payload.get("role_id"),
            email=payload.get("email"),
        )
    except (InvalidTokenError, ValidationError) as e:
        raise exceptions.InvalidToken() from e


# ---------------------------------------------------------------------------
# Permission checks
# ---------------------------------------------------------------------------
def permission(
    identity: Identity,
    grants: Dict[Tuple[str, str], Tier],
    resource: str,
    action: str,
    owner: Optional[Owner] = None,
) -> Decision:
    """
    Validate that the caller may perform `action` on `resource`.

    Args:
        identity (Identity): Authenticated caller.
        grants: Effective grants of the caller (see `getters.grants`).
        resource (str): Resource name, e.g. `trip`.
        action (str): Action name, e.g. `read`.
        owner (Optional[Owner]): Ownership facts of the target row.

    Returns:
        Decision: The allowing decision, its `tier` tells list endpoints
        whether they must restrict the result to own records.

    Raises:
        exceptions.OwnRecordsOnly: If the caller may only access own records
            and the target is not one of them.
        exceptions.NoPermission: If the caller holds no grant at all.
    """
    decision = authorize(identity.id, identity.role, resource, action, grants, owner)
    if decision.allowed:
        return decision
    if decision.reason == REASON_OWN_RECORDS_ONLY:
        raise exceptions.OwnRecordsOnly()
    raise exceptions.NoPermission()


# ---------------------------------------------------------------------------
# Other validations
# ---------------------------------------------------------------------------
def stateTransition(
    transitions: dict[Any, list[Any]], old_state: Any, new_state: Any, state: Column
) -> bool:
    """
    Validate whether a state transition is allowed.

    Raises:
        exceptions.InvalidStateTransition: If the transition is not permitted.
    """
    if not isValidTransition(transitions, old_state, new_state):
        raise exceptions.InvalidStateTransition(state)
    return True


def tenantEmail(email: str, column: Column) -> str:
    """
    Normalize the email of a new tenant account.

    Raises:
        exceptions.ReservedValue: If the email belongs to the platform superadmin.
    """
    email = email.strip().lower()
    if email == DEFAULT_SUPERADMIN_EMAIL.lower():
        raise exceptions.ReservedValue(column)
    return email

"""
Hierarchical permission resolution for RouteHub.

A permission code has the shape `<resource>:<action>` or
`<resource>:<action>:own`. The first grants the "all" tier on the
resource, the second grants only the "own" tier, which is further
narrowed by a per-role ownership rule.

Grants of a caller are the union of the built-in matrix of its fixed role
and the codes of its optional custom role. The custom role can only add
grants, never take one away.

`authorize()` is a pure function: callers fetch the custom role codes and
the ownership facts of the target row beforehand and pass them in.
"""

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, Optional, Tuple
from uuid import UUID

from routehub.src.enums import Tier, UserRole


# ---------------------------------------------------------------------------
# Resources and actions
# ---------------------------------------------------------------------------
ORGANIZATION = "organization"
USER = "user"
BUS = "bus"
STUDENT = "student"
ROUTE = "route"
STOP = "stop"
TRIP = "trip"
LOCATION = "location"
SUBSCRIPTION = "subscription"
ROLE = "role"
PERMISSION = "permission"

CREATE = "create"
READ = "read"
UPDATE = "update"
DELETE = "delete"

OWN_SUFFIX = "own"

TENANT_RESOURCES = (
    USER,
    BUS,
    STUDENT,
    ROUTE,
    STOP,
    TRIP,
    LOCATION,
    SUBSCRIPTION,
    ROLE,
    PERMISSION,
)
ACTIONS = (CREATE, READ, UPDATE, DELETE)

# Denial reasons, mapped to distinct client messages by the validators
REASON_NO_PERMISSION = "no_permission"
REASON_OWN_RECORDS_ONLY = "own_records_only"

_TIER_RANK = {Tier.NONE: 0, Tier.OWN: 1, Tier.ALL: 2}


def makeCode(resource: str, action: str, own: bool = False) -> str:
    code = f"{resource}:{action}"
    return f"{code}:{OWN_SUFFIX}" if own else code


def parseCode(code: str) -> Optional[Tuple[str, str, Tier]]:
    """
    Split a permission code into `(resource, action, tier)`.

    Returns None for codes that do not follow the permission grammar, such
    codes grant nothing.

    Example:
        >>> parseCode("trip:read:own")
        ('trip', 'read', <Tier.OWN: 'own'>)
    """
    parts = code.strip().lower().split(":")
    if len(parts) == 2 and all(parts):
        return parts[0], parts[1], Tier.ALL
    if len(parts) == 3 and all(parts) and parts[2] == OWN_SUFFIX:
        return parts[0], parts[1], Tier.OWN
    return None


# ---------------------------------------------------------------------------
# Built-in permission matrix
# ---------------------------------------------------------------------------
def _allOf(resources: Iterable[str]) -> FrozenSet[str]:
    return frozenset(makeCode(r, a) for r in resources for a in ACTIONS)


BUILTIN_MATRIX: Dict[UserRole, FrozenSet[str]] = {
    UserRole.SUPERADMIN: _allOf((ORGANIZATION,) + TENANT_RESOURCES),
    UserRole.ADMIN: _allOf(TENANT_RESOURCES),
    UserRole.DRIVER: frozenset(
        {
            makeCode(BUS, READ, own=True),
            makeCode(ROUTE, READ),
            makeCode(STOP, READ),
            makeCode(TRIP, CREATE),
            makeCode(TRIP, READ, own=True),
            makeCode(TRIP, UPDATE, own=True),
            makeCode(LOCATION, UPDATE, own=True),
            makeCode(LOCATION, READ, own=True),
            makeCode(STUDENT, READ, own=True),
        }
    ),
    UserRole.PARENT: frozenset(
        {
            makeCode(STUDENT, READ, own=True),
            makeCode(TRIP, READ, own=True),
            makeCode(LOCATION, READ, own=True),
            makeCode(BUS, READ),
            makeCode(ROUTE, READ),
            makeCode(STOP, READ),
            makeCode(SUBSCRIPTION, READ, own=True),
        }
    ),
}

# Resources on which the own tier can be satisfied, per role
OWNERSHIP_RULES: Dict[UserRole, FrozenSet[str]] = {
    UserRole.PARENT: frozenset({STUDENT, TRIP, LOCATION, SUBSCRIPTION}),
    UserRole.DRIVER: frozenset({TRIP, LOCATION, BUS, STUDENT}),
}


def permissionCatalogue() -> Dict[str, str]:
    """
    Built-in permission codes seeded into every tenant, mapped to a display name.

    The catalogue covers every tenant-scoped code used by the built-in
    matrix, so the seeded default roles can reference them by id.

    Example:
        >>> permissionCatalogue()["trip:read:own"]
        'Read Own Trip'
    """
    catalogue = {}
    for role in (UserRole.ADMIN, UserRole.DRIVER, UserRole.PARENT):
        for code in BUILTIN_MATRIX[role]:
            resource, action, tier = parseCode(code)
            scope = " Own" if tier == Tier.OWN else ""
            catalogue[code] = f"{action.title()}{scope} {resource.title()}"
    return dict(sorted(catalogue.items()))


# Seeded default roles: name -> (fixed role whose matrix it mirrors, description)
DEFAULT_ROLES: Dict[str, Tuple[UserRole, str]] = {
    "Organization Admin": (UserRole.ADMIN, "Full access inside the organization"),
    "Driver": (UserRole.DRIVER, "Runs trips on the assigned bus"),
    "Parent": (UserRole.PARENT, "Follows the trips of own students"),
}


# ---------------------------------------------------------------------------
# Decision
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Owner:
    """
    Ownership facts of a target row.

    Attributes:
        parent_ids: Parents owning the row (a student's parent, or the parents
            of every student riding the bus of a trip).
        driver_id: Driver owning the row (a trip's driver, a bus's driver).
    """

    parent_ids: FrozenSet[UUID] = field(default_factory=frozenset)
    driver_id: Optional[UUID] = None


@dataclass(frozen=True)
class Decision:
    allowed: bool
    tier: Tier
    reason: Optional[str] = None


def grantsFor(
    role: UserRole, customCodes: Iterable[str] = ()
) -> Dict[Tuple[str, str], Tier]:
    """
    Assemble the effective grants of a caller.

    Args:
        role (UserRole): Fixed role of the caller.
        customCodes (Iterable[str]): Permission codes of the caller's custom role, if any.

    Returns:
        Dict[Tuple[str, str], Tier]: Highest tier granted per `(resource, action)`.
    """
    grants: Dict[Tuple[str, str], Tier] = {}
    for code in list(BUILTIN_MATRIX.get(role, ())) + list(customCodes):
        parsed = parseCode(code)
        if parsed is None:
            continue
        resource, action, tier = parsed
        current = grants.get((resource, action), Tier.NONE)
        if _TIER_RANK[tier] > _TIER_RANK[current]:
            grants[(resource, action)] = tier
    return grants


def isOwner(userId: UUID, role: UserRole, owner: Owner) -> bool:
    if role == UserRole.PARENT:
        return userId in owner.parent_ids
    if role == UserRole.DRIVER:
        return owner.driver_id is not None and owner.driver_id == userId
    return False


def authorize(
    userId: UUID,
    role: UserRole,
    resource: str,
    action: str,
    grants: Dict[Tuple[str, str], Tier],
    owner: Optional[Owner] = None,
) -> Decision:
    """
    Decide whether a caller may perform `action` on `resource`.

    Tiers are checked from high to low:
        1. An "all" grant allows, regardless of ownership.
        2. An "own" grant allows only through the ownership rule of the role.
           Roles without a rule for the resource are denied.
           Without a target (`owner` is None) the decision is "own": the
           caller must restrict its query to own records.
        3. Otherwise deny.

    Args:
        userId (UUID): Id of the caller.
        role (UserRole): Fixed role of the caller.
        resource (str): Resource name, e.g. `trip`.
        action (str): Action name, e.g. `read`.
        grants (Dict[Tuple[str, str], Tier]): Output of `grantsFor()`.
        owner (Optional[Owner]): Ownership facts of the target row, if any.

    Returns:
        Decision: `allowed`, the `tier` it was allowed at and, on denial, a `reason`.
    """
    tier = grants.get((resource, action), Tier.NONE)
    if tier == Tier.ALL:
        return Decision(True, Tier.ALL)
    if tier == Tier.OWN:
        if resource not in OWNERSHIP_RULES.get(role, frozenset()):
            return Decision(False, Tier.NONE, REASON_OWN_RECORDS_ONLY)
        if owner is None or isOwner(userId, role, owner):
            return Decision(True, Tier.OWN)
        return Decision(False, Tier.NONE, REASON_OWN_RECORDS_ONLY)
    return Decision(False, Tier.NONE, REASON_NO_PERMISSION)

from uuid import uuid4

import pytest

from routehub.src import exceptions, validators
from routehub.src.enums import Tier, UserRole
from routehub.src.permissions import (
    BUS,
    CREATE,
    DELETE,
    LOCATION,
    ORGANIZATION,
    READ,
    REASON_NO_PERMISSION,
    REASON_OWN_RECORDS_ONLY,
    ROLE,
    TRIP,
    UPDATE,
    Owner,
    authorize,
    grantsFor,
    parseCode,
    permissionCatalogue,
)
from routehub.src.schemas import Identity


def test_parse_code():
    assert parseCode("trip:read") == ("trip", "read", Tier.ALL)
    assert parseCode("trip:read:own") == ("trip", "read", Tier.OWN)
    assert parseCode("trip") is None
    assert parseCode("trip:read:mine") is None


def test_parent_own_trip_tier():
    parentId = uuid4()
    grants = grantsFor(UserRole.PARENT)
    assert grants[(TRIP, READ)] == Tier.OWN

    stranger = Owner(parent_ids=frozenset({uuid4()}), driver_id=uuid4())
    decision = authorize(parentId, UserRole.PARENT, TRIP, READ, grants, stranger)
    assert not decision.allowed
    assert decision.reason == REASON_OWN_RECORDS_ONLY

    mine = Owner(parent_ids=frozenset({uuid4(), parentId}), driver_id=uuid4())
    decision = authorize(parentId, UserRole.PARENT, TRIP, READ, grants, mine)
    assert decision.allowed
    assert decision.tier == Tier.OWN


def test_all_tier_ignores_ownership():
    adminId = uuid4()
    grants = grantsFor(UserRole.ADMIN)
    stranger = Owner(parent_ids=frozenset({uuid4()}), driver_id=uuid4())
    decision = authorize(adminId, UserRole.ADMIN, TRIP, READ, grants, stranger)
    assert decision.allowed
    assert decision.tier == Tier.ALL


def test_driver_owns_trips_it_drives():
    driverId = uuid4()
    grants = grantsFor(UserRole.DRIVER)
    own = Owner(driver_id=driverId)
    other = Owner(driver_id=uuid4())
    assert authorize(driverId, UserRole.DRIVER, LOCATION, UPDATE, grants, own).allowed
    assert not authorize(driverId, UserRole.DRIVER, LOCATION, UPDATE, grants, other).allowed


def test_own_tier_without_target_restricts_listing():
    decision = authorize(uuid4(), UserRole.PARENT, TRIP, READ, grantsFor(UserRole.PARENT))
    assert decision.allowed
    assert decision.tier == Tier.OWN


def test_missing_grant_is_denied():
    decision = authorize(uuid4(), UserRole.PARENT, BUS, DELETE, grantsFor(UserRole.PARENT))
    assert not decision.allowed
    assert decision.reason == REASON_NO_PERMISSION


def test_own_tier_without_ownership_rule_is_denied():
    # Admins have no ownership rule, an own grant alone never allows them
    grants = grantsFor(UserRole.ADMIN, ["organization:read:own"])
    decision = authorize(uuid4(), UserRole.ADMIN, ORGANIZATION, READ, grants)
    assert not decision.allowed
    assert decision.reason == REASON_OWN_RECORDS_ONLY


def test_custom_role_only_adds_grants():
    grants = grantsFor(UserRole.PARENT, ["trip:read", "bus:update", "not a code"])
    assert grants[(TRIP, READ)] == Tier.ALL
    assert grants[(BUS, UPDATE)] == Tier.ALL

    # A lesser custom grant never lowers a built-in one
    grants = grantsFor(UserRole.ADMIN, ["trip:read:own"])
    assert grants[(TRIP, READ)] == Tier.ALL


def test_admin_cannot_manage_organizations():
    grants = grantsFor(UserRole.ADMIN)
    assert (ORGANIZATION, CREATE) not in grants
    assert grants[(ROLE, DELETE)] == Tier.ALL
    assert grantsFor(UserRole.SUPERADMIN)[(ORGANIZATION, CREATE)] == Tier.ALL


def test_catalogue_covers_builtin_matrix():
    catalogue = permissionCatalogue()
    assert catalogue["trip:read:own"] == "Read Own Trip"
    assert catalogue["bus:create"] == "Create Bus"
    assert not any(code.startswith("organization:") for code in catalogue)


def test_validator_maps_denials_to_messages():
    parent = Identity(id=uuid4(), organization_id=uuid4(), role=UserRole.PARENT)
    grants = grantsFor(UserRole.PARENT)

    with pytest.raises(exceptions.OwnRecordsOnly):
        validators.permission(parent, grants, TRIP, READ, Owner(driver_id=uuid4()))
    with pytest.raises(exceptions.NoPermission) as error:
        validators.permission(parent, grants, ROLE, CREATE)
    assert error.value.status_code == 403

    owner = Owner(parent_ids=frozenset({parent.id}))
    assert validators.permission(parent, grants, TRIP, READ, owner).tier == Tier.OWN

from uuid import uuid4

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import IntegrityError

from routehub import main
from routehub.api import organization, token
from routehub.src import argon2, getters
from routehub.src.constants import DEFAULT_SUPERADMIN_EMAIL
from routehub.src.db import Organization, PlatformUser
from routehub.src.enums import UserRole
from routehub.src.jwt import makeToken
from routehub.src.schemas import Identity
from routehub.src.urls import (
    URL_ASSIGNMENT_BUS,
    URL_ASSIGNMENT_ROUTE,
    URL_BUS,
    URL_ORGANIZATION,
    URL_ORGANIZATION_MIGRATE,
    URL_PERMISSION,
    URL_ROLE,
    URL_ROUTE,
    URL_STUDENT,
    URL_TOKEN,
    URL_TRIP,
    URL_TRIP_HISTORY,
    URL_TRIP_LOCATION,
    URL_USER,
)

PLATFORM = "/platform"
ORGANIZATION = "/organization"
CODE = "green-valley"


def bearer(accessToken: str) -> dict:
    return {"Authorization": f"Bearer {accessToken}"}


@pytest.fixture
def client(registry, platformSessionMaker, monkeypatch):
    for module in (getters, token, organization):
        monkeypatch.setattr(module, "sessionMaker", platformSessionMaker)
    main.attachRegistry(registry)

    session = platformSessionMaker()
    session.add(
        PlatformUser(
            email=DEFAULT_SUPERADMIN_EMAIL,
            name="Super Admin",
            password_hash=argon2.makePassword("password"),
            role=UserRole.SUPERADMIN.value,
        )
    )
    session.commit()
    session.close()
    return TestClient(main.app)


@pytest.fixture
def superadmin(client):
    response = client.post(
        PLATFORM + URL_TOKEN,
        data={"email": DEFAULT_SUPERADMIN_EMAIL, "password": "password"},
    )
    assert response.status_code == 201, response.text
    return bearer(response.json()["access_token"])


@pytest.fixture
def organizationId(client, superadmin):
    response = client.post(
        PLATFORM + URL_ORGANIZATION,
        headers=superadmin,
        data={
            "code": CODE,
            "name": "Green Valley School",
            "admin_email": "Admin@Green-Valley.test",
            "admin_name": "Admin",
            "admin_password": "password",
        },
    )
    assert response.status_code == 201, response.text
    return response.json()["id"]


def login(client, email: str) -> dict:
    response = client.post(
        ORGANIZATION + URL_TOKEN,
        data={"email": email, "password": "password", "organization_code": CODE},
    )
    assert response.status_code == 201, response.text
    return bearer(response.json()["access_token"])


@pytest.fixture
def admin(client, organizationId):
    return login(client, "admin@green-valley.test")


def createUser(client, admin, email: str, role: UserRole) -> str:
    response = client.post(
        ORGANIZATION + URL_USER,
        headers=admin,
        data={"email": email, "name": email, "password": "password", "role": role.value},
    )
    assert response.status_code == 201, response.text
    return response.json()["id"]


@pytest.fixture
def fleet(client, admin):
    ids = {
        "driver": createUser(client, admin, "driver@green-valley.test", UserRole.DRIVER),
        "alice": createUser(client, admin, "alice@green-valley.test", UserRole.PARENT),
        "bob": createUser(client, admin, "bob@green-valley.test", UserRole.PARENT),
    }
    response = client.post(
        ORGANIZATION + URL_ROUTE,
        headers=admin,
        data={"name": "Morning route", "start_time": "07:00", "end_time": "08:30"},
    )
    assert response.status_code == 201, response.text
    ids["route"] = response.json()["id"]

    response = client.post(
        ORGANIZATION + URL_BUS,
        headers=admin,
        data={"bus_number": "KL-01-0001", "capacity": 40, "driver_id": ids["driver"]},
    )
    assert response.status_code == 201, response.text
    ids["bus"] = response.json()["id"]

    response = client.post(
        ORGANIZATION + URL_STUDENT,
        headers=admin,
        data={
            "name": "Anu",
            "class_grade": "4",
            "section": "B",
            "parent_id": ids["alice"],
            "parent_contact": "+910000000001",
            "assigned_bus_id": ids["bus"],
        },
    )
    assert response.status_code == 201, response.text
    ids["student"] = response.json()["id"]
    return ids


# ----------------------------------- Platform ------------------------------------------------#
def test_health(client, organizationId, registry):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["tenant_pools"] == len(registry.stats())


def test_platform_token_rejects_bad_password(client):
    response = client.post(
        PLATFORM + URL_TOKEN,
        data={"email": DEFAULT_SUPERADMIN_EMAIL, "password": "wrong"},
    )
    assert response.status_code == 401
    assert response.headers["X-Error"] == "InvalidCredentials"


def test_create_organization_provisions_tenant(client, superadmin, organizationId, registry):
    assert registry.exists(CODE)

    response = client.get(PLATFORM + URL_ORGANIZATION, headers=superadmin)
    assert [org["code"] for org in response.json()] == [CODE]

    # Same database name, differently spelled code
    response = client.post(
        PLATFORM + URL_ORGANIZATION,
        headers=superadmin,
        data={"code": "Green_Valley", "name": "Copy"},
    )
    assert response.status_code == 409


def test_organization_name_collision_is_enforced_by_the_table(platformSessionMaker):
    session = platformSessionMaker()
    try:
        session.add(Organization(code="a-b", name="A", database="smartroutehub_a_b"))
        session.commit()
        session.add(Organization(code="a_b", name="B", database="smartroutehub_a_b"))
        with pytest.raises(IntegrityError):
            session.commit()
    finally:
        session.rollback()
        session.close()


def test_existing_database_rejects_new_organization(client, superadmin, registry):
    # A database left behind without an organization row
    registry.provision(uuid4(), "blue-hill")

    response = client.post(
        PLATFORM + URL_ORGANIZATION,
        headers=superadmin,
        data={"code": "blue-hill", "name": "Blue Hill School"},
    )
    assert response.status_code == 409
    assert response.headers["X-Error"] == "DuplicateValue"

    response = client.get(PLATFORM + URL_ORGANIZATION, headers=superadmin)
    assert response.json() == []


def test_partial_admin_creates_no_organization(client, superadmin, registry):
    response = client.post(
        PLATFORM + URL_ORGANIZATION,
        headers=superadmin,
        data={"code": "blue-hill", "name": "Blue Hill School", "admin_email": "a@blue-hill.test"},
    )
    assert response.status_code == 400
    assert response.headers["X-Error"] == "MissingParameter"

    response = client.get(PLATFORM + URL_ORGANIZATION, headers=superadmin)
    assert response.json() == []
    assert not registry.exists("blue-hill")


def test_platform_email_is_reserved(client, superadmin, admin, organizationId):
    response = client.post(
        ORGANIZATION + URL_USER,
        headers=admin,
        data={
            "email": DEFAULT_SUPERADMIN_EMAIL.upper(),
            "name": "Impostor",
            "password": "password",
            "role": UserRole.ADMIN.value,
        },
    )
    assert response.status_code == 409
    assert response.headers["X-Error"] == "ReservedValue"

    response = client.post(
        PLATFORM + URL_ORGANIZATION,
        headers=superadmin,
        data={
            "code": "blue-hill",
            "name": "Blue Hill School",
            "admin_email": DEFAULT_SUPERADMIN_EMAIL,
            "admin_name": "Impostor",
            "admin_password": "password",
        },
    )
    assert response.status_code == 409
    response = client.get(PLATFORM + URL_ORGANIZATION, headers=superadmin)
    assert [org["code"] for org in response.json()] == [CODE]


def test_migrate_organization(client, superadmin, organizationId):
    response = client.post(
        PLATFORM + URL_ORGANIZATION_MIGRATE, headers=superadmin, data={"id": organizationId}
    )
    assert response.status_code == 200, response.text


def test_organization_admin_cannot_use_platform(client, admin):
    response = client.get(PLATFORM + URL_ORGANIZATION, headers=admin)
    assert response.status_code == 403


def test_deactivated_organization_is_unreachable(client, superadmin, admin, organizationId, registry):
    client.get(ORGANIZATION + URL_BUS, headers=admin)
    assert registry.stats()

    response = client.patch(
        PLATFORM + URL_ORGANIZATION,
        headers=superadmin,
        data={"id": organizationId, "is_active": "false"},
    )
    assert response.status_code == 200, response.text
    assert registry.stats() == {}

    response = client.get(ORGANIZATION + URL_BUS, headers=admin)
    assert response.status_code == 404
    assert response.headers["X-Error"] == "UnknownOrganization"


def test_invalid_token(client):
    response = client.get(ORGANIZATION + URL_BUS, headers=bearer("not-a-token"))
    assert response.status_code == 401


# ----------------------------------- Roles ---------------------------------------------------#
def test_role_lifecycle(client, admin, superadmin):
    response = client.get(ORGANIZATION + URL_PERMISSION, headers=admin)
    assert response.status_code == 200
    busRead = next(p for p in response.json() if p["code"] == "bus:read")

    response = client.post(
        ORGANIZATION + URL_ROLE,
        headers=admin,
        data={"name": "Conductor", "permission_ids": [busRead["id"]]},
    )
    assert response.status_code == 201, response.text
    role = response.json()
    assert [p["code"] for p in role["permissions"]] == ["bus:read"]

    response = client.post(ORGANIZATION + URL_ROLE, headers=admin, data={"name": "Conductor"})
    assert response.status_code == 409

    response = client.post(
        ORGANIZATION + URL_ROLE,
        headers=admin,
        data={"name": "Ghost", "permission_ids": [str(uuid4())]},
    )
    assert response.status_code == 404
    assert response.headers["X-Error"] == "UnknownValue"

    # httpx only sends a body with DELETE through the generic request method
    response = client.request(
        "DELETE", ORGANIZATION + URL_PERMISSION, headers=admin, data={"id": busRead["id"]}
    )
    assert response.status_code == 409
    assert "Conductor" in response.json()["detail"]

    response = client.get(ORGANIZATION + URL_ROLE, headers=admin)
    assert response.headers["X-Total-Count"] == "4"
    parentRole = next(r for r in response.json() if r["name"] == "Parent")

    response = client.request(
        "DELETE", ORGANIZATION + URL_ROLE, headers=admin, data={"id": parentRole["id"]}
    )
    assert response.status_code == 403
    assert response.headers["X-Error"] == "ProtectedResource"

    response = client.request(
        "DELETE",
        ORGANIZATION + URL_ROLE,
        headers=superadmin,
        params={"organization_code": CODE},
        data={"id": parentRole["id"]},
    )
    assert response.status_code == 204


def test_superadmin_must_name_organization(client, superadmin, organizationId):
    response = client.get(ORGANIZATION + URL_ROLE, headers=superadmin)
    assert response.status_code == 400
    assert response.headers["X-Error"] == "MissingParameter"


# ----------------------------------- Tracking ------------------------------------------------#
def test_trip_tracking(client, admin, fleet):
    driver = login(client, "driver@green-valley.test")
    alice = login(client, "alice@green-valley.test")
    bob = login(client, "bob@green-valley.test")

    response = client.post(
        ORGANIZATION + URL_TRIP,
        headers=driver,
        data={"bus_id": fleet["bus"], "route_id": fleet["route"]},
    )
    assert response.status_code == 201, response.text
    trip = response.json()
    assert trip["status"] == "in_progress"
    assert trip["passenger_count"] == 1

    response = client.post(
        ORGANIZATION + URL_TRIP,
        headers=driver,
        data={"bus_id": fleet["bus"], "route_id": fleet["route"]},
    )
    assert response.status_code == 409
    assert response.headers["X-Error"] == "ActiveTripExists"

    for latitude in (12.95, 12.96, 12.97):
        response = client.post(
            ORGANIZATION + URL_TRIP_LOCATION,
            headers=driver,
            data={
                "trip_id": trip["id"],
                "latitude": latitude,
                "longitude": 77.59,
                "speed_kmh": 32,
            },
        )
        assert response.status_code == 200, response.text
    assert response.json()["current_latitude"] == pytest.approx(12.97)

    # Parents can only follow the bus of their own student
    response = client.get(
        ORGANIZATION + URL_TRIP_LOCATION,
        headers=alice,
        params={"trip_id": trip["id"], "limit": 2},
    )
    assert response.status_code == 200, response.text
    assert [row["latitude"] for row in response.json()] == [
        pytest.approx(12.97),
        pytest.approx(12.96),
    ]

    response = client.get(
        ORGANIZATION + URL_TRIP_LOCATION, headers=bob, params={"trip_id": trip["id"]}
    )
    assert response.status_code == 403
    assert response.headers["X-Error"] == "OwnRecordsOnly"

    response = client.get(ORGANIZATION + URL_TRIP, headers=bob)
    assert response.json() == []
    response = client.get(ORGANIZATION + URL_TRIP, headers=alice)
    assert [t["id"] for t in response.json()] == [trip["id"]]

    # Parents cannot write locations at all
    response = client.post(
        ORGANIZATION + URL_TRIP_LOCATION,
        headers=alice,
        data={"trip_id": trip["id"], "latitude": 1.0, "longitude": 1.0},
    )
    assert response.status_code == 403
    assert response.headers["X-Error"] == "NoPermission"

    response = client.request(
        "DELETE", ORGANIZATION + URL_TRIP, headers=admin, data={"id": trip["id"]}
    )
    assert response.status_code == 409

    response = client.patch(
        ORGANIZATION + URL_TRIP,
        headers=driver,
        data={"id": trip["id"], "status": "completed"},
    )
    assert response.status_code == 200, response.text
    assert response.json()["status"] == "completed"

    response = client.request(
        "DELETE", ORGANIZATION + URL_TRIP, headers=admin, data={"id": trip["id"]}
    )
    assert response.status_code == 204


def test_trip_detail_and_listing(client, admin, fleet):
    driver = login(client, "driver@green-valley.test")
    bob = login(client, "bob@green-valley.test")
    response = client.post(
        ORGANIZATION + URL_TRIP,
        headers=driver,
        data={"bus_id": fleet["bus"], "route_id": fleet["route"], "latitude": 9.9, "longitude": 76.2},
    )
    tripId = response.json()["id"]
    client.post(
        ORGANIZATION + URL_TRIP_LOCATION,
        headers=driver,
        data={"trip_id": tripId, "latitude": 10.0, "longitude": 76.3},
    )

    response = client.get(
        ORGANIZATION + URL_TRIP, headers=admin, params={"id": tripId, "history_limit": 1}
    )
    assert response.status_code == 200, response.text
    [detail] = response.json()
    assert [row["latitude"] for row in detail["location_history"]] == [pytest.approx(10.0)]

    response = client.get(ORGANIZATION + URL_TRIP, headers=bob, params={"id": tripId})
    assert response.status_code == 403

    client.patch(ORGANIZATION + URL_TRIP, headers=driver, data={"id": tripId, "status": "completed"})
    response = client.get(ORGANIZATION + URL_TRIP, headers=admin, params={"status": "completed"})
    assert [t["id"] for t in response.json()] == [tripId]
    response = client.get(ORGANIZATION + URL_TRIP, headers=admin, params={"status": "in_progress"})
    assert response.json() == []
    response = client.get(
        ORGANIZATION + URL_TRIP, headers=admin, params={"start_date": "2000-01-01", "end_date": "2000-01-31"}
    )
    assert response.json() == []

    # A driver filtering by someone else sees nothing
    response = client.get(ORGANIZATION + URL_TRIP, headers=driver, params={"driver_id": str(uuid4())})
    assert response.json() == []


def test_travel_history(client, admin, fleet):
    driver = login(client, "driver@green-valley.test")
    alice = login(client, "alice@green-valley.test")
    bob = login(client, "bob@green-valley.test")
    response = client.post(
        ORGANIZATION + URL_TRIP, headers=driver, data={"bus_id": fleet["bus"], "route_id": fleet["route"]}
    )
    tripId = response.json()["id"]
    client.patch(ORGANIZATION + URL_TRIP, headers=driver, data={"id": tripId, "status": "completed"})

    response = client.get(
        ORGANIZATION + URL_TRIP_HISTORY, headers=alice, params={"student_id": fleet["student"]}
    )
    assert response.status_code == 200, response.text
    [record] = response.json()
    assert record["trip_id"] == tripId
    assert record["bus_number"] == "KL-01-0001"
    assert record["route_name"] == "Morning route"

    response = client.get(
        ORGANIZATION + URL_TRIP_HISTORY, headers=bob, params={"student_id": fleet["student"]}
    )
    assert response.status_code == 403
    assert response.headers["X-Error"] == "OwnRecordsOnly"

    response = client.get(
        ORGANIZATION + URL_TRIP_HISTORY, headers=driver, params={"driver_id": fleet["driver"]}
    )
    assert [r["trip_id"] for r in response.json()] == [tripId]
    response = client.get(
        ORGANIZATION + URL_TRIP_HISTORY, headers=alice, params={"driver_id": fleet["driver"]}
    )
    assert response.status_code == 403

    response = client.get(ORGANIZATION + URL_TRIP_HISTORY, headers=admin, params={"bus_id": fleet["bus"]})
    assert [r["trip_id"] for r in response.json()] == [tripId]
    response = client.get(ORGANIZATION + URL_TRIP_HISTORY, headers=admin)
    assert response.status_code == 400


def test_student_assignment(client, admin, fleet):
    response = client.post(
        ORGANIZATION + URL_BUS, headers=admin, data={"bus_number": "KL-01-0002", "capacity": 1}
    )
    minibus = response.json()["id"]
    response = client.post(
        ORGANIZATION + URL_STUDENT,
        headers=admin,
        data={
            "name": "Appu",
            "class_grade": "2",
            "section": "A",
            "parent_id": fleet["bob"],
            "parent_contact": "+910000000002",
        },
    )
    appu = response.json()["id"]

    response = client.post(
        ORGANIZATION + URL_ASSIGNMENT_BUS,
        headers=admin,
        data={"student_ids": [fleet["student"], appu], "bus_id": minibus},
    )
    assert response.status_code == 409
    assert response.headers["X-Error"] == "CapacityExceeded"

    response = client.post(
        ORGANIZATION + URL_ASSIGNMENT_ROUTE,
        headers=admin,
        data={"student_ids": [appu], "route_id": fleet["route"], "bus_id": minibus},
    )
    assert response.status_code == 200, response.text
    [student] = response.json()
    assert student["assigned_bus_id"] == minibus
    assert student["assigned_route_id"] == fleet["route"]

    response = client.get(
        ORGANIZATION + URL_STUDENT, headers=admin, params={"assigned_route_id": fleet["route"]}
    )
    assert [s["id"] for s in response.json()] == [appu]

    driver = login(client, "driver@green-valley.test")
    response = client.post(
        ORGANIZATION + URL_ASSIGNMENT_BUS,
        headers=driver,
        data={"student_ids": [appu], "bus_id": fleet["bus"]},
    )
    assert response.status_code == 403


def test_driver_sees_only_own_buses(client, admin, fleet):
    client.post(ORGANIZATION + URL_BUS, headers=admin, data={"bus_number": "KL-01-0002", "capacity": 20})
    driver = login(client, "driver@green-valley.test")

    response = client.get(ORGANIZATION + URL_BUS, headers=driver)
    assert [bus["id"] for bus in response.json()] == [fleet["bus"]]
    response = client.get(ORGANIZATION + URL_BUS, headers=admin)
    assert len(response.json()) == 2


def test_custom_role_augments_grants(client, admin, fleet):
    response = client.get(ORGANIZATION + URL_PERMISSION, headers=admin)
    userRead = next(p for p in response.json() if p["code"] == "user:read")
    response = client.post(
        ORGANIZATION + URL_ROLE,
        headers=admin,
        data={"name": "Roster keeper", "permission_ids": [userRead["id"]]},
    )
    roleId = response.json()["id"]

    driver = login(client, "driver@green-valley.test")
    assert client.get(ORGANIZATION + URL_USER, headers=driver).status_code == 403

    response = client.patch(
        ORGANIZATION + URL_USER, headers=admin, data={"id": fleet["driver"], "role_id": roleId}
    )
    assert response.status_code == 200, response.text

    # The role id travels in the token, log in again
    driver = login(client, "driver@green-valley.test")
    assert client.get(ORGANIZATION + URL_USER, headers=driver).status_code == 200


def test_token_for_unknown_organization(client):
    response = client.post(
        ORGANIZATION + URL_TOKEN,
        data={"email": "x@y.test", "password": "password", "organization_code": "nowhere"},
    )
    assert response.status_code == 404


def test_forged_identity_has_no_tenant(client, organizationId):
    accessToken = makeToken(Identity(id=uuid4(), organization_id=uuid4(), role=UserRole.ADMIN))
    response = client.get(ORGANIZATION + URL_BUS, headers=bearer(accessToken))
    assert response.status_code == 404

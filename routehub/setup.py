import argparse
from http import HTTPStatus
from uuid import UUID
from requests import post

from routehub.src import argon2
from routehub.src.constants import (
    DEFAULT_SUPERADMIN_EMAIL,
    DEFAULT_SUPERADMIN_ID,
    DEFAULT_SUPERADMIN_PASSWORD,
)
from routehub.src.db import (
    Organization,
    PlatformUser,
    sessionMaker,
    engine,
    ORMbase,
)
from routehub.src.enums import UserRole
from routehub.src.tenancy import TenantDatabaseRegistry
from routehub.src.urls import (
    URL_BUS,
    URL_ORGANIZATION,
    URL_ROUTE,
    URL_STUDENT,
    URL_TOKEN,
    URL_USER,
)


# ----------------------------------- Project Setup -------------------------------------------#
def removeTables():
    ORMbase.metadata.drop_all(engine)
    print("* All platform tables deleted")


def createTables():
    ORMbase.metadata.create_all(engine)
    print("* All platform tables created")


def initDB():
    session = sessionMaker()
    try:
        superadmin = (
            session.query(PlatformUser)
            .filter(PlatformUser.email == DEFAULT_SUPERADMIN_EMAIL)
            .first()
        )
        if superadmin is not None:
            print("* Superadmin already exists")
            return
        session.add(
            PlatformUser(
                id=UUID(DEFAULT_SUPERADMIN_ID),
                email=DEFAULT_SUPERADMIN_EMAIL,
                name="Super Admin",
                password_hash=argon2.makePassword(DEFAULT_SUPERADMIN_PASSWORD),
                role=UserRole.SUPERADMIN.value,
            )
        )
        session.commit()
        print("* Superadmin created")
    finally:
        session.close()


def provisionTenant(code: str):
    session = sessionMaker()
    try:
        organization = (
            session.query(Organization).filter(Organization.code == code).first()
        )
    finally:
        session.close()
    if organization is None:
        print(f"* Unknown organization {code}")
        return
    registry = TenantDatabaseRegistry()
    try:
        if registry.provision(organization.id, organization.code):
            print(f"* Provisioned {registry.databaseName(code)}")
        else:
            print(f"* {registry.databaseName(code)} already exists")
    finally:
        registry.dispose()


def migrateTenant(code: str):
    registry = TenantDatabaseRegistry()
    try:
        registry.migrate(code)
        print(f"* Migrated {registry.databaseName(code)}")
    finally:
        registry.dispose()


# ----------------------------------- Test Data -----------------------------------------------#
def POST(URL: str, header: dict = None, status_code: int = HTTPStatus.CREATED, **kwargs):
    response = post(URL, headers=header or {}, **kwargs)
    assert response.status_code == status_code, response.text
    return response


def testDB():
    PLATFORM_URL = "http://127.0.0.1:8080/platform"
    ORGANIZATION_URL = "http://127.0.0.1:8080/organization"

    # Superadmin token
    credentials = {
        "email": DEFAULT_SUPERADMIN_EMAIL,
        "password": DEFAULT_SUPERADMIN_PASSWORD,
    }
    response = POST(PLATFORM_URL + URL_TOKEN, data=credentials)
    print("* Created token for superadmin")
    accessToken = {"Authorization": f"Bearer {response.json()['access_token']}"}

    # Organization and its first admin
    organizationData = {
        "code": "demo-school",
        "name": "Demo School",
        "contact_email": "office@demo-school.test",
        "admin_email": "admin@demo-school.test",
        "admin_name": "Demo admin",
        "admin_password": "password",
    }
    POST(PLATFORM_URL + URL_ORGANIZATION, header=accessToken, data=organizationData)
    print("* Created organization demo-school")

    # Organization admin token
    credentials = {
        "email": "admin@demo-school.test",
        "password": "password",
        "organization_code": "demo-school",
    }
    response = POST(ORGANIZATION_URL + URL_TOKEN, data=credentials)
    accessToken = {"Authorization": f"Bearer {response.json()['access_token']}"}

    # Accounts
    driver = POST(
        ORGANIZATION_URL + URL_USER,
        header=accessToken,
        data={
            "email": "driver@demo-school.test",
            "name": "Demo driver",
            "password": "password",
            "role": UserRole.DRIVER.value,
        },
    )
    parent = POST(
        ORGANIZATION_URL + URL_USER,
        header=accessToken,
        data={
            "email": "parent@demo-school.test",
            "name": "Demo parent",
            "password": "password",
            "role": UserRole.PARENT.value,
        },
    )
    print("* Created driver and parent accounts")

    # Fleet
    route = POST(
        ORGANIZATION_URL + URL_ROUTE,
        header=accessToken,
        data={"name": "Morning route", "start_time": "07:00", "end_time": "08:30"},
    )
    bus = POST(
        ORGANIZATION_URL + URL_BUS,
        header=accessToken,
        data={
            "bus_number": "KL-01-1234",
            "capacity": 40,
            "driver_id": driver.json()["id"],
            "assigned_route_id": route.json()["id"],
        },
    )
    POST(
        ORGANIZATION_URL + URL_STUDENT,
        header=accessToken,
        data={
            "name": "Demo student",
            "class_grade": "5",
            "section": "A",
            "parent_id": parent.json()["id"],
            "parent_contact": "+910000000000",
            "assigned_bus_id": bus.json()["id"],
            "assigned_route_id": route.json()["id"],
        },
    )
    print("* Created route, bus and student")


# Setup database
if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("-rm", action="store_true", help="remove platform tables")
    parser.add_argument("-cr", action="store_true", help="create platform tables")
    parser.add_argument("-init", action="store_true", help="seed the superadmin")
    parser.add_argument("-test", action="store_true", help="add test data via the API")
    parser.add_argument("-provision", metavar="CODE", help="provision a tenant database")
    parser.add_argument("-migrate", metavar="CODE", help="migrate a tenant database")
    args = parser.parse_args()

    if args.cr:
        createTables()
    if args.init:
        initDB()
    if args.provision:
        provisionTenant(args.provision)
    if args.migrate:
        migrateTenant(args.migrate)
    if args.test:
        testDB()
    if args.rm:
        removeTables()

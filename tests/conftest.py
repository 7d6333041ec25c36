"""
Shared fixtures: SQLite backed tenant registry, seeded tenant data and an
in-process replacement of the Redis mutex.
"""

import os

os.environ["OPENOBSERVE_ENABLED"] = "false"

import threading
from collections import defaultdict
from datetime import time
from pathlib import Path
from uuid import uuid4

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from routehub.src import argon2
from routehub.src.db import Bus, ORMbase, Route, Student, User
from routehub.src.enums import UserRole
from routehub.src.tenancy import TenantDatabaseRegistry
from routehub.src.tracking import TripLocationTracker


def sqliteEngine(url: str):
    engine = create_engine(
        url, connect_args={"check_same_thread": False, "timeout": 30}
    )

    @event.listens_for(engine, "connect")
    def onConnect(dbapiConnection, connectionRecord):
        # Let SQLAlchemy emit BEGIN itself
        dbapiConnection.isolation_level = None
        cursor = dbapiConnection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def onBegin(connection):
        # Take the write lock up front, concurrent writers then wait on the busy timeout
        connection.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


class LocalLocks:
    """In-process stand-in for the Redis mutex, same call signature."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = defaultdict(threading.Lock)
        self.names = []

    def acquire(self, resource, key=None):
        name = f"lock:{resource}" if key is None else f"lock:{resource}:{key}"
        with self._guard:
            lock = self._locks[name]
            self.names.append(name)
        lock.acquire()
        return lock

    def release(self, lock):
        if lock is not None and lock.locked():
            lock.release()


class SqliteRegistry(TenantDatabaseRegistry):
    """Tenant registry keeping every tenant database as a file in a directory."""

    def __init__(self, directory: Path, locks: LocalLocks, **kwargs):
        super().__init__(acquireLock=locks.acquire, releaseLock=locks.release, **kwargs)
        self.directory = directory

    def _file(self, database: str) -> Path:
        return self.directory / f"{database}.db"

    def urlFor(self, database: str) -> str:
        return f"sqlite:///{self._file(database)}"

    def _databaseExists(self, database: str) -> bool:
        return self._file(database).exists()

    def _createDatabase(self, database: str) -> bool:
        path = self._file(database)
        if path.exists():
            return False
        path.touch()
        return True

    def _createEngine(self, database: str):
        return sqliteEngine(self.urlFor(database))


# ----------------------------------- Registry ------------------------------------------------#
@pytest.fixture
def locks():
    return LocalLocks()


@pytest.fixture
def registry(tmp_path, locks):
    registry = SqliteRegistry(tmp_path, locks)
    yield registry
    registry.dispose()


@pytest.fixture
def tenant(registry):
    """Code of a freshly provisioned organization."""
    code = "green-valley"
    registry.provision(uuid4(), code)
    return code


@pytest.fixture
def session(registry, tenant):
    with registry.session(tenant) as session:
        yield session


# ----------------------------------- Tenant Data ---------------------------------------------#
def makeUser(session, email: str, role: UserRole, roleId=None) -> User:
    user = User(
        email=email,
        name=email.split("@")[0],
        password_hash=argon2.makePassword("password"),
        role=role.value,
        role_id=roleId,
    )
    session.add(user)
    session.commit()
    return user


@pytest.fixture
def fleet(session):
    """
    One admin, two drivers, two parents, a route and two buses.
    Parent `alice` has one student on `bus`, parent `bob` one on `otherBus`.
    """
    admin = makeUser(session, "admin@green-valley.test", UserRole.ADMIN)
    driver = makeUser(session, "driver@green-valley.test", UserRole.DRIVER)
    otherDriver = makeUser(session, "other.driver@green-valley.test", UserRole.DRIVER)
    alice = makeUser(session, "alice@green-valley.test", UserRole.PARENT)
    bob = makeUser(session, "bob@green-valley.test", UserRole.PARENT)

    route = Route(name="Morning route", start_time=time(7, 0), end_time=time(8, 30))
    session.add(route)
    session.flush()
    bus = Bus(bus_number="KL-01-0001", capacity=40, driver_id=driver.id)
    otherBus = Bus(bus_number="KL-01-0002", capacity=30, driver_id=otherDriver.id)
    session.add_all([bus, otherBus])
    session.flush()
    aliceStudent = Student(
        name="Anu",
        class_grade="4",
        section="B",
        parent_id=alice.id,
        parent_contact="+910000000001",
        assigned_bus_id=bus.id,
        assigned_route_id=route.id,
    )
    bobStudent = Student(
        name="Biju",
        class_grade="6",
        section="A",
        parent_id=bob.id,
        parent_contact="+910000000002",
        assigned_bus_id=otherBus.id,
        assigned_route_id=route.id,
    )
    session.add_all([aliceStudent, bobStudent])
    session.commit()

    return {
        "admin": admin,
        "driver": driver,
        "otherDriver": otherDriver,
        "alice": alice,
        "bob": bob,
        "route": route,
        "bus": bus,
        "otherBus": otherBus,
        "aliceStudent": aliceStudent,
        "bobStudent": bobStudent,
    }


@pytest.fixture
def trip(session, fleet, locks):
    """An in progress trip of `bus`, driven by `driver`."""
    tracker = TripLocationTracker(session, locks.acquire, locks.release)
    return tracker.startTrip(fleet["bus"].id, fleet["route"].id, fleet["driver"].id)


# ----------------------------------- Platform ------------------------------------------------#
@pytest.fixture
def platformSessionMaker(tmp_path):
    engine = sqliteEngine(f"sqlite:///{tmp_path / 'platform.db'}")
    ORMbase.metadata.create_all(engine)
    yield sessionmaker(bind=engine, expire_on_commit=False)
    engine.dispose()

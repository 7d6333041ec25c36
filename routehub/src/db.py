from uuid import uuid4
from sqlalchemy import (
    JSON,
    TEXT,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Time,
    Uuid,
    create_engine,
    func,
    text,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.dialects.postgresql import JSONB

from routehub.src.constants import (
    PSQL_DB_DRIVER,
    PSQL_DB_HOST,
    PSQL_DB_PASSWORD,
    PSQL_DB_NAME,
    PSQL_DB_PORT,
    PSQL_DB_USERNAME,
)
from routehub.src.enums import (
    RoleType,
    SubscriptionStatus,
    TripStatus,
    UserRole,
)


# Global DBMS variables (platform database)
dbURL = f"{PSQL_DB_DRIVER}://{PSQL_DB_USERNAME}:{PSQL_DB_PASSWORD}@{PSQL_DB_HOST}:{PSQL_DB_PORT}/{PSQL_DB_NAME}"
engine = create_engine(url=dbURL, echo=False, pool_pre_ping=True)
sessionMaker = sessionmaker(bind=engine, expire_on_commit=False)
ORMbase = declarative_base()

# Tables living inside every organization database
TenantBase = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONList = JSON().with_variant(JSONB(), "postgresql")


# ----------------------------------- Platform DB Models --------------------------------------#
class Organization(ORMbase):
    """
    Represents a customer organization owning an isolated tenant database.

    Columns:
        id (Uuid):
            Primary key. Unique identifier for the organization.

        code (String(64)):
            Unique short code of the organization.
            The tenant database name is derived from it, so it must never change
            once the organization is created.

        database (String(128)):
            Name of the tenant database derived from the code. Unique, two
            organizations can never share one database.

        name (String(128)):
            Display name of the organization.

        primary_color (String(16)):
            Branding color used by client applications.

        contact_email (TEXT), contact_phone (TEXT), address (TEXT):
            Optional contact details.

        is_active (Boolean):
            Inactive organizations cannot be resolved to a tenant database.

        updated_at (DateTime), created_at (DateTime):
            Metadata timestamps.
    """

    __tablename__ = "organizations"

    id = Column(Uuid, primary_key=True, default=uuid4)
    code = Column(String(64), nullable=False, unique=True)
    database = Column(String(128), nullable=False, unique=True)
    name = Column(String(128), nullable=False)
    primary_color = Column(String(16), nullable=False, default="#2196F3")
    contact_email = Column(TEXT)
    contact_phone = Column(TEXT)
    address = Column(TEXT)
    is_active = Column(Boolean, nullable=False, default=True)
    # Metadata
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())


class PlatformUser(ORMbase):
    """
    Platform level account table.

    The superadmin bootstrap record is the sole inhabitant of this table, every
    other user lives inside the database of its organization.
    """

    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid4)
    email = Column(String(256), nullable=False, unique=True)
    name = Column(String(128), nullable=False)
    password_hash = Column(TEXT, nullable=False)
    role = Column(String(16), nullable=False, default=UserRole.SUPERADMIN.value)
    is_active = Column(Boolean, nullable=False, default=True)
    last_login = Column(DateTime(timezone=True))
    # Metadata
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())


# ----------------------------------- Tenant DB Models ----------------------------------------#
class User(TenantBase):
    """
    Represents an organization user (admin, driver or parent).

    Columns:
        id (Uuid):
            Primary key. Unique identifier for the user.

        email (String(256)):
            Login email. Unique within the organization.

        phone (TEXT), name (String(128)):
            Contact details.

        password_hash (TEXT):
            Argon2 hash of the password. Plaintext is never stored.

        role (String(16)):
            Fixed role of the user, one of `UserRole` except superadmin.

        driver_id (String(64)):
            Optional external driver licence/identifier for driver accounts.

        role_id (Uuid):
            Optional custom role of the user, referencing `roles.id`.
            Set to null if the role is removed.

        is_active (Boolean):
            Inactive users cannot authenticate.

        last_login (DateTime):
            Timestamp of the last successful login.
    """

    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid4)
    email = Column(String(256), nullable=False, unique=True, index=True)
    phone = Column(TEXT)
    name = Column(String(128), nullable=False)
    password_hash = Column(TEXT, nullable=False)
    role = Column(String(16), nullable=False, index=True)
    driver_id = Column(String(64))
    role_id = Column(
        Uuid, ForeignKey("roles.id", ondelete="SET NULL"), nullable=True, index=True
    )
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    last_login = Column(DateTime(timezone=True))
    # Metadata
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())


class Bus(TenantBase):
    """
    Represents a bus of the organization fleet.

    Columns:
        bus_number (String(32)):
            Registration or fleet number. Unique within the organization.

        capacity (Integer):
            Seating capacity of the bus.

        driver_id (Uuid):
            The driver (user) currently assigned to the bus.

        assigned_route_id (Uuid):
            The route the bus usually runs.
    """

    __tablename__ = "buses"

    id = Column(Uuid, primary_key=True, default=uuid4)
    bus_number = Column(String(32), nullable=False, unique=True)
    capacity = Column(Integer, nullable=False)
    driver_id = Column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    assigned_route_id = Column(Uuid)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    metadata_ = Column("metadata", JSONList)
    # Metadata
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())


class Student(TenantBase):
    """
    Represents a student riding the organization buses.

    Columns:
        parent_id (Uuid):
            The parent (user) owning this student record.
            Cascades on delete.

        assigned_bus_id (Uuid):
            The bus the student rides. Set to null when the bus is removed.
    """

    __tablename__ = "students"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(128), nullable=False)
    class_grade = Column(String(16), nullable=False)
    section = Column(String(16), nullable=False)
    parent_id = Column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    parent_contact = Column(String(32), nullable=False)
    pickup_point_id = Column(Uuid)
    assigned_bus_id = Column(
        Uuid, ForeignKey("buses.id", ondelete="SET NULL"), nullable=True, index=True
    )
    assigned_route_id = Column(Uuid, index=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    # Metadata
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())


class Route(TenantBase):
    __tablename__ = "routes"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(256), nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    estimated_duration_minutes = Column(Integer)
    total_distance_km = Column(Numeric(10, 2, asdecimal=False))
    assigned_bus_id = Column(
        Uuid, ForeignKey("buses.id", ondelete="SET NULL"), nullable=True, index=True
    )
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    route_polyline = Column(TEXT)
    # Metadata
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())


class Stop(TenantBase):
    __tablename__ = "stops"
    __table_args__ = (Index("ix_stops_route_order", "route_id", "order"),)

    id = Column(Uuid, primary_key=True, default=uuid4)
    route_id = Column(
        Uuid, ForeignKey("routes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(128), nullable=False)
    latitude = Column(Numeric(10, 8, asdecimal=False), nullable=False)
    longitude = Column(Numeric(11, 8, asdecimal=False), nullable=False)
    order = Column(Integer, nullable=False)
    estimated_arrival_minutes = Column(Integer)
    address = Column(JSONList)
    # Metadata
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())


class Trip(TenantBase):
    """
    Represents a single bus run with live position tracking.

    The status follows `not_started -> in_progress -> {completed, cancelled}`.
    At most one trip per bus may be `in_progress`, enforced by a partial
    unique index.

    Columns:
        bus_id (Uuid), route_id (Uuid), driver_id (Uuid):
            The bus, route and driver (user) of the trip.
            Cascades on delete.

        status (String(16)):
            Current status of the trip. Mapped from the `TripStatus` enum.

        start_time (DateTime), end_time (DateTime):
            When the trip was started and completed/cancelled.

        current_latitude (Numeric), current_longitude (Numeric), speed_kmh (Numeric):
            Snapshot of the last accepted location sample.

        last_update_time (DateTime):
            Time of the last accepted location sample.

        passenger_count (Integer):
            Active students assigned to the bus when the trip started.
    """

    __tablename__ = "trips"
    __table_args__ = (
        Index(
            "uq_trips_active_bus",
            "bus_id",
            unique=True,
            postgresql_where=text(f"status = '{TripStatus.IN_PROGRESS.value}'"),
            sqlite_where=text(f"status = '{TripStatus.IN_PROGRESS.value}'"),
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid4)
    bus_id = Column(
        Uuid, ForeignKey("buses.id", ondelete="CASCADE"), nullable=False, index=True
    )
    route_id = Column(
        Uuid, ForeignKey("routes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    driver_id = Column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status = Column(
        String(16), nullable=False, default=TripStatus.NOT_STARTED.value, index=True
    )
    start_time = Column(DateTime(timezone=True))
    end_time = Column(DateTime(timezone=True))
    current_latitude = Column(Numeric(10, 8, asdecimal=False))
    current_longitude = Column(Numeric(11, 8, asdecimal=False))
    speed_kmh = Column(Numeric(5, 2, asdecimal=False))
    last_update_time = Column(DateTime(timezone=True))
    passenger_count = Column(Integer, nullable=False, default=0)
    # Metadata
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())


class LocationTracking(TenantBase):
    """
    One immutable GPS sample of a trip.

    Rows are only ever inserted, they are removed solely by the cascade
    of a trip deletion.
    """

    __tablename__ = "location_tracking"

    id = Column(Uuid, primary_key=True, default=uuid4)
    trip_id = Column(
        Uuid, ForeignKey("trips.id", ondelete="CASCADE"), nullable=False, index=True
    )
    latitude = Column(Numeric(10, 8, asdecimal=False), nullable=False)
    longitude = Column(Numeric(11, 8, asdecimal=False), nullable=False)
    speed_kmh = Column(Numeric(5, 2, asdecimal=False))
    heading = Column(Numeric(5, 2, asdecimal=False))
    accuracy = Column(Numeric(5, 2, asdecimal=False))
    recorded_at = Column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )


class Subscription(TenantBase):
    __tablename__ = "subscriptions"
    __table_args__ = (Index("ix_subscriptions_validity", "valid_from", "valid_until"),)

    id = Column(Uuid, primary_key=True, default=uuid4)
    student_id = Column(
        Uuid, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True
    )
    valid_from = Column(Date, nullable=False)
    valid_until = Column(Date, nullable=False)
    status = Column(
        String(16), nullable=False, default=SubscriptionStatus.ACTIVE.value, index=True
    )
    amount_paid = Column(Numeric(10, 2, asdecimal=False))
    payment_method = Column(String(32))
    notes = Column(TEXT)
    # Metadata
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())


class Permission(TenantBase):
    """
    Represents a permission defined inside an organization.

    Columns:
        name (String(128)):
            Human readable name, e.g. `View Buses`. Unique within the organization.

        code (String(64)):
            Machine code checked by the permission resolver, e.g. `bus:read`.
            Unique within the organization.

        description (TEXT):
            Optional description of the permission.
    """

    __tablename__ = "permissions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(128), nullable=False, unique=True)
    code = Column(String(64), nullable=False, unique=True, index=True)
    description = Column(TEXT)
    # Metadata
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())


class Role(TenantBase):
    """
    Represents a role defined inside an organization.

    Columns:
        name (String(128)):
            Name of the role. Unique within the organization.

        description (TEXT):
            Optional description of the role.

        permission_ids (JSONB):
            Ordered list of permission ids (as strings) granted by the role.
            Every id must exist in the `permissions` table of the same organization.

        type (String(16)):
            `default` for the seeded roles, `custom` for organization defined ones.

        allow_delete (Boolean):
            Whether an ordinary organization admin may delete the role.
    """

    __tablename__ = "roles"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(128), nullable=False, unique=True, index=True)
    description = Column(TEXT)
    permission_ids = Column(JSONList, nullable=False, default=list)
    type = Column(String(16), nullable=False, default=RoleType.CUSTOM.value)
    allow_delete = Column(Boolean, nullable=False, default=True)
    # Metadata
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())

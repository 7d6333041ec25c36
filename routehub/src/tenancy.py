"""
Tenant database routing and provisioning.

Every organization owns one physical PostgreSQL database whose name is a
pure function of the organization code. `TenantDatabaseRegistry` keeps one
bounded connection pool per tenant database, created on first use and
disposed on idle timeout, LRU pressure, or explicit eviction (organization
deactivation).

The registry is an explicit object stored in the application state, never
module level mutable state. The in-process mutex guarding the pool cache is
only held for dictionary bookkeeping, never across database I/O.
"""

import time
import threading
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field
from logging import getLogger
from typing import Callable, Dict, Iterator, List, Optional
from uuid import UUID

from psycopg2.errorcodes import DUPLICATE_DATABASE
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import ProgrammingError
from sqlalchemy.orm import Session, sessionmaker

from routehub.src import exceptions
from routehub.src.constants import (
    APP_DB_PREFIX,
    PSQL_ADMIN_DB_NAME,
    PSQL_DB_DRIVER,
    PSQL_DB_HOST,
    PSQL_DB_PASSWORD,
    PSQL_DB_PORT,
    PSQL_DB_USERNAME,
    TENANT_IDLE_TIMEOUT,
    TENANT_MAX_ENGINES,
    TENANT_MAX_OVERFLOW,
    TENANT_POOL_RECYCLE,
    TENANT_POOL_SIZE,
)
from routehub.src.db import Organization, TenantBase
from routehub.src.functions import normalizeCode
from routehub.src.roles import RoleRegistry

logger = getLogger("TenantRegistry")


@dataclass
class TenantPool:
    database: str
    engine: Engine
    sessionMaker: sessionmaker
    lastUsed: float = field(default_factory=time.monotonic)


class TenantDatabaseRegistry:
    """
    Cache of per-tenant connection pools plus the provisioning workflow.

    Args:
        prefix (str): Prefix of every tenant database name.
        poolSize (int): Persistent connections per tenant pool.
        maxOverflow (int): Extra connections a tenant pool may open under load.
        poolRecycle (int): Seconds after which a pooled connection is recycled.
        maxEngines (int): Maximum number of cached tenant pools (LRU evicted).
        idleTimeout (int): Seconds after which an unused tenant pool is disposed.
        acquireLock (Callable): Cluster wide mutex factory, `acquireLock(resource, key)`.
        releaseLock (Callable): Counterpart of `acquireLock`.

    Notes:
        - `urlFor`, `_databaseExists`, `_createDatabase` and `_createEngine`
          are the only methods touching the database server directly.
    """

    def __init__(
        self,
        prefix: str = APP_DB_PREFIX,
        poolSize: int = TENANT_POOL_SIZE,
        maxOverflow: int = TENANT_MAX_OVERFLOW,
        poolRecycle: int = TENANT_POOL_RECYCLE,
        maxEngines: int = TENANT_MAX_ENGINES,
        idleTimeout: int = TENANT_IDLE_TIMEOUT,
        acquireLock: Optional[Callable] = None,
        releaseLock: Optional[Callable] = None,
    ):
        if acquireLock is None or releaseLock is None:
            from routehub.src.redis import acquireLock, releaseLock

        self.prefix = prefix
        self.poolSize = poolSize
        self.maxOverflow = maxOverflow
        self.poolRecycle = poolRecycle
        self.maxEngines = maxEngines
        self.idleTimeout = idleTimeout
        self.acquireLock = acquireLock
        self.releaseLock = releaseLock
        self._pools: "OrderedDict[str, TenantPool]" = OrderedDict()
        self._mutex = threading.Lock()
        self._adminEngine: Optional[Engine] = None

    # ------------------------------------------------------------------ #
    # Naming
    # ------------------------------------------------------------------ #
    def databaseName(self, organizationCode: str) -> str:
        """
        Derive the tenant database name of an organization.

        Example:
            >>> registry.databaseName("Green-Valley")
            'smartroutehub_green_valley'
        """
        if organizationCode is None or not organizationCode.strip():
            raise exceptions.MissingParameter(Organization.code)
        return f"{self.prefix}_{normalizeCode(organizationCode.strip())}"

    def urlFor(self, database: str) -> str:
        return f"{PSQL_DB_DRIVER}://{PSQL_DB_USERNAME}:{PSQL_DB_PASSWORD}@{PSQL_DB_HOST}:{PSQL_DB_PORT}/{database}"

    # ------------------------------------------------------------------ #
    # Server level operations
    # ------------------------------------------------------------------ #
    def adminEngine(self) -> Engine:
        """Engine on the administrative database, used for catalog queries and DDL."""
        with self._mutex:
            if self._adminEngine is None:
                self._adminEngine = create_engine(
                    self.urlFor(PSQL_ADMIN_DB_NAME),
                    isolation_level="AUTOCOMMIT",
                    pool_size=1,
                    max_overflow=2,
                    pool_pre_ping=True,
                )
            return self._adminEngine

    def _databaseExists(self, database: str) -> bool:
        with self.adminEngine().connect() as connection:
            row = connection.execute(
                text("SELECT 1 FROM pg_database WHERE datname = :name"),
                {"name": database},
            ).first()
        return row is not None

    def _createDatabase(self, database: str) -> bool:
        """
        Create the tenant database.

        Returns False if the catalog already holds a database with this
        name, which happens when another node won the race.
        """
        with self.adminEngine().connect() as connection:
            quoted = connection.dialect.identifier_preparer.quote(database)
            try:
                connection.execute(text(f"CREATE DATABASE {quoted}"))
            except ProgrammingError as e:
                if getattr(e.orig, "pgcode", None) == DUPLICATE_DATABASE:
                    return False
                raise
        return True

    def _createEngine(self, database: str) -> Engine:
        return create_engine(
            self.urlFor(database),
            pool_size=self.poolSize,
            max_overflow=self.maxOverflow,
            pool_recycle=self.poolRecycle,
            pool_pre_ping=True,
        )

    # ------------------------------------------------------------------ #
    # Pool cache
    # ------------------------------------------------------------------ #
    def _pool(self, organizationCode: str) -> TenantPool:
        database = self.databaseName(organizationCode)
        now = time.monotonic()
        expired: List[TenantPool] = []
        with self._mutex:
            pool = self._pools.get(database)
            if pool is None:
                engine = self._createEngine(database)
                pool = TenantPool(
                    database=database,
                    engine=engine,
                    sessionMaker=sessionmaker(bind=engine, expire_on_commit=False),
                )
                self._pools[database] = pool
            pool.lastUsed = now
            self._pools.move_to_end(database)
            for name, other in list(self._pools.items()):
                if name != database and now - other.lastUsed > self.idleTimeout:
                    expired.append(self._pools.pop(name))
            while len(self._pools) > self.maxEngines:
                _, oldest = self._pools.popitem(last=False)
                expired.append(oldest)
        for stale in expired:
            logger.info("Disposing tenant pool %s", stale.database)
            stale.engine.dispose()
        return pool

    def engine(self, organizationCode: str) -> Engine:
        return self._pool(organizationCode).engine

    def resolve(self, organizationCode: str) -> Session:
        """
        Open a session on the tenant database of an organization.

        Repeated calls with the same code share one pool. The caller owns the
        session and must close it on every exit path, prefer `session()`.
        """
        return self._pool(organizationCode).sessionMaker()

    @contextmanager
    def session(self, organizationCode: str) -> Iterator[Session]:
        session = self.resolve(organizationCode)
        try:
            yield session
        finally:
            session.close()

    def evict(self, organizationCode: str) -> bool:
        """Dispose the cached pool of an organization, if any."""
        database = self.databaseName(organizationCode)
        with self._mutex:
            pool = self._pools.pop(database, None)
        if pool is None:
            return False
        logger.info("Evicted tenant pool %s", database)
        pool.engine.dispose()
        return True

    def dispose(self) -> None:
        with self._mutex:
            pools = list(self._pools.values())
            self._pools.clear()
            adminEngine, self._adminEngine = self._adminEngine, None
        for pool in pools:
            pool.engine.dispose()
        if adminEngine is not None:
            adminEngine.dispose()

    def stats(self) -> Dict[str, float]:
        """Cached tenant databases mapped to the seconds since their last use."""
        now = time.monotonic()
        with self._mutex:
            return {name: now - pool.lastUsed for name, pool in self._pools.items()}

    # ------------------------------------------------------------------ #
    # Provisioning
    # ------------------------------------------------------------------ #
    def exists(self, organizationCode: str) -> bool:
        return self._databaseExists(self.databaseName(organizationCode))

    def provision(self, organizationId: UUID, organizationCode: str) -> bool:
        """
        Create and migrate the tenant database of a new organization.

        The check-and-create sequence runs under a cluster wide lock keyed by
        the database name, and a duplicate database reported by the catalog
        is treated as already provisioned. Provisioning is therefore safe to
        retry and safe to run concurrently.

        Args:
            organizationId (UUID): Id of the organization, for logging.
            organizationCode (str): Code of the organization.

        Returns:
            bool: True if the database was created, False if it already existed.

        Raises:
            exceptions.ProvisioningFailed: If creating the database or applying
                the tenant schema failed. DDL is not rolled back, a failed
                provision is remediated with `migrate()`.
        """
        database = self.databaseName(organizationCode)
        lock = self.acquireLock("provision", database)
        try:
            if self._databaseExists(database):
                logger.info(
                    "Database %s of organization %s already exists, nothing to provision",
                    database,
                    organizationId,
                )
                return False
            if not self._createDatabase(database):
                logger.info("Database %s was created concurrently", database)
                return False
            logger.info("Created database %s for organization %s", database, organizationId)
            self._applySchema(organizationCode)
            logger.info("Provisioned tenant schema in %s", database)
            return True
        except exceptions.APIException:
            raise
        except Exception as e:
            logger.error("Provisioning of %s failed: %s", database, e)
            raise exceptions.ProvisioningFailed(database, str(e)) from e
        finally:
            self.releaseLock(lock)

    def migrate(self, organizationCode: str) -> None:
        """
        Re-apply the tenant schema and seed to an existing tenant database.

        Missing tables and missing seed rows are created, existing ones are
        left untouched.
        """
        database = self.databaseName(organizationCode)
        if not self._databaseExists(database):
            raise exceptions.UnknownOrganization()
        lock = self.acquireLock("provision", database)
        try:
            self._applySchema(organizationCode)
            logger.info("Migrated tenant schema in %s", database)
        except exceptions.APIException:
            raise
        except Exception as e:
            logger.error("Migration of %s failed: %s", database, e)
            raise exceptions.ProvisioningFailed(database, str(e)) from e
        finally:
            self.releaseLock(lock)

    def _applySchema(self, organizationCode: str) -> None:
        TenantBase.metadata.create_all(self.engine(organizationCode))
        with self.session(organizationCode) as session:
            RoleRegistry(session).seedDefaults()

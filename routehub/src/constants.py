"""
Application configuration and constants for RouteHub API Server.

This module centralizes environment-based configuration, tenant pool limits,
token settings, lock timings and other constants.

Configuration values can be overridden via environment variables.
"""

from os import environ


# ---------------------------------------------------------------------------
# Application metadata
# ---------------------------------------------------------------------------
API_TITLE = "RouteHub API Server"
API_VERSION = "1.0.0"


# ---------------------------------------------------------------------------
# PostgreSQL configuration
# ---------------------------------------------------------------------------
PSQL_DB_DRIVER = environ.get("PSQL_DB_DRIVER", "postgresql+psycopg2")
PSQL_DB_USERNAME = environ.get("PSQL_DB_USERNAME", "postgres")
PSQL_DB_PORT = environ.get("PSQL_DB_PORT", "5432")
PSQL_DB_PASSWORD = environ.get("PSQL_DB_PASSWORD", "password")
PSQL_DB_HOST = environ.get("PSQL_DB_HOST", "localhost")
PSQL_DB_NAME = environ.get("PSQL_DB_NAME", "smartroutehub")
# Database used for catalog queries and CREATE DATABASE
PSQL_ADMIN_DB_NAME = environ.get("PSQL_ADMIN_DB_NAME", "postgres")


# ---------------------------------------------------------------------------
# Tenant database configuration
# ---------------------------------------------------------------------------
APP_DB_PREFIX = environ.get("APP_DB_PREFIX", "smartroutehub")
TENANT_POOL_SIZE = int(environ.get("TENANT_POOL_SIZE", "5"))
TENANT_MAX_OVERFLOW = int(environ.get("TENANT_MAX_OVERFLOW", "5"))
TENANT_POOL_RECYCLE = int(environ.get("TENANT_POOL_RECYCLE", "1800"))  # seconds
TENANT_MAX_ENGINES = int(environ.get("TENANT_MAX_ENGINES", "64"))
TENANT_IDLE_TIMEOUT = int(environ.get("TENANT_IDLE_TIMEOUT", "900"))  # seconds


# ---------------------------------------------------------------------------
# Token configuration
# ---------------------------------------------------------------------------
JWT_SECRET = environ.get(
    "JWT_SECRET", "your-secret-key-change-in-production-min-32-chars"
)
JWT_ALGORITHM = environ.get("JWT_ALGORITHM", "HS256")
MAX_TOKEN_VALIDITY = 7 * 24 * 60 * 60  # Token validity (in seconds, 7 days)


# ---------------------------------------------------------------------------
# Platform superadmin
# ---------------------------------------------------------------------------
DEFAULT_SUPERADMIN_ID = "00000000-0000-0000-0000-000000000000"
DEFAULT_SUPERADMIN_EMAIL = environ.get(
    "DEFAULT_SUPERADMIN_EMAIL", "superadmin@smartroutehub.com"
)
DEFAULT_SUPERADMIN_PASSWORD = environ.get("DEFAULT_SUPERADMIN_PASSWORD", "password")


# ---------------------------------------------------------------------------
# OpenObserve configuration
# ---------------------------------------------------------------------------
OPENOBSERVE_ENABLED = environ.get("OPENOBSERVE_ENABLED", "true").lower() == "true"
OPENOBSERVE_PROTOCOL = environ.get("OPENOBSERVE_PROTOCOL", "http")
OPENOBSERVE_HOST = environ.get("OPENOBSERVE_HOST", "localhost")
OPENOBSERVE_PORT = environ.get("OPENOBSERVE_PORT", "5080")
OPENOBSERVE_USERNAME = environ.get("OPENOBSERVE_USERNAME", "admin@smartroutehub.com")
OPENOBSERVE_PASSWORD = environ.get("OPENOBSERVE_PASSWORD", "password")
OPENOBSERVE_ORG = environ.get("OPENOBSERVE_ORG", "smartroutehub")
OPENOBSERVE_STREAM = environ.get("OPENOBSERVE_STREAM", "routehub-core-server")


# ---------------------------------------------------------------------------
# Redis configuration
# ---------------------------------------------------------------------------
REDIS_HOST = environ.get("REDIS_HOST", "localhost")
REDIS_PORT = environ.get("REDIS_PORT", "6379")
REDIS_PASSWORD = environ.get("REDIS_PASSWORD", "password")


# ---------------------------------------------------------------------------
# Regex constants (input validation)
# ---------------------------------------------------------------------------
REGEX_ORGANIZATION_CODE = r"^[A-Za-z0-9][A-Za-z0-9_-]*$"
REGEX_PERMISSION_CODE = r"^[a-z][a-z0-9_]*(:[a-z][a-z0-9_]*){0,2}$"


# ---------------------------------------------------------------------------
# Redis mutex lock constants
# ---------------------------------------------------------------------------
MUTEX_LOCK_TIMEOUT = 60  # Lock timeout (in seconds)
MUTEX_LOCK_MAX_WAIT_TIME = 60  # Max blocking wait time (in seconds)


# ---------------------------------------------------------------------------
# Tracking constants
# ---------------------------------------------------------------------------
LOCATION_UPDATE_TIMEOUT = int(environ.get("LOCATION_UPDATE_TIMEOUT", "5000"))  # ms
LOCATION_HISTORY_LIMIT = 100  # Default number of history rows returned
MAX_LOCATION_HISTORY_LIMIT = 1000
TRANSACTION_RETRY_AFTER = 1  # Retry-After hint (in seconds)

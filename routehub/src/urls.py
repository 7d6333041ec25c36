"""
API Endpoint URL Constants

Paths are relative to the mounted application
(`/platform` or `/organization`).
"""

# -------------------------------
# Authentication & Tokens
# -------------------------------
URL_TOKEN = "/auth/token"

# -------------------------------
# Platform
# -------------------------------
URL_ORGANIZATION = "/organization"
URL_ORGANIZATION_MIGRATE = "/organization/migrate"

# -------------------------------
# Access control
# -------------------------------
URL_ROLE = "/role"
URL_PERMISSION = "/permission"
URL_USER = "/user"

# -------------------------------
# Fleet
# -------------------------------
URL_BUS = "/bus"
URL_ROUTE = "/route"
URL_STUDENT = "/student"
URL_TRIP = "/trip"
URL_TRIP_LOCATION = "/trip/location"
URL_TRIP_HISTORY = "/trip/history"

# -------------------------------
# Assignment
# -------------------------------
URL_ASSIGNMENT_ROUTE = "/assignment/route"
URL_ASSIGNMENT_BUS = "/assignment/bus"

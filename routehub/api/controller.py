from fastapi import FastAPI
from routehub.api import (
    token,
    organization,
    role,
    permission,
    user,
    bus,
    route,
    student,
    trip,
    assignment,
)
from routehub.src.enums import AppID


# ------------------------------------------------------
# Create separate FastAPI apps for each user domain
# ------------------------------------------------------
app_platform = FastAPI(title="Platform APP")
app_organization = FastAPI(title="Organization APP")

# Tag each app with its AppID
app_platform.state.id = AppID.PLATFORM
app_organization.state.id = AppID.ORGANIZATION


# ------------------------------------------------------
# Platform routers
# ------------------------------------------------------
app_platform.include_router(token.route_platform)
app_platform.include_router(organization.route_platform)


# ------------------------------------------------------
# Organization routers
# ------------------------------------------------------
app_organization.include_router(token.route_organization)
app_organization.include_router(role.route_organization)
app_organization.include_router(permission.route_organization)
app_organization.include_router(user.route_organization)
app_organization.include_router(bus.route_organization)
app_organization.include_router(route.route_organization)
app_organization.include_router(student.route_organization)
app_organization.include_router(trip.route_organization)
app_organization.include_router(assignment.route_organization)

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from routehub.src import schemas
from routehub.src.constants import API_TITLE, API_VERSION
from routehub.src.tenancy import TenantDatabaseRegistry
from routehub.api.controller import app_platform, app_organization


def attachRegistry(registry: TenantDatabaseRegistry) -> None:
    app.state.registry = registry
    app_platform.state.registry = registry
    app_organization.state.registry = registry


@asynccontextmanager
async def lifespan(app: FastAPI):
    registry = getattr(app.state, "registry", None) or TenantDatabaseRegistry()
    attachRegistry(registry)
    yield
    registry.dispose()


app = FastAPI(title=API_TITLE, version=API_VERSION, lifespan=lifespan)

origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount("/platform", app_platform, "Platform API")
app.mount("/organization", app_organization, "Organization API")


# Health check endpoint
@app.get("/health", tags=["Health Check"], response_model=schemas.HealthStatus)
async def health_check(request: Request):
    registry = getattr(request.app.state, "registry", None)
    pools = len(registry.stats()) if registry is not None else 0
    return {"status": "OK", "version": API_VERSION, "tenant_pools": pools}

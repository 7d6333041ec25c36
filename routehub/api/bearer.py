from fastapi.security import HTTPBearer

# HTTP Bearer authentication schemes of the mounted apps
bearer_platform = HTTPBearer(scheme_name="Platform HTTPBearer")
bearer_organization = HTTPBearer(scheme_name="Organization HTTPBearer")

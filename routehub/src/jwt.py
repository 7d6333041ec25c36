from datetime import datetime, timedelta, timezone

import jwt

from routehub.src.constants import JWT_ALGORITHM, JWT_SECRET, MAX_TOKEN_VALIDITY
from routehub.src.schemas import Identity


def makeToken(identity: Identity, validity: int = MAX_TOKEN_VALIDITY) -> str:
    """
    Sign an access token carrying the caller identity.

    Payload:
        sub: user id, organization_id, role, role_id, email, iat, exp
    """
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(identity.id),
        "organization_id": (
            str(identity.organization_id) if identity.organization_id else None
        ),
        "role": identity.role.value,
        "role_id": str(identity.role_id) if identity.role_id else None,
        "email": identity.email,
        "iat": now,
        "exp": now + timedelta(seconds=validity),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def readToken(accessToken: str) -> dict:
    """
    Decode and verify an access token.

    Raises:
        jwt.ExpiredSignatureError: If the token has expired.
        jwt.InvalidTokenError: If the token is malformed or its signature is wrong.
    """
    return jwt.decode(accessToken, JWT_SECRET, algorithms=[JWT_ALGORITHM])

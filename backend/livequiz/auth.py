"""Admin authentication.

The admin panel logs in with a plaintext credential compare and receives a
signed token. Protected routes only require that *a* bearer token is
present; the token is decoded for logging where possible but never trusted
for anything beyond that.
"""

import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import jwt as pyjwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import config
from .errors import Unauthorized

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def check_admin_credentials(username: str, password: str) -> bool:
    return hmac.compare_digest(username, config.ADMIN_USERNAME) and hmac.compare_digest(
        password, config.ADMIN_PASSWORD
    )


def create_admin_token(username: str) -> str:
    """Generate a JWT token for admin"""
    payload = {
        "sub": username,
        "role": "admin",
        "iat": datetime.now(timezone.utc),
        "exp": datetime.now(timezone.utc) + timedelta(hours=config.JWT_EXPIRATION_HOURS),
    }
    return pyjwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def token_subject(token: str) -> Optional[str]:
    try:
        payload = pyjwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except pyjwt.InvalidTokenError:
        return None
    return payload.get("sub")


async def require_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Dict:
    """FastAPI dependency for admin routes: a bearer token must be present."""
    if credentials is None or not credentials.credentials:
        raise Unauthorized("Unauthorized")
    return {"token": credentials.credentials, "sub": token_subject(credentials.credentials)}

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import JWT_ALGORITHM, JWT_SECRET
from .errors import Unauthorized

bearer_scheme = HTTPBearer(auto_error=False)


def decode_token(token: str) -> dict:
    """Verified claims of a bearer token; the subject is the acting party id."""
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise Unauthorized("Invalid or expired token")

    if not payload.get("sub"):
        raise Unauthorized("Token has no subject")
    return payload


def get_current_user(
    request: Request,
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
):
    if not creds or creds.scheme.lower() != "bearer" or not creds.credentials:
        raise Unauthorized("Missing Bearer token")

    payload = decode_token(creds.credentials)

    # read back by the request logging middleware
    request.state.user_sub = payload["sub"]
    request.state.user_roles = payload.get("roles")
    return payload

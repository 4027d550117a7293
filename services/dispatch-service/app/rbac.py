from .dispatch import Actor
from .errors import Forbidden

# most privileged first; an actor acts under the strongest role it was granted
ROLE_PRIORITY = ("admin", "vendor", "user")


def _roles(payload: dict) -> set[str]:
    token_roles = payload.get("roles")
    if not isinstance(token_roles, list) or not token_roles:
        raise Forbidden("Roles missing in token")
    return {str(r).lower() for r in token_roles}


def require_role(payload: dict, allowed_roles: list[str]) -> str:
    """Return the strongest of the token's roles that is allowed here."""
    granted = _roles(payload) & {r.lower() for r in allowed_roles}
    if not granted:
        raise Forbidden("Access forbidden for this role", allowed=sorted(allowed_roles))
    return next(r for r in ROLE_PRIORITY if r in granted)


def actor_for(payload: dict, allowed_roles: list[str]) -> Actor:
    return Actor(id=payload["sub"], kind=require_role(payload, allowed_roles))

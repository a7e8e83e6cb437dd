# backend/carshare/api/dependencies/auth.py
"""
Actor resolution for booking routes.

Authentication happens upstream (gateway or auth service); it forwards the
authenticated user id and the role the user is acting in on this request.
"""

from fastapi import Header

from ...core.enums import ActorRole
from ...core.exceptions import ForbiddenException, ValidationException
from ...principal import Actor

ACTOR_ID_HEADER = "X-Actor-Id"
ACTOR_ROLE_HEADER = "X-Actor-Role"


def get_current_actor(
    actor_id: str = Header(..., alias=ACTOR_ID_HEADER),
    actor_role: str = Header(..., alias=ACTOR_ROLE_HEADER),
) -> Actor:
    actor_id = actor_id.strip()
    if not actor_id:
        raise ValidationException(f"{ACTOR_ID_HEADER} header is empty", code="ACTOR_REQUIRED")
    try:
        role = ActorRole(actor_role.strip().lower())
    except ValueError:
        raise ValidationException(
            f"Unknown actor role: {actor_role}", code="INVALID_ACTOR_ROLE"
        ) from None
    if role == ActorRole.SYSTEM:
        raise ForbiddenException("System actors cannot call the API", code="SYSTEM_ACTOR_FORBIDDEN")
    return Actor(actor_id=actor_id, role=role)

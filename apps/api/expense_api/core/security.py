"""Identity of the signed-in user as asserted by the upstream auth proxy."""
from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, Request, status

from .config import settings


@dataclass(slots=True)
class AuthenticatedUser:
    user_id: str
    email: str


async def get_current_user(request: Request) -> AuthenticatedUser:
    """FastAPI dependency returning the caller's verified identity.

    The email doubles as the user id, matching how expense reports are keyed.
    """

    email = (request.headers.get(settings.auth_email_header) or "").strip()
    if not email:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized: Please log in first",
        )
    return AuthenticatedUser(user_id=email, email=email)

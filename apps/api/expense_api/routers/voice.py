"""Voice token endpoints for the web app and the voice bot."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from ..core.security import AuthenticatedUser, get_current_user
from ..db.storage import get_token_service
from ..schemas import voice as schemas
from ..services.voice_tokens import InvalidTokenError, ServiceUnavailableError, TokenService

logger = logging.getLogger(__name__)

router = APIRouter()

_ERROR_RESPONSES = {
    status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": schemas.ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": schemas.ErrorResponse},
}


def _failure(exc: Exception, message: str) -> JSONResponse:
    """Log the detail and return a generic failure body."""

    if isinstance(exc, ServiceUnavailableError):
        logger.error("%s: %s", message, exc)
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        logger.exception("%s: %s", message, exc)
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    body = schemas.ErrorResponse(error=message)
    return JSONResponse(status_code=status_code, content=body.model_dump())


@router.post("/token", response_model=schemas.VoiceTokenIssueResponse, responses=_ERROR_RESPONSES)
async def issue_voice_token(
    user: AuthenticatedUser = Depends(get_current_user),
    service: TokenService = Depends(get_token_service),
):
    """Generate a new voice token, replacing the caller's previous one."""

    try:
        issued = await service.generate_voice_token(user.user_id, user.email)
    except Exception as exc:  # noqa: BLE001 - callers only see a generic message
        return _failure(exc, "Failed to generate token")

    return schemas.VoiceTokenIssueResponse(
        token=issued.token.upper(),
        expires_at=issued.expires_at,
        valid_for_minutes=issued.valid_for_minutes,
        message=f"Token valid for {issued.valid_for_minutes} minutes",
    )


@router.get("/token", response_model=schemas.VoiceTokenStatusResponse, responses=_ERROR_RESPONSES)
async def get_voice_token(
    user: AuthenticatedUser = Depends(get_current_user),
    service: TokenService = Depends(get_token_service),
):
    """Return the caller's active token, if any."""

    try:
        active = await service.get_active_token_for_user(user.user_id)
    except Exception as exc:  # noqa: BLE001
        return _failure(exc, "Failed to get token status")

    if active is None:
        return schemas.VoiceTokenStatusResponse(has_active_token=False)

    return schemas.VoiceTokenStatusResponse(
        has_active_token=True,
        token=active.token.upper(),
        expires_at=active.expires_at,
        remaining_seconds=active.remaining_seconds,
    )


@router.delete("/token", response_model=schemas.VoiceTokenRevokeResponse, responses=_ERROR_RESPONSES)
async def revoke_voice_token(
    user: AuthenticatedUser = Depends(get_current_user),
    service: TokenService = Depends(get_token_service),
):
    """Invalidate the caller's active token."""

    try:
        was_invalidated = await service.invalidate_user_token(user.user_id)
    except Exception as exc:  # noqa: BLE001
        return _failure(exc, "Failed to invalidate token")

    message = "Token invalidated" if was_invalidated else "No active token to invalidate"
    return schemas.VoiceTokenRevokeResponse(was_invalidated=was_invalidated, message=message)


@router.post(
    "/token/validate",
    response_model=schemas.VoiceTokenValidateResponse,
    response_model_exclude_none=True,
    responses=_ERROR_RESPONSES,
)
async def validate_voice_token(
    payload: schemas.VoiceTokenValidateRequest,
    service: TokenService = Depends(get_token_service),
):
    """Resolve a spoken token for the voice bot.

    Unknown and expired tokens answer the same way.
    """

    try:
        identity = await service.validate_voice_token(payload.token)
    except InvalidTokenError:
        return schemas.VoiceTokenValidateResponse(valid=False)
    except Exception as exc:  # noqa: BLE001
        return _failure(exc, "Failed to validate token")

    return schemas.VoiceTokenValidateResponse(
        valid=True,
        user_id=identity.user_id,
        user_email=identity.user_email,
    )

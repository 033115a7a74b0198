"""Data contracts for voice token endpoints."""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class VoiceTokenIssueResponse(_CamelModel):
    success: bool = True
    token: str = Field(..., description="Voice token, uppercased for display")
    expires_at: datetime = Field(..., alias="expiresAt")
    valid_for_minutes: int = Field(..., ge=1, alias="validForMinutes")
    message: str


class VoiceTokenStatusResponse(_CamelModel):
    success: bool = True
    has_active_token: bool = Field(..., alias="hasActiveToken")
    token: str | None = None
    expires_at: datetime | None = Field(default=None, alias="expiresAt")
    remaining_seconds: int | None = Field(default=None, ge=0, alias="remainingSeconds")


class VoiceTokenRevokeResponse(_CamelModel):
    success: bool = True
    was_invalidated: bool = Field(..., alias="wasInvalidated")
    message: str


class VoiceTokenValidateRequest(_CamelModel):
    token: str = Field(..., max_length=64, description="Token as heard by the voice bot")


class VoiceTokenValidateResponse(_CamelModel):
    valid: bool
    user_id: str | None = Field(default=None, alias="userId")
    user_email: str | None = Field(default=None, alias="userEmail")


class ErrorResponse(BaseModel):
    success: bool = False
    error: str

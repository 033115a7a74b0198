"""Blob store and token service wiring."""
from __future__ import annotations

from functools import lru_cache

from ..core.config import settings
from ..services.blob_store import BlobStore, build_blob_store
from ..services.voice_tokens import TokenService


@lru_cache
def get_blob_store() -> BlobStore:
    """Return the process-wide blob store selected by settings."""

    return build_blob_store(settings)


@lru_cache
def get_token_service() -> TokenService:
    """FastAPI dependency to provide the voice token service."""

    return TokenService(get_blob_store())

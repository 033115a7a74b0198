"""FastAPI application for the expense voice API."""
from __future__ import annotations

import logging

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, Response

from .core.config import settings
from .db.storage import get_token_service
from .routers import voice
from .services.voice_tokens import TokenService

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Expense Voice API", version="0.1.0")

if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(voice.router, prefix="/api/voice", tags=["voice"])


@app.get("/api/health", tags=["meta"])
async def health(service: TokenService = Depends(get_token_service)) -> dict[str, str]:
    """Liveness probe that also reports whether the token store is reachable."""

    ready = service.is_available or await service.initialize()
    return {"status": "ok", "voiceTokens": "ready" if ready else "unavailable"}


@app.head("/api/health", tags=["meta"])
async def health_head() -> Response:
    """Allow HEAD for uptime monitors that only need the status code."""

    return Response(status_code=200)


@app.get("/robots.txt", response_class=PlainTextResponse, include_in_schema=False)
async def robots() -> PlainTextResponse:
    """Serve a minimal robots.txt to avoid 404 noise."""

    return PlainTextResponse("User-agent: *\nDisallow: /api/")

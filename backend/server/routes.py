"""
Route registration for the capture service status surface.

Responsibilities:
- Define HTTP endpoints (health, status, auth challenge)
- Pull the CaptureService from app.state
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from service.capture_service import CaptureService


def _service(request: Request) -> CaptureService:
    service: CaptureService | None = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="service not started")
    return service


def register_routes(app: FastAPI) -> None:
    """Register all routes on the FastAPI app."""

    @app.get("/health")
    async def health(request: Request) -> JSONResponse:  # pyright: ignore[reportUnusedFunction]
        service = _service(request)
        snapshot = service.status.snapshot()
        return JSONResponse(
            status_code=200 if snapshot.healthy else 503,
            content={
                "healthy": snapshot.healthy,
                "state": snapshot.state,
                "last_event_at_ms": snapshot.last_event_at_ms,
                "timestamp_ms": snapshot.timestamp_ms,
            },
        )

    @app.get("/status")
    async def status(request: Request) -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
        return _service(request).status.snapshot().to_dict()

    @app.get("/auth-challenge")
    async def auth_challenge(request: Request) -> dict[str, Any]:  # pyright: ignore[reportUnusedFunction]
        challenge = _service(request).runtime.pending_challenge
        if challenge is None:
            raise HTTPException(
                status_code=404,
                detail="no authentication challenge outstanding",
            )
        return {
            "payload": challenge.payload,
            "issued_at_ms": challenge.issued_at_ms,
            "expires_at_ms": challenge.expires_at_ms,
        }

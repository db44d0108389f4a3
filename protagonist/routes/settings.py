"""Health check and settings endpoints."""

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from protagonist import config
from protagonist.llm import HttpProvider

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings(request: Request):
    """Get engine settings (backend connection, models, fallback tables, styles)."""
    return request.app.state.engine.settings.model_dump(exclude={"api_key"})


@router.patch("/settings")
async def update_settings(request: Request, body: dict):
    """Update engine settings (partial merge). Takes effect on the next operation."""
    engine = request.app.state.engine
    previous = engine.settings
    try:
        updated = config.save_settings(request.app.state.data_dir, body)
    except ValidationError as e:
        raise HTTPException(400, f"Invalid settings: {e}") from e
    engine.settings = updated
    connection = ("provider_url", "api_key", "request_timeout")
    if any(getattr(updated, k) != getattr(previous, k) for k in connection):
        engine.provider = HttpProvider.from_settings(updated)
    return updated.model_dump(exclude={"api_key"})

"""Checkpoint and gallery endpoints."""

from fastapi import APIRouter, HTTPException, Request

from protagonist.pipeline import SessionEngine

from .errors import engine_errors
from .models import ImportBody
from .session import session_view

router = APIRouter()


def _engine(request: Request) -> SessionEngine:
    return request.app.state.engine


@router.get("/saves")
async def list_saves(request: Request):
    """List checkpoints, newest first."""
    coordinator = _engine(request).coordinator
    return {
        "saves": [s.model_dump(mode="json") for s in coordinator.saves],
        "can_undo": coordinator.can_undo,
    }


@router.post("/saves/manual")
async def manual_save(request: Request):
    """Checkpoint the live session. created=false when it is already saved."""
    engine = _engine(request)
    with engine_errors():
        result = engine.manual_save()
    return {"created": result.created, "save": result.save.model_dump(mode="json")}


@router.post("/saves/setup")
async def save_setup(request: Request):
    """Checkpoint the current pre-game setup."""
    save = _engine(request).save_setup()
    return save.model_dump(mode="json")


@router.post("/saves/{save_id}/load")
async def load_save(request: Request, save_id: str, setup: bool = False):
    """Restore a checkpoint as the live session (setup=true reopens it for editing)."""
    engine = _engine(request)
    with engine_errors():
        context = engine.load_game(save_id, force_setup=setup)
    if context is None:
        raise HTTPException(404, "Save not found")
    return session_view(engine)


@router.delete("/saves/sessions/{session_id}")
async def delete_session(request: Request, session_id: str):
    """Delete every checkpoint of a session."""
    removed = _engine(request).coordinator.delete_session(session_id)
    if not removed:
        raise HTTPException(404, "Session not found")
    return {"deleted": len(removed)}


@router.delete("/saves/{save_id}")
async def delete_save(request: Request, save_id: str):
    """Delete one checkpoint."""
    if _engine(request).coordinator.delete(save_id) is None:
        raise HTTPException(404, "Save not found")
    return {"deleted": 1}


@router.post("/saves/undo")
async def undo_delete(request: Request):
    """Restore the most recently deleted checkpoint(s)."""
    restored = _engine(request).coordinator.undo_delete()
    return {"restored": len(restored)}


@router.post("/saves/import")
async def import_saves(request: Request, body: ImportBody):
    """Import checkpoints, skipping ids that already exist."""
    return {"imported": _engine(request).coordinator.import_saves(body.saves)}


@router.get("/gallery")
async def list_gallery(request: Request):
    """List gallery images, newest first."""
    return [g.model_dump(mode="json") for g in _engine(request).coordinator.gallery]


@router.delete("/gallery/{item_id}")
async def delete_gallery_item(request: Request, item_id: str):
    """Delete a gallery image."""
    if not _engine(request).coordinator.delete_gallery_item(item_id):
        raise HTTPException(404, "Gallery item not found")
    return {"ok": True}

"""FastAPI API endpoints under /api.

Endpoint groups: settings (health, settings), session (setup, opening,
turns, regeneration, versions, abort, planning, edits, events, skills)
and saves (checkpoints, delete/undo, import, gallery). The SessionEngine
lives on app.state.engine; routes translate engine exceptions to HTTP
status codes:

  SetupError / RegenerationNotAllowedError → 400
  SessionBusyError                         → 409
  BackendExhaustedError / MalformedResponseError → 502
  missing records                          → 404
"""

from fastapi import APIRouter

from .saves import router as saves_router
from .session import router as session_router
from .settings import router as settings_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(session_router)
router.include_router(saves_router)

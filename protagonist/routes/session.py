"""Live session endpoints: setup, opening, turns, regeneration, planning, edits."""

from fastapi import APIRouter, HTTPException, Request

from protagonist.chapters import PlanRequest
from protagonist.models import GameContext
from protagonist.pipeline import SessionEngine

from .errors import engine_errors
from .models import ChoiceBody, EventBody, PlanBody, RegenerateBody, ReplaceBody, SegmentTextBody, SwitchVersionBody

router = APIRouter()


def _engine(request: Request) -> SessionEngine:
    return request.app.state.engine


def session_view(engine: SessionEngine) -> dict:
    return {
        "state": engine.state,
        "busy": engine.busy,
        "last_error": engine.last_error,
        "background_image": engine.background_image,
        "current_save_id": engine.current_save_id,
        "context": engine.context.model_dump(mode="json"),
    }


def _segment_result(engine: SessionEngine, segment) -> dict:
    return {
        "aborted": segment is None,
        "segment": segment.model_dump(mode="json") if segment else None,
        "session": session_view(engine),
    }


@router.get("/session")
async def get_session(request: Request):
    """Current engine state and live context."""
    return session_view(_engine(request))


@router.post("/session/setup")
async def new_setup(request: Request, body: GameContext):
    """Replace the live context with a fresh pre-game setup."""
    engine = _engine(request)
    with engine_errors():
        engine.new_setup(body)
    return session_view(engine)


@router.post("/session/start")
async def start_session(request: Request):
    """Generate the opening segment for the current setup."""
    engine = _engine(request)
    with engine_errors():
        segment = await engine.start_session()
    return _segment_result(engine, segment)


@router.post("/session/choice")
async def choose(request: Request, body: ChoiceBody):
    """Advance the story with a choice, optionally branching from an earlier segment."""
    engine = _engine(request)
    with engine_errors():
        segment = await engine.advance(body.choice, body.from_index)
    return _segment_result(engine, segment)


@router.post("/session/regenerate")
async def regenerate(request: Request, body: RegenerateBody):
    """Regenerate the last segment (full, text or choices)."""
    engine = _engine(request)
    with engine_errors():
        segment = await engine.regenerate(body.mode)
    return _segment_result(engine, segment)


@router.post("/session/versions/{segment_id}")
async def switch_version(request: Request, segment_id: str, body: SwitchVersionBody):
    """Show the previous/next version of a segment."""
    engine = _engine(request)
    if not any(s.id == segment_id for s in engine.context.history):
        raise HTTPException(404, "Segment not found")
    with engine_errors():
        switched = engine.switch_version(segment_id, body.direction)
    return {"switched": switched, "session": session_view(engine)}


@router.post("/session/abort")
async def abort(request: Request):
    """Cancel the operation in flight, if any."""
    return {"aborted": _engine(request).abort()}


@router.post("/session/plan")
async def plan(request: Request, body: PlanBody):
    """Plan chapters and characters and append them to the blueprint."""
    engine = _engine(request)
    with engine_errors():
        result = await engine.auto_plan_blueprint(PlanRequest(**body.model_dump()))
    if result is None:
        return {"aborted": True}
    return result.model_dump(mode="json")


@router.post("/session/plan/next")
async def plan_next(request: Request):
    """Append one more chapter after the last one."""
    engine = _engine(request)
    with engine_errors():
        chapter = await engine.plan_next_chapter()
    if chapter is None:
        return {"aborted": True}
    return chapter.model_dump(mode="json")


@router.post("/session/summarize")
async def summarize(request: Request):
    """Condense story memory with a model summary."""
    engine = _engine(request)
    with engine_errors():
        summary = await engine.summarize_memory()
    return {"story_memory": summary}


@router.post("/session/scene")
async def scene(request: Request):
    """Render the active segment's scene as its background image."""
    engine = _engine(request)
    if engine.context.current_segment is None:
        raise HTTPException(404, "No active segment")
    with engine_errors():
        image = await engine.generate_scene_image()
    return {"aborted": image is None, "image": image}


@router.post("/session/avatar")
async def avatar(request: Request, character_id: str | None = None):
    """Regenerate the protagonist's avatar, or a supporting character's."""
    engine = _engine(request)
    with engine_errors():
        image = await engine.regenerate_avatar(character_id)
    return {"aborted": image is None, "image": image}


@router.patch("/session/segments/{segment_id}")
async def update_segment(request: Request, segment_id: str, body: SegmentTextBody):
    """Overwrite a segment's text."""
    engine = _engine(request)
    with engine_errors():
        if not engine.update_segment_text(segment_id, body.text):
            raise HTTPException(404, "Segment not found")
    return session_view(engine)


@router.post("/session/replace")
async def global_replace(request: Request, body: ReplaceBody):
    """Replace text across memories and recent segments."""
    engine = _engine(request)
    with engine_errors():
        count = engine.global_replace(body.find, body.replace)
    return {"count": count}


@router.post("/session/events")
async def add_event(request: Request, body: EventBody):
    """Schedule a story event."""
    engine = _engine(request)
    with engine_errors():
        event = engine.add_scheduled_event(body.description)
    return event.model_dump(mode="json")


@router.put("/session/events/{event_id}")
async def update_event(request: Request, event_id: str, body: EventBody):
    """Edit a pending scheduled event."""
    engine = _engine(request)
    current = next((e for e in engine.context.scheduled_events if e.id == event_id), None)
    if current is None:
        raise HTTPException(404, "Event not found")
    event = current.model_copy(update={"description": body.description})
    with engine_errors():
        engine.update_scheduled_event(event)
    return event.model_dump(mode="json")


@router.delete("/session/events/{event_id}")
async def delete_event(request: Request, event_id: str):
    """Remove a scheduled event."""
    engine = _engine(request)
    with engine_errors():
        if not engine.delete_scheduled_event(event_id):
            raise HTTPException(404, "Event not found")
    return {"ok": True}


@router.post("/session/skills/{skill_id}/upgrade")
async def upgrade_skill(request: Request, skill_id: str):
    """Raise a protagonist skill by one level."""
    engine = _engine(request)
    with engine_errors():
        if not engine.upgrade_skill(skill_id):
            raise HTTPException(404, "Skill not found")
    return session_view(engine)


@router.post("/session/skills/{skill_id}/use")
async def use_skill(request: Request, skill_id: str):
    """Advance the story by using a skill."""
    engine = _engine(request)
    with engine_errors():
        segment = await engine.use_skill(skill_id)
    return _segment_result(engine, segment)

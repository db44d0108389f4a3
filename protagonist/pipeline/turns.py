"""Pure GameContext transitions for openings, turns and regenerations.

Each function takes the current context plus a parsed StoryResponse and
returns a brand-new context; nothing here mutates its inputs or talks to a
backend. SessionEngine commits the returned context only once every step of
the operation has succeeded and the operation was not aborted.
"""

from __future__ import annotations

from protagonist import chapters
from protagonist.chapters import TurnOutcome
from protagonist.models import (
    GameContext,
    ScheduledEvent,
    StoryResponse,
    StorySegment,
    SupportingCharacter,
    utc_now,
)
from protagonist.versions import RegenerationMode, add_version, edit_live, version_from_response

OPENING_CHOICE_TEXT = "Begin the journey"
UNTITLED_STORY = "Untitled Story"


def segment_from_response(
    response: StoryResponse,
    caused_by: str | None = None,
    chapter_id: str | None = None,
) -> StorySegment:
    return StorySegment(
        text=response.text,
        choices=list(response.choices),
        visual_prompt=response.visual_prompt,
        mood=response.mood,
        triggered_event_id=response.triggered_event_id or None,
        active_character_name=response.active_character_name or None,
        location=response.location,
        caused_by=caused_by,
        chapter_id=chapter_id,
    )


def affinity_changes(response: StoryResponse) -> dict[str, int]:
    """Fold the reported updates into name → total delta."""
    changes: dict[str, int] = {}
    for update in response.affinity_updates or []:
        changes[update.character_name] = changes.get(update.character_name, 0) + update.change
    return changes


def apply_affinity(
    characters: list[SupportingCharacter], changes: dict[str, int]
) -> list[SupportingCharacter]:
    """Add deltas to matching characters. No clamping."""
    updated = []
    for c in characters:
        delta = changes.get(c.name)
        if delta:
            c = c.model_copy(update={"affinity": c.affinity + delta})
        updated.append(c)
    return updated


def complete_event(events: list[ScheduledEvent], event_id: str | None) -> list[ScheduledEvent]:
    """Mark the matching pending event completed."""
    if not event_id:
        return list(events)
    return [
        e.model_copy(update={"status": "completed"}) if e.id == event_id and e.status == "pending" else e
        for e in events
    ]


def replace_segment(context: GameContext, segment: StorySegment) -> GameContext:
    """Swap the history entry with the same id for `segment`."""
    history = [segment if s.id == segment.id else s for s in context.history]
    return context.model_copy(update={"history": history, "last_updated": utc_now()})


# ---------------------------------------------------------------------------
# Opening and turn advance
# ---------------------------------------------------------------------------

def apply_opening(setup: GameContext, response: StoryResponse, session_id: str) -> GameContext:
    """Build the first playing context from the setup and the opening response.

    The first chapter is activated, then the opening is counted against it
    exactly like a regular turn.
    """
    blueprint = chapters.ensure_active(setup.plot_blueprint)
    active = chapters.active_chapter(blueprint)
    segment = segment_from_response(response, chapter_id=active.id if active else None)
    blueprint = chapters.apply_turn(blueprint, TurnOutcome.from_segment(segment))

    return setup.model_copy(deep=True, update={
        "session_id": session_id,
        "story_name": response.story_name or setup.story_name or UNTITLED_STORY,
        "history": [segment],
        "current_segment_id": segment.id,
        "memories": response.memory_update.to_state(),
        "plot_blueprint": blueprint,
        "scheduled_events": complete_event(setup.scheduled_events, segment.triggered_event_id),
        "last_updated": utc_now(),
    })


def apply_advance(
    context: GameContext,
    history: list[StorySegment],
    choice: str,
    response: StoryResponse,
) -> GameContext:
    """Append the generated segment after `history` (possibly a truncated prefix)."""
    active = chapters.active_chapter(context.plot_blueprint)
    segment = segment_from_response(
        response, caused_by=choice, chapter_id=active.id if active else None,
    )
    blueprint = chapters.apply_turn(context.plot_blueprint, TurnOutcome.from_segment(segment))

    return context.model_copy(deep=True, update={
        "history": [s.model_copy(deep=True) for s in history] + [segment],
        "current_segment_id": segment.id,
        "supporting_characters": apply_affinity(
            context.supporting_characters, affinity_changes(response)
        ),
        "memories": response.memory_update.to_state(),
        "scheduled_events": complete_event(context.scheduled_events, segment.triggered_event_id),
        "plot_blueprint": blueprint,
        "last_updated": utc_now(),
    })


# ---------------------------------------------------------------------------
# Regeneration
# ---------------------------------------------------------------------------

def apply_regeneration(
    context: GameContext, response: StoryResponse, mode: RegenerationMode
) -> GameContext:
    """Add the regenerated rendering of the last segment as a new version."""
    last = context.history[-1]
    segment = add_version(last, version_from_response(response, last, mode))
    updated = replace_segment(context, segment)
    return updated.model_copy(update={
        "current_segment_id": segment.id,
        "memories": response.memory_update.to_state(),
    })


def apply_choices(context: GameContext, choices: list[str]) -> GameContext:
    """Replace only the choice list of the last segment."""
    segment = edit_live(context.history[-1], choices=list(choices))
    updated = replace_segment(context, segment)
    return updated.model_copy(update={"current_segment_id": segment.id})

"""Chapter tracking: progress counters, completion and auto-transition.

Chapter lifecycle: pending → active → completed. At most one chapter is
active; chapters advance strictly forward by blueprint index and a completed
chapter is never touched again.

Per turn (apply_turn), only the active chapter changes:
  current_word_count += len(segment text)
  events_triggered   += 1 if the segment triggered a scheduled event
  interactions_count += 1 if the active character's name contains one of the
                          chapter's key character names

Completion: words >= target AND events >= min_key_events AND
interactions >= min_interactions (literal comparison, zero floors included).
On completion the next chapter, if any, becomes active. After the last
chapter completes the blueprint has no active chapter, a stable end state.

Planning (auto_plan, plan_next_chapter) asks the planner model for new
chapters/characters and normalises them into pending chapters.
"""

from __future__ import annotations

import logging
import random
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from protagonist.config import Settings
from protagonist.fallback import invoke_with_fallback
from protagonist.llm import ContentProvider
from protagonist.models import (
    BlueprintResponse,
    ChapterDraft,
    CharacterDraft,
    CompletionCriteria,
    GameContext,
    PlotChapter,
    StorySegment,
    SupportingCharacter,
    TrackedStats,
)
from protagonist.normalize import MalformedResponseError, parse_json, parse_model
from protagonist.prompts import build_next_chapter_prompt, build_plan_prompt

logger = logging.getLogger(__name__)

DEFAULT_TARGET_WORDS = 3000
AFFINITY_SEED_RANGE = (-10, 10)

# (name, description)
CHARACTER_ARCHETYPES: list[tuple[str, str]] = [
    ("Mentor", "A guide who teaches the protagonist and often pays for it."),
    ("Rival", "Mirrors the protagonist's ambition and pushes them to grow."),
    ("Trickster", "Disrupts the status quo with humour and mischief."),
    ("Guardian", "Protects a place, a secret or a person at any cost."),
    ("Herald", "Brings the call to adventure and news of change."),
    ("Shapeshifter", "Loyalties shift; the protagonist never quite knows where they stand."),
    ("Shadow", "Embodies what the protagonist fears becoming."),
    ("Ally", "A steadfast companion who shares the road."),
    ("Threshold Guardian", "Tests the protagonist's resolve before each new stage."),
]


class TurnOutcome(BaseModel):
    text_length: int
    triggered_event_id: str | None = None
    active_character_name: str | None = None

    @classmethod
    def from_segment(cls, segment: StorySegment) -> TurnOutcome:
        return cls(
            text_length=len(segment.text),
            triggered_event_id=segment.triggered_event_id,
            active_character_name=segment.active_character_name,
        )


class PlanRequest(BaseModel):
    outline: str = ""
    chapter_count: int = 3
    word_count_range: tuple[int, int] = (3000, 5000)
    new_char_count: int = 3
    new_org_count: int = 1
    custom_guidance: str | None = None


class PlanResult(BaseModel):
    chapters: list[PlotChapter] = Field(default_factory=list)
    characters: list[SupportingCharacter] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Progress tracking
# ---------------------------------------------------------------------------

def active_index(blueprint: list[PlotChapter]) -> int | None:
    for i, chapter in enumerate(blueprint):
        if chapter.status == "active":
            return i
    return None


def active_chapter(blueprint: list[PlotChapter]) -> PlotChapter | None:
    idx = active_index(blueprint)
    return blueprint[idx] if idx is not None else None


def ensure_active(blueprint: list[PlotChapter]) -> list[PlotChapter]:
    """Activate the chapter following the last completed one, if none is active.

    Used at session start and after extending a finished blueprint. Never
    reactivates a completed chapter.
    """
    updated = [c.model_copy(deep=True) for c in blueprint]
    if not updated or active_index(updated) is not None:
        return updated
    last_done = max((i for i, c in enumerate(updated) if c.status == "completed"), default=-1)
    nxt = last_done + 1
    if nxt < len(updated) and updated[nxt].status == "pending":
        updated[nxt].status = "active"
        logger.info("Chapter %r is now active", updated[nxt].title)
    return updated


def interacts_with_key_character(chapter: PlotChapter, character_name: str | None) -> bool:
    if not character_name:
        return False
    return any(kc and kc in character_name for kc in chapter.key_characters)


def is_complete(chapter: PlotChapter) -> bool:
    stats = chapter.tracked_stats
    criteria = chapter.completion_criteria
    return (
        stats.current_word_count >= chapter.target_word_count
        and stats.events_triggered >= criteria.min_key_events
        and stats.interactions_count >= criteria.min_interactions
    )


def apply_turn(blueprint: list[PlotChapter], outcome: TurnOutcome) -> list[PlotChapter]:
    """Return a new blueprint with `outcome` counted against the active chapter."""
    updated = [c.model_copy(deep=True) for c in blueprint]
    idx = active_index(updated)
    if idx is None:
        return updated

    chapter = updated[idx]
    stats = chapter.tracked_stats
    stats.current_word_count += outcome.text_length
    if outcome.triggered_event_id:
        stats.events_triggered += 1
    if interacts_with_key_character(chapter, outcome.active_character_name):
        stats.interactions_count += 1

    if is_complete(chapter):
        chapter.status = "completed"
        chapter.finished_turn_count += 1
        logger.info("Chapter %r completed", chapter.title)
        if idx + 1 < len(updated):
            updated[idx + 1].status = "active"
            logger.info("Chapter %r is now active", updated[idx + 1].title)
    return updated


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

def chapter_from_draft(draft: ChapterDraft, word_range: tuple[int, int]) -> PlotChapter:
    lo, hi = word_range
    target = draft.target_word_count or DEFAULT_TARGET_WORDS
    return PlotChapter(
        title=draft.title,
        summary=draft.summary,
        target_word_count=max(lo, min(target, hi)),
        key_events=draft.key_events,
        key_characters=list(draft.key_characters),
        pacing=draft.pacing or "standard",
        status="pending",
        tracked_stats=TrackedStats(),
        completion_criteria=CompletionCriteria(min_key_events=1, min_interactions=1),
    )


def character_from_draft(draft: CharacterDraft, rng: random.Random) -> SupportingCharacter:
    affinity = rng.randint(*AFFINITY_SEED_RANGE)
    archetype = draft.archetype
    description = draft.archetype_description
    if draft.category == "other" or draft.gender == "organization":
        archetype = None
        description = None
    else:
        catalog = dict(CHARACTER_ARCHETYPES)
        if archetype not in catalog:
            archetype, fallback_desc = rng.choice(CHARACTER_ARCHETYPES)
            description = description or fallback_desc
        elif not description:
            description = catalog[archetype]
    return SupportingCharacter(
        name=draft.name,
        role=draft.role,
        gender=draft.gender,
        category=draft.category,
        affinity=affinity,
        initial_affinity=affinity,
        personality=draft.personality or "Generated automatically",
        appearance=draft.appearance or "Generated automatically",
        archetype=archetype,
        archetype_description=description,
    )


def _blueprint_payload(raw: str) -> BlueprintResponse:
    """Accept {"chapters": [...], "newCharacters": [...]} or a bare chapter array."""
    data: Any = parse_json(raw)
    if isinstance(data, list):
        data = {"chapters": data}
    try:
        return BlueprintResponse.model_validate(data)
    except ValidationError as e:
        raise MalformedResponseError(f"Blueprint output is malformed: {e.error_count()} error(s)") from e


async def auto_plan(
    provider: ContentProvider,
    settings: Settings,
    context: GameContext,
    request: PlanRequest,
    rng: random.Random | None = None,
) -> PlanResult:
    """Generate new pending chapters and supporting characters.

    Chapters get fresh ids, zeroed stats, default criteria {1, 1}, pacing
    defaulted to standard and target word count clamped into the requested
    range. Characters get a random affinity seed in [-10, 10] and an
    archetype from the catalog when none (or an unknown one) was supplied.
    """
    rng = rng or random.Random()
    prompt = build_plan_prompt(
        context,
        outline=request.outline,
        chapter_count=request.chapter_count,
        word_count_range=request.word_count_range,
        new_char_count=request.new_char_count,
        new_org_count=request.new_org_count,
        guidance=request.custom_guidance,
        archetypes=[name for name, _ in CHARACTER_ARCHETYPES],
    )
    schema = BlueprintResponse.model_json_schema(by_alias=True)
    raw = await invoke_with_fallback(
        settings.planner_model,
        settings.text_fallbacks,
        lambda model: provider.generate_text(model, prompt, schema),
    )
    payload = _blueprint_payload(raw)
    chapters = [chapter_from_draft(d, request.word_count_range) for d in payload.chapters]
    characters = [character_from_draft(d, rng) for d in payload.new_characters]
    logger.info("Planned %d chapter(s) and %d character(s)", len(chapters), len(characters))
    return PlanResult(chapters=chapters, characters=characters)


def extend_blueprint(existing: list[PlotChapter], new: list[PlotChapter]) -> list[PlotChapter]:
    """Append planned chapters after the existing ones."""
    return [c.model_copy(deep=True) for c in existing] + list(new)


def merge_characters(
    existing: list[SupportingCharacter], new: list[SupportingCharacter]
) -> list[SupportingCharacter]:
    """Add new characters whose name is not already taken."""
    names = {c.name for c in existing}
    merged = list(existing)
    for c in new:
        if c.name not in names:
            merged.append(c)
            names.add(c.name)
    return merged


async def plan_next_chapter(
    provider: ContentProvider, settings: Settings, context: GameContext
) -> PlotChapter:
    """Generate a single pending chapter that follows the current blueprint."""
    prompt = build_next_chapter_prompt(context)
    schema = ChapterDraft.model_json_schema(by_alias=True)
    raw = await invoke_with_fallback(
        settings.planner_model,
        settings.text_fallbacks,
        lambda model: provider.generate_text(model, prompt, schema),
    )
    draft = parse_model(raw, ChapterDraft)
    chapter = PlotChapter(
        title=draft.title,
        summary=draft.summary,
        target_word_count=draft.target_word_count or DEFAULT_TARGET_WORDS,
        key_events=draft.key_events,
        key_characters=list(draft.key_characters),
        pacing=draft.pacing or "standard",
    )
    if context.plot_blueprint:
        chapter.prerequisites = [f"Complete chapter: {context.plot_blueprint[-1].title}"]
    return chapter

"""Core domain models.

Every engine component and the storage layer operate on these types.
Pydantic is used for validation and serialisation at every data boundary:
checkpoints round-trip through `model_dump_json()` / `model_validate_json()`.

Models whose name ends in `Response` or `Draft` describe raw generation
output. They accept the camelCase keys the generation backend is asked to
produce and are converted into the persisted snake_case models by the engine.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

StoryMood = Literal[
    "peaceful",
    "battle",
    "tense",
    "emotional",
    "mysterious",
    "romantic",
    "victory",
]

Pacing = Literal["fast", "standard", "slow"]
ChapterStatus = Literal["pending", "active", "completed"]
EventStatus = Literal["pending", "completed"]
SaveType = Literal["auto", "manual", "setup"]
Gender = Literal["male", "female", "other", "organization"]
CharacterCategory = Literal["supporting", "villain", "other"]
Perspective = Literal["first", "second", "third", "omniscient"]


def new_id() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Story segments and memory
# ---------------------------------------------------------------------------

class MemoryState(BaseModel):
    """Rolling memory buffers, replaced wholesale by every generation call."""

    memory_zone: str
    story_memory: str
    long_term_memory: str
    core_memory: str
    character_record: str
    inventory: str


def default_memory() -> MemoryState:
    return MemoryState(
        memory_zone="",
        story_memory="",
        long_term_memory="",
        core_memory="",
        character_record="",
        inventory="No items yet",
    )


class SegmentVersion(BaseModel):
    """One alternate rendering of a segment."""

    text: str
    choices: list[str] = Field(default_factory=list)
    visual_prompt: str = ""
    mood: StoryMood = "peaceful"
    location: str | None = None


class StorySegment(BaseModel):
    """One generated unit of story content (one turn)."""

    id: str = Field(default_factory=new_id)
    text: str
    choices: list[str] = Field(default_factory=list)
    visual_prompt: str = ""
    mood: StoryMood = "peaceful"
    triggered_event_id: str | None = None
    active_character_name: str | None = None
    location: str | None = None
    caused_by: str | None = None  # None for the opening segment
    chapter_id: str | None = None
    background_image: str | None = None
    versions: list[SegmentVersion] = Field(default_factory=list)
    current_version_index: int = 0


# ---------------------------------------------------------------------------
# Plot blueprint
# ---------------------------------------------------------------------------

class TrackedStats(BaseModel):
    current_word_count: int = 0
    events_triggered: int = 0
    interactions_count: int = 0


class CompletionCriteria(BaseModel):
    min_key_events: int = 1
    min_interactions: int = 1


class PlotChapter(BaseModel):
    """A planned chapter. Progresses pending → active → completed, never back."""

    id: str = Field(default_factory=new_id)
    title: str
    summary: str = ""
    target_word_count: int = 3000
    key_events: str = ""
    key_characters: list[str] = Field(default_factory=list)
    pacing: Pacing = "standard"
    status: ChapterStatus = "pending"
    tracked_stats: TrackedStats = Field(default_factory=TrackedStats)
    completion_criteria: CompletionCriteria = Field(default_factory=CompletionCriteria)
    prerequisites: list[str] = Field(default_factory=list)
    finished_turn_count: int = 0


class ScheduledEvent(BaseModel):
    id: str = Field(default_factory=new_id)
    description: str
    status: EventStatus = "pending"
    created_turn: int = 0


# ---------------------------------------------------------------------------
# Characters and world
# ---------------------------------------------------------------------------

class Skill(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    description: str = ""
    level: int = 1


class Protagonist(BaseModel):
    """The player character."""

    name: str = ""
    gender: Gender = "male"
    trait: str = ""
    perspective: Perspective = "third"
    skills: list[Skill] = Field(default_factory=list)
    avatar: str | None = None


class SupportingCharacter(BaseModel):
    """An NPC. Affinity changes only by additive deltas from generation output."""

    id: str = Field(default_factory=new_id)
    name: str
    role: str = ""
    gender: Gender = "other"
    category: CharacterCategory = "supporting"
    affinity: int = 0
    initial_affinity: int = 0
    personality: str = ""
    appearance: str = ""
    archetype: str | None = None
    archetype_description: str | None = None
    avatar: str | None = None


class WorldSettings(BaseModel):
    tone: StoryMood = "peaceful"
    is_harem: bool = False
    is_adult: bool = False
    has_system: bool = False


# ---------------------------------------------------------------------------
# Aggregate root and checkpoints
# ---------------------------------------------------------------------------

class GameContext(BaseModel):
    """Everything a session knows. Replaced wholesale on every turn."""

    session_id: str = ""
    story_name: str | None = None
    genre: str = "fantasy"
    custom_genre: str | None = None
    narrative_mode: str | None = None
    narrative_technique: str | None = None
    character: Protagonist = Field(default_factory=Protagonist)
    supporting_characters: list[SupportingCharacter] = Field(default_factory=list)
    world_settings: WorldSettings = Field(default_factory=WorldSettings)
    history: list[StorySegment] = Field(default_factory=list)
    current_segment_id: str | None = None
    memories: MemoryState = Field(default_factory=default_memory)
    scheduled_events: list[ScheduledEvent] = Field(default_factory=list)
    plot_blueprint: list[PlotChapter] = Field(default_factory=list)
    last_updated: datetime | None = None

    @property
    def current_segment(self) -> StorySegment | None:
        if self.current_segment_id is None:
            return None
        for seg in self.history:
            if seg.id == self.current_segment_id:
                return seg
        return None


class SaveMeta(BaseModel):
    turn_count: int = 0
    total_skill_level: int = 0


class SavedGame(BaseModel):
    """A checkpoint. Immutable once created; only deletion is allowed."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    session_id: str
    story_id: str | None = None
    parent_id: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)
    story_name: str | None = None
    character_name: str = ""
    genre: str = ""
    summary: str = ""
    location: str | None = None
    choice_text: str | None = None
    context: GameContext
    type: SaveType
    meta_data: SaveMeta = Field(default_factory=SaveMeta)


class GalleryItem(BaseModel):
    id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=utc_now)
    image: str  # data URL
    prompt: str = ""
    style: str = ""


# ---------------------------------------------------------------------------
# Raw generation output
# ---------------------------------------------------------------------------

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MemoryUpdate(_CamelModel):
    memory_zone: str
    story_memory: str
    long_term_memory: str
    core_memory: str
    character_record: str
    inventory: str

    def to_state(self) -> MemoryState:
        return MemoryState(**self.model_dump())


class AffinityUpdate(_CamelModel):
    character_name: str
    change: int


class StoryResponse(_CamelModel):
    """Structured output of an opening or turn generation."""

    text: str
    choices: list[str]
    visual_prompt: str
    mood: StoryMood
    memory_update: MemoryUpdate
    story_name: str | None = None
    active_character_name: str | None = None
    location: str | None = None
    triggered_event_id: str | None = None
    affinity_updates: list[AffinityUpdate] | None = None

    @field_validator("mood", mode="before")
    @classmethod
    def _lower_mood(cls, v: object) -> object:
        return v.strip().lower() if isinstance(v, str) else v


class ChoicesResponse(_CamelModel):
    """Output of a choices-only regeneration."""

    choices: list[str]


class ChapterDraft(_CamelModel):
    title: str = "Untitled Chapter"
    summary: str = ""
    target_word_count: int | None = None
    key_events: str = ""
    key_characters: list[str] = Field(default_factory=list)
    pacing: Pacing | None = None

    @field_validator("pacing", mode="before")
    @classmethod
    def _unknown_pacing(cls, v: object) -> object:
        return v if v in ("fast", "standard", "slow") else None


class CharacterDraft(_CamelModel):
    name: str
    role: str = ""
    gender: Gender = "other"
    personality: str | None = None
    appearance: str | None = None
    archetype: str | None = None
    archetype_description: str | None = None
    category: CharacterCategory = "supporting"


class BlueprintResponse(_CamelModel):
    chapters: list[ChapterDraft] = Field(default_factory=list)
    new_characters: list[CharacterDraft] = Field(default_factory=list)


class CharacterDetails(_CamelModel):
    personality: str
    appearance: str

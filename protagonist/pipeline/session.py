"""SessionEngine: the turn state machine for one interactive story session.

States:

    idle → setup → awaiting_opening → playing → awaiting_turn → playing → …
                                    ↘ aborted / failed (from any awaiting state)

One engine owns one live GameContext. Every operation that changes it runs
exclusively: a second request while one is in flight raises
SessionBusyError instead of queueing. Operations build a new context from
the old one (see turns.py) and commit it in a single assignment after the
last await, so a failure or an abort leaves the previous context in place.

Cancellation: abort() fires the CancelToken shared by everything launched
for the current operation. In-flight work stops contributing and results
that already arrived are discarded. Side effects that already happened (a
checkpoint written for an earlier turn) are not rolled back.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Literal

from protagonist import chapters
from protagonist.checkpoints import CheckpointResult, PersistenceCoordinator
from protagonist.config import Settings
from protagonist.fallback import invoke_with_fallback
from protagonist.llm import ContentProvider
from protagonist.models import (
    CharacterDetails,
    ChoicesResponse,
    GameContext,
    PlotChapter,
    SavedGame,
    ScheduledEvent,
    StoryResponse,
    StorySegment,
    new_id,
    utc_now,
)
from protagonist.normalize import parse_model
from protagonist.prompts import (
    SCENERY_SUFFIX,
    build_character_details_prompt,
    build_opening_prompt,
    build_scene_prompt,
    build_summary_prompt,
    build_turn_prompt,
)
from protagonist.versions import Direction, RegenerationMode, check_regenerable, edit_live, switch_version

from . import turns
from .artifacts import apply_artifacts, generate_artifacts, render_avatar, render_image
from .cancel import AbortedError, CancelToken

logger = logging.getLogger(__name__)

EngineState = Literal[
    "idle",
    "setup",
    "awaiting_opening",
    "playing",
    "awaiting_turn",
    "aborted",
    "failed",
]

REPLACE_WINDOW = 5
DEFAULT_DETAILS = CharacterDetails(personality="Mysterious", appearance="Features hard to make out")


class SetupError(ValueError):
    """Required input is missing or invalid. Raised before any backend call."""


class SessionBusyError(RuntimeError):
    """Another turn, regeneration or planning call is still in flight."""


def resolve_background(context: GameContext) -> str | None:
    """Background of the active segment, else the latest one found in history."""
    current = context.current_segment
    if current is not None and current.background_image:
        return current.background_image
    for seg in reversed(context.history):
        if seg.background_image:
            return seg.background_image
    return None


class SessionEngine:
    def __init__(
        self,
        settings: Settings,
        provider: ContentProvider,
        coordinator: PersistenceCoordinator,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.provider = provider
        self.coordinator = coordinator
        self.context = GameContext()
        self.state: EngineState = "idle"
        self.background_image: str | None = None
        self.last_error: str | None = None
        self.current_save_id: str | None = None
        self._rng = rng or random.Random()
        self._busy = False
        self._token: CancelToken | None = None

    # ------------------------------------------------------------------
    # Exclusivity and cancellation
    # ------------------------------------------------------------------

    @property
    def busy(self) -> bool:
        return self._busy

    def _ensure_idle(self) -> None:
        if self._busy:
            raise SessionBusyError("Another operation is already in progress")

    @contextmanager
    def _exclusive(self) -> Iterator[CancelToken]:
        self._ensure_idle()
        self._busy = True
        self._token = CancelToken()
        try:
            yield self._token
        finally:
            self._busy = False
            self._token = None

    def abort(self) -> bool:
        """Cancel the operation in flight. Returns False if there was none."""
        if self._token is None:
            return False
        self._token.cancel()
        logger.info("Abort requested (state=%s)", self.state)
        return True

    def _fail(self, error: Exception, recover_to: EngineState | None = None) -> None:
        self.state = recover_to or "failed"
        self.last_error = str(error)
        logger.error("Operation failed: %s", error)

    # ------------------------------------------------------------------
    # Backend calls
    # ------------------------------------------------------------------

    async def _generate_story(self, prompt: str) -> StoryResponse:
        schema = StoryResponse.model_json_schema(by_alias=True)
        raw = await invoke_with_fallback(
            self.settings.text_model,
            self.settings.text_fallbacks,
            lambda model: self.provider.generate_text(model, prompt, schema),
        )
        return parse_model(raw, StoryResponse)

    async def _generate_choices(self, prompt: str) -> list[str]:
        schema = ChoicesResponse.model_json_schema(by_alias=True)
        raw = await invoke_with_fallback(
            self.settings.text_model,
            self.settings.text_fallbacks,
            lambda model: self.provider.generate_text(model, prompt, schema),
        )
        return parse_model(raw, ChoicesResponse).choices

    async def _generate_plain(self, model: str, prompt: str) -> str:
        return await invoke_with_fallback(
            model,
            self.settings.text_fallbacks,
            lambda m: self.provider.generate_text(m, prompt, None),
        )

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def new_setup(self, setup: GameContext | None = None) -> GameContext:
        """Discard the live context and start editing a fresh setup."""
        self._ensure_idle()
        self.context = setup.model_copy(deep=True) if setup else GameContext()
        self.state = "setup"
        self.last_error = None
        self.current_save_id = None
        self.background_image = None
        return self.context

    def save_setup(self) -> SavedGame:
        """Checkpoint the pre-game setup under a fresh session id."""
        setup = self.context.model_copy(update={"session_id": new_id()})
        return self.coordinator.checkpoint(setup, "setup").save

    def load_game(self, save_id: str, force_setup: bool = False) -> GameContext | None:
        """Restore a checkpoint as the live context. Returns None if it does not exist."""
        self._ensure_idle()
        save = self.coordinator.get(save_id)
        if save is None:
            return None
        self.context = save.context.model_copy(deep=True)
        self.background_image = resolve_background(self.context)
        self.state = "setup" if force_setup or save.type == "setup" else "playing"
        self.current_save_id = save.id
        self.last_error = None
        logger.info("Loaded checkpoint %s (session=%s)", save.id, save.session_id)
        return self.context

    # ------------------------------------------------------------------
    # Opening
    # ------------------------------------------------------------------

    async def start_session(self) -> StorySegment | None:
        """Generate the opening segment and its artifacts, then auto-checkpoint.

        Returns the opening segment, or None if the caller aborted.
        """
        character = self.context.character
        if not character.name.strip() or not character.trait.strip():
            raise SetupError("Protagonist name and trait are required")

        with self._exclusive() as token:
            setup = self.context
            session_id = setup.session_id or new_id()
            self.state = "awaiting_opening"
            self.last_error = None
            self.current_save_id = None
            logger.info("Starting session %s (%s)", session_id, setup.genre)

            try:
                prompt = build_opening_prompt(setup, self.settings)
                response = await token.guard(self._generate_story(prompt))
                opened = turns.apply_opening(setup, response, session_id)
                artifacts = await token.guard(generate_artifacts(
                    self.provider, self.settings, opened, response.visual_prompt, include_avatar=True,
                ))
                token.raise_if_cancelled()
            except AbortedError:
                logger.info("Opening aborted")
                self.state = "aborted"
                return None
            except Exception as e:
                self._fail(e)
                raise

            self.context = apply_artifacts(opened, artifacts)
            self._show_scene(artifacts.scene, response.visual_prompt)
            self.state = "playing"
            self._auto_checkpoint(turns.OPENING_CHOICE_TEXT)
            return self.context.current_segment

    # ------------------------------------------------------------------
    # Turn advance
    # ------------------------------------------------------------------

    async def advance(self, choice: str, from_index: int | None = None) -> StorySegment | None:
        """Generate the next segment for `choice`.

        With `from_index` pointing before the last segment, the story
        branches: history is truncated to history[:from_index + 1] first.
        Returns the new segment, or None if the caller aborted.
        """
        if not self.context.history:
            raise SetupError("No story in progress")
        if from_index is not None and not 0 <= from_index < len(self.context.history):
            raise SetupError(f"Segment index {from_index} is out of range")

        with self._exclusive() as token:
            before = self.context
            history = before.history
            if from_index is not None and from_index < len(history) - 1:
                history = history[:from_index + 1]
            self.state = "awaiting_turn"
            self.last_error = None

            try:
                prompt = build_turn_prompt(before, self.settings, history, choice, "full")
                response = await token.guard(self._generate_story(prompt))
                advanced = turns.apply_advance(before, history, choice, response)
                scene_prompt = response.visual_prompt if self.settings.scene_image_per_turn else None
                artifacts = await token.guard(generate_artifacts(
                    self.provider, self.settings, advanced, scene_prompt, include_avatar=False,
                ))
                token.raise_if_cancelled()
            except AbortedError:
                logger.info("Turn aborted")
                self.state = "aborted"
                return None
            except Exception as e:
                self._fail(e)
                raise

            self.context = apply_artifacts(advanced, artifacts)
            self._show_scene(artifacts.scene, response.visual_prompt)
            self.state = "playing"
            self._auto_checkpoint(choice)
            return self.context.current_segment

    async def use_skill(self, skill_id: str) -> StorySegment | None:
        skill = next((s for s in self.context.character.skills if s.id == skill_id), None)
        if skill is None:
            raise SetupError(f"Unknown skill {skill_id}")
        return await self.advance(f"(Skill) {skill.name}: {skill.description}")

    def _auto_checkpoint(self, choice_text: str) -> None:
        result = self.coordinator.checkpoint(self.context, "auto", choice_text)
        self.current_save_id = result.save.id

    def _show_scene(self, scene: str | None, prompt: str) -> None:
        if not scene:
            return
        self.background_image = scene
        if self.settings.auto_save_gallery:
            self.coordinator.add_gallery_item(scene, prompt, self.settings.avatar_style)

    # ------------------------------------------------------------------
    # Regeneration and versions
    # ------------------------------------------------------------------

    async def regenerate(self, mode: RegenerationMode = "full") -> StorySegment | None:
        """Produce an alternate rendering of the last segment.

        full/text replay the segment's causing choice against the history
        before it and add a new version. choices re-asks for the choice list
        with the full history, leaving text and visual prompt untouched.
        """
        segment = check_regenerable(self.context.history, mode)

        with self._exclusive() as token:
            before = self.context
            self.state = "awaiting_turn"
            self.last_error = None
            try:
                if mode == "choices":
                    prompt = build_turn_prompt(before, self.settings, before.history, "", "choices")
                    choices = await token.guard(self._generate_choices(prompt))
                    updated = turns.apply_choices(before, choices)
                else:
                    prompt = build_turn_prompt(
                        before, self.settings, before.history[:-1], segment.caused_by or "", mode,
                    )
                    response = await token.guard(self._generate_story(prompt))
                    updated = turns.apply_regeneration(before, response, mode)
                token.raise_if_cancelled()
            except AbortedError:
                logger.info("Regeneration aborted")
                self.state = "aborted"
                return None
            except Exception as e:
                self._fail(e, recover_to="playing")
                raise

            self.context = updated
            self.state = "playing"
            return self.context.current_segment

    def switch_version(self, segment_id: str, direction: Direction) -> bool:
        """Show the previous/next version of a segment. Returns False on no-op."""
        self._ensure_idle()
        segment = next((s for s in self.context.history if s.id == segment_id), None)
        if segment is None:
            return False
        switched = switch_version(segment, direction)
        if switched is segment:
            return False
        self.context = turns.replace_segment(self.context, switched)
        return True

    # ------------------------------------------------------------------
    # Blueprint planning
    # ------------------------------------------------------------------

    async def auto_plan_blueprint(
        self, request: chapters.PlanRequest | None = None
    ) -> chapters.PlanResult | None:
        """Plan chapters and characters and append them to the live context.

        Returns None if the caller aborted; the blueprint is left unchanged.
        """
        if not self.context.character.name.strip():
            raise SetupError("Fill in the protagonist's name before planning")
        if not self.context.genre:
            raise SetupError("Choose a story genre before planning")

        with self._exclusive() as token:
            try:
                result = await token.guard(chapters.auto_plan(
                    self.provider, self.settings, self.context, request or chapters.PlanRequest(), self._rng,
                ))
            except AbortedError:
                logger.info("Planning aborted")
                return None
            blueprint = chapters.extend_blueprint(self.context.plot_blueprint, result.chapters)
            if self.context.history:
                blueprint = chapters.ensure_active(blueprint)
            self.context = self.context.model_copy(update={
                "plot_blueprint": blueprint,
                "supporting_characters": chapters.merge_characters(
                    self.context.supporting_characters, result.characters,
                ),
                "last_updated": utc_now(),
            })
            return result

    async def plan_next_chapter(self) -> PlotChapter | None:
        with self._exclusive() as token:
            try:
                chapter = await token.guard(
                    chapters.plan_next_chapter(self.provider, self.settings, self.context)
                )
            except AbortedError:
                logger.info("Next-chapter planning aborted")
                return None
            blueprint = chapters.extend_blueprint(self.context.plot_blueprint, [chapter])
            if self.context.history:
                blueprint = chapters.ensure_active(blueprint)
            self.context = self.context.model_copy(
                update={"plot_blueprint": blueprint, "last_updated": utc_now()}
            )
            return chapter

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def manual_save(self) -> CheckpointResult:
        """Checkpoint the live context. `created` is False when already saved."""
        if self.context.current_segment is None:
            raise SetupError("Nothing to save yet")
        result = self.coordinator.checkpoint(self.context, "manual")
        if result.created:
            self.current_save_id = result.save.id
        return result

    # ------------------------------------------------------------------
    # Memory, images and character helpers
    # ------------------------------------------------------------------

    async def summarize_memory(self) -> str | None:
        """Replace story memory with a model summary. Needs at least two segments.

        Returns None, leaving memory unchanged, when there is too little story
        or the caller aborted.
        """
        if len(self.context.history) < 2:
            return None
        with self._exclusive() as token:
            try:
                summary = await token.guard(self._generate_plain(
                    self.settings.planner_model, build_summary_prompt(self.context.history),
                ))
            except AbortedError:
                logger.info("Memory summary aborted")
                return None
            memories = self.context.memories.model_copy(update={"story_memory": summary.strip()})
            self.context = self.context.model_copy(update={"memories": memories, "last_updated": utc_now()})
            return memories.story_memory

    async def generate_scene_image(self, style: str | None = None) -> str | None:
        """Render the active segment's visual prompt as its background image.

        Returns None when there is no active segment or the caller aborted.
        """
        segment = self.context.current_segment
        if segment is None:
            return None
        with self._exclusive() as token:
            prompt = build_scene_prompt(
                segment.visual_prompt + SCENERY_SUFFIX,
                style=style or self.settings.background_style,
                custom_style=self.settings.custom_avatar_style,
            )
            try:
                image = await token.guard(render_image(self.provider, self.settings, prompt))
            except AbortedError:
                logger.info("Scene image aborted")
                return None
            updated = segment.model_copy(update={"background_image": image})
            self.context = turns.replace_segment(self.context, updated)
            self._show_scene(image, segment.visual_prompt)
            return image

    async def regenerate_avatar(self, character_id: str | None = None) -> str | None:
        """New avatar for a supporting character, or the protagonist when id is None.

        Returns None if the caller aborted.
        """
        with self._exclusive() as token:
            if character_id is None:
                target = self.context.character
            else:
                target = next((c for c in self.context.supporting_characters if c.id == character_id), None)
                if target is None:
                    raise SetupError(f"Unknown character {character_id}")
            try:
                image = await token.guard(render_avatar(self.provider, self.settings, self.context.genre, target))
            except AbortedError:
                logger.info("Avatar generation aborted")
                return None

            if character_id is None:
                character = self.context.character.model_copy(update={"avatar": image})
                self.context = self.context.model_copy(update={"character": character})
                return image
            self.context = self.context.model_copy(update={
                "supporting_characters": [
                    c.model_copy(update={"avatar": image}) if c.id == character_id else c
                    for c in self.context.supporting_characters
                ],
            })
            return image

    async def generate_character_details(
        self,
        name: str,
        role: str,
        gender: str,
        category: str,
        personality: str | None = None,
        appearance: str | None = None,
    ) -> CharacterDetails:
        """Suggest personality/appearance text. Falls back to fixed defaults on failure."""
        prompt = build_character_details_prompt(
            self.context.genre, name, role, gender, category, personality, appearance,
        )
        try:
            raw = await self._generate_plain(self.settings.planner_model, prompt)
            return parse_model(raw, CharacterDetails)
        except Exception as e:
            logger.warning("Character details generation failed for %s: %s", name, e)
            return DEFAULT_DETAILS.model_copy()

    # ------------------------------------------------------------------
    # Direct edits
    # ------------------------------------------------------------------

    def update_segment_text(self, segment_id: str, text: str) -> bool:
        self._ensure_idle()
        segment = next((s for s in self.context.history if s.id == segment_id), None)
        if segment is None:
            return False
        self.context = turns.replace_segment(self.context, edit_live(segment, text=text))
        return True

    def global_replace(self, find: str, replace: str) -> int:
        """Replace `find` in memory buffers and the last few segments. Returns occurrences."""
        self._ensure_idle()
        if not find or not replace:
            return 0
        ctx = self.context
        start = max(0, len(ctx.history) - REPLACE_WINDOW)
        window = ctx.history[start:]

        count = sum(v.count(find) for v in ctx.memories.model_dump().values())
        for seg in window:
            count += seg.text.count(find) + sum(c.count(find) for c in seg.choices)
        if count == 0:
            return 0

        memories = ctx.memories.model_copy(update={
            k: v.replace(find, replace) for k, v in ctx.memories.model_dump().items()
        })
        history = ctx.history[:start] + [
            edit_live(
                seg,
                text=seg.text.replace(find, replace),
                choices=[c.replace(find, replace) for c in seg.choices],
            )
            for seg in window
        ]
        self.context = ctx.model_copy(update={
            "memories": memories, "history": history, "last_updated": utc_now(),
        })
        return count

    def add_scheduled_event(self, description: str) -> ScheduledEvent:
        self._ensure_idle()
        event = ScheduledEvent(description=description, created_turn=len(self.context.history))
        self.context = self.context.model_copy(
            update={"scheduled_events": [*self.context.scheduled_events, event]}
        )
        return event

    def update_scheduled_event(self, event: ScheduledEvent) -> bool:
        """Replace a pending event. Completed events are immutable."""
        self._ensure_idle()
        current = next((e for e in self.context.scheduled_events if e.id == event.id), None)
        if current is None:
            return False
        if current.status == "completed":
            raise SetupError("Completed events cannot be changed")
        self.context = self.context.model_copy(update={
            "scheduled_events": [event if e.id == event.id else e for e in self.context.scheduled_events],
        })
        return True

    def delete_scheduled_event(self, event_id: str) -> bool:
        self._ensure_idle()
        events = [e for e in self.context.scheduled_events if e.id != event_id]
        if len(events) == len(self.context.scheduled_events):
            return False
        self.context = self.context.model_copy(update={"scheduled_events": events})
        return True

    def upgrade_skill(self, skill_id: str) -> bool:
        self._ensure_idle()
        skills = self.context.character.skills
        if not any(s.id == skill_id for s in skills):
            return False
        character = self.context.character.model_copy(update={
            "skills": [s.model_copy(update={"level": s.level + 1}) if s.id == skill_id else s for s in skills],
        })
        self.context = self.context.model_copy(update={"character": character})
        return True

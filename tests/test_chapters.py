"""Tests for protagonist.chapters: chapter tracking and blueprint planning."""

import json
import random

import pytest

from conftest import StubProvider
from protagonist import chapters
from protagonist.chapters import (
    CHARACTER_ARCHETYPES,
    PlanRequest,
    TurnOutcome,
    active_chapter,
    apply_turn,
    ensure_active,
    is_complete,
)
from protagonist.fallback import BackendExhaustedError
from protagonist.models import (
    ChapterDraft,
    CharacterDraft,
    CompletionCriteria,
    GameContext,
    PlotChapter,
    Protagonist,
    SupportingCharacter,
    TrackedStats,
)
from protagonist.normalize import MalformedResponseError


def _blueprint(*targets: int) -> list[PlotChapter]:
    return [PlotChapter(id=f"ch-{i}", title=f"Chapter {i}", target_word_count=t) for i, t in enumerate(targets)]


def _active_count(blueprint: list[PlotChapter]) -> int:
    return sum(1 for c in blueprint if c.status == "active")


# ---------------------------------------------------------------------------
# Progress tracking
# ---------------------------------------------------------------------------

class TestEnsureActive:
    def test_activates_first_chapter(self) -> None:
        bp = ensure_active(_blueprint(100, 200))
        assert [c.status for c in bp] == ["active", "pending"]

    def test_empty_blueprint(self) -> None:
        assert ensure_active([]) == []

    def test_keeps_existing_active(self) -> None:
        bp = _blueprint(100, 200)
        bp[1].status = "active"
        assert [c.status for c in ensure_active(bp)] == ["pending", "active"]

    def test_resumes_after_last_completed(self) -> None:
        bp = _blueprint(100, 200, 300)
        bp[0].status = "completed"
        assert [c.status for c in ensure_active(bp)] == ["completed", "active", "pending"]

    def test_does_not_mutate_input(self) -> None:
        bp = _blueprint(100)
        ensure_active(bp)
        assert bp[0].status == "pending"


class TestApplyTurn:
    def test_no_active_chapter_is_noop(self) -> None:
        bp = _blueprint(100)
        updated = apply_turn(bp, TurnOutcome(text_length=50))
        assert updated[0].tracked_stats.current_word_count == 0

    def test_counts_words_events_interactions(self) -> None:
        bp = ensure_active(_blueprint(1000))
        bp[0].key_characters = ["Borin"]
        updated = apply_turn(bp, TurnOutcome(
            text_length=42, triggered_event_id="evt", active_character_name="Borin the Innkeeper",
        ))
        stats = updated[0].tracked_stats
        assert (stats.current_word_count, stats.events_triggered, stats.interactions_count) == (42, 1, 1)

    def test_non_matching_character_not_counted(self) -> None:
        bp = ensure_active(_blueprint(1000))
        bp[0].key_characters = ["Borin"]
        updated = apply_turn(bp, TurnOutcome(text_length=1, active_character_name="Aria"))
        assert updated[0].tracked_stats.interactions_count == 0

    def test_empty_key_character_name_ignored(self) -> None:
        bp = ensure_active(_blueprint(1000))
        bp[0].key_characters = [""]
        updated = apply_turn(bp, TurnOutcome(text_length=1, active_character_name="Aria"))
        assert updated[0].tracked_stats.interactions_count == 0

    def test_does_not_mutate_input(self) -> None:
        bp = ensure_active(_blueprint(1000))
        apply_turn(bp, TurnOutcome(text_length=10))
        assert bp[0].tracked_stats.current_word_count == 0

    def test_three_turn_scenario_completes_and_advances(self) -> None:
        bp = ensure_active(_blueprint(300, 500))
        bp[0].key_characters = ["Borin"]

        bp = apply_turn(bp, TurnOutcome(text_length=100))
        assert bp[0].status == "active"
        bp = apply_turn(bp, TurnOutcome(text_length=150, triggered_event_id="evt-1"))
        assert bp[0].status == "active"
        bp = apply_turn(bp, TurnOutcome(text_length=60, active_character_name="Borin"))

        assert bp[0].status == "completed"
        assert bp[0].finished_turn_count == 1
        assert bp[0].tracked_stats.current_word_count == 310
        assert bp[1].status == "active"

    def test_last_chapter_completion_leaves_no_active(self) -> None:
        bp = ensure_active(_blueprint(10))
        bp[0].completion_criteria = CompletionCriteria(min_key_events=0, min_interactions=0)
        bp = apply_turn(bp, TurnOutcome(text_length=20))
        assert bp[0].status == "completed"
        assert active_chapter(bp) is None
        again = apply_turn(bp, TurnOutcome(text_length=20))
        assert again == bp

    def test_completed_chapter_never_changes(self) -> None:
        bp = ensure_active(_blueprint(10, 10_000))
        bp[0].completion_criteria = CompletionCriteria(min_key_events=0, min_interactions=0)
        bp = apply_turn(bp, TurnOutcome(text_length=20))
        done = bp[0].model_copy(deep=True)
        for _ in range(5):
            bp = apply_turn(bp, TurnOutcome(text_length=20, triggered_event_id="e"))
        assert bp[0] == done

    def test_at_most_one_active_over_many_turns(self) -> None:
        rng = random.Random(7)
        for n in range(0, 6):
            bp = ensure_active(_blueprint(*[rng.randint(1, 50) for _ in range(n)]))
            for c in bp:
                c.completion_criteria = CompletionCriteria(min_key_events=0, min_interactions=0)
            for _ in range(20):
                bp = apply_turn(bp, TurnOutcome(text_length=rng.randint(0, 30)))
                assert _active_count(bp) <= 1


class TestIsComplete:
    def test_zero_floors_use_literal_comparison(self) -> None:
        c = PlotChapter(
            title="x", target_word_count=0,
            completion_criteria=CompletionCriteria(min_key_events=0, min_interactions=0),
        )
        assert is_complete(c)

    def test_default_floors_require_event_and_interaction(self) -> None:
        c = PlotChapter(title="x", target_word_count=0, tracked_stats=TrackedStats(current_word_count=99))
        assert not is_complete(c)


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

class TestDrafts:
    def test_chapter_target_clamped(self) -> None:
        assert chapters.chapter_from_draft(ChapterDraft(target_word_count=100), (3000, 5000)).target_word_count == 3000
        assert chapters.chapter_from_draft(ChapterDraft(target_word_count=9000), (3000, 5000)).target_word_count == 5000

    def test_chapter_defaults(self) -> None:
        c = chapters.chapter_from_draft(ChapterDraft(title="T"), (1000, 4000))
        assert c.status == "pending"
        assert c.pacing == "standard"
        assert c.target_word_count == 3000
        assert c.completion_criteria == CompletionCriteria(min_key_events=1, min_interactions=1)

    def test_character_affinity_seed_in_range(self) -> None:
        rng = random.Random(1)
        for _ in range(50):
            c = chapters.character_from_draft(CharacterDraft(name="N"), rng)
            assert -10 <= c.affinity <= 10
            assert c.initial_affinity == c.affinity

    def test_invalid_archetype_replaced_from_catalog(self) -> None:
        c = chapters.character_from_draft(CharacterDraft(name="N", archetype="Accountant"), random.Random(3))
        assert c.archetype in dict(CHARACTER_ARCHETYPES)
        assert c.archetype_description

    def test_valid_archetype_gets_catalog_description(self) -> None:
        c = chapters.character_from_draft(CharacterDraft(name="N", archetype="Mentor"), random.Random(3))
        assert c.archetype == "Mentor"
        assert c.archetype_description == dict(CHARACTER_ARCHETYPES)["Mentor"]

    def test_organizations_have_no_archetype(self) -> None:
        c = chapters.character_from_draft(CharacterDraft(name="Guild", gender="organization", archetype="Mentor"), random.Random(3))
        assert c.archetype is None
        assert c.archetype_description is None

    def test_merge_drops_duplicate_names(self) -> None:
        existing = [SupportingCharacter(name="Borin")]
        merged = chapters.merge_characters(existing, [SupportingCharacter(name="Borin"), SupportingCharacter(name="Lyra")])
        assert [c.name for c in merged] == ["Borin", "Lyra"]


def _context() -> GameContext:
    return GameContext(character=Protagonist(name="Aria", trait="brave"), plot_blueprint=_blueprint(3000))


class TestAutoPlan:
    async def test_plans_chapters_and_characters(self, settings) -> None:
        raw = "```json\n" + json.dumps({
            "chapters": [
                {"title": "Storm", "targetWordCount": 12000, "pacing": "fast", "keyCharacters": ["Lyra"]},
                {"title": "Calm"},
            ],
            "newCharacters": [{"name": "Lyra", "role": "Bard", "gender": "female"}],
        }) + "\n```"
        provider = StubProvider(texts=[raw])
        result = await chapters.auto_plan(
            provider, settings, _context(), PlanRequest(word_count_range=(2000, 6000)), random.Random(0),
        )
        assert [c.title for c in result.chapters] == ["Storm", "Calm"]
        assert result.chapters[0].target_word_count == 6000
        assert result.chapters[0].pacing == "fast"
        assert all(c.status == "pending" for c in result.chapters)
        assert result.characters[0].name == "Lyra"
        assert provider.text_calls[0][0] == settings.planner_model

    async def test_bare_array_accepted(self, settings) -> None:
        provider = StubProvider(texts=['[{"title": "Only"}]'])
        result = await chapters.auto_plan(provider, settings, _context(), PlanRequest())
        assert [c.title for c in result.chapters] == ["Only"]
        assert result.characters == []

    async def test_malformed_output_raises(self, settings) -> None:
        provider = StubProvider(texts=['{"chapters": "nope"}'])
        with pytest.raises(MalformedResponseError):
            await chapters.auto_plan(provider, settings, _context(), PlanRequest())

    async def test_falls_back_to_lite_model(self, settings) -> None:
        provider = StubProvider(texts=['{"chapters": []}'], fail_models={"gemini-2.5-flash"})
        await chapters.auto_plan(provider, settings, _context(), PlanRequest())
        assert [m for m, _, _ in provider.text_calls] == ["gemini-2.5-flash", "gemini-flash-lite-latest"]

    async def test_exhausted(self, settings) -> None:
        provider = StubProvider(fail_models={"gemini-2.5-flash", "gemini-flash-lite-latest"})
        with pytest.raises(BackendExhaustedError):
            await chapters.auto_plan(provider, settings, _context(), PlanRequest())

    def test_extend_appends(self) -> None:
        existing = _blueprint(100)
        new = [PlotChapter(title="Next")]
        assert [c.title for c in chapters.extend_blueprint(existing, new)] == ["Chapter 0", "Next"]


class TestPlanNextChapter:
    async def test_prerequisite_references_previous_title(self, settings) -> None:
        provider = StubProvider(texts=['{"title": "Aftermath", "summary": "Dust settles"}'])
        chapter = await chapters.plan_next_chapter(provider, settings, _context())
        assert chapter.title == "Aftermath"
        assert chapter.status == "pending"
        assert chapter.prerequisites == ["Complete chapter: Chapter 0"]

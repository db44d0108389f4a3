"""SessionEngine regeneration and version switching."""

import pytest

from conftest import story_json
from protagonist.fallback import BackendExhaustedError
from protagonist.models import GameContext, StorySegment
from protagonist.versions import RegenerationNotAllowedError


async def _played(engine, provider, *texts):
    provider.texts.extend(story_json(t) for t in texts)
    await engine.start_session()
    for i in range(len(texts) - 1):
        await engine.advance(f"choice {i + 1}")


class TestRegenerate:
    async def test_full_adds_version(self, engine, provider):
        await _played(engine, provider, "opening", "second")
        provider.texts.append(story_json("second, rewritten", visualPrompt="a sunny road"))
        segment = await engine.regenerate("full")

        assert segment.text == "second, rewritten"
        assert segment.visual_prompt == "a sunny road"
        assert [v.text for v in segment.versions] == ["second", "second, rewritten"]
        assert segment.current_version_index == 1
        assert engine.state == "playing"

    async def test_full_replays_causing_choice_without_last_segment(self, engine, provider):
        await _played(engine, provider, "opening", "second")
        provider.texts.append(story_json("again"))
        await engine.regenerate("full")
        prompt = provider.text_calls[-1][1]
        assert '"choice 1"' in prompt
        assert "Turn 1: second" not in prompt

    async def test_text_mode_keeps_visual_prompt_and_choices(self, engine, provider):
        await _played(engine, provider, "opening", "second")
        before = engine.context.history[-1]
        provider.texts.append(story_json("prose only", choices=[], visualPrompt="ignored"))
        segment = await engine.regenerate("text")
        assert segment.text == "prose only"
        assert segment.visual_prompt == before.visual_prompt
        assert segment.choices == before.choices

    async def test_choices_mode_only_replaces_choices(self, engine, provider):
        await _played(engine, provider, "opening", "second")
        before = engine.context.history[-1]
        provider.texts.append('{"choices": ["Fight", "Flee"]}')
        segment = await engine.regenerate("choices")

        assert segment.choices == ["Fight", "Flee"]
        assert segment.text == before.text
        assert segment.visual_prompt == before.visual_prompt
        assert "Turn 1: second" in provider.text_calls[-1][1]

    async def test_opening_can_be_regenerated(self, engine, provider):
        await _played(engine, provider, "opening")
        provider.texts.append(story_json("a better opening"))
        segment = await engine.regenerate("full")
        assert segment.text == "a better opening"
        assert len(engine.context.history) == 1

    async def test_regeneration_does_not_checkpoint(self, engine, provider, coordinator):
        await _played(engine, provider, "opening")
        provider.texts.append(story_json("again"))
        await engine.regenerate("full")
        assert len(coordinator.saves) == 1

    async def test_non_regenerable_node_rejected_without_backend_call(self, engine, provider):
        history = [StorySegment(text="opening"), StorySegment(text="orphan", caused_by=None)]
        engine.context = GameContext(history=history, current_segment_id=history[-1].id)
        with pytest.raises(RegenerationNotAllowedError):
            await engine.regenerate("full")
        assert provider.text_calls == []

    async def test_empty_history_rejected(self, engine):
        with pytest.raises(RegenerationNotAllowedError):
            await engine.regenerate("choices")

    async def test_failure_keeps_context_and_stays_playable(self, engine, provider):
        await _played(engine, provider, "opening", "second")
        before = engine.context.model_copy(deep=True)
        provider.fail_models = {"gemini-2.5-pro", "gemini-2.5-flash"}
        with pytest.raises(BackendExhaustedError):
            await engine.regenerate("full")
        assert engine.context == before
        assert engine.state == "playing"
        assert engine.last_error


class TestSwitchVersion:
    async def test_cycle_returns_to_start(self, engine, provider):
        await _played(engine, provider, "opening", "second")
        for text in ("v1", "v2"):
            provider.texts.append(story_json(text))
            await engine.regenerate("full")
        seg_id = engine.context.history[-1].id

        seen = []
        for _ in range(3):
            assert engine.switch_version(seg_id, "next") is True
            seen.append(engine.context.current_segment.text)
        assert seen == ["second", "v1", "v2"]
        assert engine.context.current_segment.current_version_index == 2

    async def test_prev_wraps(self, engine, provider):
        await _played(engine, provider, "opening")
        provider.texts.append(story_json("alt"))
        await engine.regenerate("full")
        seg_id = engine.context.history[0].id
        engine.switch_version(seg_id, "prev")
        assert engine.context.history[0].text == "opening"
        engine.switch_version(seg_id, "prev")
        assert engine.context.history[0].text == "alt"

    async def test_single_version_is_noop(self, engine, provider):
        await _played(engine, provider, "opening")
        before = engine.context
        assert engine.switch_version(engine.context.history[0].id, "next") is False
        assert engine.context is before

    def test_unknown_segment(self, engine):
        assert engine.switch_version("missing", "next") is False

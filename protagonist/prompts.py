"""Handlebars prompt rendering for every generation call.

Each build_*_prompt() assembles a plain dict context from the GameContext and
renders one of the templates below. Templates use triple-stash ({{{x}}}) for
free text so player input reaches the model unescaped.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pybars

from protagonist.config import Settings
from protagonist.models import GameContext, PlotChapter, Protagonist, StorySegment, SupportingCharacter

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}

HISTORY_PREVIEW_CHARS = 150
MAX_PROMPT_CHARACTERS = 8


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


def _helper_take(this, options, items, count):
    """{{#take array N}}...{{/take}} - iterate over the first N items."""
    result = []
    for item in list(items)[:int(count)]:
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "take": _helper_take,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return compiled(context, helpers=_HELPERS)
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Templates ────────────────────────────────────────────

OPENING_TEMPLATE = """Role: interactive fiction engine. Task: OPENING segment for a "{{{genre}}}" story.
[SETTING] {{{custom_genre}}}{{#if story_name}} Title: {{{story_name}}}.{{/if}} Tone: {{tone}}.
[PROTAGONIST] Name: {{{character.name}}}, Traits: {{{character.trait}}}.
[NPCs]
{{#each npcs}}- {{{name}}}: {{{personality}}}
{{/each}}[NARRATIVE] Structure: {{{structure}}}, Technique: {{{technique}}}. {{{perspective}}}
{{#if chapter}}[CURRENT CHAPTER OBJECTIVE] Title: {{{chapter.title}}}
Context: {{{chapter.summary}}}
Events: {{{chapter.key_events}}}
Characters: {{{chapter.characters}}}
{{/if}}[CUSTOM] {{{custom_prompt}}}
Output requirements: valid JSON matching the response schema."""

TURN_TEMPLATE = """Role: interactive fiction engine. Task: {{mode}}.
[SETTING] {{{genre}}}, Tone: {{tone}}.
[CHARACTERS] Protagonist: {{{character.name}}}. Key NPCs:
{{#take npcs 8}}- {{{name}}} ({{{role}}}, Aff:{{affinity}})
{{/take}}[HISTORY]
{{#each history}}Turn {{index}}: {{{text}}}
User Choice: {{{caused_by}}}

{{/each}}[USER INPUT] "{{{choice}}}"
[NARRATIVE] {{{structure}}}, {{{technique}}}. {{{perspective}}}
{{#if chapter}}[CURRENT CHAPTER: {{{chapter.title}}}] Objective: {{{chapter.summary}}}. Key Events: {{{chapter.key_events}}}. Key NPCs: {{{chapter.characters}}}. PROGRESS: Word({{chapter.words}}/{{chapter.target}}), Event({{chapter.events}}/{{chapter.min_events}}), Interact({{chapter.interactions}}/{{chapter.min_interactions}}). If progress is near 100%, start wrapping up this chapter's conflicts to prepare for a transition.
{{/if}}{{#if events}}[PENDING EVENTS]
{{#each events}}(ID:{{id}}) {{{description}}}
{{/each}}{{/if}}[MEMORY] {{{memories.story_memory}}} {{{memories.long_term_memory}}}
[RULES] {{{pacing}}} {{{custom_prompt}}}
1. High dialogue ratio. 2. Update memory. 3. Output choices that advance the blueprint goals. Return JSON."""

PLAN_TEMPLATE = """Role: plot architect. Task: generate {{chapter_count}} chapters and {{new_char_count}} new characters ({{new_org_count}} organisations).
Genre: {{{genre}}}, Protagonist: {{{character.name}}}, Tone: {{tone}}. Architecture: {{{structure}}}, {{{technique}}}.
[INPUT] {{{outline}}}
Configuration: word count {{min_words}}-{{max_words}} per chapter.{{#if guidance}} Guidance: {{{guidance}}}{{/if}}
{{#if continuation}}[CONTINUE AFTER] {{{continuation}}}
{{/if}}[EXISTING CHARACTERS] {{{existing}}}
Archetypes to choose from: {{{archetypes}}}
Output JSON with "chapters" and "newCharacters"."""

NEXT_CHAPTER_TEMPLATE = """Task: generate the NEXT chapter after "{{{previous}}}".
Context: {{{context}}}
Events: {{{events}}}
Output JSON PlotChapter."""

SUMMARY_TEMPLATE = """Summarize the story so far. Max 200 words.

{{#each history}}{{{text}}}
{{/each}}"""

CHARACTER_DETAILS_TEMPLATE = """Task: brief persona for {{{name}}} ({{{role}}}, {{gender}}, {{category}}) in a {{{genre}}} story.
Personality: {{{personality}}}, Appearance: {{{appearance}}}.
Output JSON with "personality" and "appearance"."""

SCENE_TEMPLATE = """{{{shot}}}, {{{prompt}}}, style of {{{style}}}, {{{custom_style}}}. {{{character_info}}}. 8k, no text."""

AVATAR_TEMPLATE = """Portrait of {{gender}} character, {{{looks}}}. {{{genre}}} style. VTuber/Anime style. No text."""

SCENERY_SUFFIX = ", no humans, nobody, scenery only, landscape, architecture, environment"


# ── Context helpers ──────────────────────────────────────


def perspective_instruction(character: Protagonist) -> str:
    name = character.name
    rules = {
        "first": 'STRICT FIRST PERSON (POV: "I")',
        "second": 'STRICT SECOND PERSON (POV: "You")',
        "omniscient": f'STRICT OMNISCIENT VIEW. Refer to the protagonist by name ("{name}")',
    }.get(character.perspective, f'STRICT THIRD PERSON (POV: "{name}" / "he" / "she")')
    return f"[NARRATIVE PERSPECTIVE RULES] {rules}."


def pacing_instruction(chapter: PlotChapter | None) -> str:
    if chapter is None or chapter.pacing == "standard":
        return "Segment: 250-350 words."
    if chapter.pacing == "fast":
        return "PACING: FAST. 200-250 words."
    return "PACING: SLOW. 350-450 words."


def _npc(c: SupportingCharacter) -> dict[str, Any]:
    return {
        "name": c.name,
        "role": c.role,
        "affinity": c.affinity,
        "personality": c.personality,
    }


def _chapter(chapter: PlotChapter) -> dict[str, Any]:
    return {
        "title": chapter.title,
        "summary": chapter.summary,
        "key_events": chapter.key_events,
        "characters": ", ".join(chapter.key_characters),
        "words": chapter.tracked_stats.current_word_count,
        "target": chapter.target_word_count,
        "events": chapter.tracked_stats.events_triggered,
        "min_events": chapter.completion_criteria.min_key_events,
        "interactions": chapter.tracked_stats.interactions_count,
        "min_interactions": chapter.completion_criteria.min_interactions,
    }


def history_window(history: list[StorySegment]) -> list[dict[str, Any]]:
    """Last two segments: the older one truncated, the latest in full."""
    last = len(history) - 1
    window: list[dict[str, Any]] = []
    if last > 0:
        prev = history[last - 1]
        window.append({
            "index": last - 1,
            "text": prev.text[:HISTORY_PREVIEW_CHARS] + "...",
            "caused_by": prev.caused_by or "",
        })
    if last >= 0:
        seg = history[last]
        window.append({"index": last, "text": seg.text, "caused_by": seg.caused_by or ""})
    return window


def _base(context: GameContext, settings: Settings) -> dict[str, Any]:
    return {
        "genre": context.genre,
        "custom_genre": context.custom_genre or "",
        "story_name": context.story_name or "",
        "tone": context.world_settings.tone,
        "character": context.character.model_dump(),
        "npcs": [_npc(c) for c in context.supporting_characters],
        "perspective": perspective_instruction(context.character),
        "custom_prompt": settings.custom_prompt,
    }


# ── Builders ─────────────────────────────────────────────


def build_opening_prompt(context: GameContext, settings: Settings) -> str:
    ctx = _base(context, settings)
    ctx["structure"] = context.narrative_mode or "Auto"
    ctx["technique"] = context.narrative_technique or "Auto"
    if context.plot_blueprint:
        ctx["chapter"] = _chapter(context.plot_blueprint[0])
    return render_prompt(OPENING_TEMPLATE, ctx)


def build_turn_prompt(
    context: GameContext,
    settings: Settings,
    history: list[StorySegment],
    choice: str,
    mode: str = "full",
) -> str:
    active = next((c for c in context.plot_blueprint if c.status == "active"), None)
    ctx = _base(context, settings)
    ctx.update({
        "mode": mode,
        "history": history_window(history),
        "choice": choice,
        "structure": context.narrative_mode or "Linear",
        "technique": context.narrative_technique or "Default",
        "events": [
            {"id": e.id, "description": e.description}
            for e in context.scheduled_events if e.status == "pending"
        ],
        "memories": context.memories.model_dump(),
        "pacing": pacing_instruction(active),
    })
    if active is not None:
        ctx["chapter"] = _chapter(active)
    return render_prompt(TURN_TEMPLATE, ctx)


def build_plan_prompt(
    context: GameContext,
    *,
    outline: str,
    chapter_count: int,
    word_count_range: tuple[int, int],
    new_char_count: int,
    new_org_count: int,
    guidance: str | None,
    archetypes: list[str],
) -> str:
    existing_chapters = context.plot_blueprint
    ctx = {
        "chapter_count": chapter_count,
        "new_char_count": new_char_count,
        "new_org_count": new_org_count,
        "genre": context.genre,
        "character": context.character.model_dump(),
        "tone": context.world_settings.tone,
        "structure": context.narrative_mode or "Linear",
        "technique": context.narrative_technique or "Standard",
        "outline": outline or context.custom_genre or "Standard progression",
        "min_words": word_count_range[0],
        "max_words": word_count_range[1],
        "guidance": guidance or "",
        "continuation": ", ".join(c.title for c in existing_chapters),
        "existing": ", ".join(c.name for c in context.supporting_characters),
        "archetypes": ", ".join(archetypes),
    }
    return render_prompt(PLAN_TEMPLATE, ctx)


def build_next_chapter_prompt(context: GameContext) -> str:
    previous = context.plot_blueprint[-1].title if context.plot_blueprint else ""
    current = context.current_segment
    recent = current.text if current else context.memories.story_memory
    return render_prompt(NEXT_CHAPTER_TEMPLATE, {
        "previous": previous,
        "context": recent[:500],
        "events": "; ".join(
            e.description for e in context.scheduled_events if e.status == "pending"
        ),
    })


def build_summary_prompt(history: list[StorySegment]) -> str:
    return render_prompt(SUMMARY_TEMPLATE, {"history": [{"text": s.text} for s in history]})


def build_character_details_prompt(
    genre: str,
    name: str,
    role: str,
    gender: str,
    category: str,
    personality: str | None = None,
    appearance: str | None = None,
) -> str:
    return render_prompt(CHARACTER_DETAILS_TEMPLATE, {
        "genre": genre, "name": name, "role": role, "gender": gender,
        "category": category,
        "personality": personality or "New",
        "appearance": appearance or "New",
    })


def build_scene_prompt(
    prompt: str,
    style: str,
    custom_style: str = "",
    shot: str | None = None,
    character_info: str = "",
) -> str:
    return render_prompt(SCENE_TEMPLATE, {
        "shot": shot.replace("_", " ").lower() if shot else "cinematic shot",
        "prompt": prompt,
        "style": style,
        "custom_style": custom_style,
        "character_info": character_info,
    })


def build_avatar_prompt(genre: str, character: Protagonist | SupportingCharacter) -> str:
    if isinstance(character, Protagonist):
        looks = character.trait
    else:
        looks = character.appearance or character.personality
    return render_prompt(AVATAR_TEMPLATE, {
        "gender": character.gender,
        "looks": looks,
        "genre": genre,
    })

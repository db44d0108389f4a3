"""Secondary image artifacts: protagonist avatar, scene image, NPC avatar backfill.

These run concurrently once the primary text generation has succeeded and
join through asyncio.gather(return_exceptions=True): the join waits for
every launched task, and one task failing only costs that artifact. A
character whose avatar fails keeps its prior state.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from collections.abc import Awaitable

from pydantic import BaseModel, Field

from protagonist.config import Settings
from protagonist.fallback import invoke_with_fallback
from protagonist.llm import ContentProvider
from protagonist.models import GameContext, Protagonist, SupportingCharacter
from protagonist.prompts import SCENERY_SUFFIX, build_avatar_prompt, build_scene_prompt

logger = logging.getLogger(__name__)


class Artifacts(BaseModel):
    """Whatever secondary generation produced. None/missing means "keep prior state"."""

    avatar: str | None = None
    scene: str | None = None
    character_avatars: dict[str, str] = Field(default_factory=dict)  # character id → data URL


def to_data_url(image: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(image).decode('ascii')}"


async def render_image(provider: ContentProvider, settings: Settings, prompt: str) -> str:
    """Generate one image through the image fallback chain, as a data URL."""
    async def _op(model: str) -> str:
        image = await provider.generate_image(model, prompt)
        if not image:
            raise ValueError("No image generated")
        return to_data_url(image)

    return await invoke_with_fallback(settings.image_model, settings.image_fallbacks, _op)


async def render_avatar(
    provider: ContentProvider,
    settings: Settings,
    genre: str,
    character: Protagonist | SupportingCharacter,
) -> str:
    prompt = build_scene_prompt(
        build_avatar_prompt(genre, character),
        style=settings.avatar_style,
        custom_style=settings.custom_avatar_style,
        shot="CLOSE_UP",
    )
    return await render_image(provider, settings, prompt)


async def render_scene(provider: ContentProvider, settings: Settings, visual_prompt: str) -> str:
    prompt = build_scene_prompt(
        visual_prompt + SCENERY_SUFFIX,
        style=settings.background_style,
        custom_style=settings.custom_avatar_style,
        shot="EXTREME_LONG_SHOT",
    )
    return await render_image(provider, settings, prompt)


async def generate_artifacts(
    provider: ContentProvider,
    settings: Settings,
    context: GameContext,
    visual_prompt: str | None,
    include_avatar: bool,
) -> Artifacts:
    """Launch every wanted artifact concurrently and collect what succeeded.

    `visual_prompt` None skips the scene image. NPC avatars are only
    generated for characters that have none yet.
    """
    jobs: list[tuple[str, str | None, Awaitable[str]]] = []
    if include_avatar:
        jobs.append(("avatar", None, render_avatar(provider, settings, context.genre, context.character)))
    if visual_prompt is not None:
        jobs.append(("scene", None, render_scene(provider, settings, visual_prompt)))
    if settings.backfill_avatars:
        for sc in context.supporting_characters:
            if not sc.avatar:
                jobs.append(("npc", sc.id, render_avatar(provider, settings, context.genre, sc)))

    if not jobs:
        return Artifacts()

    results = await asyncio.gather(*(job for _, _, job in jobs), return_exceptions=True)

    artifacts = Artifacts()
    for (kind, char_id, _), result in zip(jobs, results):
        if isinstance(result, BaseException):
            if isinstance(result, asyncio.CancelledError):
                raise result
            logger.warning("Secondary artifact %s%s failed: %s", kind, f" ({char_id})" if char_id else "", result)
            continue
        if kind == "avatar":
            artifacts.avatar = result
        elif kind == "scene":
            artifacts.scene = result
        else:
            artifacts.character_avatars[char_id] = result
    return artifacts


def apply_artifacts(context: GameContext, artifacts: Artifacts) -> GameContext:
    """Fold successful artifacts into a new context."""
    update: dict = {}
    if artifacts.avatar:
        update["character"] = context.character.model_copy(update={"avatar": artifacts.avatar})
    if artifacts.character_avatars:
        update["supporting_characters"] = [
            c.model_copy(update={"avatar": artifacts.character_avatars[c.id]})
            if c.id in artifacts.character_avatars else c
            for c in context.supporting_characters
        ]
    if artifacts.scene and context.current_segment_id:
        update["history"] = [
            s.model_copy(update={"background_image": artifacts.scene})
            if s.id == context.current_segment_id else s
            for s in context.history
        ]
    return context.model_copy(update=update) if update else context

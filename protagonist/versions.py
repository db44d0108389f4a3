"""Per-segment version history for non-destructive regeneration.

A segment's `versions` list is append-only; `current_version_index` selects
the rendering mirrored in the segment's live fields (text, choices,
visual_prompt, mood, location). The first regeneration snapshots the
existing rendering as version 0 and appends the new one as version 1.

All functions return new StorySegment objects and leave their input alone.
"""

from __future__ import annotations

from typing import Literal

from protagonist.models import SegmentVersion, StorySegment, StoryResponse

RegenerationMode = Literal["full", "text", "choices"]
Direction = Literal["prev", "next"]

_LIVE_FIELDS = ("text", "choices", "visual_prompt", "mood", "location")


class RegenerationNotAllowedError(ValueError):
    """The segment cannot be regenerated (no causal choice to replay)."""


def check_regenerable(history: list[StorySegment], mode: RegenerationMode) -> StorySegment:
    """Return the segment a regeneration would replace, or raise.

    Only the latest segment is regenerated. Text/full regeneration replays
    the segment's `caused_by`, so a non-opening segment without one is a
    non-regenerable node. Choices regeneration needs no replay.
    """
    if not history:
        raise RegenerationNotAllowedError("Nothing to regenerate: the story has no segments")
    last_idx = len(history) - 1
    segment = history[last_idx]
    if mode != "choices" and last_idx > 0 and not segment.caused_by:
        raise RegenerationNotAllowedError(f"Segment {segment.id} is a non-regenerable node")
    return segment


def snapshot(segment: StorySegment) -> SegmentVersion:
    return SegmentVersion(
        text=segment.text,
        choices=list(segment.choices),
        visual_prompt=segment.visual_prompt,
        mood=segment.mood,
        location=segment.location,
    )


def version_from_response(
    response: StoryResponse, previous: StorySegment, mode: RegenerationMode
) -> SegmentVersion:
    """Build the new rendering for a text or full regeneration.

    Text mode rewrites the prose only: prior choices survive unless the
    backend returned new ones, and the prior visual prompt is kept.
    """
    if mode == "text":
        return SegmentVersion(
            text=response.text,
            choices=list(response.choices) or list(previous.choices),
            visual_prompt=previous.visual_prompt,
            mood=response.mood,
            location=response.location or previous.location,
        )
    return SegmentVersion(
        text=response.text,
        choices=list(response.choices),
        visual_prompt=response.visual_prompt,
        mood=response.mood,
        location=response.location,
    )


def _mirror(segment: StorySegment, index: int) -> StorySegment:
    version = segment.versions[index]
    segment.current_version_index = index
    for field in _LIVE_FIELDS:
        value = getattr(version, field)
        setattr(segment, field, list(value) if isinstance(value, list) else value)
    return segment


def add_version(segment: StorySegment, version: SegmentVersion) -> StorySegment:
    """Append `version` and make it active, snapshotting the original first."""
    updated = segment.model_copy(deep=True)
    if not updated.versions:
        updated.versions = [snapshot(updated)]
    updated.versions.append(version)
    return _mirror(updated, len(updated.versions) - 1)


def switch_version(segment: StorySegment, direction: Direction) -> StorySegment:
    """Move the active version by ±1 with wraparound.

    Returns `segment` itself (no copy) when there is nothing to switch:
    fewer than two versions, or the computed index is the current one.
    """
    count = len(segment.versions)
    if count < 2:
        return segment
    step = 1 if direction == "next" else -1
    new_idx = (segment.current_version_index + step) % count
    if new_idx == segment.current_version_index:
        return segment
    return _mirror(segment.model_copy(deep=True), new_idx)


def edit_live(segment: StorySegment, **fields) -> StorySegment:
    """Update live fields and, if versions exist, the active version with them."""
    updated = segment.model_copy(deep=True, update=fields)
    if updated.versions:
        active = updated.versions[updated.current_version_index]
        updated.versions[updated.current_version_index] = active.model_copy(
            update={k: v for k, v in fields.items() if k in _LIVE_FIELDS}
        )
    return updated

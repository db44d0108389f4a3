"""Pydantic request/response models for API endpoints."""

from typing import Literal

from pydantic import BaseModel

from protagonist.models import SavedGame


class ChoiceBody(BaseModel):
    choice: str
    from_index: int | None = None


class RegenerateBody(BaseModel):
    mode: Literal["full", "text", "choices"] = "full"


class SwitchVersionBody(BaseModel):
    direction: Literal["prev", "next"]


class PlanBody(BaseModel):
    outline: str = ""
    chapter_count: int = 3
    word_count_range: tuple[int, int] = (3000, 5000)
    new_char_count: int = 3
    new_org_count: int = 1
    custom_guidance: str | None = None


class ImportBody(BaseModel):
    saves: list[SavedGame]


class SegmentTextBody(BaseModel):
    text: str


class ReplaceBody(BaseModel):
    find: str
    replace: str


class EventBody(BaseModel):
    description: str

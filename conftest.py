import json
import os
import shutil
from pathlib import Path

import pytest

TEST_DATA_DIR = Path("data-tests")

# protagonist.app builds a default app at import time; keep it off ./data.
os.environ.setdefault("DATA_DIR", str(TEST_DATA_DIR))

from protagonist.checkpoints import PersistenceCoordinator  # noqa: E402
from protagonist.config import Settings  # noqa: E402
from protagonist.llm import LLMError  # noqa: E402
from protagonist.models import (  # noqa: E402
    GameContext,
    PlotChapter,
    Protagonist,
    ScheduledEvent,
    Skill,
    SupportingCharacter,
)
from protagonist.pipeline import SessionEngine  # noqa: E402
from protagonist.storage import JsonStore  # noqa: E402


# ── Scripted provider ────────────────────────────────────


def memory_update(**overrides) -> dict:
    data = {
        "memoryZone": "tavern",
        "storyMemory": "The story so far.",
        "longTermMemory": "",
        "coreMemory": "",
        "characterRecord": "",
        "inventory": "A rusty sword",
    }
    data.update(overrides)
    return data


def story_json(text="The rain falls on the old tavern.", **overrides) -> str:
    """Raw model output for a StoryResponse, camelCase keys like the backend returns."""
    data = {
        "text": text,
        "choices": ["Open the door", "Wait"],
        "visualPrompt": "a rainy tavern at night",
        "mood": "mysterious",
        "memoryUpdate": memory_update(),
        "location": "Crossroads Tavern",
    }
    data.update(overrides)
    return json.dumps(data)


class StubProvider:
    """ContentProvider returning scripted output, in call order.

    `texts` items are returned by successive generate_text calls; an
    Exception item is raised instead. Models listed in `fail_models` raise
    LLMError without consuming a scripted item.
    """

    def __init__(self, texts=None, image=b"\x89PNG", fail_models=(), image_error=None):
        self.texts = list(texts or [])
        self.image = image
        self.fail_models = set(fail_models)
        self.image_error = image_error
        self.text_calls: list[tuple[str, str, dict | None]] = []
        self.image_calls: list[tuple[str, str]] = []

    async def generate_text(self, model, prompt, schema=None):
        self.text_calls.append((model, prompt, schema))
        if model in self.fail_models:
            raise LLMError(f"{model} unavailable")
        if not self.texts:
            raise AssertionError("StubProvider ran out of scripted responses")
        item = self.texts.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def generate_image(self, model, prompt):
        self.image_calls.append((model, prompt))
        if model in self.fail_models:
            raise LLMError(f"{model} unavailable")
        if self.image_error is not None:
            raise self.image_error
        return self.image


# ── Fixtures ─────────────────────────────────────────────


@pytest.fixture(autouse=True)
def clean_test_data():
    """Wipe data-tests/ before every test."""
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    yield


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def provider():
    return StubProvider()


@pytest.fixture
def store(tmp_path):
    return JsonStore(tmp_path)


@pytest.fixture
def coordinator(store):
    return PersistenceCoordinator(store)


@pytest.fixture
def setup_context():
    """A ready-to-start setup: protagonist, one NPC, one event, two chapters."""
    return GameContext(
        genre="fantasy",
        character=Protagonist(
            name="Aria",
            gender="female",
            trait="Stubborn swordswoman",
            skills=[Skill(name="Parry", description="Deflect a blow", level=2)],
        ),
        supporting_characters=[
            SupportingCharacter(name="Borin", role="Innkeeper", personality="Gruff", avatar="data:image/png;base64,AA=="),
        ],
        scheduled_events=[ScheduledEvent(id="evt-1", description="A stranger arrives")],
        plot_blueprint=[
            PlotChapter(id="ch-1", title="Arrival", target_word_count=10, key_characters=["Borin"]),
            PlotChapter(id="ch-2", title="The Road", target_word_count=5000),
        ],
    )


@pytest.fixture
def engine(settings, provider, coordinator, setup_context):
    eng = SessionEngine(settings, provider, coordinator)
    eng.new_setup(setup_context)
    return eng

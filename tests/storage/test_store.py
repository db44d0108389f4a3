"""Tests for protagonist.storage: JSON file store."""

from protagonist.models import GalleryItem, GameContext, SavedGame, StorySegment
from protagonist.storage import JsonStore


def _save(session_id: str = "s1", **kw) -> SavedGame:
    seg = StorySegment(text="hello")
    return SavedGame(
        session_id=session_id, story_id=seg.id, type="auto",
        context=GameContext(session_id=session_id, history=[seg], current_segment_id=seg.id),
        **kw,
    )


def test_creates_directories(tmp_path):
    JsonStore(tmp_path / "data")
    assert (tmp_path / "data" / "saves").is_dir()
    assert (tmp_path / "data" / "gallery").is_dir()


def test_empty_store(store):
    assert store.get_all() == []
    assert store.get_gallery() == []


def test_save_and_get_all_roundtrip(store):
    save = _save(summary="A beginning...")
    store.save(save)
    [loaded] = store.get_all()
    assert loaded == save
    assert loaded.context.history[0].text == "hello"


def test_save_is_upsert(store):
    save = _save()
    store.save(save)
    store.save(save)
    assert len(store.get_all()) == 1


def test_save_many_and_delete_many(store):
    saves = [_save(), _save(), _save("s2")]
    store.save_many(saves)
    assert len(store.get_all()) == 3
    store.delete_many([saves[0].id, saves[1].id])
    assert [s.id for s in store.get_all()] == [saves[2].id]


def test_delete_missing_is_noop(store):
    store.delete("does-not-exist")


def test_gallery_ops(store):
    item = GalleryItem(image="data:image/png;base64,AA==", prompt="castle", style="anime")
    store.save_gallery_item(item)
    assert store.get_gallery() == [item]
    store.delete_gallery_item(item.id)
    assert store.get_gallery() == []


def test_one_file_per_record(tmp_path):
    store = JsonStore(tmp_path)
    save = _save()
    store.save(save)
    assert (tmp_path / "saves" / f"{save.id}.json").is_file()

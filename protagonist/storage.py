"""JSON file storage for checkpoints and gallery items.

All records are stored as flat JSON files under a configurable base
directory. There is no database or ORM; reads and writes go through plain
helper methods that load and dump JSON.

Directory layout:

    {base}/
      config.json           ← Settings (see protagonist.config)
      saves/
        {save_id}.json      ← one SavedGame per file
      gallery/
        {item_id}.json      ← one GalleryItem per file

The engine only talks to this through the PersistenceService protocol, so
any store with the same methods can be swapped in.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from protagonist.models import GalleryItem, SavedGame


class PersistenceService(Protocol):
    def get_all(self) -> list[SavedGame]: ...
    def save(self, save: SavedGame) -> None: ...
    def save_many(self, saves: list[SavedGame]) -> None: ...
    def delete(self, save_id: str) -> None: ...
    def delete_many(self, save_ids: list[str]) -> None: ...
    def get_gallery(self) -> list[GalleryItem]: ...
    def save_gallery_item(self, item: GalleryItem) -> None: ...
    def delete_gallery_item(self, item_id: str) -> None: ...


class JsonStore:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._saves_dir = base_path / "saves"
        self._gallery_dir = base_path / "gallery"
        self._saves_dir.mkdir(parents=True, exist_ok=True)
        self._gallery_dir.mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def _save_file(self, save_id: str) -> Path:
        return self._saves_dir / f"{save_id}.json"

    def get_all(self) -> list[SavedGame]:
        return [
            SavedGame.model_validate_json(path.read_text())
            for path in sorted(self._saves_dir.glob("*.json"))
        ]

    def save(self, save: SavedGame) -> None:
        """Upsert a checkpoint by id."""
        self._save_file(save.id).write_text(save.model_dump_json(indent=2))

    def save_many(self, saves: list[SavedGame]) -> None:
        for save in saves:
            self.save(save)

    def delete(self, save_id: str) -> None:
        self._save_file(save_id).unlink(missing_ok=True)

    def delete_many(self, save_ids: list[str]) -> None:
        for save_id in save_ids:
            self.delete(save_id)

    # ------------------------------------------------------------------
    # Gallery
    # ------------------------------------------------------------------

    def _gallery_file(self, item_id: str) -> Path:
        return self._gallery_dir / f"{item_id}.json"

    def get_gallery(self) -> list[GalleryItem]:
        return [
            GalleryItem.model_validate_json(path.read_text())
            for path in sorted(self._gallery_dir.glob("*.json"))
        ]

    def save_gallery_item(self, item: GalleryItem) -> None:
        self._gallery_file(item.id).write_text(item.model_dump_json(indent=2))

    def delete_gallery_item(self, item_id: str) -> None:
        self._gallery_file(item_id).unlink(missing_ok=True)

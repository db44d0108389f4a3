"""Checkpoint coordination: build, deduplicate, persist, delete and undo.

The coordinator owns the in-memory list of SavedGame records (newest first)
and is the only code that creates them. Storage writes are scheduled as
background tasks that run one at a time, in the order they were issued.
The in-memory list is authoritative the moment a call returns, and a
failed write is logged and recorded in `warnings` rather than raised.

Deduplication: at most one auto or manual checkpoint exists per
(session_id, story_id). A repeated auto checkpoint is skipped silently; a
repeated manual one returns `created=False` ("already saved").

Deletes push the removed group onto an undo stack that keeps the last
UNDO_LIMIT groups for the lifetime of the coordinator; undo_delete()
reinserts the most recent group verbatim.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from typing import Any, NamedTuple

from protagonist.models import GalleryItem, GameContext, SaveMeta, SavedGame, SaveType, new_id, utc_now
from protagonist.storage import PersistenceService

logger = logging.getLogger(__name__)

SUMMARY_CHARS = 50
SETUP_SUMMARY = "Custom initial setup"
UNDO_LIMIT = 20


class PersistenceError(RuntimeError):
    """A storage read or write failed. Never reverts in-memory state."""


class CheckpointResult(NamedTuple):
    save: SavedGame
    created: bool


class PersistenceCoordinator:
    def __init__(self, store: PersistenceService) -> None:
        self._store = store
        self._saves: list[SavedGame] = []
        self._gallery: list[GalleryItem] = []
        self._undo_stack: deque[list[SavedGame]] = deque(maxlen=UNDO_LIMIT)
        self._pending: set[asyncio.Task] = set()
        self._tail: asyncio.Task | None = None
        self.warnings: list[PersistenceError] = []
        self.reload()

    # ------------------------------------------------------------------
    # Loading and queries
    # ------------------------------------------------------------------

    def reload(self) -> None:
        """Read all checkpoints and gallery items from the store."""
        try:
            saves = self._store.get_all()
            gallery = self._store.get_gallery()
        except Exception as e:
            raise PersistenceError(f"Failed to load saved data: {e}") from e
        self._saves = sorted(saves, key=lambda s: s.timestamp, reverse=True)
        self._gallery = sorted(gallery, key=lambda g: g.timestamp, reverse=True)

    @property
    def saves(self) -> list[SavedGame]:
        return list(self._saves)

    @property
    def gallery(self) -> list[GalleryItem]:
        return list(self._gallery)

    @property
    def can_undo(self) -> bool:
        return bool(self._undo_stack)

    def get(self, save_id: str) -> SavedGame | None:
        return next((s for s in self._saves if s.id == save_id), None)

    def find(self, session_id: str, story_id: str) -> SavedGame | None:
        for s in self._saves:
            if s.session_id == session_id and s.story_id == story_id and s.type != "setup":
                return s
        return None

    # ------------------------------------------------------------------
    # Creating checkpoints
    # ------------------------------------------------------------------

    def build(
        self, context: GameContext, save_type: SaveType, choice_text: str | None = None
    ) -> SavedGame:
        """Snapshot `context` into a new SavedGame without storing it."""
        snapshot = context.model_copy(deep=True)
        meta = SaveMeta(
            turn_count=len(snapshot.history),
            total_skill_level=sum(s.level for s in snapshot.character.skills),
        )
        common: dict[str, Any] = {
            "id": new_id(),
            "session_id": snapshot.session_id,
            "timestamp": utc_now(),
            "story_name": snapshot.story_name,
            "character_name": snapshot.character.name,
            "genre": snapshot.genre,
            "context": snapshot,
            "type": save_type,
            "meta_data": meta,
        }
        segment = snapshot.current_segment
        if save_type == "setup" or segment is None:
            return SavedGame(summary=SETUP_SUMMARY, choice_text=choice_text, **common)

        idx = next(i for i, s in enumerate(snapshot.history) if s.id == segment.id)
        return SavedGame(
            story_id=segment.id,
            parent_id=snapshot.history[idx - 1].id if idx > 0 else None,
            summary=segment.text[:SUMMARY_CHARS] + "...",
            location=segment.location,
            choice_text=choice_text if choice_text is not None else segment.caused_by,
            **common,
        )

    def checkpoint(
        self, context: GameContext, save_type: SaveType, choice_text: str | None = None
    ) -> CheckpointResult:
        """Create and persist a checkpoint of `context`, unless one exists already.

        Auto and manual checkpoints need an active segment and are keyed by
        (session_id, active segment id). Setup checkpoints are never deduplicated.
        """
        if save_type != "setup":
            segment = context.current_segment
            if segment is None:
                raise ValueError("Cannot checkpoint a session without an active segment")
            existing = self.find(context.session_id, segment.id)
            if existing is not None:
                logger.info(
                    "Checkpoint for session=%s story=%s already exists (%s save skipped)",
                    context.session_id, segment.id, save_type,
                )
                return CheckpointResult(existing, created=False)

        save = self.build(context, save_type, choice_text)
        self._saves.insert(0, save)
        logger.info("Created %s checkpoint %s for session=%s", save_type, save.id, save.session_id)
        self._schedule(self._store.save, save, description=f"save checkpoint {save.id}")
        return CheckpointResult(save, created=True)

    def import_saves(self, saves: list[SavedGame]) -> int:
        """Insert checkpoints whose id is not present yet. Returns the count added."""
        known = {s.id for s in self._saves}
        added: list[SavedGame] = []
        for save in saves:
            if save.id not in known:
                added.append(save)
                known.add(save.id)
        if added:
            self._saves.extend(added)
            self._sort()
            self._schedule(self._store.save_many, added, description=f"import {len(added)} checkpoint(s)")
        return len(added)

    # ------------------------------------------------------------------
    # Deleting and undo
    # ------------------------------------------------------------------

    def delete(self, save_id: str) -> SavedGame | None:
        save = self.get(save_id)
        if save is None:
            return None
        self._undo_stack.append([save])
        self._saves = [s for s in self._saves if s.id != save_id]
        logger.info("Deleted checkpoint %s", save_id)
        self._schedule(self._store.delete, save_id, description=f"delete checkpoint {save_id}")
        return save

    def delete_session(self, session_id: str) -> list[SavedGame]:
        removed = [s for s in self._saves if s.session_id == session_id]
        if not removed:
            return []
        self._undo_stack.append(removed)
        self._saves = [s for s in self._saves if s.session_id != session_id]
        ids = [s.id for s in removed]
        logger.info("Deleted %d checkpoint(s) of session %s", len(ids), session_id)
        self._schedule(self._store.delete_many, ids, description=f"delete session {session_id}")
        return removed

    def undo_delete(self) -> list[SavedGame]:
        """Reinsert the most recently deleted group. Returns it ([] if nothing to undo)."""
        if not self._undo_stack:
            return []
        group = self._undo_stack.pop()
        self._saves.extend(group)
        self._sort()
        logger.info("Restored %d deleted checkpoint(s)", len(group))
        self._schedule(self._store.save_many, group, description=f"restore {len(group)} checkpoint(s)")
        return group

    # ------------------------------------------------------------------
    # Gallery
    # ------------------------------------------------------------------

    def add_gallery_item(self, image: str, prompt: str, style: str) -> GalleryItem:
        item = GalleryItem(image=image, prompt=prompt, style=style)
        self._gallery.insert(0, item)
        self._schedule(self._store.save_gallery_item, item, description=f"save gallery item {item.id}")
        return item

    def delete_gallery_item(self, item_id: str) -> bool:
        before = len(self._gallery)
        self._gallery = [g for g in self._gallery if g.id != item_id]
        if len(self._gallery) == before:
            return False
        self._schedule(self._store.delete_gallery_item, item_id, description=f"delete gallery item {item_id}")
        return True

    # ------------------------------------------------------------------
    # Background writes
    # ------------------------------------------------------------------

    def _sort(self) -> None:
        self._saves.sort(key=lambda s: s.timestamp, reverse=True)

    def _schedule(self, fn: Callable[..., None], *args: Any, description: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop (sync caller): write inline.
            self._run_write(fn, args, description)
            return
        # Writes reach the store in issue order: each one waits for the previous.
        task = loop.create_task(self._write(fn, args, description, self._tail))
        self._tail = task
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(
        self, fn: Callable[..., None], args: tuple, description: str, previous: asyncio.Task | None
    ) -> None:
        if (
            previous is not None
            and not previous.done()
            and previous.get_loop() is asyncio.get_running_loop()
        ):
            await asyncio.wait({previous})
        try:
            await asyncio.to_thread(fn, *args)
        except Exception as e:
            self._record_failure(description, e)

    def _run_write(self, fn: Callable[..., None], args: tuple, description: str) -> None:
        try:
            fn(*args)
        except Exception as e:
            self._record_failure(description, e)

    def _record_failure(self, description: str, error: Exception) -> None:
        failure = PersistenceError(f"{description} failed: {error}")
        failure.__cause__ = error
        self.warnings.append(failure)
        logger.warning("Persistence write failed: %s", failure)

    async def flush(self) -> None:
        """Wait for every scheduled storage write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

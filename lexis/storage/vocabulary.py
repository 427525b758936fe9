"""
Vocabulary Store
----------------
Downstream bookkeeping for every target-language word the reader has
been shown. The scheduler calls record() once per freshly annotated
paragraph. Updates are in-memory; inside an event loop the JSON file is
rewritten in the default executor, one write at a time, and flush()
waits for the last one.
"""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional, Protocol, Sequence

from loguru import logger

from lexis.schemas import Segment, SegmentLanguage, VocabularyEntry
from lexis.utils.helpers import load_json, now_ms, save_json


class VocabularySink(Protocol):
    def record(self, segments: Sequence[Segment]) -> None:
        ...


class VocabularyStore:
    """Target words keyed case-insensitively, with seen counts and timestamps."""

    def __init__(self, path: Optional[str | Path] = None) -> None:
        self.path = Path(path) if path else None
        self._entries: dict[str, VocabularyEntry] = {}
        self._pending: Optional[asyncio.Future] = None
        self._dirty = False
        self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            data = load_json(self.path)
            self._entries = {k: VocabularyEntry.model_validate(v) for k, v in data.items()}
        except (OSError, ValueError) as exc:
            logger.warning(f"[Vocabulary] Ignoring unreadable store {self.path}: {exc}")
            self._entries = {}

    def _snapshot(self) -> dict:
        return {k: v.model_dump(mode="json") for k, v in self._entries.items()}

    def _save(self) -> None:
        """Persist now when called outside an event loop, otherwise in the default executor."""
        if self.path is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            save_json(self._snapshot(), self.path)
            return
        if self._pending is not None:
            self._dirty = True
            return
        self._pending = loop.run_in_executor(None, save_json, self._snapshot(), self.path)
        self._pending.add_done_callback(self._saved)

    def _saved(self, future: asyncio.Future) -> None:
        self._pending = None
        if not future.cancelled() and future.exception() is not None:
            logger.warning(f"[Vocabulary] Could not write {self.path}: {future.exception()}")
        if self._dirty:
            self._dirty = False
            self._save()

    async def flush(self) -> None:
        """Wait until every queued write has reached disk."""
        while self._pending is not None:
            await asyncio.wait({self._pending})

    # --- Public API -----------------------------------------------------------

    def record(self, segments: Sequence[Segment]) -> None:
        now = now_ms()
        added = 0
        for seg in segments:
            if seg.language is not SegmentLanguage.TARGET:
                continue
            key = seg.text.strip().lower()
            if not key:
                continue
            existing = self._entries.get(key)
            if existing:
                existing.count += 1
                existing.last_seen = now
            else:
                self._entries[key] = VocabularyEntry(
                    target_word=seg.text.strip(),
                    source_base_form=seg.source_base_form,
                    first_seen=now,
                    last_seen=now,
                )
                added += 1
        if added:
            logger.debug(f"[Vocabulary] {added} new word(s), {len(self._entries)} total")
        self._save()

    def entries(self) -> list[VocabularyEntry]:
        return sorted(self._entries.values(), key=lambda e: e.target_word.casefold())

    def reinforcement_words(self, limit: int = 20) -> list[str]:
        """Least-practised words first: the hints passed to the enrichment service."""
        ranked = sorted(self._entries.values(), key=lambda e: (e.count, -e.last_seen))
        return [e.target_word for e in ranked[:limit]]

    def clear(self) -> None:
        self._entries = {}
        if self.path is not None and self.path.exists():
            self.path.unlink()
        logger.info("[Vocabulary] Cleared")

    def __len__(self) -> int:
        return len(self._entries)

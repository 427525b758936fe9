"""
Paragraph Cache
---------------
Session-scoped store of annotated paragraphs, keyed by

    (document_id, chunk_index, paragraph_index, density)

so results for different densities coexist. The backing mapping may be
shared with other features; this cache only ever touches keys under its
own namespace prefix.

Eviction: before each write, if the backing store holds more than
max_entries items, the evict_count oldest namespace entries (by
processed_at) are removed.

Persistence (optional): snapshot() / load() round-trip the namespace
entries through a JSON file so a warm cache survives restarts.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, MutableMapping, Optional

from loguru import logger
from pydantic import ValidationError

from lexis.schemas import CacheEntry, Segment
from lexis.utils.helpers import load_json, now_ms, save_json

NAMESPACE = "lexis_chunk_"
MAX_ENTRIES = 200
EVICT_COUNT = 50


class SessionCache:
    """Size-bounded key/value store with oldest-first eviction."""

    def __init__(
        self,
        namespace: str = NAMESPACE,
        max_entries: int = MAX_ENTRIES,
        evict_count: int = EVICT_COUNT,
        backend: Optional[MutableMapping[str, Any]] = None,
        path: Optional[str | Path] = None,
    ) -> None:
        self.namespace = namespace
        self.max_entries = max_entries
        self.evict_count = evict_count
        self.store: MutableMapping[str, Any] = backend if backend is not None else {}
        self.path = Path(path) if path else None
        self.hits = 0
        self.misses = 0

    @classmethod
    def from_config(cls, config: dict) -> "SessionCache":
        cache = cls(
            namespace=config.get("namespace", NAMESPACE),
            max_entries=config.get("max_entries", MAX_ENTRIES),
            evict_count=config.get("evict_count", EVICT_COUNT),
            path=config.get("path"),
        )
        cache.load()
        return cache

    def key(self, document_id: str, chunk_index: int, paragraph_index: int, density: int) -> str:
        return f"{self.namespace}{document_id}_{chunk_index}_{paragraph_index}_{density}"

    # --- Public API -----------------------------------------------------------

    def get(
        self, document_id: str, chunk_index: int, paragraph_index: int, density: int
    ) -> Optional[list[Segment]]:
        raw = self.store.get(self.key(document_id, chunk_index, paragraph_index, density))
        if raw is None:
            self.misses += 1
            return None
        try:
            entry = raw if isinstance(raw, CacheEntry) else CacheEntry.model_validate(raw)
        except ValidationError:
            logger.warning(f"[Cache] Dropping unreadable entry for {document_id}/{chunk_index}/{paragraph_index}")
            self.store.pop(self.key(document_id, chunk_index, paragraph_index, density), None)
            self.misses += 1
            return None
        self.hits += 1
        return list(entry.segments)

    def set(
        self,
        document_id: str,
        chunk_index: int,
        paragraph_index: int,
        density: int,
        segments: list[Segment],
    ) -> None:
        self.prune()
        entry = CacheEntry(segments=list(segments), processed_at=now_ms())
        self.store[self.key(document_id, chunk_index, paragraph_index, density)] = entry.model_dump(mode="json")

    def prune(self) -> int:
        """Evict the oldest namespace entries once the store is over capacity."""
        if len(self.store) <= self.max_entries:
            return 0

        aged: list[tuple[float, str]] = []
        for key, raw in self.store.items():
            if not key.startswith(self.namespace):
                continue
            try:
                ts = float(raw.get("processed_at", 0)) if isinstance(raw, dict) else float(raw.processed_at)
            except (AttributeError, TypeError, ValueError):
                ts = 0.0
            aged.append((ts, key))

        aged.sort()
        victims = [key for _, key in aged[: self.evict_count]]
        for key in victims:
            del self.store[key]
        logger.debug(f"[Cache] Evicted {len(victims)} oldest entries ({len(self.store)} remain)")
        return len(victims)

    def clear(self) -> None:
        for key in [k for k in self.store if k.startswith(self.namespace)]:
            del self.store[key]

    def __len__(self) -> int:
        return sum(1 for k in self.store if k.startswith(self.namespace))

    # --- Persistence ----------------------------------------------------------

    def load(self) -> int:
        if self.path is None or not self.path.exists():
            return 0
        try:
            data = load_json(self.path)
        except (OSError, ValueError) as exc:
            logger.warning(f"[Cache] Could not read {self.path}: {exc}")
            return 0
        loaded = 0
        for key, raw in data.items():
            if key.startswith(self.namespace):
                self.store[key] = raw
                loaded += 1
        logger.info(f"[Cache] Loaded {loaded} entries from {self.path}")
        return loaded

    def snapshot(self) -> None:
        if self.path is None:
            return
        entries = {k: v for k, v in self.store.items() if k.startswith(self.namespace)}
        save_json(entries, self.path)
        logger.debug(f"[Cache] Saved {len(entries)} entries -> {self.path}")

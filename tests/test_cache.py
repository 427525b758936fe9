"""Tests for the namespaced paragraph cache."""
from __future__ import annotations

import itertools

import pytest

from lexis.storage import cache as cache_module
from lexis.storage.cache import SessionCache
from tests.fakes import annotate


@pytest.fixture
def ticking_clock(monkeypatch):
    ticks = itertools.count(1000)
    monkeypatch.setattr(cache_module, "now_ms", lambda: float(next(ticks)))


def test_key_includes_every_coordinate():
    cache = SessionCache()
    assert cache.key("1342", 3, 7, 20) == "lexis_chunk_1342_3_7_20"


def test_densities_are_cached_separately():
    cache = SessionCache()
    cache.set("1342", 0, 0, 20, annotate("one"))

    assert cache.get("1342", 0, 0, 20) == annotate("one")
    assert cache.get("1342", 0, 0, 30) is None
    assert (cache.hits, cache.misses) == (1, 1)


def test_oldest_entries_are_evicted_once_over_capacity(ticking_clock):
    cache = SessionCache(max_entries=4, evict_count=2)
    for p in range(5):
        cache.set("doc", 0, p, 20, annotate(str(p)))
    assert len(cache) == 5

    cache.set("doc", 0, 5, 20, annotate("5"))

    assert len(cache) == 4
    assert cache.get("doc", 0, 0, 20) is None
    assert cache.get("doc", 0, 1, 20) is None
    for p in range(2, 6):
        assert cache.get("doc", 0, p, 20) is not None


def test_foreign_keys_in_shared_backend_are_left_alone(ticking_clock):
    backend = {"settings": {"theme": "dark"}}
    cache = SessionCache(max_entries=2, evict_count=5, backend=backend)
    for p in range(3):
        cache.set("doc", 0, p, 20, annotate(str(p)))

    assert backend["settings"] == {"theme": "dark"}
    assert len(cache) == 1

    cache.clear()
    assert list(backend) == ["settings"]


def test_unreadable_entry_is_dropped():
    cache = SessionCache()
    cache.store[cache.key("doc", 0, 0, 20)] = {"segments": "not a list"}

    assert cache.get("doc", 0, 0, 20) is None
    assert len(cache) == 0


def test_snapshot_round_trip(tmp_path):
    path = tmp_path / "cache.json"
    cache = SessionCache(path=path)
    cache.set("doc", 1, 2, 25, annotate("persisted"))
    cache.snapshot()

    restored = SessionCache.from_config({"path": str(path)})

    assert restored.get("doc", 1, 2, 25) == annotate("persisted")


def test_missing_snapshot_loads_nothing(tmp_path):
    cache = SessionCache(path=tmp_path / "absent.json")
    assert cache.load() == 0

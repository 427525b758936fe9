"""Tests for the bounded-concurrency paragraph scheduler."""
from __future__ import annotations

import asyncio

import pytest

from lexis.errors import InvalidEnrichmentResult
from lexis.scheduling.paragraph_scheduler import ParagraphScheduler, fallback_segments
from lexis.schemas import ParagraphStatus, Segment, SegmentLanguage
from lexis.storage.cache import SessionCache
from tests.fakes import FakeEnrichmentClient, RecordingSink, annotate, spin

PARAGRAPHS = [f"Paragraph {i} of the active chunk." for i in range(6)]


def make_scheduler(client, cache=None, vocabulary=None, **kwargs) -> ParagraphScheduler:
    kwargs.setdefault("retry_backoff", 0)
    return ParagraphScheduler(client, cache if cache is not None else SessionCache(), vocabulary, **kwargs)


# --- Concurrency and ordering -------------------------------------------------

@pytest.mark.asyncio
async def test_at_most_two_paragraphs_in_flight():
    gate = asyncio.Event()
    client = FakeEnrichmentClient(gate=gate)
    scheduler = make_scheduler(client)
    scheduler.activate("book", 0, PARAGRAPHS, density=20)

    for i in range(5):
        scheduler.enqueue(i)
    await spin(lambda: len(client.calls) == 2)
    await asyncio.sleep(0)

    assert scheduler.in_flight_count == 2
    assert scheduler.pending == (2, 3, 4)
    assert len(client.calls) == 2

    gate.set()
    await scheduler.join()

    assert client.max_active == 2
    assert [p.status for p in scheduler.paragraphs[:5]] == [ParagraphStatus.DONE] * 5
    assert scheduler.paragraphs[5].status is ParagraphStatus.IDLE
    assert scheduler.in_flight_count == 0


@pytest.mark.asyncio
async def test_queue_is_drained_in_arrival_order():
    client = FakeEnrichmentClient()
    scheduler = make_scheduler(client, max_concurrent=1)
    scheduler.activate("book", 0, PARAGRAPHS, density=20)

    for i in (3, 1, 4):
        scheduler.enqueue(i)
    await scheduler.join()

    assert client.texts == [PARAGRAPHS[3], PARAGRAPHS[1], PARAGRAPHS[4]]


@pytest.mark.asyncio
async def test_enqueue_ignores_duplicates_and_out_of_range():
    gate = asyncio.Event()
    client = FakeEnrichmentClient(gate=gate)
    scheduler = make_scheduler(client, max_concurrent=1)
    scheduler.activate("book", 0, PARAGRAPHS, density=20)

    assert scheduler.enqueue(0) is True
    assert scheduler.enqueue(1) is True
    assert scheduler.enqueue(0) is False
    assert scheduler.enqueue(1) is False
    assert scheduler.enqueue(-1) is False
    assert scheduler.enqueue(len(PARAGRAPHS)) is False

    gate.set()
    await scheduler.join()
    assert scheduler.enqueue(0) is False
    assert client.texts == [PARAGRAPHS[0], PARAGRAPHS[1]]


@pytest.mark.asyncio
async def test_visible_paragraph_brings_lookahead_with_it():
    client = FakeEnrichmentClient()
    scheduler = make_scheduler(client)
    scheduler.activate("book", 0, PARAGRAPHS, density=20)

    scheduler.enqueue_visible(4)
    await scheduler.join()

    assert sorted(client.texts) == sorted([PARAGRAPHS[4], PARAGRAPHS[5]])
    assert [p.status for p in scheduler.paragraphs[:4]] == [ParagraphStatus.IDLE] * 4


# --- Cache --------------------------------------------------------------------

@pytest.mark.asyncio
async def test_warm_cache_skips_the_service():
    client = FakeEnrichmentClient()
    cache = SessionCache()
    scheduler = make_scheduler(client, cache)

    scheduler.activate("book", 0, PARAGRAPHS, density=20)
    scheduler.enqueue(2)
    await scheduler.join()
    first = scheduler.paragraphs[2].segments

    scheduler.activate("book", 0, PARAGRAPHS, density=20)
    scheduler.enqueue(2)
    await scheduler.join()

    assert len(client.calls) == 1
    assert scheduler.paragraphs[2].status is ParagraphStatus.DONE
    assert scheduler.paragraphs[2].segments == first
    assert cache.hits == 1


@pytest.mark.asyncio
async def test_density_change_applies_to_later_paragraphs_only():
    client = FakeEnrichmentClient()
    cache = SessionCache()
    scheduler = make_scheduler(client, cache)
    scheduler.activate("book", 0, PARAGRAPHS, density=20)

    scheduler.enqueue(0)
    await scheduler.join()
    scheduler.set_density(35)
    scheduler.enqueue(1)
    await scheduler.join()

    assert [density for _, density, _ in client.calls] == [20, 35]
    assert scheduler.paragraphs[0].status is ParagraphStatus.DONE
    assert cache.get("book", 0, 0, 20) is not None
    assert cache.get("book", 0, 1, 35) is not None
    assert cache.get("book", 0, 1, 20) is None


def test_density_outside_range_is_rejected():
    scheduler = make_scheduler(FakeEnrichmentClient())
    with pytest.raises(ValueError):
        scheduler.activate("book", 0, PARAGRAPHS, density=4)
    with pytest.raises(ValueError):
        scheduler.set_density(51)


# --- Failure handling ---------------------------------------------------------

@pytest.mark.asyncio
async def test_single_failure_is_retried():
    client = FakeEnrichmentClient(fail_times=1)
    scheduler = make_scheduler(client)
    scheduler.activate("book", 0, PARAGRAPHS, density=20)

    scheduler.enqueue(0)
    await scheduler.join()

    assert len(client.calls) == 2
    assert scheduler.paragraphs[0].segments == annotate(PARAGRAPHS[0])


@pytest.mark.asyncio
async def test_second_failure_falls_back_to_source_text():
    client = FakeEnrichmentClient(fail_always=True, error=lambda: InvalidEnrichmentResult("bad shape"))
    cache = SessionCache()
    sink = RecordingSink()
    scheduler = make_scheduler(client, cache, sink)
    scheduler.activate("book", 0, PARAGRAPHS, density=20)

    scheduler.enqueue(0)
    await scheduler.join()

    state = scheduler.paragraphs[0]
    assert len(client.calls) == 2
    assert state.status is ParagraphStatus.DONE
    assert state.segments == [Segment(text=PARAGRAPHS[0], language=SegmentLanguage.SOURCE)]
    assert state.segments == fallback_segments(PARAGRAPHS[0])
    assert cache.get("book", 0, 0, 20) is None
    assert sink.records == []


@pytest.mark.asyncio
async def test_every_failing_paragraph_gets_exactly_two_calls_then_falls_back():
    client = FakeEnrichmentClient(fail_always=True)
    scheduler = make_scheduler(client)
    scheduler.activate("book", 0, PARAGRAPHS, density=20)

    for i in range(4):
        scheduler.enqueue(i)
    await scheduler.join()

    assert len(client.calls) == 8
    for i in range(4):
        assert client.texts.count(PARAGRAPHS[i]) == 2
        assert scheduler.paragraphs[i].status is ParagraphStatus.DONE
        assert scheduler.paragraphs[i].segments == fallback_segments(PARAGRAPHS[i])
    assert [p.status for p in scheduler.paragraphs[4:]] == [ParagraphStatus.IDLE] * 2
    assert client.max_active <= 2


@pytest.mark.asyncio
async def test_unexpected_error_marks_paragraph_and_can_be_retried():
    client = FakeEnrichmentClient(fail_times=1, error=lambda: RuntimeError("boom"))
    scheduler = make_scheduler(client)
    scheduler.activate("book", 0, PARAGRAPHS, density=20)

    scheduler.enqueue(0)
    await scheduler.join()
    assert scheduler.paragraphs[0].status is ParagraphStatus.ERROR
    assert scheduler.in_flight_count == 0

    assert scheduler.retry(0) is True
    await scheduler.join()
    assert scheduler.paragraphs[0].status is ParagraphStatus.DONE
    assert scheduler.retry(0) is False


# --- Generations --------------------------------------------------------------

@pytest.mark.asyncio
async def test_results_from_previous_chunk_are_discarded():
    gate = asyncio.Event()
    client = FakeEnrichmentClient(gate=gate)
    cache = SessionCache()
    sink = RecordingSink()
    scheduler = make_scheduler(client, cache, sink)

    scheduler.activate("book", 0, PARAGRAPHS, density=20)
    scheduler.enqueue(0)
    await spin(lambda: len(client.calls) == 1)

    scheduler.activate("book", 1, ["A different paragraph in chunk one."], density=20)
    gate.set()
    await scheduler.join()

    assert scheduler.context.chunk_index == 1
    assert scheduler.paragraphs[0].status is ParagraphStatus.IDLE
    assert scheduler.paragraphs[0].segments is None
    assert scheduler.in_flight_count == 0
    assert sink.records == []
    assert cache.get("book", 0, 0, 20) == annotate(PARAGRAPHS[0])


@pytest.mark.asyncio
async def test_reset_frees_slots_for_the_new_chunk():
    gate = asyncio.Event()
    client = FakeEnrichmentClient(gate=gate)
    scheduler = make_scheduler(client)

    scheduler.activate("book", 0, PARAGRAPHS, density=20)
    scheduler.enqueue(0)
    scheduler.enqueue(1)
    await spin(lambda: len(client.calls) == 2)

    scheduler.activate("other", 0, PARAGRAPHS, density=20)
    scheduler.enqueue(3)
    await spin(lambda: len(client.calls) == 3)

    assert scheduler.in_flight == frozenset({3})
    gate.set()
    await scheduler.join()
    assert scheduler.paragraphs[3].status is ParagraphStatus.DONE


# --- Downstream ---------------------------------------------------------------

@pytest.mark.asyncio
async def test_vocabulary_sink_sees_each_fresh_result_once():
    client = FakeEnrichmentClient()
    sink = RecordingSink()
    scheduler = make_scheduler(client, vocabulary=sink)

    scheduler.activate("book", 0, PARAGRAPHS, density=20)
    scheduler.enqueue(0)
    await scheduler.join()
    scheduler.activate("book", 0, PARAGRAPHS, density=20)
    scheduler.enqueue(0)
    await scheduler.join()

    assert sink.records == [annotate(PARAGRAPHS[0])]


@pytest.mark.asyncio
async def test_update_callback_follows_state_transitions():
    client = FakeEnrichmentClient()
    updates = []
    scheduler = make_scheduler(client, on_update=lambda i, state: updates.append((i, state.status)))
    scheduler.activate("book", 0, PARAGRAPHS, density=20)

    scheduler.enqueue(1)
    await scheduler.join()

    assert updates == [(1, ParagraphStatus.LOADING), (1, ParagraphStatus.DONE)]


@pytest.mark.asyncio
async def test_aclose_cancels_outstanding_work():
    client = FakeEnrichmentClient(gate=asyncio.Event())
    scheduler = make_scheduler(client)
    scheduler.activate("book", 0, PARAGRAPHS, density=20)
    scheduler.enqueue(0)
    await spin(lambda: len(client.calls) == 1)

    await scheduler.aclose()

    assert scheduler.paragraphs == []
    assert scheduler.in_flight_count == 0


@pytest.mark.asyncio
async def test_process_twice_with_warm_cache_returns_same_segments():
    client = FakeEnrichmentClient()
    scheduler = make_scheduler(client)
    scheduler.activate("book", 0, PARAGRAPHS, density=20)

    first = await scheduler.process(1)
    second = await scheduler.process(1)

    assert first == second == annotate(PARAGRAPHS[1])
    assert len(client.calls) == 1

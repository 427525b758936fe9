"""Tests for the reader session: loading, navigation and interest forwarding."""
from __future__ import annotations

import asyncio

import pytest

from lexis.config import DEFAULTS
from lexis.errors import SourceUnavailable
from lexis.parsing.chapter_parser import ChapterStreamParser
from lexis.reader.session import ReaderSession
from lexis.scheduling.paragraph_scheduler import ParagraphScheduler
from lexis.schemas import Book, FetchStatus, ParagraphStatus, Segment, SegmentLanguage
from lexis.storage.cache import SessionCache
from lexis.storage.vocabulary import VocabularyStore
from tests.fakes import FakeEnrichmentClient, MemorySource, paragraphs_text

TWO_CHAPTERS = (
    "CHAPTER I.\n\n" + paragraphs_text(4, prefix="Opening")
    + "\nCHAPTER II.\n\n" + paragraphs_text(3, prefix="Middle")
)


def make_session(texts, client=None, vocabulary=None, gate=None) -> tuple[ReaderSession, FakeEnrichmentClient]:
    client = client or FakeEnrichmentClient()
    scheduler = ParagraphScheduler(client, SessionCache(), vocabulary, retry_backoff=0)
    session = ReaderSession(
        MemorySource(texts, block_size=32, gate=gate),
        scheduler,
        parser=ChapterStreamParser(require_start_marker=False),
        vocabulary=vocabulary,
    )
    return session, client


@pytest.mark.asyncio
async def test_first_chunk_becomes_active():
    session, _ = make_session({"1": TWO_CHAPTERS})
    assert session.fetch_status is FetchStatus.IDLE

    await session.open_book(Book(id=1, title="Two chapters"))
    first = await session.wait_first_chunk()

    assert first.title == "CHAPTER I."
    assert session.fetch_status is FetchStatus.DONE
    assert session.current_chapter_index == 0
    assert [p.raw for p in session.paragraphs] == list(first.paragraphs)
    assert all(p.status is ParagraphStatus.IDLE for p in session.paragraphs)

    assert await session.wait_loaded() == 2
    assert session.chapter_titles == ["CHAPTER I.", "CHAPTER II."]
    await session.close()


@pytest.mark.asyncio
async def test_navigation_switches_active_chunk():
    session, client = make_session({"1": TWO_CHAPTERS})
    await session.open_book(Book(id=1, title="Two chapters"))
    await session.wait_loaded()

    assert session.navigate_to_chapter(5) is False
    assert session.navigate_to_chapter(1) is True

    session.notify_visible(0)
    await session.scheduler.join()

    assert session.current_chapter_index == 1
    assert [p.status for p in session.paragraphs] == [ParagraphStatus.DONE] * 3
    assert client.texts[0].startswith("Middle number 0")
    await session.close()


@pytest.mark.asyncio
async def test_missing_text_surfaces_as_load_error():
    session, _ = make_session({})
    await session.open_book(Book(id=404, title="Lost book"))

    with pytest.raises(SourceUnavailable):
        await session.wait_first_chunk()
    assert session.fetch_status is FetchStatus.ERROR
    assert session.chapter_count == 0
    await session.close()


@pytest.mark.asyncio
async def test_book_without_paragraphs_is_an_error():
    session, _ = make_session({"1": "Too short\n\n12\n"})
    await session.open_book(Book(id=1, title="Empty"))

    with pytest.raises(SourceUnavailable):
        await session.wait_loaded()
    assert session.fetch_status is FetchStatus.ERROR
    await session.close()


@pytest.mark.asyncio
async def test_opening_another_book_abandons_the_previous_stream():
    gate = asyncio.Event()
    texts = {"1": paragraphs_text(70, prefix="Old"), "2": paragraphs_text(3, prefix="New")}
    session, _ = make_session(texts, gate=gate)

    await session.open_book(Book(id=1, title="Old book"))
    await asyncio.sleep(0)
    await session.open_book(Book(id=2, title="New book"))
    gate.set()
    await session.wait_loaded()

    assert session.epoch == 2
    assert session.book.title == "New book"
    assert session.chapter_count == 1
    assert all(p.startswith("New") for p in session.chunks[0].paragraphs)
    await session.close()


@pytest.mark.asyncio
async def test_known_words_are_sent_as_hints():
    vocabulary = VocabularyStore()
    vocabulary.record([Segment(text="dom", language=SegmentLanguage.TARGET, source_base_form="house")])
    session, client = make_session({"1": TWO_CHAPTERS}, vocabulary=vocabulary)

    await session.open_book(Book(id=1, title="Two chapters"))
    await session.wait_first_chunk()
    session.notify_visible(0)
    await session.scheduler.join()

    assert client.calls[0][2] == ("dom",)
    assert len(vocabulary) == 2
    await session.close()


@pytest.mark.asyncio
async def test_density_is_validated_and_forwarded():
    session, client = make_session({"1": TWO_CHAPTERS})
    await session.open_book(Book(id=1, title="Two chapters"))
    await session.wait_first_chunk()

    with pytest.raises(ValueError):
        session.set_density(60)
    session.set_density(40)
    session.notify_visible(0)
    await session.scheduler.join()

    assert {density for _, density, _ in client.calls} == {40}
    await session.close()


@pytest.mark.asyncio
async def test_from_config_wires_components(tmp_path):
    config = {
        **DEFAULTS,
        "scheduler": {**DEFAULTS["scheduler"], "max_concurrent": 3, "default_density": 30},
        "cache": {**DEFAULTS["cache"], "path": str(tmp_path / "cache.json")},
        "vocabulary": {"path": str(tmp_path / "vocab.json"), "reinforcement_limit": 5},
    }
    session = ReaderSession.from_config(config, MemorySource({}), client=FakeEnrichmentClient())

    assert session.scheduler.max_concurrent == 3
    assert session.density == 30
    assert session.reinforcement_limit == 5
    assert session.parser.require_start_marker is True

    await session.close()
    assert (tmp_path / "cache.json").exists()

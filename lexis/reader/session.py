"""
Reader Session
--------------
The explicit "current book / current chapter / current density" object
consumed by a presentation layer. It owns the load epoch for the text
stream and hands the active chunk to the ParagraphScheduler.

    open_book(book)          -> epoch += 1, cancel previous stream, stream anew
        first chunk arrives  -> chunk 0 activated, fetch_status = done
    navigate_to_chapter(i)   -> scheduler generation += 1, fresh idle states
    notify_visible(i)        -> paragraph i and its lookahead are enqueued
    set_density(d)           -> affects paragraphs processed from now on

Chunks delivered by a stream whose epoch is no longer current are ignored.
"""
from __future__ import annotations

import asyncio
from typing import Optional

from loguru import logger

from lexis.cancellation import CancellationToken
from lexis.collection.base_source import BaseTextSource
from lexis.config import get_api_key, validate_density
from lexis.enrichment.client import DeepSeekEnrichmentClient, EnrichmentClient
from lexis.errors import LexisError, SourceUnavailable
from lexis.parsing.chapter_parser import ChapterStreamParser, stream_chapters
from lexis.scheduling.paragraph_scheduler import ParagraphScheduler
from lexis.schemas import Book, Chunk, FetchStatus, ParagraphState
from lexis.storage.cache import SessionCache
from lexis.storage.vocabulary import VocabularyStore


class ReaderSession:
    """Book loading, chapter navigation and interest forwarding for one reader."""

    def __init__(
        self,
        source: BaseTextSource,
        scheduler: ParagraphScheduler,
        parser: Optional[ChapterStreamParser] = None,
        vocabulary: Optional[VocabularyStore] = None,
        density: int = 20,
        reinforcement_limit: int = 20,
    ) -> None:
        self.source = source
        self.scheduler = scheduler
        self.parser = parser or ChapterStreamParser()
        self.vocabulary = vocabulary
        self.density = validate_density(density)
        self.reinforcement_limit = reinforcement_limit

        self.book: Optional[Book] = None
        self.chunks: list[Chunk] = []
        self.current_chapter_index = 0
        self.fetch_status = FetchStatus.IDLE
        self.error: Optional[LexisError] = None

        self._epoch = 0
        self._token: Optional[CancellationToken] = None
        self._load_task: Optional[asyncio.Task] = None
        self._first_chunk = asyncio.Event()

    @classmethod
    def from_config(
        cls,
        config: dict,
        source: BaseTextSource,
        client: Optional[EnrichmentClient] = None,
    ) -> "ReaderSession":
        """Wire cache, vocabulary, enrichment client and scheduler from config sections."""
        cache = SessionCache.from_config(config.get("cache", {}))
        vocab_cfg = config.get("vocabulary", {})
        vocabulary = VocabularyStore(vocab_cfg.get("path"))
        if client is None:
            client = DeepSeekEnrichmentClient.from_config(config.get("enrichment", {}), api_key=get_api_key())
        sched_cfg = config.get("scheduler", {})
        scheduler = ParagraphScheduler.from_config(sched_cfg, client, cache, vocabulary)
        return cls(
            source=source,
            scheduler=scheduler,
            parser=ChapterStreamParser.from_config(config.get("parser", {})),
            vocabulary=vocabulary,
            density=sched_cfg.get("default_density", 20),
            reinforcement_limit=vocab_cfg.get("reinforcement_limit", 20),
        )

    # --- Views ----------------------------------------------------------------

    @property
    def paragraphs(self) -> list[ParagraphState]:
        return self.scheduler.paragraphs

    @property
    def chapter_count(self) -> int:
        return len(self.chunks)

    @property
    def chapter_titles(self) -> list[str]:
        return [c.title for c in self.chunks]

    @property
    def epoch(self) -> int:
        return self._epoch

    # --- Loading --------------------------------------------------------------

    async def open_book(self, book: Book) -> None:
        """Start streaming a book in the background; returns immediately."""
        await self._cancel_load()
        self._epoch += 1
        token = CancellationToken(self._epoch)
        self._token = token

        self.book = book
        self.chunks = []
        self.current_chapter_index = 0
        self.error = None
        self.scheduler.reset()
        self.fetch_status = FetchStatus.LOADING
        self._first_chunk = asyncio.Event()

        logger.info(f"[Session] Opening '{book.title}' (epoch {token.epoch})")
        self._load_task = asyncio.get_running_loop().create_task(self._stream(book, token))

    async def _stream(self, book: Book, token: CancellationToken) -> None:
        first_chunk = self._first_chunk
        try:
            delivered = await stream_chapters(
                self.source,
                book,
                lambda chunk, _index: self._on_chunk(chunk, token),
                token,
                self.parser,
            )
            if delivered == 0 and not token.cancelled and token.epoch == self._epoch:
                raise SourceUnavailable(f"No readable paragraphs in '{book.title}'")
        except LexisError as exc:
            if token.epoch != self._epoch:
                return
            self.error = exc
            if self.fetch_status is FetchStatus.LOADING:
                self.fetch_status = FetchStatus.ERROR
            logger.error(f"[Session] Failed to load book text for '{book.title}': {exc}")
        finally:
            first_chunk.set()

    def _on_chunk(self, chunk: Chunk, token: CancellationToken) -> None:
        if token.cancelled or token.epoch != self._epoch:
            return
        self.chunks.append(chunk)
        if len(self.chunks) == 1:
            self._activate(0)
            self.fetch_status = FetchStatus.DONE
            self._first_chunk.set()

    async def wait_first_chunk(self) -> Optional[Chunk]:
        """Block until the first chunk is shown; re-raise a load failure."""
        await self._first_chunk.wait()
        if self.chunks:
            return self.chunks[0]
        if self.error is not None:
            raise self.error
        if self._load_task is not None and self._load_task.done() and not self._load_task.cancelled():
            self._load_task.result()
        return None

    async def wait_loaded(self) -> int:
        """Wait for the whole stream; returns the chunk count."""
        if self._load_task is not None:
            await self._load_task
        if self.error is not None and not self.chunks:
            raise self.error
        return len(self.chunks)

    async def _cancel_load(self) -> None:
        if self._token is not None:
            self._token.cancel()
        task = self._load_task
        self._load_task = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    # --- Reading --------------------------------------------------------------

    def _activate(self, index: int) -> None:
        hints: list[str] = []
        if self.vocabulary is not None and self.reinforcement_limit > 0:
            hints = self.vocabulary.reinforcement_words(self.reinforcement_limit)
        self.current_chapter_index = index
        self.scheduler.activate(
            document_id=self.book.document_id,
            chunk_index=index,
            paragraphs=self.chunks[index].paragraphs,
            density=self.density,
            hints=hints,
        )

    def navigate_to_chapter(self, index: int) -> bool:
        if self.book is None or not 0 <= index < len(self.chunks):
            return False
        logger.debug(f"[Session] Navigate to chapter {index}: '{self.chunks[index].title}'")
        self._activate(index)
        return True

    def notify_visible(self, index: int) -> None:
        self.scheduler.enqueue_visible(index)

    def set_density(self, density: int) -> None:
        self.density = validate_density(density)
        self.scheduler.set_density(density)

    async def close(self) -> None:
        await self._cancel_load()
        await self.scheduler.aclose()
        if self.vocabulary is not None:
            await self.vocabulary.flush()
        await asyncio.get_running_loop().run_in_executor(None, self.scheduler.cache.snapshot)
        logger.debug("[Session] Closed")

"""
Paragraph Task Scheduler
------------------------
Drives the paragraphs of the active chunk through

    idle -> loading -> done          (enriched, cached, or degraded fallback)
    idle -> loading -> error         (unexpected failure; terminal until retry())

driven purely by index-based interest signals from the presentation
layer (the scheduler knows nothing about visibility).

Flow per drained paragraph:

    cache lookup (document, chunk, paragraph, density)
        | hit  -> done, no network call
        | miss -> loading -> EnrichmentClient.enrich()
                    | failure / invalid shape -> wait backoff, retry once
                    | second failure          -> fallback: one source segment
                    | success                 -> cache write + vocabulary sink
        v
    finish: release the in-flight slot and drain() again

At most max_concurrent paragraphs are in flight per generation, drained
FIFO. Every operation carries the ChunkContext it was issued for; when a
reset (navigation or new document) bumps the generation, results tagged
with an older generation are never applied to paragraph state.
"""
from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, replace
from typing import Callable, Optional, Sequence

from loguru import logger
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_fixed

from lexis.config import validate_density
from lexis.enrichment.client import EnrichmentClient
from lexis.errors import EnrichmentCallFailed
from lexis.schemas import ParagraphState, ParagraphStatus, Segment, SegmentLanguage
from lexis.storage.cache import SessionCache
from lexis.storage.vocabulary import VocabularySink

MAX_CONCURRENT = 2
RETRY_BACKOFF_SECONDS = 2.0
LOOKAHEAD = 2

UpdateCallback = Callable[[int, ParagraphState], None]


@dataclass(frozen=True)
class ChunkContext:
    """Everything a paragraph operation needs, captured when it is issued."""

    document_id: str
    chunk_index: int
    density: int
    generation: int
    hints: tuple[str, ...] = ()


def fallback_segments(raw: str) -> list[Segment]:
    """Degraded, all-source representation used when enrichment cannot succeed."""
    return [Segment(text=raw, language=SegmentLanguage.SOURCE)]


class ParagraphScheduler:
    """
    Bounded-concurrency, cache-first paragraph processor for one active chunk.

    Must be driven from inside a running event loop: enqueue() starts
    processing as asyncio tasks.
    """

    def __init__(
        self,
        client: EnrichmentClient,
        cache: SessionCache,
        vocabulary: Optional[VocabularySink] = None,
        max_concurrent: int = MAX_CONCURRENT,
        retry_backoff: float = RETRY_BACKOFF_SECONDS,
        lookahead: int = LOOKAHEAD,
        on_update: Optional[UpdateCallback] = None,
    ) -> None:
        self.client = client
        self.cache = cache
        self.vocabulary = vocabulary
        self.max_concurrent = max_concurrent
        self.retry_backoff = retry_backoff
        self.lookahead = lookahead
        self.on_update = on_update

        self.generation = 0
        self.context: Optional[ChunkContext] = None
        self.paragraphs: list[ParagraphState] = []

        self._queue: deque[int] = deque()
        self._in_flight: set[int] = set()
        self._concurrent = 0
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_config(
        cls,
        config: dict,
        client: EnrichmentClient,
        cache: SessionCache,
        vocabulary: Optional[VocabularySink] = None,
    ) -> "ParagraphScheduler":
        return cls(
            client=client,
            cache=cache,
            vocabulary=vocabulary,
            max_concurrent=config.get("max_concurrent", MAX_CONCURRENT),
            retry_backoff=config.get("retry_backoff_seconds", RETRY_BACKOFF_SECONDS),
            lookahead=config.get("lookahead", LOOKAHEAD),
        )

    # --- Read-only views ------------------------------------------------------

    @property
    def pending(self) -> tuple[int, ...]:
        return tuple(self._queue)

    @property
    def in_flight(self) -> frozenset[int]:
        return frozenset(self._in_flight)

    @property
    def in_flight_count(self) -> int:
        return self._concurrent

    def _is_current(self, context: ChunkContext) -> bool:
        return context.generation == self.generation

    # --- Chunk lifecycle ------------------------------------------------------

    def activate(
        self,
        document_id: str,
        chunk_index: int,
        paragraphs: Sequence[str],
        density: int,
        hints: Sequence[str] = (),
    ) -> ChunkContext:
        """Make a chunk active: new generation, every paragraph idle."""
        validate_density(density)
        self.reset()
        self.context = ChunkContext(
            document_id=document_id,
            chunk_index=chunk_index,
            density=density,
            generation=self.generation,
            hints=tuple(hints),
        )
        self.paragraphs = [ParagraphState(raw=p) for p in paragraphs]
        logger.debug(
            f"[Scheduler] Generation {self.generation}: {document_id} chunk {chunk_index} "
            f"({len(self.paragraphs)} paragraphs, density {density}%)"
        )
        return self.context

    def reset(self) -> None:
        """Forget queue, in-flight bookkeeping and states; stale work is ignored."""
        self.generation += 1
        self._queue.clear()
        self._in_flight.clear()
        self._concurrent = 0
        self.paragraphs = []
        self.context = None

    def set_density(self, density: int) -> None:
        """Affects subsequent lookups and calls only; done paragraphs are kept."""
        validate_density(density)
        if self.context is not None:
            self.context = replace(self.context, density=density)

    # --- Interest signals -----------------------------------------------------

    def enqueue(self, index: int) -> bool:
        """Queue an idle paragraph; returns False when the signal is a no-op."""
        if not 0 <= index < len(self.paragraphs):
            return False
        if self.paragraphs[index].status is not ParagraphStatus.IDLE:
            return False
        if index in self._in_flight or index in self._queue:
            return False
        self._queue.append(index)
        self.drain()
        return True

    def enqueue_visible(self, index: int) -> None:
        """A paragraph scrolled into view: queue it and the lookahead window."""
        for i in range(index, index + self.lookahead + 1):
            self.enqueue(i)

    def retry(self, index: int) -> bool:
        """Re-enqueue a paragraph that ended in the error state."""
        if not 0 <= index < len(self.paragraphs):
            return False
        if self.paragraphs[index].status is not ParagraphStatus.ERROR or self.context is None:
            return False
        self._apply(self.context, index, status=ParagraphStatus.IDLE, segments=None)
        return self.enqueue(index)

    def drain(self) -> None:
        """Start queued paragraphs while in-flight slots are free."""
        while self._concurrent < self.max_concurrent and self._queue and self.context is not None:
            index = self._queue.popleft()
            if index in self._in_flight:
                continue
            if self.paragraphs[index].status is not ParagraphStatus.IDLE:
                continue
            self._in_flight.add(index)
            self._concurrent += 1
            task = asyncio.get_running_loop().create_task(self._run(index, self.context))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, index: int, context: ChunkContext) -> None:
        try:
            await self.process(index, context)
        except Exception:
            logger.exception(f"[Scheduler] Paragraph {index} failed")
            self._apply(context, index, status=ParagraphStatus.ERROR)
        finally:
            self._finish(index, context)

    def _finish(self, index: int, context: ChunkContext) -> None:
        if not self._is_current(context):
            return
        self._in_flight.discard(index)
        self._concurrent = max(0, self._concurrent - 1)
        self.drain()

    # --- Processing -----------------------------------------------------------

    async def process(self, index: int, context: Optional[ChunkContext] = None) -> Optional[list[Segment]]:
        """
        Resolve one paragraph: cache first, then the enrichment client.

        Returns the segments applied, or None when the context was already
        stale before any work started.
        """
        context = context or self.context
        if context is None or not self._is_current(context):
            return None
        raw = self.paragraphs[index].raw

        cached = self.cache.get(context.document_id, context.chunk_index, index, context.density)
        if cached is not None:
            self._apply(context, index, segments=cached, status=ParagraphStatus.DONE)
            return cached

        self._apply(context, index, status=ParagraphStatus.LOADING)

        try:
            segments = await self._enrich_with_retry(raw, context)
        except EnrichmentCallFailed as exc:
            logger.warning(f"[Scheduler] Paragraph {index}: enrichment failed twice, using fallback ({exc})")
            segments = fallback_segments(raw)
            self._apply(context, index, segments=segments, status=ParagraphStatus.DONE)
            return segments

        # Cached even when stale: the key names its own chunk and density.
        self.cache.set(context.document_id, context.chunk_index, index, context.density, segments)
        if not self._is_current(context):
            logger.debug(f"[Scheduler] Discarding stale result for paragraph {index} (gen {context.generation})")
            return segments

        self._record_vocabulary(segments)
        self._apply(context, index, segments=segments, status=ParagraphStatus.DONE)
        return segments

    async def _enrich_with_retry(self, raw: str, context: ChunkContext) -> list[Segment]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(2),
            wait=wait_fixed(self.retry_backoff),
            retry=retry_if_exception_type(EnrichmentCallFailed),
            before_sleep=self._log_retry,
            reraise=True,
        )
        return await retrying(self.client.enrich, raw, context.density, context.hints)

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.info(f"[Scheduler] Attempt {retry_state.attempt_number} failed ({exc}); retrying")

    def _record_vocabulary(self, segments: list[Segment]) -> None:
        if self.vocabulary is None:
            return
        try:
            self.vocabulary.record(segments)
        except Exception as exc:  # sink is fire-and-forget
            logger.warning(f"[Scheduler] Vocabulary sink failed: {exc}")

    def _apply(self, context: ChunkContext, index: int, **patch) -> bool:
        if not self._is_current(context) or not 0 <= index < len(self.paragraphs):
            return False
        state = self.paragraphs[index].model_copy(update=patch)
        self.paragraphs[index] = state
        if self.on_update is not None:
            self.on_update(index, state)
        return True

    # --- Shutdown -------------------------------------------------------------

    async def join(self) -> None:
        """Wait until no paragraph is being processed (new work may chain in)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        self.reset()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

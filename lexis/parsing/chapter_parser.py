"""
Chapter Stream Parser
---------------------
Turns a raw byte stream of a plain-text book into a lazy sequence of
Chunks (chapters, or artificial slices of them) without ever buffering
the whole document.

Rules (Project Gutenberg plain-text conventions):

  - Everything before the "*** START OF ..." line and after the
    "*** END OF ..." line is licence boilerplate and is skipped.
  - Consecutive non-blank lines form one paragraph (joined by single
    spaces); a blank line ends it.  Paragraphs of 15 characters or fewer
    are page numbers, ornaments or echoed headings and are dropped.
  - A short line (< 80 chars) that starts with a heading keyword and does
    not end in a comma opens a new chapter.  The comma guard keeps prose
    such as "chapter of my life," from being mistaken for a heading.
  - Every CHUNK_SIZE paragraphs the open chunk is emitted early, so books
    with sparse or no headings still show content almost immediately.
"""
from __future__ import annotations

import asyncio
import codecs
import re
from contextlib import aclosing
from typing import AsyncIterator, Awaitable, Callable, Optional, Union

from loguru import logger

from lexis.cancellation import CancellationToken
from lexis.collection.base_source import BaseTextSource
from lexis.schemas import Book, Chunk
from lexis.utils.helpers import normalise_paragraph

# ── Constants ─────────────────────────────────────────────────────────────────

CHUNK_SIZE = 30               # Paragraphs per early-emitted chunk
MIN_PARAGRAPH_CHARS = 15      # Paragraphs this short or shorter are dropped
MAX_HEADING_CHARS = 80        # Headings are strictly shorter than this

HEADING_RE = re.compile(
    r"^(chapter|part|book|section|act|scene|prologue|epilogue|introduction|preface|foreword)"
    r"\b[\s.:IVXLCDM0-9—-]*",
    re.IGNORECASE,
)
START_MARKER_RE = re.compile(r"\*{3}\s*START OF", re.IGNORECASE)
END_MARKER_RE = re.compile(r"\*{3}\s*END OF", re.IGNORECASE)

ChapterCallback = Callable[[Chunk, int], Union[None, Awaitable[None]]]

_END = object()


def is_heading(line: str, max_chars: int = MAX_HEADING_CHARS) -> bool:
    """True if a trimmed line looks like a chapter/part/section heading."""
    return bool(HEADING_RE.match(line)) and len(line) < max_chars and not line.endswith(",")


async def _anext(stream: AsyncIterator[Union[bytes, str]]) -> object:
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return _END


async def _next_block(
    stream: AsyncIterator[Union[bytes, str]], token: Optional[CancellationToken]
) -> object:
    """Next block of the stream, or _END once it is exhausted or the token fires mid-read."""
    if token is None:
        return await _anext(stream)
    if token.cancelled:
        return _END

    read = asyncio.ensure_future(_anext(stream))
    cancelled = asyncio.ensure_future(token.wait())
    try:
        await asyncio.wait({read, cancelled}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        cancelled.cancel()
        if not read.done():
            read.cancel()
            await asyncio.gather(read, return_exceptions=True)
    if read.cancelled():
        return _END
    return read.result()


class _ChunkAssembler:
    """Line-level state machine; every feed returns the chunks it completed."""

    def __init__(
        self,
        chunk_size: int,
        min_paragraph_chars: int,
        max_heading_chars: int,
        require_start_marker: bool,
    ) -> None:
        self.chunk_size = chunk_size
        self.min_paragraph_chars = min_paragraph_chars
        self.max_heading_chars = max_heading_chars
        self.in_book = not require_start_marker
        self.finished = False
        self.emitted = 0
        self.title = ""
        self.paragraphs: list[str] = []
        self.pending = ""

    def _emit(self) -> list[Chunk]:
        if not self.paragraphs:
            return []
        chunk = Chunk(
            title=self.title or f"Part {self.emitted + 1}",
            paragraphs=tuple(self.paragraphs),
        )
        self.emitted += 1
        self.paragraphs = []
        self.title = ""
        return [chunk]

    def _flush_paragraph(self) -> list[Chunk]:
        paragraph = normalise_paragraph(self.pending)
        self.pending = ""
        if len(paragraph) <= self.min_paragraph_chars:
            return []
        self.paragraphs.append(paragraph)
        if len(self.paragraphs) >= self.chunk_size:
            return self._emit()
        return []

    def _boundary(self, heading: str) -> list[Chunk]:
        ready = self._flush_paragraph()
        ready += self._emit()
        self.title = heading
        return ready

    def feed_line(self, line: str) -> list[Chunk]:
        if self.finished:
            return []
        if not self.in_book:
            if START_MARKER_RE.search(line):
                self.in_book = True
            return []
        if END_MARKER_RE.search(line):
            return self.close()

        trimmed = line.strip()
        if not trimmed:
            return self._flush_paragraph()
        if is_heading(trimmed, self.max_heading_chars):
            return self._boundary(trimmed)

        self.pending = f"{self.pending} {trimmed}" if self.pending else trimmed
        return []

    def close(self) -> list[Chunk]:
        if self.finished:
            return []
        ready = self._flush_paragraph()
        ready += self._emit()
        self.finished = True
        return ready


class ChapterStreamParser:
    """
    Incremental chunk extractor.

    Usage:
        parser = ChapterStreamParser()
        async for chunk in parser.parse(source.stream(book, token), token):
            ...
    """

    def __init__(
        self,
        chunk_size: int = CHUNK_SIZE,
        min_paragraph_chars: int = MIN_PARAGRAPH_CHARS,
        max_heading_chars: int = MAX_HEADING_CHARS,
        require_start_marker: bool = True,
    ) -> None:
        self.chunk_size = chunk_size
        self.min_paragraph_chars = min_paragraph_chars
        self.max_heading_chars = max_heading_chars
        self.require_start_marker = require_start_marker

    @classmethod
    def from_config(cls, config: dict) -> "ChapterStreamParser":
        return cls(
            chunk_size=config.get("chunk_size", CHUNK_SIZE),
            min_paragraph_chars=config.get("min_paragraph_chars", MIN_PARAGRAPH_CHARS),
            max_heading_chars=config.get("max_heading_chars", MAX_HEADING_CHARS),
            require_start_marker=config.get("require_start_marker", True),
        )

    async def parse(
        self,
        stream: AsyncIterator[Union[bytes, str]],
        token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[Chunk]:
        """Yield chunks in document order as soon as each one is complete."""
        assembler = _ChunkAssembler(
            chunk_size=self.chunk_size,
            min_paragraph_chars=self.min_paragraph_chars,
            max_heading_chars=self.max_heading_chars,
            require_start_marker=self.require_start_marker,
        )
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""

        try:
            while True:
                block = await _next_block(stream, token)
                if block is _END:
                    break
                buffer += block if isinstance(block, str) else decoder.decode(block)

                newline = buffer.rfind("\n")
                if newline == -1:
                    continue
                complete, buffer = buffer[:newline], buffer[newline + 1:]

                for line in complete.split("\n"):
                    for chunk in assembler.feed_line(line):
                        logger.debug(
                            f"[Parser] Chunk {assembler.emitted}: '{chunk.title}' "
                            f"({len(chunk.paragraphs)} paragraphs)"
                        )
                        yield chunk
                        if token is not None and token.cancelled:
                            return
                    if assembler.finished:
                        return

            if token is not None and token.cancelled:
                return

            # Trailing text without a final newline
            buffer += decoder.decode(b"", final=True)
            tail: list[Chunk] = []
            for line in buffer.split("\n"):
                tail += assembler.feed_line(line)
            tail += assembler.close()
            for chunk in tail:
                logger.debug(
                    f"[Parser] Chunk {assembler.emitted}: '{chunk.title}' "
                    f"({len(chunk.paragraphs)} paragraphs)"
                )
                yield chunk
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()


async def stream_chapters(
    source: BaseTextSource,
    book: Book,
    on_chapter: ChapterCallback,
    token: Optional[CancellationToken] = None,
    parser: Optional[ChapterStreamParser] = None,
) -> int:
    """
    Stream a book and call ``on_chapter(chunk, index)`` progressively.

    Returns the number of chunks delivered. Cancellation ends the stream
    silently; source errors propagate to the caller.
    """
    parser = parser or ChapterStreamParser()
    delivered = 0
    async with aclosing(parser.parse(source.stream(book, token), token)) as chunks:
        async for chunk in chunks:
            result = on_chapter(chunk, delivered)
            if result is not None:
                await result
            delivered += 1
    if token is not None and token.cancelled:
        logger.debug(f"[Parser] '{book.title}' cancelled after {delivered} chunk(s)")
    else:
        logger.info(f"[Parser] '{book.title}': {delivered} chunk(s)")
    return delivered

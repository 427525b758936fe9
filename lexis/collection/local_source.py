"""
Local Text Source
-----------------
Streams a plain-text file from disk. File reads run in the default thread
pool executor so the event loop is never blocked.
"""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import AsyncIterator, Optional

from loguru import logger

from lexis.cancellation import CancellationToken
from lexis.collection.base_source import BaseTextSource
from lexis.errors import FetchFailed, SourceUnavailable
from lexis.schemas import Book


class LocalTextSource(BaseTextSource):
    """Reads books stored as text files; the Book's ``formats`` point at the path."""

    name = "local"

    def __init__(self, config: Optional[dict] = None) -> None:
        super().__init__(config)
        self.read_chunk_bytes: int = self.config.get("read_chunk_bytes", 65536)

    @staticmethod
    def book_for(path: str | Path) -> Book:
        """Synthesise a catalogue record for a local file."""
        path = Path(path)
        return Book(
            id=f"local:{path.resolve()}",
            title=path.stem.replace("_", " ").replace("-", " ").strip() or path.name,
            formats={"text/plain; charset=utf-8": str(path)},
        )

    async def health_check(self) -> bool:
        return True

    async def stream(
        self, book: Book, token: Optional[CancellationToken] = None
    ) -> AsyncIterator[bytes]:
        location = book.formats.get("text/plain; charset=utf-8") or book.formats.get("text/plain")
        if not location or not Path(location).is_file():
            raise SourceUnavailable(f"No readable text file for '{book.title}'")

        loop = asyncio.get_running_loop()
        self.bytes_read = 0
        logger.info(f"[Local] Streaming '{book.title}' - {location}")

        try:
            with open(location, "rb") as f:
                while True:
                    if token is not None and token.cancelled:
                        logger.debug(f"[Local] Stream cancelled after {self.bytes_read} bytes")
                        return
                    block = await loop.run_in_executor(None, f.read, self.read_chunk_bytes)
                    if not block:
                        break
                    self.bytes_read += len(block)
                    yield block
        except OSError as exc:
            raise FetchFailed(f"Read failed: {exc}") from exc

"""
Gutenberg Source
----------------
Searches the Project Gutenberg catalogue through the Gutendex API and
streams a book's plain-text edition with httpx, block by block, so the
chapter parser can emit content long before the download completes.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
from urllib.parse import quote

import httpx
from loguru import logger
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from lexis.cancellation import CancellationToken
from lexis.collection.base_source import BaseTextSource
from lexis.errors import FetchFailed, SourceUnavailable
from lexis.schemas import Book, SearchResult

_HEADERS = {"User-Agent": "LexisReader/1.0 (language-learning reader)"}

# Preferred plain-text variants, best first
PLAIN_TEXT_FORMATS = (
    "text/plain; charset=utf-8",
    "text/plain; charset=us-ascii",
    "text/plain",
)


class GutenbergSource(BaseTextSource):
    """Catalogue search and plain-text streaming for Project Gutenberg books."""

    name = "gutenberg"

    def __init__(
        self,
        config: Optional[dict] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(config)
        self.base_url: str = self.config.get("gutendex_url", "https://gutendex.com").rstrip("/")
        self.languages: str = self.config.get("languages", "en")
        self.timeout: float = self.config.get("timeout_seconds", 30.0)
        self.proxy_url: Optional[str] = self.config.get("proxy_url")
        self.read_chunk_bytes: int = self.config.get("read_chunk_bytes", 65536)
        self._shared_client = client

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        """Use the injected client if any, otherwise a short-lived one."""
        if self._shared_client is not None:
            yield self._shared_client
            return
        async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
            yield client

    # --- Catalogue --------------------------------------------------------------

    async def health_check(self) -> bool:
        try:
            async with self._client() as client:
                resp = await client.get(f"{self.base_url}/books/", params={"page": 1}, headers=_HEADERS)
                return resp.status_code == 200
        except Exception as exc:
            logger.warning(f"[Gutenberg] Health check failed: {exc}")
            return False

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def search_books(self, query: str = "", page: int = 1) -> SearchResult:
        """One page of catalogue results (books in the configured languages)."""
        params = {"languages": self.languages, "page": str(page)}
        if query.strip():
            params["search"] = query.strip()

        async with self._client() as client:
            resp = await client.get(f"{self.base_url}/books/", params=params, headers=_HEADERS)
        if resp.status_code != 200:
            raise FetchFailed(f"Gutendex error: {resp.status_code}", status_code=resp.status_code)

        result = SearchResult.model_validate(resp.json())
        logger.info(f"[Gutenberg] Search {query!r} page {page}: {len(result.results)} of {result.count}")
        return result

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    async def get_book(self, book_id: int) -> Book:
        async with self._client() as client:
            resp = await client.get(f"{self.base_url}/books/{book_id}", headers=_HEADERS)
        if resp.status_code == 404:
            raise SourceUnavailable(f"Book {book_id} not found in the catalogue")
        if resp.status_code != 200:
            raise FetchFailed(f"Gutendex error: {resp.status_code}", status_code=resp.status_code)
        return Book.model_validate(resp.json())

    # --- Text stream ------------------------------------------------------------

    @staticmethod
    def plain_text_url(book: Book) -> Optional[str]:
        for fmt in PLAIN_TEXT_FORMATS:
            if url := book.formats.get(fmt):
                return url
        return None

    def _fetch_url(self, raw_url: str) -> str:
        canonical = raw_url.replace("http://", "https://", 1) if raw_url.startswith("http://") else raw_url
        if self.proxy_url:
            return self.proxy_url.format(url=quote(canonical, safe=""))
        return canonical

    async def stream(
        self, book: Book, token: Optional[CancellationToken] = None
    ) -> AsyncIterator[bytes]:
        """Yield the plain-text edition in blocks; stop quietly on cancellation."""
        raw_url = self.plain_text_url(book)
        if not raw_url:
            raise SourceUnavailable("No plain text format available for this book.")

        url = self._fetch_url(raw_url)
        self.bytes_read = 0
        logger.info(f"[Gutenberg] Streaming '{book.title}' - {url}")

        try:
            async with self._client() as client:
                async with client.stream("GET", url, headers=_HEADERS) as resp:
                    if not resp.is_success:
                        raise FetchFailed(f"Fetch failed: {resp.status_code}", status_code=resp.status_code)

                    async for block in resp.aiter_bytes(self.read_chunk_bytes):
                        if token is not None and token.cancelled:
                            logger.debug(f"[Gutenberg] Stream cancelled after {self.bytes_read} bytes")
                            return
                        self.bytes_read += len(block)
                        yield block
        except httpx.HTTPError as exc:
            raise FetchFailed(f"Fetch failed: {exc}") from exc

        logger.info(f"[Gutenberg] Finished '{book.title}' ({self.bytes_read:,} bytes)")

"""Abstract base class for all book text sources."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional

from lexis.cancellation import CancellationToken
from lexis.schemas import Book


class BaseTextSource(ABC):
    """
    A book text provider.

    ``stream()`` is an async generator of raw byte blocks; the chapter parser
    never sees where they come from. Implementations raise SourceUnavailable
    or FetchFailed before the first byte is yielded and stop quietly once
    the token is cancelled.
    """

    name: str = "source"

    def __init__(self, config: Optional[dict] = None) -> None:
        self.config = config or {}
        self.bytes_read: int = 0

    @abstractmethod
    def stream(
        self, book: Book, token: Optional[CancellationToken] = None
    ) -> AsyncIterator[bytes]:
        """Yield raw byte blocks of the book's plain text."""
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True if the source is reachable and responsive."""
        ...

"""Cancellation token shared by source streams, the parser and the reader session."""
from __future__ import annotations

import asyncio


class CancellationToken:
    """
    One-shot cancellation flag tagged with the load epoch it belongs to.

    The parser races every stream read against ``wait()``, so a read that
    is stalled when the token fires is abandoned and the stream closed.
    """

    def __init__(self, epoch: int = 0) -> None:
        self.epoch = epoch
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def __repr__(self) -> str:
        return f"CancellationToken(epoch={self.epoch}, cancelled={self.cancelled})"

"""Cooperative cancellation tokens for autoplay runs.

A run owns a root token. Every external call made on behalf of the run
receives the root token or a child of it; children fire when their parent
fires, and timeout children additionally fire after a deadline. Whichever
fires first wins.

Example:
    token = CancellationToken()
    with token.with_timeout(30.0, reason="Polish operation timed out") as polish_token:
        result = await polish_token.run(polisher.polish(request))
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterable, AsyncIterator, Awaitable
from typing import Any, TypeVar

from atelier.core.errors import OperationCancelled

T = TypeVar("T")


class CancellationToken:
    """Cancellation signal that can be awaited, raced against, and linked."""

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None
        self._parent = parent
        self._children: set[CancellationToken] = set()
        self._timer: asyncio.TimerHandle | None = None
        if parent is not None:
            parent._children.add(self)
            if parent.cancelled:
                self.cancel(parent.reason or "cancelled")

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        """Why the token fired, None while it has not."""
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Fire the token and every child. Later calls are ignored."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for child in list(self._children):
            child.cancel(reason)

    def child(self) -> CancellationToken:
        """Create a token that fires when this one fires."""
        return CancellationToken(parent=self)

    def with_timeout(self, seconds: float, reason: str = "timed out") -> CancellationToken:
        """Create a child that also fires after ``seconds``.

        Must be called from inside a running event loop. Use the returned
        token as a context manager to release the timer.
        """
        token = self.child()
        if not token.cancelled:
            loop = asyncio.get_running_loop()
            token._timer = loop.call_later(seconds, token.cancel, reason)
        return token

    def dispose(self) -> None:
        """Detach from the parent and drop any pending timer."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._parent is not None:
            self._parent._children.discard(self)
            self._parent = None

    def __enter__(self) -> CancellationToken:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.dispose()

    async def wait(self) -> None:
        """Block until the token fires."""
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled(self._reason or "cancelled")

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        Raises:
            OperationCancelled: The token fired; the operation was cancelled.
        """
        task: asyncio.Future[T] = asyncio.ensure_future(awaitable)
        if self.cancelled:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            raise OperationCancelled(self._reason or "cancelled")

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task in done:
            waiter.cancel()
            return task.result()

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        raise OperationCancelled(self._reason or "cancelled")

    async def iterate(self, source: AsyncIterable[T]) -> AsyncIterator[T]:
        """Yield from an async iterable until it ends or the token fires.

        Raises:
            OperationCancelled: The token fired mid-stream.
        """
        iterator = aiter(source)
        try:
            while True:
                try:
                    item = await self.run(anext(iterator))
                except StopAsyncIteration:
                    return
                yield item
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                with contextlib.suppress(RuntimeError, asyncio.CancelledError):
                    await aclose()

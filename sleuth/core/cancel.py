"""
Cooperative cancellation for one conversational turn.

A `CancelToken` is created by the caller (transport boundary) and threaded through every
await that can block: provider stream reads, tool executions and remote tool calls.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, List, Optional, TypeVar

T = TypeVar("T")


class OperationCancelled(Exception):
    """Raised when work is abandoned because its `CancelToken` fired."""


class CancelToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._children: List["CancelToken"] = []
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)

    def child(self) -> "CancelToken":
        tok = CancelToken()
        if self.cancelled:
            tok.cancel(self.reason or "cancelled")
        else:
            self._children.append(tok)
        return tok

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled(self.reason or "cancelled")

    async def race(self, aw: Awaitable[T], *, timeout: Optional[float] = None) -> T:
        """
        Await `aw` unless this token fires first.

        Raises:
            OperationCancelled: token fired before `aw` completed
            asyncio.TimeoutError: `timeout` seconds elapsed first

        The losing side is always cancelled so no task outlives the call.
        """
        if self.cancelled:
            if asyncio.iscoroutine(aw):
                aw.close()
            raise OperationCancelled(self.reason or "cancelled")
        work: "asyncio.Future[Any]" = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work in done:
            return work.result()

        work.cancel()
        if waiter in done or self.cancelled:
            raise OperationCancelled(self.reason or "cancelled")
        raise asyncio.TimeoutError()

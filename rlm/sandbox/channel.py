"""
Blocking handshake between sandbox code and the host event loop.

Sandboxed code runs in a worker thread and calls ``sub_lm`` synchronously.
Each call becomes a SubCallRequest posted to the host loop; the sandbox
thread then waits on the request's Event until the host has run the async
completion and filled in the response (or the timeout expires).
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from ..exceptions import (
    RecursionDepthExceededError,
    RLMError,
    SubCallTimeoutError,
)

logger = logging.getLogger(__name__)

PENDING_MARKER = "[SUB_LM_PENDING:{id}]"

_request_ids = itertools.count(1)


@dataclass
class SubCallRequest:
    """One sub_lm call waiting for the host."""

    query: str
    context_slice: str | None
    depth: int
    id: str = field(default_factory=lambda: f"sub-{next(_request_ids)}")
    event: threading.Event = field(default_factory=threading.Event)
    response: str | None = None
    error: RLMError | None = None

    def resolve(self, response: str | None = None, error: RLMError | None = None) -> None:
        self.response = response
        self.error = error
        self.event.set()


SubCallHandler = Callable[[SubCallRequest], Awaitable[str]]


class SubCallChannel:
    """
    Request slot shared by one sandbox run and the host loop.

    With a loop (synchronous mode) ``request`` blocks the sandbox thread
    until ``serve`` answers. Without one, requests are queued and a
    placeholder is returned; ``resolve_pending`` answers them after the run.

    Example:
        channel = SubCallChannel(loop, timeout=60, max_depth=3)
        server = asyncio.create_task(channel.serve(handler))
        ... run code that calls channel.request(...) ...
        channel.close()
        await server
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop | None,
        timeout: float = 60.0,
        max_depth: int = 3,
        start_depth: int = 0,
        synchronous: bool = True,
    ):
        self.loop = loop
        self.timeout = timeout
        self.max_depth = max_depth
        self.depth = start_depth
        self.synchronous = synchronous and loop is not None
        self.queue: asyncio.Queue | None = asyncio.Queue() if self.synchronous else None
        self.pending: list[SubCallRequest] = []
        self.completed: list[SubCallRequest] = []
        self.violation: RLMError | None = None
        self.blocked_seconds = 0.0
        self._blocked_since: float | None = None
        self._lock = threading.Lock()

    @property
    def call_count(self) -> int:
        return len(self.completed) + len(self.pending)

    def blocked_time(self) -> float:
        """Seconds the sandbox thread has spent waiting on the host, including now."""
        with self._lock:
            if self._blocked_since is None:
                return self.blocked_seconds
            return self.blocked_seconds + time.monotonic() - self._blocked_since

    def request(self, query: str, context_slice: str | None = None) -> str:
        """
        Issue a sub_lm call from the sandbox thread.

        Raises:
            RecursionDepthExceededError: If the next depth would reach the limit
            SubCallTimeoutError: If the host does not answer in time
        """
        if self.depth >= self.max_depth:
            error = RecursionDepthExceededError(self.depth, self.max_depth)
            self._record_violation(error)
            raise error

        req = SubCallRequest(query=str(query), context_slice=context_slice, depth=self.depth)

        if not self.synchronous:
            with self._lock:
                self.pending.append(req)
            return PENDING_MARKER.format(id=req.id)

        with self._lock:
            self._blocked_since = time.monotonic()
        self.loop.call_soon_threadsafe(self.queue.put_nowait, req)
        answered = req.event.wait(self.timeout)
        with self._lock:
            self.blocked_seconds += time.monotonic() - self._blocked_since
            self._blocked_since = None
            self.completed.append(req)

        if not answered:
            error = SubCallTimeoutError(self.timeout)
            self._record_violation(error)
            raise error

        if req.error is not None:
            if isinstance(req.error, (RecursionDepthExceededError, SubCallTimeoutError)):
                self._record_violation(req.error)
            raise req.error

        return req.response or ""

    async def serve(self, handler: SubCallHandler) -> None:
        """Answer requests on the host loop until ``close`` is called."""
        if self.queue is None:
            return
        while True:
            req = await self.queue.get()
            if req is None:
                break
            await self.answer(req, handler)

    async def answer(self, req: SubCallRequest, handler: SubCallHandler) -> None:
        if req.depth >= self.max_depth:
            req.resolve(error=RecursionDepthExceededError(req.depth, self.max_depth))
            return

        try:
            response = await asyncio.wait_for(handler(req), timeout=self.timeout)
        except asyncio.TimeoutError:
            req.resolve(error=SubCallTimeoutError(self.timeout))
        except RLMError as e:
            req.resolve(error=e)
        except Exception as e:
            logger.warning(f"sub_lm call {req.id} failed: {e}")
            req.resolve(response=f"[Error: {e}]")
        else:
            req.resolve(response=response)

    async def resolve_pending(self, handler: SubCallHandler) -> list[SubCallRequest]:
        """Answer calls queued in fallback mode, in issue order."""
        with self._lock:
            pending, self.pending = self.pending, []
        for req in pending:
            await self.answer(req, handler)
            self.completed.append(req)
        return pending

    def close(self) -> None:
        if self.queue is not None and self.loop is not None:
            self.loop.call_soon_threadsafe(self.queue.put_nowait, None)

    def _record_violation(self, error: RLMError) -> None:
        with self._lock:
            if self.violation is None:
                self.violation = error

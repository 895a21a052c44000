from __future__ import annotations
"""
Sindi — Stream Relay
=====================
Tees the model's token stream into two consumers:

1. the HTTP response, chunk by chunk as tokens arrive;
2. an accumulator whose text is persisted once, after the stream ends.

The source is iterated exactly once. Every chunk goes through the
PROPERTIES_JSON guard first, so what is stored is exactly what the client
was sent.

Close policy (PERSIST_PARTIAL_ON_CLOSE): when the client disconnects, or the
model stream dies after its first token, the text delivered so far is still
persisted as the assistant turn. With the policy off, partial text is
discarded and only naturally completed replies are stored.

Persistence runs in a background task. The response never waits on it, and
a slow or failing write cannot touch bytes already flushed.
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable

from sindi.config import PERSIST_PARTIAL_ON_CLOSE
from sindi.errors import UpstreamModelError

logger = logging.getLogger(__name__)


# Strong references so pending persistence tasks are not garbage collected
# once the request that spawned them is gone.
_background_tasks: set[asyncio.Task] = set()


def spawn(coro) -> asyncio.Task:
    task = asyncio.create_task(coro)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


async def drain_background_tasks(timeout: float = 10.0) -> None:
    """Wait for in-flight persistence (used on shutdown)."""
    pending = [t for t in _background_tasks if not t.done()]
    if not pending:
        return
    logger.info(f"[relay] waiting for {len(pending)} pending persistence task(s)")
    await asyncio.wait(pending, timeout=timeout)


OnFinish = Callable[[str, bool], Awaitable[None]]


class StreamRelay:
    """One relay per turn.

    ``on_finish(text, completed)`` is called at most once, in the background,
    with the delivered text.
    """

    def __init__(
        self,
        source: AsyncIterator[str],
        on_finish: OnFinish,
        guard=None,
        persist_partial: bool = PERSIST_PARTIAL_ON_CLOSE,
        label: str = "",
    ):
        self._source = source.__aiter__()
        self._on_finish = on_finish
        self.guard = guard
        self.persist_partial = persist_partial
        self.label = label

        self.delivered: list[str] = []
        self.completed = False
        self.close_reason: str | None = None
        self.persist_task: asyncio.Task | None = None

        self._head: str | None = None
        self._exhausted = False
        self._primed = False

    @property
    def text(self) -> str:
        return "".join(self.delivered)

    async def prime(self) -> None:
        """Pull the first chunk before any response headers go out.

        A model failure here is still reportable as a proper error status.
        """
        self._primed = True
        try:
            self._head = await self._source.__anext__()
        except StopAsyncIteration:
            self._exhausted = True
        except UpstreamModelError:
            raise
        except Exception as e:
            raise UpstreamModelError(f"Model stream failed before the first token: {e}") from e

    def _accept(self, chunk: str) -> str:
        out = self.guard.feed(chunk) if self.guard is not None else chunk
        if out:
            self.delivered.append(out)
        return out

    async def stream(self) -> AsyncIterator[str]:
        """Client-facing iterator. Schedules persistence when it ends for any reason."""
        if not self._primed:
            await self.prime()
        try:
            if self._head is not None:
                out = self._accept(self._head)
                self._head = None
                if out:
                    yield out

            if not self._exhausted:
                async for chunk in self._source:
                    out = self._accept(chunk)
                    if out:
                        yield out

            if self.guard is not None:
                tail = self.guard.finish()
                if tail:
                    self.delivered.append(tail)
                    yield tail
            self.completed = True

        except (asyncio.CancelledError, GeneratorExit):
            self.close_reason = "client disconnected"
            raise
        except Exception as e:
            # Headers are already out; the only thing left to do is stop.
            self.close_reason = f"upstream error: {e}"
            logger.error(f"[relay] {self.label} model stream failed mid-response: {e}")
        finally:
            self.persist_task = spawn(self._finalize())

    async def _finalize(self) -> None:
        try:
            await self._source.aclose()
        except (AttributeError, RuntimeError):
            pass
        except Exception as e:
            logger.debug(f"[relay] {self.label} closing model stream: {e}")

        text = self.text
        if self.completed:
            persist = bool(text.strip())
        else:
            persist = self.persist_partial and bool(text.strip())
            logger.info(
                f"[relay] {self.label} closed early ({self.close_reason}) after {len(text)} chars; "
                f"{'persisting partial reply' if persist else 'discarding partial reply'}"
            )
        if not persist:
            return

        try:
            await self._on_finish(text, self.completed)
        except Exception as e:
            logger.error(f"[relay] {self.label} persistence failed: {e}")

"""Live merged view: fan-in of local change notifications and one remote fetch.

Two producer tasks feed a single queue: one forwards every local snapshot,
the other runs the remote fetch once. The consumer recomputes the merged
view whenever either input changes. Closing the stream cancels both
producers; cancellation is stream termination, never a failure.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional

from .merge import DedupKey, by_name, merge

logger = logging.getLogger(__name__)

_LOCAL = "local"
_REMOTE = "remote"
_FAILED = "failed"


async def merged_view(
    local_snapshots: AsyncIterator[List[Any]],
    fetch_remote: Callable[[], Awaitable[List[Any]]],
    key: DedupKey = by_name,
) -> AsyncIterator[List[Any]]:
    """Yield merged snapshots until the consumer stops iterating.

    Nothing is emitted before the first local snapshot arrives. A remote
    fetch failure degrades to an empty remote set; a local store failure is
    raised to the consumer.
    """
    queue: asyncio.Queue = asyncio.Queue()

    async def pump_local() -> None:
        try:
            async for snapshot in local_snapshots:
                await queue.put((_LOCAL, snapshot))
        except Exception as e:
            await queue.put((_FAILED, e))

    async def fetch_once() -> None:
        try:
            records = await fetch_remote()
        except asyncio.CancelledError:
            logger.debug("Remote fetch cancelled with its stream")
            raise
        except Exception as e:
            logger.warning(f"Remote fetch failed, showing local records only: {e}")
            records = []
        await queue.put((_REMOTE, records))

    local_task = asyncio.create_task(pump_local())
    remote_task = asyncio.create_task(fetch_once())
    local: Optional[List[Any]] = None
    remote: List[Any] = []
    try:
        while True:
            source, payload = await queue.get()
            if source == _FAILED:
                raise payload
            if source == _LOCAL:
                local = payload
            else:
                remote = payload
            if local is None:
                continue
            yield merge(local, remote, key)
    finally:
        for task in (local_task, remote_task):
            task.cancel()
        await asyncio.gather(local_task, remote_task, return_exceptions=True)
        aclose = getattr(local_snapshots, "aclose", None)
        if aclose is not None:
            await aclose()

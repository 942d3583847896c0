"""Server-sent event framing: decoding upstream streams, encoding our own."""
from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator, List, Optional

logger = logging.getLogger(__name__)

DONE = "[DONE]"
HEARTBEAT_FRAME = ": ping\n\n"
DONE_FRAME = f"data: {DONE}\n\n"


def data_frame(data: str) -> str:
    return f"data: {data}\n\n"


def delta_frame(delta: str) -> str:
    """Frame a text delta as a JSON string literal so newlines survive the wire."""
    return data_frame(json.dumps(delta, ensure_ascii=False))


class EventStreamDecoder:
    """Incremental parser for ``text/event-stream`` bodies.

    Feed decoded text chunks as they arrive; every complete (blank-line
    terminated) event comes back as the joined value of its ``data:`` lines.
    Comment lines and other fields are ignored.
    """

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> List[str]:
        self._buffer += chunk.replace("\r\n", "\n").replace("\r", "\n")
        out: List[str] = []
        while "\n\n" in self._buffer:
            frame, self._buffer = self._buffer.split("\n\n", 1)
            data = self._parse_frame(frame)
            if data is not None:
                out.append(data)
        return out

    def flush(self) -> List[str]:
        """Parse whatever is left once the upstream closed without a final blank line."""
        frame, self._buffer = self._buffer, ""
        data = self._parse_frame(frame)
        return [] if data is None else [data]

    @staticmethod
    def _parse_frame(frame: str) -> Optional[str]:
        lines = []
        for line in frame.split("\n"):
            if not line.startswith("data:"):
                continue
            value = line[5:]
            if value.startswith(" "):
                value = value[1:]
            lines.append(value)
        if not lines:
            return None
        return "\n".join(lines).strip()


async def with_heartbeat(
    source: AsyncIterator[str],
    interval: float,
) -> AsyncIterator[Optional[str]]:
    """Re-yield ``source`` items, interleaving ``None`` every ``interval`` seconds.

    Ticks follow wall time since the call, not idle time, so a chatty stream
    still gets its keep-alive comments. On exit (exhaustion, error, or the
    consumer going away) the pending read is cancelled and ``source`` closed.
    """
    loop = asyncio.get_running_loop()
    next_beat = loop.time() + interval
    pending: Optional[asyncio.Task] = None
    try:
        while True:
            if pending is None:
                pending = asyncio.ensure_future(source.__anext__())
            timeout = max(0.0, next_beat - loop.time())
            done, _ = await asyncio.wait({pending}, timeout=timeout)
            if not done:
                next_beat += interval
                yield None
                continue
            task, pending = pending, None
            try:
                item = task.result()
            except StopAsyncIteration:
                return
            yield item
    finally:
        if pending is not None and not pending.done():
            pending.cancel()
            try:
                await pending
            except (asyncio.CancelledError, StopAsyncIteration):
                pass
        aclose = getattr(source, "aclose", None)
        if aclose is not None:
            await aclose()

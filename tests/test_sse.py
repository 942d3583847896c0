from __future__ import annotations

import asyncio
import json
from typing import AsyncIterator, List, Optional

from arai_relay.sse import (
    DONE_FRAME,
    HEARTBEAT_FRAME,
    EventStreamDecoder,
    delta_frame,
    with_heartbeat,
)


def test_frames_on_the_wire():
    assert HEARTBEAT_FRAME == ": ping\n\n"
    assert DONE_FRAME == "data: [DONE]\n\n"
    frame = delta_frame('line one\nsays "hi"')
    assert frame.startswith("data: ") and frame.endswith("\n\n")
    assert json.loads(frame[len("data: "):-2]) == 'line one\nsays "hi"'


def test_decoder_handles_frames_split_across_chunks():
    dec = EventStreamDecoder()
    assert dec.feed('data: {"delta": "He') == []
    assert dec.feed('l"}\n') == []
    assert dec.feed("\ndata: [DONE]\n\n") == ['{"delta": "Hel"}', "[DONE]"]


def test_decoder_ignores_comments_and_other_fields():
    dec = EventStreamDecoder()
    out = dec.feed(": keep-alive\n\nevent: response.output_text.delta\ndata: {\"delta\": \"x\"}\n\n")
    assert out == ['{"delta": "x"}']


def test_decoder_accepts_crlf_and_no_space_after_colon():
    dec = EventStreamDecoder()
    assert dec.feed("data:abc\r\n\r\ndata: def\r\n\r\n") == ["abc", "def"]


def test_decoder_joins_multiline_data_and_flushes_tail():
    dec = EventStreamDecoder()
    assert dec.feed("data: a\ndata: b\n\ndata: tail") == ["a\nb"]
    assert dec.flush() == ["tail"]
    assert dec.flush() == []


async def _collect(source: AsyncIterator[str], interval: float) -> List[Optional[str]]:
    return [item async for item in with_heartbeat(source, interval)]


def test_with_heartbeat_passes_items_through():
    async def source():
        for word in ["a", "b", "c"]:
            yield word

    assert asyncio.run(_collect(source(), interval=10)) == ["a", "b", "c"]


def test_with_heartbeat_ticks_while_source_is_slow():
    async def source():
        yield "first"
        await asyncio.sleep(0.35)
        yield "second"

    out = asyncio.run(_collect(source(), interval=0.1))
    assert out[0] == "first"
    assert out[-1] == "second"
    assert out.count(None) >= 2


def test_with_heartbeat_closes_source_when_consumer_stops():
    closed = []

    async def source():
        try:
            while True:
                yield "x"
                await asyncio.sleep(0.01)
        finally:
            closed.append(True)

    async def main():
        gen = with_heartbeat(source(), interval=10)
        got = [await gen.__anext__(), await gen.__anext__()]
        await gen.aclose()
        return got

    assert asyncio.run(main()) == ["x", "x"]
    assert closed == [True]

"""Client for the upstream completion API (one-shot and streaming).

Upstream answers drift in shape between API versions and event types, so
text is pulled out by walking an ordered list of small extractor functions
and taking the first non-empty hit. Anything unrecognised is "no text".
"""
from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence

import httpx

from .config import UpstreamSettings
from .errors import UpstreamError
from .memory import ConversationTurn
from .sse import DONE, EventStreamDecoder

logger = logging.getLogger(__name__)

Extractor = Callable[[Any], Optional[str]]


# -----------------------------
# Extractors
# -----------------------------
def _str_field(name: str) -> Extractor:
    def extract(obj: Any) -> Optional[str]:
        if isinstance(obj, dict) and isinstance(obj.get(name), str):
            return obj[name]
        return None

    extract.__name__ = f"field_{name}"
    return extract


def _first_content(obj: Any) -> Any:
    if isinstance(obj, dict):
        content = obj.get("content")
        if isinstance(content, list) and content:
            return content[0]
    return None


def content_item_text(obj: Any) -> Optional[str]:
    """``{"content": [{"text": "..."}]}``"""
    c0 = _first_content(obj)
    if isinstance(c0, dict) and isinstance(c0.get("text"), str):
        return c0["text"]
    return None


def content_nested_list_text(obj: Any) -> Optional[str]:
    """``{"content": [[{"text": "..."}]]}``"""
    c0 = _first_content(obj)
    if isinstance(c0, list) and c0 and isinstance(c0[0], dict) and isinstance(c0[0].get("text"), str):
        return c0[0]["text"]
    return None


def content_item_content(obj: Any) -> Optional[str]:
    """``{"content": [{"content": "..."}]}``"""
    c0 = _first_content(obj)
    if isinstance(c0, dict) and isinstance(c0.get("content"), str):
        return c0["content"]
    return None


def output_message_text(obj: Any) -> Optional[str]:
    """Concatenate ``output[*].content[*].text`` (Responses API message items)."""
    if not isinstance(obj, dict) or not isinstance(obj.get("output"), list):
        return None
    parts: List[str] = []
    for item in obj["output"]:
        if not isinstance(item, dict) or not isinstance(item.get("content"), list):
            continue
        for part in item["content"]:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
    return "".join(parts) or None


def json_dump(obj: Any) -> Optional[str]:
    try:
        return json.dumps(obj, ensure_ascii=False)
    except (TypeError, ValueError):
        return ""


FINAL_TEXT_EXTRACTORS: Sequence[Extractor] = (
    _str_field("output_text"),
    content_item_text,
    content_nested_list_text,
    content_item_content,
    output_message_text,
    json_dump,
)

DELTA_EXTRACTORS: Sequence[Extractor] = (
    _str_field("output_text_delta"),
    _str_field("delta"),
    _str_field("text"),
    _str_field("content"),
    content_item_text,
)


def first_text(obj: Any, extractors: Sequence[Extractor]) -> str:
    for extract in extractors:
        value = extract(obj)
        if value:
            return value
    return ""


def extract_final_text(data: Any) -> str:
    return first_text(data, FINAL_TEXT_EXTRACTORS)


def extract_delta(obj: Any) -> str:
    # "*.done" events repeat text already delivered as deltas.
    if isinstance(obj, dict) and str(obj.get("type", "")).endswith(".done"):
        return ""
    return first_text(obj, DELTA_EXTRACTORS)


def parse_delta(payload: str) -> str:
    """Delta text of one ``data:`` payload; non-JSON payloads yield ``""``."""
    try:
        obj = json.loads(payload)
    except ValueError:
        return ""
    return extract_delta(obj)


# -----------------------------
# Gateway
# -----------------------------
class CompletionGateway:
    """Talks to a Responses-style ``POST {base_url}/responses`` endpoint.

    Parameters
    ----------
    settings : UpstreamSettings
        Base URL, key, model and timeout.
    system_prompt : str
        Sent as the first message of every request.
    include_history : bool
        Replay supplied history turns into the upstream request. Off by
        default: the request then carries only system + user.
    client : httpx.AsyncClient | None
        Injected client (tests pass one backed by ``httpx.MockTransport``).
    """

    def __init__(
        self,
        settings: UpstreamSettings,
        *,
        system_prompt: str,
        include_history: bool = False,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings
        self.system_prompt = system_prompt
        self.include_history = include_history
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.timeout, connect=10.0),
        )

    @property
    def url(self) -> str:
        return f"{self.settings.base_url.rstrip('/')}/responses"

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # --------- request building ----------
    def build_messages(
        self,
        user_message: str,
        history: Optional[Sequence[ConversationTurn]] = None,
    ) -> List[Dict[str, str]]:
        msgs: List[Dict[str, str]] = [{"role": "system", "content": self.system_prompt}]
        if self.include_history:
            for turn in history or []:
                if turn.user:
                    msgs.append({"role": "user", "content": turn.user})
                if turn.assistant:
                    msgs.append({"role": "assistant", "content": turn.assistant})
        msgs.append({"role": "user", "content": user_message})
        return msgs

    def _body(self, text: str, history: Optional[Sequence[ConversationTurn]], stream: bool) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": self.settings.model,
            "input": self.build_messages(text, history),
        }
        if stream:
            body["stream"] = True
        return body

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.settings.api_key}",
            "Content-Type": "application/json",
        }

    # --------- one-shot ----------
    async def complete(
        self,
        text: str,
        history: Optional[Sequence[ConversationTurn]] = None,
    ) -> str:
        """Return the final text of a single, non-streamed completion."""
        try:
            resp = await self._client.post(self.url, json=self._body(text, history, False), headers=self._headers())
        except httpx.HTTPError as e:
            logger.warning("upstream request failed: %s", e)
            raise UpstreamError(502, f"Upstream unreachable: {e}") from e

        if not resp.is_success:
            logger.warning("upstream returned %s", resp.status_code)
            raise UpstreamError(resp.status_code, resp.text)

        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamError(502, f"Upstream sent invalid JSON: {e}") from e
        return extract_final_text(data)

    # --------- streaming ----------
    @asynccontextmanager
    async def open_stream(
        self,
        text: str,
        history: Optional[Sequence[ConversationTurn]] = None,
    ) -> AsyncIterator[AsyncIterator[str]]:
        """Open a streamed completion and yield an async iterator of deltas.

        Raises :class:`UpstreamError` on entry if the upstream cannot be
        reached or answers with an error status, before any delta exists.
        Leaving the block closes the upstream connection.
        """
        try:
            cm = self._client.stream("POST", self.url, json=self._body(text, history, True), headers=self._headers())
            resp = await cm.__aenter__()
        except httpx.HTTPError as e:
            logger.warning("upstream stream failed to open: %s", e)
            raise UpstreamError(502, str(e)) from e

        try:
            if not resp.is_success:
                body = (await resp.aread()).decode("utf-8", errors="replace")
                logger.warning("upstream stream returned %s", resp.status_code)
                raise UpstreamError(resp.status_code, body)
            yield self._deltas(resp)
        finally:
            await cm.__aexit__(None, None, None)

    async def _deltas(self, resp: httpx.Response) -> AsyncIterator[str]:
        decoder = EventStreamDecoder()
        async for chunk in resp.aiter_text():
            for payload in decoder.feed(chunk):
                if payload == DONE:
                    return
                delta = parse_delta(payload)
                if delta:
                    yield delta
        for payload in decoder.flush():
            if payload == DONE:
                return
            delta = parse_delta(payload)
            if delta:
                yield delta

    async def stream(
        self,
        text: str,
        history: Optional[Sequence[ConversationTurn]] = None,
    ) -> AsyncIterator[str]:
        """Convenience: iterate deltas of one streamed completion."""
        async with self.open_stream(text, history) as deltas:
            async for delta in deltas:
                yield delta

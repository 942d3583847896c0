"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List

import httpx
import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from arai_relay.config import Settings, UpstreamSettings  # noqa: E402
from arai_relay.gateway import CompletionGateway  # noqa: E402


class FakeClock:
    """Manually advanced clock (seconds since the epoch)."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def sse_body(*payloads: Any, done: bool = True) -> bytes:
    """Render upstream-style SSE frames; dicts are JSON-encoded."""
    frames = []
    for p in payloads:
        data = json.dumps(p) if not isinstance(p, str) else p
        frames.append(f"data: {data}\n\n")
    if done:
        frames.append("data: [DONE]\n\n")
    return "".join(frames).encode("utf-8")


class RecordingUpstream:
    """``httpx.MockTransport`` handler that records request bodies.

    ``respond`` builds the response for each request; the default answers
    non-streaming calls with ``{"output_text": "ok"}``.
    """

    def __init__(self, respond: Callable[[httpx.Request, Dict[str, Any]], httpx.Response] | None = None) -> None:
        self.requests: List[Dict[str, Any]] = []
        self.headers: List[httpx.Headers] = []
        self._respond = respond or (lambda req, body: httpx.Response(200, json={"output_text": "ok"}))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content or b"{}")
        self.requests.append(body)
        self.headers.append(request.headers)
        return self._respond(request, body)

    @property
    def last(self) -> Dict[str, Any]:
        return self.requests[-1]


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    s = Settings()
    s.upstream = UpstreamSettings(base_url="https://upstream.test/v1", api_key="sk-test", model="test-model")
    s.chat.system_prompt = "You are a test assistant."
    return s


@pytest.fixture
def make_gateway(settings: Settings):
    def factory(handler: Callable[[httpx.Request], httpx.Response], *, include_history: bool = False) -> CompletionGateway:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return CompletionGateway(
            settings.upstream,
            system_prompt=settings.chat.system_prompt,
            include_history=include_history,
            client=client,
        )

    return factory


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    for var in ["ARAI_RELAY_CONFIG", "OPENAI_API_KEY", "OPENAI_MODEL", "DETECTOR_KEY"]:
        monkeypatch.delenv(var, raising=False)
    yield

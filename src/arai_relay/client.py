"""Async consumer for the detector relay: claim, process, acknowledge."""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

Handler = Callable[[str, str], Awaitable[Any]]


class ClaimingPoller:
    """Polls ``GET /latest`` and acks what the handler finished.

    Usage:
        poller = ClaimingPoller("http://127.0.0.1:5000", api_key="mysecret")
        await poller.run(speak, interval=1.0, stop=stop_event)

    A handler that raises leaves the message un-acked; its lease then lapses
    and the message becomes claimable again.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        client_id: Optional[str] = None,
        *,
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = 5.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.client_id = client_id or str(uuid.uuid4())
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def __aenter__(self) -> "ClaimingPoller":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    def _headers(self) -> Dict[str, str]:
        return {"x-api-key": self.api_key}

    async def poll_once(self) -> Optional[Dict[str, Any]]:
        """Claim one message; ``None`` when the relay has nothing pending."""
        resp = await self._http.get(
            f"{self.base_url}/latest",
            params={"clientId": self.client_id},
            headers=self._headers(),
        )
        resp.raise_for_status()
        data = resp.json()
        if not data.get("id"):
            return None
        logger.debug("claimed %s -> %s", data["id"], data.get("text"))
        return data

    async def ack(self, message_id: str) -> bool:
        """Acknowledge a message; ``False`` if the relay refused (lease lost, unknown id)."""
        resp = await self._http.post(
            f"{self.base_url}/ack",
            json={"id": message_id, "clientId": self.client_id},
            headers=self._headers(),
        )
        if resp.status_code in (404, 409):
            logger.warning("ack of %s refused (%s): %s", message_id, resp.status_code, resp.text)
            return False
        resp.raise_for_status()
        return True

    async def process_one(self, handler: Handler) -> Optional[str]:
        """Claim, handle and ack a single message. Returns the id that was acked."""
        msg = await self.poll_once()
        if msg is None:
            return None
        try:
            await handler(msg["id"], msg["text"])
        except Exception:
            logger.exception("handler failed for %s; leaving it to lease expiry", msg["id"])
            return None
        return msg["id"] if await self.ack(msg["id"]) else None

    async def run(
        self,
        handler: Handler,
        *,
        interval: float = 1.0,
        stop: Optional[asyncio.Event] = None,
    ) -> None:
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                await self.process_one(handler)
            except httpx.HTTPError as e:
                logger.warning("poll failed: %s", e)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

"""In-memory message queue with exclusive, time-bounded claims (thread-safe).

Messages are kept in insertion order and never removed. A consumer claims the
oldest message that is neither consumed nor under a live lease, processes it
and acknowledges it. Only the client currently recorded as the holder may
acknowledge, so a consumer whose lease lapsed and was handed to someone else
cannot also mark the message done.

None of the operations below await anything: under the asyncio server each
call runs to completion before another request handler gets the loop. The
lock covers callers on other threads.
"""
from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from .errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 60.0

Clock = Callable[[], float]


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _ms(ts: float) -> int:
    return int(round(ts * 1000))


@dataclass
class Message:
    id: str
    text: str
    created_at: str
    consumed: bool = False
    claimed_by: Optional[str] = None
    claim_expiry: Optional[int] = None  # epoch milliseconds

    def lease_active(self, now_ms: int) -> bool:
        return self.claimed_by is not None and self.claim_expiry is not None and now_ms <= self.claim_expiry

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "ts": self.created_at,
            "consumed": self.consumed,
            "claimedBy": self.claimed_by,
            "claimExpiry": self.claim_expiry,
        }


class PushResult(NamedTuple):
    id: str
    duplicate: bool


@dataclass
class MessageQueue:
    """Append-only list of messages plus claim/ack bookkeeping.

    Parameters
    ----------
    clock : callable
        Returns the current time in seconds since the epoch. Tests pass a
        fake clock to move past lease expiry.
    lease_seconds : float
        How long a claim stays exclusive.
    """

    clock: Clock = time.time
    lease_seconds: float = DEFAULT_LEASE_SECONDS
    _messages: List[Message] = field(default_factory=list, init=False, repr=False)
    _index: Dict[str, Message] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.lease_seconds <= 0:
            raise ValueError("lease_seconds must be positive")

    # --------- core API ----------
    def push(self, text: str) -> PushResult:
        """Append ``text`` unless it repeats the newest still-pending message."""
        text = (text or "").strip()
        if not text:
            raise ValidationError("text must not be empty", code="empty")

        with self._lock:
            last = self._messages[-1] if self._messages else None
            if last is not None and not last.consumed and last.text == text:
                logger.debug("push deduplicated onto %s", last.id)
                return PushResult(last.id, True)

            msg = Message(id=str(uuid.uuid4()), text=text, created_at=_iso(self.clock()))
            self._messages.append(msg)
            self._index[msg.id] = msg
        logger.info("push %s %r", msg.id, msg.text)
        return PushResult(msg.id, False)

    def claim_next(self, client_id: str) -> Optional[Message]:
        """Lease the oldest claimable message to ``client_id``; ``None`` if there is none."""
        with self._lock:
            now_ms = _ms(self.clock())
            for msg in self._messages:
                if msg.consumed:
                    continue
                if msg.claimed_by is None or msg.claim_expiry is None or now_ms > msg.claim_expiry:
                    previous = msg.claimed_by
                    msg.claimed_by = client_id
                    msg.claim_expiry = now_ms + _ms(self.lease_seconds)
                    break
            else:
                return None
        if previous is not None:
            logger.info("claimed %s for %s (lease of %s expired)", msg.id, client_id, previous)
        else:
            logger.info("claimed %s for %s", msg.id, client_id)
        return msg

    def acknowledge(self, message_id: str, client_id: str) -> Message:
        """Mark a message consumed; only its current holder may do so, once."""
        with self._lock:
            msg = self._index.get(message_id)
            if msg is None:
                raise NotFoundError(f"unknown message {message_id}")
            if msg.claimed_by != client_id:
                raise ConflictError(
                    f"{message_id} is not claimed by {client_id}",
                    claimedBy=msg.claimed_by,
                )
            if msg.consumed:
                raise ConflictError(f"{message_id} already acknowledged", code="already-consumed")
            msg.consumed = True
            msg.claim_expiry = _ms(self.clock())
        logger.info("acked %s by %s", message_id, client_id)
        return msg

    def renew(self, message_id: str, client_id: str) -> Message:
        """Extend a live lease held by ``client_id``."""
        with self._lock:
            msg = self._index.get(message_id)
            if msg is None:
                raise NotFoundError(f"unknown message {message_id}")
            now_ms = _ms(self.clock())
            if msg.consumed or msg.claimed_by != client_id or not msg.lease_active(now_ms):
                raise ConflictError(
                    f"{client_id} holds no live lease on {message_id}",
                    claimedBy=msg.claimed_by,
                )
            msg.claim_expiry = now_ms + _ms(self.lease_seconds)
        logger.debug("renewed %s for %s", message_id, client_id)
        return msg

    # --------- convenience ----------
    def get(self, message_id: str) -> Optional[Message]:
        return self._index.get(message_id)

    def snapshot(self) -> List[Dict[str, Any]]:
        """Return every message (oldest first) as plain dicts."""
        with self._lock:
            return [m.to_dict() for m in self._messages]

    def pending_count(self) -> int:
        with self._lock:
            return sum(1 for m in self._messages if not m.consumed)

    def __len__(self) -> int:
        return len(self._messages)

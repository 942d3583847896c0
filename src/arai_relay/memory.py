"""Bounded, in-process conversation history (oldest turns evicted first)."""
from __future__ import annotations

import threading
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Deque, Dict, Iterable, List, Optional


@dataclass(frozen=True)
class ConversationTurn:
    user: str = ""
    assistant: str = ""

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


def coerce_turns(items: Optional[Iterable[Any]], capacity: int) -> List[ConversationTurn]:
    """Normalise ``[{user, assistant}]`` items into at most ``capacity`` recent turns.

    Items with neither side filled in are dropped.
    """
    out: List[ConversationTurn] = []
    for item in items or []:
        if isinstance(item, ConversationTurn):
            turn = item
        elif isinstance(item, dict):
            turn = ConversationTurn(
                user=str(item.get("user", "") or ""),
                assistant=str(item.get("assistant", "") or ""),
            )
        else:
            turn = ConversationTurn(user=str(getattr(item, "user", "") or ""),
                                    assistant=str(getattr(item, "assistant", "") or ""))
        if not (turn.user or turn.assistant):
            continue
        out.append(turn)
    if capacity <= 0:
        return []
    return out[-capacity:]


class ConversationMemory:
    """Fixed-capacity list of turns.

    Backed by a ``deque(maxlen=capacity)`` so adding past capacity silently
    drops the oldest turn.
    """

    def __init__(self, capacity: int = 10) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._turns: Deque[ConversationTurn] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def add(self, user: str, assistant: str) -> None:
        with self._lock:
            self._turns.append(ConversationTurn(user=user, assistant=assistant))

    def snapshot(self) -> List[ConversationTurn]:
        with self._lock:
            return list(self._turns)

    def clear(self) -> None:
        with self._lock:
            self._turns.clear()

    def __len__(self) -> int:
        return len(self._turns)

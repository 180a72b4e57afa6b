"""
MODULE OVERVIEW:
The persistence boundary.

WHAT IS HAPPENING HERE:
The hub forwards every chat message to a `MessageStore` if one is plugged in.
In production this would be a hosted database; here `InMemoryMessageStore` keeps
a rolling buffer of the most recent messages so that a freshly connected client
can catch up on what it missed.
"""
from collections import deque
from typing import Protocol

from loguru import logger

from shared.models import MessageEvent


class MessageStore(Protocol):
    async def save(self, message: MessageEvent) -> None: ...

    async def recent(self, limit: int) -> list[MessageEvent]: ...


class InMemoryMessageStore:
    def __init__(self, maxlen: int = 200):
        self._messages: deque[MessageEvent] = deque(maxlen=maxlen)

    async def save(self, message: MessageEvent) -> None:
        self._messages.append(message)
        logger.debug(f"event_id={message.event_id} sender={message.sender} event=stored")

    async def recent(self, limit: int) -> list[MessageEvent]:
        if limit <= 0:
            return []
        return list(self._messages)[-limit:]

    def __len__(self) -> int:
        return len(self._messages)

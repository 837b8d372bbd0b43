#!/usr/bin/env python3
"""
Outbound event delivery.

The reader only needs something with an async `publish(event_name, payload)`.
LocalMessageQueue is the in-process implementation: handlers subscribe with a
glob (e.g. "feed.*") and receive every matching message.
"""

from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from inspect import isawaitable
from time import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, Union
from uuid import uuid4

from config import get_logger

logger = get_logger("messagequeue")

DEFAULT_SENDER = "FeedReader"


@dataclass
class QueueMessage:
    """An event as delivered to subscribers."""
    event_name: str
    data: Dict[str, Any]
    sender: str = DEFAULT_SENDER
    message_id: str = field(default_factory=lambda: str(uuid4()))
    ts: float = field(default_factory=time)


Handler = Callable[[QueueMessage], Union[None, Awaitable[None]]]


class MessagePublisher(Protocol):
    async def publish(self, event_name: str, payload: Dict[str, Any]) -> None:
        ...


class LocalMessageQueue:
    """Glob-subscription fan-out within the current process."""

    def __init__(self, sender: str = DEFAULT_SENDER):
        self.sender = sender
        self._subscriptions: List[Tuple[str, Handler]] = []

    def subscribe(self, event_glob: str, handler: Handler) -> None:
        self._subscriptions.append((event_glob, handler))

    def unsubscribe(self, event_glob: str, handler: Optional[Handler] = None) -> None:
        """Drop subscriptions for a glob; all of them unless a handler is given."""
        self._subscriptions = [
            (glob, h) for glob, h in self._subscriptions
            if not (glob == event_glob and (handler is None or h == handler))
        ]

    def has_subscribers(self, event_name: str) -> bool:
        return any(fnmatchcase(event_name, glob) for glob, _ in self._subscriptions)

    async def publish(self, event_name: str, payload: Dict[str, Any]) -> None:
        """Deliver an event to every handler whose glob matches its name.

        A failing handler is logged and does not prevent delivery to the others.
        """
        message = QueueMessage(event_name=event_name, data=payload, sender=self.sender)
        for glob, handler in list(self._subscriptions):
            if not fnmatchcase(event_name, glob):
                continue
            try:
                result = handler(message)
                if isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Subscriber for '{glob}' failed handling {event_name}: {e}")

"""Typed in-process event bus.

Publishers emit dataclass events; subscribers register per event type.
Handler failures are logged and never reach the publisher, so a broken
notification hook cannot fail an upload.
"""
import inspect
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadCompleted:
    file_id: uuid.UUID
    file_name: str
    size: int
    download_link: str
    expires_at: datetime


@dataclass(frozen=True)
class UploadFailed:
    file_id: uuid.UUID
    reason: str


@dataclass(frozen=True)
class FileExpired:
    file_id: uuid.UUID
    storage_key: str


@dataclass(frozen=True)
class TierChanged:
    previous: Any
    current: Any


Handler = Callable[[Any], Union[None, Awaitable[None]]]


class EventBus:
    def __init__(self):
        self._handlers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: Handler) -> Callable[[], None]:
        """Register a handler; returns a callable that removes it again."""
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[event_type]:
                self._handlers[event_type].remove(handler)

        return unsubscribe

    async def publish(self, event: Any) -> None:
        for handler in list(self._handlers.get(type(event), [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Handler {handler!r} failed for {type(event).__name__}: {e}")


def optional_bus(bus: Optional[EventBus]) -> EventBus:
    return bus if bus is not None else EventBus()

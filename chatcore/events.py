"""Typed fire-and-forget notifications for the presentation layer."""

import logging
from collections import defaultdict
from typing import Callable, Dict, List, Type, TypeVar

from pydantic import BaseModel

from chatcore.schemas import Message

logger = logging.getLogger(__name__)


class ConversationMarkedRead(BaseModel):
    conversation_id: str
    user_id: str


class MessageSent(BaseModel):
    message: Message


E = TypeVar("E", bound=BaseModel)


class EventBus:
    """Delivers each published event once to every current subscriber of its type.
    
    Delivery is synchronous and best-effort: a failing handler is logged and
    does not stop delivery to the others or reach the publisher.
    """
    
    def __init__(self):
        self._handlers: Dict[type, List[Callable]] = defaultdict(list)
    
    def subscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> Callable[[], None]:
        self._handlers[event_type].append(handler)
        
        def unsubscribe():
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)
        
        return unsubscribe
    
    def publish(self, event: BaseModel) -> int:
        """Publish an event; returns how many handlers received it."""
        handlers = list(self._handlers.get(type(event), []))
        delivered = 0
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception:
                logger.exception(f"Handler {handler!r} failed for {type(event).__name__}")
        logger.debug(f"Published {type(event).__name__} to {delivered}/{len(handlers)} handler(s)")
        return delivered

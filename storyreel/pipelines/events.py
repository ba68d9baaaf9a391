"""
Pipeline Events

Minimal publish/subscribe bus. Stage completion is announced here rather
than advancing the pipeline directly, so advancement is just one listener
among any others.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Type

from storyreel.core.constants import PipelineStage
from storyreel.core.logging_config import get_logger

logger = get_logger("pipelines.events")


@dataclass
class StageCompleted:
    """A stage finished and the pipeline may move on."""
    story_id: int
    stage: PipelineStage
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class Subscription:
    """A registered handler."""
    id: str
    event_type: Type
    handler: Callable[[Any], None]
    priority: int = 0


class EventBus:
    """
    Synchronous event bus.

    Handlers run in priority order (highest first) inside ``emit``; a
    handler that raises stops delivery and the error reaches the emitter.
    """

    def __init__(self):
        self._subscriptions: Dict[Type, List[Subscription]] = {}
        self._sub_counter = 0

    def subscribe(self, event_type: Type, handler: Callable[[Any], None], priority: int = 0) -> str:
        self._sub_counter += 1
        sub_id = f"sub_{self._sub_counter:06d}"
        subs = self._subscriptions.setdefault(event_type, [])
        subs.append(Subscription(id=sub_id, event_type=event_type, handler=handler, priority=priority))
        subs.sort(key=lambda s: s.priority, reverse=True)
        return sub_id

    def unsubscribe(self, sub_id: str) -> bool:
        for subs in self._subscriptions.values():
            for sub in subs:
                if sub.id == sub_id:
                    subs.remove(sub)
                    return True
        return False

    def emit(self, event: Any) -> int:
        """Deliver ``event``; returns the number of handlers called."""
        subs = list(self._subscriptions.get(type(event), []))
        logger.debug(f"Emitting {type(event).__name__} to {len(subs)} handler(s)")
        for sub in subs:
            sub.handler(event)
        return len(subs)

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, Optional

from src.shared.system.logging import Logger


class KeeperEventType(Enum):
    CRANK_SUCCESS = "crank.success"
    CRANK_FAILURE = "crank.failure"
    LIQUIDATION_SUCCESS = "liquidation.success"
    LIQUIDATION_FAILURE = "liquidation.failure"
    MARKET_DISCOVERED = "market.discovered"
    MARKET_PRUNED = "market.pruned"
    PRICE_PUSHED = "price.pushed"
    PRICE_FAILED = "price.failed"


@dataclass
class KeeperEvent:
    type: KeeperEventType
    slab_address: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class EventChannel:
    """
    Bounded hand-off between the keeper and downstream consumers
    (indexers, dashboards). One producer, any number of readers draining
    the same queue.

    Publishing never blocks the keeper: when the queue is full the event is
    dropped and counted.
    """

    def __init__(self, maxsize: int = 1000):
        self._queue: "asyncio.Queue[KeeperEvent]" = asyncio.Queue(maxsize=maxsize)
        self.published = 0
        self.dropped = 0

    def publish(self, event: KeeperEvent) -> bool:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            Logger.debug(f"[KEEPER] Event channel full, dropped {event.type.value}")
            return False
        self.published += 1
        return True

    def emit(self, event_type: KeeperEventType, slab_address: str, **data: Any) -> bool:
        return self.publish(KeeperEvent(type=event_type, slab_address=slab_address, data=data))

    async def get(self) -> KeeperEvent:
        return await self._queue.get()

    def get_nowait(self) -> Optional[KeeperEvent]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def qsize(self) -> int:
        return self._queue.qsize()

    async def __aiter__(self) -> AsyncIterator[KeeperEvent]:
        while True:
            yield await self._queue.get()

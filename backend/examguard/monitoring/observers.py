import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, List, Set

logger = logging.getLogger(__name__)


class ObserverHub:
    """Fan-out of live session updates (UI badges, reviewer dashboards)"""

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._subscribers: Dict[str, Set[asyncio.Queue]] = defaultdict(set)

    def subscribe(self, session_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers[session_id].add(queue)
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> None:
        subscribers = self._subscribers.get(session_id)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._subscribers[session_id]

    def publish(self, session_id: str, message: Dict[str, Any]) -> int:
        delivered = 0
        for queue in list(self._subscribers.get(session_id, ())):
            if queue.full():
                # Slow observers lose the oldest update, never block the worker
                queue.get_nowait()
                logger.warning(f"Observer queue full for session {session_id}; dropped oldest update")
            queue.put_nowait(message)
            delivered += 1
        return delivered

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscribers.get(session_id, ()))

    def drain(self, queue: asyncio.Queue) -> List[Dict[str, Any]]:
        messages = []
        while not queue.empty():
            messages.append(queue.get_nowait())
        return messages

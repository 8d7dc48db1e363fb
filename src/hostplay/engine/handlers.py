"""
Hostplay Notification/Handler Queue

Per-play, per-host queue of notified handlers. Notifying a handler twice
before a flush queues it once; a flush runs the queue in first-notified
order and empties it.
"""

import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from hostplay.engine.playbook import Task
from hostplay.engine.results import TaskResult

logger = logging.getLogger(__name__)


class NotificationQueue:
    """
    Deduplicated handler queues, one per host.

    A handler is triggered by its name and by each of its ``listen``
    aliases; every handler subscribed to a notified name is queued
    together, in definition order.
    """

    def __init__(self, handlers: Iterable[Task] = ()):
        self._handlers: List[Task] = []
        self._queues: Dict[str, List[Task]] = {}
        for handler in handlers:
            self.register(handler)

    def register(self, handler: Task) -> None:
        """Add a handler; a later handler with the same name replaces the earlier one."""
        self._handlers = [h for h in self._handlers if h.name != handler.name]
        self._handlers.append(handler)

    @property
    def handlers(self) -> List[Task]:
        return list(self._handlers)

    def subscribers(self, name: str) -> List[Task]:
        """Handlers triggered by ``name``."""
        return [h for h in self._handlers if h.name == name or name in h.listen]

    def notify(self, host: str, name: str) -> List[Task]:
        """
        Queue the handlers subscribed to ``name`` for ``host``.

        Returns:
            The handlers newly added to the queue (empty when already queued)
        """
        subscribed = self.subscribers(name)
        if not subscribed:
            logger.warning("Host %s notified unknown handler %r", host, name)
            return []

        queue = self._queues.setdefault(host, [])
        added = []
        for handler in subscribed:
            if not any(handler is queued for queued in queue):
                queue.append(handler)
                added.append(handler)
        return added

    def pending(self, host: str) -> List[Task]:
        return list(self._queues.get(host, []))

    def has_pending(self, host: str) -> bool:
        return bool(self._queues.get(host))

    def clear(self, host: Optional[str] = None) -> None:
        """Discard queued notifications for one host or all hosts."""
        if host is None:
            self._queues.clear()
        else:
            self._queues.pop(host, None)

    async def flush(
        self,
        host: str,
        execute: Callable[[Task], Awaitable[Optional[TaskResult]]],
    ) -> List[Task]:
        """
        Run every queued handler for ``host`` exactly once.

        Handlers notified while the flush is running join the same flush.
        A failing handler stops the flush and discards the rest of the queue.

        Returns:
            The handlers that ran, in order
        """
        queue = self._queues.setdefault(host, [])
        ran: List[Task] = []
        if queue:
            logger.debug("Flushing %d handler(s) for %s", len(queue), host)
        while queue:
            handler = queue.pop(0)
            if any(handler is done for done in ran):
                continue
            ran.append(handler)
            result = await execute(handler)
            if result is not None and result.failed and not result.ignored:
                logger.debug("Handler %r failed on %s, dropping %d queued", handler.name, host, len(queue))
                queue.clear()
                break
        return ran

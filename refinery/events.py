import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

FRAGMENT_CREATED = "fragment:created"
FRAGMENT_UPDATED = "fragment:updated"
PIPELINE_STARTED = "pipeline:started"
PIPELINE_COMPLETED = "pipeline:completed"

Handler = Callable[[dict], Any]


class EventBus:
    """
    Minimal synchronous pub/sub scoped to one session.

    Handlers run in registration order on the emitter's stack. A failing handler is logged
    and skipped so one subscriber cannot break delivery to the others.
    """

    def __init__(self):
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def on(self, event: str, handler: Handler) -> None:
        if handler not in self._handlers[event]:
            self._handlers[event].append(handler)

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return

    def handler_count(self, event: str) -> int:
        return len(self._handlers.get(event) or [])

    def emit(self, event: str, payload: dict | None = None) -> None:
        for handler in list(self._handlers.get(event) or []):
            try:
                handler(payload or {})
            except Exception:
                logger.exception("Event handler failed for %s", event)

    def clear(self) -> None:
        self._handlers.clear()

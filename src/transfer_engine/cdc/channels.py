"""In-process channel fan-out for captured changes.

Handlers are called in subscription order for each published record.
A failing handler is counted, dead-lettered and logged; it never stops
delivery to the remaining handlers and never propagates to the publisher.
"""

from __future__ import annotations

import inspect
import logging
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from .records import ChangeRecord

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[ChangeRecord], Awaitable[None] | None]


@dataclass
class DeadLetter:
    """Record of a handler failure."""

    topic: str
    group: str
    change_id: str
    error: str
    timestamp: float = field(default_factory=time.monotonic)


class ChangeChannels:
    """Topic-routed handler registry.

    Args:
        on_handler_error: Optional callback ``(topic, group, change_id, exc)``
            for external alerting.
        max_dead_letters: Oldest dead letters are discarded beyond this.
    """

    def __init__(
        self,
        on_handler_error: Callable[[str, str, str, Exception], None] | None = None,
        max_dead_letters: int = 1000,
    ) -> None:
        # topic → list of (group, handler)
        self._handlers: dict[str, list[tuple[str, ChangeHandler]]] = defaultdict(list)
        self._on_handler_error = on_handler_error
        self._max_dead_letters = max_dead_letters

        self._error_counts: dict[str, int] = defaultdict(int)
        self._dead_letters: list[DeadLetter] = []
        self._delivered: int = 0

    def subscribe(
        self,
        topic: str,
        handler: ChangeHandler,
        group: str = "default",
    ) -> Callable[[], None]:
        """Register *handler* on *topic*; returns an unsubscribe callable."""
        entry = (group, handler)
        self._handlers[topic].append(entry)

        def _unsubscribe() -> None:
            try:
                self._handlers[topic].remove(entry)
            except ValueError:
                pass

        return _unsubscribe

    async def publish(self, topic: str, record: ChangeRecord) -> None:
        """Deliver *record* to every handler subscribed to *topic*."""
        for group, handler in list(self._handlers.get(topic, [])):
            try:
                result = handler(record)
                if inspect.isawaitable(result):
                    await result
                self._delivered += 1
            except Exception as exc:
                self._record_failure(topic, group, record, exc)

    def _record_failure(
        self,
        topic: str,
        group: str,
        record: ChangeRecord,
        exc: Exception,
    ) -> None:
        self._error_counts[f"{topic}/{group}"] += 1
        self._dead_letters.append(
            DeadLetter(topic=topic, group=group, change_id=record.change_id, error=str(exc))
        )
        if len(self._dead_letters) > self._max_dead_letters:
            del self._dead_letters[0]
        logger.exception(
            "Change handler error on topic=%s group=%s entity=%s/%s",
            topic, group, record.entity_type.value, record.entity_id,
        )
        if self._on_handler_error is not None:
            try:
                self._on_handler_error(topic, group, record.change_id, exc)
            except Exception:
                logger.warning("on_handler_error callback failed", exc_info=True)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def subscriber_count(self, topic: str | None = None) -> int:
        if topic is None:
            return sum(len(v) for v in self._handlers.values())
        return len(self._handlers.get(topic, []))

    def get_error_counts(self) -> dict[str, int]:
        """Return per-topic/group error counts."""
        return dict(self._error_counts)

    @property
    def dead_letters(self) -> list[DeadLetter]:
        return list(self._dead_letters)

    @property
    def delivered(self) -> int:
        """Successful handler invocations."""
        return self._delivered

    def clear_dead_letters(self) -> list[DeadLetter]:
        """Drain the dead-letter list and return all entries."""
        drained = self._dead_letters[:]
        self._dead_letters.clear()
        return drained

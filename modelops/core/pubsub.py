"""In-process event bus carrying lifecycle events between services."""

import asyncio
import contextlib
import itertools
import logging
from collections import Counter, defaultdict
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from .events import Event, EventType

if TYPE_CHECKING:
    from ..config_manager import ConfigManager

E = TypeVar("E", bound=Event)

EventHandler = Callable[[E], Coroutine[Any, Any, None]]


def _describe(handler: Callable[..., Any]) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)


@dataclass(frozen=True)
class BusSettings:
    """Tunables read from the ``pubsub`` config section."""

    queue_maxsize: int = 0
    handler_timeout_s: float = 30.0
    handler_max_failures: int = 5
    consumer_error_sleep_s: float = 1.0

    @classmethod
    def from_config(cls, config: "ConfigManager") -> "BusSettings":
        return cls(
            queue_maxsize=config.get_int("pubsub.queue_maxsize", cls.queue_maxsize),
            handler_timeout_s=config.get_float(
                "pubsub.handler_timeout_seconds", cls.handler_timeout_s),
            handler_max_failures=config.get_int(
                "pubsub.handler_max_failures", cls.handler_max_failures),
            consumer_error_sleep_s=config.get_float(
                "pubsub.consumer_error_sleep_seconds", cls.consumer_error_sleep_s),
        )


class PubSubManager:
    """Routes published events to the handlers subscribed to their type.

    Lower ``EventType`` values are delivered first; equal priorities keep
    publication order. Every handler call gets its own task and, unless its
    subscription is exempt, a timeout. A handler failing
    ``handler_max_failures`` times in a row is dropped.
    """

    def __init__(self, logger: logging.Logger, config_manager: "ConfigManager") -> None:
        self._logger = logger
        self._settings = BusSettings.from_config(config_manager)
        self._handlers: defaultdict[EventType, list[EventHandler]] = defaultdict(list)
        self._queue: asyncio.PriorityQueue[tuple[int, int, Event]] = asyncio.PriorityQueue(
            maxsize=self._settings.queue_maxsize)
        self._tiebreak = itertools.count()
        self._consecutive_failures: Counter[EventHandler] = Counter()
        self._untimed: set[tuple[EventType, EventHandler]] = set()
        self._counters: Counter[str] = Counter()
        self._consumer: asyncio.Task | None = None
        self._in_flight: set[asyncio.Task] = set()

        self._logger.info(
            "Event bus created (queue maxsize %s, handler timeout %ss)",
            self._settings.queue_maxsize or "unbounded",
            self._settings.handler_timeout_s,
        )

    # --- subscriptions -------------------------------------------------

    def subscribe(
        self, event_type: EventType, handler: EventHandler, *, exempt_from_timeout: bool = False,
    ) -> None:
        """Register ``handler`` for every future event of ``event_type``.

        Handlers subscribed with ``exempt_from_timeout`` run to completion instead of
        being cancelled after ``pubsub.handler_timeout_seconds``.
        """
        self._handlers[event_type].append(handler)
        if exempt_from_timeout:
            self._untimed.add((event_type, handler))
        self._logger.info("%s subscribed to %s", _describe(handler), event_type.name)

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Remove ``handler`` from ``event_type``; unknown handlers are logged and ignored."""
        registered = self._handlers.get(event_type, [])
        if handler not in registered:
            self._logger.warning(
                "%s is not subscribed to %s", _describe(handler), event_type.name)
            return
        registered.remove(handler)
        if handler not in registered:
            self._untimed.discard((event_type, handler))
        self._logger.info("%s unsubscribed from %s", _describe(handler), event_type.name)

    # --- publishing ----------------------------------------------------

    async def publish(self, event: Event) -> None:
        """Queue ``event`` for delivery. Objects without an ``EventType`` are dropped."""
        event_type = getattr(event, "event_type", None)
        if not isinstance(event_type, EventType):
            self._logger.warning("Dropping object without a valid event type: %r", event)
            return

        await self._queue.put((event_type.value, next(self._tiebreak), event))
        self._counters["published"] += 1
        self._logger.debug("Queued %s %s", event_type.name, event.event_id)

    # --- delivery ------------------------------------------------------

    async def _invoke(self, handler: EventHandler, event: Event) -> None:
        event_type: EventType = event.event_type  # type: ignore[attr-defined]
        timeout = (
            None if (event_type, handler) in self._untimed else self._settings.handler_timeout_s
        )
        try:
            await asyncio.wait_for(handler(event), timeout=timeout)
        except TimeoutError:
            self._logger.exception(
                "%s exceeded %ss on %s %s",
                _describe(handler), self._settings.handler_timeout_s,
                event_type.name, event.event_id,
            )
            self._on_handler_failure(
                handler, event_type, f"timed out after {self._settings.handler_timeout_s}s")
        except Exception as exc:
            self._logger.exception(
                "%s raised while handling %s %s",
                _describe(handler), event_type.name, event.event_id,
            )
            self._on_handler_failure(handler, event_type, str(exc))
        else:
            self._consecutive_failures.pop(handler, None)

    def _on_handler_failure(
        self, handler: EventHandler, event_type: EventType, reason: str,
    ) -> None:
        self._counters["handler_errors"] += 1
        self._consecutive_failures[handler] += 1
        failures = self._consecutive_failures[handler]
        limit = self._settings.handler_max_failures

        if failures < limit:
            self._logger.warning(
                "%s failed on %s (%s/%s): %s",
                _describe(handler), event_type.name, failures, limit, reason,
            )
            return

        self._logger.critical(
            "%s reached %s consecutive failures on %s, removing it. Last error: %s",
            _describe(handler), limit, event_type.name, reason,
        )
        del self._consecutive_failures[handler]
        self.unsubscribe(event_type, handler)

    def _fan_out(self, event: Event) -> None:
        event_type: EventType = event.event_type  # type: ignore[attr-defined]
        handlers = tuple(self._handlers.get(event_type, ()))
        if not handlers:
            self._logger.debug("Nobody listens to %s", event_type.name)
        for handler in handlers:
            task = asyncio.create_task(self._invoke(handler, event))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def _consume(self) -> None:
        self._logger.info("Event consumer running")
        while True:
            try:
                _, _, event = await self._queue.get()
            except asyncio.CancelledError:
                break
            try:
                self._fan_out(event)
                self._counters["processed"] += 1
            except Exception:
                self._logger.exception("Event consumer failed to dispatch %r", event)
                await asyncio.sleep(self._settings.consumer_error_sleep_s)
            finally:
                self._queue.task_done()
        self._logger.info("Event consumer exited")

    async def drain(self) -> None:
        """Block until the queue is empty and no handler is still running.

        Events published by handlers while draining are waited for too.
        """
        while True:
            await self._queue.join()
            running = [task for task in self._in_flight if not task.done()]
            if running:
                await asyncio.gather(*running, return_exceptions=True)
            elif self._queue.empty():
                return

    def get_metrics(self) -> dict[str, int]:
        """Snapshot of the bus counters."""
        return {
            "queue_size": self._queue.qsize(),
            "published": self._counters["published"],
            "processed": self._counters["processed"],
            "handler_errors": self._counters["handler_errors"],
        }

    # --- lifecycle -----------------------------------------------------

    async def start(self) -> None:
        """Launch the consumer task."""
        if self._consumer is not None and not self._consumer.done():
            self._logger.warning("Event bus is already running")
            return
        self._consumer = asyncio.create_task(self._consume())
        self._logger.info("Event bus started")

    async def stop(self) -> None:
        """Cancel the consumer and let in-flight handlers finish."""
        if self._consumer is not None and not self._consumer.done():
            self._consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._consumer
        self._consumer = None

        if self._in_flight:
            self._logger.info("Waiting on %s in-flight handlers", len(self._in_flight))
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        self._logger.info("Event bus stopped")

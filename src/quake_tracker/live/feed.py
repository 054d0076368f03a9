from __future__ import annotations

import asyncio
import json
import logging
import queue
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

import websockets

from quake_tracker.core.errors import MalformedMessage
from quake_tracker.core.schema import SeismicEvent, event_from_feature, event_to_feature
from quake_tracker.core.time_utils import utc_now
from quake_tracker.store.event_store import EventStore

logger = logging.getLogger(__name__)

ConnectFactory = Callable[[str], Any]


class LiveAction(StrEnum):
    CREATE = "create"
    UPDATE = "update"


@dataclass(frozen=True, slots=True)
class LiveDelta:
    action: LiveAction
    event: SeismicEvent
    received_at: datetime = field(default_factory=utc_now)

    def to_message(self) -> dict[str, Any]:
        return {"action": self.action.value, "data": event_to_feature(self.event)}


def decode_live_message(raw: str | bytes | dict[str, Any]) -> LiveDelta:
    """Decode one ``{"action": ..., "data": <feature>}`` feed message."""
    if isinstance(raw, dict):
        message = raw
    else:
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        try:
            message = json.loads(text)
        except json.JSONDecodeError as exc:
            raise MalformedMessage("live message is not valid JSON") from exc
        except RecursionError as exc:
            raise MalformedMessage("live message is nested too deeply") from exc
    if not isinstance(message, dict):
        raise MalformedMessage("live message must be a JSON object")

    try:
        action = LiveAction(str(message.get("action", "")).strip().lower())
    except ValueError as exc:
        raise MalformedMessage(f"unknown live action: {message.get('action')!r}") from exc

    return LiveDelta(action=action, event=event_from_feature(message.get("data")))


class DeltaSubscription:
    """Bounded per-subscriber buffer.

    When the buffer is full the oldest delta is discarded, so a slow consumer
    loses history instead of stalling the publisher.
    """

    def __init__(self, channel: str, maxsize: int, on_close: Callable[[DeltaSubscription], None]) -> None:
        self.channel = channel
        self._queue: queue.Queue[LiveDelta] = queue.Queue(maxsize=maxsize)
        self._on_close = on_close
        self._closed = threading.Event()
        self._lock = threading.Lock()
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def offer(self, delta: LiveDelta) -> None:
        with self._lock:
            while True:
                try:
                    self._queue.put_nowait(delta)
                    return
                except queue.Full:
                    try:
                        self._queue.get_nowait()
                    except queue.Empty:
                        continue
                    self.dropped += 1

    def get(self, timeout: float | None = None) -> LiveDelta | None:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def pending(self) -> int:
        return self._queue.qsize()

    def __iter__(self) -> Iterator[LiveDelta]:
        while True:
            delta = self.get(timeout=0.25)
            if delta is not None:
                yield delta
            elif self.closed:
                return

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._on_close(self)


class SubscriberHub:
    def __init__(self, buffer_size: int = 256) -> None:
        self._buffer_size = buffer_size
        self._subscriptions: list[DeltaSubscription] = []
        self._lock = threading.Lock()

    def subscribe(self, channel: str) -> DeltaSubscription:
        subscription = DeltaSubscription(channel, self._buffer_size, on_close=self._remove)
        with self._lock:
            self._subscriptions.append(subscription)
        logger.info("Live subscriber registered", extra={"channel": channel})
        return subscription

    def publish(self, delta: LiveDelta) -> int:
        with self._lock:
            targets = list(self._subscriptions)
        for subscription in targets:
            subscription.offer(delta)
        return len(targets)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def close_all(self) -> None:
        with self._lock:
            targets = list(self._subscriptions)
        for subscription in targets:
            subscription.close()

    def _remove(self, subscription: DeltaSubscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
        logger.info(
            "Live subscriber removed",
            extra={"channel": subscription.channel, "dropped": subscription.dropped},
        )


class LiveFeedWorker:
    """Websocket receive loop running on its own thread.

    Reconnects with exponential backoff; the stop flag is checked between
    messages and at every read timeout.
    """

    def __init__(
        self,
        *,
        url: str,
        on_message: Callable[[str | bytes], None],
        on_connection_change: Callable[[bool], None] | None = None,
        reconnect_initial_seconds: float = 1.0,
        reconnect_max_seconds: float = 30.0,
        read_timeout_seconds: float = 1.0,
        max_reconnect_attempts: int | None = None,
        connect: ConnectFactory | None = None,
    ) -> None:
        self._url = url
        self._on_message = on_message
        self._on_connection_change = on_connection_change
        self._reconnect_initial_seconds = reconnect_initial_seconds
        self._reconnect_max_seconds = reconnect_max_seconds
        self._read_timeout_seconds = read_timeout_seconds
        self._max_reconnect_attempts = max_reconnect_attempts
        self._connect = connect or self._default_connect
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._connected_this_attempt = False
        self.connection_attempts = 0
        self.handler_failures = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="live-feed-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> bool:
        """Signal the loop and wait for it; returns False if the thread is still alive.

        A thread that outlives the timeout stays referenced, so ``start`` will
        not launch a second loop beside it.
        """
        self._stop_event.set()
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout=timeout)
        if thread.is_alive():
            logger.warning(
                "Live feed worker still running after stop timeout",
                extra={"url": self._url, "timeout_seconds": timeout},
            )
            return False
        self._thread = None
        return True

    def _default_connect(self, url: str) -> Any:
        return websockets.connect(
            url,
            ping_interval=20,
            ping_timeout=20,
            close_timeout=5,
            max_size=2**22,
        )

    def _run_loop(self) -> None:
        delay = self._reconnect_initial_seconds
        failures = 0

        with asyncio.Runner() as runner:
            while not self._stop_event.is_set():
                self._connected_this_attempt = False
                self.connection_attempts += 1
                try:
                    runner.run(self._run_once())
                except Exception:
                    logger.exception("Live feed connection failed", extra={"url": self._url})
                finally:
                    self._publish_connection(False)

                if self._stop_event.is_set():
                    break

                if self._connected_this_attempt:
                    delay = self._reconnect_initial_seconds
                    failures = 0
                else:
                    failures += 1
                    if self._max_reconnect_attempts is not None and failures >= self._max_reconnect_attempts:
                        logger.error(
                            "Live feed reconnect attempts exhausted",
                            extra={"url": self._url, "attempts": failures},
                        )
                        break

                logger.warning(
                    "Reconnecting to live feed",
                    extra={"url": self._url, "sleep_seconds": round(delay, 3), "failures": failures},
                )
                self._stop_event.wait(delay)
                delay = min(delay * 2, self._reconnect_max_seconds)

    async def _run_once(self) -> None:
        async with self._connect(self._url) as connection:
            self._connected_this_attempt = True
            self._publish_connection(True)
            logger.info("Live feed connected", extra={"url": self._url})

            while not self._stop_event.is_set():
                try:
                    payload = await asyncio.wait_for(connection.recv(), timeout=self._read_timeout_seconds)
                except TimeoutError:
                    continue

                try:
                    self._on_message(payload)
                except Exception:
                    # one bad message must not cost the connection
                    self.handler_failures += 1
                    logger.exception("Live feed message handler failed", extra={"url": self._url})

    def _publish_connection(self, connected: bool) -> None:
        if self._on_connection_change is None:
            return
        self._on_connection_change(connected)


class LiveFeedListener:
    """Merges live deltas into the event store and republishes them."""

    def __init__(
        self,
        *,
        url: str,
        store: EventStore,
        buffer_size: int = 256,
        reconnect_initial_seconds: float = 1.0,
        reconnect_max_seconds: float = 30.0,
        read_timeout_seconds: float = 1.0,
        max_reconnect_attempts: int | None = None,
        connect: ConnectFactory | None = None,
    ) -> None:
        self._store = store
        self._hub = SubscriberHub(buffer_size=buffer_size)
        self._worker = LiveFeedWorker(
            url=url,
            on_message=self.handle_message,
            on_connection_change=self._on_connection_change,
            reconnect_initial_seconds=reconnect_initial_seconds,
            reconnect_max_seconds=reconnect_max_seconds,
            read_timeout_seconds=read_timeout_seconds,
            max_reconnect_attempts=max_reconnect_attempts,
            connect=connect,
        )
        self._connected = False
        self._state_lock = threading.Lock()
        self.messages_applied = 0
        self.messages_dropped = 0

    @property
    def running(self) -> bool:
        return self._worker.running

    @property
    def connected(self) -> bool:
        with self._state_lock:
            return self._connected

    @property
    def connection_attempts(self) -> int:
        return self._worker.connection_attempts

    def start(self) -> None:
        self._worker.start()

    def stop(self) -> None:
        self._worker.stop()
        self._hub.close_all()

    def subscribe(self, channel: str) -> DeltaSubscription:
        return self._hub.subscribe(channel)

    def subscriber_count(self) -> int:
        return self._hub.subscriber_count()

    def handle_message(self, raw: str | bytes | dict[str, Any]) -> LiveDelta | None:
        try:
            delta = decode_live_message(raw)
        except MalformedMessage as exc:
            with self._state_lock:
                self.messages_dropped += 1
            logger.warning("Dropping malformed live message", extra={"reason": str(exc)})
            return None

        self._store.upsert(delta.event)
        with self._state_lock:
            self.messages_applied += 1
        self._hub.publish(delta)
        logger.debug(
            "Applied live delta",
            extra={"action": delta.action.value, "event_id": delta.event.id},
        )
        return delta

    def _on_connection_change(self, connected: bool) -> None:
        with self._state_lock:
            self._connected = connected

from __future__ import annotations

import copy
import logging
import queue
import threading
from collections import OrderedDict
from collections.abc import Callable, Hashable, Iterable, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from routeplane.src.errors import (
    ClusterAPIError,
    ConflictError,
    NotFoundError,
    UnexpectedObjectError,
)
from routeplane.src.gatewayapi import NamespacedName, RouteKind
from routeplane.src.metrics import METRICS

if TYPE_CHECKING:
    from routeplane.src.kube import ClusterClient

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Update(Generic[K, V]):
    """One change observed by a status subscriber."""

    key: K
    value: V | None
    delete: bool = False


class _Subscription(Generic[K, V]):
    """Pending updates of one subscriber, coalesced per key."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._pending: OrderedDict[K, Update[K, V]] = OrderedDict()

    def push(self, update: Update[K, V]) -> None:
        with self._cond:
            # Existing keys keep their position; only the latest value is delivered.
            self._pending[update.key] = update
            self._cond.notify()

    def pop(self, timeout: float) -> Update[K, V] | None:
        with self._cond:
            if not self._pending:
                self._cond.wait(timeout=timeout)
            if not self._pending:
                return None
            _, update = self._pending.popitem(last=False)
            return update


class StatusPublisher(Generic[K, V]):
    """Watchable map of desired statuses for one resource kind.

    Producers call :meth:`store` / :meth:`delete` and never block.  Each call
    to :meth:`subscribe` starts a new subscription that first replays the
    current contents and then yields changes until its stop event is set.
    Pending updates are coalesced per key, so a slow subscriber holds at most
    one update per object.
    """

    def __init__(self, name: str, poll_interval: float = 0.5) -> None:
        self.name = name
        self.poll_interval = poll_interval
        self._lock = threading.Lock()
        self._values: dict[K, V] = {}
        self._subscriptions: list[_Subscription[K, V]] = []

    def store(self, key: K, value: V) -> None:
        with self._lock:
            if key in self._values and self._values[key] == value:
                return
            self._values[key] = value
            for subscription in self._subscriptions:
                subscription.push(Update(key=key, value=value))

    def delete(self, key: K) -> None:
        with self._lock:
            if key not in self._values:
                return
            value = self._values.pop(key)
            for subscription in self._subscriptions:
                subscription.push(Update(key=key, value=value, delete=True))

    def load(self, key: K) -> V | None:
        with self._lock:
            return self._values.get(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._values)

    def subscribe(self, stop_event: threading.Event) -> Iterator[Update[K, V]]:
        """Yield updates until *stop_event* is set.

        Subscriptions are independent: restarting a subscriber replays the
        current contents again.
        """
        subscription: _Subscription[K, V] = _Subscription()
        with self._lock:
            for key, value in self._values.items():
                subscription.push(Update(key=key, value=value))
            self._subscriptions.append(subscription)
        try:
            while not stop_event.is_set():
                update = subscription.pop(timeout=self.poll_interval)
                if update is None:
                    continue
                yield update
        finally:
            with self._lock:
                self._subscriptions.remove(subscription)


def handle_subscription(
    updates: Iterable[Update[K, V]], handle: Callable[[Update[K, V]], None]
) -> None:
    for update in updates:
        handle(update)


@dataclass(frozen=True)
class StatusUpdate:
    """Command describing how to derive an object's new status.

    ``mutator`` is applied at write time to a freshly fetched copy of the
    object, so fields changed concurrently by other writers survive.
    """

    key: NamespacedName
    kind: RouteKind
    mutator: Callable[[dict[str, Any]], dict[str, Any]]

    def apply(self, current: dict[str, Any]) -> dict[str, Any]:
        if not self.kind.owns(current):
            raise UnexpectedObjectError(
                f"status update for {self.kind.kind} {self.key} got "
                f"{current.get('kind') if isinstance(current, dict) else type(current).__name__}"
            )
        updated = self.mutator(copy.deepcopy(current))
        if not self.kind.owns(updated):
            raise UnexpectedObjectError(
                f"status mutator for {self.kind.kind} {self.key} returned an unsupported object"
            )
        return updated


class StatusUpdater:
    """Single writer of status updates for one route kind.

    :meth:`send` enqueues into a bounded queue and returns immediately.  When
    the queue is full the update is dropped and counted; the next translation
    pass publishes the status again, so nothing is lost permanently.
    """

    def __init__(
        self,
        client: ClusterClient,
        route_kind: RouteKind,
        queue_size: int = 1024,
        max_conflict_retries: int = 5,
        poll_interval: float = 0.5,
        logger: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.route_kind = route_kind
        self.max_conflict_retries = max_conflict_retries
        self.poll_interval = poll_interval
        self.logger = logger or LOGGER
        self._queue: queue.Queue[StatusUpdate] = queue.Queue(maxsize=queue_size)

    def send(self, update: StatusUpdate) -> bool:
        try:
            self._queue.put_nowait(update)
        except queue.Full:
            self.logger.warning(
                "Status queue for %s is full; dropping update for %s",
                self.route_kind.kind,
                update.key,
            )
            METRICS.status_updates_dropped_total.labels(kind=self.route_kind.kind).inc()
            return False
        return True

    def pending(self) -> int:
        return self._queue.qsize()

    def apply(self, update: StatusUpdate) -> bool:
        """Write one update; returns True if the cluster object was changed.

        Conflicts re-fetch the object and re-apply the mutator.  A missing
        object means it was deleted and its status no longer exists.
        """
        kind = update.kind.kind
        for _ in range(self.max_conflict_retries + 1):
            try:
                current = self.client.get_route(update.kind, update.key)
            except NotFoundError:
                self.logger.debug("%s %s is gone; skipping status update", kind, update.key)
                METRICS.status_updates_total.labels(kind=kind, result="skipped").inc()
                return False

            desired = update.apply(current)
            if desired.get("status") == current.get("status"):
                METRICS.status_updates_total.labels(kind=kind, result="unchanged").inc()
                return False

            try:
                self.client.replace_route_status(update.kind, update.key, desired)
            except ConflictError:
                self.logger.debug("Conflict writing status of %s %s; retrying", kind, update.key)
                continue
            except NotFoundError:
                METRICS.status_updates_total.labels(kind=kind, result="skipped").inc()
                return False

            self.logger.info("Updated status of %s %s", kind, update.key)
            METRICS.status_updates_total.labels(kind=kind, result="updated").inc()
            return True

        self.logger.warning(
            "Giving up on status update for %s %s after %d conflicts",
            kind,
            update.key,
            self.max_conflict_retries + 1,
        )
        METRICS.status_updates_total.labels(kind=kind, result="conflict").inc()
        return False

    def run(self, stop_event: threading.Event) -> None:
        """Drain the queue until *stop_event* is set.

        API failures are logged and the update dropped.  An
        :class:`UnexpectedObjectError` is re-raised and ends the worker.
        """
        self.logger.info("Starting %s status updater", self.route_kind.kind)
        while not stop_event.is_set():
            try:
                update = self._queue.get(timeout=self.poll_interval)
            except queue.Empty:
                continue
            try:
                self.apply(update)
            except UnexpectedObjectError:
                self.logger.exception(
                    "Status updater for %s hit an unexpected object", self.route_kind.kind
                )
                raise
            except ClusterAPIError:
                self.logger.exception(
                    "Failed to update status of %s %s", update.kind.kind, update.key
                )
                METRICS.status_updates_total.labels(kind=update.kind.kind, result="error").inc()
            finally:
                self._queue.task_done()
        self.logger.info("%s status updater shutting down", self.route_kind.kind)

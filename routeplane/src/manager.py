from __future__ import annotations

import logging
import random
import threading
import time
from collections import deque
from collections.abc import Callable
from functools import partial
from typing import Any

from kubernetes import watch
from kubernetes.client.exceptions import ApiException

from routeplane.src.config import ServerConfig
from routeplane.src.errors import ClusterAPIError, NotFoundError, ReconcileError, StatusError
from routeplane.src.gatewayapi import NamespacedName, RouteKind
from routeplane.src.index import BackendRefIndex
from routeplane.src.kube import ClusterClient
from routeplane.src.metrics import METRICS
from routeplane.src.reconciler import RouteReconciler, is_managed_gateway
from routeplane.src.status import StatusUpdater
from routeplane.src.store import ProviderResources
from routeplane.src.translator import (
    Translator,
    XdsSnapshot,
    preserve_transition_times,
    rejected_route_status,
)

LOGGER = logging.getLogger(__name__)


class WorkQueue:
    """Deduplicating queue of identities awaiting reconciliation.

    An identity is held at most once no matter how many events name it.
    Failed identities come back after a per-item exponential backoff
    (``base_delay * 2**(attempt-1)`` capped at ``max_delay``) until
    :meth:`forget` resets their attempt counter.
    """

    def __init__(
        self,
        name: str,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.clock = clock
        self._cond = threading.Condition()
        self._ready: deque[NamespacedName] = deque()
        self._queued: set[NamespacedName] = set()
        self._delayed: dict[NamespacedName, float] = {}
        self._attempts: dict[NamespacedName, int] = {}

    def __len__(self) -> int:
        with self._cond:
            return len(self._ready) + len(self._delayed)

    def _record_depth(self) -> None:
        METRICS.queue_depth.labels(kind=self.name).set(len(self._ready) + len(self._delayed))

    def add(self, item: NamespacedName) -> None:
        with self._cond:
            # An immediate trigger supersedes a pending backoff for the same item.
            self._delayed.pop(item, None)
            if item not in self._queued:
                self._queued.add(item)
                self._ready.append(item)
            self._record_depth()
            self._cond.notify()

    def add_after(self, item: NamespacedName, delay: float) -> None:
        with self._cond:
            if item in self._queued:
                return
            due_at = self.clock() + delay
            existing = self._delayed.get(item)
            if existing is None or due_at < existing:
                self._delayed[item] = due_at
            self._record_depth()
            self._cond.notify()

    def add_rate_limited(self, item: NamespacedName) -> float:
        """Schedule *item* after its backoff delay and return that delay."""
        with self._cond:
            attempt = self._attempts.get(item, 0) + 1
            self._attempts[item] = attempt
        delay = min(self.max_delay, self.base_delay * float(2 ** (attempt - 1)))
        self.add_after(item, delay)
        METRICS.requeue_total.labels(kind=self.name).inc()
        return delay

    def forget(self, item: NamespacedName) -> None:
        with self._cond:
            self._attempts.pop(item, None)

    def attempts(self, item: NamespacedName) -> int:
        with self._cond:
            return self._attempts.get(item, 0)

    def _promote_due(self, now: float) -> None:
        due = [item for item, due_at in self._delayed.items() if due_at <= now]
        for item in due:
            del self._delayed[item]
            if item not in self._queued:
                self._queued.add(item)
                self._ready.append(item)

    def get(self, timeout: float) -> NamespacedName | None:
        """Return the next ready identity, or None after *timeout* seconds."""
        deadline = self.clock() + timeout
        with self._cond:
            while True:
                now = self.clock()
                self._promote_due(now)
                if self._ready:
                    item = self._ready.popleft()
                    self._queued.discard(item)
                    self._record_depth()
                    return item
                remaining = deadline - now
                if remaining <= 0:
                    return None
                if self._delayed:
                    remaining = min(remaining, min(self._delayed.values()) - now)
                self._cond.wait(timeout=max(remaining, 0.01))


class RouteController:
    """Single worker draining the work queue of one route kind."""

    def __init__(
        self,
        reconciler: RouteReconciler,
        queue: WorkQueue,
        status_updater: StatusUpdater,
        on_reconciled: Callable[[], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.reconciler = reconciler
        self.queue = queue
        self.status_updater = status_updater
        self.on_reconciled = on_reconciled
        self.logger = logger or LOGGER
        self._generations: dict[NamespacedName, Any] = {}

    @property
    def route_kind(self) -> RouteKind:
        return self.reconciler.route_kind

    def observe(self, event_type: str, route: dict[str, Any]) -> bool:
        """Record a route watch event; returns True if it should be reconciled.

        Modifications that leave ``metadata.generation`` unchanged only touch
        status or metadata and are ignored.
        """
        key = NamespacedName.of(route)
        generation = (route.get("metadata") or {}).get("generation")
        if event_type == "DELETED":
            self._generations.pop(key, None)
            return True
        if (
            event_type == "MODIFIED"
            and generation is not None
            and self._generations.get(key) == generation
        ):
            return False
        self._generations[key] = generation
        return True

    def process_next(self, timeout: float = 0.5) -> bool:
        """Reconcile one queued identity; returns False if the queue stayed empty."""
        request = self.queue.get(timeout=timeout)
        if request is None:
            return False

        kind = self.route_kind.kind
        started = time.monotonic()
        try:
            self.reconciler.reconcile(request)
        except StatusError as exc:
            self.logger.warning("Rejected %s routes while reconciling %s: %s", kind, request, exc)
            self.queue.forget(request)
            METRICS.reconcile_total.labels(kind=kind, result="rejected").inc()
        except ReconcileError as exc:
            delay = self.queue.add_rate_limited(request)
            self.logger.warning(
                "Reconciling %s %s failed (%s); retrying in %.1fs", kind, request, exc, delay
            )
            METRICS.reconcile_total.labels(kind=kind, result="requeued").inc()
        except Exception:
            delay = self.queue.add_rate_limited(request)
            self.logger.exception(
                "Unexpected error reconciling %s %s; retrying in %.1fs", kind, request, delay
            )
            METRICS.reconcile_total.labels(kind=kind, result="error").inc()
        else:
            self.queue.forget(request)
            METRICS.reconcile_total.labels(kind=kind, result="success").inc()
        finally:
            METRICS.reconcile_duration_seconds.labels(kind=kind).observe(time.monotonic() - started)

        if self.on_reconciled is not None:
            self.on_reconciled()
        return True

    def run_worker(self, stop_event: threading.Event) -> None:
        self.logger.info("Starting %s worker", self.route_kind.kind)
        while not stop_event.is_set():
            self.process_next()
        self.logger.info("%s worker shutting down", self.route_kind.kind)


class ResourceWatcher:
    """List-then-watch loop for one source feeding an event handler.

    1. Retries the initial list with exponential backoff and jitter.
    2. Replays the listed objects as ``ADDED`` events and sets :attr:`ready`.
    3. Streams changes from the list's ``resourceVersion``.
    4. On ``410 Gone`` re-lists, replaying current objects as ``MODIFIED``
       and objects that vanished meanwhile as ``DELETED``.
    5. On ``401``/``403`` stops with an RBAC hint instead of retrying.
    """

    def __init__(
        self,
        name: str,
        client: ClusterClient,
        source: str,
        handler: Callable[[str, dict[str, Any]], None],
        route_kind: RouteKind | None = None,
        timeout_seconds: int = 30,
        watch_factory: Callable[[], Any] = watch.Watch,
        logger: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self.client = client
        self.source = source
        self.handler = handler
        self.route_kind = route_kind
        self.timeout_seconds = timeout_seconds
        self.watch_factory = watch_factory
        self.logger = logger or LOGGER
        self.ready = threading.Event()
        self._known: dict[NamespacedName, dict[str, Any]] = {}
        self._external_stop = threading.Event()
        self._active_watcher: Any = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _relist(self, event_type: str) -> str | None:
        items, resource_version = self.client.list_raw(self.source, self.route_kind)
        seen: dict[NamespacedName, dict[str, Any]] = {}
        for item in items:
            seen[NamespacedName.of(item)] = item
            self.handler(event_type, item)
        for key, obj in self._known.items():
            if key not in seen:
                self.logger.info("%s %s disappeared while disconnected", self.name, key)
                self.handler("DELETED", obj)
        self._known = seen
        return resource_version

    def _access_denied(self, status: int | None, during: str) -> bool:
        if status not in {401, 403}:
            return False
        self.logger.error(
            "Kubernetes API access denied during %s of %s (status=%s). "
            "Check RBAC and service account permissions.",
            during,
            self.name,
            status,
        )
        METRICS.watch_errors_total.labels(source=self.name).inc()
        return True

    def _backoff(self, stop_event: threading.Event, backoff_seconds: int) -> int:
        jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
        stop_event.wait(timeout=jittered)
        return min(backoff_seconds * 2, 30)

    def run(self, stop_event: threading.Event) -> None:
        self._external_stop.clear()
        resource_version: str | None = None
        backoff_seconds = 1

        while not self._should_stop(stop_event):
            try:
                resource_version = self._relist("ADDED")
                self.ready.set()
                self.logger.info("Watching %s from resourceVersion %s", self.name, resource_version)
                break
            except ClusterAPIError as exc:
                if self._access_denied(exc.status, "initial list"):
                    return
                self.logger.exception("Initial list of %s failed", self.name)
                METRICS.watch_errors_total.labels(source=self.name).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial list of %s", self.name)
                METRICS.watch_errors_total.labels(source=self.name).inc()
            backoff_seconds = self._backoff(stop_event, backoff_seconds)

        backoff_seconds = 1
        watch_stream_count = 0
        list_func, list_kwargs = self.client.list_func(self.source, self.route_kind)

        while not self._should_stop(stop_event):
            watcher = self.watch_factory()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(source=self.name).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    list_func,
                    resource_version=resource_version,
                    timeout_seconds=self.timeout_seconds,
                    **list_kwargs,
                )
                for event in stream:
                    if self._should_stop(stop_event):
                        break
                    event_type = str(event.get("type", ""))
                    obj = event.get("raw_object")
                    if event_type == "ERROR" or not isinstance(obj, dict):
                        continue
                    metadata = obj.get("metadata") or {}
                    if metadata.get("resourceVersion"):
                        resource_version = metadata["resourceVersion"]
                    key = NamespacedName.of(obj)
                    if event_type == "DELETED":
                        self._known.pop(key, None)
                    else:
                        self._known[key] = obj
                    self.handler(event_type, obj)
                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone means etcd compacted past our resourceVersion.
                if exc.status == 410:
                    self.logger.warning("Watch of %s expired, re-listing", self.name)
                    try:
                        resource_version = self._relist("MODIFIED")
                    except ClusterAPIError as relist_exc:
                        if self._access_denied(relist_exc.status, "410 re-list"):
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.name)
                        METRICS.watch_errors_total.labels(source=self.name).inc()
                        resource_version = None
                    continue
                if self._access_denied(exc.status, "watch"):
                    return
                self.logger.exception("Kubernetes API watch error on %s", self.name)
                METRICS.watch_errors_total.labels(source=self.name).inc()
                backoff_seconds = self._backoff(stop_event, backoff_seconds)
            except Exception:
                self.logger.exception("Unexpected watch error on %s", self.name)
                METRICS.watch_errors_total.labels(source=self.name).inc()
                backoff_seconds = self._backoff(stop_event, backoff_seconds)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None


class ControlPlane:
    """Wires the resource store, reconcilers, status writers and watches together.

    Threads started by :meth:`run`, per route kind: one reconcile worker, one
    status subscriber and one status updater.  In addition there is one watch
    per route kind plus one for Gateways and one for Services.
    """

    def __init__(
        self,
        config: ServerConfig,
        client: ClusterClient,
        watch_factory: Callable[[], Any] = watch.Watch,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.client = client
        self.logger = logger or LOGGER
        self.resources = ProviderResources(config.route_kinds)
        self.index = BackendRefIndex()
        self.translator = Translator(config.controller_name, config.route_kinds)
        self.xds = XdsSnapshot()
        self.ready = threading.Event()
        self._translate_lock = threading.Lock()
        self._failed = threading.Event()

        self.controllers: dict[str, RouteController] = {}
        for route_kind in config.route_kinds:
            updater = StatusUpdater(client, route_kind, queue_size=config.status_queue_size)
            reconciler = RouteReconciler(
                route_kind=route_kind,
                client=client,
                resources=self.resources,
                index=self.index,
                status_updater=updater,
                controller_name=config.controller_name,
                route_kinds=config.route_kinds,
                on_rejected=self.publish_rejection,
            )
            queue = WorkQueue(
                route_kind.kind, max_delay=float(config.reconcile_max_backoff_seconds)
            )
            self.controllers[route_kind.kind] = RouteController(
                reconciler, queue, updater, on_reconciled=self.translate
            )

        self.watchers: list[ResourceWatcher] = [
            ResourceWatcher(
                route_kind.kind,
                client,
                "routes",
                partial(self.handle_route_event, route_kind),
                route_kind=route_kind,
                timeout_seconds=config.watch_timeout_seconds,
                watch_factory=watch_factory,
            )
            for route_kind in config.route_kinds
        ]
        self.watchers.append(
            ResourceWatcher(
                "Gateway",
                client,
                "gateways",
                self.handle_gateway_event,
                timeout_seconds=config.watch_timeout_seconds,
                watch_factory=watch_factory,
            )
        )
        self.watchers.append(
            ResourceWatcher(
                "Service",
                client,
                "services",
                self.handle_service_event,
                timeout_seconds=config.watch_timeout_seconds,
                watch_factory=watch_factory,
            )
        )

    def handle_route_event(
        self, route_kind: RouteKind, event_type: str, route: dict[str, Any]
    ) -> None:
        controller = self.controllers[route_kind.kind]
        if controller.observe(event_type, route):
            controller.queue.add(NamespacedName.of(route))

    def handle_gateway_event(self, event_type: str, gateway: dict[str, Any]) -> None:
        gateway_key = NamespacedName.of(gateway)
        gone = event_type == "DELETED" or not self._manages(gateway)
        if gone and self.resources.gateways.delete(gateway_key):
            self.logger.info("Deleted gateway %s from resource map", gateway_key)
            self.translate()
        for controller in self.controllers.values():
            for request in controller.reconciler.routes_for_gateway(gateway):
                controller.queue.add(request)

    def _manages(self, gateway: dict[str, Any]) -> bool:
        try:
            return is_managed_gateway(self.client, self.config.controller_name, gateway)
        except NotFoundError:
            return False
        except ClusterAPIError:
            self.logger.exception(
                "Failed to check the class of gateway %s", NamespacedName.of(gateway)
            )
            return True

    def handle_service_event(self, event_type: str, service: dict[str, Any]) -> None:
        for controller in self.controllers.values():
            for request in controller.reconciler.routes_for_service(service):
                controller.queue.add(request)

    def publish_rejection(
        self, route_kind: RouteKind, route: dict[str, Any], err: StatusError
    ) -> None:
        value = rejected_route_status(
            route_kind, route, self.config.controller_name, err, self.translator.now_fn()
        )
        with self._translate_lock:
            self._publish_status(route_kind, NamespacedName.of(route), value)

    def _publish_status(
        self, route_kind: RouteKind, key: NamespacedName, value: dict[str, Any]
    ) -> None:
        publisher = self.resources.route_statuses(route_kind)
        previous = publisher.load(key)
        if previous is not None:
            value["status"]["parents"] = preserve_transition_times(
                (previous.get("status") or {}).get("parents") or [],
                value["status"]["parents"],
            )
        publisher.store(key, value)

    def translate(self) -> None:
        """Re-derive proxy configuration and route statuses from the store."""
        with self._translate_lock:
            result = self.translator.translate(self.resources.snapshot())
            if self.xds.update(result.listeners):
                self.logger.info("Proxy configuration updated to version %d", self.xds.version)
            for route_kind in self.config.route_kinds:
                for key, value in (result.route_statuses.get(route_kind.kind) or {}).items():
                    self._publish_status(route_kind, key, value)

    def config_dump(self, include_all: bool = False) -> dict[str, Any]:
        snapshot = self.resources.snapshot()
        total = (
            sum(len(routes) for routes in snapshot.routes.values())
            + len(snapshot.namespaces)
            + len(snapshot.services)
            + len(snapshot.gateways)
        )
        if include_all:
            resources: dict[str, Any] = {
                kind: {str(key): route for key, route in sorted(routes.items())}
                for kind, routes in snapshot.routes.items()
            }
            resources["Namespace"] = dict(sorted(snapshot.namespaces.items()))
            resources["Service"] = {str(key): svc for key, svc in sorted(snapshot.services.items())}
            resources["Gateway"] = {str(key): gw for key, gw in sorted(snapshot.gateways.items())}
        else:
            resources = self.resources.summary()
        return {
            "resources": resources,
            "totalCount": total,
            "xds": self.xds.as_dict(include_all=include_all),
        }

    def _spawn(
        self,
        name: str,
        target: Callable[[threading.Event], None],
        stop_event: threading.Event,
    ) -> threading.Thread:
        def _run() -> None:
            try:
                target(stop_event)
            except Exception:
                self.logger.exception("%s thread crashed; shutting down", name)
                self._failed.set()

        thread = threading.Thread(target=_run, name=name, daemon=True)
        thread.start()
        return thread

    def request_stop(self) -> None:
        for watcher in self.watchers:
            watcher.request_stop()

    def run(self, shutdown_event: threading.Event | None = None, join_timeout: float = 5.0) -> None:
        """Run every worker and watch until shutdown or a worker crash."""
        stop = shutdown_event or threading.Event()
        internal_stop = threading.Event()
        threads: list[threading.Thread] = []
        for kind, controller in self.controllers.items():
            threads.append(self._spawn(f"{kind}-worker", controller.run_worker, internal_stop))
            threads.append(
                self._spawn(
                    f"{kind}-status-updater", controller.status_updater.run, internal_stop
                )
            )
            threads.append(
                self._spawn(
                    f"{kind}-status-subscriber",
                    controller.reconciler.subscribe_and_update_status,
                    internal_stop,
                )
            )
        for watcher in self.watchers:
            threads.append(self._spawn(f"{watcher.name}-watch", watcher.run, internal_stop))

        while not stop.wait(timeout=0.5):
            if self._failed.is_set():
                self.logger.error("A control-plane thread failed; stopping")
                break
            if not self.ready.is_set() and all(watcher.ready.is_set() for watcher in self.watchers):
                self.logger.info("All watches synced; control plane is ready")
                self.ready.set()

        internal_stop.set()
        self.request_stop()
        for thread in threads:
            thread.join(timeout=join_timeout)
        self.ready.clear()

from __future__ import annotations

import threading
from typing import Any

import pytest

from routeplane.src.errors import UnexpectedObjectError
from routeplane.src.gatewayapi import HTTP_ROUTE, TLS_ROUTE, NamespacedName
from routeplane.src.status import (
    StatusPublisher,
    StatusUpdate,
    StatusUpdater,
    Update,
    handle_subscription,
)
from routeplane.tests.fakes import FakeClusterClient, make_route

KEY = NamespacedName("default", "web")


def _collect(publisher: StatusPublisher, count: int, timeout: float = 2) -> list[Update]:
    """Subscribe in a thread and return the first *count* updates."""
    stop = threading.Event()
    received: list[Update] = []
    done = threading.Event()

    def _consume() -> None:
        for update in publisher.subscribe(stop):
            received.append(update)
            if len(received) >= count:
                done.set()
                stop.set()

    thread = threading.Thread(target=_consume, daemon=True)
    thread.start()
    done.wait(timeout=timeout)
    stop.set()
    thread.join(timeout=timeout)
    return received


def _set_status(route: dict[str, Any]) -> dict[str, Any]:
    route["status"] = {"parents": [{"controllerName": "test", "conditions": []}]}
    return route


def test_subscriber_observes_stored_value() -> None:
    publisher: StatusPublisher = StatusPublisher("HTTPRoute", poll_interval=0.05)
    publisher.store(KEY, {"status": "a"})

    updates = _collect(publisher, 1)

    assert updates == [Update(key=KEY, value={"status": "a"})]


def test_subscriber_receives_updates_after_subscribing() -> None:
    publisher: StatusPublisher = StatusPublisher("HTTPRoute", poll_interval=0.05)
    stop = threading.Event()
    updates = publisher.subscribe(stop)

    publisher.store(KEY, {"status": "b"})
    first = next(updates)
    stop.set()
    updates.close()

    assert first.key == KEY
    assert first.value == {"status": "b"}
    assert not first.delete
    assert len(publisher) == 1


def test_pending_updates_are_coalesced_per_key() -> None:
    publisher: StatusPublisher = StatusPublisher("HTTPRoute", poll_interval=0.05)
    stop = threading.Event()
    updates = publisher.subscribe(stop)
    other = NamespacedName("default", "other")

    publisher.store(KEY, {"v": 1})
    publisher.store(other, {"v": 1})
    publisher.store(KEY, {"v": 2})
    received = [next(updates), next(updates)]
    stop.set()
    updates.close()

    assert [(update.key, update.value) for update in received] == [
        (KEY, {"v": 2}),
        (other, {"v": 1}),
    ]


def test_storing_an_equal_value_publishes_nothing() -> None:
    publisher: StatusPublisher = StatusPublisher("HTTPRoute", poll_interval=0.05)
    publisher.store(KEY, {"v": 1})
    stop = threading.Event()
    updates = publisher.subscribe(stop)
    assert next(updates).value == {"v": 1}

    publisher.store(KEY, {"v": 1})
    publisher.delete(KEY)
    update = next(updates)
    stop.set()
    updates.close()

    assert update.delete


def test_delete_updates_never_reach_the_status_writer() -> None:
    handled: list[Update] = []
    writes: list[Update] = []

    def handle(update: Update) -> None:
        handled.append(update)
        if update.delete:
            return
        writes.append(update)

    handle_subscription(
        [Update(key=KEY, value={"v": 1}), Update(key=KEY, value={"v": 1}, delete=True)], handle
    )

    assert len(handled) == 2
    assert [update.value for update in writes] == [{"v": 1}]


def test_status_update_rejects_objects_of_another_kind() -> None:
    update = StatusUpdate(key=KEY, kind=HTTP_ROUTE, mutator=_set_status)

    with pytest.raises(UnexpectedObjectError):
        update.apply(make_route(kind=TLS_ROUTE))


def test_status_update_rejects_mutator_returning_foreign_object() -> None:
    update = StatusUpdate(key=KEY, kind=HTTP_ROUTE, mutator=lambda route: {"kind": "Secret"})

    with pytest.raises(UnexpectedObjectError):
        update.apply(make_route())


def test_status_update_does_not_mutate_current_object() -> None:
    current = make_route()
    updated = StatusUpdate(key=KEY, kind=HTTP_ROUTE, mutator=_set_status).apply(current)

    assert "status" not in current
    assert updated["status"]["parents"][0]["controllerName"] == "test"


class TestStatusUpdater:
    def setup_method(self) -> None:
        self.client = FakeClusterClient()
        self.client.add_route(make_route())
        self.updater = StatusUpdater(self.client, HTTP_ROUTE, queue_size=2, poll_interval=0.05)

    def test_apply_writes_status_against_fresh_copy(self) -> None:
        self.client.routes["HTTPRoute"][KEY]["metadata"]["labels"] = {"team": "edge"}

        assert self.updater.apply(StatusUpdate(key=KEY, kind=HTTP_ROUTE, mutator=_set_status))

        kind, key, body = self.client.status_writes[-1]
        assert (kind, key) == ("HTTPRoute", KEY)
        assert body["metadata"]["labels"] == {"team": "edge"}

    def test_apply_skips_unchanged_status(self) -> None:
        update = StatusUpdate(key=KEY, kind=HTTP_ROUTE, mutator=_set_status)
        assert self.updater.apply(update)

        assert not self.updater.apply(update)
        assert len(self.client.status_writes) == 1

    def test_apply_skips_deleted_objects(self) -> None:
        missing = NamespacedName("default", "gone")

        update = StatusUpdate(key=missing, kind=HTTP_ROUTE, mutator=_set_status)
        assert not self.updater.apply(update)

    def test_apply_retries_conflicts(self) -> None:
        self.client.conflicts_remaining = 2

        assert self.updater.apply(StatusUpdate(key=KEY, kind=HTTP_ROUTE, mutator=_set_status))
        assert len(self.client.status_writes) == 1

    def test_apply_gives_up_after_repeated_conflicts(self) -> None:
        self.client.conflicts_remaining = 100
        updater = StatusUpdater(self.client, HTTP_ROUTE, max_conflict_retries=1)

        assert not updater.apply(StatusUpdate(key=KEY, kind=HTTP_ROUTE, mutator=_set_status))
        assert self.client.conflicts_remaining == 98

    def test_send_drops_updates_when_queue_is_full(self) -> None:
        update = StatusUpdate(key=KEY, kind=HTTP_ROUTE, mutator=_set_status)

        assert self.updater.send(update)
        assert self.updater.send(update)
        assert not self.updater.send(update)
        assert self.updater.pending() == 2

    def test_run_drains_queue_until_stopped(self) -> None:
        stop = threading.Event()
        thread = threading.Thread(target=self.updater.run, args=(stop,), daemon=True)
        thread.start()

        self.updater.send(StatusUpdate(key=KEY, kind=HTTP_ROUTE, mutator=_set_status))
        self.updater._queue.join()
        stop.set()
        thread.join(timeout=2)

        assert not thread.is_alive()
        assert len(self.client.status_writes) == 1

    def test_run_halts_on_unexpected_object(self) -> None:
        stop = threading.Event()
        self.updater.send(
            StatusUpdate(key=KEY, kind=HTTP_ROUTE, mutator=lambda route: {"kind": "Secret"})
        )

        with pytest.raises(UnexpectedObjectError):
            self.updater.run(stop)
        assert self.client.status_writes == []

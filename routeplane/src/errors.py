from __future__ import annotations

from collections.abc import Iterable, Iterator

ROUTE_REASON_PORT_NOT_FOUND = "PortNotFound"
ROUTE_REASON_PORT_NOT_SPECIFIED = "PortNotSpecified"
ROUTE_REASON_INVALID_GROUP = "InvalidGroup"
ROUTE_REASON_INVALID_KIND = "InvalidKind"
ROUTE_REASON_INVALID_NAMESPACE = "InvalidNamespace"
ROUTE_REASON_BACKEND_NOT_FOUND = "BackendNotFound"
ROUTE_REASON_HOSTNAME_CONFLICT = "HostnameConflict"
ROUTE_REASON_NOT_ALLOWED_BY_LISTENERS = "NotAllowedByListeners"
ROUTE_REASON_NO_MATCHING_PARENT = "NoMatchingParent"
ROUTE_REASON_NO_MATCHING_LISTENER_HOSTNAME = "NoMatchingListenerHostname"


def condition_message(err: BaseException | None) -> str:
    """Render an error as a status condition message.

    The first letter is capitalized and a trailing period is added so that
    messages from different validation steps read consistently on the object.
    """
    if err is None:
        return ""
    text = str(err)
    if not text:
        return ""
    if text[0].isalpha():
        text = text[0].upper() + text[1:]
    if not text.endswith("."):
        text += "."
    return text


class StatusError(Exception):
    """An error that needs to be reflected in the status of a resource.

    Status errors are terminal for the object being processed: they are
    surfaced as condition reasons instead of being retried.
    """

    @property
    def reason(self) -> str:
        raise NotImplementedError


class RouteStatusError(StatusError):
    """A single route status error with one enumerable reason token."""

    def __init__(self, reason: str, wrapped: BaseException | str | None = None) -> None:
        if isinstance(wrapped, str):
            wrapped = ValueError(wrapped)
        super().__init__(reason, wrapped)
        self._reason = reason
        self.wrapped = wrapped

    @property
    def reason(self) -> str:
        return self._reason

    def __str__(self) -> str:
        if self.wrapped is not None:
            return str(self.wrapped)
        return self._reason


class MultiStatusError(StatusError):
    """An ordered collection of status errors reported together."""

    def __init__(self, errs: Iterable[StatusError] | None = None) -> None:
        super().__init__()
        self._errs: list[StatusError] = []
        for err in errs or ():
            self.add(err)

    def add(self, err: StatusError | None) -> None:
        if err is None:
            return
        self._errs.append(err)

    @property
    def empty(self) -> bool:
        return not self._errs

    def __len__(self) -> int:
        return len(self._errs)

    def __iter__(self) -> Iterator[StatusError]:
        return iter(self._errs)

    def __str__(self) -> str:
        if not self._errs:
            return ""
        if len(self._errs) == 1:
            return str(self._errs[0])
        return "\n".join(condition_message(err) for err in self._errs)

    @property
    def reason(self) -> str:
        """Comma-joined unique reasons of the wrapped errors, in first-seen order."""
        reasons: list[str] = []
        for err in self._errs:
            reason = err.reason
            if reason and reason not in reasons:
                reasons.append(reason)
        return ", ".join(reasons)


class ReconcileError(Exception):
    """Base class for failures that should be retried by re-queueing."""


class ClusterAPIError(ReconcileError):
    """A request against the cluster API failed."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class NotFoundError(ClusterAPIError):
    def __init__(self, message: str) -> None:
        super().__init__(message, status=404)


class ConflictError(ClusterAPIError):
    def __init__(self, message: str) -> None:
        super().__init__(message, status=409)


class DependencyNotFoundError(ReconcileError):
    """One or more objects referenced by routes are missing from the cluster."""

    def __init__(self, missing: Iterable[str]) -> None:
        self.missing = list(missing)
        super().__init__("failed to get " + ", ".join(self.missing))


class InvalidParentRefError(ValueError):
    """A route parent reference does not resolve to an accepted Gateway."""


class UnexpectedObjectError(TypeError):
    """A status mutator was handed an object of the wrong kind.

    This is a programming error: the status worker that hits it stops
    instead of writing a corrupted object back to the cluster.
    """

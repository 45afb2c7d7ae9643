"""
Mapping of raw failures onto the remote fault taxonomy.

Everything a remote step can raise ends up as exactly one
:class:`~box_migrator.exceptions.RemoteFault` subclass:

* HTTP 429 -> :class:`RateLimited`
* HTTP 5xx, dropped connections -> :class:`TransientServerFault`
* ``requests.Timeout`` -> :class:`ClientTimeout`
* HTTP 409 -> :class:`Conflict`
* anything else -> :class:`PermanentFault`
"""

from __future__ import annotations

import requests

from box_migrator.constants import (
    HTTP_CONFLICT,
    HTTP_RATE_LIMIT,
    HTTP_SERVER_ERROR_MIN,
)
from box_migrator.exceptions import (
    BoxAPIError,
    ClientTimeout,
    Conflict,
    PermanentFault,
    RateLimited,
    RemoteFault,
    TransientServerFault,
)


def fault_for_status(status_code: int) -> type[RemoteFault]:
    """Return the fault class for an HTTP status code."""
    if status_code == HTTP_RATE_LIMIT:
        return RateLimited
    if status_code == HTTP_CONFLICT:
        return Conflict
    if status_code >= HTTP_SERVER_ERROR_MIN:
        return TransientServerFault
    return PermanentFault


def classify_exception(
    exc: BaseException, label: str = "", correlation_id: str | None = None
) -> RemoteFault:
    """Classify ``exc`` into a :class:`RemoteFault`.

    An exception that already is a ``RemoteFault`` is returned unchanged, with
    the label and correlation id filled in when it was raised without them.
    """
    if isinstance(exc, RemoteFault):
        if not exc.label:
            exc.label = label
        if exc.correlation_id is None:
            exc.correlation_id = correlation_id
        return exc

    if isinstance(exc, BoxAPIError):
        fault_cls = fault_for_status(exc.status_code)
        return fault_cls(
            str(exc),
            status_code=exc.status_code,
            response_body=exc.body,
            label=label,
            correlation_id=correlation_id,
        )

    # Timeout subclasses ConnectionError for connect timeouts, so check it first
    if isinstance(exc, requests.Timeout):
        return ClientTimeout(str(exc), label=label, correlation_id=correlation_id)

    if isinstance(exc, requests.ConnectionError):
        return TransientServerFault(
            str(exc), label=label, correlation_id=correlation_id
        )

    return PermanentFault(
        f"{type(exc).__name__}: {exc}", label=label, correlation_id=correlation_id
    )

"""Tagged results for embedding calls.

Provider clients raise whatever their SDK raises. classify_error() is the one
place those exceptions are mapped onto ``Transient`` (retry) or ``Fatal``
(surface immediately); retry loops only ever look at the tag.
"""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

import httpx

from memindex.errors import FatalProviderError, ProviderError, TransientProviderError

T = TypeVar("T")

_TRANSIENT_MESSAGE_RE = re.compile(
    r"rate[_ ]limit|too many requests|\b429\b|resource has been exhausted|\b5\d\d\b|cloudflare|timed? ?out",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Transient:
    """Rate limit, 5xx or transport hiccup. Worth another attempt."""

    error: BaseException
    status_code: int | None = None


@dataclass(frozen=True)
class Fatal:
    error: BaseException
    status_code: int | None = None


Outcome = Union[Ok[T], Transient, Fatal]


def _status_code(exc: BaseException) -> int | None:
    code = getattr(exc, "status_code", None)
    if code is None:
        response = getattr(exc, "response", None)
        code = getattr(response, "status_code", None)
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


def classify_error(exc: BaseException) -> Transient | Fatal:
    """Map a raw provider exception to its outcome tag."""
    status = _status_code(exc)
    if isinstance(exc, TransientProviderError):
        return Transient(exc, status)
    if isinstance(exc, FatalProviderError):
        return Fatal(exc, status)
    if isinstance(exc, (httpx.TransportError, TimeoutError)):
        return Transient(exc, status)
    if status is not None:
        if status == 429 or status >= 500:
            return Transient(exc, status)
        return Fatal(exc, status)
    if _TRANSIENT_MESSAGE_RE.search(str(exc)):
        return Transient(exc, status)
    return Fatal(exc, status)


async def capture(fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> Outcome[T]:
    """Await ``fn(*args, **kwargs)`` and return its result as a tagged outcome."""
    try:
        return Ok(await fn(*args, **kwargs))
    except Exception as exc:  # noqa: BLE001 - every failure becomes a tag
        return classify_error(exc)


def is_transient(outcome: Outcome[Any]) -> bool:
    return isinstance(outcome, Transient)


def unwrap(outcome: Outcome[T]) -> T:
    """Return the value of an ``Ok`` or raise the matching ProviderError."""
    if isinstance(outcome, Ok):
        return outcome.value
    err = outcome.error
    if isinstance(err, ProviderError):
        raise err
    if isinstance(outcome, Transient):
        raise TransientProviderError(str(err), status_code=outcome.status_code) from err
    raise FatalProviderError(str(err), status_code=outcome.status_code) from err

from typing import Mapping, Optional

import requests


class HttpRangeError(OSError):
    """Base class for every error raised by a range stream."""


class NotFoundError(HttpRangeError, FileNotFoundError):
    """The size probe got a 404."""

    def __init__(self, url: str) -> None:
        super().__init__(f"resource does not exist: {url}")
        self.url = url


class UnexpectedStatusError(HttpRangeError):
    """A response status the range protocol has no handling for.

    Carries the status code, a snapshot of the response headers and a short
    excerpt of the body so callers can log or react.
    """

    def __init__(
        self,
        status: int,
        reason: str = "",
        headers: Optional[Mapping[str, str]] = None,
        body: bytes = b"",
        message: Optional[str] = None,
    ) -> None:
        text = message or f"unexpected status {status} {reason}".rstrip()
        if body:
            text = f"{text}: {body[:256]!r}"
        super().__init__(text)
        self.status = status
        self.reason = reason
        self.headers = dict(headers or {})
        self.body = body

    @classmethod
    def from_response(
        cls, response: requests.Response, body: bytes = b"", message: Optional[str] = None
    ) -> "UnexpectedStatusError":
        return cls(response.status_code, response.reason or "", response.headers, body, message)


class MalformedContentRangeError(HttpRangeError, ValueError):
    """A Content-Range header did not match ``bytes first-last/total``."""

    def __init__(self, value: Optional[str]) -> None:
        super().__init__(f"unexpected Content-Range {value!r}")
        self.value = value


class TransportError(HttpRangeError):
    """Wraps a network level failure (DNS, connect, TLS, read).

    ``temporary`` and ``timeout`` mirror the classification of the wrapped
    error so a caller can decide whether retrying at a higher level makes sense.
    """

    def __init__(self, message: str, temporary: bool = False, timeout: bool = False) -> None:
        super().__init__(message)
        self.temporary = temporary
        self.timeout = timeout

    @classmethod
    def wrap(cls, exc: BaseException) -> "TransportError":
        timeout = isinstance(exc, requests.Timeout)
        if isinstance(exc, (requests.exceptions.SSLError, requests.exceptions.InvalidURL)):
            temporary = False
        else:
            temporary = timeout or isinstance(
                exc, (requests.ConnectionError, requests.exceptions.ChunkedEncodingError)
            )
        err = cls(f"{type(exc).__name__}: {exc}", temporary=temporary, timeout=timeout)
        err.__cause__ = exc
        return err


class ThrottledError(TransportError):
    """The CDN kept answering 403 after the whole retry budget was spent."""

    def __init__(self, attempts: int, response: requests.Response) -> None:
        super().__init__(
            f"throttled by CDN after {attempts} attempts ({response.status_code})",
            temporary=True,
        )
        self.attempts = attempts
        self.status = response.status_code
        self.headers = dict(response.headers)


class RequestCancelledError(TransportError):
    def __init__(self, message: str = "request cancelled", timeout: bool = False) -> None:
        super().__init__(message, temporary=False, timeout=timeout)


class InvalidStateError(HttpRangeError, ValueError):
    """Operation on a closed stream, or a seek to a negative position."""

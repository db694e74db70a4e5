import logging
import re
import threading
import time
from typing import Callable, Mapping, Optional, Tuple

import requests

from .errors import (
    MalformedContentRangeError,
    RequestCancelledError,
    ThrottledError,
    TransportError,
    UnexpectedStatusError,
)
from .transport import Failed, Redirected, RequestsTransport, Transport

logger = logging.getLogger(__name__)

DEFAULT_RETRIES = 10
DEFAULT_RETRY_WAIT = 60.0  # seconds
BODY_EXCERPT = 256
READ_CHUNK = 64 * 1024

CDN_HEADER = "X-Cache"
CDN_ERROR = "Error from cloudfront"
EXPIRED_MARKER = b"<Message>Request has expired</Message>"

_CONTENT_RANGE = re.compile(r"bytes (\d+)-(\d+)/(\d+)")

ThrottleDetector = Callable[[requests.Response], bool]
ExpiryDetector = Callable[[requests.Response, bytes], bool]


def parse_content_range(value: Optional[str]) -> Tuple[int, int, int]:
    """Return ``(first, last, total)`` from a ``bytes first-last/total`` header."""
    m = _CONTENT_RANGE.fullmatch(value.strip()) if value else None
    if m is None:
        raise MalformedContentRangeError(value)
    first, last, total = (int(g) for g in m.groups())
    return first, last, total


def cloudfront_throttled(response: requests.Response) -> bool:
    return response.headers.get(CDN_HEADER) == CDN_ERROR


def signed_url_expired(response: requests.Response, body: bytes) -> bool:
    return EXPIRED_MARKER in body


def read_body(
    response: requests.Response,
    limit: Optional[int] = None,
    cancel: Optional[threading.Event] = None,
) -> bytes:
    """Collect up to ``limit`` bytes of the body, then release the response.

    Nothing is returned unless the transfer completes, so a failed or
    cancelled read never hands out partial data.
    """
    chunk_size = READ_CHUNK if limit is None else max(1, min(limit, READ_CHUNK))
    out = bytearray()
    try:
        for chunk in response.iter_content(chunk_size=chunk_size):
            if cancel is not None and cancel.is_set():
                raise RequestCancelledError()
            out += chunk
            if limit is not None and len(out) >= limit:
                break
    except requests.RequestException as e:
        raise TransportError.wrap(e)
    finally:
        response.close()
    if limit is not None:
        del out[limit:]
    return bytes(out)


class RangeSource:
    """Issues single logical HTTP exchanges against one resource.

    Each ``fetch`` absorbs:
      • one redirect hop (the new location sticks for later calls)
      • up to ``retries`` attempts while a CDN answers 403 with its
        throttling marker, waiting ``retry_wait`` seconds between attempts
      • one reset to the original URL when a redirected, signed URL has
        expired
    Everything else goes back to the caller.
    """

    def __init__(
        self,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        transport: Optional[Transport] = None,
        retries: int = DEFAULT_RETRIES,
        retry_wait: float = DEFAULT_RETRY_WAIT,
        throttle_detector: ThrottleDetector = cloudfront_throttled,
        expiry_detector: ExpiryDetector = signed_url_expired,
        cancel: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if retries < 1:
            raise ValueError("retries must be >= 1")
        self.url = url
        self.original_url = url
        self.headers = dict(headers or {})
        self.transport = transport or RequestsTransport()
        self.retries = retries
        self.retry_wait = retry_wait
        self.throttle_detector = throttle_detector
        self.expiry_detector = expiry_detector
        self.cancel = cancel
        self._sleep = sleep

    def fetch(
        self, method: str, range_spec: Optional[str] = None, timeout: Optional[float] = None
    ) -> requests.Response:
        headers = dict(self.headers)
        if range_spec:
            headers["Range"] = range_spec

        redirected = False
        expiry_reset = False
        attempt = 0

        while True:
            self._check_cancelled()
            outcome = self.transport.send(method, self.url, headers, timeout)
            if isinstance(outcome, Failed):
                raise outcome.error

            r = outcome.response
            if isinstance(outcome, Redirected):
                if redirected:
                    logger.debug("%s %s: not following second redirect to %s", method, self.url, outcome.location)
                    return r
                redirected = True
                logger.debug("%s %s: redirected to %s", method, self.url, outcome.location)
                r.close()
                self.url = outcome.location
                continue

            if r.status_code != 403:
                return r

            if self.throttle_detector(r):
                attempt += 1
                r.close()
                if attempt >= self.retries:
                    raise ThrottledError(attempt, r)
                logger.info(
                    "%s %s throttled by CDN, retry %d/%d in %ss",
                    method, self.url, attempt, self.retries - 1, self.retry_wait,
                )
                self._wait(self.retry_wait)
                continue

            body = read_body(r, BODY_EXCERPT, self.cancel)
            if not expiry_reset and self.url != self.original_url and self.expiry_detector(r, body):
                logger.info("%s %s: signed URL expired, retrying %s", method, self.url, self.original_url)
                expiry_reset = True
                redirected = False
                attempt = 0
                self.url = self.original_url
                continue

            raise UnexpectedStatusError.from_response(r, body)

    def close(self) -> None:
        self.transport.close()

    def _check_cancelled(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise RequestCancelledError()

    def _wait(self, seconds: float) -> None:
        if self.cancel is None:
            self._sleep(seconds)
        elif self.cancel.wait(seconds):
            raise RequestCancelledError()

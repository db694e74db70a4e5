import io
import logging
import threading
import time
from typing import Callable, Mapping, Optional

import requests

from .errors import InvalidStateError, NotFoundError, UnexpectedStatusError
from .source import (
    BODY_EXCERPT,
    DEFAULT_RETRIES,
    DEFAULT_RETRY_WAIT,
    ExpiryDetector,
    RangeSource,
    ThrottleDetector,
    cloudfront_throttled,
    parse_content_range,
    read_body,
    signed_url_expired,
)
from .transport import DEFAULT_TIMEOUT, LoggingTransport, RequestsTransport, Transport

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 64 * 1024
DEFAULT_USER_AGENT = "http-range-stream/0.1"
RANGE_PROBE = "bytes=0-0"


class RangeStream(io.RawIOBase):
    """
    Read-only, seekable file over a remote HTTP resource, using range requests:
      • size probed once at open (HEAD, or a one byte ranged GET)
      • random access with read_at / pread, cursor based read / readinto
      • optional look-ahead buffer for sequential reads (buffer_size > 0)
      • redirect, CDN throttling and signed URL expiry handled by RangeSource

    Thread safety: none; use one stream per concurrent reader.
    """

    def __init__(
        self,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        buffer_size: int = 0,
        session: Optional[requests.Session] = None,
        transport: Optional[Transport] = None,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        connect_retries: int = 0,
        use_head: bool = True,
        retries: int = DEFAULT_RETRIES,
        retry_wait: float = DEFAULT_RETRY_WAIT,
        user_agent: Optional[str] = DEFAULT_USER_AGENT,
        log_requests: bool = False,
        throttle_detector: ThrottleDetector = cloudfront_throttled,
        expiry_detector: ExpiryDetector = signed_url_expired,
        cancel: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.source: Optional[RangeSource] = None
        self._length = -1
        self._pos = -1

        if buffer_size < 0:
            raise ValueError("buffer_size must be >= 0")

        if transport is None:
            transport = RequestsTransport(session, timeout, connect_retries)
        if log_requests:
            transport = LoggingTransport(transport, timing=True)

        base_headers = {"User-Agent": user_agent} if user_agent else {}
        self.source = RangeSource(
            url,
            {**base_headers, **(headers or {})},
            transport,
            retries=retries,
            retry_wait=retry_wait,
            throttle_detector=throttle_detector,
            expiry_detector=expiry_detector,
            cancel=cancel,
            sleep=sleep,
        )
        self.use_head = use_head

        # look-ahead window: _buffer[_buf_start:_buf_start+_buf_filled]
        # holds the remote bytes starting at offset _buf_pos
        self._buffer = bytearray(buffer_size)
        self._buf_pos = 0
        self._buf_start = 0
        self._buf_filled = 0

        try:
            self._length = self._probe()
        except BaseException:
            self.close()
            raise
        self._pos = 0
        logger.debug("opened %s, size %d", url, self._length)

    @property
    def url(self) -> str:
        return self.source.original_url if self.source else ""

    # io.RawIOBase
    def readable(self) -> bool:
        return not self.closed

    def seekable(self) -> bool:
        return not self.closed

    def size(self) -> int:
        return self._length

    def tell(self) -> int:
        self._check_open()
        return self._pos

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        self._check_open()
        if whence == io.SEEK_SET:
            new_pos = offset
        elif whence == io.SEEK_CUR:
            new_pos = self._pos + offset
        elif whence == io.SEEK_END:
            new_pos = self._length + offset
        else:
            raise ValueError(f"invalid whence ({whence})")
        if new_pos < 0:
            raise InvalidStateError(f"negative seek position {new_pos}")
        self._pos = new_pos
        return new_pos

    def read(self, size: Optional[int] = -1) -> bytes:
        self._check_open()
        remaining = max(self._length - self._pos, 0)
        if size is None or size < 0 or size > remaining:
            size = remaining
        if size == 0:
            return b""
        buf = bytearray(size)
        n = self.readinto(buf)
        return bytes(buf[:n])

    def readall(self) -> bytes:
        return self.read(-1)

    def readinto(self, b) -> int:
        self._check_open()
        view = memoryview(b).cast("B")
        if self._buffer:
            n = self._read_buffered(view, self._pos)
        else:
            n = self.read_at(view, self._pos)
        self._pos += n
        return n

    def close(self) -> None:
        if self.closed:
            return
        try:
            if self.source is not None:
                self.source.close()
        finally:
            self._length = -1
            self._pos = -1
            self._buf_filled = 0
            super().close()

    # random access
    def read_at(self, b, offset: int, timeout: Optional[float] = None) -> int:
        """Fill ``b`` with the bytes at ``offset`` without moving the cursor.

        Returns the number of bytes read; 0 means end of stream. A read that
        stops early because it hit the end of the resource is not an error.
        ``timeout`` overrides the transport timeout for this request.
        """
        self._check_open()
        if offset < 0:
            raise InvalidStateError(f"negative offset {offset}")
        view = memoryview(b).cast("B")
        if len(view) == 0 or offset >= self._length:
            return 0

        end = min(offset + len(view), self._length) - 1
        bytes_range = f"bytes={offset}-{end}"
        r = self.source.fetch("GET", bytes_range, timeout)

        if r.status_code == 416:
            logger.debug("read_at %s: range not satisfiable", bytes_range)
            r.close()
            return 0
        if r.status_code != 206:
            raise UnexpectedStatusError.from_response(r, read_body(r, BODY_EXCERPT))

        try:
            first, last, total = parse_content_range(r.headers.get("Content-Range"))
        except ValueError:
            r.close()
            raise
        logger.debug("Range %s Content-Range %d-%d/%d", bytes_range, first, last, total)

        data = read_body(r, end - offset + 1, self.source.cancel)
        n = len(data)
        view[:n] = data
        return n

    def pread(self, size: int, offset: int, timeout: Optional[float] = None) -> bytes:
        self._check_open()
        size = min(size, max(self._length - offset, 0))
        if size <= 0:
            return b""
        buf = bytearray(size)
        n = self.read_at(buf, offset, timeout)
        return bytes(buf[:n])

    # internals
    def _check_open(self) -> None:
        if self._length < 0:
            raise InvalidStateError("I/O operation on closed stream")

    def _probe(self) -> int:
        if self.use_head:
            r = self.source.fetch("HEAD")
        else:
            # some servers reject HEAD; ask for the first byte instead
            r = self.source.fetch("GET", RANGE_PROBE)

        try:
            if r.status_code == 404:
                raise NotFoundError(self.source.original_url)
            if r.status_code == 200:
                try:
                    length = int(r.headers["Content-Length"])
                except (KeyError, ValueError):
                    length = -1
                if length < 0:
                    raise UnexpectedStatusError.from_response(r, message="unknown resource length")
                return length
            if r.status_code == 206:
                return parse_content_range(r.headers.get("Content-Range"))[2]
            raise UnexpectedStatusError.from_response(r, read_body(r, BODY_EXCERPT))
        finally:
            r.close()

    def _read_buffered(self, view: memoryview, pos: int) -> int:
        want = len(view)
        if want == 0:
            return 0

        if pos != self._buf_pos:
            if self._buf_pos < pos < self._buf_pos + self._buf_filled:
                drop = pos - self._buf_pos
                self._buf_start += drop
                self._buf_filled -= drop
                logger.debug("buffer at %d: seek to %d, kept %d bytes", self._buf_pos, pos, self._buf_filled)
            else:
                logger.debug("buffer at %d: seek to %d, dropped %d bytes", self._buf_pos, pos, self._buf_filled)
                self._buf_start = 0
                self._buf_filled = 0
            self._buf_pos = pos

        done = 0
        while True:
            if self._buf_filled:
                n = min(want - done, self._buf_filled)
                view[done:done + n] = self._buffer[self._buf_start:self._buf_start + n]
                self._buf_start += n
                self._buf_filled -= n
                self._buf_pos += n
                done += n
                if done == want:
                    return done

            if want - done > len(self._buffer):
                # larger than the window, nothing to gain from buffering it
                n = self.read_at(view[done:], self._buf_pos)
                self._buf_pos += n
                return done + n

            n = self.read_at(self._buffer, self._buf_pos)
            self._buf_start = 0
            self._buf_filled = n
            if n == 0:
                return done

    def __len__(self) -> int:
        return self._length


def open_range_stream(url: str, headers: Optional[Mapping[str, str]] = None, **kwargs) -> RangeStream:
    """Open ``url`` as a RangeStream; keyword arguments go to the constructor."""
    return RangeStream(url, headers, **kwargs)


def open_http(
    url: str,
    mode: str = "rb",
    encoding: Optional[str] = None,
    errors: Optional[str] = None,
    newline: Optional[str] = None,
    buffering: int = io.DEFAULT_BUFFER_SIZE,
    **kwargs,
):
    """
    Open a remote URL for reading, like the builtin ``open``.

    Parameters:
      - mode: 'rb' (default) returns an io.BufferedReader, 'r'/'rt' an
        io.TextIOWrapper.
      - encoding, errors, newline: text mode decoding options; encoding
        defaults to utf-8.
      - buffering: size of the io.BufferedReader buffer.
      - kwargs: passed to RangeStream.
    """
    if any(m in mode for m in "wax+"):
        raise ValueError("only read modes are supported ('rb' or 'r')")
    raw = RangeStream(url, **kwargs)
    buf = io.BufferedReader(raw, buffering)
    if "b" in mode:
        return buf
    return io.TextIOWrapper(buf, encoding=encoding or "utf-8", errors=errors, newline=newline)

"""Seekable, read-only file objects over HTTP range requests."""

from http_range_stream.errors import (
    HttpRangeError,
    InvalidStateError,
    MalformedContentRangeError,
    NotFoundError,
    RequestCancelledError,
    ThrottledError,
    TransportError,
    UnexpectedStatusError,
)
from http_range_stream.source import RangeSource, parse_content_range
from http_range_stream.stream import DEFAULT_BUFFER_SIZE, RangeStream, open_http, open_range_stream
from http_range_stream.transport import LoggingTransport, RequestsTransport

__version__ = "0.1.0"
__all__ = [
    "RangeStream",
    "RangeSource",
    "open_range_stream",
    "open_http",
    "parse_content_range",
    "RequestsTransport",
    "LoggingTransport",
    "DEFAULT_BUFFER_SIZE",
    "HttpRangeError",
    "NotFoundError",
    "UnexpectedStatusError",
    "MalformedContentRangeError",
    "TransportError",
    "ThrottledError",
    "RequestCancelledError",
    "InvalidStateError",
]

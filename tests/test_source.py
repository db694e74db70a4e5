import io
import threading
from http import HTTPStatus

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from http_range_stream import (
    MalformedContentRangeError,
    RangeSource,
    RangeStream,
    RequestCancelledError,
    ThrottledError,
    TransportError,
    UnexpectedStatusError,
    parse_content_range,
)
from http_range_stream.source import read_body
from http_range_stream.transport import Failed, Redirected, Success

ORIGIN = "https://origin.invalid/file.zip"
SIGNED = "https://bucket.invalid/file.zip?X-Amz-Signature=1"
SIGNED2 = "https://bucket.invalid/file.zip?X-Amz-Signature=2"

THROTTLED = {"X-Cache": "Error from cloudfront"}
EXPIRED = b"<Error><Code>AccessDenied</Code><Message>Request has expired</Message></Error>"


def make_response(status, body=b"", headers=None):
    r = requests.Response()
    r.status_code = status
    r.reason = HTTPStatus(status).phrase
    r.headers = CaseInsensitiveDict(headers or {})
    r.raw = io.BytesIO(body)
    return r


def ok(body=b"data", first=0, total=100):
    last = first + len(body) - 1
    return Success(make_response(206, body, {"Content-Range": f"bytes {first}-{last}/{total}"}))


def redirect(location):
    return Redirected(location, make_response(302, headers={"Location": location}))


def forbidden(body=b"", headers=None):
    return Success(make_response(403, body, headers))


class ScriptedTransport:
    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.urls = []

    def send(self, method, url, headers, timeout=None):
        self.urls.append(url)
        return self.outcomes.pop(0)

    def close(self):
        pass


class Sleeper:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


def make_source(*outcomes, **kwargs):
    transport = ScriptedTransport(*outcomes)
    kwargs.setdefault("sleep", Sleeper())
    return RangeSource(ORIGIN, transport=transport, **kwargs), transport


def test_parse_content_range():
    assert parse_content_range("bytes 0-0/12345") == (0, 0, 12345)
    assert parse_content_range("bytes 100-199/1000") == (100, 199, 1000)


@pytest.mark.parametrize(
    "value",
    [None, "", "bytes 0-0/*", "bytes */100", "bytes=0-0/10", "bytes 0-/10", "items 0-1/2", "bytes 0-1/2 junk"],
)
def test_parse_content_range_rejects(value):
    with pytest.raises(MalformedContentRangeError):
        parse_content_range(value)


def test_plain_fetch_sends_range_and_static_headers():
    seen = {}

    class Recorder(ScriptedTransport):
        def send(self, method, url, headers, timeout=None):
            seen.update(headers)
            return super().send(method, url, headers, timeout)

    source = RangeSource(ORIGIN, {"Accept": "*/*"}, Recorder(ok()))
    r = source.fetch("GET", "bytes=0-3")
    assert r.status_code == 206
    assert seen == {"Accept": "*/*", "Range": "bytes=0-3"}


def test_redirect_followed_once_and_kept():
    source, transport = make_source(redirect(SIGNED), ok(), ok())
    assert source.fetch("GET", "bytes=0-3").status_code == 206
    assert source.url == SIGNED
    assert source.original_url == ORIGIN

    source.fetch("GET", "bytes=4-7")
    assert transport.urls == [ORIGIN, SIGNED, SIGNED]


def test_second_redirect_is_returned():
    source, transport = make_source(redirect(SIGNED), redirect(SIGNED2))
    r = source.fetch("GET", "bytes=0-3")
    assert r.status_code == 302
    assert r.headers["Location"] == SIGNED2
    assert source.url == SIGNED
    assert transport.urls == [ORIGIN, SIGNED]


def test_stream_reads_through_redirect():
    transport = ScriptedTransport(
        Success(make_response(200, headers={"Content-Length": "100"})),
        redirect(SIGNED),
        ok(b"abcd"),
    )
    s = RangeStream(ORIGIN, transport=transport)
    assert s.read(4) == b"abcd"
    assert transport.urls == [ORIGIN, ORIGIN, SIGNED]


def test_stream_surfaces_second_redirect():
    transport = ScriptedTransport(
        Success(make_response(200, headers={"Content-Length": "100"})),
        redirect(SIGNED),
        redirect(SIGNED2),
    )
    s = RangeStream(ORIGIN, transport=transport)
    with pytest.raises(UnexpectedStatusError) as exc:
        s.read(4)
    assert exc.value.status == 302


def test_throttling_retried_with_fixed_wait():
    sleeper = Sleeper()
    source, transport = make_source(
        forbidden(headers=THROTTLED),
        forbidden(headers=THROTTLED),
        forbidden(headers=THROTTLED),
        ok(),
        sleep=sleeper,
    )
    assert source.fetch("GET", "bytes=0-3").status_code == 206
    assert sleeper.calls == [60.0, 60.0, 60.0]
    assert len(transport.urls) == 4


def test_throttling_budget_exhausted():
    sleeper = Sleeper()
    source, transport = make_source(
        *[forbidden(headers=THROTTLED)] * 3,
        retries=3,
        retry_wait=0.5,
        sleep=sleeper,
    )
    with pytest.raises(ThrottledError) as exc:
        source.fetch("GET", "bytes=0-3")
    assert isinstance(exc.value, TransportError)
    assert exc.value.temporary
    assert exc.value.attempts == 3
    assert exc.value.status == 403
    assert sleeper.calls == [0.5, 0.5]


def test_plain_forbidden_is_error():
    source, _ = make_source(forbidden(b"<Message>Access Denied</Message>"))
    with pytest.raises(UnexpectedStatusError) as exc:
        source.fetch("GET", "bytes=0-3")
    assert exc.value.status == 403
    assert b"Access Denied" in exc.value.body


def test_expired_signed_url_resets_to_original():
    source, transport = make_source(
        redirect(SIGNED),
        ok(),
        forbidden(EXPIRED),
        redirect(SIGNED2),
        ok(),
    )
    source.fetch("GET", "bytes=0-3")
    assert source.fetch("GET", "bytes=4-7").status_code == 206
    assert transport.urls == [ORIGIN, SIGNED, SIGNED, ORIGIN, SIGNED2]
    assert source.url == SIGNED2


def test_expiry_ignored_without_redirect():
    source, transport = make_source(forbidden(EXPIRED))
    with pytest.raises(UnexpectedStatusError):
        source.fetch("GET", "bytes=0-3")
    assert transport.urls == [ORIGIN]


def test_expiry_reset_happens_once_per_fetch():
    source, transport = make_source(
        redirect(SIGNED),
        forbidden(EXPIRED),
        redirect(SIGNED2),
        forbidden(EXPIRED),
    )
    with pytest.raises(UnexpectedStatusError) as exc:
        source.fetch("GET", "bytes=0-3")
    assert exc.value.status == 403
    assert transport.urls == [ORIGIN, SIGNED, ORIGIN, SIGNED2]


def test_custom_expiry_detector():
    def gcs_expired(response, body):
        return b"ExpiredToken" in body

    source, transport = make_source(
        redirect(SIGNED),
        forbidden(b"<Code>ExpiredToken</Code>"),
        ok(),
        expiry_detector=gcs_expired,
    )
    assert source.fetch("GET", "bytes=0-3").status_code == 206
    assert transport.urls == [ORIGIN, SIGNED, ORIGIN]


def test_transport_failure_propagates():
    err = TransportError("connection reset", temporary=True)
    source, _ = make_source(Failed(err))
    with pytest.raises(TransportError) as exc:
        source.fetch("HEAD")
    assert exc.value is err


@pytest.mark.parametrize(
    "exc, temporary, timeout",
    [
        (requests.ConnectTimeout("slow"), True, True),
        (requests.ReadTimeout("slow"), True, True),
        (requests.ConnectionError("refused"), True, False),
        (requests.exceptions.SSLError("bad cert"), False, False),
        (requests.exceptions.InvalidURL("nope"), False, False),
    ],
)
def test_transport_error_classification(exc, temporary, timeout):
    err = TransportError.wrap(exc)
    assert err.temporary is temporary
    assert err.timeout is timeout
    assert err.__cause__ is exc


def test_cancelled_before_request():
    cancel = threading.Event()
    cancel.set()
    source, transport = make_source(ok(), cancel=cancel)
    with pytest.raises(RequestCancelledError):
        source.fetch("GET", "bytes=0-3")
    assert transport.urls == []


def test_cancel_interrupts_throttle_wait():
    cancel = threading.Event()

    class CancelOnThrottle(ScriptedTransport):
        def send(self, method, url, headers, timeout=None):
            cancel.set()
            return super().send(method, url, headers, timeout)

    source = RangeSource(
        ORIGIN, transport=CancelOnThrottle(forbidden(headers=THROTTLED), ok()), cancel=cancel
    )
    with pytest.raises(RequestCancelledError) as exc:
        source.fetch("GET", "bytes=0-3")
    assert exc.value.temporary is False


def test_read_body_discards_cancelled_transfer():
    cancel = threading.Event()
    cancel.set()
    r = make_response(206, b"x" * 1000)
    with pytest.raises(RequestCancelledError):
        read_body(r, 1000, cancel)


def test_read_body_limit():
    r = make_response(200, b"0123456789")
    assert read_body(r, 4) == b"0123"


def test_retries_must_be_positive():
    with pytest.raises(ValueError):
        RangeSource(ORIGIN, transport=ScriptedTransport(), retries=0)

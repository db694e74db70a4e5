"""Transport adapters used by the range source.

A transport issues one HTTP exchange and reports what happened as a tagged
outcome instead of following redirects on its own.
"""

import logging
import time
from dataclasses import dataclass
from typing import Mapping, Optional, Protocol, Union
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import TransportError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_POOL_SIZE = 10


@dataclass
class Success:
    response: requests.Response


@dataclass
class Redirected:
    location: str
    response: requests.Response


@dataclass
class Failed:
    error: TransportError


Outcome = Union[Success, Redirected, Failed]


class Transport(Protocol):
    def send(
        self, method: str, url: str, headers: Mapping[str, str], timeout: Optional[float] = None
    ) -> Outcome:
        ...

    def close(self) -> None:
        ...


def build_session(pool_size: int = DEFAULT_POOL_SIZE, connect_retries: int = 0) -> requests.Session:
    """Session with a pooled adapter that never retries or redirects by itself."""
    s = requests.Session()
    adapter = HTTPAdapter(
        pool_connections=pool_size,
        pool_maxsize=pool_size,
        max_retries=Retry(
            total=connect_retries,
            connect=connect_retries,
            read=False,
            status=0,
            redirect=False,
            allowed_methods=("HEAD", "GET"),
            raise_on_status=False,
        ),
    )
    s.mount("http://", adapter)
    s.mount("https://", adapter)
    return s


class RequestsTransport:
    """Sends requests through a ``requests.Session`` with redirects disabled.

    Responses are opened with ``stream=True`` so headers can be inspected
    before the body is consumed. A session passed in by the caller is shared
    and left open on ``close()``; ``connect_retries`` only applies to the
    session built here.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        connect_retries: int = 0,
    ) -> None:
        self._external_session = session is not None
        self.session = session or build_session(connect_retries=connect_retries)
        self.timeout = timeout

    def send(
        self, method: str, url: str, headers: Mapping[str, str], timeout: Optional[float] = None
    ) -> Outcome:
        try:
            r = self.session.request(
                method,
                url,
                headers=dict(headers),
                timeout=timeout if timeout is not None else self.timeout,
                allow_redirects=False,
                stream=True,
            )
        except requests.RequestException as e:
            return Failed(TransportError.wrap(e))
        if r.is_redirect:
            return Redirected(urljoin(url, r.headers["Location"]), r)
        return Success(r)

    def close(self) -> None:
        if not self._external_session:
            self.session.close()


class LoggingTransport:
    """Logs every exchange going through the wrapped transport.

    Attach it to a single stream rather than to a shared default, so turning
    request logging on for one stream leaves every other stream untouched.
    ``response_body`` loads the whole body in memory before logging it.
    """

    def __init__(
        self,
        transport: Transport,
        response_body: bool = False,
        timing: bool = False,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.transport = transport
        self.response_body = response_body
        self.timing = timing
        self.log = log or logger

    def send(
        self, method: str, url: str, headers: Mapping[str, str], timeout: Optional[float] = None
    ) -> Outcome:
        self.log.info("REQUEST: %s %s %s", method, url, dict(headers))
        start = time.perf_counter()
        outcome = self.transport.send(method, url, headers, timeout)
        elapsed = time.perf_counter() - start

        if isinstance(outcome, Failed):
            self.log.info("ERROR: %s REQUEST: %s %s", outcome.error, method, url)
        else:
            r = outcome.response
            self.log.info("RESPONSE: %s %s %s", r.status_code, r.reason, dict(r.headers))
            if isinstance(outcome, Redirected):
                self.log.info("REDIRECT: %s", outcome.location)
            if self.response_body and method != "HEAD":
                try:
                    body = r.content
                except requests.RequestException as e:
                    r.close()
                    outcome = Failed(TransportError.wrap(e))
                    self.log.info("ERROR: %s REQUEST: %s %s", outcome.error, method, url)
                else:
                    self.log.info("BODY: %r", body)
        if self.timing:
            self.log.info("ELAPSED TIME: %.3fs", elapsed)
        return outcome

    def close(self) -> None:
        self.transport.close()

# Copyright (C) 2022-2025, Pyronear.

# This program is licensed under the Apache License 2.0.
# See LICENSE or go to <https://opensource.org/licenses/Apache-2.0> for full license details.

import logging
import signal
import socket
import threading
from contextlib import contextmanager
from enum import Enum
from typing import Callable, Iterator, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3 import PoolManager
from urllib3.connection import HTTPConnection, HTTPSConnection
from urllib3.exceptions import ConnectTimeoutError, NameResolutionError, NewConnectionError

__all__ = ["ConnectivityProbe", "DeadlineExceeded", "FailureReason", "ProbeFailed", "ProbeTrace", "deadline"]

logger = logging.getLogger(__name__)


class FailureReason(str, Enum):
    INVALID_URL = "invalid url"
    DNS = "name resolution failed"
    CONNECT = "connection failed"
    TLS = "tls handshake failed"
    DEADLINE_EXCEEDED = "deadline exceeded"
    TRANSPORT = "transport error"


class DeadlineExceeded(Exception):
    """Raised inside the in-flight request when the probe deadline fires.

    Must not derive from OSError, urllib3 and requests re-wrap those.
    """


class ProbeFailed(Exception):
    """A single probe could not reach its site"""

    def __init__(self, site: str, reason: FailureReason, error: Optional[BaseException] = None) -> None:
        super().__init__(f"{site}: {reason.value}: {error}")
        self.site = site
        self.reason = reason
        self.error = error


class ProbeTrace:
    """Diagnostic hooks fired while a probe runs.

    The default implementation only logs. Subclass it to collect the events elsewhere,
    hooks never change the outcome of a probe.
    """

    def dns_done(self, host: str, addrs: List[str], error: Optional[BaseException]) -> None:
        if error is not None:
            logger.error(f"DNS lookup done, but with error host={host} addrs={addrs} err={error}")
        else:
            logger.debug(f"DNS lookup complete host={host} addrs={addrs}")

    def connect_done(self, network: str, addr: str, error: Optional[BaseException]) -> None:
        if error is not None:
            logger.error(f"connection done, but with error network={network} addr={addr} err={error}")
        else:
            logger.debug(f"connection complete network={network} addr={addr}")

    def tls_handshake_done(
        self,
        version: Optional[str],
        cipher: Optional[str],
        negotiated_protocol: Optional[str],
        server_name: Optional[str],
        error: Optional[BaseException],
    ) -> None:
        details = (
            f"version={version} cipher={cipher} negotiated_protocol={negotiated_protocol} server_name={server_name}"
        )
        if error is not None:
            logger.error(f"TLS handshake done, but with error {details} err={error}")
        else:
            logger.debug(f"TLS handshake complete {details}")


class _PhaseRecorder:
    """Per-probe bookkeeping: which connection phase failed, the sockets opened so far and whether
    the deadline fired. Events are forwarded to the user trace.
    """

    def __init__(self, trace: Optional[ProbeTrace]) -> None:
        self.trace = trace
        self.dns_error: Optional[BaseException] = None
        self.connect_error: Optional[BaseException] = None
        self.tls_error: Optional[BaseException] = None
        self.expired = False
        self._lock = threading.Lock()
        self._sockets: List[socket.socket] = []

    def _forward(self, hook: str, *args) -> None:
        if self.trace is None:
            return
        try:
            getattr(self.trace, hook)(*args)
        except DeadlineExceeded:
            raise
        except Exception as e:
            logger.warning(f"Trace hook {hook} raised, ignoring: {e!r}")

    def dns_done(self, host, addrs, error) -> None:
        self.dns_error = error
        self._forward("dns_done", host, addrs, error)

    def connect_done(self, network, addr, error) -> None:
        self.connect_error = error
        self._forward("connect_done", network, addr, error)

    def tls_handshake_done(self, version, cipher, negotiated_protocol, server_name, error) -> None:
        self.tls_error = error
        self._forward("tls_handshake_done", version, cipher, negotiated_protocol, server_name, error)

    def watch(self, sock: socket.socket) -> None:
        # A duplicate keeps the descriptor valid after the TLS layer detaches the original
        with self._lock:
            if self.expired:
                raise DeadlineExceeded("deadline passed while connecting")
            self._sockets.append(sock.dup())

    def expire(self) -> None:
        """Mark the probe as late and shut its sockets down, which wakes any blocked read"""
        with self._lock:
            self.expired = True
            for sock in self._sockets:
                try:
                    sock.shutdown(socket.SHUT_RDWR)
                except OSError:
                    pass

    def release(self) -> None:
        with self._lock:
            for sock in self._sockets:
                sock.close()
            self._sockets.clear()


class _TracingMixin:
    def __init__(self, *args, trace: Optional[_PhaseRecorder] = None, **kwargs) -> None:
        self.trace = trace
        self._tcp_ready = False
        super().__init__(*args, **kwargs)

    def _new_conn(self) -> socket.socket:
        host = self._dns_host
        try:
            infos = socket.getaddrinfo(host, self.port, 0, socket.SOCK_STREAM)
        except (socket.gaierror, UnicodeError) as e:
            # UnicodeError: the host cannot be IDNA encoded, e.g. a label over 63 characters
            if self.trace is not None:
                self.trace.dns_done(host, [], e)
            raise NameResolutionError(host, self, e) from e
        if self.trace is not None:
            self.trace.dns_done(host, sorted({info[4][0] for info in infos}), None)

        try:
            sock = self._connect_any(infos)
        except DeadlineExceeded:
            raise
        except Exception as e:
            if self.trace is not None:
                self.trace.connect_done("tcp", f"{host}:{self.port}", e)
            raise
        self._tcp_ready = True
        if self.trace is not None:
            peer = sock.getpeername()
            self.trace.connect_done("tcp", f"{peer[0]}:{peer[1]}", None)
        return sock

    def _connect_any(self, infos) -> socket.socket:
        """Connect to the first reachable address of an already resolved host"""
        error: Optional[OSError] = None
        for family, socktype, proto, _, address in infos:
            sock = None
            try:
                sock = socket.socket(family, socktype, proto)
                for option in self.socket_options or []:
                    sock.setsockopt(*option)
                if isinstance(self.timeout, (int, float)):
                    sock.settimeout(self.timeout)
                if self.source_address:
                    sock.bind(self.source_address)
                sock.connect(address)
            except OSError as e:
                error = e
                if sock is not None:
                    sock.close()
                continue
            if self.trace is not None:
                try:
                    self.trace.watch(sock)
                except DeadlineExceeded:
                    sock.close()
                    raise
            return sock

        if isinstance(error, socket.timeout):
            raise ConnectTimeoutError(
                self, f"Connection to {self.host} timed out. (connect timeout={self.timeout})"
            ) from error
        raise NewConnectionError(self, f"Failed to establish a new connection: {error}") from error


class _TracingHTTPConnection(_TracingMixin, HTTPConnection):
    pass


class _TracingHTTPSConnection(_TracingMixin, HTTPSConnection):
    def connect(self) -> None:
        self._tcp_ready = False
        server_name = getattr(self, "server_hostname", None) or self.host
        try:
            super().connect()
        except Exception as e:
            # TCP errors were already reported by _new_conn
            if self._tcp_ready and self.trace is not None:
                self.trace.tls_handshake_done(None, None, None, server_name, e)
            raise
        if self.trace is not None:
            version = self.sock.version() if hasattr(self.sock, "version") else None
            cipher = self.sock.cipher() if hasattr(self.sock, "cipher") else None
            alpn = self.sock.selected_alpn_protocol() if hasattr(self.sock, "selected_alpn_protocol") else None
            self.trace.tls_handshake_done(version, cipher[0] if cipher else None, alpn, server_name, None)


class _TracingPoolManager(PoolManager):
    def __init__(self, trace: _PhaseRecorder, *args, **kwargs) -> None:
        self.trace = trace
        super().__init__(*args, **kwargs)

    def _new_pool(self, scheme, host, port, request_context=None):
        pool = super()._new_pool(scheme, host, port, request_context=request_context)
        pool.ConnectionCls = _TracingHTTPSConnection if scheme == "https" else _TracingHTTPConnection
        pool.conn_kw["trace"] = self.trace
        return pool


class _TracingAdapter(HTTPAdapter):
    """Transport adapter without retries whose connections report their DNS, TCP and TLS phases"""

    def __init__(self, trace: _PhaseRecorder) -> None:
        self.trace = trace
        super().__init__(max_retries=0)

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs):
        self._pool_connections = connections
        self._pool_maxsize = maxsize
        self._pool_block = block
        self.poolmanager = _TracingPoolManager(
            self.trace, num_pools=connections, maxsize=maxsize, block=block, **pool_kwargs
        )


def _can_alarm() -> bool:
    return hasattr(signal, "setitimer") and threading.current_thread() is threading.main_thread()


@contextmanager
def deadline(seconds: float, on_expire: Optional[Callable[[], None]] = None) -> Iterator[None]:
    """Bound the enclosed block to `seconds`.

    On POSIX from the main thread a SIGALRM timer raises DeadlineExceeded inside the block.
    Anywhere else a timer thread calls `on_expire`, which has to unblock the block by itself
    (ConnectivityProbe shuts the in-flight sockets down).
    """
    if not _can_alarm():
        timer = None
        if on_expire is not None:
            timer = threading.Timer(seconds, on_expire)
            timer.daemon = True
            timer.start()
        try:
            yield
        finally:
            if timer is not None:
                timer.cancel()
        return

    def _expire(signum, frame):
        raise DeadlineExceeded(f"no result after {seconds:.3f}s")

    previous = signal.signal(signal.SIGALRM, _expire)
    signal.setitimer(signal.ITIMER_REAL, seconds)
    try:
        yield
    finally:
        signal.setitimer(signal.ITIMER_REAL, 0)
        signal.signal(signal.SIGALRM, previous if previous is not None else signal.SIG_DFL)


class ConnectivityProbe:
    """Checks that a site answers over HTTP(S) within a hard deadline.

    Each call is a fresh attempt: a new session, `Connection: close`, no retries and no redirect
    following. The response body is never read and any status code counts as a success.

    Args:
        trace: diagnostic hooks, defaults to a ProbeTrace that logs every phase
        user_agent: value of the User-Agent header sent with each probe
    """

    def __init__(self, trace: Optional[ProbeTrace] = None, user_agent: str = "bouncer") -> None:
        self.trace = trace if trace is not None else ProbeTrace()
        self.user_agent = user_agent

    def probe(self, site: str, timeout: float) -> None:
        """Raise ProbeFailed unless `site` answers within `timeout` seconds"""
        if timeout <= 0:
            raise ValueError(f"probe timeout must be positive, got {timeout}")
        logger.debug(f"initiating check of website site={site}")

        recorder = _PhaseRecorder(self.trace)
        session = requests.Session()
        adapter = _TracingAdapter(recorder)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        try:
            with deadline(timeout, on_expire=recorder.expire):
                response = session.get(
                    site,
                    timeout=(timeout, timeout),
                    stream=True,
                    allow_redirects=False,
                    headers={"Connection": "close", "User-Agent": self.user_agent},
                )
                response.close()
            # A shut down socket can end the header block early and look like an answer
            if recorder.expired:
                raise DeadlineExceeded(f"no result after {timeout:.3f}s")
        except (DeadlineExceeded, requests.RequestException, OSError, UnicodeError) as e:
            raise ProbeFailed(site, self._classify(e, recorder), e) from e
        finally:
            session.close()
            recorder.release()

    __call__ = probe

    @staticmethod
    def _classify(error: BaseException, recorder: _PhaseRecorder) -> FailureReason:
        if recorder.expired or isinstance(error, (DeadlineExceeded, requests.Timeout)):
            return FailureReason.DEADLINE_EXCEEDED
        if isinstance(error, (requests.exceptions.InvalidURL, requests.exceptions.MissingSchema,
                              requests.exceptions.InvalidSchema)):
            return FailureReason.INVALID_URL
        if recorder.dns_error is not None:
            return FailureReason.DNS
        if isinstance(error, UnicodeError):
            return FailureReason.INVALID_URL
        if recorder.connect_error is not None:
            return FailureReason.CONNECT
        if recorder.tls_error is not None or isinstance(error, requests.exceptions.SSLError):
            return FailureReason.TLS
        return FailureReason.TRANSPORT

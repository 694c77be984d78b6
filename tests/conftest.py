import socket
import ssl
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from bouncer.config import Settings

DATA_DIR = Path(__file__).resolve().parent / "data"


class _AnyStatusHandler(BaseHTTPRequestHandler):
    def do_GET(self):
        body = b"not found"
        self.send_response(404)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def http_server():
    server = ThreadingHTTPServer(("127.0.0.1", 0), _AnyStatusHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()
    thread.join(timeout=1)


@pytest.fixture
def silent_server():
    # Accepts TCP connections through the listen backlog but never answers
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(8)
    yield f"127.0.0.1:{sock.getsockname()[1]}"
    sock.close()


@pytest.fixture
def plaintext_server():
    # Answers anything, including a TLS ClientHello, with a plain HTTP error
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(8)

    def _serve():
        while True:
            try:
                conn, _ = sock.accept()
            except OSError:
                return
            with conn:
                try:
                    conn.recv(4096)
                    conn.sendall(b"HTTP/1.1 400 Bad Request\r\nContent-Length: 0\r\n\r\n")
                except OSError:
                    pass

    thread = threading.Thread(target=_serve, daemon=True)
    thread.start()
    yield f"127.0.0.1:{sock.getsockname()[1]}"
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    sock.close()


@pytest.fixture
def trickle_server():
    # Sends a status line, then one header line at a time without ever ending the header block
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(8)
    stop = threading.Event()

    def _serve():
        while not stop.is_set():
            try:
                conn, _ = sock.accept()
            except OSError:
                return
            with conn:
                try:
                    conn.recv(4096)
                    conn.sendall(b"HTTP/1.1 200 OK\r\n")
                    count = 0
                    while not stop.wait(0.1):
                        conn.sendall(f"X-Trickle-{count}: yes\r\n".encode())
                        count += 1
                except OSError:
                    pass

    thread = threading.Thread(target=_serve, daemon=True)
    thread.start()
    yield f"127.0.0.1:{sock.getsockname()[1]}"
    stop.set()
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    sock.close()
    thread.join(timeout=1)


@pytest.fixture
def tls_server(monkeypatch):
    # HTTPS server with a self-signed certificate for localhost and 127.0.0.1, trusted by requests
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(str(DATA_DIR / "localhost.crt"), str(DATA_DIR / "localhost.key"))
    server = ThreadingHTTPServer(("127.0.0.1", 0), _AnyStatusHandler)
    server.socket = context.wrap_socket(server.socket, server_side=True)
    monkeypatch.setenv("REQUESTS_CA_BUNDLE", str(DATA_DIR / "localhost.crt"))
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()
    thread.join(timeout=1)


@pytest.fixture
def closed_port():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture(autouse=True)
def no_proxy_env(monkeypatch):
    for name in ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def make_settings():
    def _make(**kwargs):
        params = {
            "sites": ("http://site-1.test", "http://site-2.test"),
            "check_interval": 60.0,
            "check_jitter": 5.0,
            "check_timeout": 3.0,
            "retry_interval": 20.0,
            "retry_jitter": 4.0,
            "failures": 2,
            "bounce_duration": 10.0,
            "bounce_timeout": 600.0,
            "relay": "noop",
        }
        params.update(kwargs)
        return Settings(**params)

    return _make


@pytest.fixture
def mock_relay():
    return MagicMock()


@pytest.fixture
def mock_probe():
    return MagicMock()


@pytest.fixture
def fixed_jitter():
    return MagicMock(return_value=1.5)


@pytest.fixture
def fake_gpio():
    gpio = MagicMock()
    gpio.BCM = "BCM"
    gpio.OUT = "OUT"
    gpio.HIGH = 1
    gpio.LOW = 0
    rpi = MagicMock()
    rpi.GPIO = gpio
    return {"RPi": rpi, "RPi.GPIO": gpio}

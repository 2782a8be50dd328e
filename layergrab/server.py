"""
Background HTTP server for the shim registry.

The listener binds port 0 on the loopback address so the kernel picks a free
port, then serves the Flask app from a daemon thread. Startup is sequenced by
polling the ping endpoint with a bounded sequence of sleeps.
"""

import logging
import threading
import time

import requests
from werkzeug.serving import make_server

from .config import config
from .errors import StartupError

logger = logging.getLogger(__name__)

PING_PATH = "/v1/_ping"


def wait_for_ping(url: str, sleeps_ms: list[int] | None = None, timeout: float | None = None) -> int:
    """
    Poll a ping URL until it answers with success.

    Sleeps before every attempt, so the number of attempts is the length of
    ``sleeps_ms``. This is a hard startup timeout, not a retry-forever loop.

    Args:
        url: Ping endpoint to poll
        sleeps_ms: Milliseconds to sleep before each attempt. Default: PING_SLEEPS_MS
        timeout: Per-request timeout in seconds. Default: PING_TIMEOUT

    Returns:
        Number of attempts it took

    Raises:
        StartupError: if no attempt succeeded
    """
    sleeps_ms = config.PING_SLEEPS_MS if sleeps_ms is None else sleeps_ms
    timeout = config.PING_TIMEOUT if timeout is None else timeout

    logger.debug(f"Waiting for shim registry to start by checking {url}")
    for attempt, ms in enumerate(sleeps_ms, 1):
        logger.debug(f"Sleeping {ms} ms before ping")
        time.sleep(ms / 1000)
        try:
            resp = requests.get(url, timeout=timeout)
        except requests.RequestException as e:
            logger.debug(f"Ping attempt {attempt} failed: {e}")
            continue
        resp.close()
        if resp.ok:
            logger.debug(f"Ping succeeded after {attempt} attempt(s)")
            return attempt
        logger.debug(f"Ping attempt {attempt} answered {resp.status_code}")

    raise StartupError("Shim registry took too long to come up")


class ShimServer:
    """
    Threaded werkzeug server running the shim app.

    Args:
        app: Flask app from ``create_app``
        host: Bind address. Default: SHIM_HOST
        port: Bind port, 0 for an ephemeral one
    """

    def __init__(self, app, host: str | None = None, port: int = 0):
        host = host or config.SHIM_HOST
        try:
            self._server = make_server(host, port, app, threaded=True)
        except OSError as e:
            raise StartupError(f"Cannot bind shim registry on {host}:{port}: {e}")
        except SystemExit:
            # werkzeug prints bind errors to stderr and exits instead of raising
            raise StartupError(f"Cannot bind shim registry on {host}:{port}")
        self._thread: threading.Thread | None = None

    @property
    def address(self) -> str:
        """``host:port`` the daemon pushes to."""
        return f"{self._server.host}:{self._server.port}"

    @property
    def ping_url(self) -> str:
        return f"http://{self.address}{PING_PATH}"

    def start(self) -> None:
        logger.debug(f"Starting shim registry on {self.address}")
        self._thread = threading.Thread(
            target=self._server.serve_forever, name=f"shim-registry-{self._server.port}", daemon=True
        )
        self._thread.start()

    def wait_until_ready(self, sleeps_ms: list[int] | None = None) -> None:
        wait_for_ping(self.ping_url, sleeps_ms)
        logger.debug("Shim registry started")

    def shutdown(self) -> None:
        if self._thread is None:
            self._server.server_close()
            return
        self._server.shutdown()
        self._server.server_close()
        self._thread.join()
        self._thread = None
        logger.debug(f"Shim registry on {self.address} stopped")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()

from __future__ import annotations

import logging
import threading
from socketserver import ThreadingMixIn
from typing import Any
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from prometheus_client import CollectorRegistry, make_wsgi_app


LOGGER = logging.getLogger("shelly_prom_exporter.server")


class ExposureError(RuntimeError):
    pass


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    # request threads are joined on server_close so in-flight scrapes finish
    daemon_threads = False
    block_on_close = True
    allow_reuse_address = True


class QuietHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:
        LOGGER.debug("%s - %s", self.address_string(), format % args)


class ExposureServer:
    """Serves the metrics registry over HTTP on a background thread.

    Any error that ends the serving loop sets ``stop_event`` so the rest of
    the process shuts down with it.
    """

    def __init__(
        self,
        registry: CollectorRegistry,
        *,
        address: str = "0.0.0.0",
        port: int = 9090,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.registry = registry
        self.address = address
        self.requested_port = port
        self.stop_event = stop_event if stop_event is not None else threading.Event()
        self.failed = False
        self._server: ThreadingWSGIServer | None = None
        self._thread: threading.Thread | None = None
        self._stopping = False

    @property
    def port(self) -> int:
        if self._server is None:
            return self.requested_port
        return self._server.server_port

    def start(self) -> None:
        try:
            server = make_server(
                self.address,
                self.requested_port,
                make_wsgi_app(self.registry),
                server_class=ThreadingWSGIServer,
                handler_class=QuietHandler,
            )
        except OSError as error:
            raise ExposureError(
                f"failed to bind metrics server to {self.address}:{self.requested_port}: {error}"
            ) from error
        self._server = server
        self._thread = threading.Thread(target=self._serve, args=(server,), name="metrics-server", daemon=True)
        self._thread.start()
        LOGGER.info("metrics server listening on http://%s:%d/metrics", self.address, self.port)

    def _serve(self, server: ThreadingWSGIServer) -> None:
        try:
            server.serve_forever()
        except Exception:
            self.failed = True
            LOGGER.exception("metrics server failed")
        else:
            if not self._stopping:
                self.failed = True
                LOGGER.error("metrics server stopped unexpectedly")
        finally:
            self.stop_event.set()

    def stop(self, timeout_seconds: float = 5.0) -> None:
        if self._server is None:
            return
        self._stopping = True
        # shutdown() blocks until serve_forever returns, so skip it once the loop has failed
        if not self.failed:
            self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=timeout_seconds)
        LOGGER.info("metrics server stopped")

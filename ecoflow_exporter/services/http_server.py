# ecoflow_exporter/services/http_server.py

from __future__ import annotations

import socket
from socketserver import ThreadingMixIn
from typing import Tuple
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from prometheus_client import CollectorRegistry, make_wsgi_app


LANDING_PAGE = """<html>
<head><title>EcoFlow Exporter</title></head>
<body>
<h1>EcoFlow Exporter</h1>
<p><a href="{path}">Metrics</a></p>
</body>
</html>
"""


class _ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """One thread per scrape request."""

    daemon_threads = True


class _ThreadingWSGIServerV6(_ThreadingWSGIServer):
    address_family = socket.AF_INET6


class _QuietHandler(WSGIRequestHandler):
    log_target = None

    def log_message(self, format, *args):
        if self.log_target is not None:
            self.log_target.debug("%s - %s", self.address_string(), format % args)


def parse_listen(listen: str) -> Tuple[str, int]:
    """Split "host:port" (or ":port") into a bindable address."""
    host, sep, port = listen.rpartition(":")
    if not sep or not port:
        raise ValueError(f"Invalid listen address: {listen!r}")
    try:
        port_num = int(port)
    except ValueError:
        raise ValueError(f"Invalid listen port in {listen!r}") from None
    if not 0 <= port_num <= 65535:
        raise ValueError(f"Invalid listen port in {listen!r}")
    host = host.strip("[]") or "0.0.0.0"
    return host, port_num


def build_app(registry: CollectorRegistry, metrics_path: str = "/metrics"):
    """WSGI app serving the registry at metrics_path and a landing page at /."""
    if not metrics_path.startswith("/"):
        metrics_path = "/" + metrics_path
    metrics_app = make_wsgi_app(registry)
    landing = LANDING_PAGE.format(path=metrics_path).encode("utf-8")

    def app(environ, start_response):
        path = environ.get("PATH_INFO", "") or "/"
        if path == metrics_path:
            return metrics_app(environ, start_response)
        if path == "/":
            start_response("200 OK", [("Content-Type", "text/html; charset=utf-8")])
            return [landing]
        start_response("404 Not Found", [("Content-Type", "text/plain; charset=utf-8")])
        return [b"Not Found\n"]

    return app


class MetricsServer:
    def __init__(self, registry: CollectorRegistry, listen: str, metrics_path: str, log):
        self.registry = registry
        self.listen = listen
        self.metrics_path = metrics_path
        self.log = log
        self.host, self.port = parse_listen(listen)
        self._server = None

    def start(self):
        handler = type("_Handler", (_QuietHandler,), {"log_target": self.log})
        self._server = make_server(
            self.host,
            self.port,
            build_app(self.registry, self.metrics_path),
            server_class=_ThreadingWSGIServerV6 if ":" in self.host else _ThreadingWSGIServer,
            handler_class=handler,
        )
        self.port = self._server.server_port
        return self._server

    def serve_forever(self) -> None:
        if self._server is None:
            self.start()
        self.log.info("Starting ecoflow exporter on %s:%s%s", self.host, self.port, self.metrics_path)
        try:
            self._server.serve_forever()
        finally:
            self._server.server_close()

    def shutdown(self) -> None:
        if self._server is not None:
            self._server.shutdown()

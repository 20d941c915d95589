"""Lightweight HTTP health and status endpoints for operational monitoring."""

from __future__ import annotations

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class HealthServer:
    """
    JSON server with pluggable providers.

    `/health` reports loop liveness (503 when the provider says not ok);
    `/status` serves the per-entity status feed.
    """

    def __init__(
        self,
        port: int,
        status_provider: Callable[[], Dict[str, Any]],
        feed_provider: Optional[Callable[[], List[Dict[str, Any]]]] = None,
        host: str = "0.0.0.0",
    ):
        self._port = int(port)
        self._host = host
        self._status_provider = status_provider
        self._feed_provider = feed_provider or (lambda: [])
        self._server: Optional[HTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> Optional[int]:
        if self._server is None:
            return None
        return self._server.server_port

    def start(self) -> None:
        if self._thread:
            return

        handler_cls = self._build_handler(self._status_provider, self._feed_provider)
        self._server = HTTPServer((self._host, self._port), handler_cls)
        self._thread = threading.Thread(target=self._server.serve_forever, name="HealthServer", daemon=True)
        self._thread.start()
        logger.info("Health server listening on %s:%s", self._host, self._server.server_port)

    def stop(self) -> None:
        if not self._server:
            return
        try:
            self._server.shutdown()
            self._server.server_close()
        except OSError as exc:
            logger.warning("Failed shutting down health server: %s", exc)
        if self._thread:
            self._thread.join(timeout=3)
        self._thread = None
        self._server = None

    @staticmethod
    def _build_handler(
        status_provider: Callable[[], Dict[str, Any]],
        feed_provider: Callable[[], List[Dict[str, Any]]],
    ):
        class HealthHandler(BaseHTTPRequestHandler):
            def _send_json(self, code: int, payload: Any) -> None:
                body = json.dumps(payload, default=str).encode("utf-8")
                self.send_response(code)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def do_GET(self):  # type: ignore[override]
                if self.path in ("/", "/health", "/healthz"):
                    payload = status_provider() or {}
                    ok = bool(payload.get("ok", True))
                    self._send_json(200 if ok else 503, payload)
                    return
                if self.path == "/status":
                    self._send_json(200, {"entities": feed_provider()})
                    return
                self.send_response(404)
                self.end_headers()

            def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover - suppress noisy logs
                return

        return HealthHandler


__all__ = ["HealthServer"]

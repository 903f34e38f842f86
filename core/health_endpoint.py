"""HTTP Health Endpoint for tapfarm.

Serves the most recent :class:`core.monitoring.StatusSnapshot` over HTTP for
uptime monitors and container orchestrators.  The server runs in a daemon
thread and only ever reads the snapshot the scheduler last published, so it
never touches scheduling state directly.

Endpoints:
    GET /health  -- 200 while keys are queued or running, 503 otherwise.
    GET /metrics -- Full snapshot as JSON.
"""

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional, Tuple

from core.monitoring import StatusSink, StatusSnapshot

logger = logging.getLogger(__name__)


class SnapshotStore(StatusSink):
    """Status sink that keeps the latest snapshot for the HTTP thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._latest: Optional[StatusSnapshot] = None

    def emit(self, snapshot: StatusSnapshot) -> None:
        with self._lock:
            self._latest = snapshot

    def latest(self) -> Optional[StatusSnapshot]:
        with self._lock:
            return self._latest


def build_health_response(snapshot: Optional[StatusSnapshot]) -> Tuple[int, Dict[str, Any]]:
    """Status code and body for ``/health``."""
    if snapshot is None:
        return 503, {"status": "starting"}
    if snapshot.healthy:
        return 200, {"status": "healthy", "timestamp": snapshot.timestamp}
    return 503, {"status": "idle", "timestamp": snapshot.timestamp}


class HealthHandler(BaseHTTPRequestHandler):
    """HTTP request handler for health check endpoints."""

    # Bound per server by :func:`start_health_server`
    snapshot_provider: Callable[[], Optional[StatusSnapshot]] = staticmethod(lambda: None)

    def do_GET(self) -> None:  # noqa: N802 -- required by BaseHTTPRequestHandler
        """Route incoming GET requests to the appropriate handler."""
        if self.path == '/health':
            status, body = build_health_response(self.snapshot_provider())
            self._send_json(status, body)
        elif self.path == '/metrics':
            snapshot = self.snapshot_provider()
            if snapshot is None:
                self._send_json(503, {"status": "starting"})
            else:
                self._send_json(200, snapshot.to_dict())
        else:
            self.send_error(404, "Not Found")

    def _send_json(self, status: int, body: Dict[str, Any]) -> None:
        payload = json.dumps(body, indent=2).encode()
        self.send_response(status)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        """Route access logs to the module logger at DEBUG level."""
        logger.debug("Health endpoint: " + format, *args)


def start_health_server(
    store: SnapshotStore, port: int, host: str = "0.0.0.0",
) -> ThreadingHTTPServer:
    """Start the health server in a daemon thread.

    Args:
        store: Snapshot source.
        port: TCP port (``0`` picks a free one; see ``server.server_port``).
        host: Bind address.

    Returns:
        The running server; call ``shutdown()`` to stop it.
    """
    handler = type(
        "BoundHealthHandler",
        (HealthHandler,),
        {"snapshot_provider": staticmethod(store.latest)},
    )
    server = ThreadingHTTPServer((host, port), handler)
    thread = threading.Thread(target=server.serve_forever, name="health-endpoint", daemon=True)
    thread.start()
    logger.info("Health endpoint listening on http://%s:%d", host, server.server_port)
    return server

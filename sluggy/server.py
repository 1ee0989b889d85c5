"""Preview server for Sluggy.

Serves the committed artifact store with live reload:
- Responses come straight from the current store snapshot, so a page is
  never served half-written.
- Non-HTML artifacts are served pre-compressed when the client accepts one
  of the built encodings, preferring the configured one.
- HTML responses get the reload script injected and are served uncompressed.
- Build errors are pushed over the websocket and listed at /__sluggy/errors.

The watcher, the build loop and the HTTP/websocket servers run as separate
threads connected by bounded queues.

Key classes:
- DevServer: Wires the orchestrator, watcher and servers together.
- _StoreHandler: HTTP request handler over an ArtifactStore.
"""

from __future__ import annotations

import asyncio
import json
import logging
import queue
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlsplit

import click
import websockets

from .config import BuildConfig, load_config
from .errors import BuildError
from .orchestrator import BuildReport, Orchestrator
from .store import ArtifactStore, StoreEntry
from .watcher import ChangeWatcher

logger = logging.getLogger(__name__)

ERRORS_PATH = "/__sluggy/errors"


def negotiate_encoding(
    accept_encoding: str | None,
    available: list[str],
    preferred: str = "br",
) -> str | None:
    """Pick the variant to serve for an Accept-Encoding header.

    Args:
        accept_encoding: Raw header value, or None when absent.
        available: Encodings the artifact has variants for.
        preferred: Encoding chosen whenever the client accepts it.

    Returns:
        The chosen encoding, or None to serve the identity body.

    Examples:
        >>> negotiate_encoding("gzip, deflate, br", ["br", "gzip"])
        'br'

        >>> negotiate_encoding("gzip;q=0.5, br;q=0", ["br", "gzip"])
        'gzip'

        >>> negotiate_encoding(None, ["br"]) is None
        True
    """
    if not accept_encoding or not available:
        return None
    weights: dict[str, float] = {}
    for item in accept_encoding.split(","):
        token, _, params = item.strip().partition(";")
        token = token.strip().lower()
        if not token:
            continue
        quality = 1.0
        params = params.strip()
        if params.startswith("q="):
            try:
                quality = float(params[2:])
            except ValueError:
                quality = 0.0
        weights[token] = quality

    def accepted(encoding: str) -> float:
        return weights.get(encoding, weights.get("*", 0.0))

    if preferred in available and accepted(preferred) > 0:
        return preferred
    ranked = sorted(
        (e for e in available if accepted(e) > 0),
        key=lambda e: (-accepted(e), available.index(e)),
    )
    return ranked[0] if ranked else None


def lookup_route(snapshot: dict[str, StoreEntry] | Any, path: str) -> tuple[str | None, str | None]:
    """Find the artifact route for a request path.

    Returns:
        ``(route, None)`` when the path is served as-is, ``(None, location)``
        when it should redirect, and ``(None, None)`` when nothing matches.
    """
    if path in snapshot:
        return path, None
    if path.endswith("/index.html"):
        page = path[: -len("index.html")]
        if page in snapshot:
            return page, None
    if not path.endswith("/") and f"{path}/" in snapshot:
        return None, f"{path}/"
    return None, None


class _StoreHandler(BaseHTTPRequestHandler):
    """Serves artifacts from the store snapshot current at request time.

    Attributes:
        store: Store to serve from.
        reload_script: Script injected into every HTML response.
        preferred_encoding: Encoding served whenever the client accepts it.
        errors_provider: Returns the current build errors as dicts.
    """

    store: ArtifactStore = ArtifactStore()
    reload_script = ""
    preferred_encoding = "br"
    errors_provider = staticmethod(lambda: [])

    def end_headers(self):
        self.send_header("Cache-Control", "no-cache, no-store, must-revalidate")
        super().end_headers()

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)

    def do_GET(self):
        self._respond(include_body=True)

    def do_HEAD(self):
        self._respond(include_body=False)

    def _respond(self, include_body: bool) -> None:
        path = unquote(urlsplit(self.path).path) or "/"
        if path == ERRORS_PATH:
            payload = json.dumps({"errors": self.errors_provider()}, indent=2).encode("utf-8")
            self._send(200, "application/json; charset=utf-8", payload, include_body)
            return

        snapshot = self.store.snapshot()
        route, location = lookup_route(snapshot, path)
        if location is not None:
            self.send_response(301)
            self.send_header("Location", location)
            self.send_header("Content-Length", "0")
            self.end_headers()
            return
        if route is None:
            self._serve_404(snapshot, include_body)
            return

        artifact = snapshot[route].artifact
        if artifact.content_type.startswith("text/html"):
            self._send(200, artifact.content_type, self._inject(artifact.body), include_body)
            return

        encoding = negotiate_encoding(
            self.headers.get("Accept-Encoding"),
            list(artifact.variants),
            self.preferred_encoding,
        )
        body = artifact.variants[encoding] if encoding else artifact.body
        self._send(200, artifact.content_type, body, include_body, encoding)

    def _serve_404(self, snapshot, include_body: bool) -> None:
        """Serve the site's 404 page (when present) with a 404 status."""
        for route in ("/404.html", "/404/"):
            entry = snapshot.get(route)
            if entry is not None:
                self._send(404, entry.artifact.content_type, self._inject(entry.artifact.body), include_body)
                return
        self.send_error(404, "File not found")

    def _inject(self, body: bytes) -> bytes:
        content = body.decode("utf-8", errors="replace")
        if "</body>" in content:
            content = content.replace("</body>", f"{self.reload_script}</body>", 1)
        else:
            content += self.reload_script
        return content.encode("utf-8")

    def _send(
        self,
        status: int,
        content_type: str,
        body: bytes,
        include_body: bool,
        encoding: str | None = None,
    ) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Vary", "Accept-Encoding")
        if encoding:
            self.send_header("Content-Encoding", encoding)
        self.end_headers()
        if include_body:
            self.wfile.write(body)


RELOAD_SCRIPT_TEMPLATE = """
<script>
(() => {{
  const ws = new WebSocket('ws://' + location.hostname + ':{ws_port}');
  ws.onmessage = (event) => {{
    const data = JSON.parse(event.data || '{{}}');
    if (data.type === 'reload') location.reload();
    if (data.type === 'errors') {{
      for (const error of data.errors) console.error('[sluggy] ' + error.entity_id + ': ' + error.message);
    }}
  }};
}})();
</script>
"""


class DevServer:
    """Preview server with incremental rebuilds and live reload.

    Attributes:
        project_root: Root directory of the project.
        config: Resolved build configuration.
        orchestrator: Orchestrator of the served session.
        http_port: Port for the HTTP server.
        ws_port: Port for websocket connections.
    """

    def __init__(
        self,
        project_root: Path,
        http_port: int | None = None,
        ws_port: int | None = None,
        include_drafts: bool = False,
        config_path: Path | None = None,
    ):
        """Initialize the preview server.

        Args:
            project_root: Root directory of the project.
            http_port: Optional override for the HTTP port.
            ws_port: Optional override for the websocket port.
            include_drafts: Render draft content.
            config_path: Optional explicit config file.
        """
        self.project_root = project_root
        mapping = load_config(project_root, config_path)
        if include_drafts:
            mapping["include_drafts"] = True
        self.config = BuildConfig.from_mapping(mapping, project_root)
        self.http_port = int(http_port or self.config.port)
        if ws_port is not None:
            self.ws_port = ws_port
        elif http_port is not None or self.config.ws_port is None:
            self.ws_port = self.http_port + 1
        else:
            self.ws_port = self.config.ws_port
        self._reload_script = RELOAD_SCRIPT_TEMPLATE.format(ws_port=self.ws_port)
        self.orchestrator = Orchestrator(self.config)
        self._wakeups: queue.Queue[bool] = queue.Queue(maxsize=1)
        self._stop = threading.Event()
        self._watcher: ChangeWatcher | None = None
        self._httpd: ThreadingHTTPServer | None = None
        self._ws_clients: set = set()
        self._loop = asyncio.new_event_loop()

    def handler_class(self) -> type[_StoreHandler]:
        return type(
            "_SessionStoreHandler",
            (_StoreHandler,),
            {
                "store": self.orchestrator.session.store,
                "reload_script": self._reload_script,
                "preferred_encoding": self.config.content_encoding,
                "errors_provider": staticmethod(self.error_payload),
            },
        )

    def start(self, watch: bool = True) -> None:  # pragma: no cover - integration path
        self.initial_build()
        threading.Thread(target=self._start_http, name="sluggy-http", daemon=True).start()
        threading.Thread(target=self._start_ws, name="sluggy-ws", daemon=True).start()
        threading.Thread(target=self._build_loop, name="sluggy-build", daemon=True).start()
        if watch:
            self._watcher = ChangeWatcher(self.config)
            self._watcher.start()
            threading.Thread(target=self._forward_changes, name="sluggy-forward", daemon=True).start()
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            self.stop()

    def stop(self) -> None:
        self._stop.set()
        if self._watcher is not None:
            self._watcher.stop()
        if self._httpd is not None:
            self._httpd.shutdown()
        self._loop.call_soon_threadsafe(self._loop.stop)

    def initial_build(self) -> BuildReport | None:
        try:
            report = self.orchestrator.full_build(clean_output=True)
        except BuildError as exc:
            logger.error("Initial build failed: %s", exc.message)
            return None
        self._echo_report(report)
        return report

    def request_build(self) -> None:
        """Wake the build loop; a wake-up already queued covers this one."""
        try:
            self._wakeups.put_nowait(True)
        except queue.Full:
            pass

    def rebuild(self) -> BuildReport | None:
        """Build pending changes and tell connected browsers about the result."""
        try:
            report = self.orchestrator.run_pending()
        except BuildError as exc:
            # Watch mode keeps serving the last committed snapshot.
            logger.error("Rebuild failed: %s", exc.message)
            self._broadcast({"type": "errors", "errors": self.error_payload()})
            return None
        if report is None:
            return None
        self._echo_report(report)
        self._broadcast({"type": "errors", "errors": self.error_payload()})
        if report.written or report.removed:
            self._broadcast({"type": "reload"})
        return report

    def error_payload(self) -> list[dict[str, str]]:
        return [
            {"entity_id": e.entity_id, "kind": e.kind, "message": e.message}
            for e in self.orchestrator.session.current_errors()
        ]

    def _echo_report(self, report: BuildReport) -> None:
        for error in report.errors:
            click.echo(
                click.style(f"  {error.entity_id}: ", fg="yellow") + f"{error.kind}: {error.message}",
                err=True,
            )
        color = "green" if report.ok else "red"
        click.echo(click.style(report.summary(), fg=color))

    def _forward_changes(self) -> None:  # pragma: no cover - integration path
        assert self._watcher is not None
        while not self._stop.is_set():
            try:
                batch = self._watcher.batches.get(timeout=0.5)
            except queue.Empty:
                continue
            click.echo(f"Change detected in {len(batch)} file(s); rebuilding...")
            self.orchestrator.notify(batch.paths)
            self.request_build()

    def _build_loop(self) -> None:  # pragma: no cover - integration path
        while not self._stop.is_set():
            try:
                self._wakeups.get(timeout=0.5)
            except queue.Empty:
                continue
            self.rebuild()

    def _start_http(self) -> None:  # pragma: no cover - integration path
        self._httpd = ThreadingHTTPServer((self.config.host, self.http_port), self.handler_class())
        click.echo(f"Serving {self.config.output_root.name}/ at http://localhost:{self.http_port}")
        self._httpd.serve_forever()

    def _start_ws(self) -> None:  # pragma: no cover - integration path
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self._run_ws_server())
        except OSError as exc:
            logger.error("WebSocket server failed to start (port %s): %s", self.ws_port, exc)
            return

    async def _run_ws_server(self) -> None:  # pragma: no cover - integration path
        async with websockets.serve(self._ws_handler, self.config.host, self.ws_port):
            await asyncio.Future()  # Run forever

    async def _ws_handler(self, websocket):
        self._ws_clients.add(websocket)
        try:
            errors = self.error_payload()
            if errors:
                await websocket.send(json.dumps({"type": "errors", "errors": errors}))
            await websocket.wait_closed()
        finally:
            self._ws_clients.discard(websocket)

    def _broadcast(self, payload: dict[str, Any]) -> None:
        if not self._loop.is_running():
            return
        message = json.dumps(payload)
        asyncio.run_coroutine_threadsafe(self._async_broadcast(message), self._loop)

    async def _async_broadcast(self, message: str):
        stale = set()
        for ws in list(self._ws_clients):
            try:
                await ws.send(message)
            except websockets.ConnectionClosed:
                stale.add(ws)
        for ws in stale:
            self._ws_clients.discard(ws)

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, Dict, Iterator, List, Optional, Tuple, Union

import pytest

import warden

UNREACHABLE = "http://127.0.0.1:9"


@dataclass
class RecordedRequest:
    method: str
    path: str
    headers: Dict[str, str]
    body: bytes = b""


Reply = Tuple[int, str]
Route = Union[Reply, Callable[[RecordedRequest], Reply]]


@dataclass
class FakeHttpService:
    """Threaded local HTTP server standing in for the internal API and the alert sink."""

    routes: Dict[Tuple[str, str], Route] = field(default_factory=dict)
    requests: List[RecordedRequest] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        service = self

        class Handler(BaseHTTPRequestHandler):
            def _handle(self) -> None:
                length = int(self.headers.get("Content-Length") or 0)
                body = self.rfile.read(length) if length else b""
                recorded = RecordedRequest(
                    method=self.command,
                    path=self.path,
                    headers={k.lower(): v for k, v in self.headers.items()},
                    body=body,
                )
                with service._lock:
                    service.requests.append(recorded)
                route = service.routes.get((self.command, self.path))
                if route is None:
                    status, text = 404, "no route"
                elif callable(route):
                    status, text = route(recorded)
                else:
                    status, text = route
                payload = text.encode("utf-8")
                self.send_response(status)
                self.send_header("Content-Type", "text/plain")
                self.send_header("Content-Length", str(len(payload)))
                self.end_headers()
                self.wfile.write(payload)

            do_GET = _handle
            do_POST = _handle

            def log_message(self, format: str, *args: object) -> None:
                return

        self.server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
        self.server.daemon_threads = True
        self._thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self._thread.start()

    @property
    def base_url(self) -> str:
        host, port = self.server.server_address[:2]
        return f"http://{host}:{port}"

    def route(self, method: str, path: str, reply: Route) -> None:
        self.routes[(method, path)] = reply

    def calls(self, path_prefix: str = "") -> List[RecordedRequest]:
        with self._lock:
            return [req for req in self.requests if req.path.startswith(path_prefix)]

    def close(self) -> None:
        self.server.shutdown()
        self.server.server_close()


@pytest.fixture(autouse=True)
def _no_proxy(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("http_proxy", "HTTP_PROXY", "https_proxy", "HTTPS_PROXY", "all_proxy", "ALL_PROXY"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fake_http() -> Iterator[FakeHttpService]:
    service = FakeHttpService()
    try:
        yield service
    finally:
        service.close()


def build_settings(
    app_url: str,
    shield_url: Optional[str] = None,
    *,
    enabled: bool = True,
    webhook_url: Optional[str] = None,
    manual_key: str = "",
    timeout_seconds: float = 5,
) -> warden.Settings:
    base_urls = {warden.Backend.APP: app_url}
    if shield_url is not None:
        base_urls[warden.Backend.SHIELD] = shield_url
    return warden.Settings(
        base_urls=base_urls,
        internal_api_key="internal-secret",
        enabled=enabled,
        timeout_seconds=timeout_seconds,
        alerts=warden.AlertSettings(webhook_url=webhook_url, timeout_ms=2000),
        manual=warden.ManualSettings(enabled=bool(manual_key), key=manual_key),
    )

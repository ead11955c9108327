from __future__ import annotations

import logging
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Callable
from urllib.parse import parse_qs, unquote, urlsplit


def quiet_logger(name: str = "test_buildpublisher") -> logging.Logger:
    logger = logging.getLogger(name)
    logger.handlers.clear()
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    return logger


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def write_project(
    parent_dir: Path,
    name: str,
    *,
    kind: str = "project",
    body: str = "<description>demo</description>",
) -> Path:
    project_dir = parent_dir / name
    project_dir.mkdir(parents=True, exist_ok=True)
    (project_dir / "config.xml").write_text(
        f"<?xml version='1.0' encoding='utf-8'?>\n<{kind}>{body}</{kind}>",
        encoding="utf-8",
    )
    return project_dir


def write_child_project(project_dir: Path, name: str, **kwargs: Any) -> Path:
    return write_project(project_dir / "modules", name, **kwargs)


def write_build(
    project_dir: Path,
    number: int,
    *,
    result: str | None = "SUCCESS",
    files: dict[str, str] | None = None,
) -> Path:
    build_dir = project_dir / "builds" / str(number)
    build_dir.mkdir(parents=True, exist_ok=True)
    result_xml = f"<result>{result}</result>" if result is not None else ""
    (build_dir / "build.xml").write_text(
        f"<?xml version='1.0' encoding='utf-8'?>\n<build><number>{number}</number>{result_xml}</build>",
        encoding="utf-8",
    )
    for relative, content in (files if files is not None else {"log": "build log\n"}).items():
        path = build_dir / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    return build_dir


class FakeRemote:
    """In-process stand-in for a receiving server.

    Projects are keyed by their path segments, e.g. ``("app",)`` or
    ``("app", "core")``.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 0) -> None:
        self.host = host
        self.port = port
        self.projects: dict[tuple[str, ...], bytes] = {}
        self.received: list[dict[str, Any]] = []
        self.requests: list[tuple[str, str]] = []
        self.overrides: dict[tuple[str, str], int] = {}
        self.redirects: dict[str, str] = {}
        self.confirm_receipt = True
        self.receipt_override: str | None = None
        self.credentials: list[dict[str, list[str]]] = []
        self._lock = threading.Lock()
        self._httpd: ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def url(self) -> str:
        assert self._httpd is not None
        host, port = self._httpd.server_address[:2]
        return f"http://{host}:{port}/"

    def start(self) -> str:
        self._httpd = ThreadingHTTPServer((self.host, self.port), self._build_handler())
        self._httpd.daemon_threads = True
        self._thread = threading.Thread(target=self._httpd.serve_forever, daemon=True)
        self._thread.start()
        return self.url

    def stop(self) -> None:
        if self._httpd is not None:
            self._httpd.shutdown()
            self._httpd.server_close()
        if self._thread is not None:
            self._thread.join(timeout=2.0)
        self._httpd = None
        self._thread = None

    def paths_requested(self, method: str | None = None) -> list[str]:
        with self._lock:
            return [path for seen_method, path in self.requests if method is None or seen_method == method]

    def _build_handler(self):
        remote = self

        class _Handler(BaseHTTPRequestHandler):
            def _reply(self, status: int, headers: dict[str, str] | None = None) -> None:
                self.send_response(status)
                for name, value in (headers or {}).items():
                    self.send_header(name, value)
                body = f"status {status}".encode("utf-8")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def _body(self) -> bytes:
                length = int(self.headers.get("Content-Length", "0") or 0)
                return self.rfile.read(length) if length else b""

            def _route(self, method: str) -> None:
                parts = urlsplit(self.path)
                body = self._body() if method == "POST" else b""
                with remote._lock:
                    remote.requests.append((method, parts.path))
                    override = remote.overrides.get((method, parts.path))
                    redirect = remote.redirects.get(parts.path)
                if override is not None:
                    self._reply(override)
                    return
                if redirect is not None:
                    self._reply(302, {"Location": redirect})
                    return
                query = parse_qs(parts.query)
                segments = [unquote(segment) for segment in parts.path.strip("/").split("/") if segment]
                received_headers = {name.lower(): value for name, value in self.headers.items()}
                with remote._lock:
                    status, headers = remote._dispatch(method, segments, query, body, received_headers)
                self._reply(status, headers)

            def do_GET(self) -> None:  # noqa: N802
                self._route("GET")

            def do_POST(self) -> None:  # noqa: N802
                self._route("POST")

            def log_message(self, format: str, *args: Any) -> None:  # noqa: A003
                del format, args

        return _Handler

    def _dispatch(
        self,
        method: str,
        segments: list[str],
        query: dict[str, list[str]],
        body: bytes,
        headers: dict[str, str],
    ) -> tuple[int, dict[str, str]]:
        if not segments:
            return 200, {}
        if segments == ["loginEntry"]:
            return 200, {}
        if segments == ["j_security_check"] and method == "POST":
            self.credentials.append(parse_qs(body.decode("utf-8")))
            return 302, {"Location": "/", "Set-Cookie": "session=ok; Path=/"}
        if segments == ["createItem"] and method == "POST":
            name = query.get("name", [""])[0]
            if not name or (name,) in self.projects:
                return 400, {}
            self.projects[(name,)] = body
            return 200, {}
        if segments[0] != "job" or len(segments) < 2:
            return 404, {}
        action = segments[-1]
        if action in {"config-accept", "module-accept", "build-accept"}:
            key = tuple(segments[1:-1])
            if method != "POST" or key not in self.projects:
                return 404, {}
            if action == "config-accept":
                self.projects[key] = body
                return 200, {}
            if action == "module-accept":
                self.projects[key + (query.get("name", [""])[0],)] = body
                return 200, {}
            self.received.append({"project": key, "headers": headers, "body": body})
            if not self.confirm_receipt:
                return 200, {}
            return 200, {"X-Build-Received": self.receipt_override or key[-1]}
        key = tuple(segments[1:])
        return (200, {}) if key in self.projects else (404, {})

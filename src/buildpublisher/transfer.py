from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable
from urllib.parse import urljoin

import requests

from .catalog import Build, Project
from .config import TargetConfig
from .utils import join_url, quote_segment

RECEIPT_HEADER = "X-Build-Received"
TIMEZONE_HEADER = "X-Build-Timezone"
BUILD_ID_HEADER = "X-Build-Id"
TAR_CONTENT_TYPE = "application/x-tar"
XML_CONTENT_TYPE = "text/xml; charset=utf-8"


class PublishError(RuntimeError):
    """Retryable publishing failure."""


class TransportFailure(PublishError):
    pass


class TransferAborted(PublishError):
    pass


@dataclass(slots=True)
class FailedRequest:
    method: str
    url: str
    status_code: int | None = None
    reason: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""

    @classmethod
    def from_response(cls, method: str, response: requests.Response) -> FailedRequest:
        return cls(
            method=method,
            url=response.url,
            status_code=response.status_code,
            reason=response.reason or "",
            headers=dict(response.headers),
            body=response.text,
        )

    def diagnostics(self) -> str:
        lines = [f"{self.method} {self.url}"]
        if self.status_code is not None:
            lines.append(f"HTTP {self.status_code} {self.reason}".rstrip())
        lines.extend(f"{name}: {value}" for name, value in self.headers.items())
        if self.body:
            lines.extend(["", self.body])
        return "\n".join(lines)


class ServerFailure(PublishError):
    """The remote answered, but not with what we needed."""

    def __init__(self, message: str, failed_request: FailedRequest | None = None) -> None:
        super().__init__(message)
        self.failed_request = failed_request


@dataclass(slots=True)
class TransferRequest:
    method: str
    url: str
    data: bytes | dict[str, str] | None = None
    body_path: Path | None = None
    headers: dict[str, str] = field(default_factory=dict)

    def redirected(self, location: str) -> TransferRequest:
        return replace(self, url=urljoin(self.url, location))


def job_url(base_url: str, project: Project) -> str:
    segments = ["job", *(quote_segment(segment) for segment in project.path_segments)]
    return join_url(base_url, *segments)


class TransferClient:
    def __init__(
        self,
        target: TargetConfig,
        *,
        timeout_seconds: float = 60,
        max_redirects: int = 10,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ) -> None:
        self.target = target
        self.timeout_seconds = timeout_seconds
        self.max_redirects = max_redirects
        self.session = session_factory()
        self.abort_event = threading.Event()

    @property
    def aborted(self) -> bool:
        return self.abort_event.is_set()

    def reset_abort(self) -> None:
        self.abort_event.clear()

    def abort(self) -> None:
        self.abort_event.set()
        self.session.close()

    def close(self) -> None:
        self.session.close()

    def _send(self, request: TransferRequest) -> requests.Response:
        if self.aborted:
            raise TransferAborted(f"{request.method} {request.url}: transfer aborted")
        kwargs: dict[str, Any] = {
            "headers": request.headers,
            "timeout": (10, self.timeout_seconds),
            "allow_redirects": False,
        }
        try:
            if request.body_path is not None:
                with request.body_path.open("rb") as body:
                    return self.session.request(request.method, request.url, data=body, **kwargs)
            return self.session.request(request.method, request.url, data=request.data, **kwargs)
        except (requests.RequestException, OSError) as exc:
            if self.aborted:
                raise TransferAborted(f"{request.method} {request.url}: transfer aborted") from exc
            raise TransportFailure(f"{request.method} {request.url}: {exc}") from exc

    def _follow_redirects(
        self,
        request: TransferRequest,
        *,
        hops: int = 0,
        raise_for_status: bool = True,
    ) -> requests.Response:
        response = self._send(request)
        try:
            status = response.status_code
            if 300 <= status < 400:
                location = response.headers.get("Location")
                if location:
                    if hops >= self.max_redirects:
                        raise ServerFailure(
                            f"{request.url}: more than {self.max_redirects} redirects",
                            FailedRequest.from_response(request.method, response),
                        )
                    return self._follow_redirects(
                        request.redirected(location),
                        hops=hops + 1,
                        raise_for_status=raise_for_status,
                    )
            if status >= 300 and raise_for_status:
                raise ServerFailure(
                    f"{request.url} responded with status {status}",
                    FailedRequest.from_response(request.method, response),
                )
            # Read the body before the connection goes back to the pool.
            _ = response.content
            return response
        except requests.RequestException as exc:
            if self.aborted:
                raise TransferAborted(f"{request.method} {request.url}: transfer aborted") from exc
            raise TransportFailure(f"{request.method} {request.url}: {exc}") from exc
        finally:
            response.close()

    def _login(self) -> None:
        # Emulates the interactive form login; some containers treat BASIC
        # auth differently from a browser session.
        base = self.target.base_url
        self._follow_redirects(TransferRequest("GET", join_url(base, "loginEntry")))
        self._follow_redirects(
            TransferRequest(
                "POST",
                join_url(base, "j_security_check"),
                data={
                    "j_username": self.target.login or "",
                    "j_password": self.target.password or "",
                    "action": "login",
                },
            )
        )

    def execute(self, request: TransferRequest, *, raise_for_status: bool = True) -> requests.Response:
        """Run ``request`` after an optional login, following redirects."""
        self.session.cookies.clear()
        if self.target.requires_authentication:
            self._login()
        return self._follow_redirects(request, raise_for_status=raise_for_status)

    def probe(self, url: str) -> int:
        return self.execute(TransferRequest("GET", url), raise_for_status=False).status_code

    def post_xml(self, url: str, payload: bytes | None) -> requests.Response:
        headers = {"Content-Type": XML_CONTENT_TYPE} if payload is not None else {}
        return self.execute(TransferRequest("POST", url, data=payload, headers=headers))

    def send_build(self, build: Build, archive_path: Path, *, timezone: str | None = None) -> requests.Response:
        url = join_url(job_url(self.target.base_url, build.project), "build-accept")
        headers = {"Content-Type": TAR_CONTENT_TYPE, BUILD_ID_HEADER: build.build_id}
        if timezone:
            headers[TIMEZONE_HEADER] = timezone
        response = self.execute(TransferRequest("POST", url, body_path=archive_path, headers=headers))
        received = response.headers.get(RECEIPT_HEADER)
        if received is None or received.strip() != build.project.name:
            raise ServerFailure(
                "Remote instance didn't confirm receiving this build",
                FailedRequest.from_response("POST", response),
            )
        return response

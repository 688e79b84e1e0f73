"""HTTP health checking of running apps."""

from __future__ import annotations

import http.client
import logging
import queue
import threading
import urllib.request
from dataclasses import dataclass, field
from enum import Enum
from urllib.error import HTTPError
from urllib.parse import urlsplit

from humrun.recovery import recover

_log = logging.getLogger(__name__)

_REQUEST_TIMEOUT = 5.0
_MIN_INTERVAL = 1.0
_FALLBACK_INTERVAL = 5.0
_CHANGE_BUFFER = 64
_LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})


class HealthURLError(ValueError):
    """Raised when a health check URL is malformed or not a loopback http(s) URL."""


class Status(str, Enum):
    """Health status of an app."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class StatusChange:
    """A transition of an app's health status."""

    app_name: str
    old_status: Status
    new_status: Status


def validate_health_url(raw_url: str) -> str:
    """Check that raw_url uses http or https and points to a loopback host; return the host.

    Restricting checks to loopback keeps a hostile config from probing the network.
    """
    try:
        parts = urlsplit(raw_url)
        host = parts.hostname or ""
    except ValueError as exc:
        raise HealthURLError(f"invalid health check URL: {exc}") from exc
    if parts.scheme not in ("http", "https"):
        raise HealthURLError(
            f'health check URL must use http or https scheme, got "{parts.scheme}"'
        )
    if host not in _LOOPBACK_HOSTS:
        raise HealthURLError(f'health check URL must point to localhost, got "{host}"')
    return host


class _NoRedirect(urllib.request.HTTPRedirectHandler):
    """Report redirects as they are instead of following them."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):  # noqa: ANN001
        return None


@dataclass
class _AppCheck:
    url: str
    interval: float
    status: Status = Status.UNKNOWN
    stop: threading.Event = field(default_factory=threading.Event)


class HealthChecker:
    """Polls registered apps' health URLs in background threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._apps: dict[str, _AppCheck] = {}
        self._changes: queue.Queue[StatusChange] = queue.Queue(maxsize=_CHANGE_BUFFER)
        self._opener = urllib.request.build_opener(
            urllib.request.ProxyHandler({}), _NoRedirect()
        )

    def register(self, app_name: str, raw_url: str, interval_ms: int) -> None:
        """Start checking app_name at raw_url, replacing any earlier check for it.

        Intervals under one second fall back to five seconds.
        """
        validate_health_url(raw_url)
        interval = interval_ms / 1000
        if interval < _MIN_INTERVAL:
            interval = _FALLBACK_INTERVAL
        check = _AppCheck(url=raw_url, interval=interval)
        with self._lock:
            existing = self._apps.get(app_name)
            if existing is not None:
                existing.stop.set()
            self._apps[app_name] = check
        threading.Thread(
            target=self._poll,
            args=(app_name, check),
            name=f"health-{app_name}",
            daemon=True,
        ).start()

    def unregister(self, app_name: str) -> None:
        """Stop checking app_name."""
        with self._lock:
            check = self._apps.pop(app_name, None)
        if check is not None:
            check.stop.set()

    def get_status(self, app_name: str) -> Status:
        """Return the latest status of app_name, or UNKNOWN if it is not checked."""
        with self._lock:
            check = self._apps.get(app_name)
            return check.status if check is not None else Status.UNKNOWN

    def has_check(self, app_name: str) -> bool:
        """Return True if app_name has a health check registered."""
        with self._lock:
            return app_name in self._apps

    def stop_all(self) -> None:
        """Stop every health check."""
        with self._lock:
            checks = list(self._apps.values())
            self._apps.clear()
        for check in checks:
            check.stop.set()

    def next_change(self, timeout: float | None = None) -> StatusChange | None:
        """Wait for the next status change; return None if the timeout passes first."""
        try:
            return self._changes.get(timeout=timeout)
        except queue.Empty:
            return None

    def _poll(self, app_name: str, check: _AppCheck) -> None:
        with recover("health poll"):
            self._check(app_name, check)
            while not check.stop.wait(check.interval):
                self._check(app_name, check)

    def _probe(self, url: str) -> Status:
        try:
            with self._opener.open(url, timeout=_REQUEST_TIMEOUT) as response:
                code = response.status
        except HTTPError as err:
            code = err.code
            err.close()
        except (OSError, ValueError, http.client.HTTPException):
            return Status.UNHEALTHY
        return Status.HEALTHY if 200 <= code < 400 else Status.UNHEALTHY

    def _check(self, app_name: str, check: _AppCheck) -> None:
        new_status = self._probe(check.url)
        with self._lock:
            old_status = check.status
            check.status = new_status
        if old_status == new_status:
            return
        try:
            self._changes.put_nowait(StatusChange(app_name, old_status, new_status))
        except queue.Full:
            _log.warning("health: status update dropped for %s (queue full)", app_name)
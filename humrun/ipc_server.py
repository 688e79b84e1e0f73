"""Unix-socket IPC server through which CLI commands talk to a running instance."""

from __future__ import annotations

import contextlib
import hashlib
import json
import os
import queue
import socket
import tempfile
import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from humrun.recovery import recover

_REQUEST_BUFFER = 16
MAX_MESSAGE_SIZE = 64 * 1024
_READ_TIMEOUT = 5.0
_ENQUEUE_TIMEOUT = 5.0
_RESPONSE_TIMEOUT = 10.0
_LIVENESS_TIMEOUT = 2.0
_POLL_INTERVAL = 0.1


class IPCError(Exception):
    """Raised when the IPC server cannot start or a client exchange fails."""


def _typed(data: dict, key: str, kind: type, default: Any) -> Any:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise ValueError(f'"{key}" has the wrong type')
    return value


def _load_object(text: str | bytes) -> dict:
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("message must be a JSON object")
    return data


@dataclass
class Request:
    """A request sent by a client."""

    action: str = ""
    app: Any = None
    cwd: str = ""
    auto_start: bool = False
    message: str = ""
    target: str = ""

    def to_json(self) -> str:
        """Return the compact JSON form, leaving out empty fields."""
        out: dict[str, Any] = {"action": self.action}
        if self.app is not None:
            out["app"] = self.app
        if self.cwd:
            out["cwd"] = self.cwd
        if self.auto_start:
            out["autoStart"] = True
        if self.message:
            out["message"] = self.message
        if self.target:
            out["target"] = self.target
        return json.dumps(out, separators=(",", ":"))

    @classmethod
    def from_json(cls, text: str | bytes) -> Request:
        """Parse a request; raises ValueError on malformed or wrongly typed JSON."""
        data = _load_object(text)
        return cls(
            action=_typed(data, "action", str, ""),
            app=data.get("app"),
            cwd=_typed(data, "cwd", str, ""),
            auto_start=_typed(data, "autoStart", bool, False),
            message=_typed(data, "message", str, ""),
            target=_typed(data, "target", str, ""),
        )


@dataclass
class Response:
    """A response sent back to a client."""

    ok: bool = False
    error: str = ""
    name: str = ""
    message: str = ""
    pid: int = 0
    project: str = ""
    apps: Any = None

    def to_json(self) -> str:
        """Return the compact JSON form, leaving out empty fields other than ok."""
        out: dict[str, Any] = {"ok": self.ok}
        for key in ("error", "name", "message"):
            if getattr(self, key):
                out[key] = getattr(self, key)
        if self.pid:
            out["pid"] = self.pid
        if self.project:
            out["project"] = self.project
        if self.apps is not None:
            out["apps"] = self.apps
        return json.dumps(out, separators=(",", ":"))

    @classmethod
    def from_json(cls, text: str | bytes) -> Response:
        """Parse a response; raises ValueError on malformed or wrongly typed JSON."""
        data = _load_object(text)
        return cls(
            ok=_typed(data, "ok", bool, False),
            error=_typed(data, "error", str, ""),
            name=_typed(data, "name", str, ""),
            message=_typed(data, "message", str, ""),
            pid=_typed(data, "pid", int, 0),
            project=_typed(data, "project", str, ""),
            apps=data.get("apps"),
        )


@dataclass
class IPCRequestMsg:
    """A received request waiting for the application to answer it."""

    request: Request
    _responses: queue.Queue = field(
        default_factory=lambda: queue.Queue(maxsize=1), repr=False, compare=False
    )

    def respond(self, response: Response) -> None:
        """Answer the request; a request can be answered only once."""
        try:
            self._responses.put_nowait(response)
        except queue.Full:
            raise IPCError("request already answered") from None

    def _wait(self, timeout: float) -> Response | None:
        try:
            return self._responses.get(timeout=timeout)
        except queue.Empty:
            return None


def _runtime_dir() -> str:
    base = os.environ.get("XDG_RUNTIME_DIR")
    if base:
        return os.path.join(base, "humrun")
    return os.path.join(tempfile.gettempdir(), f"humrun-{os.getuid()}")


def socket_dir() -> str:
    """Return the user-private directory holding IPC sockets."""
    return os.path.join(_runtime_dir(), "sockets")


def _ensure_private_dir(path: str) -> None:
    for directory in (os.path.dirname(path), path):
        try:
            os.makedirs(directory, mode=0o700, exist_ok=True)
            if os.stat(directory).st_uid != os.getuid():
                raise IPCError(f"{directory} is not owned by the current user")
            os.chmod(directory, 0o700)
        except OSError as exc:
            raise IPCError(f"could not prepare {directory}: {exc}") from exc


def socket_path(project_root: str | os.PathLike[str]) -> str:
    """Return the socket path for a project root, derived from a hash of the root."""
    digest = hashlib.sha256(os.fsencode(project_root)).hexdigest()[:16]
    return os.path.join(socket_dir(), f"humrun-{digest}.sock")


def cleanup(project_root: str | os.PathLike[str]) -> None:
    """Remove the socket file for a project root, if there is one."""
    with contextlib.suppress(OSError):
        os.remove(socket_path(project_root))


def _is_live(path: str) -> bool:
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as probe:
        probe.settimeout(_LIVENESS_TIMEOUT)
        try:
            probe.connect(path)
        except OSError:
            return False
    return True


class IPCServer:
    """Listens on a Unix socket and hands each request to whoever iterates requests()."""

    def __init__(self, project_root: str | os.PathLike[str]) -> None:
        self.path = socket_path(project_root)
        _ensure_private_dir(socket_dir())

        if os.path.exists(self.path):
            if _is_live(self.path):
                raise IPCError("another humrun instance is running for this project")
            with contextlib.suppress(FileNotFoundError):
                os.remove(self.path)

        listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            listener.bind(self.path)
            listener.listen()
        except OSError:
            listener.close()
            raise
        try:
            os.chmod(self.path, 0o600)
        except OSError as exc:
            listener.close()
            with contextlib.suppress(OSError):
                os.remove(self.path)
            raise IPCError(f"setting socket permissions: {exc}") from exc
        listener.settimeout(_POLL_INTERVAL)

        self._listener = listener
        self._requests: queue.Queue[IPCRequestMsg] = queue.Queue(maxsize=_REQUEST_BUFFER)
        self._stopped = threading.Event()
        self._state_lock = threading.Lock()
        self._accept_thread: threading.Thread | None = None

    def start(self) -> None:
        """Begin accepting connections in the background."""
        with self._state_lock:
            if self._accept_thread is not None or self._stopped.is_set():
                return
            self._accept_thread = threading.Thread(
                target=self._accept_loop, name="ipc-accept", daemon=True
            )
            self._accept_thread.start()

    def stop(self) -> None:
        """Close the server and remove its socket file. Safe to call more than once."""
        with self._state_lock:
            if self._stopped.is_set():
                return
            self._stopped.set()
            thread = self._accept_thread
        if thread is not None:
            thread.join(timeout=2)
        self._listener.close()
        with contextlib.suppress(OSError):
            os.remove(self.path)

    def requests(self) -> Iterator[IPCRequestMsg]:
        """Yield incoming requests until the server is stopped and none are left."""
        while True:
            try:
                msg = self._requests.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if self._stopped.is_set():
                    return
                continue
            yield msg

    def __enter__(self) -> IPCServer:
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()

    def _accept_loop(self) -> None:
        with recover("ipc accept loop"):
            while not self._stopped.is_set():
                try:
                    conn, _ = self._listener.accept()
                except socket.timeout:
                    continue
                except OSError:
                    if self._stopped.is_set():
                        return
                    continue
                threading.Thread(
                    target=self._handle_connection, args=(conn,), daemon=True
                ).start()

    @staticmethod
    def _read_line(conn: socket.socket) -> bytes | None:
        with conn.makefile("rb") as reader:
            try:
                line = reader.readline(MAX_MESSAGE_SIZE + 1)
            except OSError:
                return None
        if not line or len(line) > MAX_MESSAGE_SIZE:
            return None
        return line.rstrip(b"\n").removesuffix(b"\r")

    @staticmethod
    def _reply(conn: socket.socket, response: Response) -> None:
        with contextlib.suppress(OSError):
            conn.sendall((response.to_json() + "\n").encode("utf-8"))

    def _handle_connection(self, conn: socket.socket) -> None:
        with recover("ipc connection handler"), conn:
            conn.settimeout(_READ_TIMEOUT)
            line = self._read_line(conn)
            if line is None:
                return
            try:
                request = Request.from_json(line)
            except ValueError:
                self._reply(conn, Response(ok=False, error="Invalid JSON"))
                return

            msg = IPCRequestMsg(request)
            try:
                self._requests.put(msg, timeout=_ENQUEUE_TIMEOUT)
            except queue.Full:
                self._reply(conn, Response(ok=False, error="Request timeout"))
                return

            response = msg._wait(_RESPONSE_TIMEOUT)
            if response is None:
                response = Response(ok=False, error="Response timeout")
            self._reply(conn, response)
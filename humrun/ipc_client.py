"""Client for talking to a running instance over its IPC socket."""

from __future__ import annotations

import os
import socket
from typing import Any

from humrun.config import App
from humrun.ipc_server import IPCError, Request, Response, socket_path

_CONNECT_TIMEOUT = 5.0
_EXCHANGE_TIMEOUT = 10.0


class IPCClient:
    """Sends one request per connection to the instance serving a project root."""

    def __init__(self, project_root: str | os.PathLike[str]) -> None:
        self.socket_path = socket_path(project_root)

    def send(self, request: Request) -> Response:
        """Send request and return the server's response."""
        conn = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            conn.settimeout(_CONNECT_TIMEOUT)
            conn.connect(self.socket_path)
        except OSError as exc:
            conn.close()
            raise IPCError(f"could not connect to humrun: {exc}") from exc

        with conn:
            conn.settimeout(_EXCHANGE_TIMEOUT)
            conn.sendall((request.to_json() + "\n").encode("utf-8"))
            with conn.makefile("rb") as reader:
                line = reader.readline()
        if not line:
            raise IPCError("no response from server")
        try:
            return Response.from_json(line.rstrip(b"\n").removesuffix(b"\r"))
        except ValueError as exc:
            raise IPCError(f"invalid response: {exc}") from exc

    def ping(self) -> Response:
        """Check that the instance is running."""
        return self.send(Request(action="ping"))

    def status(self) -> Response:
        """Return the status of all apps."""
        return self.send(Request(action="status"))

    def add_app(self, app: App | Any, cwd: str, auto_start: bool) -> Response:
        """Add an app, given as an App or its JSON form, to the running instance."""
        payload = app.to_dict() if isinstance(app, App) else app
        return self.send(
            Request(action="add-app", app=payload, cwd=cwd, auto_start=auto_start)
        )

    def stats(self) -> Response:
        """Return resource statistics for all apps."""
        return self.send(Request(action="stats"))

    def build_error(self, message: str) -> Response:
        """Report a build error to the running instance."""
        return self.send(Request(action="build-error", message=message))

    def start_app(self, name: str) -> Response:
        """Start the named app, or "all"."""
        return self.send(Request(action="start", target=name))

    def stop_app(self, name: str) -> Response:
        """Stop the named app, or "all"."""
        return self.send(Request(action="stop", target=name))

    def restart_app(self, name: str) -> Response:
        """Restart the named app, or "all"."""
        return self.send(Request(action="restart", target=name))
import json
import os
import re
import shutil
import socket
import stat
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from humrun.ipc_server import (
    MAX_MESSAGE_SIZE,
    IPCError,
    IPCRequestMsg,
    IPCServer,
    Request,
    Response,
    cleanup,
    socket_dir,
    socket_path,
)


@pytest.fixture
def runtime_dir(monkeypatch):
    base = tempfile.mkdtemp(prefix="hr", dir="/tmp" if os.path.isdir("/tmp") else None)
    monkeypatch.setenv("XDG_RUNTIME_DIR", base)
    yield base
    shutil.rmtree(base, ignore_errors=True)


@pytest.fixture
def project(runtime_dir, tmp_path):
    root = tmp_path / "test-project"
    root.mkdir()
    return str(root)


@pytest.fixture
def running(project):
    received = []
    server = IPCServer(project)
    server.start()

    def dispatch():
        for msg in server.requests():
            received.append(msg.request)
            msg.respond(Response(ok=True, pid=os.getpid(), project=project))

    thread = threading.Thread(target=dispatch, daemon=True)
    thread.start()
    yield server, received
    server.stop()
    thread.join(2)


def _exchange(path, payload):
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.settimeout(5)
        sock.connect(path)
        sock.sendall(payload)
        with sock.makefile("rb") as reader:
            return reader.readline()


def test_ping_roundtrip(running, project):
    server, received = running
    line = _exchange(server.path, (Request(action="ping").to_json() + "\n").encode())
    response = Response.from_json(line)
    assert response.ok is True
    assert response.pid == os.getpid()
    assert response.project == project
    assert [r.action for r in received] == ["ping"]


def test_invalid_json_request(running):
    server, received = running
    response = Response.from_json(_exchange(server.path, b"not valid json\n"))
    assert response.ok is False
    assert response.error == "Invalid JSON"
    assert received == []


def test_oversized_message_rejected(running):
    server, received = running
    payload = b"x" * (MAX_MESSAGE_SIZE + 1024) + b"\n"
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.settimeout(5)
        sock.connect(server.path)
        try:
            sock.sendall(payload)
        except (BrokenPipeError, ConnectionResetError):
            pass
        try:
            data = sock.recv(4096)
        except ConnectionResetError:
            data = b""
    assert data == b""
    assert received == []


def test_concurrent_clients(running):
    server, _ = running
    payload = (Request(action="ping").to_json() + "\n").encode()
    with ThreadPoolExecutor(max_workers=10) as pool:
        lines = list(pool.map(lambda _: _exchange(server.path, payload), range(10)))
    assert [Response.from_json(line).ok for line in lines] == [True] * 10


def test_socket_permissions(project):
    with IPCServer(project) as server:
        assert stat.S_IMODE(os.stat(server.path).st_mode) == 0o600


def test_socket_dir_private(project):
    with IPCServer(project) as server:
        mode = stat.S_IMODE(os.stat(os.path.dirname(server.path)).st_mode)
        assert mode & 0o077 == 0


def test_stale_socket_cleanup(project):
    path = socket_path(project)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as handle:
        handle.write(b"stale")
    with IPCServer(project) as server:
        assert server.path == path
        assert stat.S_ISSOCK(os.stat(server.path).st_mode)


def test_second_instance_refused(project):
    with IPCServer(project):
        with pytest.raises(IPCError, match="another humrun instance"):
            IPCServer(project)


def test_stop_removes_socket_and_is_idempotent(project):
    server = IPCServer(project)
    server.start()
    server.stop()
    server.stop()
    assert os.path.exists(server.path) is False


def test_requests_end_after_stop(project):
    server = IPCServer(project)
    server.stop()
    assert list(server.requests()) == []


def test_context_manager_cleans_up(project):
    with IPCServer(project) as server:
        assert os.path.exists(server.path) is True
    assert os.path.exists(server.path) is False


def test_cleanup_removes_socket(project):
    server = IPCServer(project)
    try:
        cleanup(project)
        assert os.path.exists(server.path) is False
    finally:
        server.stop()


def test_socket_path_deterministic(runtime_dir):
    first = socket_path("/some/project")
    assert first == socket_path("/some/project")
    assert first != socket_path("/other/project")
    assert re.fullmatch(r"humrun-[0-9a-f]{16}\.sock", os.path.basename(first))


def test_socket_path_traversal_stays_in_dir(runtime_dir):
    traversal = socket_path("/some/../etc/passwd")
    plain = socket_path("/some/project")
    assert os.path.isabs(traversal)
    assert os.path.dirname(traversal) == socket_dir()
    assert os.path.dirname(plain) == socket_dir()
    assert traversal != plain


def test_socket_dir_under_runtime_dir(runtime_dir):
    assert socket_dir() == os.path.join(runtime_dir, "humrun", "sockets")


def test_request_json_roundtrip():
    request = Request(
        action="add-app", app={"name": "x"}, cwd="/work", auto_start=True, target="all"
    )
    assert Request.from_json(request.to_json()) == request


def test_request_json_omits_empty_fields():
    assert json.loads(Request(action="ping").to_json()) == {"action": "ping"}


def test_response_json_omits_empty_fields():
    assert json.loads(Response(ok=False).to_json()) == {"ok": False}


def test_response_json_roundtrip():
    response = Response(ok=True, name="web", pid=42, apps=[{"name": "web"}])
    assert Response.from_json(response.to_json()) == response


@pytest.mark.parametrize("text", ['{"ok":"yes"}', "[1, 2]", '{"pid": true}'])
def test_response_rejects_bad_json(text):
    with pytest.raises(ValueError):
        Response.from_json(text)


def test_request_answered_only_once():
    msg = IPCRequestMsg(Request(action="ping"))
    msg.respond(Response(ok=True))
    with pytest.raises(IPCError):
        msg.respond(Response(ok=True))
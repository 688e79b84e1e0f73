"""Detection of runnable dev-server apps from package.json files."""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path

_EXCLUDE_PATTERNS = (
    re.compile(r"\btsc\b.*--watch"),
    re.compile(r"\btsup\b.*--watch"),
)

_SERVER_NEXT = re.compile(r"\bnext\b")
_SERVER_VITE = re.compile(r"\bvite\b")
_SERVER_WRANGLER = re.compile(r"\bwrangler\b")
_SERVER_EXPO = re.compile(r"\bexpo\b")

_SERVER_PATTERNS = (
    _SERVER_NEXT,
    _SERVER_VITE,
    _SERVER_WRANGLER,
    _SERVER_EXPO,
    re.compile(r"\bnodemon\b"),
    re.compile(r"\btsx\s+watch\b"),
    re.compile(r"\bPORT="),
    re.compile(r"--port\b"),
    re.compile(r"-p\s+\d+"),
    re.compile(r"\bnode\s+\S"),
    re.compile(r"\bts-node\b"),
    re.compile(r"\bremix\b"),
    re.compile(r"\bnuxt\b"),
    re.compile(r"\bastro\b"),
    re.compile(r"\bsvelte-kit\b|@sveltejs/kit"),
    re.compile(r"\bserve\b|http-server"),
    re.compile(r"\bhono\b"),
    re.compile(r"\bfastify\b"),
)

_PORT_ENV = re.compile(r"PORT=(\d+)")
_PORT_FLAG = re.compile(r"(?:-p\s+|--port\s+)(\d+)")
_PORT_CONFIG = re.compile(r"port\s*:\s*(\d+)")
_PORT_TOML = re.compile(r"port\s*=\s*(\d+)")

_FRAMEWORK_DEFAULT_PORTS = (
    (_SERVER_NEXT, 3000),
    (_SERVER_VITE, 5173),
    (_SERVER_WRANGLER, 8787),
    (_SERVER_EXPO, 8081),
)

SCAN_SKIP_DIRS = frozenset(
    {
        "node_modules",
        ".git",
        ".next",
        "dist",
        "build",
        ".turbo",
        "_archive",
        "clones",
        "starters",
        "archive",
    }
)

_MAX_SCAN_DEPTH = 5


@dataclass
class ScanCandidate:
    """A detected app that could be registered."""

    name: str
    dir: str
    command: str
    ports: list[int] = field(default_factory=list)
    dev_script: str = ""


@dataclass
class _PackageJSON:
    name: str = ""
    package_manager: str = ""
    scripts: dict[str, str] = field(default_factory=dict)

    @classmethod
    def parse(cls, raw: bytes) -> _PackageJSON:
        data = json.loads(raw)
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("package.json must hold an object")
        name = data.get("name") or ""
        manager = data.get("packageManager") or ""
        scripts = data.get("scripts") or {}
        if not isinstance(name, str) or not isinstance(manager, str):
            raise ValueError("package.json fields have the wrong type")
        if not isinstance(scripts, dict) or not all(
            isinstance(v, str) for v in scripts.values()
        ):
            raise ValueError('"scripts" must be an object of strings')
        return cls(name=name, package_manager=manager, scripts=dict(scripts))

    @classmethod
    def read(cls, directory: str) -> _PackageJSON:
        return cls.parse(Path(directory, "package.json").read_bytes())


def _walk_for_package_jsons(
    base_dir: str, max_depth: int, depth: int = 0
) -> list[tuple[str, _PackageJSON]]:
    if depth > max_depth:
        return []
    try:
        with os.scandir(base_dir) as it:
            entries = sorted(it, key=lambda e: e.name)
    except OSError:
        return []

    results: list[tuple[str, _PackageJSON]] = []
    try:
        pkg = _PackageJSON.read(base_dir)
    except (OSError, ValueError):
        pkg = None
    if pkg is not None and (pkg.scripts.get("dev") or pkg.scripts.get("start")):
        results.append((base_dir, pkg))

    for entry in entries:
        if not entry.is_dir(follow_symlinks=False) or entry.name in SCAN_SKIP_DIRS:
            continue
        results.extend(
            _walk_for_package_jsons(
                os.path.join(base_dir, entry.name), max_depth, depth + 1
            )
        )
    return results


def _is_monorepo_root(full_path: str) -> bool:
    return any(
        os.path.exists(os.path.join(full_path, marker))
        for marker in ("turbo.json", "pnpm-workspace.yaml")
    )


def _relative_dir(path: str, start: str) -> str:
    try:
        rel = os.path.relpath(path, start)
    except ValueError:
        return "."
    return rel or "."


def detect_apps(
    project_root: str | os.PathLike[str], existing_apps: list | None
) -> list[ScanCandidate]:
    """Scan the project tree for package.json files whose dev or start script runs a server."""
    root = os.fspath(project_root)
    found = _walk_for_package_jsons(root, _MAX_SCAN_DEPTH)

    monorepo_roots = {
        path
        for path, _ in found
        if _is_monorepo_root(path)
        and any(
            other != path and other.startswith(path + os.sep) for other, _ in found
        )
    }

    registered = {
        os.path.normpath(os.path.join(root, app.dir)) for app in existing_apps or ()
    }

    candidates: list[ScanCandidate] = []
    for full_path, pkg in found:
        if full_path in monorepo_roots:
            continue

        script_name = "dev"
        dev_script = pkg.scripts.get("dev", "")
        if not is_server_dev_script(dev_script):
            start_script = pkg.scripts.get("start", "")
            if not is_server_dev_script(start_script):
                continue
            dev_script, script_name = start_script, "start"

        if os.path.normpath(full_path) in registered:
            continue

        try:
            rel_dir = os.path.relpath(full_path, root)
        except ValueError:
            continue
        pm = detect_package_manager(full_path, pkg.package_manager, root)
        candidates.append(
            ScanCandidate(
                name=extract_name(pkg.name, rel_dir),
                dir=rel_dir,
                command=_build_command(pm, script_name),
                ports=detect_ports(dev_script, full_path),
                dev_script=dev_script,
            )
        )
    return candidates


def scan_current_dir(
    directory: str | os.PathLike[str], project_root: str | os.PathLike[str]
) -> ScanCandidate | None:
    """Detect a single app from directory's package.json.

    Returns None when there is neither a dev nor a start script; raises OSError or
    ValueError when package.json is missing or unreadable.
    """
    dir_path = os.fspath(directory)
    pkg = _PackageJSON.read(dir_path)

    script_name = "dev"
    dev_script = pkg.scripts.get("dev", "")
    if not dev_script:
        dev_script, script_name = pkg.scripts.get("start", ""), "start"
    if not dev_script:
        return None

    root = os.fspath(project_root)
    rel_dir = _relative_dir(dir_path, root)
    pm = detect_package_manager(dir_path, pkg.package_manager, root)
    return ScanCandidate(
        name=extract_name(pkg.name, rel_dir),
        dir=rel_dir,
        command=_build_command(pm, script_name),
        ports=detect_ports(dev_script, dir_path),
        dev_script=dev_script,
    )


def is_server_dev_script(dev_script: str) -> bool:
    """Return True if the script looks like it starts a server rather than a watcher."""
    if any(p.search(dev_script) for p in _EXCLUDE_PATTERNS):
        return False
    return any(p.search(dev_script) for p in _SERVER_PATTERNS)


def _parse_port(digits: str) -> list[int]:
    port = int(digits)
    return [port] if 0 < port < 65536 else []


def _port_from_file(path: str, pattern: re.Pattern[str]) -> list[int] | None:
    try:
        text = Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    match = pattern.search(text)
    return _parse_port(match.group(1)) if match else None


def detect_ports(dev_script: str, full_path: str | os.PathLike[str]) -> list[int]:
    """Find the port a script listens on, from the script, config files or framework defaults."""
    for pattern in (_PORT_ENV, _PORT_FLAG):
        match = pattern.search(dev_script)
        if match:
            return _parse_port(match.group(1))

    base = os.fspath(full_path)
    for ext in ("ts", "js", "mjs"):
        ports = _port_from_file(os.path.join(base, f"vite.config.{ext}"), _PORT_CONFIG)
        if ports is not None:
            return ports

    ports = _port_from_file(os.path.join(base, "wrangler.toml"), _PORT_TOML)
    if ports is not None:
        return ports

    for pattern, port in _FRAMEWORK_DEFAULT_PORTS:
        if pattern.search(dev_script):
            return [port]
    return []


def detect_package_manager(
    full_path: str | os.PathLike[str],
    package_manager_field: str,
    project_root: str | os.PathLike[str],
) -> str:
    """Return "pnpm", "yarn" or "npm", from the packageManager field or nearby lock files."""
    for manager in ("pnpm", "yarn", "npm"):
        if package_manager_field and package_manager_field.startswith(manager):
            return manager

    root = os.fspath(project_root)
    current = os.path.normpath(os.fspath(full_path))
    lock_files = (
        ("pnpm-lock.yaml", "pnpm"),
        ("yarn.lock", "yarn"),
        ("package-lock.json", "npm"),
    )
    while True:
        for lock_file, manager in lock_files:
            if os.path.exists(os.path.join(current, lock_file)):
                return manager
        parent = os.path.dirname(current)
        if parent == current or not current.startswith(root):
            break
        current = parent
    return "npm"


def _build_command(pm: str, script_name: str) -> str:
    if pm in ("pnpm", "yarn"):
        return f"{pm} {script_name}"
    if script_name == "start":
        return "npm start"
    return f"npm run {script_name}"


def extract_name(pkg_name: str, rel_dir: str) -> str:
    """Return the package name without its @scope/ prefix, or else the directory's base name."""
    if pkg_name:
        return pkg_name.rsplit("/", 1)[-1]
    cleaned = os.path.normpath(rel_dir) if rel_dir else "."
    return os.path.basename(cleaned.rstrip(os.sep)) or cleaned
"""The apps.json configuration: app entries, validation, loading and saving."""

from __future__ import annotations

import json
import os
import sys
import unicodedata
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

CONFIG_FILE_NAME = "apps.json"


class ConfigError(ValueError):
    """Raised for invalid app entries or an unreadable configuration file."""


@dataclass
class HealthCheckConfig:
    """Optional HTTP health checking for an app; interval is in milliseconds."""

    url: str = ""
    interval: int = 0


@dataclass
class ResourceLimitsConfig:
    """Optional resource thresholds for an app."""

    max_cpu: float = 0.0
    max_memory_mb: int = 0


@dataclass
class WatchConfig:
    """File watching for auto-restart on source changes."""

    paths: list[str] = field(default_factory=list)
    extensions: list[str] = field(default_factory=list)
    ignore: list[str] = field(default_factory=list)


def _contains_control_chars(text: str) -> bool:
    return any(
        ch == "\x1b" or (ch != "\t" and unicodedata.category(ch) == "Cc")
        for ch in text
    )


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _str(data: dict, key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ConfigError(f'"{key}" must be a string')
    return value


def _opt_int(data: dict, key: str) -> int | None:
    value = data.get(key)
    if value is None:
        return None
    if not _is_int(value):
        raise ConfigError(f'"{key}" must be an integer')
    return value


def _opt_bool(data: dict, key: str) -> bool | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, bool):
        raise ConfigError(f'"{key}" must be a boolean')
    return value


def _opt_float(data: dict, key: str) -> float:
    value = data.get(key)
    if value is None:
        return 0.0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f'"{key}" must be a number')
    return float(value)


def _str_list(data: dict, key: str) -> list[str]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f'"{key}" must be an array of strings')
    return list(value)


def _int_list(data: dict, key: str) -> list[int]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(_is_int(v) for v in value):
        raise ConfigError(f'"{key}" must be an array of integers')
    return list(value)


def _str_map(data: dict, key: str) -> dict[str, str]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict) or not all(isinstance(v, str) for v in value.values()):
        raise ConfigError(f'"{key}" must be an object of strings')
    return dict(value)


def _object(data: dict, key: str) -> dict | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f'"{key}" must be an object')
    return value


@dataclass
class App:
    """A single application entry in apps.json."""

    name: str = ""
    dir: str = ""
    command: str = ""
    ports: list[int] = field(default_factory=list)
    project: str = ""
    auto_start: bool = False
    auto_restart: bool | None = None
    restart_delay: int | None = None
    max_restarts: int | None = None
    env: dict[str, str] = field(default_factory=dict)
    vault_env: str = ""
    depends_on: list[str] = field(default_factory=list)
    group: str = ""
    health_check: HealthCheckConfig | None = None
    pinned: bool | None = None
    notifications: bool | None = None
    commands: dict[str, str] = field(default_factory=dict)
    resource_limits: ResourceLimitsConfig | None = None
    watch: WatchConfig | None = None

    def validate(self) -> None:
        """Raise ConfigError if a required field is missing or a value is out of range."""
        if not self.name:
            raise ConfigError('missing or invalid "name"')
        if _contains_control_chars(self.name):
            raise ConfigError('"name" contains control characters or ANSI escapes')
        if not self.dir:
            raise ConfigError('missing or invalid "dir"')
        if not self.command:
            raise ConfigError('missing or invalid "command"')
        if not self.ports or any(p < 1 or p > 65535 for p in self.ports):
            raise ConfigError('"ports" must be a non-empty array of integers 1-65535')
        if self.restart_delay is not None and self.restart_delay < 0:
            raise ConfigError('"restartDelay" must be a non-negative number')
        if self.max_restarts is not None and self.max_restarts < 0:
            raise ConfigError('"maxRestarts" must be a non-negative integer')
        if any(dep == "" for dep in self.depends_on):
            raise ConfigError('"dependsOn" entries must be non-empty strings')
        if self.health_check is not None and not self.health_check.url:
            raise ConfigError(
                '"healthCheck.url" must be non-empty when healthCheck is specified'
            )
        for key, value in self.commands.items():
            if not value:
                raise ConfigError(f'"commands" value for "{key}" must be non-empty')
        if self.resource_limits is not None:
            if self.resource_limits.max_cpu < 0:
                raise ConfigError('"resourceLimits.maxCpu" must be non-negative')
            if self.resource_limits.max_memory_mb < 0:
                raise ConfigError('"resourceLimits.maxMemoryMB" must be non-negative')
        if self.watch is not None:
            for ext in self.watch.extensions:
                if not ext.startswith("."):
                    raise ConfigError(
                        f'"watch.extensions" entries must start with \'.\' (got "{ext}")'
                    )

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form, leaving out optional fields that are unset or empty."""
        out: dict[str, Any] = {
            "name": self.name,
            "dir": self.dir,
            "command": self.command,
            "ports": list(self.ports),
        }
        if self.project:
            out["project"] = self.project
        if self.auto_start:
            out["autoStart"] = True
        if self.auto_restart is not None:
            out["autoRestart"] = self.auto_restart
        if self.restart_delay is not None:
            out["restartDelay"] = self.restart_delay
        if self.max_restarts is not None:
            out["maxRestarts"] = self.max_restarts
        if self.env:
            out["env"] = dict(sorted(self.env.items()))
        if self.vault_env:
            out["vault_env"] = self.vault_env
        if self.depends_on:
            out["dependsOn"] = list(self.depends_on)
        if self.group:
            out["group"] = self.group
        if self.health_check is not None:
            out["healthCheck"] = {
                "url": self.health_check.url,
                "interval": self.health_check.interval,
            }
        if self.pinned is not None:
            out["pinned"] = self.pinned
        if self.notifications is not None:
            out["notifications"] = self.notifications
        if self.commands:
            out["commands"] = dict(sorted(self.commands.items()))
        if self.resource_limits is not None:
            limits: dict[str, Any] = {}
            if self.resource_limits.max_cpu:
                limits["maxCpu"] = self.resource_limits.max_cpu
            if self.resource_limits.max_memory_mb:
                limits["maxMemoryMB"] = self.resource_limits.max_memory_mb
            out["resourceLimits"] = limits
        if self.watch is not None:
            watch: dict[str, Any] = {}
            if self.watch.paths:
                watch["paths"] = list(self.watch.paths)
            if self.watch.extensions:
                watch["extensions"] = list(self.watch.extensions)
            if self.watch.ignore:
                watch["ignore"] = list(self.watch.ignore)
            out["watch"] = watch
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> App:
        """Build an App from its JSON form; raises ConfigError on wrongly typed values."""
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigError("app entry must be an object")

        health = _object(data, "healthCheck")
        limits = _object(data, "resourceLimits")
        watch = _object(data, "watch")
        auto_start = _opt_bool(data, "autoStart")
        interval = None if health is None else _opt_int(health, "interval")
        memory = None if limits is None else _opt_int(limits, "maxMemoryMB")

        return cls(
            name=_str(data, "name"),
            dir=_str(data, "dir"),
            command=_str(data, "command"),
            ports=_int_list(data, "ports"),
            project=_str(data, "project"),
            auto_start=bool(auto_start),
            auto_restart=_opt_bool(data, "autoRestart"),
            restart_delay=_opt_int(data, "restartDelay"),
            max_restarts=_opt_int(data, "maxRestarts"),
            env=_str_map(data, "env"),
            vault_env=_str(data, "vault_env"),
            depends_on=_str_list(data, "dependsOn"),
            group=_str(data, "group"),
            health_check=None
            if health is None
            else HealthCheckConfig(url=_str(health, "url"), interval=interval or 0),
            pinned=_opt_bool(data, "pinned"),
            notifications=_opt_bool(data, "notifications"),
            commands=_str_map(data, "commands"),
            resource_limits=None
            if limits is None
            else ResourceLimitsConfig(
                max_cpu=_opt_float(limits, "maxCpu"), max_memory_mb=memory or 0
            ),
            watch=None
            if watch is None
            else WatchConfig(
                paths=_str_list(watch, "paths"),
                extensions=_str_list(watch, "extensions"),
                ignore=_str_list(watch, "ignore"),
            ),
        )


def config_path(project_root: str | os.PathLike[str]) -> Path:
    """Return the path to apps.json for the given project root."""
    return Path(project_root) / CONFIG_FILE_NAME


def _write_private(path: Path, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)


def _parse_apps(raw: bytes) -> list[App]:
    parsed = json.loads(raw)
    if parsed is None:
        return []
    if not isinstance(parsed, list):
        raise ConfigError("top-level value must be an array")
    return [App.from_dict(entry) for entry in parsed]


def _restore_from_backup(path: Path, err: ValueError) -> list[App]:
    backup = path.with_name(path.name + ".bak")
    try:
        backup_data = backup.read_bytes()
    except OSError:
        raise ConfigError(f"invalid JSON in {path}: {err}") from err
    try:
        apps = _parse_apps(backup_data)
    except ValueError:
        raise ConfigError(f"invalid JSON in {path} (backup also corrupt): {err}") from err
    print(f"warning: {path} was corrupt, restored from backup", file=sys.stderr)
    try:
        _write_private(path, backup_data)
    except OSError:
        pass
    return apps


def load(project_root: str | os.PathLike[str]) -> list[App]:
    """Read apps.json, creating an empty one if missing and restoring from .bak if corrupt.

    Entries that fail validation are skipped with a warning on stderr.
    """
    path = config_path(project_root)
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        try:
            _write_private(path, b"[]\n")
        except OSError as exc:
            raise ConfigError(f"could not create {path}: {exc}") from exc
        return []

    try:
        apps = _parse_apps(raw)
    except ValueError as err:
        apps = _restore_from_backup(path, err)

    valid: list[App] = []
    for app in apps:
        try:
            app.validate()
        except ConfigError as exc:
            print(f'warning: app "{app.name}" failed validation: {exc}', file=sys.stderr)
            continue
        valid.append(app)
    return valid


def save(project_root: str | os.PathLike[str], apps: list[App]) -> None:
    """Write apps to apps.json atomically, keeping the previous file as apps.json.bak."""
    path = config_path(project_root)
    text = json.dumps([app.to_dict() for app in apps], indent=2, ensure_ascii=False)
    data = (text + "\n").encode("utf-8")

    try:
        existing = path.read_bytes()
    except OSError:
        existing = None
    if existing is not None:
        try:
            _write_private(path.with_name(path.name + ".bak"), existing)
        except OSError:
            pass

    tmp = path.with_name(path.name + ".tmp")
    _write_private(tmp, data)
    os.replace(tmp, path)


_SIGNIFICANT_FIELDS = (
    "dir",
    "command",
    "project",
    "auto_start",
    "ports",
    "group",
    "env",
    "vault_env",
    "depends_on",
    "commands",
    "health_check",
    "auto_restart",
    "restart_delay",
    "max_restarts",
    "pinned",
    "notifications",
    "resource_limits",
    "watch",
)


def has_changed(old: App, new: App) -> bool:
    """Return True if two entries differ in any field other than the name."""
    return any(getattr(old, name) != getattr(new, name) for name in _SIGNIFICANT_FIELDS)


def validate_dependencies(apps: list[App]) -> None:
    """Raise ConfigError if an app depends on itself or on an unknown app."""
    names = {app.name for app in apps}
    for app in apps:
        for dep in app.depends_on:
            if dep == app.name:
                raise ConfigError(f'app "{app.name}" depends on itself')
            if dep not in names:
                raise ConfigError(f'app "{app.name}" depends on unknown app "{dep}"')
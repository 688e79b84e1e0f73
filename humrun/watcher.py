"""Watching apps.json for external edits."""

from __future__ import annotations

import os
import queue
import threading
import time

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from humrun.recovery import recover

_DEBOUNCE_SECONDS = 0.1
_IGNORE_WINDOW_SECONDS = 2.0


class _Handler(FileSystemEventHandler):
    def __init__(self, watcher: ConfigWatcher) -> None:
        super().__init__()
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        with recover("config watcher"):
            self._watcher._handle(event)


class ConfigWatcher:
    """Watches a config file and reports debounced changes made by others."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        path = os.fspath(config_path)
        if not os.path.exists(path):
            raise FileNotFoundError(f"no such file: {path}")
        self._path = os.path.realpath(path)
        self._changes: queue.Queue[None] = queue.Queue(maxsize=1)
        self._lock = threading.Lock()
        self._last_write_at: float | None = None
        self._timer: threading.Timer | None = None
        self._stopped = False
        self._started = False
        self._observer = Observer()
        self._observer.schedule(_Handler(self), os.path.dirname(self._path))

    def start(self) -> None:
        """Begin watching in the background."""
        with self._lock:
            if self._started or self._stopped:
                return
            self._started = True
        self._observer.start()

    def stop(self) -> None:
        """Stop watching. Safe to call more than once."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            started = self._started
        if started:
            self._observer.stop()
            self._observer.join()

    def set_ignore_next(self) -> None:
        """Ignore change events for a short window, e.g. around our own writes."""
        with self._lock:
            self._last_write_at = time.monotonic()

    def wait_for_change(self, timeout: float | None = None) -> bool:
        """Block until a change is reported; return False if the timeout passes first."""
        try:
            self._changes.get(timeout=timeout)
        except queue.Empty:
            return False
        return True

    def __enter__(self) -> ConfigWatcher:
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()

    def _concerns_config(self, event: FileSystemEvent) -> bool:
        if event.is_directory:
            return False
        if event.event_type in ("modified", "created"):
            candidate = event.src_path
        elif event.event_type == "moved":
            candidate = event.dest_path
        else:
            return False
        return os.path.realpath(os.fsdecode(candidate)) == self._path

    def _handle(self, event: FileSystemEvent) -> None:
        if not self._concerns_config(event):
            return
        with self._lock:
            if self._stopped:
                return
            if (
                self._last_write_at is not None
                and time.monotonic() - self._last_write_at < _IGNORE_WINDOW_SECONDS
            ):
                return
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(_DEBOUNCE_SECONDS, self._notify)
            self._timer.daemon = True
            self._timer.start()

    def _notify(self) -> None:
        try:
            self._changes.put_nowait(None)
        except queue.Full:
            pass
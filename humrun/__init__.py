"""Configuration, dependency ordering, app detection, config watching, health checks and IPC for local development apps."""

__version__ = "0.1.0"

__all__ = [
    "config",
    "deps",
    "health",
    "ipc_client",
    "ipc_server",
    "recovery",
    "scanner",
    "watcher",
]
# humrun

A library of building blocks for running a set of local development apps
described in an `apps.json` file at the root of a project. It needs a
POSIX system (the IPC layer uses Unix sockets).

## Install

```
pip install humrun
```

For running the tests:

```
pip install "humrun[test]"
pytest
```

## Modules

### `humrun.config`

- `App` is one entry of `apps.json`, a dataclass with `name`, `dir`,
  `command`, `ports` and optional fields such as `depends_on`, `env`,
  `group`, `health_check` (`HealthCheckConfig`), `resource_limits`
  (`ResourceLimitsConfig`) and `watch` (`WatchConfig`).
  `App.validate()` raises `ConfigError` for a missing name, dir or
  command, ports outside 1-65535, a name holding control characters or
  ANSI escapes, negative restart settings, empty dependency or command
  entries, and watch extensions not starting with `.`.
  `App.to_dict()` and `App.from_dict()` convert to and from the JSON form
  (camelCase keys, unset optional fields left out).
- `load(project_root)` reads `apps.json`. A missing file is created as
  `[]`; corrupt JSON is replaced from `apps.json.bak` when that backup
  parses, otherwise `ConfigError` is raised. Entries that fail validation
  are skipped with a warning on stderr.
- `save(project_root, apps)` copies the current file to `apps.json.bak`
  and writes the new one atomically, with mode 0600.
- `config_path`, `has_changed(old, new)` (compares every field but the
  name) and `validate_dependencies(apps)` (rejects self and unknown
  dependencies).

### `humrun.deps`

`topological_sort(apps)` returns apps in start order; dependencies on
apps not in the list are ignored. `dependency_order(apps, target)` returns
the names of the target's transitive dependencies in start order, without
the target. Both raise `DependencyCycleError` on a cycle.

### `humrun.scanner`

`detect_apps(project_root, existing_apps)` walks up to five directory
levels (skipping `node_modules`, `.git`, `dist`, `build` and similar) for
`package.json` files whose `dev` or `start` script looks like a server,
skips monorepo roots (`turbo.json`, `pnpm-workspace.yaml`) that have
child projects and directories already registered, and returns
`ScanCandidate` entries. `scan_current_dir(directory, project_root)`
does the same for one directory, returning `None` when there is no `dev`
or `start` script. The helpers `is_server_dev_script`, `detect_ports`
(script `PORT=`/`-p`/`--port`, `vite.config.*`, `wrangler.toml`, then
framework defaults), `detect_package_manager` and `extract_name` are
public too.

### `humrun.watcher`

`ConfigWatcher(config_path)` reports changes to the file, debounced by
100 ms. `wait_for_change(timeout)` returns `True` on a change and `False`
on timeout. `set_ignore_next()` ignores events for two seconds, for use
around your own writes. It is a context manager that starts and stops
watching.

### `humrun.health`

`HealthChecker.register(app_name, raw_url, interval_ms)` polls the URL in
a background thread (intervals under one second become five seconds).
Responses 200-399 are `Status.HEALTHY`; errors and other codes are
`Status.UNHEALTHY`; redirects are not followed. `next_change(timeout)`
returns the next `StatusChange` or `None`. `get_status`, `has_check`,
`unregister` and `stop_all` manage the checks. `validate_health_url`
raises `HealthURLError` unless the URL is http(s) on `localhost`,
`127.0.0.1` or `::1`.

### `humrun.ipc_server` and `humrun.ipc_client`

Newline-delimited JSON over a Unix socket whose path, from
`socket_path(project_root)`, lies in a user-private directory
(`socket_dir()`). `IPCServer` refuses to start if another live server
holds the socket, removes a stale one, and yields each incoming
`IPCRequestMsg` from `requests()`; answer it with `msg.respond(Response(...))`.
Requests over 64 KiB are dropped; invalid JSON gets an `"Invalid JSON"`
error response, and an unanswered request a `"Response timeout"` after ten
seconds. `IPCClient` offers `send`, `ping`, `status`, `add_app`, `stats`,
`build_error`, `start_app`, `stop_app` and `restart_app`, and raises
`IPCError` when it cannot connect or gets no valid reply.

### `humrun.recovery`

`recover(context)` is a context manager (also usable as a decorator)
that logs an exception and its traceback to stderr instead of letting it
propagate.

## Example

```python
from humrun import config, deps

apps = config.load("/path/to/project")
for app in deps.topological_sort(apps):
    print(app.name, app.command, app.ports)
```

```python
import threading

from humrun.ipc_client import IPCClient
from humrun.ipc_server import IPCServer, Response

with IPCServer("/path/to/project") as server:

    def handle():
        for msg in server.requests():
            if msg.request.action == "ping":
                msg.respond(Response(ok=True, message="pong"))
            else:
                msg.respond(Response(ok=False, error="unknown action"))

    threading.Thread(target=handle, daemon=True).start()

    reply = IPCClient("/path/to/project").ping()
    print(reply.ok, reply.message)
```

## What it does not do

humrun does not start, stop or supervise app processes, and it has no
command-line program or terminal interface. The IPC server only delivers
requests such as `start` or `status` to your code; what they do is up to
the code that answers them.
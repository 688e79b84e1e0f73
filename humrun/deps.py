"""Dependency ordering between apps."""

from __future__ import annotations

from collections import defaultdict, deque

from humrun.config import App


class DependencyCycleError(ValueError):
    """Raised when the dependsOn graph contains a cycle."""


def topological_sort(apps: list[App]) -> list[App]:
    """Return apps in dependency order (Kahn's algorithm); apps with no dependencies first.

    Dependencies naming apps outside the list are ignored.
    """
    by_name = {app.name: app for app in apps}
    in_degree = {app.name: 0 for app in apps}
    dependents: dict[str, list[str]] = defaultdict(list)

    for app in apps:
        for dep in app.depends_on:
            if dep in by_name:
                in_degree[app.name] += 1
                dependents[dep].append(app.name)

    queue = deque(app.name for app in apps if in_degree[app.name] == 0)
    ordered: list[App] = []
    while queue:
        name = queue.popleft()
        ordered.append(by_name[name])
        for dependent in dependents[name]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    if len(ordered) != len(apps):
        raise DependencyCycleError("dependency cycle detected")
    return ordered


def dependency_order(apps: list[App], target: str) -> list[str]:
    """Return the names of all transitive dependencies of target, in start order.

    The target itself is not included unless it lies on a cycle, which raises.
    """
    by_name = {app.name: app for app in apps}

    visited: set[str] = set()
    pending = [target]
    while pending:
        app = by_name.get(pending.pop())
        if app is None:
            continue
        for dep in app.depends_on:
            if dep not in visited:
                visited.add(dep)
                pending.append(dep)

    if not visited:
        return []

    try:
        ordered = topological_sort([app for app in apps if app.name in visited])
    except DependencyCycleError as err:
        raise DependencyCycleError(
            f'dependency cycle detected for "{target}": {err}'
        ) from err
    return [app.name for app in ordered]
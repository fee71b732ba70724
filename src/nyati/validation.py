"""Structural validation of the task list.

Checks required task fields, unique names, that every depends_on entry names
an existing task, and that the dependency graph is acyclic. Passing
validation does not reorder tasks; dependency_order() is only used when the
caller asks for dependency-ordered execution.
"""

import logging
from collections import deque
from typing import Iterable, Sequence

from .exceptions import ConfigError, ErrorTypes
from .types import TaskConfig

logger = logging.getLogger(__name__)


def validate_tasks(tasks: Sequence[TaskConfig]) -> None:
    """Run every task-list check, raising ConfigError on the first failure."""
    check_task_fields(tasks)
    check_dependencies_exist(tasks)
    check_no_cycles(tasks)
    logger.debug(f"Validated {len(tasks)} task(s)")


def check_task_fields(tasks: Sequence[TaskConfig]) -> None:
    """Require name and cmd on every task and reject duplicate names."""
    seen: set[str] = set()
    for index, task in enumerate(tasks):
        if not task.name:
            raise ConfigError(f"task at index {index}: name is required")
        if not task.cmd:
            raise ConfigError(f"task '{task.name}': cmd is required", task=task.name)
        if task.name in seen:
            raise ConfigError(
                f"duplicate task name '{task.name}' at index {index}", task=task.name
            )
        seen.add(task.name)


def check_dependencies_exist(tasks: Sequence[TaskConfig]) -> None:
    """Every depends_on entry must name a task in the list."""
    names = {task.name for task in tasks}
    for index, task in enumerate(tasks):
        for dep in task.depends_on:
            if dep not in names:
                raise ConfigError(
                    f"task '{task.name}' at index {index}: "
                    f"depends_on task '{dep}' does not exist",
                    error_type=ErrorTypes.DEPENDENCY_MISSING,
                    task=task.name,
                )


def find_cycle(tasks: Iterable[TaskConfig]) -> list[str] | None:
    """Return the first dependency cycle found, or None.

    The cycle is returned as the path of task names that closes the loop,
    starting and ending with the same name: ["a", "b", "a"]. A task that
    depends on itself yields ["a", "a"].
    """
    graph = {task.name: list(task.depends_on) for task in tasks}
    visited: set[str] = set()
    on_stack: set[str] = set()
    path: list[str] = []

    def visit(name: str) -> list[str] | None:
        visited.add(name)
        on_stack.add(name)
        path.append(name)

        for dep in graph.get(name, []):
            if dep in on_stack:
                start = path.index(dep)
                return path[start:] + [dep]
            if dep not in visited:
                cycle = visit(dep)
                if cycle:
                    return cycle

        on_stack.discard(name)
        path.pop()
        return None

    for name in graph:
        if name not in visited:
            cycle = visit(name)
            if cycle:
                return cycle
    return None


def check_no_cycles(tasks: Sequence[TaskConfig]) -> None:
    """Reject dependency cycles, reporting the full loop."""
    cycle = find_cycle(tasks)
    if cycle:
        raise ConfigError(
            f"circular dependency detected: {' -> '.join(cycle)}",
            error_type=ErrorTypes.DEPENDENCY_CYCLE,
            task=cycle[0],
        )


def dependency_order(tasks: Sequence[TaskConfig]) -> list[TaskConfig]:
    """Sort tasks so every task comes after its dependencies.

    Kahn's algorithm; ties are broken by position in the input so an already
    ordered list comes back unchanged. Dependencies outside the given tasks
    are ignored.

    Raises:
        ConfigError: If the tasks contain a cycle
    """
    position = {task.name: index for index, task in enumerate(tasks)}
    by_name = {task.name: task for task in tasks}
    dependents: dict[str, list[str]] = {name: [] for name in by_name}
    indegree = {name: 0 for name in by_name}

    for task in tasks:
        for dep in dict.fromkeys(task.depends_on):
            if dep in by_name:
                dependents[dep].append(task.name)
                indegree[task.name] += 1

    ready = deque(name for name in by_name if indegree[name] == 0)
    ordered: list[TaskConfig] = []
    while ready:
        name = ready.popleft()
        ordered.append(by_name[name])
        for child in dependents[name]:
            indegree[child] -= 1
            if indegree[child] == 0:
                ready.append(child)
        ready = deque(sorted(ready, key=position.__getitem__))

    if len(ordered) != len(by_name):
        stuck = [name for name in by_name if indegree[name] > 0]
        raise ConfigError(
            f"unexpected cycle in task dependencies: {', '.join(stuck)}",
            error_type=ErrorTypes.DEPENDENCY_CYCLE,
        )
    return ordered

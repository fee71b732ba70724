"""Task selection for nyati.

Decides which tasks a run executes, before the runner is started:

- With a task name, only that task runs.
- Otherwise every task runs except library tasks, unless they are included.

Tasks run in file order. With ordered=True they are sorted so each task
comes after its dependencies, and a named task pulls in its prerequisites.
"""

import logging
from typing import Sequence

from .exceptions import ConfigError
from .types import TaskConfig
from .validation import dependency_order

logger = logging.getLogger(__name__)


def collect_with_dependencies(tasks: Sequence[TaskConfig], name: str) -> list[TaskConfig]:
    """Return the named task and everything it transitively depends on."""
    by_name = {task.name: task for task in tasks}
    if name not in by_name:
        raise ConfigError(f"task '{name}' not found", task=name)

    wanted: set[str] = set()
    pending = [name]
    while pending:
        current = pending.pop()
        if current in wanted:
            continue
        if current not in by_name:
            raise ConfigError(f"task '{current}' not found", task=current)
        wanted.add(current)
        pending.extend(by_name[current].depends_on)

    return [task for task in tasks if task.name in wanted]


def select_tasks(
    tasks: Sequence[TaskConfig],
    task_name: str | None = None,
    include_lib: bool = False,
    ordered: bool = False,
) -> list[TaskConfig]:
    """Filter (and optionally order) the tasks a run executes.

    Args:
        tasks: All configured tasks, in file order
        task_name: Run only this task (plus prerequisites when ordered)
        include_lib: Keep library tasks when no task name is given
        ordered: Sort by dependencies instead of file order

    Returns:
        Tasks to execute, in execution order

    Raises:
        ConfigError: If task_name does not exist
    """
    if task_name:
        if ordered:
            selected = collect_with_dependencies(tasks, task_name)
        else:
            selected = [task for task in tasks if task.name == task_name]
            if not selected:
                raise ConfigError(f"task '{task_name}' not found", task=task_name)
    else:
        selected = [task for task in tasks if include_lib or not task.lib]

    if ordered:
        selected = dependency_order(selected)

    logger.debug(f"Selected tasks: {[task.name for task in selected]}")
    return selected

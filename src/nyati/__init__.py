"""nyati - SSH task runner for deploying to fleets of servers.

Runs a declarative task list on one or many hosts over SSH, with ${token}
substitution, dependency validation and per-task synchronisation across
hosts.

Quick Start:
    from nyati import EventSink, load_config, run

    config = load_config("nyati.yaml", "0.1.2")
    with EventSink() as sink:
        await run(config.hosts, config.tasks, sink)
"""

__version__ = "0.1.2"

from nyati.config import load_config
from nyati.exceptions import ConfigError, ConnectionError, ExecutionError, NyatiError
from nyati.logging import EventSink
from nyati.runner import TaskRunner, run

__all__ = [
    "__version__",
    "load_config",
    "run",
    "TaskRunner",
    "EventSink",
    "NyatiError",
    "ConfigError",
    "ConnectionError",
    "ExecutionError",
]

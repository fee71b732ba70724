"""Config file loading for nyati.

Reads nyati.yaml, validates it and substitutes ${token} placeholders in
every task. Loading is all-or-nothing: any problem raises ConfigError and no
Config is returned.

Fields are described by declarative FieldSpec tables, one per section
(top level, host, task), and read by a single function, so adding a key
means adding a row rather than another branch.

Expected structure:

    version: "0.1.2"
    appname: myapp
    hosts:
      server1:
        host: example.com
        username: deploy
        private_key: ~/.ssh/id_ed25519
    params:
      env: prod
    tasks:
      - name: release
        cmd: mkdir -p /var/www/${appname}/releases/${release_version}
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Hashable

import yaml
from dotenv import dotenv_values

from .exceptions import ConfigError, ErrorTypes
from .substitution import substitute
from .types import Config, HostConfig, TaskConfig
from .validation import validate_tasks

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILES = ("nyati.yaml", "nyati.yml")
ON_FAILURE_POLICIES = ("continue", "abort")
MERGE_TAG = "tag:yaml.org,2002:merge"

_TRUE_STRINGS = {"true", "yes", "on", "1"}
_FALSE_STRINGS = {"false", "no", "off", "0", ""}


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys instead of overwriting.

    Only keys written in the mapping itself are checked. Keys pulled in with
    a ``<<: *anchor`` merge may be overridden, as YAML allows.
    """

    def construct_mapping(self, node: yaml.MappingNode, deep: bool = False) -> dict:
        seen: set[Any] = set()
        for key_node, _ in node.value:
            if key_node.tag == MERGE_TAG:
                continue
            key = self.construct_object(key_node, deep=deep)
            if not isinstance(key, Hashable):
                continue
            if key in seen:
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping",
                    node.start_mark,
                    f"found duplicate key '{key}'",
                    key_node.start_mark,
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def _as_str(value: Any, where: str) -> str:
    if isinstance(value, (dict, list)):
        raise ConfigError(f"{where}: expected a string, got {type(value).__name__}")
    return str(value)


def _as_int(value: Any, where: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{where}: expected an integer, got a boolean")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{where}: expected an integer, got {value!r}") from None


def _as_bool(value: Any, where: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ConfigError(f"{where}: expected a boolean, got {value!r}")


def _as_str_list(value: Any, where: str) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list):
        raise ConfigError(f"{where}: expected a list of strings")
    return tuple(_as_str(item, where) for item in value)


def _as_str_map(value: Any, where: str) -> dict[str, str]:
    if not isinstance(value, dict):
        raise ConfigError(f"{where}: expected a mapping")
    return {str(key): _as_str(item, f"{where}.{key}") for key, item in value.items()}


def _as_policy(value: Any, where: str) -> str:
    policy = _as_str(value, where).strip().lower()
    if policy not in ON_FAILURE_POLICIES:
        valid = ", ".join(ON_FAILURE_POLICIES)
        raise ConfigError(f"{where}: invalid policy '{value}'. Valid policies: {valid}")
    return policy


@dataclass(frozen=True)
class FieldSpec:
    """One row of a config section table.

    Attributes:
        key: Key in the YAML file
        attr: Dataclass attribute the value is stored in
        parser: Converts the raw YAML value, raising ConfigError on bad input
        default: Value used when the key is absent or null
        required: Reject a missing or empty value
        missing: Error message used when a required value is missing
    """

    key: str
    attr: str
    parser: Callable[[Any, str], Any]
    default: Any = None
    required: bool = False
    missing: str = ""


def _read_fields(raw: dict[str, Any], rows: tuple[FieldSpec, ...], where: str) -> dict[str, Any]:
    """Evaluate a FieldSpec table against one raw YAML mapping."""
    values: dict[str, Any] = {}
    for row in rows:
        location = f"{where}{row.key}"
        raw_value = raw.get(row.key)
        value = row.default if raw_value is None else row.parser(raw_value, location)
        if row.required and not value:
            raise ConfigError(row.missing or f"{location} is required")
        values[row.attr] = value
    return values


def _parse_hosts(value: Any, where: str) -> dict[str, HostConfig]:
    if not isinstance(value, dict):
        raise ConfigError(f"{where}: expected a mapping of host names")
    hosts: dict[str, HostConfig] = {}
    for name, host_raw in value.items():
        if not isinstance(host_raw, dict):
            raise ConfigError(f"host '{name}': expected a mapping")
        fields = _read_fields(host_raw, HOST_FIELDS, f"host '{name}': ")
        hosts[str(name)] = HostConfig(name=str(name), **fields)
    return hosts


def _parse_tasks(value: Any, where: str) -> tuple[TaskConfig, ...]:
    if not isinstance(value, list):
        raise ConfigError(f"{where}: expected a list of tasks")
    tasks = []
    for index, task_raw in enumerate(value):
        if not isinstance(task_raw, dict):
            raise ConfigError(f"task at index {index}: expected a mapping")
        tasks.append(TaskConfig(**_read_fields(task_raw, TASK_FIELDS, f"task at index {index}: ")))
    return tuple(tasks)


HOST_FIELDS = (
    FieldSpec("host", "host", _as_str, "", required=True),
    FieldSpec("username", "username", _as_str, "", required=True),
    FieldSpec("password", "password", _as_str, ""),
    FieldSpec("private_key", "private_key", _as_str, ""),
    FieldSpec("envfile", "envfile", _as_str, ""),
    FieldSpec("port", "port", _as_int, 22),
)

# name and cmd are checked by validate_tasks so errors carry the task index.
TASK_FIELDS = (
    FieldSpec("name", "name", _as_str, ""),
    FieldSpec("cmd", "cmd", _as_str, ""),
    FieldSpec("dir", "dir", _as_str, ""),
    FieldSpec("expect", "expect", _as_int, 0),
    FieldSpec("message", "message", _as_str, ""),
    FieldSpec("retry", "retry", _as_bool, False),
    FieldSpec("askpass", "askpass", _as_bool, False),
    FieldSpec("lib", "lib", _as_bool, False),
    FieldSpec("output", "output", _as_bool, False),
    FieldSpec("depends_on", "depends_on", _as_str_list, ()),
)

CONFIG_FIELDS = (
    FieldSpec("version", "version", _as_str, ""),
    FieldSpec("appname", "appname", _as_str, "", required=True, missing="appname is required"),
    FieldSpec("hosts", "hosts", _parse_hosts, {}, required=True,
              missing="at least one host is required"),
    FieldSpec("tasks", "tasks", _parse_tasks, (), required=True,
              missing="at least one task is required"),
    FieldSpec("params", "params", _as_str_map, {}),
    FieldSpec("on_failure", "on_failure", _as_policy, "continue"),
)


def check_version(version: str, min_version: str) -> None:
    """Require version >= min_version and the same major.minor prefix.

    The comparison is lexical, the way the version strings are written.

    Raises:
        ConfigError: If the config version is outdated or from another series
    """
    prefix = ".".join(min_version.split(".")[:2]) + "."
    if not version.startswith(prefix) or version < min_version:
        raise ConfigError(
            f"config version {version or '(missing)'} is outdated; update to {min_version}+",
            error_type=ErrorTypes.VERSION_MISMATCH,
        )


def current_release_version() -> int:
    """Epoch milliseconds, used as ${release_version}."""
    return time.time_ns() // 1_000_000


def _substitute_task(task: TaskConfig, params: dict[str, str], appname: str,
                     release_version: int) -> TaskConfig:
    return TaskConfig(
        name=task.name,
        cmd=substitute(task.cmd, params, appname, release_version),
        dir=substitute(task.dir, params, appname, release_version),
        expect=task.expect,
        message=substitute(task.message, params, appname, release_version),
        retry=task.retry,
        askpass=task.askpass,
        lib=task.lib,
        output=task.output,
        depends_on=task.depends_on,
    )


def parse_config(raw: Any, min_version: str, source_path: Path | None = None) -> Config:
    """Build a Config from already parsed YAML data.

    Args:
        raw: Parsed YAML document
        min_version: Oldest config version this release accepts
        source_path: File the data came from, recorded on the Config

    Returns:
        Validated Config with substituted tasks

    Raises:
        ConfigError: On any structural or semantic problem
    """
    if not isinstance(raw, dict):
        raise ConfigError("invalid config format: expected a mapping at the top level")

    values = _read_fields(raw, CONFIG_FIELDS, "")
    check_version(values["version"], min_version)
    validate_tasks(values["tasks"])

    release_version = current_release_version()
    tasks = tuple(
        _substitute_task(task, values["params"], values["appname"], release_version)
        for task in values["tasks"]
    )

    return Config(
        version=values["version"],
        appname=values["appname"],
        hosts=values["hosts"],
        tasks=tasks,
        params=dict(values["params"]),
        release_version=release_version,
        on_failure=values["on_failure"],
        source_path=source_path,
    )


def load_config(path: str | Path, min_version: str) -> Config:
    """Load, validate and substitute a config file.

    Args:
        path: Path to the YAML config file
        min_version: Oldest config version this release accepts

    Returns:
        The loaded Config

    Raises:
        ConfigError: If the file is missing, unreadable or invalid

    Example:
        >>> config = load_config("nyati.yaml", "0.1.2")
        >>> [task.name for task in config.tasks]
        ['clean', 'new_release', ...]
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigError(
            f"config file not found: {path}", error_type=ErrorTypes.CONFIG_NOT_FOUND
        )

    try:
        raw = yaml.load(path.read_text(), Loader=_UniqueKeyLoader)
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to read config: {e}") from e

    config = parse_config(raw, min_version, source_path=path.resolve())
    logger.info(
        f"Loaded {path}: app={config.appname}, hosts={len(config.hosts)}, "
        f"tasks={len(config.tasks)}, release={config.release_version}"
    )
    return config


def find_config_file(directory: str | Path = ".") -> Path:
    """Locate nyati.yaml or nyati.yml in a directory.

    Raises:
        ConfigError: If neither file exists
    """
    directory = Path(directory)
    for name in DEFAULT_CONFIG_FILES:
        candidate = directory / name
        if candidate.is_file():
            return candidate
    raise ConfigError(
        "no config file found; expected nyati.yaml or nyati.yml in current directory",
        error_type=ErrorTypes.CONFIG_NOT_FOUND,
    )


def load_env_file(path: str | Path) -> dict[str, str]:
    """Read KEY=VALUE pairs from a dotenv file.

    Keys declared without a value map to an empty string.

    Raises:
        ConfigError: If the file does not exist
    """
    env_path = Path(path).expanduser()
    if not env_path.is_file():
        raise ConfigError(f"env file {path} not found")
    return {key: value or "" for key, value in dotenv_values(env_path).items()}

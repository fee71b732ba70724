"""Async SSH sessions for nyati.

One RemoteSession owns one authenticated asyncssh connection to a single
host for the lifetime of a run. It runs task commands and reports their exit
status and combined output.

A non-zero or unexpected exit status is a normal result. Only failures to
reach the host, authenticate or keep the channel alive raise
ConnectionError, so the runner can tell "could not run" from "ran and
failed".
"""

import asyncio
import logging
import re
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

import asyncssh

from .config import load_env_file
from .exceptions import ConfigError, ConnectionError, ErrorTypes
from .logging import TRACE, EventSink
from .types import ExecResult, HostConfig, TaskConfig

logger = logging.getLogger(__name__)

PTY_TERM_TYPE = "xterm"
PTY_SIZE = (80, 24)
REDACTED = "********"

_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass
class SSHConfig:
    """SSH connection configuration.

    Attributes:
        hostname: Remote hostname or IP
        port: SSH port (default 22)
        username: SSH username
        password: Password for authentication (optional)
        client_keys: List of private key paths (optional)
        known_hosts: Path to known_hosts file (None to disable checking,
            empty tuple for the asyncssh default ~/.ssh/known_hosts)
        connect_timeout: Connection timeout in seconds
        keepalive_interval: Keepalive interval (0 to disable)
    """

    hostname: str
    port: int = 22
    username: str | None = None
    password: str | None = None
    client_keys: list[str] | None = None
    known_hosts: Any = ()
    connect_timeout: float = 10.0
    keepalive_interval: float = 30.0

    @classmethod
    def from_host(cls, host: HostConfig, known_hosts: Any = ()) -> "SSHConfig":
        """Build connection options for a configured host.

        A private key takes precedence over a password when both are set.

        Raises:
            ConnectionError: If the host has no usable credentials
        """
        if host.private_key:
            key_path = Path(host.private_key).expanduser()
            if not key_path.is_file():
                raise ConnectionError(
                    f"host {host.name}: failed to read private key {host.private_key}",
                    error_type=ErrorTypes.AUTHENTICATION_FAILED,
                    host=host.name,
                )
            return cls(
                hostname=host.host,
                port=host.port,
                username=host.username,
                client_keys=[str(key_path)],
                known_hosts=known_hosts,
            )
        if host.password:
            return cls(
                hostname=host.host,
                port=host.port,
                username=host.username,
                password=host.password,
                known_hosts=known_hosts,
            )
        raise ConnectionError(
            f"host {host.name}: password or private_key required",
            error_type=ErrorTypes.AUTHENTICATION_FAILED,
            host=host.name,
        )

    def to_asyncssh_options(self) -> dict[str, Any]:
        """Convert to asyncssh.connect() kwargs."""
        options: dict[str, Any] = {
            "host": self.hostname,
            "port": self.port,
            "connect_timeout": self.connect_timeout,
            "keepalive_interval": self.keepalive_interval,
        }

        if self.username:
            options["username"] = self.username
        if self.password:
            options["password"] = self.password
        if self.client_keys:
            options["client_keys"] = self.client_keys
        if self.known_hosts is None:
            options["known_hosts"] = None  # Disable host key checking
        elif self.known_hosts != ():
            options["known_hosts"] = self.known_hosts

        return options


def build_command(task: TaskConfig, env: dict[str, str] | None = None) -> str:
    """Compose the shell line sent to the remote host.

    Env file variables are exported first, then the working directory is
    changed, then the task command runs:

        export A=1 B='two words' && cd /srv/app && make deploy
    """
    parts = []
    if env:
        assignments = []
        for key, value in env.items():
            if not _ENV_NAME.match(key):
                logger.warning(f"Skipping invalid environment variable name: {key!r}")
                continue
            assignments.append(f"{key}={shlex.quote(value)}")
        if assignments:
            parts.append("export " + " ".join(assignments))
    if task.dir:
        parts.append(f"cd {task.dir}")
    parts.append(task.cmd)
    return " && ".join(parts)


def _as_text(data: Any) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return str(data)


class Session(Protocol):
    """What the task runner needs from a per-host session."""

    name: str

    async def exec(self, task: TaskConfig, debug: bool = False) -> ExecResult: ...

    async def close(self) -> None: ...


SessionFactory = Callable[[str, HostConfig, EventSink | None], Awaitable[Session]]


class RemoteSession:
    """An open SSH connection to one configured host.

    Example:
        async with await RemoteSession.open("web01", host, sink) as session:
            result = await session.exec(task)
            print(result.exit_code, result.output)
    """

    def __init__(
        self,
        name: str,
        host: HostConfig,
        conn: asyncssh.SSHClientConnection,
        env: dict[str, str] | None = None,
        sink: EventSink | None = None,
    ) -> None:
        self.name = name
        self.host = host
        self.env = env or {}
        self._conn: asyncssh.SSHClientConnection | None = conn
        self._sink = sink

    @classmethod
    async def open(
        cls,
        name: str,
        host: HostConfig,
        sink: EventSink | None = None,
        known_hosts: Any = (),
    ) -> "RemoteSession":
        """Authenticate and connect to a host.

        Args:
            name: Host alias
            host: Host connection details
            sink: Event sink for connection events
            known_hosts: Passed through to asyncssh (default ~/.ssh/known_hosts)

        Returns:
            Connected RemoteSession

        Raises:
            ConnectionError: On missing credentials, unreadable env file,
                dial, host key or authentication failure
        """
        try:
            env = load_env_file(host.envfile) if host.envfile else {}
        except ConfigError as e:
            raise ConnectionError(f"host {name}: {e}", host=name) from e

        ssh_config = SSHConfig.from_host(host, known_hosts=known_hosts)
        logger.debug(f"Connecting to {host.address}:{host.port}")

        try:
            conn = await asyncssh.connect(**ssh_config.to_asyncssh_options())
        except asyncssh.PermissionDenied as e:
            raise ConnectionError(
                f"failed to connect to {name}: authentication failed: {e}",
                error_type=ErrorTypes.AUTHENTICATION_FAILED,
                host=name,
            ) from e
        except (asyncssh.KeyImportError, ValueError) as e:
            # Raised while loading client_keys, before any dial.
            raise ConnectionError(
                f"failed to connect to {name}: unusable private key {host.private_key}: {e}",
                error_type=ErrorTypes.AUTHENTICATION_FAILED,
                host=name,
            ) from e
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as e:
            raise ConnectionError(f"failed to connect to {name}: {e}", host=name) from e

        session = cls(name, host, conn, env=env, sink=sink)
        session._emit(f"Connected: {name} ({host.address})")
        logger.info(f"Connected to {host.address}")
        return session

    def _emit(self, line: str) -> None:
        if self._sink is not None:
            self._sink.emit(line)

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    async def exec(self, task: TaskConfig, debug: bool = False) -> ExecResult:
        """Run a task command and collect its exit status and output.

        Args:
            task: Task whose (substituted) command is run
            debug: Emit the full command line before running it

        Returns:
            ExecResult with the remote exit status and stdout + stderr

        Raises:
            ConnectionError: If the session is closed or the channel fails
        """
        if not self.is_connected:
            raise ConnectionError(
                f"{self.name}: SSH client not connected",
                error_type=ErrorTypes.CHANNEL_FAILED,
                host=self.name,
                task=task.name,
            )

        command = build_command(task, self.env)
        if debug:
            self._emit(f"{self.name}@{self.host.host}: {command}")
        logger.log(TRACE, f"Running on {self.name}: {command}")

        # Raw bytes so undecodable output cannot break the channel.
        options: dict[str, Any] = {"check": False, "input": b"", "encoding": None}
        feeds_password = task.askpass and bool(self.host.password)
        if task.askpass:
            options["term_type"] = PTY_TERM_TYPE
            options["term_size"] = PTY_SIZE
            if feeds_password:
                options["input"] = (self.host.password + "\n").encode()

        try:
            result = await self._conn.run(command, **options)
        except (asyncssh.Error, OSError) as e:
            raise ConnectionError(
                f"{self.name}: {e}",
                error_type=ErrorTypes.CHANNEL_FAILED,
                host=self.name,
                task=task.name,
            ) from e

        output = _as_text(result.stdout) + _as_text(result.stderr)
        if feeds_password:
            # The pty echoes stdin until the remote side turns echo off.
            output = output.replace(self.host.password, REDACTED)
        exit_code = result.exit_status if result.exit_status is not None else -1

        logger.debug(f"{task.name}@{self.name}: rc={exit_code}, output={len(output)} bytes")
        return ExecResult(exit_code=exit_code, output=output)

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        conn.close()
        await conn.wait_closed()
        logger.debug(f"Disconnected from {self.host.address}")

    async def __aenter__(self) -> "RemoteSession":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()


async def open_session(name: str, host: HostConfig, sink: EventSink | None = None) -> RemoteSession:
    """Default SessionFactory used by the task runner."""
    return await RemoteSession.open(name, host, sink)

"""Type definitions for nyati.

Core data types shared by the loader, the validator, remote sessions and the
task runner. Config objects are frozen once loaded; a run only ever reads
them.
"""

from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class HostConfig:
    """Connection details for a single remote host.

    Attributes:
        name: Host alias used in the config file and on the command line
        host: Hostname or IP address to dial
        username: SSH login name
        password: Password for password authentication (optional)
        private_key: Path to a private key file (optional, wins over password)
        envfile: Path to a dotenv file exported before each command (optional)
        port: SSH port (default: 22)

    Example:
        >>> host = HostConfig(name="web01", host="10.0.0.5", username="deploy",
        ...                   private_key="~/.ssh/id_ed25519")
        >>> host.uses_key_auth
        True
    """

    name: str
    host: str
    username: str
    password: str = ""
    private_key: str = ""
    envfile: str = ""
    port: int = 22

    @property
    def uses_key_auth(self) -> bool:
        """Whether the host authenticates with a private key."""
        return bool(self.private_key)

    @property
    def address(self) -> str:
        """user@host form used in log lines."""
        return f"{self.username}@{self.host}"


@dataclass(frozen=True)
class TaskConfig:
    """A named remote command.

    Attributes:
        name: Unique task name
        cmd: Shell command run on each host
        dir: Directory to change into before running cmd
        expect: Exit code that counts as success
        message: Message shown after the task succeeds
        retry: Offer an interactive retry when the exit code mismatches
        askpass: Request a pseudo-terminal so the command can prompt
        lib: Library task, skipped unless selected or included explicitly
        output: Always show the command output
        depends_on: Names of tasks this task depends on
    """

    name: str
    cmd: str
    dir: str = ""
    expect: int = 0
    message: str = ""
    retry: bool = False
    askpass: bool = False
    lib: bool = False
    output: bool = False
    depends_on: tuple[str, ...] = ()


@dataclass(frozen=True)
class Config:
    """A loaded, validated and substituted nyati config.

    Attributes:
        version: Config format version
        appname: Application name, available as ${appname}
        hosts: Host aliases mapped to their connection details, in file order
        tasks: Tasks in file order
        params: User parameters available as ${<key>}
        release_version: Epoch milliseconds at load time, ${release_version}
        on_failure: "continue" runs every task regardless of failures,
            "abort" stops after the first task that failed on any host
        source_path: File the config was loaded from
    """

    version: str
    appname: str
    hosts: dict[str, HostConfig]
    tasks: tuple[TaskConfig, ...]
    params: dict[str, str] = field(default_factory=dict)
    release_version: int = 0
    on_failure: str = "continue"
    source_path: Path | None = None

    def get_task(self, name: str) -> TaskConfig | None:
        """Get a task by name."""
        for task in self.tasks:
            if task.name == name:
                return task
        return None


@dataclass
class ExecResult:
    """Outcome of running one task on one host.

    Transport failures are raised as ConnectionError and never produce an
    ExecResult.
    """

    exit_code: int
    output: str = ""

    def matches(self, expected: int) -> bool:
        return self.exit_code == expected

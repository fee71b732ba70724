"""Exception hierarchy for nyati.

Errors fall into three families:

- ConfigError: the config file cannot be used. Raised before any network
  activity and never partially applied.
- ConnectionError: a remote session could not be established or its channel
  broke. Scoped to a single host.
- ExecutionError: a command ran but exited with an unexpected code. Scoped to
  a single (task, host) pair.

Every error carries an ErrorContext so callers can report where it happened
without parsing messages.
"""

from dataclasses import dataclass


class ErrorTypes:
    """Error type classifications used in ErrorContext."""

    CONFIG_INVALID = "ConfigInvalid"
    CONFIG_NOT_FOUND = "ConfigNotFound"
    VERSION_MISMATCH = "VersionMismatch"
    DEPENDENCY_MISSING = "DependencyMissing"
    DEPENDENCY_CYCLE = "DependencyCycle"
    AUTHENTICATION_FAILED = "AuthenticationFailed"
    CONNECTION_FAILED = "ConnectionFailed"
    CHANNEL_FAILED = "ChannelFailed"
    EXIT_CODE_MISMATCH = "ExitCodeMismatch"
    UNKNOWN = "Unknown"


_SUGGESTIONS = {
    ErrorTypes.CONFIG_NOT_FOUND: "Pass -c/--config or create nyati.yaml in the working directory",
    ErrorTypes.VERSION_MISMATCH: "Update the 'version' key of the config file",
    ErrorTypes.DEPENDENCY_CYCLE: "Remove one of the depends_on entries forming the loop",
    ErrorTypes.AUTHENTICATION_FAILED: "Check username, password or private_key for this host",
    ErrorTypes.CONNECTION_FAILED: "Verify the host is reachable and listed in ~/.ssh/known_hosts",
}


def get_suggestion(error_type: str) -> str:
    """Return a short remediation hint for an error type, or ''."""
    return _SUGGESTIONS.get(error_type, "")


@dataclass
class ErrorContext:
    """Where and why an error happened.

    Attributes:
        error_type: One of the ErrorTypes constants
        host: Host name the error is scoped to, if any
        task: Task name the error is scoped to, if any
        suggestion: Remediation hint shown to the operator
    """

    error_type: str = ErrorTypes.UNKNOWN
    host: str = ""
    task: str = ""
    suggestion: str = ""


class NyatiError(Exception):
    """Base class for all nyati errors."""

    default_type = ErrorTypes.UNKNOWN

    def __init__(
        self,
        message: str,
        error_type: str | None = None,
        host: str = "",
        task: str = "",
    ) -> None:
        super().__init__(message)
        error_type = error_type or self.default_type
        self.context = ErrorContext(
            error_type=error_type,
            host=host,
            task=task,
            suggestion=get_suggestion(error_type),
        )

    @property
    def error_type(self) -> str:
        return self.context.error_type


class ConfigError(NyatiError):
    """The config file is missing, malformed or violates an invariant."""

    default_type = ErrorTypes.CONFIG_INVALID


class ConnectionError(NyatiError):
    """A remote session could not be opened or its channel failed."""

    default_type = ErrorTypes.CONNECTION_FAILED


class ExecutionError(NyatiError):
    """A remote command exited with a code other than the expected one."""

    default_type = ErrorTypes.EXIT_CODE_MISMATCH

    def __init__(
        self,
        message: str,
        host: str = "",
        task: str = "",
        exit_code: int | None = None,
        expected: int | None = None,
    ) -> None:
        super().__init__(message, host=host, task=task)
        self.exit_code = exit_code
        self.expected = expected

"""Task orchestration for nyati.

Runs an ordered task list against a set of hosts. Each task fans out to all
hosts concurrently, and every host finishes task k before task k+1 starts
anywhere. A failure on one host never stops the other hosts, and by default
never stops later tasks either. Every failure is reported on the event sink;
the caller gets a single error (the first one recorded) once the run is over.

Sessions are opened lazily, right before a host's first task, and all of
them are closed when the run ends, whatever the outcome.
"""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Awaitable, Callable, Mapping, Sequence

from .exceptions import ConfigError, ConnectionError, ExecutionError, NyatiError
from .logging import EventSink, log_performance
from .ssh import Session, SessionFactory, open_session
from .types import ExecResult, HostConfig, TaskConfig

logger = logging.getLogger(__name__)

ConfirmRetry = Callable[[str, str], "bool | Awaitable[bool]"]


class RunState(Enum):
    """Lifecycle of a TaskRunner."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskRunner:
    """Executes tasks across hosts with one barrier per task.

    Attributes:
        hosts: Target hosts by alias, in the order they were selected
        sink: Receives every run event
        debug: Emit commands and output for every task
        confirm_retry: Asked "retry task on host?" after an exit code
            mismatch on a task with retry set. May return a bool or an
            awaitable bool. Without it, retries are declined.
        on_failure: "continue" runs every task regardless of failures,
            "abort" stops after the barrier of the first failed task
        session_factory: Opens a Session for a host (default: SSH)
        state: Current RunState
        task_index: Index of the task being run, None before the first
        failure_count: Number of failures recorded so far

    Example:
        >>> runner = TaskRunner(hosts, sink, confirm_retry=ask)
        >>> await runner.run(config.tasks)
    """

    def __init__(
        self,
        hosts: Mapping[str, HostConfig],
        sink: EventSink,
        debug: bool = False,
        confirm_retry: ConfirmRetry | None = None,
        on_failure: str = "continue",
        session_factory: SessionFactory | None = None,
    ) -> None:
        if not hosts:
            raise ConfigError("no hosts selected")
        self.hosts = dict(hosts)
        self.sink = sink
        self.debug = debug
        self.confirm_retry = confirm_retry
        self.on_failure = on_failure
        self.session_factory = session_factory or open_session
        self.state = RunState.IDLE
        self.task_index: int | None = None
        self.failure_count = 0
        self._sessions: dict[str, Session] = {}
        self._unreachable: set[str] = set()
        self._errors: asyncio.Queue[NyatiError] | None = None
        self._prompt_lock: asyncio.Lock | None = None

    def _emit(self, line: str) -> None:
        self.sink.emit(line)

    async def run(self, tasks: Sequence[TaskConfig]) -> None:
        """Run every task on every host.

        Raises:
            NyatiError: The first failure recorded during the run, raised
                only after every task has run (or after the failed task,
                with on_failure="abort")
            RuntimeError: If the runner was already used
        """
        if self.state is not RunState.IDLE:
            raise RuntimeError("TaskRunner can only run once")

        tasks = list(tasks)
        # Room for one failure per (task, host) so recording never waits.
        self._errors = asyncio.Queue(maxsize=max(1, len(self.hosts) * len(tasks)))
        self._prompt_lock = asyncio.Lock()
        self.state = RunState.RUNNING

        try:
            with log_performance(logger, "Run", hosts=len(self.hosts), tasks=len(tasks)):
                for index, task in enumerate(tasks):
                    self.task_index = index
                    await self._run_task(task)
                    if self.on_failure == "abort" and not self._errors.empty():
                        self._emit(f"Aborting: '{task.name}' failed, skipping remaining tasks")
                        break
        except BaseException:
            self.state = RunState.FAILED
            raise
        finally:
            await self._close_sessions()

        if self._errors.empty():
            self.state = RunState.COMPLETED
            return

        self.state = RunState.FAILED
        if self.failure_count > 1:
            logger.warning(f"{self.failure_count} failures recorded, reporting the first")
        raise self._errors.get_nowait()

    async def _run_task(self, task: TaskConfig) -> None:
        """Fan a task out to every host and wait for all of them."""
        names = list(self.hosts)
        logger.debug(f"Task {task.name} on {len(names)} host(s)")
        outcomes = await asyncio.gather(
            *(self._run_on_host(task, name) for name in names),
            return_exceptions=True,
        )

        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Unexpected error running {task.name} on {name}: {outcome!r}")
                self._emit(f"{task.name}@{name}: Failed ({outcome})")
                error = outcome if isinstance(outcome, NyatiError) else NyatiError(
                    f"{task.name}@{name}: {outcome}", host=name, task=task.name
                )
                self._record(error)

    async def _session_for(self, task: TaskConfig, name: str) -> Session | None:
        """Return the host's session, opening it on first use."""
        session = self._sessions.get(name)
        if session is not None:
            return session

        if name in self._unreachable:
            self._emit(f"{task.name}@{name}: Skipped (not connected)")
            return None

        try:
            session = await self.session_factory(name, self.hosts[name], self.sink)
        except ConnectionError as e:
            self._unreachable.add(name)
            self._emit(f"{task.name}@{name}: Failed to connect: {e}")
            self._record(e)
            return None

        self._sessions[name] = session
        return session

    async def _run_on_host(self, task: TaskConfig, name: str) -> None:
        session = await self._session_for(task, name)
        if session is None:
            return

        self._emit(f"{task.name}@{name}: Running")
        try:
            result = await session.exec(task, self.debug)
        except ConnectionError as e:
            self._emit(f"{task.name}@{name}: Failed ({e})")
            self._record(e)
            return

        if result.matches(task.expect):
            self._report_success(task, name, result)
        else:
            await self._handle_mismatch(task, name, session, result)

    def _report_success(self, task: TaskConfig, name: str, result: ExecResult) -> None:
        self._emit(f"{task.name}@{name}: Succeeded")
        if (self.debug or task.output or task.message) and result.output:
            self._emit(result.output.rstrip("\n"))
        if task.message:
            self._emit(task.message)

    async def _handle_mismatch(
        self,
        task: TaskConfig,
        name: str,
        session: Session,
        result: ExecResult,
    ) -> None:
        self._emit(f"{task.name}@{name}: Failed (code {result.exit_code})")
        show_output = self.debug or task.output or task.retry
        if show_output and result.output:
            self._emit(result.output.rstrip("\n"))

        if task.retry:
            await self._retry(task, name, session, show_output)

        # A successful retry is reported but the original failure still counts.
        self._record(ExecutionError(
            f"task {task.name} failed on {name} (code {result.exit_code}, expected {task.expect})",
            host=name,
            task=task.name,
            exit_code=result.exit_code,
            expected=task.expect,
        ))

    async def _retry(self, task: TaskConfig, name: str, session: Session, show_output: bool) -> None:
        """Run a failed task once more if the operator confirms."""
        if not await self._confirm(task.name, name):
            self._emit(f"{task.name}@{name}: Retry declined")
            return

        try:
            retried = await session.exec(task, self.debug)
        except ConnectionError as e:
            self._emit(f"{task.name}@{name}: Retry failed ({e})")
            return

        if retried.matches(task.expect):
            self._emit(f"{task.name}@{name}: Succeeded after retry")
        else:
            self._emit(f"{task.name}@{name}: Failed again (code {retried.exit_code})")
            if show_output and retried.output:
                self._emit(retried.output.rstrip("\n"))

    async def _confirm(self, task_name: str, host_name: str) -> bool:
        """Ask confirm_retry, one question at a time across all hosts."""
        if self.confirm_retry is None:
            return False
        assert self._prompt_lock is not None
        async with self._prompt_lock:
            answer = self.confirm_retry(task_name, host_name)
            if inspect.isawaitable(answer):
                answer = await answer
        return bool(answer)

    def _record(self, error: NyatiError) -> None:
        assert self._errors is not None
        self.failure_count += 1
        logger.info(f"Failure recorded: {error}")
        try:
            self._errors.put_nowait(error)
        except asyncio.QueueFull:
            # Only the first error is ever reported; the sink already has this one.
            logger.debug(f"Error queue full, not queueing: {error}")

    async def _close_sessions(self) -> None:
        sessions = list(self._sessions.items())
        self._sessions.clear()
        results = await asyncio.gather(
            *(session.close() for _, session in sessions), return_exceptions=True
        )
        for (name, _), result in zip(sessions, results):
            if isinstance(result, Exception):
                logger.warning(f"Error closing session for {name}: {result}")


async def run(
    hosts: Mapping[str, HostConfig],
    tasks: Sequence[TaskConfig],
    sink: EventSink,
    debug: bool = False,
    confirm_retry: ConfirmRetry | None = None,
    on_failure: str = "continue",
    session_factory: SessionFactory | None = None,
) -> None:
    """Run tasks against hosts, raising the first recorded failure.

    This is the single entry point presentation layers use. Host and task
    selection happen before it is called (see hosts.select_hosts and
    tasks.select_tasks).

    Args:
        hosts: Selected hosts by alias
        tasks: Selected tasks in execution order
        sink: Open EventSink receiving every run event
        debug: Emit commands and output for every task
        confirm_retry: Retry confirmation capability
        on_failure: "continue" or "abort"
        session_factory: Opens a Session for a host (default: SSH)

    Raises:
        NyatiError: The first failure recorded during the run
    """
    runner = TaskRunner(
        hosts,
        sink,
        debug=debug,
        confirm_retry=confirm_retry,
        on_failure=on_failure,
        session_factory=session_factory,
    )
    await runner.run(tasks)

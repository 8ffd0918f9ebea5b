"""
Process Supervisor - launches and tracks every external process.

Each spawned process becomes a :class:`Session` registered with the
:class:`ResourceRegistry`. Sessions move through::

    CREATED -> STARTING -> {HEALTHY <-> DEGRADED} -> TERMINATING -> TERMINATED
                       \\-> FAILED_TO_START (terminal, no retry here)

Health checks distinguish a process that never came up (FAILED_TO_START)
from one that is running but reporting errors (RUNTIME_ERROR); callers
react differently to each.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Deque, Iterable, List, Mapping, Optional, Tuple, Union

import psutil

from .configuration import Configuration
from .errors import FailedToStart, SessionRuntimeError, ShutdownInProgress
from .logging_utils import get_module_logger
from .registry import ResourceRegistry

STDERR_TAIL_LINES = 200
STREAM_LIMIT = 1024 * 1024


class SessionState(Enum):
    CREATED = "created"
    STARTING = "starting"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILED_TO_START = "failed_to_start"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


TERMINAL_STATES = frozenset({SessionState.FAILED_TO_START, SessionState.TERMINATED})
RUNNING_STATES = frozenset({SessionState.STARTING, SessionState.HEALTHY, SessionState.DEGRADED})


class HealthStatus(Enum):
    HEALTHY = "healthy"
    FAILED_TO_START = "failed_to_start"
    RUNTIME_ERROR = "runtime_error"


@dataclass(eq=False)
class Session:
    name: str
    command: Tuple[str, ...]
    devices: Tuple[Path, ...] = ()
    display: Optional[int] = None
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    state: SessionState = SessionState.CREATED
    owner: Optional[str] = None
    pid: Optional[int] = None
    started_at: Optional[float] = None
    returncode: Optional[int] = None
    last_health: Optional[HealthStatus] = None
    stderr_tail: Deque[str] = field(default_factory=lambda: deque(maxlen=STDERR_TAIL_LINES))
    error_lines: List[str] = field(default_factory=list)

    process: Optional[asyncio.subprocess.Process] = field(default=None, repr=False)
    _errors_acknowledged: int = field(default=0, repr=False)
    _reader_task: Optional[asyncio.Task] = field(default=None, repr=False)
    _monitor_task: Optional[asyncio.Task] = field(default=None, repr=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def label(self) -> str:
        return f"{self.name}[{self.pid}]" if self.pid else self.name

    @property
    def is_alive(self) -> bool:
        return self.process is not None and self.process.returncode is None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def last_error(self) -> Optional[str]:
        return self.error_lines[-1] if self.error_lines else None


def _descendants(pid: int) -> List[psutil.Process]:
    try:
        return psutil.Process(pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        return []


def _group_members(pgid: int) -> List[psutil.Process]:
    """Live processes in process group ``pgid``, excluding this process."""
    members = []
    current_pid = os.getpid()
    for proc in psutil.process_iter(['pid']):
        if proc.pid == current_pid:
            continue
        try:
            if os.getpgid(proc.pid) == pgid:
                members.append(proc)
        except (ProcessLookupError, PermissionError):
            continue
    return members


class ProcessSupervisor:

    def __init__(self, config: Configuration, registry: ResourceRegistry):
        self.config = config
        self.registry = registry
        self.logger = get_module_logger("ProcessSupervisor")
        self.error_marker = config.error_marker
        self.poll_interval = config.health_check_interval
        self.terminate_timeout = config.terminate_timeout

    # ------------------------------------------------------------------
    # Launch

    async def spawn(
        self,
        command: str,
        args: Iterable[str] = (),
        bound_devices: Iterable[Union[str, Path]] = (),
        *,
        name: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        display: Optional[int] = None,
        cwd: Optional[Path] = None,
    ) -> Session:
        """Start ``command`` detached and return its STARTING session.

        Does not wait for the process beyond the fork/exec handoff; use
        :meth:`health_check` to learn whether it actually came up.
        """
        argv = [command, *args]
        session = Session(
            name=name or Path(command).name,
            command=tuple(argv),
            devices=tuple(Path(d) for d in bound_devices),
            display=display,
        )

        if self.registry.cancelled:
            session.state = SessionState.FAILED_TO_START
            raise ShutdownInProgress(f"Refusing to start {session.name}: shutdown in progress")

        full_env = os.environ.copy()
        if env:
            full_env.update(env)
        if display is not None:
            full_env["DISPLAY"] = f":{display}"

        self.logger.info("Executing: %s", " ".join(argv))
        session.state = SessionState.STARTING

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                env=full_env,
                cwd=str(cwd) if cwd else None,
                start_new_session=True,
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            session.state = SessionState.FAILED_TO_START
            self.logger.error("Failed to start %s: %s", session.name, exc)
            raise FailedToStart(f"Failed to start {argv[0]}: {exc}") from exc

        session.process = process
        session.pid = process.pid
        session.started_at = time.time()
        await self.registry.add_session(session)

        session._reader_task = asyncio.create_task(self._stderr_reader(session))
        session._monitor_task = asyncio.create_task(self._process_monitor(session))

        self.logger.info("Process %s started with PID: %d", session.name, process.pid)
        return session

    async def _stderr_reader(self, session: Session) -> None:
        process = session.process
        if not process or not process.stderr:
            return

        try:
            while True:
                line = await process.stderr.readline()
                if not line:
                    break

                line_str = line.decode(errors="replace").strip()
                if not line_str:
                    continue
                session.stderr_tail.append(line_str)
                if line_str.startswith(self.error_marker):
                    session.error_lines.append(line_str)
                    self.logger.warning("%s stderr: %s", session.label, line_str)
                else:
                    self.logger.debug("%s stderr: %s", session.label, line_str)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error("stderr reader error for %s: %s", session.label, e, exc_info=True)

    async def _process_monitor(self, session: Session) -> None:
        process = session.process
        if not process:
            return

        returncode = await process.wait()
        session.returncode = returncode

        if session.state in (SessionState.TERMINATING, SessionState.TERMINATED):
            return
        if session.state == SessionState.STARTING:
            if returncode:
                self.logger.error("%s exited during startup with code %d", session.label, returncode)
            return
        if returncode == 0:
            self.logger.info("%s exited normally", session.label)
        else:
            self.logger.error("%s crashed with exit code %d", session.label, returncode)
        session.state = SessionState.TERMINATED

    # ------------------------------------------------------------------
    # Health

    async def health_check(self, session: Session, timeout_seconds: Optional[float] = None) -> HealthStatus:
        """Poll ``session`` for up to ``timeout_seconds``.

        Failures return as soon as they are observed; HEALTHY is only
        reported after the whole window passed cleanly.
        """
        timeout = self.config.health_check_timeout if timeout_seconds is None else timeout_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        was_starting = session.state == SessionState.STARTING

        while True:
            if not session.is_alive:
                status = HealthStatus.FAILED_TO_START if was_starting else HealthStatus.RUNTIME_ERROR
                break
            if len(session.error_lines) > session._errors_acknowledged:
                status = HealthStatus.RUNTIME_ERROR
                break
            remaining = deadline - loop.time()
            if remaining <= 0:
                status = HealthStatus.HEALTHY
                break
            await asyncio.sleep(min(self.poll_interval, remaining))

        session._errors_acknowledged = len(session.error_lines)
        if session.process is not None and session.process.returncode is not None:
            session.returncode = session.process.returncode
        self._record_health(session, status)
        return status

    def _record_health(self, session: Session, status: HealthStatus) -> None:
        session.last_health = status
        if session.state in (SessionState.TERMINATING, SessionState.TERMINATED):
            return

        if status == HealthStatus.FAILED_TO_START:
            session.state = SessionState.FAILED_TO_START
            self.logger.error("%s failed to start", session.label)
        elif status == HealthStatus.RUNTIME_ERROR:
            if session.is_alive:
                session.state = SessionState.DEGRADED
                self.logger.error("%s encountered an error: %s", session.label, session.last_error)
            else:
                session.state = SessionState.TERMINATED
                self.logger.error("%s stopped unexpectedly (exit %s)", session.label, session.returncode)
        else:
            session.state = SessionState.HEALTHY
            self.logger.debug("%s healthy", session.label)

    async def require_healthy(self, session: Session, timeout_seconds: Optional[float] = None) -> Session:
        status = await self.health_check(session, timeout_seconds)
        if status == HealthStatus.FAILED_TO_START:
            detail = session.last_error or (session.stderr_tail[-1] if session.stderr_tail else "")
            raise FailedToStart(
                f"{session.name} failed to start (exit {session.returncode})" + (f": {detail}" if detail else "")
            )
        if status == HealthStatus.RUNTIME_ERROR:
            raise SessionRuntimeError(f"{session.name} reported an error: {session.last_error or session.returncode}")
        return session

    async def wait(self, session: Session) -> Optional[int]:
        if session.process is None:
            return session.returncode
        returncode = await session.process.wait()
        session.returncode = returncode
        return returncode

    # ------------------------------------------------------------------
    # Termination

    async def terminate(self, session: Session) -> None:
        """Stop ``session`` and its descendants; repeat calls are no-ops."""
        async with session._lock:
            if session.state == SessionState.TERMINATED and session.session_id not in self.registry.sessions:
                return

            failed = session.state == SessionState.FAILED_TO_START
            if session.is_alive:
                session.state = SessionState.TERMINATING
                await self._signal_tree(session)
            elif session.pid is not None:
                await self._sweep_group(session)
            await self._finalize(session)
            if not failed:
                session.state = SessionState.TERMINATED

        await self.registry.discard_session(session)

    async def _sweep_group(self, session: Session) -> None:
        # The leader is gone; its children were reparented but keep its process group.
        leftovers = await asyncio.to_thread(_group_members, session.pid)
        if not leftovers:
            return
        self.logger.info("Terminating %d leftover process(es) of %s", len(leftovers), session.label)
        await self._stop_processes(leftovers)

    async def _signal_tree(self, session: Session) -> None:
        process = session.process
        children = await asyncio.to_thread(_descendants, process.pid)
        self.logger.info("Terminating %s (%d child process(es))", session.label, len(children))

        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        for child in children:
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                child.terminate()

        try:
            await asyncio.wait_for(process.wait(), timeout=self.terminate_timeout)
        except asyncio.TimeoutError:
            self.logger.warning("%s did not terminate, killing...", session.label)
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()

        if children:
            await self._stop_processes(children, signalled=True)

    async def _stop_processes(self, procs: List[psutil.Process], *, signalled: bool = False) -> None:
        if not signalled:
            for proc in procs:
                with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                    proc.terminate()
        _, alive = await asyncio.to_thread(psutil.wait_procs, procs, timeout=self.terminate_timeout)
        for proc in alive:
            self.logger.warning("Force killing unresponsive child: pid=%d", proc.pid)
            with contextlib.suppress(psutil.NoSuchProcess, psutil.AccessDenied):
                proc.kill()

    async def _finalize(self, session: Session) -> None:
        if session.process is not None and session.process.returncode is not None:
            session.returncode = session.process.returncode

        for task in (session._reader_task, session._monitor_task):
            if task is None or task.done():
                continue
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=1.0)
            except asyncio.TimeoutError:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        self.logger.info("Session stopped: %s (exit %s)", session.label, session.returncode)

    async def terminate_all(self) -> None:
        sessions = self.registry.snapshot_sessions()
        if not sessions:
            return
        results = await asyncio.gather(*(self.terminate(s) for s in sessions), return_exceptions=True)
        for session, result in zip(sessions, results):
            if isinstance(result, Exception):
                self.logger.error("Error terminating %s: %s", session.label, result)

    def live_sessions(self) -> List[Session]:
        return [s for s in self.registry.snapshot_sessions() if not s.is_terminal]


__all__ = [
    "ProcessSupervisor",
    "Session",
    "SessionState",
    "HealthStatus",
    "TERMINAL_STATES",
    "RUNNING_STATES",
]

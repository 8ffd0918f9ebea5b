"""Shared pytest configuration and fixtures for the loopcast test suite."""

import asyncio
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Ensure the project root is in the path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from loopcast.core.configuration import Configuration, build_configuration
from loopcast.core.errors import FailedToStart
from loopcast.core.external import CommandResult
from loopcast.core.process_supervisor import Session, SessionState
from loopcast.core.registry import ResourceRegistry


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


# =============================================================================
# Shared Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def no_session_display(monkeypatch):
    """Run every test as if outside an X session."""
    monkeypatch.delenv("DISPLAY", raising=False)


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def sandbox(tmp_path: Path) -> Path:
    """Directory tree standing in for /dev, /tmp, the SDK and the AVD home."""
    for name in ("dev", "pipes", "sdk/emulator", "avd", "logs"):
        (tmp_path / name).mkdir(parents=True)
    return tmp_path


@pytest.fixture
def raw_config(sandbox: Path) -> Dict[str, str]:
    return {
        "device_dir": str(sandbox / "dev"),
        "pipe_dir": str(sandbox / "pipes"),
        "android_sdk_path": str(sandbox / "sdk"),
        "avd_home": str(sandbox / "avd"),
        "log_file": str(sandbox / "logs" / "loopcast.log"),
        "health_check_timeout": "0.5",
        "health_check_interval": "0.05",
        "display_settle_seconds": "0.3",
        "terminate_timeout": "2",
        "privilege_command": "",
    }


@pytest.fixture
def config(raw_config: Dict[str, str]) -> Configuration:
    return build_configuration(raw_config)


@pytest.fixture
def registry() -> ResourceRegistry:
    return ResourceRegistry()


@pytest.fixture
def make_device(config: Configuration):
    """Create fake loopback nodes under the sandboxed device dir."""

    def _make(*numbers: int) -> List[Path]:
        paths = []
        for number in numbers:
            path = config.device_dir / f"video{number}"
            path.touch()
            paths.append(path)
        return paths

    return _make


class FakeRunner:
    """Records external commands and answers them from a script."""

    def __init__(self):
        self.calls: List[List[str]] = []
        self.responses: Dict[str, CommandResult] = {}
        self.side_effects: Dict[str, callable] = {}

    def respond(self, prefix: str, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self.responses[prefix] = CommandResult((), returncode, stdout, stderr)

    def on(self, prefix: str, effect) -> None:
        self.side_effects[prefix] = effect

    def commands(self, prefix: str) -> List[List[str]]:
        return [call for call in self.calls if " ".join(call).startswith(prefix)]

    async def __call__(self, args, *, timeout: float = 30.0, env: Optional[dict] = None) -> CommandResult:
        args = list(args)
        self.calls.append(args)
        line = " ".join(args)
        for prefix, effect in self.side_effects.items():
            if line.startswith(prefix):
                effect(args)
        for prefix, result in self.responses.items():
            if line.startswith(prefix):
                return CommandResult(tuple(args), result.returncode, result.stdout, result.stderr)
        return CommandResult(tuple(args), 0, "", "")


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


class FakeSupervisor:
    """Stands in for ProcessSupervisor without starting real processes.

    Sessions named in ``failing`` never come up; those named in
    ``finished`` exit 0 inside their health window. Those named in
    ``hanging`` stay in their health check until cancelled, and
    ``health_check_entered`` is set once one of them is waiting.
    ``exit_codes`` sets what :meth:`wait` reports.
    """

    def __init__(self):
        self.spawned: List[Session] = []
        self.terminated: List[Session] = []
        self.failing: set = set()
        self.finished: set = set()
        self.exit_codes: Dict[str, int] = {}
        self.hanging: set = set()
        self.health_check_entered = asyncio.Event()

    async def spawn(self, command, args=(), bound_devices=(), *, name=None, env=None, display=None, cwd=None):
        session = Session(
            name=name or command,
            command=(command, *args),
            devices=tuple(Path(d) for d in bound_devices),
            display=display,
        )
        session.state = SessionState.STARTING
        self.spawned.append(session)
        return session

    async def require_healthy(self, session, timeout_seconds=None):
        if session.name in self.hanging:
            self.health_check_entered.set()
            await asyncio.Event().wait()
        if session.name in self.failing:
            session.state = SessionState.FAILED_TO_START
            session.returncode = 1
            raise FailedToStart(f"{session.name} failed to start")
        if session.name in self.finished:
            session.state = SessionState.FAILED_TO_START
            session.returncode = 0
            raise FailedToStart(f"{session.name} failed to start (exit 0)")
        session.state = SessionState.HEALTHY
        return session

    async def wait(self, session):
        session.returncode = self.exit_codes.get(session.name, 0)
        return session.returncode

    async def terminate(self, session):
        self.terminated.append(session)
        if session.state != SessionState.FAILED_TO_START:
            session.state = SessionState.TERMINATED

    @staticmethod
    def names(sessions) -> List[str]:
        return [s.name for s in sessions]


@pytest.fixture
def fake_supervisor() -> FakeSupervisor:
    return FakeSupervisor()

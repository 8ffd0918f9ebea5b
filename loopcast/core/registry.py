"""
Resource Registry - single owner of every live resource in the process.

The registry is created once by :class:`LoopcastSystem` and injected into
each component that creates or destroys resources, so the cleanup path can
discover everything that is still alive. All read-modify-write access goes
through ``lock``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Set

from .logging_utils import get_module_logger

if TYPE_CHECKING:
    from .device_allocator import PoolHandle
    from .environment import PhoneEnvironment
    from .process_supervisor import Session


class DeviceState(Enum):
    FREE = "free"
    RESERVED = "reserved"
    BOUND = "bound"


@dataclass
class VideoDevice:
    path: Path
    state: DeviceState = DeviceState.FREE
    owner: Optional[str] = None
    session_id: Optional[str] = None

    @property
    def number(self) -> Optional[int]:
        digits = self.path.name[len("video"):]
        return int(digits) if digits.isdecimal() else None


class ResourceRegistry:

    def __init__(self):
        self.logger = get_module_logger("ResourceRegistry")
        self.lock = asyncio.Lock()

        self.sessions: Dict[str, "Session"] = {}
        self.environments: Dict[str, "PhoneEnvironment"] = {}
        self.devices: Dict[Path, VideoDevice] = {}
        self.pipes: Set[Path] = set()
        self.audio_modules: List[int] = []
        self.pool: Optional["PoolHandle"] = None

        self._profile_locks: Dict[str, asyncio.Lock] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._cancel_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Cancellation

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def request_cancel(self) -> None:
        if not self._cancel_event.is_set():
            self.logger.info("Cancellation requested")
            self._cancel_event.set()

    async def wait_cancelled(self) -> None:
        await self._cancel_event.wait()

    # ------------------------------------------------------------------
    # In-flight orchestration tasks

    def track_task(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def pending_tasks(self) -> List[asyncio.Task]:
        return [task for task in self._tasks if not task.done()]

    # ------------------------------------------------------------------
    # Sessions

    async def add_session(self, session: "Session") -> None:
        async with self.lock:
            self.sessions[session.session_id] = session

    async def discard_session(self, session: "Session") -> None:
        async with self.lock:
            self.sessions.pop(session.session_id, None)

    def snapshot_sessions(self) -> List["Session"]:
        return list(self.sessions.values())

    # ------------------------------------------------------------------
    # Environments

    def profile_lock(self, profile_name: str) -> asyncio.Lock:
        lock = self._profile_locks.get(profile_name)
        if lock is None:
            lock = asyncio.Lock()
            self._profile_locks[profile_name] = lock
        return lock

    def active_environment_names(self) -> List[str]:
        return list(self.environments.keys())

    # ------------------------------------------------------------------
    # Devices

    def device(self, path: Path) -> VideoDevice:
        """Return the tracked record for ``path``; caller must hold ``lock``."""
        record = self.devices.get(path)
        if record is None:
            record = VideoDevice(path=path)
            self.devices[path] = record
        return record

    def reserved_paths(self) -> Set[Path]:
        return {path for path, dev in self.devices.items() if dev.state != DeviceState.FREE}


__all__ = ["ResourceRegistry", "VideoDevice", "DeviceState"]

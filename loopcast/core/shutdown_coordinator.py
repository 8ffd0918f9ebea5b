"""
Shutdown Coordinator - Single point of control for process-wide cleanup.

Every exit path (normal return, unhandled error, SIGINT, SIGTERM) funnels
into :meth:`ShutdownCoordinator.cleanup`. The first caller runs the
teardown sequence; later or concurrent callers wait for that same run to
finish instead of starting another one.

Cleanup sequence:
1. Set the cancellation flag and cancel in-flight orchestration tasks
2. Tear down every active phone environment
3. Terminate every session still tracked by the supervisor
4. Run registered cleanup callbacks, in registration order
5. Remove named pipes and unload audio modules created by this process
6. Unload the loopback kernel module if this process loaded it
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Tuple

from .audio import remove_pipe, unload_audio_module
from .device_allocator import DeviceAllocator
from .environment import EnvironmentOrchestrator
from .external import CommandRunner, run_command
from .logging_utils import get_module_logger
from .process_supervisor import ProcessSupervisor
from .registry import ResourceRegistry

CleanupCallback = Callable[[], Awaitable[None]]


class ShutdownState(Enum):
    RUNNING = "running"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


class ShutdownCoordinator:

    def __init__(
        self,
        registry: ResourceRegistry,
        supervisor: ProcessSupervisor,
        orchestrator: EnvironmentOrchestrator,
        allocator: DeviceAllocator,
        runner: CommandRunner = run_command,
    ):
        self.registry = registry
        self.supervisor = supervisor
        self.orchestrator = orchestrator
        self.allocator = allocator
        self.runner = runner
        self.logger = get_module_logger("ShutdownCoordinator")

        self._state = ShutdownState.RUNNING
        self._lock = asyncio.Lock()
        self._done = asyncio.Event()
        self._callbacks: List[CleanupCallback] = []
        self._run_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> ShutdownState:
        return self._state

    @property
    def is_shutting_down(self) -> bool:
        return self._state == ShutdownState.IN_PROGRESS

    @property
    def is_complete(self) -> bool:
        return self._state == ShutdownState.COMPLETE

    def register_cleanup(self, callback: CleanupCallback) -> None:
        """Register an async callback run during step 4 of cleanup."""
        self._callbacks.append(callback)
        self.logger.debug("Registered cleanup callback: %s", getattr(callback, "__name__", callback))

    async def cleanup(self, reason: str = "exit") -> None:
        """Release every resource this process still holds; runs at most once."""
        async with self._lock:
            first = self._state == ShutdownState.RUNNING
            if first:
                self._state = ShutdownState.IN_PROGRESS

        if not first:
            self.logger.debug("Cleanup already %s, waiting (requested by %s)", self._state.value, reason)
            await self._done.wait()
            return

        # The steps run in their own task so cancelling a caller cannot cut them short.
        self._run_task = asyncio.ensure_future(self._run(reason))
        await asyncio.shield(self._run_task)

    async def _run(self, reason: str) -> None:
        started = time.monotonic()
        self.logger.info("Cleaning up resources (reason: %s)", reason)
        try:
            for label, step in self._steps():
                try:
                    await step()
                except Exception as e:
                    self.logger.error("Error in cleanup step '%s': %s", label, e, exc_info=True)
        finally:
            self._state = ShutdownState.COMPLETE
            self._done.set()
        self.logger.info("Cleanup complete in %.3fs", time.monotonic() - started)

    async def wait_for_cleanup(self) -> None:
        await self._done.wait()

    def _steps(self) -> List[Tuple[str, CleanupCallback]]:
        return [
            ("cancel", self._cancel_in_flight),
            ("environments", self.orchestrator.teardown_all),
            ("sessions", self.supervisor.terminate_all),
            ("callbacks", self._run_callbacks),
            ("audio", self._release_audio),
            ("loopback module", self._unload_pool),
        ]

    async def _cancel_in_flight(self) -> None:
        self.registry.request_cancel()
        current = asyncio.current_task()
        pending = [task for task in self.registry.pending_tasks() if task is not current]
        if not pending:
            return
        self.logger.info("Cancelling %d in-flight task(s)", len(pending))
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    async def _run_callbacks(self) -> None:
        for i, callback in enumerate(self._callbacks, 1):
            name = getattr(callback, "__name__", repr(callback))
            try:
                self.logger.debug("Starting cleanup %d/%d: %s", i, len(self._callbacks), name)
                await callback()
            except Exception as e:
                self.logger.error("Error in cleanup callback %s: %s", name, e, exc_info=True)

    async def _release_audio(self) -> None:
        for index in list(self.registry.audio_modules):
            try:
                await unload_audio_module(self.runner, self.registry, index)
            except Exception as e:
                self.logger.error("Error unloading audio module %d: %s", index, e)

        for pipe in list(self.registry.pipes):
            try:
                await remove_pipe(self.registry, pipe)
            except OSError as e:
                self.logger.error("Error removing pipe %s: %s", pipe, e)

    async def _unload_pool(self) -> None:
        if self.registry.pool is None:
            return
        await self.allocator.unload_pool()


__all__ = ["ShutdownCoordinator", "ShutdownState", "CleanupCallback"]

"""
Loopcast System - wires every component around one registry.

This is the facade used by the command router. It owns nothing itself:
all live resources are recorded in the shared :class:`ResourceRegistry`,
and :attr:`shutdown` is the only path that releases them.
"""

from typing import Optional

from .audio import VirtualMicrophone
from .configuration import Configuration
from .device_allocator import DeviceAllocator
from .display import DisplayManager
from .environment import EnvironmentOrchestrator
from .external import CommandRunner, run_command
from .logging_utils import get_module_logger
from .media import MediaController
from .orphan_cleanup import DisplaySweeper, sweep_display_processes
from .process_supervisor import ProcessSupervisor
from .registry import ResourceRegistry
from .shutdown_coordinator import ShutdownCoordinator


class LoopcastSystem:
    """
    Main coordinator for loopcast.

    Delegates to:
    - DeviceAllocator: loopback pool and device ownership
    - ProcessSupervisor: external process lifecycle
    - EnvironmentOrchestrator: phone environments
    - MediaController: streaming and capture jobs
    - VirtualMicrophone: the PulseAudio pipe source
    - ShutdownCoordinator: one-shot cleanup
    """

    def __init__(
        self,
        config: Configuration,
        registry: Optional[ResourceRegistry] = None,
        runner: CommandRunner = run_command,
        sweeper: DisplaySweeper = sweep_display_processes,
    ):
        self.logger = get_module_logger("LoopcastSystem")
        self.config = config
        self.registry = registry or ResourceRegistry()

        self.supervisor = ProcessSupervisor(config, self.registry)
        self.allocator = DeviceAllocator(config, self.registry, runner=runner)
        self.displays = DisplayManager(config, self.supervisor, runner=runner)
        self.microphone = VirtualMicrophone(config, self.registry, runner=runner)
        self.orchestrator = EnvironmentOrchestrator(
            config,
            self.registry,
            self.supervisor,
            self.allocator,
            self.displays,
            sweeper=sweeper,
        )
        self.media = MediaController(
            config,
            self.registry,
            self.supervisor,
            self.allocator,
            self.microphone,
            self.displays,
        )
        self.shutdown = ShutdownCoordinator(
            self.registry,
            self.supervisor,
            self.orchestrator,
            self.allocator,
            runner=runner,
        )

    async def cleanup(self, reason: str = "exit") -> None:
        await self.shutdown.cleanup(reason)

    async def hold(self) -> None:
        """Keep long-running resources alive until cancellation is requested."""
        self.logger.info("Running; press Ctrl+C to stop")
        await self.registry.wait_cancelled()


__all__ = ["LoopcastSystem"]

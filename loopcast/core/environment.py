"""
Environment Orchestrator - phone environments as a single unit.

A phone environment is a nested display, a desktop shell inside it, a
capture pipeline from that display into the profile's loopback device and,
optionally, an Android emulator whose camera reads that device. Setup is
sequential and all-or-nothing; teardown runs in reverse creation order.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from .configuration import Configuration, PhoneProfile
from .device_allocator import DeviceAllocator
from .display import DisplayManager
from .errors import InvalidParameter, LoopcastError, MissingDependency, SetupError, ShutdownInProgress
from .logging_utils import get_module_logger
from .orphan_cleanup import DisplaySweeper, sweep_display_processes
from .pipeline import FFMPEG, DisplayGrab, PipelineRequest, VideoDeviceSink, to_ffmpeg_args
from .process_supervisor import ProcessSupervisor, Session
from .registry import ResourceRegistry
from .validation import session_display_number, validate_device, validate_nested_display, validate_resolution

DEFAULT_LAUNCH = ("phone1",)

EMULATOR_FLAGS = (
    "-gpu", "on",
    "-no-snapshot-load",
    "-no-boot-anim",
    "-allow-host-audio",
    "-writable-system",
)


@dataclass(eq=False)
class PhoneEnvironment:
    profile: PhoneProfile
    owner: str
    display: Optional[Session] = None
    shell: Optional[Session] = None
    capture: Optional[Session] = None
    emulator: Optional[Session] = None
    device: Optional[Path] = None

    @property
    def name(self) -> str:
        return self.profile.name

    def sessions(self) -> List[Session]:
        """Started sessions in teardown order."""
        ordered = (self.emulator, self.capture, self.shell, self.display)
        return [session for session in ordered if session is not None]


SetupOutcome = Union[PhoneEnvironment, SetupError]


class EnvironmentOrchestrator:

    def __init__(
        self,
        config: Configuration,
        registry: ResourceRegistry,
        supervisor: ProcessSupervisor,
        allocator: DeviceAllocator,
        displays: DisplayManager,
        sweeper: DisplaySweeper = sweep_display_processes,
    ):
        self.config = config
        self.registry = registry
        self.supervisor = supervisor
        self.allocator = allocator
        self.displays = displays
        self.sweeper = sweeper
        self.logger = get_module_logger("EnvironmentOrchestrator")

    # ------------------------------------------------------------------
    # Lookup

    def profile(self, profile_name: str) -> PhoneProfile:
        profile = self.config.profile(profile_name)
        if profile is None:
            raise InvalidParameter(f"No configuration found for phone: {profile_name}")
        return profile

    def avd_path(self, profile_name: str) -> Path:
        return self.config.avd_home / f"{profile_name}.avd"

    @property
    def emulator_dir(self) -> Path:
        return self.config.android_sdk_path / "emulator"

    def get(self, profile_name: str) -> Optional[PhoneEnvironment]:
        return self.registry.environments.get(profile_name)

    def active(self) -> List[PhoneEnvironment]:
        return list(self.registry.environments.values())

    # ------------------------------------------------------------------
    # Setup

    async def setup(self, profile_name: str, *, with_emulator: bool = True) -> PhoneEnvironment:
        try:
            profile = self.profile(profile_name)
        except LoopcastError as exc:
            self.logger.error("Setup of %s failed at step 'validate': %s", profile_name, exc)
            raise SetupError(profile_name, "validate", exc) from exc
        return await self.setup_profile(profile, with_emulator=with_emulator)

    async def nested_display(
        self,
        display_number: int,
        resolution: Optional[str],
        device: Union[str, Path],
    ) -> PhoneEnvironment:
        """Nested display + shell + capture into ``device``, without a profile."""
        display_number = validate_nested_display(display_number)
        resolution = resolution or self.config.display_resolution(display_number)
        validate_resolution(resolution)
        device_path = self.allocator.resolve(device)
        profile = PhoneProfile(
            name=f"display{display_number}",
            camera_id="",
            display_number=display_number,
            device_name=device_path.name,
            device_path=device_path,
            resolution=resolution,
        )
        return await self.setup_profile(profile, with_emulator=False)

    async def setup_profile(self, profile: PhoneProfile, *, with_emulator: bool) -> PhoneEnvironment:
        async with self.registry.profile_lock(profile.name):
            env = PhoneEnvironment(profile=profile, owner=f"env:{profile.name}")
            step = "validate"
            try:
                self._check_cancelled()
                self._validate(profile, with_emulator)

                step = "teardown"
                await self._teardown_locked(profile.name, profile.display_number)

                step = "display"
                self._check_cancelled()
                env.display = await self.displays.start_display(profile.display_number, profile.resolution)

                step = "shell"
                self._check_cancelled()
                env.shell = await self.displays.start_shell(profile.display_number)
                if not await self.displays.set_size(profile.display_number, profile.resolution):
                    self.logger.warning("Could not resize %s to %s", profile.display, profile.resolution)

                step = "capture"
                self._check_cancelled()
                await self.allocator.claim(profile.device_path, env.owner)
                env.device = profile.device_path
                env.capture = await self._start_capture(env)

                if with_emulator:
                    step = "emulator"
                    self._check_cancelled()
                    env.emulator = await self._start_emulator(env)

            except asyncio.CancelledError:
                self.logger.warning("Setup of %s cancelled at step '%s'", profile.name, step)
                await self._dismantle(env)
                raise
            except Exception as exc:
                self.logger.error("Setup of %s failed at step '%s': %s", profile.name, step, exc)
                await self._dismantle(env)
                raise SetupError(profile.name, step, exc) from exc

            async with self.registry.lock:
                self.registry.environments[profile.name] = env

        self.logger.info(
            "Environment %s ready on %s -> %s", profile.name, profile.display, profile.device_path
        )
        return env

    def _check_cancelled(self) -> None:
        if self.registry.cancelled:
            raise ShutdownInProgress("Shutdown in progress")

    def _validate(self, profile: PhoneProfile, with_emulator: bool) -> None:
        validate_nested_display(profile.display_number)
        if with_emulator:
            if not self.avd_path(profile.name).is_dir():
                raise MissingDependency([f"{profile.name}.avd"], f"AVD not found: {profile.name}")
            if not self.emulator_dir.is_dir():
                raise MissingDependency(["emulator"], f"Android SDK emulator not found: {self.emulator_dir}")
        validate_device(profile.device_path)

    async def _start_capture(self, env: PhoneEnvironment) -> Session:
        profile = env.profile
        request = PipelineRequest(
            f"capture:{profile.name}",
            (DisplayGrab(
                display=f"{profile.display}.0",
                resolution=profile.resolution,
                framerate=self.config.capture_framerate,
            ),),
            (VideoDeviceSink(
                path=profile.device_path,
                codec=self.config.vcodec,
                pix_fmt=self.config.pix_fmt,
                threads=0,
            ),),
        )
        session = await self.supervisor.spawn(
            FFMPEG,
            to_ffmpeg_args(request),
            request.device_paths,
            name=request.name,
            display=profile.display_number,
        )
        session.owner = env.owner
        await self.allocator.bind(profile.device_path, env.owner, session.session_id)
        return await self._await_healthy(session)

    async def _start_emulator(self, env: PhoneEnvironment) -> Session:
        profile = env.profile
        args = [
            "-avd", profile.name,
            "-camera-back", profile.camera_id,
            "-camera-front", profile.camera_id,
            *EMULATOR_FLAGS,
        ]
        session = await self.supervisor.spawn(
            str(self.emulator_dir / "emulator"),
            args,
            name=f"emulator:{profile.name}",
            display=profile.display_number,
            cwd=self.emulator_dir,
        )
        return await self._await_healthy(session, self.config.health_check_timeout)

    async def _await_healthy(self, session: Session, timeout: Optional[float] = None) -> Session:
        try:
            return await self.supervisor.require_healthy(session, timeout)
        except BaseException:
            await self.supervisor.terminate(session)
            raise

    # ------------------------------------------------------------------
    # Teardown

    async def teardown(self, profile_name: str) -> bool:
        """Stop the environment named ``profile_name``; safe when nothing exists.

        Returns True if an active environment was stopped.
        """
        env = self.registry.environments.get(profile_name)
        if env is not None:
            display_number = env.profile.display_number
        else:
            profile = self.config.profile(profile_name)
            display_number = profile.display_number if profile else None

        async with self.registry.profile_lock(profile_name):
            return await self._teardown_locked(profile_name, display_number)

    async def _teardown_locked(self, profile_name: str, display_number: Optional[int]) -> bool:
        async with self.registry.lock:
            env = self.registry.environments.pop(profile_name, None)

        if env is not None:
            self.logger.info("Tearing down environment %s", profile_name)
            await self._dismantle(env, sweep=False)

        if display_number is not None:
            await self._sweep(display_number)
        return env is not None

    async def _dismantle(self, env: PhoneEnvironment, *, sweep: bool = True) -> None:
        for session in env.sessions():
            try:
                await self.supervisor.terminate(session)
            except Exception as exc:
                self.logger.error("Error stopping %s: %s", session.label, exc)

        if env.device is not None:
            await self.allocator.release(env.device, env.owner)
            env.device = None

        if sweep:
            await self._sweep(env.profile.display_number)

    async def _sweep(self, display_number: int) -> None:
        if display_number == session_display_number():
            self.logger.warning("Not sweeping :%d, it is the current desktop session", display_number)
            return
        try:
            swept = await asyncio.to_thread(self.sweeper, display_number)
        except Exception as exc:
            self.logger.warning("Sweep of display :%d failed: %s", display_number, exc)
            return
        if swept:
            self.logger.info("Swept %d stray process(es) from :%d", swept, display_number)

    async def teardown_all(self) -> None:
        for name in list(self.registry.environments):
            try:
                await self.teardown(name)
            except Exception as exc:
                self.logger.error("Error tearing down %s: %s", name, exc)

    # ------------------------------------------------------------------
    # Fan-out

    async def launch_many(
        self,
        profile_names: Iterable[str] = (),
        *,
        with_emulator: bool = True,
    ) -> Dict[str, SetupOutcome]:
        """Set up several profiles concurrently; each outcome is independent."""
        names = list(dict.fromkeys(profile_names)) or list(DEFAULT_LAUNCH)
        self.logger.info("Launching %d environment(s): %s", len(names), ", ".join(names))

        tasks = [
            self.registry.track_task(asyncio.create_task(self.setup(name, with_emulator=with_emulator)))
            for name in names
        ]
        task_results = await asyncio.gather(*tasks, return_exceptions=True)

        outcomes: Dict[str, SetupOutcome] = {}
        for name, result in zip(names, task_results):
            if isinstance(result, SetupError):
                outcomes[name] = result
            elif isinstance(result, BaseException):
                self.logger.error("Error launching %s: %s", name, result)
                outcomes[name] = SetupError(name, "setup", result)
            else:
                outcomes[name] = result

        ready = sum(1 for outcome in outcomes.values() if isinstance(outcome, PhoneEnvironment))
        self.logger.info("%d of %d environment(s) ready", ready, len(names))
        return outcomes


__all__ = ["EnvironmentOrchestrator", "PhoneEnvironment", "SetupOutcome", "DEFAULT_LAUNCH"]

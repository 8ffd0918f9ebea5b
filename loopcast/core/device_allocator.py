"""
Device Allocator - loopback video nodes and their logical ownership.

The kernel pool is created and destroyed as a whole (module load/unload);
individual nodes are only claimed and released logically. Number selection
is first-fit over ``0..device_scan_limit-1``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

from .configuration import Configuration
from .errors import AllocationError, DeviceNotFound, InvalidParameter, NoDeviceAvailable
from .external import CommandRunner, privileged, run_command
from .logging_utils import get_module_logger
from .registry import DeviceState, ResourceRegistry, VideoDevice
from .validation import validate_device, validate_resolution

MODULE_NAME = "v4l2loopback"
DEVICE_NAME_PATTERN = re.compile(r"^video([0-9]+)$")
PROC_MODULES = Path("/proc/modules")


@dataclass(frozen=True)
class PoolHandle:
    label: str
    count: int
    devices: Tuple[Path, ...]
    exclusive_caps: bool = True


class DeviceAllocator:

    def __init__(
        self,
        config: Configuration,
        registry: ResourceRegistry,
        runner: CommandRunner = run_command,
        proc_modules: Path = PROC_MODULES,
    ):
        self.config = config
        self.registry = registry
        self.runner = runner
        self.proc_modules = proc_modules
        self.logger = get_module_logger("DeviceAllocator")

    def device_path(self, number: int) -> Path:
        return self.config.device_dir / f"video{number}"

    # ------------------------------------------------------------------
    # Number search

    def next_free_device(self) -> Path:
        """First device path in the scan range that does not exist yet.

        Nothing is reserved: two calls without an intervening device creation
        return the same path. Concurrent callers must use
        :meth:`reserve_free_devices` instead.
        """
        for number in range(self.config.device_scan_limit):
            path = self.device_path(number)
            if not path.exists():
                self.logger.info("Found available device: %s", path)
                return path
        raise NoDeviceAvailable("No available video devices found")

    async def reserve_free_devices(self, count: int, owner: str) -> List[Path]:
        """Atomically reserve ``count`` absent device numbers for ``owner``."""
        if count <= 0:
            raise InvalidParameter(f"Invalid device count: {count}")

        async with self.registry.lock:
            taken = self.registry.reserved_paths()
            chosen: List[Path] = []
            for number in range(self.config.device_scan_limit):
                path = self.device_path(number)
                if path.exists() or path in taken:
                    continue
                chosen.append(path)
                if len(chosen) == count:
                    break

            if len(chosen) < count:
                raise NoDeviceAvailable(
                    f"Only {len(chosen)} of {count} video device numbers are free"
                )

            for path in chosen:
                record = self.registry.device(path)
                record.state = DeviceState.RESERVED
                record.owner = owner

        self.logger.debug("Reserved %s for %s", [str(p) for p in chosen], owner)
        return chosen

    # ------------------------------------------------------------------
    # Kernel pool

    def module_loaded(self) -> bool:
        try:
            with open(self.proc_modules, "r", encoding="utf-8") as handle:
                for line in handle:
                    if line.startswith(f"{MODULE_NAME} "):
                        return True
        except FileNotFoundError:
            return False
        return False

    async def create_pool(self, count: int, label: str, *, exclusive_caps: bool = True) -> PoolHandle:
        if self.registry.pool is not None:
            raise AllocationError(f"Loopback pool already created: {self.registry.pool.label}")
        if self.module_loaded():
            # Reloading with new parameters would need an unload we do not own.
            raise AllocationError(
                f"{MODULE_NAME} is already loaded; unload it before creating a new pool"
            )

        owner = f"pool:{label}"
        paths = await self.reserve_free_devices(count, owner)
        numbers = ",".join(path.name[len("video"):] for path in paths)

        self.logger.info("Setting up virtual camera: %s with %d devices", label, count)
        args = privileged(
            [
                "modprobe", MODULE_NAME,
                f"devices={count}",
                f"video_nr={numbers}",
                f"card_label={label}",
                f"exclusive_caps={1 if exclusive_caps else 0}",
            ],
            self.config.privilege_command,
        )
        try:
            result = await self.runner(args)
        except Exception:
            await self._release_all(paths, owner)
            raise

        if not result.ok:
            await self._release_all(paths, owner)
            raise AllocationError(
                f"Failed to load {MODULE_NAME}: {result.stderr.strip() or f'exit {result.returncode}'}"
            )

        # Confirm the reservation against the filesystem before handing out nodes.
        missing = [path for path in paths if not path.exists()]
        await self._release_all(paths, owner)
        if missing:
            self.registry.pool = PoolHandle(label, count, tuple(p for p in paths if p.exists()), exclusive_caps)
            raise AllocationError(
                f"{MODULE_NAME} loaded but devices did not appear: {', '.join(map(str, missing))}"
            )

        handle = PoolHandle(label=label, count=count, devices=tuple(paths), exclusive_caps=exclusive_caps)
        self.registry.pool = handle
        self.logger.info("Loopback pool ready: %s", ", ".join(map(str, paths)))
        return handle

    async def unload_pool(self) -> bool:
        """Best-effort module unload; removes every node of the pool at once."""
        args = privileged(["modprobe", "-r", MODULE_NAME], self.config.privilege_command)
        try:
            result = await self.runner(args)
        except Exception as exc:
            self.logger.warning("Could not unload %s: %s", MODULE_NAME, exc)
            return False
        if not result.ok:
            self.logger.warning("Could not unload %s: %s", MODULE_NAME, result.stderr.strip())
            return False
        self.registry.pool = None
        self.logger.info("Unloaded %s", MODULE_NAME)
        return True

    # ------------------------------------------------------------------
    # Resolution

    def resolve(self, name_or_path: Union[str, Path]) -> Path:
        """Map a literal path, a ``videoN`` name or a profile name to a device path."""
        text = str(name_or_path).strip()
        if not text:
            raise DeviceNotFound("Empty device name")
        if text.startswith("/"):
            return Path(text)
        if DEVICE_NAME_PATTERN.match(text):
            return self.config.device_dir / text
        profile = self.config.profile(text)
        if profile is not None:
            return profile.device_path
        raise DeviceNotFound(f"Unknown device or profile: {text}")

    def resolve_existing(self, name_or_path: Union[str, Path]) -> Path:
        return validate_device(self.resolve(name_or_path))

    # ------------------------------------------------------------------
    # Logical ownership

    async def claim(self, path: Path, owner: str) -> VideoDevice:
        async with self.registry.lock:
            record = self.registry.device(path)
            if record.state != DeviceState.FREE and record.owner != owner:
                raise AllocationError(f"Device {path} is held by {record.owner}")
            record.state = DeviceState.RESERVED
            record.owner = owner
            return record

    async def bind(self, path: Path, owner: str, session_id: str) -> VideoDevice:
        async with self.registry.lock:
            record = self.registry.device(path)
            if record.owner != owner:
                raise AllocationError(f"Device {path} is not reserved by {owner}")
            record.state = DeviceState.BOUND
            record.session_id = session_id
            return record

    async def release(self, path: Path, owner: str) -> None:
        async with self.registry.lock:
            self._release_locked(path, owner)

    async def _release_all(self, paths: List[Path], owner: str) -> None:
        async with self.registry.lock:
            for path in paths:
                self._release_locked(path, owner)

    def _release_locked(self, path: Path, owner: str) -> None:
        record = self.registry.devices.get(path)
        if record is None or record.owner != owner:
            return
        record.state = DeviceState.FREE
        record.owner = None
        record.session_id = None

    def is_free(self, path: Path) -> bool:
        record = self.registry.devices.get(path)
        return record is None or record.state == DeviceState.FREE

    # ------------------------------------------------------------------
    # Device utilities

    async def set_format(self, device: Path, fmt: str = "RGB24", resolution: Optional[str] = None) -> None:
        device = validate_device(device)
        width, height = validate_resolution(resolution or self.config.resolution)
        caps = f"video/x-raw,format={fmt},width={width},height={height}"
        result = await self.runner(["v4l2loopback-ctl", "set-caps", caps, str(device)])
        if not result.ok:
            raise AllocationError(f"Could not set format {fmt} on {device}: {result.stderr.strip()}")

    async def list_devices(self) -> str:
        result = await self.runner(["v4l2-ctl", "--list-devices"])
        return result.stdout


__all__ = ["DeviceAllocator", "PoolHandle", "MODULE_NAME"]

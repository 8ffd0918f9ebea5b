"""Virtual microphone: a FIFO exposed to PulseAudio as a pipe source."""

from __future__ import annotations

import contextlib
import os
import stat
from pathlib import Path
from typing import Optional

from .configuration import Configuration
from .errors import AllocationError, InvalidParameter
from .external import CommandRunner, run_command
from .logging_utils import get_module_logger
from .registry import ResourceRegistry
from .validation import validate_audio_input


def is_fifo(path: Path) -> bool:
    try:
        return stat.S_ISFIFO(os.stat(path).st_mode)
    except FileNotFoundError:
        return False


class VirtualMicrophone:

    def __init__(
        self,
        config: Configuration,
        registry: ResourceRegistry,
        runner: CommandRunner = run_command,
    ):
        self.config = config
        self.registry = registry
        self.runner = runner
        self.logger = get_module_logger("VirtualMicrophone")
        self.module_index: Optional[int] = None

    @property
    def pipe_path(self) -> Path:
        return self.config.mic_pipe

    async def ensure_pipe(self, path: Optional[Path] = None) -> Path:
        """Create the FIFO if absent; only FIFOs created here are removed on cleanup."""
        path = Path(path or self.pipe_path)
        if path.exists():
            if not is_fifo(path):
                raise InvalidParameter(f"{path} exists and is not a named pipe")
            return path

        try:
            os.mkfifo(path)
        except FileExistsError:
            if not is_fifo(path):
                raise InvalidParameter(f"{path} exists and is not a named pipe")
            return path
        except OSError as exc:
            raise AllocationError(f"Could not create named pipe {path}: {exc}") from exc

        async with self.registry.lock:
            self.registry.pipes.add(path)
        self.logger.info("Created named pipe %s", path)
        return path

    async def create(self) -> int:
        """Load ``module-pipe-source`` on the mic pipe and make it the default source."""
        pipe = await self.ensure_pipe()
        config = self.config
        result = await self.runner([
            "pactl", "load-module", "module-pipe-source",
            f"source_name={config.mic_source_name}",
            f"file={pipe}",
            f"format={config.audio_format}",
            f"rate={config.audio_rate}",
            f"channels={config.audio_channels}",
        ])
        if not result.ok:
            raise AllocationError(f"Could not load PulseAudio pipe source: {result.stderr.strip()}")

        try:
            index = int(result.stdout.strip().splitlines()[-1])
        except (ValueError, IndexError) as exc:
            raise AllocationError(f"Unexpected pactl output: {result.stdout!r}") from exc

        async with self.registry.lock:
            self.registry.audio_modules.append(index)
        self.module_index = index

        default = await self.runner(["pactl", "set-default-source", config.mic_source_name])
        if not default.ok:
            self.logger.warning("Could not make %s the default source", config.mic_source_name)

        self.logger.info("Virtual microphone %s ready (module %d)", config.mic_source_name, index)
        return index

    async def verify(self) -> None:
        """Confirm PulseAudio now lists the microphone source."""
        await validate_audio_input(self.runner, self.config.mic_source_name)
        self.logger.debug("Audio input %s present", self.config.mic_source_name)

    async def remove(self) -> None:
        if self.module_index is not None:
            await unload_audio_module(self.runner, self.registry, self.module_index)
            self.module_index = None
        await remove_pipe(self.registry, self.pipe_path)


async def unload_audio_module(runner: CommandRunner, registry: ResourceRegistry, index: int) -> bool:
    logger = get_module_logger("VirtualMicrophone")
    result = await runner(["pactl", "unload-module", str(index)])
    async with registry.lock:
        if index in registry.audio_modules:
            registry.audio_modules.remove(index)
    if not result.ok:
        logger.warning("Could not unload audio module %d: %s", index, result.stderr.strip())
    return result.ok


async def remove_pipe(registry: ResourceRegistry, path: Path) -> None:
    async with registry.lock:
        created = path in registry.pipes
        registry.pipes.discard(path)
    if created:
        with contextlib.suppress(FileNotFoundError):
            path.unlink()
        get_module_logger("VirtualMicrophone").info("Removed named pipe %s", path)


__all__ = ["VirtualMicrophone", "is_fifo", "unload_audio_module", "remove_pipe"]

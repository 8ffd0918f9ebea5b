"""One-shot external commands (modprobe, pactl, xdpyinfo, v4l2 tools)."""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping, Optional, Sequence

from .errors import MissingDependency
from .logging_utils import get_module_logger

logger = get_module_logger("External")


@dataclass(frozen=True)
class CommandResult:
    args: tuple
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


CommandRunner = Callable[..., Awaitable[CommandResult]]


async def run_command(
    args: Sequence[str],
    *,
    timeout: float = 30.0,
    env: Optional[Mapping[str, str]] = None,
) -> CommandResult:
    """Run ``args`` to completion and capture its output.

    Raises MissingDependency when the executable cannot be found. A command
    that outlives ``timeout`` is killed and reported with return code -9.
    """
    logger.info("Executing: %s", " ".join(args))

    merged_env = None
    if env:
        merged_env = os.environ.copy()
        merged_env.update(env)

    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=merged_env,
        )
    except FileNotFoundError as exc:
        raise MissingDependency([args[0]]) from exc

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.error("Command timed out after %.0fs: %s", timeout, " ".join(args))
        process.kill()
        stdout, stderr = await process.communicate()
        return CommandResult(tuple(args), -9, stdout.decode(errors="replace"), stderr.decode(errors="replace"))

    result = CommandResult(
        tuple(args),
        process.returncode,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )
    if not result.ok:
        logger.error("Failed to execute: %s (exit %d): %s", " ".join(args), result.returncode, result.stderr.strip())
    return result


def privileged(args: Sequence[str], privilege_command: str) -> list[str]:
    """Prefix ``args`` with the privilege helper unless already root."""
    if privilege_command and os.geteuid() != 0:
        return privilege_command.split() + list(args)
    return list(args)


__all__ = ["CommandResult", "CommandRunner", "run_command", "privileged"]

"""Nested X displays and the window shell that runs inside them."""

from __future__ import annotations

import re
from typing import List, Optional

from .configuration import Configuration
from .errors import InvalidParameter
from .external import CommandRunner, run_command
from .logging_utils import get_module_logger
from .process_supervisor import ProcessSupervisor, Session
from .validation import validate_display, validate_resolution

DIMENSIONS_PATTERN = re.compile(r"dimensions:\s+(\d+x\d+)\s+pixels")


def xephyr_args(display_number: int, resolution: str) -> List[str]:
    return ["-screen", resolution, "-s", "off", "-reset", "-terminate", f":{display_number}"]


def parse_dimensions(xdpyinfo_output: str) -> Optional[str]:
    match = DIMENSIONS_PATTERN.search(xdpyinfo_output)
    return match.group(1) if match else None


class DisplayManager:
    """Starts the pieces of a nested desktop on ``:N``."""

    def __init__(
        self,
        config: Configuration,
        supervisor: ProcessSupervisor,
        runner: CommandRunner = run_command,
    ):
        self.config = config
        self.supervisor = supervisor
        self.runner = runner
        self.logger = get_module_logger("DisplayManager")

    async def start_display(self, display_number: int, resolution: str) -> Session:
        """Start Xephyr and wait until it has survived the settle window."""
        display_number = validate_display(display_number)
        validate_resolution(resolution)
        session = await self.supervisor.spawn(
            "Xephyr",
            xephyr_args(display_number, resolution),
            name=f"Xephyr:{display_number}",
        )
        session.display = display_number
        try:
            await self.supervisor.require_healthy(session, self.config.display_settle_seconds)
        except Exception:
            await self.supervisor.terminate(session)
            raise
        self.logger.info("Nested display :%d running at %s", display_number, resolution)
        return session

    async def start_shell(self, display_number: int) -> Session:
        session = await self.supervisor.spawn(
            "dbus-run-session",
            ["gnome-shell"],
            name=f"gnome-shell:{display_number}",
            display=display_number,
        )
        try:
            await self.supervisor.require_healthy(session, self.config.display_settle_seconds)
        except Exception:
            await self.supervisor.terminate(session)
            raise
        return session

    async def set_size(self, display_number: int, resolution: str) -> bool:
        """Best-effort ``xrandr --size`` inside the nested display."""
        try:
            result = await self.runner(
                ["xrandr", "--size", resolution],
                env={"DISPLAY": f":{display_number}"},
                timeout=10.0,
            )
        except Exception as exc:
            self.logger.warning("xrandr on :%d failed: %s", display_number, exc)
            return False
        return result.ok

    async def detect_resolution(self, display: str = ":0") -> str:
        result = await self.runner(["xdpyinfo", "-display", display], timeout=10.0)
        resolution = parse_dimensions(result.stdout) if result.ok else None
        if resolution is None:
            raise InvalidParameter(f"Could not determine resolution of display {display}")
        self.logger.debug("Display %s resolution: %s", display, resolution)
        return resolution


__all__ = ["DisplayManager", "xephyr_args", "parse_dimensions"]

"""Validation gate: side-effect-free checks run before any work starts.

Parameter predicates return the normalised value or raise. System checks
(memory, load, tools) are pre-flight only: they reserve nothing and a
later exhaustion is not prevented.
"""

from __future__ import annotations

import os
import re
import shutil
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

import psutil

from .errors import DeviceNotFound, InvalidParameter, MissingDependency, ResourceExhausted
from .external import CommandRunner
from .logging_utils import get_module_logger

logger = get_module_logger("Validation")

RESOLUTION_PATTERN = re.compile(r"^(\d+)x(\d+)$")
SESSION_DISPLAY_PATTERN = re.compile(r"^(?:unix)?:(\d+)(?:\.\d+)?$")
FRAMERATE_MIN = 1
FRAMERATE_MAX = 120


def validate_resolution(resolution: str) -> Tuple[int, int]:
    match = RESOLUTION_PATTERN.match(str(resolution).strip())
    if not match:
        raise InvalidParameter(f"Invalid resolution format: {resolution}")
    width, height = int(match.group(1)), int(match.group(2))
    if width <= 0 or height <= 0:
        raise InvalidParameter(f"Invalid resolution format: {resolution}")
    return width, height


def validate_framerate(framerate: Union[int, str]) -> int:
    if isinstance(framerate, bool):
        raise InvalidParameter(f"Invalid framerate: {framerate}")
    if isinstance(framerate, int):
        value = framerate
    else:
        text = str(framerate).strip()
        if not text.isdecimal():
            raise InvalidParameter(f"Invalid framerate: {framerate}")
        value = int(text)
    if value < FRAMERATE_MIN or value > FRAMERATE_MAX:
        raise InvalidParameter(f"Invalid framerate: {framerate}")
    return value


def validate_display(display: Union[int, str]) -> int:
    text = str(display).strip().lstrip(":")
    if not text.isdecimal() or int(text) <= 0:
        raise InvalidParameter(f"Invalid display number: {display}")
    return int(text)


def session_display_number() -> Optional[int]:
    """Number of the local X display this process runs on, if any."""
    match = SESSION_DISPLAY_PATTERN.match(os.environ.get("DISPLAY", "").strip())
    return int(match.group(1)) if match else None


def validate_nested_display(display: Union[int, str]) -> int:
    """Like :func:`validate_display`, but refuses the invoking session's own display."""
    number = validate_display(display)
    if number == session_display_number():
        raise InvalidParameter(f"Display :{number} is the current desktop session, pick another number")
    return number


def validate_device(path: Union[str, Path]) -> Path:
    """Return ``path`` if it exists right now."""
    device = Path(path)
    if not device.exists():
        raise DeviceNotFound(f"Device not found: {device}")
    return device


def validate_input_file(path: Union[str, Path], kind: str = "Input") -> Path:
    candidate = Path(path)
    if not candidate.is_file():
        raise InvalidParameter(f"{kind} file not found: {candidate}")
    return candidate


def current_load_percent() -> float:
    """One-minute load average as a percentage of available CPUs."""
    load1, _, _ = psutil.getloadavg()
    cpus = psutil.cpu_count() or 1
    return (load1 / cpus) * 100.0


def available_memory_mb() -> int:
    return int(psutil.virtual_memory().available // (1024 * 1024))


def check_system_resources(min_memory_mb: int = 1000, max_load_pct: float = 80) -> None:
    mem_available = available_memory_mb()
    if mem_available < min_memory_mb:
        raise ResourceExhausted(
            f"Insufficient memory: {mem_available}MB available, {min_memory_mb}MB required"
        )

    load = current_load_percent()
    if load > max_load_pct:
        raise ResourceExhausted(f"System under heavy load: {load:.0f}% (limit {max_load_pct}%)")

    logger.debug("Resources ok: %dMB free, load %.0f%%", mem_available, load)


async def validate_audio_input(runner: CommandRunner, source: str) -> None:
    """Check that PulseAudio is running and exposes ``source``."""
    running = await runner(["pactl", "info"])
    if not running.ok:
        raise MissingDependency(["pulseaudio"], "PulseAudio is not running")

    sources = await runner(["pactl", "list", "short", "sources"])
    if not sources.ok:
        raise MissingDependency(["pactl"], f"Could not list audio sources: {sources.stderr.strip()}")
    names = {line.split("\t")[1] for line in sources.stdout.splitlines() if line.count("\t") >= 1}
    if source not in names:
        raise DeviceNotFound(f"Audio input not found: {source}")


def find_missing_tools(tools: Iterable[str]) -> List[str]:
    return [tool for tool in tools if shutil.which(tool) is None]


def check_required_tools(tools: Iterable[str]) -> None:
    missing = find_missing_tools(tools)
    if missing:
        raise MissingDependency(missing)


def check_directory(path: Path, *, writable: bool = False) -> Path:
    if not path.is_dir():
        raise DeviceNotFound(f"Required directory not found: {path}")
    if writable and not os.access(path, os.W_OK):
        raise InvalidParameter(f"Directory not writable: {path}")
    return path


__all__ = [
    "validate_resolution",
    "validate_framerate",
    "validate_display",
    "validate_nested_display",
    "session_display_number",
    "validate_device",
    "validate_input_file",
    "check_system_resources",
    "check_required_tools",
    "validate_audio_input",
    "find_missing_tools",
    "check_directory",
    "current_load_percent",
    "available_memory_mb",
]

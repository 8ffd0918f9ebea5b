"""Typed, validated, process-wide configuration.

``load_configuration`` is all-or-nothing: the first malformed value raises
:class:`ConfigError` and no partially built configuration escapes. Every
other component trusts the values it receives from here.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from .config_manager import ConfigManager, get_config_manager
from .errors import ConfigError, LoopcastError
from .logging_utils import get_module_logger
from .paths import CONFIG_PATH, DEFAULT_ANDROID_SDK_PATH, DEFAULT_AVD_HOME, DEFAULT_LOG_FILE
from .validation import check_directory, validate_framerate, validate_resolution

logger = get_module_logger("Configuration")

PROFILE_PATTERN = re.compile(r"^(webcam[0-9]+):([0-9]+):(video[0-9]+)$")
PROFILE_KEY_PREFIX = "phone."
DISPLAY_KEY_PREFIX = "display."

DEFAULT_PROFILES: Dict[str, str] = {
    "phone1": "webcam1:2:video2",
    "phone2": "webcam1:3:video3",
    "phone3": "webcam1:4:video4",
    "phone4": "webcam1:5:video5",
    "phone5": "webcam1:6:video6",
}


@dataclass(frozen=True)
class PhoneProfile:
    """One phone environment: virtual camera id, nested display, loopback node."""

    name: str
    camera_id: str
    display_number: int
    device_name: str
    device_path: Path
    resolution: str

    @property
    def display(self) -> str:
        return f":{self.display_number}"


def parse_profile(
    name: str,
    text: str,
    device_dir: Path,
    resolution: str,
) -> PhoneProfile:
    match = PROFILE_PATTERN.match(text.strip())
    if not match:
        raise ConfigError(f"Invalid phone configuration for {name}: {text}")
    camera_id, display, device_name = match.groups()
    display_number = int(display)
    if display_number <= 0:
        raise ConfigError(f"Invalid display number for {name}: {display}")
    return PhoneProfile(
        name=name,
        camera_id=camera_id,
        display_number=display_number,
        device_name=device_name,
        device_path=device_dir / device_name,
        resolution=resolution,
    )


@dataclass(frozen=True)
class Configuration:
    # Video defaults
    resolution: str = "1280x720"
    framerate: int = 30
    capture_framerate: int = 15
    pix_fmt: str = "yuv420p"
    vcodec: str = "rawvideo"
    video_bitrate: str = "2M"
    gop_size: int = 24
    preset: str = "fast"

    # Audio defaults
    audio_rate: int = 44100
    audio_channels: int = 2
    audio_format: str = "s16le"
    audio_bitrate: str = "32k"
    audio_codec: str = "aac"
    mic_source_name: str = "VirtualMic"

    # Paths
    pipe_dir: Path = Path("/tmp")
    mic_pipe: Path = Path("/tmp/Microphone")
    android_sdk_path: Path = DEFAULT_ANDROID_SDK_PATH
    avd_home: Path = DEFAULT_AVD_HOME
    log_file: Path = DEFAULT_LOG_FILE
    device_dir: Path = Path("/dev")

    # Supervision
    device_scan_limit: int = 10
    health_check_timeout: float = 5.0
    health_check_interval: float = 1.0
    display_settle_seconds: float = 2.0
    terminate_timeout: float = 5.0
    error_marker: str = "Error"

    # Pre-flight
    min_memory_mb: int = 1000
    max_load_pct: int = 80
    required_tools: Tuple[str, ...] = ("ffmpeg", "v4l2-ctl", "v4l2loopback-ctl")
    privilege_command: str = "sudo"

    # Logging
    log_level: str = "info"
    log_max_bytes: int = 10 * 1024 * 1024

    profiles: Mapping[str, PhoneProfile] = field(default_factory=lambda: MappingProxyType({}))
    display_resolutions: Mapping[int, str] = field(default_factory=lambda: MappingProxyType({}))

    def profile(self, name: str) -> Optional[PhoneProfile]:
        return self.profiles.get(name)

    def display_resolution(self, display_number: int) -> str:
        return self.display_resolutions.get(display_number, self.resolution)

    def with_overrides(self, **changes: Any) -> "Configuration":
        return replace(self, **changes)


# ---------------------------------------------------------------------------
# Strict coercion helpers: a bad value aborts loading instead of defaulting.


def _require(raw: Dict[str, str], key: str, default: Any, convert: Callable[[str], Any]) -> Any:
    if key not in raw or raw[key] == "":
        return default
    try:
        return convert(raw[key])
    except (LoopcastError, ValueError) as exc:
        raise ConfigError(f"Invalid value for {key}: {raw[key]!r} ({exc})") from exc


def _positive_int(text: str) -> int:
    value = int(text)
    if value <= 0:
        raise ValueError("must be a positive integer")
    return value


def _positive_float(text: str) -> float:
    value = float(text)
    if value <= 0:
        raise ValueError("must be positive")
    return value


def _resolution(text: str) -> str:
    validate_resolution(text)
    return text.strip()


def _path(text: str) -> Path:
    return Path(text).expanduser()


def build_configuration(raw: Dict[str, str], *, check_paths: bool = True) -> Configuration:
    defaults = Configuration()

    resolution = _require(raw, "resolution", defaults.resolution, _resolution)
    device_dir = _require(raw, "device_dir", defaults.device_dir, _path)
    pipe_dir = _require(raw, "pipe_dir", defaults.pipe_dir, _path)

    display_resolutions: Dict[int, str] = {}
    for key in sorted(raw):
        if key.startswith(DISPLAY_KEY_PREFIX):
            suffix = key[len(DISPLAY_KEY_PREFIX):]
            if not suffix.isdecimal() or int(suffix) <= 0:
                raise ConfigError(f"Invalid display number in key: {key}")
            display_resolutions[int(suffix)] = _require(raw, key, resolution, _resolution)

    profile_entries = {
        key[len(PROFILE_KEY_PREFIX):]: value
        for key, value in raw.items()
        if key.startswith(PROFILE_KEY_PREFIX)
    } or dict(DEFAULT_PROFILES)

    profiles: Dict[str, PhoneProfile] = {}
    for name, text in sorted(profile_entries.items()):
        profile = parse_profile(name, text, device_dir, resolution)
        profiles[name] = replace(
            profile,
            resolution=display_resolutions.get(profile.display_number, resolution),
        )

    tools_text = raw.get("required_tools")
    required_tools = tuple(tools_text.split()) if tools_text is not None else defaults.required_tools

    config = Configuration(
        resolution=resolution,
        framerate=_require(raw, "framerate", defaults.framerate, validate_framerate),
        capture_framerate=_require(raw, "capture_framerate", defaults.capture_framerate, validate_framerate),
        pix_fmt=raw.get("pix_fmt", defaults.pix_fmt),
        vcodec=raw.get("vcodec", defaults.vcodec),
        video_bitrate=raw.get("video_bitrate", defaults.video_bitrate),
        gop_size=_require(raw, "gop_size", defaults.gop_size, _positive_int),
        preset=raw.get("preset", defaults.preset),
        audio_rate=_require(raw, "audio_rate", defaults.audio_rate, _positive_int),
        audio_channels=_require(raw, "audio_channels", defaults.audio_channels, _positive_int),
        audio_format=raw.get("audio_format", defaults.audio_format),
        audio_bitrate=raw.get("audio_bitrate", defaults.audio_bitrate),
        audio_codec=raw.get("audio_codec", defaults.audio_codec),
        mic_source_name=raw.get("mic_source_name", defaults.mic_source_name),
        pipe_dir=pipe_dir,
        mic_pipe=_require(raw, "mic_pipe", pipe_dir / "Microphone", _path),
        android_sdk_path=_require(raw, "android_sdk_path", defaults.android_sdk_path, _path),
        avd_home=_require(raw, "avd_home", defaults.avd_home, _path),
        log_file=_require(raw, "log_file", defaults.log_file, _path),
        device_dir=device_dir,
        device_scan_limit=_require(raw, "device_scan_limit", defaults.device_scan_limit, _positive_int),
        health_check_timeout=_require(raw, "health_check_timeout", defaults.health_check_timeout, _positive_float),
        health_check_interval=_require(raw, "health_check_interval", defaults.health_check_interval, _positive_float),
        display_settle_seconds=_require(raw, "display_settle_seconds", defaults.display_settle_seconds, _positive_float),
        terminate_timeout=_require(raw, "terminate_timeout", defaults.terminate_timeout, _positive_float),
        error_marker=raw.get("error_marker", defaults.error_marker),
        min_memory_mb=_require(raw, "min_memory_mb", defaults.min_memory_mb, int),
        max_load_pct=_require(raw, "max_load_pct", defaults.max_load_pct, _positive_int),
        required_tools=required_tools,
        privilege_command=raw.get("privilege_command", defaults.privilege_command),
        log_level=raw.get("log_level", defaults.log_level),
        log_max_bytes=_require(raw, "log_max_bytes", defaults.log_max_bytes, _positive_int),
        profiles=MappingProxyType(profiles),
        display_resolutions=MappingProxyType(display_resolutions),
    )

    if check_paths:
        _check_paths(config)

    return config


def _check_paths(config: Configuration) -> None:
    try:
        check_directory(config.pipe_dir, writable=True)
        check_directory(config.android_sdk_path)
    except LoopcastError as exc:
        raise ConfigError(str(exc)) from exc

    log_dir = config.log_file.parent
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigError(f"Log directory not writable: {log_dir} ({exc})") from exc
    if not os.access(log_dir, os.W_OK):
        raise ConfigError(f"Log directory not writable: {log_dir}")


def load_configuration(
    config_path: Path = CONFIG_PATH,
    *,
    check_paths: bool = True,
    manager: Optional[ConfigManager] = None,
) -> Configuration:
    manager = manager or get_config_manager()
    try:
        raw = manager.read_config(config_path)
    except OSError as exc:
        raise ConfigError(f"Failed to read config {config_path}: {exc}") from exc
    config = build_configuration(raw, check_paths=check_paths)
    logger.debug("Loaded configuration from %s (%d profiles)", config_path, len(config.profiles))
    return config


async def load_configuration_async(
    config_path: Path = CONFIG_PATH,
    *,
    check_paths: bool = True,
    manager: Optional[ConfigManager] = None,
) -> Configuration:
    manager = manager or get_config_manager()
    try:
        raw = await manager.read_config_async(config_path)
    except OSError as exc:
        raise ConfigError(f"Failed to read config {config_path}: {exc}") from exc
    config = build_configuration(raw, check_paths=check_paths)
    logger.debug("Loaded configuration from %s (%d profiles)", config_path, len(config.profiles))
    return config


__all__ = [
    "Configuration",
    "PhoneProfile",
    "PROFILE_PATTERN",
    "DEFAULT_PROFILES",
    "parse_profile",
    "build_configuration",
    "load_configuration",
    "load_configuration_async",
]

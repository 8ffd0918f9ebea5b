"""
Typed pipeline requests and their translation to ffmpeg arguments.

A :class:`PipelineRequest` names its inputs, filters and outputs as data.
:func:`to_ffmpeg_args` is the only place that knows ffmpeg's flag syntax.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple, Union

from .errors import InvalidParameter

FFMPEG = "ffmpeg"
COMMON_ARGS = ("-hide_banner", "-nostats")


# ---------------------------------------------------------------------------
# Sources


@dataclass(frozen=True)
class FileSource:
    path: Path
    loop: Optional[int] = -1
    realtime: bool = True


@dataclass(frozen=True)
class ImageSource:
    path: Path


@dataclass(frozen=True)
class DisplayGrab:
    display: str = ":0.0"
    resolution: str = "1280x720"
    framerate: int = 30
    offset: Optional[Tuple[int, int]] = (0, 0)


@dataclass(frozen=True)
class DeviceSource:
    path: Path


@dataclass(frozen=True)
class AudioCapture:
    backend: str = "pulse"
    name: str = "default"


Source = Union[FileSource, ImageSource, DisplayGrab, DeviceSource, AudioCapture]


# ---------------------------------------------------------------------------
# Sinks


@dataclass(frozen=True)
class VideoDeviceSink:
    path: Path
    codec: str = "rawvideo"
    pix_fmt: str = "yuv420p"
    bitrate: Optional[str] = None
    preset: Optional[str] = None
    gop_size: Optional[int] = None
    threads: Optional[int] = None


@dataclass(frozen=True)
class PipeSink:
    """Raw PCM into a FIFO or file (the virtual microphone pipe by default)."""

    path: Path
    fmt: str = "s16le"
    rate: int = 44100
    channels: int = 2
    codec: Optional[str] = None
    bitrate: Optional[str] = None


Sink = Union[VideoDeviceSink, PipeSink]


@dataclass(frozen=True)
class PipelineRequest:
    name: str
    sources: Tuple[Source, ...]
    sinks: Tuple[Sink, ...]
    video_filters: Tuple[str, ...] = ()
    audio_filters: Tuple[str, ...] = ()
    filter_complex: Optional[str] = None
    extra_args: Tuple[str, ...] = field(default=())

    @property
    def device_paths(self) -> Tuple[Path, ...]:
        return tuple(sink.path for sink in self.sinks if isinstance(sink, VideoDeviceSink))

    @property
    def pipe_paths(self) -> Tuple[Path, ...]:
        return tuple(sink.path for sink in self.sinks if isinstance(sink, PipeSink))


# ---------------------------------------------------------------------------
# Translation


def _source_args(source: Source) -> List[str]:
    if isinstance(source, FileSource):
        args: List[str] = []
        if source.loop is not None:
            args += ["-stream_loop", str(source.loop)]
        if source.realtime:
            args.append("-re")
        return args + ["-i", str(source.path)]

    if isinstance(source, ImageSource):
        return ["-loop", "1", "-re", "-i", str(source.path)]

    if isinstance(source, DisplayGrab):
        target = source.display
        if source.offset is not None:
            x, y = source.offset
            target = f"{target}+{x},{y}"
        return ["-f", "x11grab", "-r", str(source.framerate), "-s", source.resolution, "-i", target]

    if isinstance(source, DeviceSource):
        return ["-f", "v4l2", "-i", str(source.path)]

    if isinstance(source, AudioCapture):
        return ["-f", source.backend, "-i", source.name]

    raise InvalidParameter(f"Unsupported pipeline source: {source!r}")


def _sink_args(sink: Sink) -> List[str]:
    if isinstance(sink, VideoDeviceSink):
        args = ["-an", "-vcodec", sink.codec]
        if sink.bitrate:
            args += ["-b:v", sink.bitrate]
        if sink.preset:
            args += ["-preset", sink.preset]
        if sink.gop_size:
            args += ["-g", str(sink.gop_size)]
        args += ["-pix_fmt", sink.pix_fmt]
        if sink.threads is not None:
            args += ["-threads", str(sink.threads)]
        return args + ["-f", "v4l2", str(sink.path)]

    if isinstance(sink, PipeSink):
        args = ["-vn"]
        if sink.codec:
            args += ["-c:a", sink.codec]
        if sink.bitrate:
            args += ["-b:a", sink.bitrate]
        return args + [
            "-f", sink.fmt,
            "-ar", str(sink.rate),
            "-ac", str(sink.channels),
            "-y", str(sink.path),
        ]

    raise InvalidParameter(f"Unsupported pipeline sink: {sink!r}")


def to_ffmpeg_args(request: PipelineRequest) -> List[str]:
    """Lower ``request`` to an ffmpeg argument list (without the executable).

    Video filters attach to the first video device output and audio filters
    to the first pipe output, since ffmpeg output options bind to the next
    output on the command line.
    """
    if not request.sources:
        raise InvalidParameter(f"Pipeline {request.name} has no input")
    if not request.sinks:
        raise InvalidParameter(f"Pipeline {request.name} has no output")
    if request.filter_complex and (request.video_filters or request.audio_filters):
        raise InvalidParameter("A filter graph cannot be combined with simple filters")

    args: List[str] = list(COMMON_ARGS)
    for source in request.sources:
        args += _source_args(source)

    if request.filter_complex:
        args += ["-filter_complex", request.filter_complex]
    args += list(request.extra_args)

    video_filters_pending = bool(request.video_filters)
    audio_filters_pending = bool(request.audio_filters)
    for sink in request.sinks:
        if video_filters_pending and isinstance(sink, VideoDeviceSink):
            args += ["-vf", ",".join(request.video_filters)]
            video_filters_pending = False
        if audio_filters_pending and isinstance(sink, PipeSink):
            args += ["-af", ",".join(request.audio_filters)]
            audio_filters_pending = False
        args += _sink_args(sink)

    if video_filters_pending or audio_filters_pending:
        raise InvalidParameter(f"Pipeline {request.name} has filters without a matching output")

    return args


__all__ = [
    "FFMPEG",
    "FileSource",
    "ImageSource",
    "DisplayGrab",
    "DeviceSource",
    "AudioCapture",
    "VideoDeviceSink",
    "PipeSink",
    "PipelineRequest",
    "to_ffmpeg_args",
]

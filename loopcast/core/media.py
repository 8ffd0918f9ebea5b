"""
Media operations - streaming, capture and audio jobs.

Every operation validates its parameters, builds a :class:`PipelineRequest`
and hands it to :meth:`MediaController.run`, which binds the output
devices, supervises the ffmpeg session and releases the devices again.
"""

from __future__ import annotations

import re
import uuid
from pathlib import Path
from typing import List, Optional, Tuple, Union

from .audio import VirtualMicrophone
from .configuration import Configuration
from .device_allocator import DeviceAllocator
from .display import DisplayManager
from .errors import FailedToStart, InvalidParameter
from .logging_utils import get_module_logger
from .pipeline import (
    FFMPEG,
    AudioCapture,
    DeviceSource,
    DisplayGrab,
    FileSource,
    ImageSource,
    PipelineRequest,
    PipeSink,
    VideoDeviceSink,
    to_ffmpeg_args,
)
from .process_supervisor import ProcessSupervisor, Session
from .registry import ResourceRegistry
from .validation import validate_display, validate_framerate, validate_input_file, validate_resolution

DevicePath = Union[str, Path, None]

AUDIO_EFFECTS_CHAIN = (
    "volume=1.5",
    "highpass=f=200",
    "lowpass=f=3000",
    "compand=.3|.3:1|1:-90/-60|-60/-40|-40/-30|-20/-20:6:0:-90:0.2",
)
DESKTOP_AUDIO_COMPRESSOR = "acompressor=threshold=0.089:ratio=9:attack=200:release=1000"
LAYOUT_LINE = re.compile(r"^(?P<window>[^:]+):(?P<width>\d+)x(?P<height>\d+)\+(?P<x>\d+)\+(?P<y>\d+)$")


def read_region_file(path: Union[str, Path]) -> Tuple[int, int, int, int]:
    """Parse ``x,y,width,height`` from the first line of ``path``."""
    path = validate_input_file(path, "Region file")
    first_line = path.read_text(encoding="utf-8").strip().splitlines()
    parts = first_line[0].split(",") if first_line else []
    try:
        x, y, width, height = (int(p.strip()) for p in parts)
    except ValueError as exc:
        raise InvalidParameter(f"Invalid region in {path}: expected x,y,width,height") from exc
    if x < 0 or y < 0:
        raise InvalidParameter(f"Invalid region offset in {path}: {x},{y}")
    validate_resolution(f"{width}x{height}")
    return x, y, width, height


def read_layout_file(path: Union[str, Path]) -> List[Tuple[str, str, Tuple[int, int]]]:
    """Parse ``window:WIDTHxHEIGHT+X+Y`` lines; blank lines and ``#`` comments are skipped."""
    path = validate_input_file(path, "Layout file")
    windows = []
    for number, line in enumerate(path.read_text(encoding="utf-8").splitlines(), 1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        match = LAYOUT_LINE.match(line)
        if not match:
            raise InvalidParameter(f"Invalid layout entry on line {number} of {path}: {line}")
        resolution = f"{match['width']}x{match['height']}"
        validate_resolution(resolution)
        windows.append((match["window"], resolution, (int(match["x"]), int(match["y"]))))
    if not windows:
        raise InvalidParameter(f"No windows listed in {path}")
    return windows


class MediaController:

    def __init__(
        self,
        config: Configuration,
        registry: ResourceRegistry,
        supervisor: ProcessSupervisor,
        allocator: DeviceAllocator,
        microphone: VirtualMicrophone,
        displays: DisplayManager,
    ):
        self.config = config
        self.registry = registry
        self.supervisor = supervisor
        self.allocator = allocator
        self.microphone = microphone
        self.displays = displays
        self.logger = get_module_logger("MediaController")

    # ------------------------------------------------------------------
    # Plumbing

    def output_device(self, device: DevicePath) -> Path:
        if device:
            return self.allocator.resolve_existing(device)
        pool = self.registry.pool
        if pool is not None and pool.devices:
            return self.allocator.resolve_existing(pool.devices[0])
        raise InvalidParameter("No output device given and no loopback pool created")

    def video_sink(self, device: Path, **overrides) -> VideoDeviceSink:
        options = {"codec": self.config.vcodec, "pix_fmt": self.config.pix_fmt}
        options.update(overrides)
        return VideoDeviceSink(path=device, **options)

    def pipe_sink(self, path: Optional[Path] = None, **overrides) -> PipeSink:
        options = {
            "fmt": self.config.audio_format,
            "rate": self.config.audio_rate,
            "channels": self.config.audio_channels,
        }
        options.update(overrides)
        return PipeSink(path=Path(path or self.config.mic_pipe), **options)

    async def launch(self, request: PipelineRequest) -> Session:
        """Claim the output devices and spawn ffmpeg for ``request``."""
        args = to_ffmpeg_args(request)
        owner = f"{request.name}-{uuid.uuid4().hex[:6]}"

        for pipe in request.pipe_paths:
            if pipe == self.config.mic_pipe:
                await self.microphone.ensure_pipe(pipe)

        claimed = []
        try:
            for device in request.device_paths:
                await self.allocator.claim(device, owner)
                claimed.append(device)

            session = await self.supervisor.spawn(FFMPEG, args, request.device_paths, name=request.name)
            session.owner = owner
            for device in claimed:
                await self.allocator.bind(device, owner, session.session_id)
        except BaseException:
            for device in claimed:
                await self.allocator.release(device, owner)
            raise
        return session

    async def start(self, request: PipelineRequest) -> Session:
        """Launch ``request`` and return it once it passed its health check."""
        session = await self.launch(request)
        try:
            await self.supervisor.require_healthy(session)
        except BaseException:
            await self.finish(session)
            raise
        return session

    async def run(self, request: PipelineRequest) -> int:
        """Run ``request`` until ffmpeg exits; returns its exit status.

        A job that finishes cleanly inside the health window counts as done.
        """
        session = await self.launch(request)
        try:
            try:
                await self.supervisor.require_healthy(session)
            except FailedToStart:
                if session.returncode != 0:
                    raise
                returncode = 0
            else:
                returncode = await self.supervisor.wait(session)
        finally:
            await self.finish(session)

        if returncode:
            self.logger.error("%s exited with status %d", request.name, returncode)
        else:
            self.logger.info("%s finished", request.name)
        return returncode or 0

    async def finish(self, session: Session) -> None:
        await self.supervisor.terminate(session)
        for device in session.devices:
            await self.allocator.release(device, session.owner or "")

    # ------------------------------------------------------------------
    # Video streaming

    async def stream_video(self, input_file, device: DevicePath = None, loop: int = -1) -> int:
        source = FileSource(validate_input_file(input_file), loop=loop)
        target = self.output_device(device)
        return await self.run(PipelineRequest("stream-video", (source,), (self.video_sink(target),)))

    async def stream_image(self, image_file, device: DevicePath = None) -> int:
        source = ImageSource(validate_input_file(image_file, "Image file"))
        target = self.output_device(device)
        return await self.run(PipelineRequest("stream-image", (source,), (self.video_sink(target),)))

    async def stream_transpose(self, input_file, device: DevicePath = None, transpose: int = 4) -> int:
        if not 0 <= int(transpose) <= 7:
            raise InvalidParameter(f"Invalid transpose value: {transpose}")
        return await self._filtered_stream("stream-transpose", input_file, device, f"transpose={int(transpose)}")

    async def stream_codec(
        self,
        input_file,
        device: DevicePath = None,
        codec: Optional[str] = None,
        bitrate: Optional[str] = None,
    ) -> int:
        source = FileSource(validate_input_file(input_file))
        sink = self.video_sink(
            self.output_device(device),
            codec=codec or self.config.vcodec,
            bitrate=bitrate or self.config.video_bitrate,
        )
        return await self.run(PipelineRequest("stream-codec", (source,), (sink,)))

    async def stream_scale(
        self,
        input_file,
        device: DevicePath = None,
        scale: str = "1280:720",
        keep_original: bool = False,
    ) -> int:
        if keep_original:
            return await self.stream_video(input_file, device)
        width, _, height = scale.partition(":")
        validate_resolution(f"{width}x{height}")
        return await self._filtered_stream("stream-scale", input_file, device, f"scale={scale}")

    async def stream_correct(
        self,
        input_file,
        device: DevicePath = None,
        brightness: float = 0.0,
        contrast: float = 1.0,
        saturation: float = 1.0,
    ) -> int:
        if not -1.0 <= brightness <= 1.0:
            raise InvalidParameter(f"Brightness out of range [-1, 1]: {brightness}")
        eq = f"eq=brightness={brightness}:contrast={contrast}:saturation={saturation}"
        return await self._filtered_stream("stream-correct", input_file, device, eq)

    async def stream_overlay(
        self,
        input_file,
        overlay_file,
        device: DevicePath = None,
        position: str = "10:10",
    ) -> int:
        sources = (
            FileSource(validate_input_file(input_file)),
            FileSource(validate_input_file(overlay_file, "Overlay file"), loop=None, realtime=False),
        )
        request = PipelineRequest(
            "stream-overlay",
            sources,
            (self.video_sink(self.output_device(device)),),
            filter_complex=f"overlay={position}",
        )
        return await self.run(request)

    async def stream_filters(self, input_file, device: DevicePath = None, filters: str = "") -> int:
        if not filters.strip():
            raise InvalidParameter("No video filters given")
        return await self._filtered_stream("stream-filters", input_file, device, filters.strip())

    async def _filtered_stream(self, name: str, input_file, device: DevicePath, video_filter: str) -> int:
        source = FileSource(validate_input_file(input_file))
        request = PipelineRequest(
            name,
            (source,),
            (self.video_sink(self.output_device(device)),),
            video_filters=(video_filter,),
        )
        return await self.run(request)

    async def stream_to_mic(self, input_file, device: DevicePath = None, mic_pipe: Optional[Path] = None) -> int:
        """Video into the loopback device and the soundtrack into the mic pipe."""
        source = FileSource(validate_input_file(input_file))
        sinks = (self.video_sink(self.output_device(device)), self.pipe_sink(mic_pipe))
        return await self.run(PipelineRequest("stream-to-mic", (source,), sinks))

    async def stream_video_audio_quality(
        self,
        input_file,
        device: DevicePath = None,
        audio_bitrate: Optional[str] = None,
        video_bitrate: Optional[str] = None,
        codec: Optional[str] = None,
    ) -> int:
        """Like :meth:`stream_to_mic`, with separate video and audio bitrates."""
        source = FileSource(validate_input_file(input_file))
        sinks = (
            self.video_sink(
                self.output_device(device),
                codec=codec or self.config.vcodec,
                bitrate=video_bitrate or self.config.video_bitrate,
            ),
            self.pipe_sink(
                codec=self.config.audio_codec,
                bitrate=audio_bitrate or self.config.audio_bitrate,
            ),
        )
        return await self.run(PipelineRequest("stream-video-audio-quality", (source,), sinks))

    async def copy_video(self, input_device: DevicePath, output_device: DevicePath) -> int:
        source_path = self.allocator.resolve_existing(input_device)
        target = self.output_device(output_device)
        if source_path == target:
            raise InvalidParameter(f"Input and output device are the same: {target}")
        sink = self.video_sink(target, threads=0)
        return await self.run(PipelineRequest("copy-video", (DeviceSource(source_path),), (sink,)))

    # ------------------------------------------------------------------
    # Screen capture

    async def capture_window(
        self,
        resolution: Optional[str] = None,
        framerate: Optional[int] = None,
        device: DevicePath = None,
        display: str = ":0.0",
        offset: Tuple[int, int] = (0, 0),
    ) -> int:
        if offset[0] < 0 or offset[1] < 0:
            raise InvalidParameter(f"Invalid capture offset: {offset[0]},{offset[1]}")
        grab = DisplayGrab(
            display=display,
            resolution=self._resolution(resolution),
            framerate=validate_framerate(framerate or self.config.framerate),
            offset=tuple(offset),
        )
        return await self._capture("capture-window", grab, device)

    async def capture_screen(
        self,
        framerate: Optional[int] = None,
        device: DevicePath = None,
        display: str = ":0.0",
    ) -> int:
        rate = validate_framerate(framerate or self.config.framerate)
        target = self.output_device(device)
        resolution = await self.displays.detect_resolution(display.split(".")[0])
        grab = DisplayGrab(display=display, resolution=resolution, framerate=rate, offset=None)
        return await self._capture("capture-screen", grab, target)

    async def capture_area(
        self,
        x: int = 0,
        y: int = 0,
        width: int = 1280,
        height: int = 720,
        device: DevicePath = None,
    ) -> int:
        if x < 0 or y < 0:
            raise InvalidParameter(f"Invalid capture offset: {x},{y}")
        resolution = self._resolution(f"{width}x{height}")
        grab = DisplayGrab(resolution=resolution, framerate=self.config.framerate, offset=(x, y))
        return await self._capture("capture-area", grab, device)

    async def capture_region(self, region_file, device: DevicePath = None) -> int:
        x, y, width, height = read_region_file(region_file)
        return await self.capture_area(x, y, width, height, device)

    async def capture_nested(
        self,
        display_number: int = 2,
        resolution: Optional[str] = None,
        device: DevicePath = None,
    ) -> int:
        display_number = validate_display(display_number)
        grab = DisplayGrab(
            display=f":{display_number}.0",
            resolution=self._resolution(resolution or self.config.display_resolution(display_number)),
            framerate=self.config.capture_framerate,
        )
        return await self._capture("capture-nested", grab, device)

    async def capture_layout(self, layout_file, device: DevicePath = None, display: str = ":0.0") -> int:
        """Capture each window of ``layout_file`` in turn into one device.

        Stops at the first capture that exits with a non-zero status.
        """
        windows = read_layout_file(layout_file)
        target = self.output_device(device)
        for window, resolution, offset in windows:
            self.logger.info("Capturing window %s (%s at %d,%d)", window, resolution, *offset)
            grab = DisplayGrab(
                display=display,
                resolution=resolution,
                framerate=self.config.capture_framerate,
                offset=offset,
            )
            returncode = await self._capture(f"capture-layout:{window}", grab, target)
            if returncode:
                return returncode
        return 0

    async def _capture(self, name: str, grab: DisplayGrab, device: DevicePath) -> int:
        sink = self.video_sink(self.output_device(device), threads=0)
        return await self.run(PipelineRequest(name, (grab,), (sink,)))

    def _resolution(self, resolution: Optional[str]) -> str:
        text = resolution or self.config.resolution
        validate_resolution(text)
        return text

    async def capture_desktop_audio(
        self,
        device: DevicePath = None,
        display: str = ":0.0",
        resolution: Optional[str] = None,
        framerate: Optional[int] = None,
    ) -> int:
        """Desktop video into the loopback device and desktop audio into the mic pipe."""
        resolution = self._resolution(resolution)
        grab = DisplayGrab(
            display=display,
            resolution=resolution,
            framerate=validate_framerate(framerate or self.config.framerate),
            offset=None,
        )
        sinks = (
            self.video_sink(
                self.output_device(device),
                gop_size=self.config.gop_size,
                bitrate=self.config.video_bitrate if self.config.vcodec != "rawvideo" else None,
            ),
            self.pipe_sink(),
        )
        request = PipelineRequest(
            "capture-desktop-audio",
            (grab, AudioCapture("alsa", "default")),
            sinks,
            video_filters=(f"scale={resolution.replace('x', ':')}",),
            audio_filters=(DESKTOP_AUDIO_COMPRESSOR,),
        )
        return await self.run(request)

    # ------------------------------------------------------------------
    # Audio into the virtual microphone

    async def stream_audio(self, input_file) -> int:
        source = FileSource(validate_input_file(input_file))
        return await self.run(PipelineRequest("stream-audio", (source,), (self.pipe_sink(),)))

    async def stream_audio_quality(
        self,
        input_file,
        bitrate: Optional[str] = None,
        codec: Optional[str] = None,
    ) -> int:
        source = FileSource(validate_input_file(input_file))
        sink = self.pipe_sink(
            codec=codec or self.config.audio_codec,
            bitrate=bitrate or self.config.audio_bitrate,
        )
        return await self.run(PipelineRequest("stream-audio-quality", (source,), (sink,)))

    async def apply_audio_effects(self, input_file, output: Optional[Path] = None) -> int:
        source = FileSource(validate_input_file(input_file), loop=None, realtime=False)
        request = PipelineRequest(
            "apply-audio-effects",
            (source,),
            (self.pipe_sink(output),),
            audio_filters=AUDIO_EFFECTS_CHAIN,
        )
        return await self.run(request)

    async def setup_compression(
        self,
        input_file,
        threshold: float = 0.089,
        ratio: float = 9,
        attack: float = 200,
        release: float = 1000,
    ) -> int:
        if ratio < 1:
            raise InvalidParameter(f"Compression ratio must be >= 1: {ratio}")
        compressor = f"acompressor=threshold={threshold}:ratio={ratio}:attack={attack}:release={release}"
        source = FileSource(validate_input_file(input_file), loop=None, realtime=False)
        request = PipelineRequest(
            "setup-compression",
            (source,),
            (self.pipe_sink(),),
            audio_filters=(compressor,),
        )
        return await self.run(request)

    async def mix_audio(self, first_input, second_input, output: Optional[Path] = None) -> int:
        sources = (
            FileSource(validate_input_file(first_input), loop=None, realtime=False),
            FileSource(validate_input_file(second_input), loop=None, realtime=False),
        )
        request = PipelineRequest(
            "mix-audio",
            sources,
            (self.pipe_sink(output),),
            filter_complex="amix=inputs=2:duration=first:dropout_transition=2",
        )
        return await self.run(request)

    async def stream_audio_loop(self, input_file, duration: int = 0, fade: int = 0) -> int:
        if duration < 0 or fade < 0:
            raise InvalidParameter("Duration and fade must not be negative")
        if fade and fade * 2 > duration:
            raise InvalidParameter(f"Fade of {fade}s does not fit a {duration}s loop")
        filters = [f"aloop=loop=-1:size={duration}"]
        if fade:
            filters += [f"afade=t=in:st=0:d={fade}", f"afade=t=out:st={duration - fade}:d={fade}"]
        source = FileSource(validate_input_file(input_file))
        request = PipelineRequest(
            "stream-audio-loop",
            (source,),
            (self.pipe_sink(),),
            audio_filters=tuple(filters),
        )
        return await self.run(request)


__all__ = ["MediaController", "read_region_file", "read_layout_file", "AUDIO_EFFECTS_CHAIN"]

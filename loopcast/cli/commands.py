"""
Command router - maps a command name to a component call.

Each :class:`CommandSpec` declares its arguments, the external tools it
needs beyond the configured ones, and whether it keeps resources alive
until interrupted. :func:`dispatch` runs the pre-flight gate and then the
handler.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional, Tuple

from loopcast.core.environment import PhoneEnvironment
from loopcast.core.errors import SetupError
from loopcast.core.logging_utils import get_module_logger
from loopcast.core.system import LoopcastSystem
from loopcast.core.validation import check_required_tools, check_system_resources

logger = get_module_logger("CommandRouter")

Handler = Callable[[LoopcastSystem, argparse.Namespace], Awaitable[int]]
ArgumentBuilder = Callable[[argparse.ArgumentParser], None]

DISPLAY_TOOLS = ("Xephyr", "dbus-run-session", "gnome-shell")


@dataclass(frozen=True)
class CommandSpec:
    name: str
    help: str
    handler: Handler
    arguments: Optional[ArgumentBuilder] = None
    tools: Tuple[str, ...] = ()
    preflight: bool = True


# ---------------------------------------------------------------------------
# Shared argument groups


def _device_option(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--device", help="Output device: /dev/videoN, videoN or a phone profile name")


def _input_file(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("input_file", type=Path, help="Input media file")
    _device_option(parser)


def _offset(text: str) -> Tuple[int, int]:
    x, sep, y = text.partition(",")
    if not sep or not x.strip().isdecimal() or not y.strip().isdecimal():
        raise argparse.ArgumentTypeError(f"expected X,Y, got {text!r}")
    return int(x), int(y)


def _audio_input(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("input_file", type=Path, help="Input audio or video file")


# ---------------------------------------------------------------------------
# Devices and microphone


def _args_setup_camera(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--devices", type=int, default=2, help="Number of loopback devices (default: 2)")
    parser.add_argument("--label", default="VirtualCam", help="Card label (default: VirtualCam)")
    parser.add_argument("--mic", action="store_true", help="Also create the virtual microphone")
    parser.add_argument("--keep", action="store_true", help="Leave the devices loaded and exit")


async def _setup_camera(system: LoopcastSystem, args: argparse.Namespace) -> int:
    pool = await system.allocator.create_pool(args.devices, args.label)
    print(await system.allocator.list_devices(), end="")
    if args.keep:
        # Cleanup only unloads a pool the registry still tracks.
        system.registry.pool = None
        for device in pool.devices:
            print(device)
        return 0
    if args.mic:
        await system.microphone.create()
        await system.microphone.verify()
    await system.hold()
    return 0


async def _next_device(system: LoopcastSystem, args: argparse.Namespace) -> int:
    print(system.allocator.next_free_device())
    return 0


def _args_set_format(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("device", help="Loopback device")
    parser.add_argument("--format", dest="fmt", default="RGB24", help="Pixel format (default: RGB24)")
    parser.add_argument("--resolution", help="WIDTHxHEIGHT (default: configured resolution)")


async def _set_format(system: LoopcastSystem, args: argparse.Namespace) -> int:
    device = system.allocator.resolve_existing(args.device)
    await system.allocator.set_format(device, args.fmt, args.resolution)
    return 0


async def _virtual_mic(system: LoopcastSystem, args: argparse.Namespace) -> int:
    await system.microphone.create()
    await system.microphone.verify()
    await system.hold()
    return 0


# ---------------------------------------------------------------------------
# Video streaming


def _args_stream_video(parser: argparse.ArgumentParser) -> None:
    _input_file(parser)
    parser.add_argument("--loop", type=int, default=-1, help="Loop count, -1 for forever (default: -1)")


async def _stream_video(system: LoopcastSystem, args: argparse.Namespace) -> int:
    return await system.media.stream_video(args.input_file, args.device, args.loop)


def _args_stream_image(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("image_file", type=Path, help="Image to stream")
    _device_option(parser)


async def _stream_image(system: LoopcastSystem, args: argparse.Namespace) -> int:
    return await system.media.stream_image(args.image_file, args.device)


def _args_stream_transpose(parser: argparse.ArgumentParser) -> None:
    _input_file(parser)
    parser.add_argument("--transpose", type=int, default=4, help="ffmpeg transpose value 0-7 (default: 4)")


async def _stream_transpose(system: LoopcastSystem, args: argparse.Namespace) -> int:
    return await system.media.stream_transpose(args.input_file, args.device, args.transpose)


def _args_stream_codec(parser: argparse.ArgumentParser) -> None:
    _input_file(parser)
    parser.add_argument("--codec", help="Video codec (default: configured vcodec)")
    parser.add_argument("--bitrate", help="Video bitrate (default: configured video_bitrate)")


async def _stream_codec(system: LoopcastSystem, args: argparse.Namespace) -> int:
    return await system.media.stream_codec(args.input_file, args.device, args.codec, args.bitrate)


def _args_stream_scale(parser: argparse.ArgumentParser) -> None:
    _input_file(parser)
    parser.add_argument("--scale", default="1280:720", help="WIDTH:HEIGHT (default: 1280:720)")
    parser.add_argument("--keep-original", action="store_true", help="Stream without scaling")


async def _stream_scale(system: LoopcastSystem, args: argparse.Namespace) -> int:
    return await system.media.stream_scale(args.input_file, args.device, args.scale, args.keep_original)


def _args_stream_correct(parser: argparse.ArgumentParser) -> None:
    _input_file(parser)
    parser.add_argument("--brightness", type=float, default=0.0)
    parser.add_argument("--contrast", type=float, default=1.0)
    parser.add_argument("--saturation", type=float, default=1.0)


async def _stream_correct(system: LoopcastSystem, args: argparse.Namespace) -> int:
    return await system.media.stream_correct(
        args.input_file, args.device, args.brightness, args.contrast, args.saturation
    )


def _args_stream_overlay(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("input_file", type=Path, help="Input video file")
    parser.add_argument("overlay_file", type=Path, help="Overlay image")
    _device_option(parser)
    parser.add_argument("--position", default="10:10", help="Overlay X:Y (default: 10:10)")


async def _stream_overlay(system: LoopcastSystem, args: argparse.Namespace) -> int:
    return await system.media.stream_overlay(args.input_file, args.overlay_file, args.device, args.position)


def _args_stream_filters(parser: argparse.ArgumentParser) -> None:
    _input_file(parser)
    parser.add_argument("--filters", required=True, help="ffmpeg video filter chain")


async def _stream_filters(system: LoopcastSystem, args: argparse.Namespace) -> int:
    return await system.media.stream_filters(args.input_file, args.device, args.filters)


def _args_copy_video(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("input_device", help="Source device")
    parser.add_argument("output_device", help="Destination loopback device")


async def _copy_video(system: LoopcastSystem, args: argparse.Namespace) -> int:
    return await system.media.copy_video(args.input_device, args.output_device)


def _args_stream_to_mic(parser: argparse.ArgumentParser) -> None:
    _input_file(parser)
    parser.add_argument("--mic-pipe", type=Path, help="Microphone pipe (default: configured mic_pipe)")


async def _stream_to_mic(system: LoopcastSystem, args: argparse.Namespace) -> int:
    return await system.media.stream_to_mic(args.input_file, args.device, args.mic_pipe)


def _args_stream_video_audio_quality(parser: argparse.ArgumentParser) -> None:
    _input_file(parser)
    parser.add_argument("--audio-bitrate", help="Audio bitrate (default: configured audio_bitrate)")
    parser.add_argument("--video-bitrate", help="Video bitrate (default: configured video_bitrate)")
    parser.add_argument("--codec", help="Video codec (default: configured vcodec)")


async def _stream_video_audio_quality(system: LoopcastSystem, args: argparse.Namespace) -> int:
    return await system.media.stream_video_audio_quality(
        args.input_file, args.device, args.audio_bitrate, args.video_bitrate, args.codec
    )


# ---------------------------------------------------------------------------
# Screen capture


def _args_capture_window(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--resolution", help="WIDTHxHEIGHT (default: configured resolution)")
    parser.add_argument("--framerate", type=int, help="Frames per second (default: configured framerate)")
    _device_option(parser)
    parser.add_argument("--display", default=":0.0", help="X display (default: :0.0)")
    parser.add_argument("--offset", type=_offset, default=(0, 0), help="X,Y of the top-left corner (default: 0,0)")


async def _capture_window(system: LoopcastSystem, args: argparse.Namespace) -> int:
    return await system.media.capture_window(
        args.resolution, args.framerate, args.device, args.display, args.offset
    )


def _args_capture_screen(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--framerate", type=int)
    _device_option(parser)
    parser.add_argument("--display", default=":0.0")


async def _capture_screen(system: LoopcastSystem, args: argparse.Namespace) -> int:
    return await system.media.capture_screen(args.framerate, args.device, args.display)


def _args_capture_area(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--x", type=int, default=0)
    parser.add_argument("--y", type=int, default=0)
    parser.add_argument("--width", type=int, default=1280)
    parser.add_argument("--height", type=int, default=720)
    _device_option(parser)


async def _capture_area(system: LoopcastSystem, args: argparse.Namespace) -> int:
    return await system.media.capture_area(args.x, args.y, args.width, args.height, args.device)


def _args_capture_region(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("region_file", type=Path, help="File containing x,y,width,height")
    _device_option(parser)


async def _capture_region(system: LoopcastSystem, args: argparse.Namespace) -> int:
    return await system.media.capture_region(args.region_file, args.device)


def _args_capture_layout(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("layout_file", type=Path, help="File of window:WIDTHxHEIGHT+X+Y lines")
    _device_option(parser)
    parser.add_argument("--display", default=":0.0", help="X display (default: :0.0)")


async def _capture_layout(system: LoopcastSystem, args: argparse.Namespace) -> int:
    return await system.media.capture_layout(args.layout_file, args.device, args.display)


def _args_nested(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--display-number", type=int, default=2, help="Nested display number (default: 2)")
    parser.add_argument("--resolution", help="WIDTHxHEIGHT (default: configured for the display)")
    _device_option(parser)


async def _capture_nested(system: LoopcastSystem, args: argparse.Namespace) -> int:
    return await system.media.capture_nested(args.display_number, args.resolution, args.device)


def _args_capture_desktop_audio(parser: argparse.ArgumentParser) -> None:
    _device_option(parser)
    parser.add_argument("--display", default=":0.0")
    parser.add_argument("--resolution")
    parser.add_argument("--framerate", type=int)


async def _capture_desktop_audio(system: LoopcastSystem, args: argparse.Namespace) -> int:
    return await system.media.capture_desktop_audio(args.device, args.display, args.resolution, args.framerate)


# ---------------------------------------------------------------------------
# Audio


async def _stream_audio(system: LoopcastSystem, args: argparse.Namespace) -> int:
    return await system.media.stream_audio(args.input_file)


def _args_stream_audio_quality(parser: argparse.ArgumentParser) -> None:
    _audio_input(parser)
    parser.add_argument("--bitrate", help="Audio bitrate (default: configured audio_bitrate)")
    parser.add_argument("--codec", help="Audio codec (default: configured audio_codec)")


async def _stream_audio_quality(system: LoopcastSystem, args: argparse.Namespace) -> int:
    return await system.media.stream_audio_quality(args.input_file, args.bitrate, args.codec)


def _args_apply_audio_effects(parser: argparse.ArgumentParser) -> None:
    _audio_input(parser)
    parser.add_argument("--output", type=Path, help="Output pipe or file (default: microphone pipe)")


async def _apply_audio_effects(system: LoopcastSystem, args: argparse.Namespace) -> int:
    return await system.media.apply_audio_effects(args.input_file, args.output)


def _args_mix_audio(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("first_input", type=Path)
    parser.add_argument("second_input", type=Path)
    parser.add_argument("--output", type=Path, help="Output pipe or file (default: microphone pipe)")


async def _mix_audio(system: LoopcastSystem, args: argparse.Namespace) -> int:
    return await system.media.mix_audio(args.first_input, args.second_input, args.output)


def _args_stream_audio_loop(parser: argparse.ArgumentParser) -> None:
    _audio_input(parser)
    parser.add_argument("--duration", type=int, default=0, help="Loop size (default: 0)")
    parser.add_argument("--fade", type=int, default=0, help="Fade in/out seconds (default: 0)")


async def _stream_audio_loop(system: LoopcastSystem, args: argparse.Namespace) -> int:
    return await system.media.stream_audio_loop(args.input_file, args.duration, args.fade)


def _args_setup_compression(parser: argparse.ArgumentParser) -> None:
    _audio_input(parser)
    parser.add_argument("--threshold", type=float, default=0.089)
    parser.add_argument("--ratio", type=float, default=9)
    parser.add_argument("--attack", type=float, default=200)
    parser.add_argument("--release", type=float, default=1000)


async def _setup_compression(system: LoopcastSystem, args: argparse.Namespace) -> int:
    return await system.media.setup_compression(
        args.input_file, args.threshold, args.ratio, args.attack, args.release
    )


# ---------------------------------------------------------------------------
# Phone environments


def _args_nested_display(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--display-number", type=int, default=2, help="Nested display number (default: 2)")
    parser.add_argument("--resolution", help="WIDTHxHEIGHT (default: configured for the display)")
    parser.add_argument("--device", required=True, help="Loopback device receiving the capture")


async def _nested_display(system: LoopcastSystem, args: argparse.Namespace) -> int:
    await system.orchestrator.nested_display(args.display_number, args.resolution, args.device)
    await system.hold()
    return 0


def _args_android_emu(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("profile", nargs="?", default="phone1", help="Phone profile (default: phone1)")


async def _android_emu(system: LoopcastSystem, args: argparse.Namespace) -> int:
    await system.orchestrator.setup(args.profile)
    await system.hold()
    return 0


def _args_phones(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("profiles", nargs="*", help="Phone profiles (default: phone1)")


async def _phones(system: LoopcastSystem, args: argparse.Namespace) -> int:
    outcomes = await system.orchestrator.launch_many(args.profiles)

    failures = []
    for name, outcome in outcomes.items():
        if isinstance(outcome, PhoneEnvironment):
            print(f"{name}: ready on {outcome.profile.display} -> {outcome.profile.device_path}")
        else:
            print(f"{name}: failed at {outcome.step}: {outcome.cause}")
            failures.append(outcome)

    if len(failures) == len(outcomes):
        first: SetupError = failures[0]
        return first.exit_code

    await system.hold()
    return 1 if failures else 0


# ---------------------------------------------------------------------------
# Dispatch table


COMMANDS: Dict[str, CommandSpec] = {
    spec.name: spec
    for spec in (
        CommandSpec("setup-camera", "Create loopback video devices", _setup_camera, _args_setup_camera,
                    tools=("modprobe",)),
        CommandSpec("next-device", "Print the next free video device path", _next_device, preflight=False),
        CommandSpec("set-format", "Set the caps of a loopback device", _set_format, _args_set_format),
        CommandSpec("virtual-mic", "Create the virtual microphone", _virtual_mic, tools=("pactl",)),
        CommandSpec("stream-video", "Stream a video file to a device", _stream_video, _args_stream_video),
        CommandSpec("stream-image", "Stream a still image to a device", _stream_image, _args_stream_image),
        CommandSpec("stream-transpose", "Stream a rotated video", _stream_transpose, _args_stream_transpose),
        CommandSpec("stream-codec", "Stream with a specific codec", _stream_codec, _args_stream_codec),
        CommandSpec("stream-scale", "Stream a scaled video", _stream_scale, _args_stream_scale),
        CommandSpec("stream-correct", "Stream with colour correction", _stream_correct, _args_stream_correct),
        CommandSpec("stream-overlay", "Stream with an image overlay", _stream_overlay, _args_stream_overlay),
        CommandSpec("stream-filters", "Stream through custom filters", _stream_filters, _args_stream_filters),
        CommandSpec("capture-window", "Capture a display region", _capture_window, _args_capture_window),
        CommandSpec("capture-screen", "Capture a whole display", _capture_screen, _args_capture_screen,
                    tools=("xdpyinfo",)),
        CommandSpec("capture-area", "Capture a rectangle of :0", _capture_area, _args_capture_area),
        CommandSpec("capture-region", "Capture a rectangle read from a file", _capture_region,
                    _args_capture_region),
        CommandSpec("capture-layout", "Capture the windows listed in a layout file", _capture_layout,
                    _args_capture_layout),
        CommandSpec("capture-nested", "Capture a nested display", _capture_nested, _args_nested),
        CommandSpec("copy-video", "Copy one video device into another", _copy_video, _args_copy_video),
        CommandSpec("stream-audio", "Stream audio into the microphone", _stream_audio, _audio_input),
        CommandSpec("stream-audio-quality", "Stream audio with codec settings", _stream_audio_quality,
                    _args_stream_audio_quality),
        CommandSpec("apply-audio-effects", "Apply voice enhancement filters", _apply_audio_effects,
                    _args_apply_audio_effects),
        CommandSpec("mix-audio", "Mix two audio sources", _mix_audio, _args_mix_audio),
        CommandSpec("stream-audio-loop", "Loop audio with optional fades", _stream_audio_loop,
                    _args_stream_audio_loop),
        CommandSpec("setup-compression", "Stream audio through a compressor", _setup_compression,
                    _args_setup_compression),
        CommandSpec("stream-to-mic", "Stream video and its audio track", _stream_to_mic, _args_stream_to_mic),
        CommandSpec("stream-video-audio-quality", "Stream video and audio with separate bitrates",
                    _stream_video_audio_quality, _args_stream_video_audio_quality),
        CommandSpec("capture-desktop-audio", "Capture desktop video and audio", _capture_desktop_audio,
                    _args_capture_desktop_audio),
        CommandSpec("nested-display", "Run a captured nested display", _nested_display, _args_nested_display,
                    tools=DISPLAY_TOOLS),
        CommandSpec("android-emu", "Run one phone environment", _android_emu, _args_android_emu,
                    tools=DISPLAY_TOOLS),
        CommandSpec("phones", "Run several phone environments", _phones, _args_phones, tools=DISPLAY_TOOLS),
    )
}


def add_command_parsers(parser: argparse.ArgumentParser) -> None:
    subparsers = parser.add_subparsers(dest="command", metavar="COMMAND")
    subparsers.required = True
    for spec in COMMANDS.values():
        sub = subparsers.add_parser(spec.name, help=spec.help, description=spec.help)
        if spec.arguments is not None:
            spec.arguments(sub)


async def dispatch(system: LoopcastSystem, args: argparse.Namespace) -> int:
    spec = COMMANDS[args.command]
    config = system.config

    if spec.preflight:
        check_required_tools(tuple(dict.fromkeys(config.required_tools + spec.tools)))
        check_system_resources(config.min_memory_mb, config.max_load_pct)

    logger.info("Running command: %s", spec.name)
    return await spec.handler(system, args)


__all__ = ["COMMANDS", "CommandSpec", "add_command_parsers", "dispatch"]

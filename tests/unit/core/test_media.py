"""Unit tests for MediaController operations."""

from pathlib import Path

import pytest

from loopcast.core.audio import VirtualMicrophone, is_fifo
from loopcast.core.device_allocator import DeviceAllocator, PoolHandle
from loopcast.core.display import DisplayManager
from loopcast.core.errors import AllocationError, FailedToStart, InvalidParameter
from loopcast.core.media import MediaController, read_layout_file, read_region_file
from loopcast.core.pipeline import PipelineRequest, FileSource, VideoDeviceSink
from loopcast.core.registry import DeviceState


@pytest.fixture
def allocator(config, registry, fake_runner):
    return DeviceAllocator(config, registry, runner=fake_runner)


@pytest.fixture
def media(config, registry, fake_supervisor, allocator, fake_runner):
    microphone = VirtualMicrophone(config, registry, runner=fake_runner)
    displays = DisplayManager(config, fake_supervisor, runner=fake_runner)
    return MediaController(config, registry, fake_supervisor, allocator, microphone, displays)


@pytest.fixture
def device(make_device):
    return make_device(2)[0]


@pytest.fixture
def clip(tmp_path):
    path = tmp_path / "clip.mp4"
    path.write_bytes(b"\x00")
    return path


def value_after(args, flag):
    return args[args.index(flag) + 1]


def last_command(supervisor):
    return list(supervisor.spawned[-1].command)


class TestRun:

    @pytest.mark.asyncio
    async def test_stream_video(self, media, fake_supervisor, registry, clip, device):
        assert await media.stream_video(clip, "video2") == 0

        command = last_command(fake_supervisor)
        assert command[0] == "ffmpeg"
        assert value_after(command, "-stream_loop") == "-1"
        assert command[-1] == str(device)
        assert fake_supervisor.terminated == fake_supervisor.spawned
        assert registry.reserved_paths() == set()

    @pytest.mark.asyncio
    async def test_exit_status_is_returned(self, media, fake_supervisor, clip, device):
        fake_supervisor.exit_codes["stream-video"] = 1

        assert await media.stream_video(clip, str(device)) == 1

    @pytest.mark.asyncio
    async def test_job_finishing_inside_health_window(self, media, fake_supervisor, registry, clip, device):
        fake_supervisor.finished.add("stream-video")

        assert await media.stream_video(clip, "video2") == 0
        assert registry.reserved_paths() == set()

    @pytest.mark.asyncio
    async def test_failed_start_releases_device(self, media, fake_supervisor, registry, clip, device):
        fake_supervisor.failing.add("stream-video")

        with pytest.raises(FailedToStart):
            await media.stream_video(clip, "video2")
        assert registry.reserved_paths() == set()

    @pytest.mark.asyncio
    async def test_device_held_elsewhere(self, media, allocator, fake_supervisor, clip, device):
        await allocator.claim(device, "env:phone1")

        with pytest.raises(AllocationError):
            await media.stream_video(clip, "video2")
        assert fake_supervisor.spawned == []

    @pytest.mark.asyncio
    async def test_start_keeps_device_bound(self, media, registry, clip, device):
        request = PipelineRequest("stream-video", (FileSource(clip),), (VideoDeviceSink(device),))

        session = await media.start(request)

        record = registry.devices[device]
        assert record.state == DeviceState.BOUND
        assert record.session_id == session.session_id

        await media.finish(session)
        assert registry.reserved_paths() == set()


class TestOutputDevice:

    def test_defaults_to_pool(self, media, registry, device):
        registry.pool = PoolHandle("VirtualCam", 1, (device,))

        assert media.output_device(None) == device

    def test_requires_device_without_pool(self, media):
        with pytest.raises(InvalidParameter):
            media.output_device(None)


class TestVideoOperations:

    @pytest.mark.asyncio
    async def test_missing_input(self, media, fake_supervisor, tmp_path, device):
        with pytest.raises(InvalidParameter):
            await media.stream_video(tmp_path / "absent.mp4", "video2")
        assert fake_supervisor.spawned == []

    @pytest.mark.asyncio
    async def test_transpose(self, media, fake_supervisor, clip, device):
        await media.stream_transpose(clip, "video2", 1)

        assert value_after(last_command(fake_supervisor), "-vf") == "transpose=1"

    @pytest.mark.asyncio
    async def test_transpose_out_of_range(self, media, clip, device):
        with pytest.raises(InvalidParameter):
            await media.stream_transpose(clip, "video2", 9)

    @pytest.mark.asyncio
    async def test_codec_and_bitrate(self, media, fake_supervisor, clip, device):
        await media.stream_codec(clip, "video2", codec="libx264", bitrate="4M")

        command = last_command(fake_supervisor)
        assert value_after(command, "-vcodec") == "libx264"
        assert value_after(command, "-b:v") == "4M"

    @pytest.mark.asyncio
    async def test_scale_keep_original(self, media, fake_supervisor, clip, device):
        await media.stream_scale(clip, "video2", "640:480", keep_original=True)

        assert "-vf" not in last_command(fake_supervisor)

    @pytest.mark.asyncio
    async def test_brightness_range(self, media, clip, device):
        with pytest.raises(InvalidParameter, match="Brightness"):
            await media.stream_correct(clip, "video2", brightness=1.5)

    @pytest.mark.asyncio
    async def test_overlay(self, media, fake_supervisor, clip, device, tmp_path):
        logo = tmp_path / "logo.png"
        logo.write_bytes(b"\x89PNG")

        await media.stream_overlay(clip, logo, "video2", "20:30")

        command = last_command(fake_supervisor)
        assert value_after(command, "-filter_complex") == "overlay=20:30"
        assert command.count("-i") == 2

    @pytest.mark.asyncio
    async def test_stream_to_mic_creates_pipe(self, media, fake_supervisor, config, clip, device):
        await media.stream_to_mic(clip, "video2")

        assert is_fifo(config.mic_pipe)
        assert last_command(fake_supervisor)[-1] == str(config.mic_pipe)

    @pytest.mark.asyncio
    async def test_video_and_audio_bitrates(self, media, fake_supervisor, config, clip, device):
        await media.stream_video_audio_quality(
            clip, "video2", audio_bitrate="128k", video_bitrate="3M", codec="h264_nvenc"
        )

        command = last_command(fake_supervisor)
        assert value_after(command, "-vcodec") == "h264_nvenc"
        assert value_after(command, "-b:v") == "3M"
        assert value_after(command, "-b:a") == "128k"
        assert value_after(command, "-c:a") == config.audio_codec
        assert command[-1] == str(config.mic_pipe)

    @pytest.mark.asyncio
    async def test_copy_video_to_itself(self, media, device):
        with pytest.raises(InvalidParameter, match="same"):
            await media.copy_video("video2", "video2")


class TestCapture:

    @pytest.mark.asyncio
    async def test_capture_screen_detects_resolution(self, media, fake_supervisor, fake_runner, device):
        fake_runner.respond("xdpyinfo", stdout="  dimensions:    2560x1440 pixels (677x381 millimeters)\n")

        await media.capture_screen(device="video2")

        command = last_command(fake_supervisor)
        assert value_after(command, "-s") == "2560x1440"
        assert value_after(command, "-i") == ":0.0"

    @pytest.mark.asyncio
    async def test_capture_window_with_offset(self, media, fake_supervisor, device):
        await media.capture_window("530x1190", 15, "video2", offset=(40, 25))

        command = last_command(fake_supervisor)
        assert value_after(command, "-i") == ":0.0+40,25"
        assert value_after(command, "-s") == "530x1190"
        assert value_after(command, "-r") == "15"

    @pytest.mark.asyncio
    async def test_capture_region(self, media, fake_supervisor, tmp_path, device):
        region = tmp_path / "region.txt"
        region.write_text("10,20,640,480\n")

        await media.capture_region(region, "video2")

        command = last_command(fake_supervisor)
        assert value_after(command, "-i") == ":0.0+10,20"
        assert value_after(command, "-s") == "640x480"

    @pytest.mark.asyncio
    async def test_capture_nested_uses_display_resolution(self, media, fake_supervisor, config, device):
        await media.capture_nested(2, device="video2")

        command = last_command(fake_supervisor)
        assert value_after(command, "-i") == ":2.0+0,0"
        assert value_after(command, "-r") == str(config.capture_framerate)

    @pytest.mark.asyncio
    async def test_desktop_audio(self, media, fake_supervisor, config, device):
        await media.capture_desktop_audio("video2")

        command = last_command(fake_supervisor)
        assert value_after(command, "-vf") == "scale=1280:720"
        assert value_after(command, "-af").startswith("acompressor=")
        assert command[-1] == str(config.mic_pipe)

    @pytest.mark.asyncio
    async def test_capture_layout_grabs_each_window(self, media, fake_supervisor, tmp_path, device):
        layout = tmp_path / "layout.txt"
        layout.write_text("# main screen\nterm:800x600+0+0\n\nbrowser:1024x768+800+0\n")

        assert await media.capture_layout(layout, "video2") == 0

        assert fake_supervisor.names(fake_supervisor.spawned) == [
            "capture-layout:term", "capture-layout:browser",
        ]
        second = last_command(fake_supervisor)
        assert value_after(second, "-s") == "1024x768"
        assert value_after(second, "-i") == ":0.0+800,0"
        assert second[-1] == str(device)

    @pytest.mark.asyncio
    async def test_capture_layout_stops_on_failure(self, media, fake_supervisor, tmp_path, device):
        layout = tmp_path / "layout.txt"
        layout.write_text("term:800x600+0+0\nbrowser:1024x768+800+0\n")
        fake_supervisor.exit_codes["capture-layout:term"] = 1

        assert await media.capture_layout(layout, "video2") == 1
        assert len(fake_supervisor.spawned) == 1

    @pytest.mark.parametrize("content", ["", "# nothing\n", "term:800x600\n", "term:0x600+0+0\n"])
    def test_bad_layout_file(self, tmp_path, content):
        layout = tmp_path / "layout.txt"
        layout.write_text(content)

        with pytest.raises(InvalidParameter):
            read_layout_file(layout)

    @pytest.mark.parametrize("content", ["10,20,640", "a,b,c,d", "-1,0,640,480", ""])
    def test_bad_region_file(self, tmp_path, content):
        region = tmp_path / "region.txt"
        region.write_text(content)

        with pytest.raises(InvalidParameter):
            read_region_file(region)


class TestAudioOperations:

    @pytest.mark.asyncio
    async def test_stream_audio_quality(self, media, fake_supervisor, clip):
        await media.stream_audio_quality(clip, bitrate="64k")

        command = last_command(fake_supervisor)
        assert value_after(command, "-b:a") == "64k"
        assert value_after(command, "-c:a") == "aac"

    @pytest.mark.asyncio
    async def test_mix_audio(self, media, fake_supervisor, clip, tmp_path):
        second = tmp_path / "second.mp3"
        second.write_bytes(b"\x00")
        output = tmp_path / "mixed.raw"

        await media.mix_audio(clip, second, output)

        command = last_command(fake_supervisor)
        assert value_after(command, "-filter_complex").startswith("amix=inputs=2")
        assert command[-1] == str(output)

    @pytest.mark.asyncio
    async def test_audio_loop_with_fade(self, media, fake_supervisor, clip):
        await media.stream_audio_loop(clip, duration=10, fade=2)

        assert value_after(last_command(fake_supervisor), "-af") == (
            "aloop=loop=-1:size=10,afade=t=in:st=0:d=2,afade=t=out:st=8:d=2"
        )

    @pytest.mark.asyncio
    async def test_audio_loop_fade_too_long(self, media, clip):
        with pytest.raises(InvalidParameter):
            await media.stream_audio_loop(clip, duration=3, fade=2)

    @pytest.mark.asyncio
    async def test_compression_ratio(self, media, clip):
        with pytest.raises(InvalidParameter):
            await media.setup_compression(clip, ratio=0.5)

    @pytest.mark.asyncio
    async def test_effects_chain(self, media, fake_supervisor, clip):
        await media.apply_audio_effects(clip, Path("/tmp/out.raw"))

        af = value_after(last_command(fake_supervisor), "-af")
        assert af.startswith("volume=1.5,highpass=f=200")

"""Unit tests for DeviceAllocator."""

import asyncio

import pytest

from loopcast.core.device_allocator import MODULE_NAME, DeviceAllocator
from loopcast.core.errors import AllocationError, DeviceNotFound, InvalidParameter, NoDeviceAvailable
from loopcast.core.registry import DeviceState


@pytest.fixture
def proc_modules(tmp_path):
    path = tmp_path / "modules"
    path.write_text("snd_hda_intel 53248 0 - Live 0x0000000000000000\n", encoding="utf-8")
    return path


@pytest.fixture
def allocator(config, registry, fake_runner, proc_modules):
    return DeviceAllocator(config, registry, runner=fake_runner, proc_modules=proc_modules)


def create_nodes_from_modprobe(config):
    """Side effect that materialises the nodes named in ``video_nr=``."""

    def effect(args):
        for arg in args:
            if arg.startswith("video_nr="):
                for number in arg.split("=", 1)[1].split(","):
                    (config.device_dir / f"video{number}").touch()

    return effect


class TestNextFreeDevice:

    def test_first_fit(self, allocator, make_device, config):
        make_device(0, 1, 3)

        assert allocator.next_free_device() == config.device_dir / "video2"

    def test_does_not_reserve(self, allocator):
        assert allocator.next_free_device() == allocator.next_free_device()

    def test_exhausted(self, allocator, make_device, config):
        make_device(*range(config.device_scan_limit))

        with pytest.raises(NoDeviceAvailable):
            allocator.next_free_device()


class TestReservation:

    @pytest.mark.asyncio
    async def test_concurrent_reservations_are_distinct(self, allocator):
        results = await asyncio.gather(
            allocator.reserve_free_devices(2, "a"),
            allocator.reserve_free_devices(2, "b"),
            allocator.reserve_free_devices(1, "c"),
        )

        paths = [path for chosen in results for path in chosen]
        assert len(paths) == len(set(paths)) == 5

    @pytest.mark.asyncio
    async def test_skips_existing_nodes(self, allocator, make_device, config):
        make_device(0)

        chosen = await allocator.reserve_free_devices(1, "a")

        assert chosen == [config.device_dir / "video1"]

    @pytest.mark.asyncio
    async def test_not_enough_numbers(self, allocator, make_device):
        make_device(*range(8))

        with pytest.raises(NoDeviceAvailable):
            await allocator.reserve_free_devices(3, "a")

    @pytest.mark.asyncio
    async def test_invalid_count(self, allocator):
        with pytest.raises(InvalidParameter):
            await allocator.reserve_free_devices(0, "a")


class TestCreatePool:

    @pytest.mark.asyncio
    async def test_loads_module_with_chosen_numbers(self, allocator, fake_runner, config, registry):
        fake_runner.on("modprobe", create_nodes_from_modprobe(config))

        handle = await allocator.create_pool(2, "VirtualCam")

        assert fake_runner.calls == [[
            "modprobe", MODULE_NAME,
            "devices=2", "video_nr=0,1", "card_label=VirtualCam", "exclusive_caps=1",
        ]]
        assert handle.devices == (config.device_dir / "video0", config.device_dir / "video1")
        assert registry.pool is handle
        assert all(allocator.is_free(path) for path in handle.devices)

    @pytest.mark.asyncio
    async def test_module_already_loaded(self, allocator, proc_modules, fake_runner):
        proc_modules.write_text(f"{MODULE_NAME} 49152 0 - Live 0x0\n", encoding="utf-8")

        with pytest.raises(AllocationError, match="already loaded"):
            await allocator.create_pool(1, "VirtualCam")
        assert fake_runner.calls == []

    @pytest.mark.asyncio
    async def test_modprobe_failure_releases_reservation(self, allocator, fake_runner, registry):
        fake_runner.respond("modprobe", returncode=1, stderr="Operation not permitted")

        with pytest.raises(AllocationError, match="Operation not permitted"):
            await allocator.create_pool(2, "VirtualCam")

        assert registry.reserved_paths() == set()
        assert registry.pool is None

    @pytest.mark.asyncio
    async def test_nodes_that_never_appear(self, allocator, registry):
        with pytest.raises(AllocationError, match="did not appear"):
            await allocator.create_pool(1, "VirtualCam")

        assert registry.reserved_paths() == set()

    @pytest.mark.asyncio
    async def test_unload_clears_pool(self, allocator, fake_runner, config, registry):
        fake_runner.on("modprobe " + MODULE_NAME, create_nodes_from_modprobe(config))
        await allocator.create_pool(1, "VirtualCam")

        assert await allocator.unload_pool() is True
        assert fake_runner.commands("modprobe -r") == [["modprobe", "-r", MODULE_NAME]]
        assert registry.pool is None


class TestResolve:

    def test_literal_path(self, allocator):
        assert str(allocator.resolve("/dev/video9")) == "/dev/video9"

    def test_device_name(self, allocator, config):
        assert allocator.resolve("video4") == config.device_dir / "video4"

    def test_profile_name(self, allocator, config):
        assert allocator.resolve("phone2") == config.profile("phone2").device_path

    @pytest.mark.parametrize("name", ["", "camera", "phone99"])
    def test_unknown(self, allocator, name):
        with pytest.raises(DeviceNotFound):
            allocator.resolve(name)

    def test_resolve_existing_requires_node(self, allocator, make_device):
        with pytest.raises(DeviceNotFound):
            allocator.resolve_existing("video2")
        make_device(2)
        assert allocator.resolve_existing("video2").name == "video2"


class TestOwnership:

    @pytest.mark.asyncio
    async def test_claim_conflict(self, allocator, config):
        path = config.device_dir / "video2"
        await allocator.claim(path, "env:phone1")

        with pytest.raises(AllocationError, match="env:phone1"):
            await allocator.claim(path, "media:stream")

    @pytest.mark.asyncio
    async def test_claim_is_reentrant_for_owner(self, allocator, config):
        path = config.device_dir / "video2"
        await allocator.claim(path, "env:phone1")

        record = await allocator.claim(path, "env:phone1")

        assert record.owner == "env:phone1"

    @pytest.mark.asyncio
    async def test_bind_and_release(self, allocator, config):
        path = config.device_dir / "video2"
        await allocator.claim(path, "env:phone1")

        record = await allocator.bind(path, "env:phone1", "abcd1234")
        assert record.state == DeviceState.BOUND
        assert record.session_id == "abcd1234"

        await allocator.release(path, "env:phone1")
        assert allocator.is_free(path)

    @pytest.mark.asyncio
    async def test_bind_requires_claim(self, allocator, config):
        with pytest.raises(AllocationError):
            await allocator.bind(config.device_dir / "video2", "env:phone1", "abcd1234")

    @pytest.mark.asyncio
    async def test_release_by_other_owner_is_ignored(self, allocator, config):
        path = config.device_dir / "video2"
        await allocator.claim(path, "env:phone1")

        await allocator.release(path, "media:stream")

        assert not allocator.is_free(path)


class TestSetFormat:

    @pytest.mark.asyncio
    async def test_set_caps_arguments(self, allocator, fake_runner, make_device):
        (device,) = make_device(2)

        await allocator.set_format(device, "RGB24", "640x480")

        assert fake_runner.calls == [[
            "v4l2loopback-ctl", "set-caps", "video/x-raw,format=RGB24,width=640,height=480", str(device),
        ]]

    @pytest.mark.asyncio
    async def test_missing_device(self, allocator, config):
        with pytest.raises(DeviceNotFound):
            await allocator.set_format(config.device_dir / "video7")

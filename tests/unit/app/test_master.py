"""Tests for the top-level entry point."""

import asyncio
import os
import signal
import sys
from unittest.mock import patch

import pytest

from loopcast.app.master import main, parse_args
from loopcast.core.errors import ConfigError, DeviceNotFound
from loopcast.core.process_supervisor import SessionState


@pytest.fixture
def config_file(tmp_path, raw_config):
    path = tmp_path / "config.txt"
    lines = [f"{key} = {value}" for key, value in raw_config.items()]
    path.write_text("\n".join(lines + ["log_level = debug", "console_output = false"]) + "\n")
    return path


@pytest.fixture
def quiet_startup():
    with patch("loopcast.app.master.ensure_directories"), \
         patch("loopcast.app.master.configure_logging") as configure:
        yield configure


class TestParseArgs:

    def test_defaults_come_from_config(self, config_file):
        args = parse_args(["--config", str(config_file), "next-device"])

        assert args.log_level == "debug"
        assert args.console_output is False
        assert args.command == "next-device"

    def test_flags_override_config(self, config_file):
        args = parse_args(["--config", str(config_file), "--log-level", "warning", "--console", "next-device"])

        assert args.log_level == "warning"
        assert args.console_output is True


class TestMain:

    @pytest.mark.asyncio
    async def test_successful_command(self, config_file, sandbox, quiet_startup, capsys):
        assert await main(["--config", str(config_file), "next-device"]) == 0

        assert capsys.readouterr().out.strip() == str(sandbox / "dev" / "video0")
        assert quiet_startup.call_args.kwargs["log_file"] == sandbox / "logs" / "loopcast.log"

    @pytest.mark.asyncio
    async def test_bad_configuration_exit_code(self, config_file, quiet_startup):
        with open(config_file, "a") as fh:
            fh.write("framerate = fast\n")

        assert await main(["--config", str(config_file), "next-device"]) == ConfigError.exit_code

    @pytest.mark.asyncio
    async def test_command_error_exit_code(self, config_file, quiet_startup):
        with patch("loopcast.cli.commands.check_required_tools"), \
             patch("loopcast.cli.commands.check_system_resources"):
            code = await main(["--config", str(config_file), "set-format", "video9"])

        assert code == DeviceNotFound.exit_code

    @pytest.mark.asyncio
    async def test_cleanup_runs_on_error(self, config_file, quiet_startup):
        with patch("loopcast.cli.commands.check_required_tools"), \
             patch("loopcast.cli.commands.check_system_resources"), \
             patch("loopcast.core.system.LoopcastSystem.cleanup") as cleanup:
            await main(["--config", str(config_file), "set-format", "video9"])

        cleanup.assert_awaited_once_with("error")


IGNORE_SIGTERM = (
    "import signal, time\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "time.sleep(30)\n"
)


class TestSignals:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("signum", [signal.SIGINT, signal.SIGTERM])
    async def test_signal_during_command_sets_exit_status(self, config_file, quiet_startup, signum):
        async def long_command(system, args):
            asyncio.get_running_loop().call_later(0.1, os.kill, os.getpid(), signum)
            await asyncio.sleep(30)
            return 0

        with patch("loopcast.app.master.dispatch", new=long_command), \
             patch("loopcast.core.system.LoopcastSystem.cleanup") as cleanup:
            code = await main(["--config", str(config_file), "next-device"])

        assert code == 128 + signum
        cleanup.assert_awaited_once_with(signal.Signals(signum).name)

    @pytest.mark.asyncio
    async def test_signal_during_cleanup_lets_cleanup_finish(self, config_file, quiet_startup):
        started = []

        async def command_with_stubborn_child(system, args):
            session = await system.supervisor.spawn(sys.executable, ["-c", IGNORE_SIGTERM], name="stubborn")
            started.append(session)
            await asyncio.sleep(0.3)
            # Lands while cleanup waits for the child to honour SIGTERM.
            asyncio.get_running_loop().call_later(0.5, os.kill, os.getpid(), signal.SIGTERM)
            return 0

        with patch("loopcast.app.master.dispatch", new=command_with_stubborn_child):
            code = await main(["--config", str(config_file), "next-device"])

        assert code == 128 + signal.SIGTERM
        session = started[0]
        assert session.process.returncode is not None
        assert session.state == SessionState.TERMINATED

import argparse
import asyncio
import signal
import sys
from importlib import metadata
from pathlib import Path
from typing import List, Optional

from loopcast.cli.commands import add_command_parsers, dispatch
from loopcast.core.config_manager import get_config_manager
from loopcast.core.configuration import load_configuration_async
from loopcast.core.errors import LoopcastError
from loopcast.core.logging_config import configure_logging
from loopcast.core.logging_utils import get_module_logger
from loopcast.core.paths import CONFIG_PATH, DEFAULT_LOG_FILE, ensure_directories
from loopcast.core.system import LoopcastSystem

try:
    __version__ = metadata.version("loopcast")
except metadata.PackageNotFoundError:  # pragma: no cover - local dev
    __version__ = "0.0.0"

logger = get_module_logger("Master")

SIGNAL_EXIT_BASE = 128
HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments with config file defaults."""
    pre_parser = argparse.ArgumentParser(add_help=False)
    pre_parser.add_argument("--config", type=Path, default=CONFIG_PATH)
    known, _ = pre_parser.parse_known_args(argv)

    config_manager = get_config_manager()
    config = config_manager.read_config(known.config)
    default_log_level = config_manager.get_str(config, 'log_level', default='info')
    default_console_output = config_manager.get_bool(config, 'console_output', default=True)

    parser = argparse.ArgumentParser(
        prog="loopcast",
        description="loopcast - virtual cameras, microphone and phone environments",
    )

    parser.add_argument(
        "-v", "--version",
        action="version",
        version=f"%(prog)s version {__version__}",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=known.config,
        help="Configuration file (default: config.txt)"
    )

    parser.add_argument(
        "--log-level",
        choices=['debug', 'info', 'warning', 'error', 'critical'],
        default=default_log_level,
        help="Logging level (default: info)"
    )

    parser.add_argument(
        "--console",
        dest="console_output",
        action="store_true",
        default=default_console_output,
        help="Also log to console"
    )

    parser.add_argument(
        "--no-console",
        dest="console_output",
        action="store_false",
        help="Log to file only"
    )

    add_command_parsers(parser)
    return parser.parse_args(argv)


async def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for loopcast.

    Exit sequence:
    1. The command returns, raises, or a signal cancels it
    2. ShutdownCoordinator.cleanup() releases every resource exactly once
    3. The exit status is the command's, the error's exit code, or
       128 + signal number when a signal ended the run
    """
    args = parse_args(argv)

    ensure_directories()

    try:
        config = await load_configuration_async(args.config)
    except LoopcastError as exc:
        configure_logging(args.log_level, console=True, log_file=DEFAULT_LOG_FILE)
        logger.error("Configuration error in %s: %s", args.config, exc)
        return exc.exit_code

    configure_logging(
        args.log_level,
        console=args.console_output,
        log_file=config.log_file,
        max_bytes=config.log_max_bytes,
    )
    logger.debug("loopcast %s starting: %s", __version__, args.command)

    system = LoopcastSystem(config)
    loop = asyncio.get_running_loop()
    received: List[int] = []
    command_task: Optional[asyncio.Task] = None

    def signal_handler(signum: int) -> None:
        if received:
            logger.debug("Shutdown already requested, ignoring %s", signal.Signals(signum).name)
            return
        received.append(signum)
        logger.warning("Received %s, shutting down", signal.Signals(signum).name)
        system.registry.request_cancel()
        # Once the command is done, cleanup is already running and must finish.
        if command_task is not None and not command_task.done():
            command_task.cancel()

    for sig in HANDLED_SIGNALS:
        try:
            loop.add_signal_handler(sig, signal_handler, sig)
        except NotImplementedError:
            pass

    exit_code = 0
    reason = "exit"
    command_task = asyncio.ensure_future(dispatch(system, args))
    try:
        exit_code = await command_task
    except asyncio.CancelledError:
        if not received:
            command_task.cancel()
            raise
        reason = signal.Signals(received[0]).name
    except LoopcastError as exc:
        logger.error("%s failed: %s", args.command, exc)
        exit_code = exc.exit_code
        reason = "error"
    except Exception as exc:
        logger.error("Unexpected error in %s: %s", args.command, exc, exc_info=True)
        exit_code = 1
        reason = "error"
    finally:
        await asyncio.shield(system.cleanup(reason))
        for sig in HANDLED_SIGNALS:
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                pass

    if received:
        return SIGNAL_EXIT_BASE + received[0]
    return exit_code


def run(argv: Optional[List[str]] = None) -> int:
    try:
        return asyncio.run(main(argv))
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return SIGNAL_EXIT_BASE + signal.SIGINT


if __name__ == "__main__":
    raise SystemExit(run())

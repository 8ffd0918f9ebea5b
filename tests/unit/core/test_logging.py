"""Tests for logging setup and the component-prefixed logger."""

import logging
import sys
from logging.handlers import RotatingFileHandler

import pytest

from loopcast.core.logging_config import configure_logging
from loopcast.core.logging_utils import get_module_logger


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


class TestStructuredLogger:

    def test_namespace_and_component(self):
        logger = get_module_logger("DeviceAllocator")

        assert logger.name == "loopcast.DeviceAllocator"
        assert logger.component == "DeviceAllocator"

    def test_messages_are_prefixed(self, caplog):
        logger = get_module_logger("ProcessSupervisor")

        with caplog.at_level(logging.INFO, logger="loopcast"):
            logger.info("Process %s started with PID: %d", "ffmpeg", 42)

        assert caplog.messages == ["[ProcessSupervisor] Process ffmpeg started with PID: 42"]

    def test_bad_format_arguments_do_not_raise(self, caplog):
        logger = get_module_logger("Master")

        with caplog.at_level(logging.INFO, logger="loopcast"):
            logger.info("%d devices", "two")

        assert caplog.messages == ["[Master] %d devices | args=two"]

    def test_child_logger(self):
        child = get_module_logger("Master").getChild("signals")

        assert child.name == "loopcast.Master.signals"
        assert child.component == "Master.signals"


class TestConfigureLogging:

    def test_file_only(self, tmp_path, restore_root_logging):
        log_file = tmp_path / "logs" / "loopcast.log"

        configure_logging("debug", console=False, log_file=log_file, max_bytes=1024)

        handlers = restore_root_logging.handlers
        assert len(handlers) == 1
        assert isinstance(handlers[0], RotatingFileHandler)
        assert handlers[0].maxBytes == 1024
        assert restore_root_logging.level == logging.DEBUG
        assert log_file.parent.is_dir()

    def test_console_uses_stderr(self, restore_root_logging):
        configure_logging("warning", console=True)

        (handler,) = restore_root_logging.handlers
        assert handler.stream is sys.stderr

    def test_unknown_level(self, restore_root_logging):
        with pytest.raises(ValueError):
            configure_logging("loud")

    def test_reconfiguring_replaces_handlers(self, tmp_path, restore_root_logging):
        configure_logging("info", console=True)
        configure_logging("info", console=False, log_file=tmp_path / "loopcast.log")

        (handler,) = restore_root_logging.handlers
        assert isinstance(handler, RotatingFileHandler)

    def test_no_outputs_installs_null_handler(self, restore_root_logging):
        configure_logging("error", console=False)

        (handler,) = restore_root_logging.handlers
        assert isinstance(handler, logging.NullHandler)

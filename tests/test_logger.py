import json
import logging

import pytest

from osimage.utils.logger import LogFormatter, LogLevel, Logger, setup_logging


@pytest.fixture
def configured(tmp_path):
    logger = setup_logging({
        'log_level': 'DEBUG',
        'use_colors': False,
        'file_logging': True,
        'structured_logging': True,
        'log_directory': str(tmp_path / "logs"),
    })
    yield logger
    logger.close()


def test_plain_logger_has_no_handlers():
    Logger("osimage.test")
    assert logging.getLogger("osimage.test").handlers == []


def test_plain_logger_propagates(caplog):
    caplog.set_level(logging.INFO, logger="osimage")
    Logger().info("Format - size of partition 1024 bytes")
    assert "Format - size of partition 1024 bytes" in caplog.text


def test_setup_logging_console_only():
    logger = setup_logging({'use_colors': False})
    handlers = logging.getLogger("osimage").handlers
    try:
        assert [type(handler) for handler in handlers] == [logging.StreamHandler]
        assert logging.getLogger("osimage").level == logging.INFO
    finally:
        logger.close()
    assert logging.getLogger("osimage").handlers == []


def test_file_and_structured_handlers(tmp_path, configured):
    configured.info("Writing stage1 bootloader", partition="System")
    for handler in logging.getLogger("osimage").handlers:
        handler.flush()

    log_dir = tmp_path / "logs"
    assert "Writing stage1 bootloader" in (log_dir / "osimage.log").read_text()

    line = (log_dir / "osimage_structured.log").read_text().strip().splitlines()[-1]
    entry = json.loads(line)
    assert entry['level'] == 'INFO'
    assert entry['message'] == "Writing stage1 bootloader"
    assert entry['extra'] == {'partition': 'System'}


def test_performance_logger(caplog):
    caplog.set_level(logging.INFO, logger="osimage")
    with Logger().performance("format of MFS partition 'System'") as timer:
        pass
    assert timer.duration is not None
    assert "Starting format of MFS partition 'System'" in caplog.text
    assert "Completed format of MFS partition 'System'" in caplog.text


def test_performance_logger_reports_failure(caplog):
    caplog.set_level(logging.INFO, logger="osimage")
    with pytest.raises(RuntimeError):
        with Logger().performance("build of disk.img"):
            raise RuntimeError("disk full")
    assert "Failed build of disk.img" in caplog.text
    assert "disk full" in caplog.text


def test_child_logger_shares_handlers(tmp_path, configured):
    child = configured.child("mfs")
    assert child.name == "osimage.mfs"
    child.info("Allocated 8 buckets at 0")
    for handler in logging.getLogger("osimage").handlers:
        handler.flush()
    assert "osimage.mfs" in (tmp_path / "logs" / "osimage.log").read_text()


def test_log_level_names():
    assert LogLevel.from_name("debug") is LogLevel.DEBUG
    with pytest.raises(ValueError):
        LogLevel.from_name("verbose")


def test_plain_formatter_layout():
    formatter = LogFormatter(use_colors=False)
    record = logging.LogRecord("osimage", logging.WARNING, __file__, 10, "low space", None, None)
    text = formatter.format(record)
    assert "[ WARNING]" in text
    assert "osimage:10 - low space" in text

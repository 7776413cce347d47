import logging

import pytest

from sensor_bridge.logging import configure_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def test_configure_logging_writes_file(tmp_path, restore_root_logger):
    log_path = tmp_path / "logs" / "bridge.log"

    configure_logging("debug", log_path=log_path)
    logging.getLogger("sensor_bridge.test").debug("hello %s", "bridge")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert logging.getLogger().level == logging.DEBUG
    assert "| DEBUG | sensor_bridge.test | hello bridge" in log_path.read_text()


def test_configure_logging_quiets_network_loggers(restore_root_logger):
    configure_logging("INFO")
    assert logging.getLogger("paho").level == logging.WARNING
    assert logging.getLogger("aiohttp.access").level == logging.WARNING

    configure_logging("INFO", log_network=True)
    assert logging.getLogger("paho").level == logging.NOTSET

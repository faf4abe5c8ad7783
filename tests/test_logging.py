import json
import logging

import pytest

from peripheral_settings_transfer.config import Config
from peripheral_settings_transfer.logging import (
    JsonFormatter,
    PlainFormatter,
    configure_logging,
    get_logger,
)


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        "transfer.backup", logging.INFO, __file__, 1, "Backup created", None, None
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_merges_extras() -> None:
    payload = json.loads(JsonFormatter().format(_record(backup_path="/tmp/x", size=3)))

    assert payload["message"] == "Backup created"
    assert payload["logger"] == "transfer.backup"
    assert payload["backup_path"] == "/tmp/x"
    assert payload["size"] == 3


def test_plain_formatter_appends_key_values() -> None:
    line = PlainFormatter("%(levelname)s %(message)s").format(_record(size=3))

    assert line == "INFO Backup created | size=3"


@pytest.mark.usefixtures("isolated_logging")
def test_configure_logging_sets_subsystem_levels() -> None:
    configure_logging(Config(log_level="DEBUG", log_format="json"))

    logger = get_logger("transfer.coordinator")
    assert logger.level == logging.DEBUG
    assert logger.propagate is False
    assert isinstance(logger.handlers[0].formatter, JsonFormatter)

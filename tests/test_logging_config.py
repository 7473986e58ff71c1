"""
Brief: Tests for lanbuoy.config.logging_config.init_logging and formatters.

Inputs:
  - None

Outputs:
  - None
"""

import logging
import logging.handlers
from pathlib import Path

import pytest

from lanbuoy.config.logging_config import (
    BracketLevelFormatter,
    SyslogFormatter,
    init_logging,
    parse_level,
)


@pytest.fixture(autouse=True)
def restore_root_logger():
    """
    Brief: Put the root logger back the way pytest configured it.

    Inputs:
      - None

    Outputs:
      - None
    """
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in handlers:
        root.addHandler(h)
    root.setLevel(level)
    logging.getLogger("lanbuoy.resolver").setLevel(logging.NOTSET)


def test_parse_level_names_and_defaults():
    assert parse_level("debug") == logging.DEBUG
    assert parse_level("WARN") == logging.WARNING
    assert parse_level("crit") == logging.CRITICAL
    assert parse_level(15) == 15
    assert parse_level("nonsense", default=logging.ERROR) == logging.ERROR


def test_init_logging_adds_stderr_handler():
    """
    Brief: init_logging configures root logger with stderr handler by default.

    Inputs:
      - cfg: minimal dict with level

    Outputs:
      - None: Asserts StreamHandler present and level applied
    """
    init_logging({"level": "debug"})
    root = logging.getLogger()
    assert root.level == logging.DEBUG
    assert any(isinstance(h, logging.StreamHandler) for h in root.handlers)


def test_init_logging_without_stderr_has_no_handlers():
    init_logging({"stderr": False})
    assert logging.getLogger().handlers == []


def test_init_logging_file_handler_writes(tmp_path):
    """
    Brief: init_logging creates file handler and writes formatted entries.

    Inputs:
      - cfg: file path and level

    Outputs:
      - None: Asserts file created and contains message
    """
    log_path = tmp_path / "logs" / "lanbuoy.log"
    init_logging({"level": "info", "file": str(log_path), "stderr": False})
    logging.getLogger("lanbuoy.test").info("probe conflict resolved")
    for h in logging.getLogger().handlers:
        h.flush()
    content = Path(log_path).read_text()
    assert "probe conflict resolved" in content
    assert "[info] lanbuoy.test:" in content


def test_init_logging_per_logger_levels():
    init_logging({"level": "warn", "loggers": {"lanbuoy.resolver": "debug"}})
    assert logging.getLogger().level == logging.WARNING
    assert logging.getLogger("lanbuoy.resolver").level == logging.DEBUG


def test_init_logging_syslog(monkeypatch):
    """
    Brief: init_logging attaches a syslog handler when configured.

    Inputs:
      - syslog: True or dict

    Outputs:
      - None: Asserts dummy handler created with the mapped arguments
    """
    created = {}

    class DummySysLogHandler(logging.Handler):
        LOG_USER = 8
        LOG_LOCAL0 = 128

        def __init__(self, address=None, facility=None):
            super().__init__()
            created["address"] = address
            created["facility"] = facility

        def emit(self, record):
            created.setdefault("records", []).append(record)

    monkeypatch.setattr(logging.handlers, "SysLogHandler", DummySysLogHandler)

    init_logging({"syslog": True, "stderr": False})
    assert created["address"] == "/dev/log"
    assert created["facility"] == DummySysLogHandler.LOG_USER

    created.clear()
    init_logging(
        {
            "stderr": False,
            "syslog": {"address": ["localhost", 514], "facility": "local0", "tag": "mdns"},
        }
    )
    assert created["address"] == ("localhost", 514)
    assert created["facility"] == DummySysLogHandler.LOG_LOCAL0
    (handler,) = logging.getLogger().handlers
    assert handler.ident == "mdns: "
    assert isinstance(handler.formatter, SyslogFormatter)


def test_formatters_produce_expected_tags():
    """
    Brief: BracketLevelFormatter and SyslogFormatter include bracketed tags.

    Inputs:
      - LogRecord instances at different levels

    Outputs:
      - None: Asserts formatted strings contain expected tags
    """
    fmt = BracketLevelFormatter(fmt="%(asctime)s %(level_tag)s %(name)s: %(message)s")
    rec = logging.LogRecord("n", logging.ERROR, __file__, 1, "m", (), None)
    rec.created = 0
    out = fmt.format(rec)
    assert out.startswith("1970-01-01T00:00:00Z [error] n:")

    s = SyslogFormatter()
    rec2 = logging.LogRecord("n2", logging.WARNING, __file__, 2, "m2", (), None)
    assert s.format(rec2) == "[warn] n2: m2"

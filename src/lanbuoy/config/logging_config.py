from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "crit": logging.CRITICAL,
    "critical": logging.CRITICAL,
}

_TAGS = {
    logging.DEBUG: "[debug]",
    logging.INFO: "[info]",
    logging.WARNING: "[warn]",
    logging.ERROR: "[error]",
    logging.CRITICAL: "[crit]",
}


def parse_level(value: Any, default: int = logging.INFO) -> int:
    """
    Brief: Map a level name (debug/info/warn/error/crit) to a logging constant.

    Inputs:
      - value: Level name (any case) or numeric level.
      - default: Level returned for unknown names.

    Outputs:
      - int: logging level.
    """
    if isinstance(value, int):
        return value
    return _LEVELS.get(str(value or "").strip().lower(), default)


class SyslogFormatter(logging.Formatter):
    """Formatter for syslog output without timestamps (syslog adds its own)."""

    def format(self, record):
        record.level_tag = _TAGS.get(record.levelno, f"[lvl{record.levelno}]")
        return f"{record.level_tag} {record.name}: {record.getMessage()}"


class BracketLevelFormatter(logging.Formatter):
    """Bracketed lowercase level tags with UTC ISO-8601 timestamps."""

    def formatTime(self, record, datefmt=None):
        return datetime.fromtimestamp(record.created, timezone.utc).strftime(
            "%Y-%m-%dT%H:%M:%SZ"
        )

    def format(self, record):
        record.level_tag = _TAGS.get(record.levelno, f"[lvl{record.levelno}]")
        return super().format(record)


def _syslog_handler(syslog_cfg: Any) -> logging.Handler:
    if isinstance(syslog_cfg, Mapping):
        address = syslog_cfg.get("address", "/dev/log")
        if isinstance(address, (list, tuple)) and len(address) == 2:
            address = (str(address[0]), int(address[1]))
        facility = getattr(
            logging.handlers.SysLogHandler,
            f"LOG_{str(syslog_cfg.get('facility', 'USER')).upper()}",
            logging.handlers.SysLogHandler.LOG_USER,
        )
        tag = str(syslog_cfg.get("tag", "lanbuoy"))
    else:
        address = "/dev/log"
        facility = logging.handlers.SysLogHandler.LOG_USER
        tag = "lanbuoy"

    handler = logging.handlers.SysLogHandler(address=address, facility=facility)
    handler.ident = f"{tag}: "
    handler.setFormatter(SyslogFormatter())
    return handler


def init_logging(cfg: Optional[Mapping[str, Any]]) -> None:
    """
    Initialize logging for the mDNS engine and its command line.

    Args:
        cfg: Logging configuration mapping with optional keys:
            - level: debug, info, warn, error, crit (default: info)
            - stderr: log to stderr (default: True)
            - file: path to a log file (optional)
            - syslog: True or a dict with address/facility/tag (optional)
            - loggers: mapping of logger name -> level, e.g.
              {"lanbuoy.dispatch": "debug"} to trace packet fan-out only

    Example config:
        {
            "level": "info",
            "file": "./lanbuoy.log",
            "loggers": {"lanbuoy.resolver": "debug"},
        }
    """
    cfg = dict(cfg or {})

    level = parse_level(cfg.get("level", "info"))
    formatter = BracketLevelFormatter(
        fmt="%(asctime)s %(level_tag)s %(name)s: %(message)s"
    )

    root = logging.getLogger()
    root.setLevel(level)
    for h in list(root.handlers):
        root.removeHandler(h)

    if cfg.get("stderr", True):
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(formatter)
        root.addHandler(stderr_handler)

    file_path = cfg.get("file")
    if isinstance(file_path, str) and file_path.strip():
        path = os.path.abspath(os.path.expanduser(file_path.strip()))
        os.makedirs(os.path.dirname(path), exist_ok=True)
        file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    syslog_cfg = cfg.get("syslog")
    if syslog_cfg:
        try:
            root.addHandler(_syslog_handler(syslog_cfg))
        except (
            OSError,
            ValueError,
        ) as e:  # pragma: no cover - environment-specific
            root.warning("Failed to configure syslog: %s", e)

    loggers: Dict[str, Any] = dict(cfg.get("loggers") or {})
    for name, lvl in loggers.items():
        logging.getLogger(str(name)).setLevel(parse_level(lvl, default=level))

    logging.captureWarnings(True)

from __future__ import annotations

import logging
import os
import sys
import json
import time
from pathlib import Path
from typing import Optional

_CONFIGURED = "_pcbtrace_configured"
_FILE_HANDLER = "_pcbtrace_file"


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line:
      { "t": 169, "lvl": "INFO", "name": "via.match", "msg": "text",
        "stage": "matching", "kind": "decision", "extra": {...} }

    `stage` / `kind` are lifted out of decision events so log lines can be
    filtered per pipeline stage without parsing `extra`.
    """

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload = {
            "t": int(time.time() * 1000),
            "lvl": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        # structured fields passed as extra={"extra": {...}}
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            for key in ("stage", "kind"):
                if key in extra:
                    payload[key] = extra[key]
            payload["extra"] = extra
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def _level(name: Optional[str]) -> int:
    lvl = getattr(logging, (name or os.environ.get("LOG_LEVEL") or "INFO").upper(), None)
    return lvl if isinstance(lvl, int) else logging.INFO


def _attach_file(root: logging.Logger, log_file: str) -> None:
    for h in root.handlers:
        if getattr(h, _FILE_HANDLER, None) == log_file:
            return
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(JsonFormatter())
    setattr(handler, _FILE_HANDLER, log_file)
    root.addHandler(handler)


def setup_logging(level: Optional[str] = None, stream=None, log_file: Optional[str] = None) -> None:
    """
    Configure the root logger with JSON formatting.

    Level precedence:
      - explicit `level` arg
      - env LOG_LEVEL (DEBUG/INFO/WARNING/ERROR)
      - default INFO

    The first call installs the stream handler. Later calls only apply an
    explicit level or add `log_file`, so importing modules (which configure
    logging through `get_logger`) never overrides what the CLI asks for.
    """
    root = logging.getLogger()
    if getattr(root, _CONFIGURED, False):
        if level is not None:
            root.setLevel(_level(level))
        if log_file:
            _attach_file(root, log_file)
        return

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())

    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(_level(level))
    if log_file:
        _attach_file(root, log_file)
    setattr(root, _CONFIGURED, True)


def get_logger(name: str) -> logging.Logger:
    """Module logger; ensures the root is configured."""
    setup_logging()
    return logging.getLogger(name)

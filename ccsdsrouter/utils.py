# ccsdsrouter/utils.py
from __future__ import annotations

import atexit
import json
import logging
import os
import queue
import sys
from logging.handlers import QueueHandler, QueueListener, TimedRotatingFileHandler
from pathlib import Path
from typing import Optional, Union

__all__ = ["setup", "get_logger", "log", "ensure_dir", "atomic_write_text", "atomic_write_json"]


def ensure_dir(p: Path):
    p.mkdir(parents=True, exist_ok=True)


def atomic_write_text(path: Path, text: str):
    tmp = path.with_suffix(path.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        f.write(text)
    tmp.replace(path)


def atomic_write_json(path: Path, obj: dict):
    atomic_write_text(path, json.dumps(obj, indent=2, ensure_ascii=False))


# ---- internal globals ----
_log_name = "ccsdsrouter"
log = logging.getLogger(_log_name)
log.addHandler(logging.NullHandler())
log.setLevel(logging.INFO)
log.propagate = False

_q: Optional[queue.SimpleQueue] = None
_listener: Optional[QueueListener] = None
_configured = False


def setup(
    log_dir: Optional[Union[str, os.PathLike]] = "logs",
    level: Union[int, str] = "INFO",
    console: bool = True,
    filename: str = "ccsdsrouter.log",
    rotate_when: str = "midnight",
    rotate_backup: int = 7,
    encoding: str = "utf-8",
) -> logging.Logger:
    """
    Configure async logging for a program that runs routes. Importing the
    package never calls this; the library only logs through the ccsdsrouter
    logger and leaves handler choice to the application (cli.main calls it).
    Later calls are no-ops.
    - log_dir=None logs to the console only; otherwise a daily rotated file
      is written as well, keeping rotate_backup old files.
    - level accepts "DEBUG"/"INFO"/"WARNING"/"ERROR".

    Records go through a QueueHandler, so the routing threads never wait on
    console or file I/O.
    """
    global _q, _listener, _configured

    if _configured:
        return log  # idempotent

    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    log.setLevel(level)

    fmt = "[%(asctime)s] %(levelname).1s %(process)d %(threadName)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    formatter = logging.Formatter(fmt=fmt, datefmt=datefmt)

    handlers = []
    if console:
        h = logging.StreamHandler(sys.stderr)
        h.setFormatter(formatter)
        h.setLevel(level)
        handlers.append(h)

    if log_dir is not None:
        log_path = Path(log_dir)
        ensure_dir(log_path)
        file_handler = TimedRotatingFileHandler(
            filename=str(log_path / filename),
            when=rotate_when,
            backupCount=rotate_backup,
            encoding=encoding,
            utc=False,
            delay=True,
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        handlers.append(file_handler)

    _q = queue.SimpleQueue()
    qh = QueueHandler(_q)
    qh.setLevel(level)

    _clear_handlers(log)
    log.addHandler(qh)

    _listener = QueueListener(_q, *handlers, respect_handler_level=True)
    _listener.start()
    atexit.register(_shutdown_listener)

    _configured = True
    return log


def _clear_handlers(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()


def _shutdown_listener() -> None:
    global _listener
    if _listener:
        _listener.stop()
        _listener = None


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get a child logger: get_logger("pipeline") -> ccsdsrouter.pipeline
    Children propagate into the package logger, which owns the queue handler.
    """
    if not name:
        return log
    return logging.getLogger(f"{_log_name}.{name}")

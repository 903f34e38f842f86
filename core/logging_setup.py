"""Logging configuration for tapfarm.

Sets up a dual-handler logging pipeline:

1. **Console** -- :class:`SafeStreamHandler`, which never lets an
   unencodable character (emoji in status lines) crash the service.
2. **File** -- :class:`CompressedRotatingFileHandler` writing to
   ``logs/tapfarm.log`` with gzip rotation (10 MiB per file, 5 backups).

Usage::

    from core.logging_setup import setup_logging
    setup_logging("DEBUG")
"""

import gzip
import logging
import os
import shutil
import sys
from logging.handlers import RotatingFileHandler
from typing import Iterable, Optional

from core.config import LOGS_DIR

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s - %(message)s'
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

# Third-party loggers that flood DEBUG output during browser sessions
NOISY_LOGGERS = ("asyncio", "playwright", "urllib3")


class CompressedRotatingFileHandler(RotatingFileHandler):
    """RotatingFileHandler that gzip-compresses rotated log files."""

    def rotation_filename(self, default_name: str) -> str:
        return f"{default_name}.gz"

    def rotate(self, source: str, dest: str) -> None:
        """Compress *source* into *dest* and remove *source*."""
        with open(source, 'rb') as f_in:
            with gzip.open(dest, 'wb') as f_out:
                shutil.copyfileobj(f_in, f_out)
        os.remove(source)


class SafeStreamHandler(logging.StreamHandler):
    """StreamHandler that degrades unencodable output instead of failing.

    Consoles with a narrow code page cannot print emoji; such records are
    re-encoded with replacement characters using the stream's own encoding.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            try:
                self.stream.write(msg + self.terminator)
            except UnicodeEncodeError:
                encoding = getattr(self.stream, "encoding", None) or "ascii"
                safe_msg = msg.encode(encoding, errors='replace').decode(encoding)
                self.stream.write(safe_msg + self.terminator)
            self.flush()
        except Exception:
            self.handleError(record)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    quiet_loggers: Iterable[str] = NOISY_LOGGERS,
) -> None:
    """Configure the root logger with console and file handlers.

    Calling it again replaces previously installed handlers, so tests and
    ``main.py`` can both call it safely.

    Args:
        log_level: Logging level name (``"DEBUG"``, ``"INFO"``, ...).
            Unknown names fall back to ``INFO``.
        log_file: Override for the log file path.  Defaults to
            ``logs/tapfarm.log`` under the project root.
        quiet_loggers: Logger names capped at ``WARNING``.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    log_path = log_file or str(LOGS_DIR / "tapfarm.log")
    log_dir = os.path.dirname(log_path)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

    file_handler = CompressedRotatingFileHandler(
        log_path,
        maxBytes=MAX_LOG_BYTES,
        backupCount=LOG_BACKUPS,
        encoding='utf-8',
    )
    stream_handler = SafeStreamHandler(sys.stdout)

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[file_handler, stream_handler],
        force=True,
    )

    for name in quiet_loggers:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

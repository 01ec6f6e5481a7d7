import logging
import logging.handlers
import sys
import time
from pathlib import Path
from types import TracebackType

from jobrelay.config import Settings

LOG_LINE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"
REALTIME_LOGGER = "jobrelay.realtime"

_LOG_FILE_PATH: Path | None = None
_LOGGING_INITIALIZED = False


class TruncatedFormatter(logging.Formatter):
  """Formatter that keeps only the head and tail of a traceback."""

  # ruff: noqa: N802
  def formatException(self, ei: tuple[type[BaseException] | None, BaseException | None, TracebackType | None]) -> str:
    import traceback

    lines = traceback.format_exception(*ei)
    if len(lines) > 6:
      return "".join(lines[:1] + ["    ...\n"] + lines[-5:])
    return "".join(lines)


def _build_file_handler(settings: Settings) -> tuple[logging.Handler, Path]:
  """Create a size-rotating file handler under the configured log directory."""
  log_dir = Path(settings.log_dir or ".")
  try:
    log_dir.mkdir(parents=True, exist_ok=True)
  except OSError as exc:
    raise RuntimeError(f"Failed to create log directory at {log_dir}: {exc}") from exc

  log_path = log_dir / f"jobrelay_{time.strftime('%Y%m%d_%H%M%S')}.log"
  handler = logging.handlers.RotatingFileHandler(log_path, encoding="utf-8", maxBytes=settings.log_max_bytes, backupCount=settings.log_backup_count)
  handler.setFormatter(logging.Formatter(LOG_LINE_FORMAT, datefmt=LOG_DATE_FORMAT))
  return handler, log_path


def setup_logging(settings: Settings) -> Path | None:
  """Install stdout (and optionally file) handlers on the package logger; return the log file path."""
  global _LOG_FILE_PATH, _LOGGING_INITIALIZED
  if _LOGGING_INITIALIZED:
    return _LOG_FILE_PATH

  stream = logging.StreamHandler(sys.stdout)
  stream.setFormatter(TruncatedFormatter(LOG_LINE_FORMAT, datefmt=LOG_DATE_FORMAT))
  handlers: list[logging.Handler] = [stream]

  log_path: Path | None = None
  if settings.log_dir:
    file_handler, log_path = _build_file_handler(settings)
    handlers.append(file_handler)

  package_logger = logging.getLogger("jobrelay")
  package_logger.handlers = handlers
  package_logger.setLevel(settings.log_level)
  package_logger.propagate = False

  # Realtime tracing is noisy, so it only drops to DEBUG when asked for.
  if settings.realtime_debug:
    logging.getLogger(REALTIME_LOGGER).setLevel(logging.DEBUG)

  _LOG_FILE_PATH = log_path
  _LOGGING_INITIALIZED = True
  package_logger.info("Logging initialized level=%s file=%s", settings.log_level, log_path or "<stdout only>")
  return log_path

import logging
import sys
import os
from datetime import datetime

# Environment:
#   BRIDGE_LOG_DIR    – directory for per-run log files (default "logs")
#   BRIDGE_LOG_LEVEL  – console threshold (default INFO); the file always gets DEBUG

LOG_DIR = os.environ.get("BRIDGE_LOG_DIR") or "logs"
CONSOLE_LEVEL = (os.environ.get("BRIDGE_LOG_LEVEL") or "INFO").upper()

# Tag and ANSI colour per level
_LEVELS = {
    'DEBUG':    ('DBG', '\033[36m'),
    'INFO':     ('INF', '\033[32m'),
    'WARNING':  ('WRN', '\033[33m'),
    'ERROR':    ('ERR', '\033[31m'),
    'CRITICAL': ('CRT', '\033[91m\033[1m'),
}
_RESET = '\033[0m'

IS_TTY = sys.stdout.isatty()

# Bridge tokens, passwords and API keys; filled by register_sensitive()
_sensitive: set[str] = set()


def register_sensitive(values: frozenset[str]) -> None:
    """Register secret strings that must never appear in log output."""
    _sensitive.clear()
    # Short values would mask too many innocent substrings
    _sensitive.update(v for v in values if len(v) >= 8)


def mask(text: str) -> str:
    for secret in _sensitive:
        if secret in text:
            text = text.replace(secret, "***")
    return text


class MaskingFilter(logging.Filter):
    """Redacts registered secrets from the message and any attached traceback."""

    def filter(self, record: logging.LogRecord) -> bool:
        if _sensitive:
            record.msg = mask(record.getMessage())
            record.args = ()
            if record.exc_info and not record.exc_text:
                record.exc_text = logging.Formatter().formatException(record.exc_info)
            if record.exc_text:
                record.exc_text = mask(record.exc_text)
        return True


class ConsoleFormatter(logging.Formatter):
    """``[time] [INF] | file:line | message``, coloured when stdout is a terminal."""

    def format(self, record):
        timestamp = datetime.now().strftime('[%Y-%m-%d %H:%M:%S]')
        tag, colour = _LEVELS.get(record.levelname, (record.levelname, ''))
        level = f"[{tag}]"
        if IS_TTY and colour:
            level = colour + level + _RESET

        try:
            file = os.path.relpath(record.pathname)
        except ValueError:
            file = record.pathname

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        line = f"{timestamp} {level} | {file}:{record.lineno} | {record.getMessage()}"
        if record.exc_text:
            line += "\n" + record.exc_text
        return line


def _build_logger() -> logging.Logger:
    logger = logging.getLogger('slackircbridge')
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    # Re-importing must not stack a second set of handlers
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)
    for f in list(logger.filters):
        logger.removeFilter(f)
    logger.addFilter(MaskingFilter())

    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(ConsoleFormatter())
    console.setLevel(CONSOLE_LEVEL if CONSOLE_LEVEL in _LEVELS else logging.INFO)
    logger.addHandler(console)

    # One file per process start: 20250915-150316160.log
    os.makedirs(LOG_DIR, exist_ok=True)
    filename = datetime.now().strftime("%Y%m%d-%H%M%S%f")[:-3] + ".log"
    file_handler = logging.FileHandler(os.path.join(LOG_DIR, filename), encoding='utf-8')
    file_handler.setFormatter(logging.Formatter(
        '[%(asctime)s] [%(levelname)s] | %(filename)s:%(lineno)d | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    ))
    file_handler.setLevel(logging.DEBUG)
    logger.addHandler(file_handler)
    return logger


logger = _build_logger()


def get_logger(name=None):
    """Return the shared bridge logger."""
    return logger

"""
Logging configuration for the session service.

Every module logs through the single ``logger`` defined at the bottom of
this file. Records go to a colored console, a rotating file and, when
LOKI_URL is set, to Loki with the service name, level and logger name as
stream labels.
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Final, Optional

import colorlog
import httpx

from configs import LOG_FILE, LOG_LEVEL, LOKI_URL


# =============================================================================
# Constants
# =============================================================================

LOG_FORMAT: Final[str] = (
    "%(name)s | %(asctime)s | %(levelname)s | %(funcName)s:%(lineno)d | %(message)s"
)
DATE_FORMAT: Final[str] = "%Y-%m-%d %H:%M:%S"
MAX_LOG_FILE_SIZE: Final[int] = 5 * 1024 * 1024  # 5 MB
LOG_BACKUP_COUNT: Final[int] = 3
LOKI_TIMEOUT: Final[float] = 2.0

LOG_COLORS: Final[dict[str, str]] = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "bold_red",
}


# =============================================================================
# Loki
# =============================================================================

def build_loki_payload(record: logging.LogRecord, message: str, labels: dict[str, str]) -> dict[str, Any]:
    """Loki push body for one record, stamped with the record's own creation time."""
    stream = {**labels, "level": record.levelname.lower(), "logger": record.name}
    return {
        "streams": [
            {
                "stream": stream,
                "values": [[str(int(record.created * 1e9)), message]],
            }
        ]
    }


class LokiHandler(logging.Handler):
    """
    Pushes each record to Loki over one reused HTTP connection.

    Delivery failures are reported through ``handleError`` and never reach
    the code that logged.
    """

    def __init__(
        self,
        url: str,
        labels: dict[str, str],
        client: Optional[httpx.Client] = None,
    ) -> None:
        super().__init__()
        self.url = url
        self.labels = labels
        self._client = client or httpx.Client(timeout=LOKI_TIMEOUT)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            payload = build_loki_payload(record, self.format(record), self.labels)
            self._client.post(self.url, json=payload).raise_for_status()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        self._client.close()
        super().close()


# =============================================================================
# Logger Factory
# =============================================================================

def get_logger(
    name: str,
    app: str = "session_service",
    log_file: Optional[str] = LOG_FILE,
    level: str = LOG_LEVEL,
    loki_url: Optional[str] = LOKI_URL,
) -> logging.Logger:
    """
    Create and configure a logger.

    Args:
        name: Logger name.
        app: Service label attached to Loki streams.
        log_file: Rotating log file; parent directories are created.
            None logs to the console only.
        level: Level name, e.g. ``"INFO"``.
        loki_url: Loki push endpoint, or None to skip remote logging.

    Returns:
        Configured logger instance. Calling again with the same name
        returns it unchanged.
    """
    logger_instance = logging.getLogger(name)
    if logger_instance.handlers:
        return logger_instance
    logger_instance.setLevel(level)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(colorlog.ColoredFormatter(
        "%(name)s | %(log_color)s%(asctime)s | %(levelname)s | "
        "%(funcName)s:%(lineno)d | %(message)s",
        datefmt=DATE_FORMAT,
        log_colors=LOG_COLORS,
    ))
    logger_instance.addHandler(console_handler)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=MAX_LOG_FILE_SIZE,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        logger_instance.addHandler(file_handler)

    if loki_url:
        loki_handler = LokiHandler(loki_url, {"app": app})
        # Loki has its own timestamp and level label
        loki_handler.setFormatter(logging.Formatter("%(funcName)s:%(lineno)d - %(message)s"))
        logger_instance.addHandler(loki_handler)

    return logger_instance


logger = get_logger(name="SESSION_SERVICE")

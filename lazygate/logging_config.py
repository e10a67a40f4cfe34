import datetime
import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .settings import settings


APP_LOGGER_NAME = "lazygate"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


class ZonedFormatter(logging.Formatter):
    """
    Renders asctime as ISO-8601 in LOG_TIMEZONE, or in the host's local
    zone when that is unset or unknown.
    """

    def __init__(self, fmt: str, timezone_name: Optional[str] = None) -> None:
        super().__init__(fmt)
        tz: Optional[datetime.tzinfo] = None
        if timezone_name:
            try:
                tz = ZoneInfo(timezone_name)
            except ZoneInfoNotFoundError:
                pass
        self.tz = tz or datetime.datetime.now().astimezone().tzinfo

    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:
        stamp = datetime.datetime.fromtimestamp(record.created, tz=self.tz)
        return stamp.isoformat(timespec="milliseconds")


def _gateway_file_handler(formatter: logging.Formatter) -> logging.Handler:
    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = TimedRotatingFileHandler(
        log_dir / f"{APP_LOGGER_NAME}.log",
        when="midnight",
        backupCount=settings.log_backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(formatter)
    return handler


def setup_logging() -> None:
    """
    Gateway records go to a midnight-rotated file under LOG_DIR; the root
    logger echoes everything, uvicorn included, to the console.
    Calling it twice is a no-op.
    """
    app_logger = logging.getLogger(APP_LOGGER_NAME)
    if app_logger.handlers:
        return

    level = logging.getLevelName(str(settings.log_level).upper())
    if not isinstance(level, int):
        level = logging.INFO

    formatter = ZonedFormatter(LOG_FORMAT, timezone_name=settings.log_timezone)
    app_logger.setLevel(level)
    app_logger.addHandler(_gateway_file_handler(formatter))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    if not root_logger.handlers:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root_logger.addHandler(console)


logger = logging.getLogger(APP_LOGGER_NAME)


__all__ = ["ZonedFormatter", "logger", "setup_logging"]

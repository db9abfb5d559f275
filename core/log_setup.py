import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


@dataclass(frozen=True)
class LogSettings:
    level: str = "INFO"
    file: Optional[str] = None

    @classmethod
    def from_settings(cls, settings) -> "LogSettings":
        return cls(level=settings.log_level, file=settings.log_file)


class AnnouncingFileHandler(logging.FileHandler):
    """FileHandler that reports where it writes the first time it emits."""

    def __init__(self, filename, announce=None, **kwargs):
        super().__init__(filename, delay=True, **kwargs)
        self._announce = announce or (lambda path: print(f"[LOG] Writing logs to {path}"))
        self._announced = False
        self._latch = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        with self._latch:
            first = not self._announced
            self._announced = True
        if first:
            self._announce(self.baseFilename)
        super().emit(record)


def configure_logging(settings: LogSettings, announce=None) -> logging.Logger:
    """
    Configure the root logger once at process start.

    Calling it again replaces the handlers it installed earlier instead of
    stacking duplicates.
    """
    root = logging.getLogger()
    level = getattr(logging, settings.level.upper(), logging.INFO)
    root.setLevel(level)

    for handler in list(root.handlers):
        if getattr(handler, "_station_monitor", False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    console._station_monitor = True
    root.addHandler(console)

    if settings.file:
        path = Path(settings.file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = AnnouncingFileHandler(path, announce=announce, encoding="utf-8")
        file_handler.setFormatter(formatter)
        file_handler._station_monitor = True
        root.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root

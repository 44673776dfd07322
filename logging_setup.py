"""Application-wide logging setup with an optional rotating log file."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: Union[int, str] = logging.INFO,
                      log_dir: Optional[Path] = None,
                      *,
                      name: str = "voiceloop") -> logging.Logger:
    """Install console (and file) handlers on the root logger.

    Calling it again replaces the handlers it installed earlier, so tests and
    the CLI can reconfigure without duplicating output.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_voiceloop", False):
            root.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    console._voiceloop = True
    root.addHandler(console)

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_dir / f"{name}.log", maxBytes=2_000_000, backupCount=3)
        file_handler.setFormatter(formatter)
        file_handler._voiceloop = True
        root.addHandler(file_handler)

    root.setLevel(level.upper() if isinstance(level, str) else level)
    return logging.getLogger(name)

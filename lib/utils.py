from datetime import datetime
from logging import getLogger, basicConfig, DEBUG, INFO, WARNING, FileHandler, Formatter, Filter
from pathlib import Path
from typing import Optional

from config import LOG_LEVEL, LOG_PATH


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

# Prefixes for project modules (DEBUG level in file)
PROJECT_PREFIXES = ("lib.", "__main__", "transcribe")


class _ThirdPartyLogFilter(Filter):
    """Filter that only passes records from 3rd party modules at INFO+."""
    def filter(self, record):
        is_project = record.name.startswith(PROJECT_PREFIXES)
        if is_project:
            return True  # project code: pass all levels
        return record.levelno >= INFO  # 3rd party: INFO and above only


_LOG_FORMAT = "%(asctime)s %(levelname)s:%(name)s:%(funcName)s(): %(message)s"


def setup_logging(level: Optional[int] = None) -> Path:
    """
    Configure logging for the application.

    Console: DEV mode = DEBUG, PROD mode = WARNING; `level` overrides both.
    File: Always DEBUG for project code, INFO for 3rd party.

    Returns the path to the log file.
    """
    if level is None:
        level = WARNING if LOG_LEVEL == "PROD" else DEBUG
    basicConfig(level=DEBUG, format=_LOG_FORMAT)
    for handler in getLogger().handlers:
        handler.setLevel(level)  # console only, the file handler below stays at DEBUG
    # frame level dumps of the websocket client are too noisy even for DEV
    getLogger("websockets.client").setLevel(INFO)

    # File handler: DEBUG for project code, INFO for 3rd party
    log_filename = LOG_PATH / f"stt_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    file_handler = FileHandler(log_filename, encoding="utf-8")
    file_handler.setLevel(DEBUG)
    file_handler.setFormatter(Formatter(_LOG_FORMAT))
    file_handler.addFilter(_ThirdPartyLogFilter())
    getLogger().addHandler(file_handler)

    getLogger(__name__).info("Logging to file: %s", log_filename)
    return log_filename


def make_silence_chunk(sample_rate: int, duration_s: float = 0.1, sample_width_bytes: int = 2) -> bytes:
    """Create a silence audio chunk of given duration."""
    return b"\x00" * sample_width_bytes * int(sample_rate * duration_s)

import logging
import os
from pathlib import Path

__all__ = ["LOG_FILE", "logger"]

LOG_DIR = Path(os.getenv("BACK2TAB_LOG_DIR", "./log"))
LOG_FILE = LOG_DIR / "back2tab.log"

logger = logging.getLogger("back2tab")
if not logger.handlers:
    logger.setLevel(logging.INFO)
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    _fh = logging.FileHandler(LOG_FILE, encoding="utf-8")
    _fh.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_fh)

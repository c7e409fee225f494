from __future__ import annotations
import logging
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(log_dir: Optional[Union[str, Path]] = "logs", level: int = logging.INFO) -> logging.Logger:
    """
    Configure the "songforge" logger tree: console always, plus
    <log_dir>/songforge.log when log_dir is set. Safe to call again
    (previous handlers are closed and replaced).
    """
    logger = logging.getLogger("songforge")
    logger.setLevel(level)
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()

    fmt = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler()
    console.setFormatter(fmt)
    logger.addHandler(console)

    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(path / "songforge.log", encoding="utf-8")
        fh.setFormatter(fmt)
        logger.addHandler(fh)

    # --debug logs request bodies; connection pool chatter is noise
    logging.getLogger("urllib3").setLevel(max(level, logging.WARNING))

    logger.propagate = False
    return logger

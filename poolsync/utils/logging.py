import logging
import sys
from typing import Iterable

# these log every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore")


def setup_logging(level: str = "INFO", quiet: Iterable[str] = NOISY_LOGGERS) -> None:
    level = (level or "INFO").upper()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s %(levelname)s [%(name)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )

    root = logging.getLogger()
    root.setLevel(level)
    if not any(getattr(h, "_poolsync", False) for h in root.handlers):
        handler._poolsync = True
        root.addHandler(handler)

    for name in quiet:
        if level != "DEBUG":
            logging.getLogger(name).setLevel(logging.WARNING)

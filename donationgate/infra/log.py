import logging
import sys

FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Install a single stream handler on the package logger.

    Safe to call more than once (uvicorn reloads, test clients); the
    handler is only added the first time.
    """
    root = logging.getLogger("donationgate")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    if any(getattr(h, "_donationgate", False) for h in root.handlers):
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(FORMAT))
    handler._donationgate = True
    root.addHandler(handler)

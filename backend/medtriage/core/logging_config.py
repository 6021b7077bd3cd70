import logging
import sys

_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Attach a single stdout handler to the root logger.

    Safe to call more than once (tests create several apps); only the level
    is updated after the first call.
    """
    root = logging.getLogger()
    root.setLevel(level.upper())
    if any(getattr(h, "_medtriage", False) for h in root.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler._medtriage = True  # type: ignore[attr-defined]
    root.addHandler(handler)

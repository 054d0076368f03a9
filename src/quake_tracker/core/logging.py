from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

_HANDLER_MARKER = "_quake_tracker_handler"


def configure_logging(level: str = "INFO") -> None:
    """Install a single rich handler on the root logger.

    Calling this more than once only updates the level.
    """
    root = logging.getLogger()
    root.setLevel(level.upper())

    for handler in root.handlers:
        if getattr(handler, _HANDLER_MARKER, False):
            return

    handler = RichHandler(
        console=Console(stderr=True),
        rich_tracebacks=True,
        show_path=False,
        log_time_format="[%Y-%m-%d %H:%M:%S]",
    )
    setattr(handler, _HANDLER_MARKER, True)
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    root.addHandler(handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

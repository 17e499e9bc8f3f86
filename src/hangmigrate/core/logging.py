from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

_LEVELS = (logging.WARNING, logging.INFO, logging.DEBUG)


def configure_logging(verbosity: int = 0, console: Console | None = None) -> None:
    """Route log records through rich; ``-v`` enables INFO and ``-vv`` DEBUG."""
    level = _LEVELS[max(0, min(verbosity, len(_LEVELS) - 1))]
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=verbosity > 1,
        rich_tracebacks=True,
    )
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )
    # urllib3 logs every retry and connection at INFO.
    logging.getLogger("urllib3").setLevel(max(level, logging.WARNING))

from __future__ import annotations

import logging
from typing import Union

from rich.console import Console
from rich.logging import RichHandler

_HANDLER_NAME = "peforge-rich"


def configure_logging(level: Union[int, str] = logging.WARNING) -> logging.Logger:
    """
    Route the package loggers to a RichHandler on stderr.
    Calling it again only updates the level.
    """
    root = logging.getLogger("peforge")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.WARNING
    root.setLevel(level)

    if not any(h.get_name() == _HANDLER_NAME for h in root.handlers):
        handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
            markup=False,
        )
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
        root.addHandler(handler)
        root.propagate = False
    return root

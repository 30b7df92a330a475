"""
Root logger setup for the signaling server and the demo client.

aiortc, aioice and websockets log every ICE check and frame at DEBUG/INFO;
they are held at WARNING unless PeerLink itself runs at DEBUG.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional, Union

DEFAULT_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"
TRANSPORT_LOGGERS = ("aioice", "aiortc", "websockets")


def resolve_level(level: Union[int, str]) -> int:
    """Map ``"debug"``/``"INFO"``/``10`` style values to a logging level; unknown names mean INFO."""

    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def quiet_transport_loggers(level: int) -> None:
    floor = level if level <= logging.DEBUG else max(level, logging.WARNING)
    for name in TRANSPORT_LOGGERS:
        logging.getLogger(name).setLevel(floor)


def configure_logging(level: Union[int, str] = logging.INFO, format: Optional[str] = None) -> int:
    """
    Install a stdout handler on the root logger once and return the level used.

    An existing root configuration is left alone; only the transport loggers
    are adjusted.
    """

    resolved = resolve_level(level)
    quiet_transport_loggers(resolved)
    if logging.getLogger().handlers:
        return resolved

    logging.basicConfig(
        level=resolved,
        format=format or DEFAULT_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    return resolved

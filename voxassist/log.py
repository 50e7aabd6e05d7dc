from __future__ import annotations

import json
import logging
import sys
from typing import Any


_FORMAT = "[%(asctime)s] %(levelname)s %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        stream=sys.stderr,
        format=_FORMAT,
    )


def _default(obj: Any) -> Any:
    if isinstance(obj, (bytes, bytearray)):
        return f"<{len(obj)} bytes>"
    if hasattr(obj, "value"):
        return obj.value
    return str(obj)


def render_event(component: str, event: str, **fields: Any) -> str:
    payload: dict[str, Any] = {"component": component, "event": event}
    payload.update(fields)
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=_default)


def log_event(
    logger: logging.Logger,
    component: str,
    event: str,
    *,
    level: int = logging.INFO,
    exc_info: bool = False,
    **fields: Any,
) -> None:
    """
    One structured line per pipeline event: {"component":..,"event":..,...}.
    """
    if not logger.isEnabledFor(level):
        return
    logger.log(level, render_event(component, event, **fields), exc_info=exc_info)

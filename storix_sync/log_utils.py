"""Rate-limited logging helpers."""

from __future__ import annotations

import logging
import time

_LAST: dict[str, float] = {}
_MAX_CODES = 256


def warn_once(logger: logging.Logger, code: str, message: str, *args, window: float = 300) -> None:
    """Log a warning for ``code`` at most once per ``window`` seconds.

    The cache of codes is capped; the oldest entry is dropped when full.
    """
    now = time.monotonic()
    last = _LAST.get(code)
    if last is not None and now - last <= window:
        return
    if len(_LAST) >= _MAX_CODES:
        oldest = min(_LAST, key=_LAST.get)
        _LAST.pop(oldest, None)
    _LAST[code] = now
    logger.warning(message, *args)


def reset_warnings() -> None:
    _LAST.clear()

from __future__ import annotations

import threading
import time
from typing import Dict


_lock = threading.Lock()
_last_log: Dict[str, float] = {}


def should_log(key: str, *, interval_seconds: float) -> bool:
    now = time.monotonic()
    with _lock:
        last = _last_log.get(key)
        if last is not None and (now - last) < float(interval_seconds):
            return False
        _last_log[key] = now
        return True


def forget(prefix: str) -> None:
    """Drop throttle state for keys starting with `prefix` (e.g. a removed client)."""
    with _lock:
        for key in [k for k in _last_log if k.startswith(prefix)]:
            del _last_log[key]


def log_exception_throttled(logger, key: str, *args, interval_seconds: float, message: str) -> None:
    """Log the active exception at most once per interval per key.

    Used for best-effort steps (artifact removal, teardown) where the same
    failure can repeat on every recompile of a client.
    """
    try:
        if should_log(key, interval_seconds=interval_seconds):
            logger.exception(message, *args)
    except Exception:
        # Never let logging break a compile.
        pass


def log_warning_throttled(logger, key: str, *args, interval_seconds: float, message: str) -> None:
    """Warn at most once per interval per key.

    Degraded/dropped rule warnings fire on every recompile of a client, so
    they are keyed per client and throttled.
    """
    try:
        if should_log(key, interval_seconds=interval_seconds):
            logger.warning(message, *args)
    except Exception:
        pass

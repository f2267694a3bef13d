"""Utility functions shared by the worker components."""

from __future__ import annotations

import re
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Hosts that only make sense inside the worker's own network namespace
_LOOPBACK_HOST_RE = re.compile(
    r"^(?P<scheme>wss?://)(?:localhost|127\.0\.0\.1|0\.0\.0\.0|\[::1\]|\[::\])(?=[:/]|$)"
)


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 with millisecond precision (``...Z``)."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def rewrite_loopback_host(endpoint: str, private_hostname: Optional[str]) -> str:
    """
    Replace a loopback host in a ws:// endpoint with ``private_hostname``.

    Args:
        endpoint: Endpoint reported by the engine (e.g. 'ws://localhost:3131/playwright/abc')
        private_hostname: Hostname reachable from other containers, or None

    Returns:
        Rewritten endpoint, or the original one when no hostname is configured
        or the host is not a loopback address

    Examples:
        >>> rewrite_loopback_host('ws://127.0.0.1:3131/playwright/abc', 'worker')
        'ws://worker:3131/playwright/abc'
        >>> rewrite_loopback_host('ws://10.0.0.5:3131/playwright/abc', 'worker')
        'ws://10.0.0.5:3131/playwright/abc'
    """
    if not private_hostname:
        return endpoint
    return _LOOPBACK_HOST_RE.sub(lambda m: f"{m.group('scheme')}{private_hostname}", endpoint, count=1)


def format_error(error: BaseException) -> Dict[str, Any]:
    """Error message and stack for structured log events."""
    return {
        "message": str(error) or error.__class__.__name__,
        "type": error.__class__.__name__,
        "stack": "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        ).rstrip(),
    }

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import httpx


logger = logging.getLogger(__name__)


def probe_once(url: str, *, request_timeout_s: float = 3.0, client: Optional[httpx.Client] = None) -> bool:
    """Single health attempt: True on any 2xx, False on anything else (never raises)."""
    try:
        if client is not None:
            resp = client.get(url, timeout=request_timeout_s)
        else:
            resp = httpx.get(url, timeout=request_timeout_s, follow_redirects=True)
    except (httpx.HTTPError, httpx.InvalidURL, ValueError, OSError) as e:
        logger.debug("health probe %s failed: %s", url, e)
        return False
    return 200 <= int(resp.status_code) < 300


def await_healthy(
    url: str,
    timeout_s: float,
    *,
    poll_interval_s: float = 1.0,
    request_timeout_s: float = 3.0,
    client: Optional[httpx.Client] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Poll `url` until it answers 2xx or `timeout_s` elapses.

    Transport errors (connection refused, DNS failure, per-attempt timeout) and
    non-2xx responses count as "not yet". At least one attempt is always made.
    """
    owns_client = client is None
    http = client or httpx.Client(follow_redirects=True)
    deadline = clock() + max(0.0, float(timeout_s))
    try:
        while True:
            if probe_once(url, request_timeout_s=request_timeout_s, client=http):
                return True
            remaining = deadline - clock()
            if remaining <= 0:
                return False
            sleep(min(float(poll_interval_s), remaining))
    finally:
        if owns_client:
            http.close()

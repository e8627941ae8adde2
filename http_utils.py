"""
http_utils.py
=============
Blocking JSON GET with retry, 429 back-off and latency measurement.

Callers on the event loop run it through ``asyncio.to_thread``.
"""

from __future__ import annotations

import time
from typing import Any, Dict, Optional, Tuple

import requests

from config import HTTP, get_logger

logger = get_logger(__name__)


def get_json(
    url: str,
    params: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    retries: int = HTTP["max_retries"],
    timeout: float = HTTP["timeout"],
) -> Tuple[Any, float]:
    """GET with retry + latency.  Returns (data, latency_ms)."""
    merged = {"User-Agent": HTTP["user_agent"], "Accept": "application/json"}
    if headers:
        merged.update(headers)
    for attempt in range(1, retries + 1):
        try:
            t0 = time.perf_counter()
            resp = requests.get(url, params=params, headers=merged, timeout=timeout)
            latency_ms = (time.perf_counter() - t0) * 1000
            resp.raise_for_status()
            return resp.json(), latency_ms
        except requests.exceptions.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else 0
            if status == 429 and attempt < retries:
                logger.warning("Rate limited on %s, sleeping %.0fs", url, HTTP["rate_limit_sleep"])
                time.sleep(HTTP["rate_limit_sleep"])
                continue
            logger.warning("[%d/%d] HTTP %d on %s", attempt, retries, status, url)
            if attempt == retries:
                raise
            time.sleep(HTTP["retry_delay"] * attempt)
        except requests.exceptions.RequestException as exc:
            logger.warning("[%d/%d] Request error: %s", attempt, retries, exc)
            if attempt == retries:
                raise
            time.sleep(HTTP["retry_delay"] * attempt)
    raise RuntimeError(f"All retries exhausted for {url}")

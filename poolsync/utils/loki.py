from __future__ import annotations
import json
import logging
import time
from typing import Dict, Any, Optional

from poolsync.config import get_settings
from poolsync.http import HttpClient

logger = logging.getLogger(__name__)


async def loki_log(http: HttpClient, level: str, message: str, labels: Optional[Dict[str, str]] = None, extra: Optional[Dict[str, Any]] = None) -> bool:
    """
    Push one log line to Loki at `${LOKI_URL}/loki/api/v1/push`. Best-effort: returns False instead of raising.
    """
    settings = get_settings()
    if not settings.ENABLE_LOKI:
        return False
    ts_ns = str(int(time.time() * 1_000_000_000))
    stream = labels or {"service": "poolsync", "env": settings.ENV, "level": level}
    payload = {
        "streams": [
            {
                "stream": stream,
                "values": [
                    [ts_ns, json.dumps({"message": message, **(extra or {})})]
                ],
            }
        ]
    }
    url = f"{settings.LOKI_URL.rstrip('/')}/loki/api/v1/push"
    try:
        await http.post(url, json=payload, headers={"Content-Type": "application/json"})
    except Exception as e:
        logger.warning(f"Loki push failed: {e}")
        return False
    return True

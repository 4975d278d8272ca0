from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, List, Optional, Tuple

from poolsync.models import Notice

logger = logging.getLogger(__name__)

NoticeShipper = Callable[[Notice], Awaitable[object]]


class NoticeBoard:
    """User-visible transient notices (e.g. a failed chart fetch).

    Keeps the most recent ``limit`` notices. When a shipper is configured
    each notice is also forwarded, best-effort, to the log backend.
    """

    def __init__(self, limit: int = 50, shipper: Optional[NoticeShipper] = None, clock: Callable[[], float] = time.time):
        self.limit = limit
        self._shipper = shipper
        self._clock = clock
        self._items: Tuple[Notice, ...] = ()

    @property
    def items(self) -> List[Notice]:
        return list(self._items)

    async def post(self, title: str, description: str, diagnostic: str = "", level: str = "error") -> Notice:
        notice = Notice(
            level=level,
            title=title,
            description=description,
            diagnostic=diagnostic or description,
            created_at=self._clock(),
        )
        self._items = (self._items + (notice,))[-self.limit:]
        if self._shipper is not None:
            try:
                await self._shipper(notice)
            except Exception as e:
                logger.warning(f"Notice shipping failed: {e}")
        return notice

    def clear(self) -> None:
        self._items = ()

from __future__ import annotations

import logging
import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from poolsync.errors import FetchFailure
from poolsync.models import ChartPoint, DailyMetrics, DayRow, FeeChangeEvent
from poolsync.services.notices import NoticeBoard
from poolsync.services.window import window_days as window_days_for

logger = logging.getLogger(__name__)

ChartFetcher = Callable[[str, int], Awaitable[DailyMetrics]]

DAY_END = time(23, 59, 59)


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def scale_ratio(raw: Any) -> float:
    """Normalize a fee-controller ratio that may arrive at 1e18, 1e6 or 1e4 scale."""
    try:
        n = float(raw) if raw is not None else 0.0
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(n):
        return 0.0
    magnitude = abs(n)
    if magnitude >= 1e12:
        return n / 1e18
    if magnitude >= 1e6:
        return n / 1e6
    if magnitude >= 1e4:
        return n / 1e4
    return n


def _day_end_ts(day: date) -> int:
    return int(datetime.combine(day, DAY_END, tzinfo=timezone.utc).timestamp())


def build(
    daily_rows: Iterable[DayRow],
    fee_events: Iterable[FeeChangeEvent],
    today_key: Optional[date] = None,
) -> List[ChartPoint]:
    """Merge daily TVL/volume rows with fee-change events, one point per known day.

    Fee, activity ratio and EMA target are a step function: each day takes
    the latest event at or before 23:59:59 UTC of that day, and days without
    events carry the previous values forward. Today always gets a point.
    """
    today_key = today_key or utc_today()
    by_date: Dict[date, DayRow] = {}
    for row in daily_rows:
        by_date[row.date] = row
    all_dates = sorted(set(by_date) | {today_key})
    events = sorted(fee_events, key=lambda e: e.timestamp_seconds)

    points: List[ChartPoint] = []
    i = 0
    fee_pct = ratio = ema = 0.0
    for day in all_dates:
        end_ts = _day_end_ts(day)
        while i < len(events) and events[i].timestamp_seconds <= end_ts:
            e = events[i]
            bps = e.new_fee_bps if e.new_fee_bps is not None else 0.0
            if math.isfinite(bps):
                fee_pct = bps / 10000
            ratio = scale_ratio(e.current_ratio_raw)
            ema = scale_ratio(e.new_target_ratio_raw)
            i += 1
        row = by_date.get(day)
        points.append(
            ChartPoint(
                date=day,
                volume_usd=row.volume_usd if row else 0.0,
                tvl_usd=row.tvl_usd if row else 0.0,
                activity_ratio=ratio,
                ema_target=ema,
                fee_pct=fee_pct,
            )
        )
    return points


def pad_for_window(points: Sequence[ChartPoint], window_days: int) -> List[ChartPoint]:
    """Clip to the trailing ``window_days`` and make the series gapless.

    The window ends at the last date of ``points``. Missing days inside the
    retained range get zero volume, the carried TVL and the last non-zero
    fee. The result is left-padded with empty days to exactly ``window_days``
    entries. Always derive from the unclipped series.
    """
    if not points or window_days <= 0:
        return []
    end = max(p.date for p in points)
    start = end - timedelta(days=window_days - 1)
    by_date = {p.date: p for p in points if p.date >= start}
    first = min(by_date)

    filled: List[ChartPoint] = []
    last_tvl = 0.0
    last_fee = 0.0
    day = first
    while day <= end:
        point = by_date.get(day)
        if point is not None:
            filled.append(point)
            last_tvl = point.tvl_usd
            if point.fee_pct > 0:
                last_fee = point.fee_pct
        else:
            filled.append(ChartPoint(date=day, tvl_usd=last_tvl, fee_pct=last_fee))
        day += timedelta(days=1)

    missing = window_days - len(filled)
    padding = [ChartPoint(date=first - timedelta(days=k)) for k in range(missing, 0, -1)]
    return padding + filled


def _with_today_tvl(series: Tuple[ChartPoint, ...], today: date, tvl: float) -> Tuple[ChartPoint, ...]:
    for idx, point in enumerate(series):
        if point.date == today:
            if abs(point.tvl_usd - tvl) <= 0.01:
                return series
            patched = list(series)
            patched[idx] = point.model_copy(update={"tvl_usd": tvl})
            return tuple(patched)
    return series


class ChartView:
    """Read-only chart series for the active pool.

    Keeps the unclipped built series so a viewport change re-pads from the
    full history. Results for a pool that is no longer active are dropped.
    Fetch failures post a notice and leave the last good series in place.
    """

    def __init__(
        self,
        fetch: ChartFetcher,
        notices: Optional[NoticeBoard] = None,
        target_days: int = 60,
        attempts: int = 2,
        base_delay: float = 0.3,
        viewport_width: float = 1200,
        today: Callable[[], date] = utc_today,
    ):
        self._fetch = fetch
        self.notices = notices
        self.target_days = target_days
        self.attempts = attempts
        self.base_delay = base_delay
        self._today = today
        self._window = window_days_for(viewport_width)
        self.pool_id: Optional[str] = None
        self.is_loading = False
        self._generation = 0
        self._fetched_for: Optional[str] = None
        self._source: Tuple[ChartPoint, ...] = ()
        self._points: Tuple[ChartPoint, ...] = ()

    @property
    def points(self) -> List[ChartPoint]:
        return list(self._points)

    @property
    def window_days(self) -> int:
        return self._window

    def set_pool(self, pool_id: Optional[str]) -> None:
        if pool_id == self.pool_id:
            return
        self._generation += 1
        self.pool_id = pool_id
        self._fetched_for = None
        self._source = ()
        self._points = ()
        self.is_loading = False

    def set_viewport(self, width: float) -> None:
        days = window_days_for(width)
        if days == self._window:
            return
        self._window = days
        self._points = tuple(pad_for_window(self._source, days))

    async def _fetch_with_retry(self, pool_id: str) -> DailyMetrics:
        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.base_delay, min=self.base_delay),
            retry=retry_if_exception_type(FetchFailure),
        )
        async for attempt in retrying:
            with attempt:
                metrics = await self._fetch(pool_id, self.target_days)
        return metrics

    async def rebuild(self, force: bool = False) -> bool:
        """Fetch and rebuild the series. Returns True when a new series was applied."""
        pool_id = self.pool_id
        if not pool_id:
            return False
        if self._fetched_for == pool_id and not force:
            return False
        self._fetched_for = pool_id
        generation = self._generation
        self.is_loading = True
        try:
            metrics = await self._fetch_with_retry(pool_id)
            series = build(metrics.rows, metrics.fee_events, self._today())
        except Exception as e:
            if generation != self._generation:
                logger.debug(f"Dropping chart failure for inactive pool {pool_id}: {e}")
                return False
            self._fetched_for = None
            logger.error(f"Failed to fetch chart data for {pool_id}: {e}")
            if self.notices is not None:
                await self.notices.post("Chart Data Failed", str(e), diagnostic=repr(e))
            return False
        finally:
            if generation == self._generation:
                self.is_loading = False

        if generation != self._generation:
            logger.debug(f"Dropping chart series for inactive pool {pool_id}")
            return False
        self._source = tuple(series)
        self._points = tuple(pad_for_window(series, self._window))
        return True

    def patch_today(self, tvl: float) -> bool:
        """Overwrite today's TVL in place. Ignored for non-finite values or changes under one cent."""
        if not math.isfinite(tvl) or not self._points:
            return False
        today = self._today()
        before = self._points
        self._source = _with_today_tvl(self._source, today, tvl)
        self._points = _with_today_tvl(self._points, today, tvl)
        return self._points is not before

    async def refetch(self, pool_id: str) -> None:
        if self.pool_id is not None and (pool_id or "").lower() == self.pool_id.lower():
            await self.rebuild(force=True)

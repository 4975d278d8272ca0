from __future__ import annotations

import logging
import functools
from collections import OrderedDict
from typing import Optional

from fastapi import Body, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from redis.asyncio import Redis

from poolsync.config import Settings, get_settings
from poolsync.utils.logging import setup_logging
from poolsync.models import (
    MutationInfo,
    OverlayPatch,
    PoolView,
    ReconcileOutcome,
    RefreshOptions,
    TickPrice,
)
from poolsync.errors import DerivationFailure, FetchFailure, UnknownPool
from poolsync.background import BackgroundRefresher
from poolsync.clients.metrics import BackendPoolStateReader
from poolsync.clients.positions import BackendDirectPositionReader, BackendVaultPositionReader, fetch_owned_position_ids
from poolsync.http import HttpClient
from poolsync.pools import PoolRegistry
from poolsync.services.cache import Cache
from poolsync.services.notices import NoticeBoard
from poolsync.services.page import PoolDetailPage, create_pool_page
from poolsync.services.pool_state import PoolStateStore
from poolsync.services.pool_stats import PoolStatsStore
from poolsync.services.position_cache import PositionRepository
from poolsync.services.prices import PriceBook
from poolsync.services.reconciler import ReconcileResult

app = FastAPI(title="poolsync – position & market-data sync", version="1.0.0")

logger = logging.getLogger(__name__)

# Middleware: wallet requirement plus Loki logging
from poolsync.middleware.security import require_wallet
from poolsync.utils.loki import loki_log

SETTINGS = get_settings()


class Services:
    """Process-wide stores plus one page per connected owner."""

    def __init__(
        self,
        settings: Settings,
        http: HttpClient,
        registry: PoolRegistry,
        repository: PositionRepository,
        direct_reader,
        vault_reader,
        stats: PoolStatsStore,
        state: PoolStateStore,
        prices: PriceBook,
        redis: Optional[Redis] = None,
        refresher: Optional[BackgroundRefresher] = None,
    ):
        self.settings = settings
        self.http = http
        self.registry = registry
        self.repository = repository
        self.direct_reader = direct_reader
        self.vault_reader = vault_reader
        self.stats = stats
        self.state = state
        self.prices = prices
        self.redis = redis
        self.refresher = refresher
        self._pages: OrderedDict[str, PoolDetailPage] = OrderedDict()

    def page_for(self, owner: str) -> PoolDetailPage:
        """The owner's page; least recently used pages are closed past MAX_OWNER_PAGES."""
        page = self._pages.get(owner)
        if page is not None:
            self._pages.move_to_end(owner)
            return page
        notices = NoticeBoard(shipper=self._ship_notice if self.settings.ENABLE_LOKI else None)
        page = create_pool_page(
            self.settings,
            self.http,
            self.registry,
            self.repository,
            self.direct_reader,
            self.vault_reader,
            self.stats,
            self.state,
            self.prices,
            notices,
        )
        self._pages[owner] = page
        while len(self._pages) > self.settings.MAX_OWNER_PAGES:
            evicted_owner, evicted = self._pages.popitem(last=False)
            evicted.close()
            logger.debug(f"Closed pool page for {evicted_owner}")
        return page

    async def _ship_notice(self, notice) -> None:
        await loki_log(self.http, notice.level.upper(), notice.title, extra={"description": notice.description})

    async def aclose(self) -> None:
        for page in self._pages.values():
            page.close()
        self._pages = OrderedDict()
        if self.refresher is not None:
            await self.refresher.stop()
        await self.repository.aclose()
        if self.redis is not None:
            try:
                await self.redis.aclose()
            except Exception as e:
                logger.warning(f"Redis close failed: {e}")
        await self.http.aclose()


def build_services(settings: Settings) -> Services:
    http = HttpClient()
    redis = Redis.from_url(settings.REDIS_URL, decode_responses=False) if settings.ENABLE_REDIS else None
    cache = Cache(redis, ttl_seconds=settings.POSITION_IDS_TTL_SECONDS) if redis is not None else None
    repository = PositionRepository(
        functools.partial(fetch_owned_position_ids, http),
        cache=cache,
        ttl_seconds=settings.POSITION_IDS_TTL_SECONDS,
    )
    registry = PoolRegistry.load(settings.POOLS_CONFIG_PATH)
    stats = PoolStatsStore(http, network_mode=settings.NETWORK_MODE)
    state = PoolStateStore()
    prices = PriceBook(http)
    refresher = BackgroundRefresher(
        registry,
        state,
        BackendPoolStateReader(http),
        stats,
        prices,
        state_interval=settings.POOL_STATE_POLL_SECONDS,
        market_interval=settings.PRICE_POLL_SECONDS,
    )
    return Services(
        settings,
        http,
        registry,
        repository,
        BackendDirectPositionReader(http),
        BackendVaultPositionReader(http),
        stats,
        state,
        prices,
        redis=redis,
        refresher=refresher,
    )


def _services() -> Services:
    return app.state.services


@app.middleware("http")
async def _security(request, call_next):
    return await require_wallet(request, call_next)


@app.middleware("http")
async def _loki_logger(request, call_next):
    response = await call_next(request)
    if SETTINGS.ENABLE_LOKI and getattr(app.state, "services", None) is not None:
        await loki_log(
            _services().http,
            "INFO",
            "request",
            extra={
                "path": str(request.url.path),
                "method": request.method,
                "status": response.status_code,
                "wallet": request.headers.get("x-wallet-address"),
                "client_ip": request.client.host if request.client else None,
            },
        )
    return response


@app.exception_handler(UnknownPool)
async def _unknown_pool(request: Request, exc: UnknownPool):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(DerivationFailure)
async def _derivation_failed(request: Request, exc: DerivationFailure):
    return JSONResponse(status_code=502, content={"detail": str(exc), "kind": "derivation"})


@app.exception_handler(FetchFailure)
async def _fetch_failed(request: Request, exc: FetchFailure):
    return JSONResponse(status_code=502, content={"detail": str(exc), "kind": "fetch"})


@app.on_event("startup")
async def startup_event() -> None:
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)
    if getattr(app.state, "services", None) is not None:
        return
    app.state.services = build_services(settings)
    if app.state.services.refresher is not None:
        try:
            await app.state.services.refresher.start()
        except Exception as e:
            logger.warning(f"Initial warm-up failed: {e}")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    services = getattr(app.state, "services", None)
    if services is not None:
        await services.aclose()
        app.state.services = None


async def _page(request: Request, pool_id: str, chain_id: Optional[int] = None) -> PoolDetailPage:
    """The owner's page, navigated to ``pool_id`` if it is showing another pool."""
    services = _services()
    page = services.page_for(request.state.owner)
    pool = services.registry.get(pool_id)
    if pool is None:
        raise UnknownPool(f"Unknown pool: {pool_id}")
    if page.pool_id != pool.subgraph_id:
        await page.open(pool_id, request.state.owner, chain_id or services.settings.CHAIN_ID)
    return page


def _outcome(page: PoolDetailPage, result: Optional[ReconcileResult]) -> ReconcileOutcome:
    if result is None:
        return ReconcileOutcome(status="disconnected")
    return ReconcileOutcome(
        status=result.status.value,
        new_ids=list(result.new_ids),
        updated_ids=list(result.updated_ids),
        removed_ids=list(result.removed_ids),
        positions=page.positions.positions,
    )


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/api/pools/{pool_id}", response_model=PoolView)
async def get_pool(
    request: Request,
    pool_id: str,
    chain_id: Optional[int] = Query(None),
    width: Optional[float] = Query(None, ge=0),
):
    services = _services()
    page = services.page_for(request.state.owner)
    return await page.open(pool_id, request.state.owner, chain_id or services.settings.CHAIN_ID, viewport_width=width)


@app.get("/api/pools/{pool_id}/chart")
async def get_chart(
    request: Request,
    pool_id: str,
    width: Optional[float] = Query(None, ge=0),
    force: bool = Query(False),
):
    page = await _page(request, pool_id)
    if width is not None:
        page.chart.set_viewport(width)
    if force:
        await page.chart.rebuild(force=True)
    return {
        "pool_id": page.pool_id,
        "window_days": page.chart.window_days,
        "is_loading": page.chart.is_loading,
        "points": [p.model_dump(mode="json") for p in page.chart.points],
    }


@app.post("/api/pools/{pool_id}/positions/refresh", response_model=PoolView)
async def post_refresh(request: Request, pool_id: str):
    page = await _page(request, pool_id)
    await page.positions.refresh()
    return page.view()


@app.post("/api/pools/{pool_id}/positions/refresh-after-add", response_model=ReconcileOutcome)
async def post_refresh_after_add(request: Request, pool_id: str, options: Optional[RefreshOptions] = Body(None)):
    page = await _page(request, pool_id)
    result = await page.positions.refresh_after_add(options)
    return _outcome(page, result)


@app.post("/api/pools/{pool_id}/positions/refresh-after-mutation", response_model=ReconcileOutcome)
async def post_refresh_after_mutation(request: Request, pool_id: str, info: Optional[MutationInfo] = Body(None)):
    page = await _page(request, pool_id)
    result = await page.positions.refresh_after_mutation(info)
    return _outcome(page, result)


@app.post("/api/pools/{pool_id}/positions/{position_id}/optimistic", response_model=PoolView)
async def post_optimistic(request: Request, pool_id: str, position_id: str, patch: OverlayPatch):
    page = await _page(request, pool_id)
    page.positions.set_optimistic(position_id, patch)
    return page.view()


@app.delete("/api/pools/{pool_id}/positions/{position_id}/optimistic", response_model=PoolView)
async def delete_optimistic(request: Request, pool_id: str, position_id: str):
    page = await _page(request, pool_id)
    page.positions.clear_optimistic(position_id)
    return page.view()


@app.get("/api/pools/{pool_id}/tick-price", response_model=TickPrice)
async def get_tick_price(request: Request, pool_id: str, tick: int = Query(...), base: Optional[str] = Query(None)):
    page = await _page(request, pool_id)
    base_symbol = base or page.denomination_base
    return TickPrice(tick=tick, base=base_symbol, price=page.convert_tick_to_price(tick, base_symbol))

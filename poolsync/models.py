from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


VAULT_POSITION_PREFIX = "uy-"


def is_vault_position_id(position_id: str) -> bool:
    return str(position_id or "").startswith(VAULT_POSITION_PREFIX)


def make_vault_position_id(hook_address: str, owner: str) -> str:
    return f"{VAULT_POSITION_PREFIX}{hook_address.lower()}-{owner.lower()}"


class TokenRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    address: str
    symbol: str


class TokenLeg(TokenRef):
    amount: float = 0.0


class BasePosition(BaseModel, ABC):
    """Fields and accessors shared by every position variant."""

    model_config = ConfigDict(frozen=True)

    position_id: str
    pool_id: str = Field(..., description="Pool id, canonicalized to lower case")
    owner: str = ""
    token0: TokenRef
    token1: TokenRef
    block_timestamp: int = 0
    last_timestamp: int = 0

    @field_validator("pool_id", mode="before")
    @classmethod
    def _canonical_pool_id(cls, v: Any) -> str:
        return str(v or "").strip().lower()

    @field_validator("position_id", mode="before")
    @classmethod
    def _position_id_str(cls, v: Any) -> str:
        return str(v)

    @abstractmethod
    def amounts(self) -> Tuple[float, float]:
        raise NotImplementedError

    def symbols(self) -> Tuple[str, str]:
        return self.token0.symbol, self.token1.symbol


class DirectPosition(BasePosition):
    kind: Literal["direct"] = "direct"
    token0: TokenLeg
    token1: TokenLeg
    tick_lower: int
    tick_upper: int
    liquidity_raw: str = "0"
    is_in_range: bool = False
    token0_uncollected_fees: Optional[float] = None
    token1_uncollected_fees: Optional[float] = None
    is_optimistically_updating: Optional[bool] = None

    def amounts(self) -> Tuple[float, float]:
        return self.token0.amount, self.token1.amount


class VaultPosition(BasePosition):
    kind: Literal["vault"] = "vault"
    token0_amount: float = 0.0
    token1_amount: float = 0.0
    hook_address: str = ""
    share_balance: str = "0"

    def amounts(self) -> Tuple[float, float]:
        return self.token0_amount, self.token1_amount


Position = Annotated[Union[DirectPosition, VaultPosition], Field(discriminator="kind")]
PositionList = TypeAdapter(List[Position])


class OwnedPositionId(BaseModel):
    id: str
    created_at: int = 0
    last_timestamp: int = 0


class OverlayPatch(BaseModel):
    model_config = ConfigDict(frozen=True)

    amount0_delta: float = 0.0
    amount1_delta: float = 0.0
    fees_cleared: Optional[bool] = None
    updating: Optional[bool] = None

    def merged(self, other: "OverlayPatch") -> "OverlayPatch":
        """Later flags win; amount deltas accumulate."""
        return OverlayPatch(
            amount0_delta=self.amount0_delta + other.amount0_delta,
            amount1_delta=self.amount1_delta + other.amount1_delta,
            fees_cleared=other.fees_cleared if other.fees_cleared is not None else self.fees_cleared,
            updating=other.updating if other.updating is not None else self.updating,
        )

    def without_fee_fields(self) -> "OverlayPatch":
        return self.model_copy(update={"fees_cleared": None, "updating": None})

    def is_empty(self) -> bool:
        return (
            self.amount0_delta == 0
            and self.amount1_delta == 0
            and self.fees_cleared is None
            and self.updating is None
        )


class OverlayEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    position_id: str
    patch: OverlayPatch
    created_at: float


class DayRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: date
    tvl_usd: float = 0.0
    volume_usd: float = 0.0


class FeeChangeEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp_seconds: int = 0
    new_fee_bps: Optional[float] = None
    current_ratio_raw: Union[float, str, None] = None
    new_target_ratio_raw: Union[float, str, None] = None


class ChartPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: date
    volume_usd: float = 0.0
    tvl_usd: float = 0.0
    activity_ratio: float = 0.0
    ema_target: float = 0.0
    fee_pct: float = 0.0


class DailyMetrics(BaseModel):
    pool_id: str
    rows: List[DayRow]
    fee_events: List[FeeChangeEvent] = Field(default_factory=list)


class PoolStateSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    current_price: Optional[float] = None
    current_tick: Optional[int] = None
    sqrt_price_x96: Optional[str] = None
    liquidity: Optional[str] = None


class PoolStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    tvl_usd: float = 0.0
    volume24h_usd: float = 0.0
    fees24h_usd: float = 0.0
    apr_raw: float = 0.0
    dynamic_fee_bps: Optional[int] = None
    apr: str = "Loading..."
    tvl_formatted: str = "Loading..."
    volume24h_formatted: str = "Loading..."
    fees24h_formatted: str = "Loading..."


class TokenDefinition(BaseModel):
    symbol: str
    address: str
    decimals: int = 18


class PoolConfig(BaseModel):
    id: str
    subgraph_id: str
    token0: TokenDefinition
    token1: TokenDefinition
    tick_spacing: int = 60
    type: Optional[str] = None
    hooks: Optional[str] = None
    enabled: bool = True

    @property
    def pair(self) -> str:
        return f"{self.token0.symbol} / {self.token1.symbol}"


class TxInfo(BaseModel):
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    tvl_delta: Optional[float] = None
    volume_delta: Optional[float] = None


class RefreshOptions(BaseModel):
    token0_symbol: Optional[str] = None
    token1_symbol: Optional[str] = None
    tx_info: Optional[TxInfo] = None


class MutationInfo(BaseModel):
    tx_hash: Optional[str] = None
    tvl_delta: Optional[float] = None


class Notice(BaseModel):
    level: str = "error"
    title: str
    description: str
    diagnostic: str = Field(default="", description="Copyable error text")
    created_at: float


class PoolView(BaseModel):
    pool_id: str
    pair: Optional[str] = None
    stats: PoolStats
    state: PoolStateSnapshot
    positions: List[Position]
    is_loading_positions: bool
    is_deriving_new_position: bool
    optimistically_cleared_fees: List[str]
    chart: List[ChartPoint]
    is_loading_chart: bool
    notices: List[Notice] = Field(default_factory=list)
    prices: Dict[str, float] = Field(default_factory=dict)


class ReconcileOutcome(BaseModel):
    status: str
    new_ids: List[str] = Field(default_factory=list)
    updated_ids: List[str] = Field(default_factory=list)
    removed_ids: List[str] = Field(default_factory=list)
    positions: List[Position] = Field(default_factory=list)


class TickPrice(BaseModel):
    tick: int
    base: str
    price: str

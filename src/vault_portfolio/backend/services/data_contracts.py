from __future__ import annotations

import logging
import math
import numbers
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd

logger = logging.getLogger(__name__)


DEPOSIT = "Deposit"
WITHDRAW = "Withdraw"
TRANSFER_IN = "TransferIn"
TRANSFER_OUT = "TransferOut"

INFLOW_KINDS = (DEPOSIT, TRANSFER_IN)
OUTFLOW_KINDS = (WITHDRAW, TRANSFER_OUT)
TRANSACTION_KINDS = INFLOW_KINDS + OUTFLOW_KINDS

# 인덱서/REST 응답마다 표기가 달라서 비교용 key로 정규화해 매핑한다
_KIND_LOOKUP = {
    "deposit": DEPOSIT,
    "withdraw": WITHDRAW,
    "withdrawal": WITHDRAW,
    "transferin": TRANSFER_IN,
    "transferout": TRANSFER_OUT,
}

# datetime.fromtimestamp가 받을 수 있는 범위
_MIN_TIMESTAMP = datetime(1, 1, 2, tzinfo=timezone.utc).timestamp()
_MAX_TIMESTAMP = datetime(9999, 12, 31, tzinfo=timezone.utc).timestamp()

TRANSACTION_COLUMNS = [
    "vault_id",
    "timestamp_sec",
    "kind",
    "asset_amount_usd",
    "shares_amount",
    "shares_balance_after_usd",
    "shares_balance_after",
    "tx_hash",
]

SNAPSHOT_COLUMNS = [
    "vault_id",
    "timestamp_sec",
    "share_price_usd",
    "total_supply",
    "total_assets",
    "apy",
]

BALANCE_COLUMNS = [
    "vault_id",
    "realized_pnl_usd",
    "unrealized_pnl_usd",
    "balance_usd",
    "total_deposited_usd",
    "total_withdrawn_usd",
    "last_updated_timestamp",
]

_COLUMN_ALIASES = {
    "vaultId": "vault_id",
    "vault": "vault_id",
    "timestampSec": "timestamp_sec",
    "timestamp": "timestamp_sec",
    "type": "kind",
    "assetAmountUsd": "asset_amount_usd",
    "sharesAmount": "shares_amount",
    "sharesBalanceAfterUsd": "shares_balance_after_usd",
    "sharesBalanceAfter": "shares_balance_after",
    "txHash": "tx_hash",
    "sharePriceUsd": "share_price_usd",
    "sharePrice": "share_price_usd",
    "totalSupply": "total_supply",
    "totalAssets": "total_assets",
    "realizedPnLUSD": "realized_pnl_usd",
    "unrealizedPnLUSD": "unrealized_pnl_usd",
    "balanceUSD": "balance_usd",
    "totalDepositedUSD": "total_deposited_usd",
    "totalWithdrawnUSD": "total_withdrawn_usd",
    "lastUpdatedTimestamp": "last_updated_timestamp",
}


# =========================
# 레코드 타입
# =========================

@dataclass(frozen=True)
class Transaction:
    """
    포지션을 바꾸는 on-chain 이벤트 1건.
    - Deposit / TransferIn: 원가(cost basis) 증가
    - Withdraw / TransferOut: 인출 비율만큼 원가 감소 + 실현손익 발생
    """
    vault_id: str
    timestamp_sec: int
    kind: str
    asset_amount_usd: float
    shares_amount: float
    # 인덱서가 생략할 수 있다 (가격이 없을 때 USD 잔고 fallback으로만 사용)
    shares_balance_after_usd: Optional[float] = None
    # 인덱서가 보고한 거래 직후 share 수량 (있으면 ledger 합산 대신 사용)
    shares_balance_after: Optional[float] = None
    tx_hash: Optional[str] = None

    def __post_init__(self):
        if self.kind not in TRANSACTION_KINDS:
            raise ValueError(f"Unsupported transaction kind: {self.kind!r}")

    @property
    def is_inflow(self) -> bool:
        return self.kind in INFLOW_KINDS

    @property
    def is_outflow(self) -> bool:
        return self.kind in OUTFLOW_KINDS


@dataclass(frozen=True)
class DailySnapshot:
    vault_id: str
    timestamp_sec: int
    share_price_usd: Optional[float] = None
    total_supply: Optional[float] = None
    total_assets: Optional[float] = None
    apy: Optional[float] = None


@dataclass(frozen=True)
class DailyPosition:
    """거래 1건 반영 직후의 vault 포지션 상태 (거래 단위, 날짜 단위 아님)"""
    timestamp_sec: int
    vault_id: str
    shares_balance: float
    total_invested: float
    realized_pnl_usd: float
    total_deposited_usd: float = 0.0
    total_withdrawn_usd: float = 0.0
    balance_usd: Optional[float] = None


@dataclass(frozen=True)
class DailyPortfolioValue:
    timestamp_sec: int
    total_value_usd: float
    total_invested_usd: float
    realized_pnl_usd: float

    @property
    def unrealized_pnl_usd(self) -> float:
        return self.total_value_usd - self.total_invested_usd

    @property
    def total_pnl_usd(self) -> float:
        return self.unrealized_pnl_usd + self.realized_pnl_usd

    def to_dict(self) -> Dict[str, float]:
        return {
            "timestamp_sec": self.timestamp_sec,
            "total_value_usd": self.total_value_usd,
            "total_invested_usd": self.total_invested_usd,
            "unrealized_pnl_usd": self.unrealized_pnl_usd,
            "realized_pnl_usd": self.realized_pnl_usd,
            "total_pnl_usd": self.total_pnl_usd,
        }


@dataclass(frozen=True)
class VaultBalance:
    """vault별 '현재' 잔고/손익 레코드 (히스토리 아님)"""
    vault_id: str
    realized_pnl_usd: float = 0.0
    unrealized_pnl_usd: float = 0.0
    balance_usd: float = 0.0
    total_deposited_usd: float = 0.0
    total_withdrawn_usd: float = 0.0
    last_updated_timestamp: int = 0


@dataclass(frozen=True)
class VaultMetrics:
    vault_id: str
    realized_pnl_usd: float
    unrealized_pnl_usd: float
    balance_usd: float
    total_deposited_usd: float
    total_withdrawn_usd: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vaultId": self.vault_id,
            "realizedPnLUSD": self.realized_pnl_usd,
            "unrealizedPnLUSD": self.unrealized_pnl_usd,
            "balanceUSD": self.balance_usd,
            "totalDepositedUSD": self.total_deposited_usd,
            "totalWithdrawnUSD": self.total_withdrawn_usd,
        }


@dataclass
class PortfolioMetrics:
    """
    KPI + 차트용 시계열 묶음.
    to_dict()는 차트/KPI 화면이 읽는 camelCase key로 내보낸다.
    """
    total_realized_pnl_usd: float = 0.0
    total_unrealized_pnl_usd: float = 0.0
    total_balance_usd: float = 0.0
    per_vault_metrics: List[VaultMetrics] = field(default_factory=list)
    last_updated_timestamp: int = 0
    positions_apy: float = 0.0
    daily_pnl_evolution: List[Dict] = field(default_factory=list)
    daily_pnl_delta_evolution: List[Dict] = field(default_factory=list)
    daily_pnl_percent_evolution: List[Dict] = field(default_factory=list)
    cumulative_pnl_percent_evolution: List[Dict] = field(default_factory=list)
    daily_amount_evolution: List[Dict] = field(default_factory=list)

    @property
    def total_pnl_usd(self) -> float:
        return self.total_realized_pnl_usd + self.total_unrealized_pnl_usd

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalRealizedPnLUSD": self.total_realized_pnl_usd,
            "totalUnrealizedPnLUSD": self.total_unrealized_pnl_usd,
            "totalBalanceUSD": self.total_balance_usd,
            "perVaultMetrics": [m.to_dict() for m in self.per_vault_metrics],
            "lastUpdatedTimestamp": self.last_updated_timestamp,
            "positionsApy": self.positions_apy,
            "dailyPnLEvolution": list(self.daily_pnl_evolution),
            "dailyPnLDeltaEvolution": list(self.daily_pnl_delta_evolution),
            "dailyPnLPercentEvolution": list(self.daily_pnl_percent_evolution),
            "cumulativePnLPercentEvolution": list(self.cumulative_pnl_percent_evolution),
            "dailyAmountEvolution": list(self.daily_amount_evolution),
        }


# =========================
# 정규화 헬퍼
# =========================

def is_valid_timestamp(v: Any) -> bool:
    """
    UNIX 초로 쓸 수 있는 값인지.
    유한한 숫자라도 datetime 범위(1~9999년)를 벗어나면 False
    (밀리초 timestamp가 초 단위로 잘못 들어온 경우 등)
    """
    if isinstance(v, bool) or not isinstance(v, numbers.Real):
        return False
    if not math.isfinite(v):
        return False
    return _MIN_TIMESTAMP <= v <= _MAX_TIMESTAMP


def parse_timestamp(v: Any) -> float:
    """
    UNIX 초 / 숫자 문자열 / ISO 문자열 / datetime을 UNIX 초(float)로 정규화.
    해석 불가하면 NaN (0으로 덮지 않는다).
    """
    if v is None or isinstance(v, bool):
        return math.nan
    if isinstance(v, numbers.Real):
        return float(v)
    if isinstance(v, datetime):
        dt = v if v.tzinfo is not None else v.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    if isinstance(v, date):
        return datetime(v.year, v.month, v.day, tzinfo=timezone.utc).timestamp()

    s = str(v).strip()
    if not s:
        return math.nan
    try:
        return float(s)
    except ValueError:
        pass
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return math.nan
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _normalize_kind(v: Any) -> Optional[str]:
    if not isinstance(v, str):
        return None
    key = re.sub(r"[^a-z]", "", v.lower())
    return _KIND_LOOKUP.get(key)


def _ensure_columns(df: pd.DataFrame, columns: Iterable[str]) -> pd.DataFrame:
    for col in columns:
        if col not in df.columns:
            df[col] = None
    return df


def _to_frame(rows: Optional[Iterable[Dict]], columns: List[str]) -> pd.DataFrame:
    rows = list(rows or [])
    if not rows:
        return pd.DataFrame(columns=columns)

    # row마다 key를 먼저 맞춘다 (camelCase / snake_case가 섞여 와도 컬럼이 갈라지지 않게)
    renamed = [{_COLUMN_ALIASES.get(k, k): v for k, v in row.items()} for row in rows]
    df = pd.DataFrame(renamed)
    return _ensure_columns(df, columns)


def _to_vault_id(series: pd.Series) -> pd.Series:
    # vault 주소는 대소문자 구분 없이 join 되어야 한다
    return series.map(lambda v: str(v).strip().lower() if isinstance(v, str) and v.strip() else None)


def _opt_float(v: Any) -> Optional[float]:
    if v is None or pd.isna(v):
        return None
    return float(v)


def _opt_str(v: Any) -> Optional[str]:
    if v is None or (not isinstance(v, str) and pd.isna(v)):
        return None
    return str(v)


def _log_dropped(tag: str, before: int, after: int) -> None:
    if after < before:
        logger.warning(
            "[%s] dropped %d of %d malformed rows (bad timestamp / id / numeric field)",
            tag, before - after, before,
        )


# =========================
# 정규화 (raw rows -> 레코드)
# =========================

def normalize_transactions(rows: Optional[Iterable[Dict]]) -> List[Transaction]:
    """
    인덱서 거래 rows → Transaction 목록.
    - timestamp/vault_id/kind/asset_amount_usd/shares_amount 중 하나라도 쓸 수 없으면 해당 row 제거
    - 제거 건수는 로그로 남긴다
    """
    df = _to_frame(rows, TRANSACTION_COLUMNS)
    if df.empty:
        return []

    total = len(df)

    df["vault_id"] = _to_vault_id(df["vault_id"])
    df["timestamp_sec"] = df["timestamp_sec"].map(parse_timestamp)
    df["kind"] = df["kind"].map(_normalize_kind)
    for col in ["asset_amount_usd", "shares_amount", "shares_balance_after_usd", "shares_balance_after"]:
        df[col] = pd.to_numeric(df[col], errors="coerce")

    df = df.dropna(subset=["vault_id", "timestamp_sec", "kind", "asset_amount_usd", "shares_amount"])
    df = df[df["timestamp_sec"].map(is_valid_timestamp).astype(bool)]
    _log_dropped("transactions", total, len(df))

    return [
        Transaction(
            vault_id=r["vault_id"],
            timestamp_sec=int(r["timestamp_sec"]),
            kind=r["kind"],
            asset_amount_usd=float(r["asset_amount_usd"]),
            shares_amount=float(r["shares_amount"]),
            shares_balance_after_usd=_opt_float(r["shares_balance_after_usd"]),
            shares_balance_after=_opt_float(r["shares_balance_after"]),
            tx_hash=_opt_str(r["tx_hash"]),
        )
        for r in df.to_dict(orient="records")
    ]


def normalize_snapshots(rows: Optional[Iterable[Dict]]) -> List[DailySnapshot]:
    """
    vault 일별 스냅샷 rows → DailySnapshot 목록.
    - share price가 비어있거나 숫자가 아니면 None으로 둔다 (row는 유지, 평가 단계에서 skip)
    """
    df = _to_frame(rows, SNAPSHOT_COLUMNS)
    if df.empty:
        return []

    total = len(df)

    df["vault_id"] = _to_vault_id(df["vault_id"])
    df["timestamp_sec"] = df["timestamp_sec"].map(parse_timestamp)
    for col in ["share_price_usd", "total_supply", "total_assets", "apy"]:
        df[col] = pd.to_numeric(df[col], errors="coerce")

    df = df.dropna(subset=["vault_id", "timestamp_sec"])
    df = df[df["timestamp_sec"].map(is_valid_timestamp).astype(bool)]
    _log_dropped("snapshots", total, len(df))

    return [
        DailySnapshot(
            vault_id=r["vault_id"],
            timestamp_sec=int(r["timestamp_sec"]),
            share_price_usd=_opt_float(r["share_price_usd"]),
            total_supply=_opt_float(r["total_supply"]),
            total_assets=_opt_float(r["total_assets"]),
            apy=_opt_float(r["apy"]),
        )
        for r in df.to_dict(orient="records")
    ]


def normalize_balances(rows: Optional[Iterable[Dict]]) -> List[VaultBalance]:
    df = _to_frame(rows, BALANCE_COLUMNS)
    if df.empty:
        return []

    total = len(df)

    df["vault_id"] = _to_vault_id(df["vault_id"])
    for col in ["realized_pnl_usd", "unrealized_pnl_usd", "balance_usd", "total_deposited_usd", "total_withdrawn_usd"]:
        df[col] = pd.to_numeric(df[col], errors="coerce").fillna(0.0)
    df["last_updated_timestamp"] = df["last_updated_timestamp"].map(parse_timestamp)

    df = df.dropna(subset=["vault_id"])
    _log_dropped("balances", total, len(df))

    return [
        VaultBalance(
            vault_id=r["vault_id"],
            realized_pnl_usd=float(r["realized_pnl_usd"]),
            unrealized_pnl_usd=float(r["unrealized_pnl_usd"]),
            balance_usd=float(r["balance_usd"]),
            total_deposited_usd=float(r["total_deposited_usd"]),
            total_withdrawn_usd=float(r["total_withdrawn_usd"]),
            last_updated_timestamp=(
                int(r["last_updated_timestamp"]) if is_valid_timestamp(r["last_updated_timestamp"]) else 0
            ),
        )
        for r in df.to_dict(orient="records")
    ]

"""
timeseries_deriver.py

[역할]
- DailyPortfolioValue 목록 → 차트용 시계열 ({"time": ISO8601, "value": float})
  - 누적 P&L, 일별 P&L 변화, 일별 평가금액(USD)
  - USD 가중 일별 수익률 / 누적 수익률
- 기간 필터(7d / 1m / 3m / 1y), 스냅샷 → 차트 포맷 변환

⚠️ 주의
- 수익률은 소수(0.08 = 8%)로 반환한다. % 변환은 표시 계층 몫
- 차트 렌더링은 모른다
"""

from __future__ import annotations

import math
import time
from typing import Dict, Iterable, List, Optional, Sequence

import pandas as pd

from vault_portfolio.backend.services.data_contracts import (
    DailyPortfolioValue,
    DailyPosition,
    DailySnapshot,
    is_valid_timestamp,
    parse_timestamp,
)
from vault_portfolio.backend.services.portfolio_valuator import build_timestamp_lookup, position_as_of
from vault_portfolio.backend.services.snapshot_indexer import (
    SnapshotIndex,
    day_start_timestamp,
    to_day_key,
    to_iso_instant,
)


DAY_SECONDS = 24 * 60 * 60

TIME_PERIODS = ("7d", "1m", "3m", "1y")
DEFAULT_PERIOD = "3m"

_PERIOD_SECONDS = {
    "7d": 7 * DAY_SECONDS,
    "1m": 30 * DAY_SECONDS,
    "3m": 3 * 30 * DAY_SECONDS,
    "1y": 365 * DAY_SECONDS,
}

CHART_DATA_KEYS = ("apy", "total_supply")


def _point(day_key: str, value: float) -> Dict:
    return {"time": to_iso_instant(day_key), "value": float(value)}


def _day_keys(values: Sequence[DailyPortfolioValue]) -> List[str]:
    return [to_day_key(v.timestamp_sec) for v in values]


# =========================
# 금액 시계열
# =========================

def build_cumulative_pnl_series(values: Sequence[DailyPortfolioValue]) -> List[Dict]:
    """날짜별 total_pnl_usd (실현 + 미실현)"""
    return [_point(day_key, v.total_pnl_usd) for day_key, v in zip(_day_keys(values), values)]


def build_daily_pnl_delta_series(values: Sequence[DailyPortfolioValue]) -> List[Dict]:
    """
    전일 대비 total_pnl_usd 변화량.
    첫 날은 비교 기준이 없으므로 0.
    """
    if not values:
        return []

    df = pd.DataFrame({
        "time": [to_iso_instant(k) for k in _day_keys(values)],
        "total_pnl_usd": [v.total_pnl_usd for v in values],
    })
    df["value"] = df["total_pnl_usd"].diff().fillna(0.0).astype(float)

    return df[["time", "value"]].to_dict(orient="records")


def build_daily_amount_series(values: Sequence[DailyPortfolioValue]) -> List[Dict]:
    """'My Deposits' 차트용: 날짜별 total_value_usd"""
    return [_point(day_key, v.total_value_usd) for day_key, v in zip(_day_keys(values), values)]


# =========================
# 수익률 시계열
# =========================

def build_percent_return_series(
    positions: Dict[str, List[DailyPosition]],
    index: SnapshotIndex,
    days: Optional[Sequence[str]] = None,
) -> List[Dict]:
    """
    USD 가중 일별 수익률.

    날짜 D (첫 날 제외), 직전 날짜 P에 대해 vault마다:
      vault_return = price(D) / price(P) - 1
      weight       = shares(P) * price(P)
    portfolio_return(D) = Σ(weight * vault_return) / Σ(weight), 가중치 합이 0이면 0

    - 단순 평균이 아니라 USD 가중: 큰 포지션이 포트폴리오 수익률을 주도해야 한다
    - shares는 P 시점 포지션을 쓰므로 입출금(flow)은 수익률에 섞이지 않는다
    """
    days = list(days) if days is not None else list(index.days)
    timestamp_lookup = build_timestamp_lookup(positions)
    series: List[Dict] = []

    for i, day_key in enumerate(days):
        if i == 0:
            series.append(_point(day_key, 0.0))
            continue

        prev_key = days[i - 1]
        prev_ts = day_start_timestamp(prev_key)

        weighted_return = 0.0
        weight_sum = 0.0

        for vault_id, history in positions.items():
            prev_position = position_as_of(history, prev_ts, timestamp_lookup[vault_id])
            if prev_position is None or prev_position.shares_balance <= 0:
                continue

            prev_price = index.price(vault_id, prev_key)
            cur_price = index.price(vault_id, day_key)
            if prev_price is None or cur_price is None:
                continue

            prev_value = prev_position.shares_balance * prev_price
            weighted_return += prev_value * (cur_price / prev_price - 1.0)
            weight_sum += prev_value

        series.append(_point(day_key, weighted_return / weight_sum if weight_sum > 0 else 0.0))

    return series


def build_cumulative_percent_series(daily_returns: Sequence[Dict]) -> List[Dict]:
    """
    일별 수익률 → 누적 수익률 (TWR: Π(1 + r) - 1)
    """
    if not daily_returns:
        return []

    df = pd.DataFrame(list(daily_returns), columns=["time", "value"])
    df["value"] = ((1.0 + df["value"].astype(float)).cumprod() - 1.0).astype(float)

    return df[["time", "value"]].to_dict(orient="records")


# =========================
# 기간 필터 / 정렬
# =========================

def period_to_seconds(period: Optional[str]) -> int:
    # 알 수 없는 기간은 기본값(3m)
    return _PERIOD_SECONDS.get(period or DEFAULT_PERIOD, _PERIOD_SECONDS[DEFAULT_PERIOD])


def calculate_from_timestamp(period: Optional[str], now_sec: Optional[int] = None) -> int:
    if now_sec is None:
        now_sec = int(time.time())
    return int(now_sec) - period_to_seconds(period)


def sort_and_deduplicate_by_time(series: Iterable[Dict]) -> List[Dict]:
    """시간 오름차순 정렬 후 같은 시각이 연속되면 첫 번째만 남긴다"""
    ordered = sorted(series or [], key=lambda p: parse_timestamp(p["time"]))

    result: List[Dict] = []
    last_ts = None
    for point in ordered:
        ts = parse_timestamp(point["time"])
        if result and ts == last_ts:
            continue
        result.append(point)
        last_ts = ts
    return result


def filter_by_period(series: Iterable[Dict], period: Optional[str], now_sec: Optional[int] = None) -> List[Dict]:
    """now 기준 period 이내(포함) 데이터만 남긴다"""
    from_ts = calculate_from_timestamp(period, now_sec)
    return [p for p in series or [] if parse_timestamp(p["time"]) >= from_ts]


# =========================
# 스냅샷 → 차트
# =========================

def format_snapshots_for_chart(snapshots: Iterable[DailySnapshot] | None, data_key: str) -> List[Dict]:
    """
    vault 스냅샷을 APY / total supply 차트용으로 변환.
    - time은 'YYYY-MM-DD' (UTC)
    - apy는 소수(0.05)로 들어오므로 x100 해서 % 단위로
    - 값이 없거나 숫자가 아니면 0
    """
    if data_key not in CHART_DATA_KEYS:
        raise ValueError(f"Unsupported chart data key: {data_key!r} (expected one of {CHART_DATA_KEYS})")

    points = []
    for snap in snapshots or []:
        if not is_valid_timestamp(snap.timestamp_sec):
            continue

        raw = getattr(snap, data_key)
        value = float(raw) if raw is not None else math.nan
        if data_key == "apy":
            value = value * 100

        points.append({
            "time": to_day_key(snap.timestamp_sec),
            "value": value if math.isfinite(value) else 0.0,
        })

    return sorted(points, key=lambda p: p["time"])

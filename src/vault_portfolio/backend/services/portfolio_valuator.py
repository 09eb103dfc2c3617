"""
portfolio_valuator.py

[역할]
- vault별 포지션 히스토리(거래 단위) + 일별 스냅샷 index를 날짜 기준으로 join
- 날짜마다 포트폴리오 전체 평가금액 / 원가 / 실현손익 합산

[정책]
- 포지션은 step function: 해당 날짜 UTC 자정 이전(포함) 마지막 거래 상태를 그대로 사용
- 포지션이 없거나 share <= 0 이거나 그날 스냅샷 가격이 없으면 그 vault는 그날 제외 (0으로 채우지 않음)
- 아무 vault도 참여하지 않은 날은 결과에서 빠진다
"""

from bisect import bisect_right
from typing import Dict, List, Optional, Sequence

from vault_portfolio.backend.services.data_contracts import DailyPortfolioValue, DailyPosition
from vault_portfolio.backend.services.snapshot_indexer import SnapshotIndex, day_start_timestamp


def build_timestamp_lookup(positions: Dict[str, List[DailyPosition]]) -> Dict[str, List[int]]:
    """vault별 포지션 timestamp 목록 (bisect용, 한 번만 만든다)"""
    return {vault_id: [p.timestamp_sec for p in history] for vault_id, history in positions.items()}


def position_as_of(
    history: Sequence[DailyPosition],
    timestamp_sec: int,
    timestamps: Optional[Sequence[int]] = None,
) -> Optional[DailyPosition]:
    """
    timestamp_sec 이하인 마지막 포지션 (history는 timestamp 오름차순 전제).
    동일 timestamp가 여러 건이면 가장 마지막 건.
    timestamps를 넘기면 재사용한다 (history와 같은 순서).
    """
    if not history:
        return None
    if timestamps is None:
        timestamps = [p.timestamp_sec for p in history]
    idx = bisect_right(timestamps, timestamp_sec)
    if idx == 0:
        return None
    return history[idx - 1]


def value_portfolio_on_day(
    positions: Dict[str, List[DailyPosition]],
    index: SnapshotIndex,
    day_key: str,
    timestamp_lookup: Optional[Dict[str, List[int]]] = None,
) -> Optional[DailyPortfolioValue]:
    day_ts = day_start_timestamp(day_key)
    if timestamp_lookup is None:
        timestamp_lookup = build_timestamp_lookup(positions)

    total_value = 0.0
    total_invested = 0.0
    realized_pnl = 0.0

    for vault_id, history in positions.items():
        position = position_as_of(history, day_ts, timestamp_lookup.get(vault_id))
        if position is None or position.shares_balance <= 0:
            continue

        price = index.price(vault_id, day_key)
        if price is None:
            continue

        total_value += position.shares_balance * price
        total_invested += position.total_invested
        realized_pnl += position.realized_pnl_usd

    if total_value > 0 or total_invested > 0:
        return DailyPortfolioValue(
            timestamp_sec=day_ts,
            total_value_usd=total_value,
            total_invested_usd=total_invested,
            realized_pnl_usd=realized_pnl,
        )
    return None


def calculate_daily_portfolio_values(
    positions: Dict[str, List[DailyPosition]],
    index: SnapshotIndex,
) -> List[DailyPortfolioValue]:
    """
    index.days의 날짜마다 DailyPortfolioValue를 만든다 (timestamp 오름차순).
    이후 모든 시계열 계산은 이 결과를 기준으로 한다.
    """
    if not positions or not index.days:
        return []

    timestamp_lookup = build_timestamp_lookup(positions)
    values = []
    for day_key in index.days:
        value = value_portfolio_on_day(positions, index, day_key, timestamp_lookup)
        if value is not None:
            values.append(value)
    return values

# src/vault_portfolio/backend/services/portfolio_service.py
import logging
from typing import Dict, Iterable, List, Optional

from vault_portfolio.backend.infra.query import (
    load_user_balances,
    load_user_transactions,
    load_vault_apys,
    load_vault_snapshots,
)
from vault_portfolio.backend.services.data_contracts import (
    DailySnapshot,
    PortfolioMetrics,
    Transaction,
    VaultBalance,
    normalize_balances,
    normalize_snapshots,
    normalize_transactions,
)
from vault_portfolio.backend.services.metrics_summarizer import (
    derive_vault_balances,
    summarize_portfolio_metrics,
)
from vault_portfolio.backend.services.portfolio_valuator import calculate_daily_portfolio_values
from vault_portfolio.backend.services.position_reconstructor import reconstruct_positions
from vault_portfolio.backend.services.snapshot_indexer import index_snapshots, to_day_key
from vault_portfolio.backend.services.timeseries_deriver import (
    build_cumulative_percent_series,
    build_cumulative_pnl_series,
    build_daily_amount_series,
    build_daily_pnl_delta_series,
    build_percent_return_series,
    filter_by_period,
    format_snapshots_for_chart,
    sort_and_deduplicate_by_time,
)

"""
portfolio_service.py

[역할]
- Supabase에서 거래 / 스냅샷 / 잔고 / APY 조회
- 조회 결과를 계산 모듈에 전달
- '서비스 계층'으로서 orchestration만 담당
"""

logger = logging.getLogger(__name__)


def _windowed(series: List[Dict], period: Optional[str], now_sec: Optional[int]) -> List[Dict]:
    series = sort_and_deduplicate_by_time(series)
    if period is None:
        return series
    return filter_by_period(series, period, now_sec)


def build_portfolio_metrics(
    transactions: Optional[Iterable[Transaction]],
    snapshots: Optional[Iterable[DailySnapshot]],
    balances: Optional[Iterable[VaultBalance]] = None,
    vault_apys: Optional[Dict[str, float]] = None,
    period: Optional[str] = None,
    now_sec: Optional[int] = None,
) -> PortfolioMetrics:
    """
    거래 + 스냅샷 → KPI + 차트 시계열 (DB 접근 없음)

    [흐름]
    1. 거래 → vault별 포지션 히스토리
    2. 스냅샷 → (vault, 날짜) index
    3. 날짜별 포트폴리오 평가
    4. 시계열 파생 + 기간 필터
    5. 현재 잔고 → KPI (balances가 없으면 포지션에서 계산)

    입력이 비어 있어도 예외 없이 빈 시계열 / 0 KPI를 반환한다.
    """
    positions = reconstruct_positions(transactions)
    index = index_snapshots(snapshots)

    daily_values = calculate_daily_portfolio_values(positions, index)
    value_days = [to_day_key(v.timestamp_sec) for v in daily_values]

    # =========================
    # 시계열
    # =========================
    daily_percent = _windowed(
        build_percent_return_series(positions, index, days=value_days), period, now_sec
    )

    # =========================
    # KPI
    # =========================
    balances = list(balances) if balances is not None else derive_vault_balances(positions, index)
    metrics = summarize_portfolio_metrics(balances, vault_apys)

    metrics.daily_pnl_evolution = _windowed(build_cumulative_pnl_series(daily_values), period, now_sec)
    metrics.daily_pnl_delta_evolution = _windowed(build_daily_pnl_delta_series(daily_values), period, now_sec)
    metrics.daily_amount_evolution = _windowed(build_daily_amount_series(daily_values), period, now_sec)
    metrics.daily_pnl_percent_evolution = daily_percent
    # 누적 수익률은 기간 필터 후 구간 기준으로 다시 쌓는다
    metrics.cumulative_pnl_percent_evolution = build_cumulative_percent_series(daily_percent)

    return metrics


def get_user_portfolio_metrics(
    user_address: str,
    period: Optional[str] = "3m",
    now_sec: Optional[int] = None,
) -> PortfolioMetrics:
    """
    API / 화면에서 사용하는 최종 함수
    """
    transactions = normalize_transactions(load_user_transactions(user_address))
    vault_ids = sorted({tx.vault_id for tx in transactions})

    snapshots = normalize_snapshots(load_vault_snapshots(vault_ids))
    balances = normalize_balances(load_user_balances(user_address))
    vault_apys = load_vault_apys(vault_ids)

    logger.info(
        "[portfolio_service] user=%s transactions=%d vaults=%d snapshots=%d balances=%d",
        user_address, len(transactions), len(vault_ids), len(snapshots), len(balances),
    )

    # 잔고 테이블이 비어 있으면 포지션 히스토리에서 계산
    return build_portfolio_metrics(
        transactions,
        snapshots,
        balances=balances or None,
        vault_apys=vault_apys,
        period=period,
        now_sec=now_sec,
    )


def get_vault_chart_series(
    vault_id: str,
    data_key: str = "apy",
    period: Optional[str] = "3m",
    now_sec: Optional[int] = None,
) -> List[Dict]:
    """
    vault 상세 화면의 APY / total supply 차트 시계열.
    data_key는 "apy"(% 단위) 또는 "total_supply"
    """
    snapshots = normalize_snapshots(load_vault_snapshots([vault_id]))
    return _windowed(format_snapshots_for_chart(snapshots, data_key), period, now_sec)

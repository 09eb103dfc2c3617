"""
metrics_summarizer.py

[역할]
- vault별 '현재' 잔고 레코드 → 포트폴리오 KPI
  (실현/미실현 손익 합계, 총 잔고, vault별 breakdown, 최종 갱신 시각, positions APY)
- 잔고 레코드가 따로 없으면 포지션 히스토리 + 최신 스냅샷으로 현재 잔고를 만든다

합계/최댓값만 쓰므로 입력 순서와 무관하다.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, Iterable, List, Optional

from vault_portfolio.backend.services.data_contracts import (
    DailyPosition,
    PortfolioMetrics,
    VaultBalance,
    VaultMetrics,
)
from vault_portfolio.backend.services.snapshot_indexer import SnapshotIndex, usable_price

logger = logging.getLogger(__name__)


def calculate_positions_apy(
    balances: Iterable[VaultBalance],
    vault_apys: Optional[Dict[str, float]],
) -> float:
    """
    현재 보유 vault들의 APY를 USD 잔고로 가중 평균한다.
    - 잔고 0 이하 vault는 가중치 0
    - APY 정보가 없는 vault는 계산에서 제외
    - 가중치 합이 0이면 0
    """
    if not vault_apys:
        return 0.0

    weighted = 0.0
    weight_sum = 0.0
    for b in balances:
        apy = vault_apys.get(b.vault_id)
        if apy is None or not math.isfinite(apy) or b.balance_usd <= 0:
            continue
        weighted += b.balance_usd * apy
        weight_sum += b.balance_usd

    return weighted / weight_sum if weight_sum > 0 else 0.0


def summarize_portfolio_metrics(
    balances: Iterable[VaultBalance] | None,
    vault_apys: Optional[Dict[str, float]] = None,
) -> PortfolioMetrics:
    balances = list(balances or [])
    if not balances:
        return PortfolioMetrics()

    per_vault = [
        VaultMetrics(
            vault_id=b.vault_id,
            realized_pnl_usd=b.realized_pnl_usd,
            unrealized_pnl_usd=b.unrealized_pnl_usd,
            balance_usd=b.balance_usd,
            total_deposited_usd=b.total_deposited_usd,
            total_withdrawn_usd=b.total_withdrawn_usd,
        )
        for b in balances
    ]

    return PortfolioMetrics(
        total_realized_pnl_usd=sum(b.realized_pnl_usd for b in balances),
        total_unrealized_pnl_usd=sum(b.unrealized_pnl_usd for b in balances),
        total_balance_usd=sum(b.balance_usd for b in balances),
        per_vault_metrics=per_vault,
        last_updated_timestamp=max(b.last_updated_timestamp for b in balances),
        positions_apy=calculate_positions_apy(balances, vault_apys),
    )


def derive_vault_balances(
    positions: Dict[str, List[DailyPosition]],
    index: SnapshotIndex,
) -> List[VaultBalance]:
    """
    vault별 마지막 포지션 + 가격이 유효한 최신 스냅샷으로 현재 잔고 레코드를 만든다.

    - balance_usd = shares * 최신 share price (스냅샷이 없으면 마지막으로 보고된 USD 잔고)
    - 가격도 보고된 잔고도 없으면 잔고 / 미실현손익 0 (실현손익만 남긴다)
    - unrealized = balance_usd - 남은 원가
    - 전량 인출된 vault도 실현손익이 남아 있으므로 포함한다
    """
    balances: List[VaultBalance] = []

    for vault_id, history in positions.items():
        if not history:
            continue
        last = history[-1]

        latest_price = usable_price(index.latest(vault_id))
        reported_usd = last.balance_usd
        if reported_usd is not None and not math.isfinite(reported_usd):
            reported_usd = None

        if last.shares_balance <= 0:
            balance_usd = 0.0
            unrealized = 0.0
        elif latest_price is not None:
            balance_usd = last.shares_balance * latest_price
            unrealized = balance_usd - last.total_invested
        elif reported_usd is not None:
            balance_usd = float(reported_usd)
            unrealized = balance_usd - last.total_invested
        else:
            # 가격 없음 = 0원 아님: 잔고 / 미실현손익 집계에서 제외
            logger.warning(
                "[metrics_summarizer] no usable price or reported balance for vault=%s, "
                "excluded from balance / unrealized P&L",
                vault_id,
            )
            balance_usd = 0.0
            unrealized = 0.0

        balances.append(VaultBalance(
            vault_id=vault_id,
            realized_pnl_usd=last.realized_pnl_usd,
            unrealized_pnl_usd=unrealized,
            balance_usd=balance_usd,
            total_deposited_usd=last.total_deposited_usd,
            total_withdrawn_usd=last.total_withdrawn_usd,
            last_updated_timestamp=last.timestamp_sec,
        ))

    return balances

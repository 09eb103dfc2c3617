"""
position_reconstructor.py

[역할]
- 사용자의 vault 거래 로그를 시간순으로 접어서(fold)
  거래 1건마다의 포지션 상태(DailyPosition)를 만든다
- 원가(cost basis)는 인출 비율만큼 비례 차감, 차감분과 인출액의 차이가 실현손익

[설계 원칙]
- 입력이 같으면 출력은 항상 같다 (입력 순서와 무관, 내부에서 정렬)
- DB / 네트워크를 모른다
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Iterable, List

from vault_portfolio.backend.services.data_contracts import (
    DailyPosition,
    Transaction,
    is_valid_timestamp,
)

logger = logging.getLogger(__name__)


def _next_shares_balance(previous_shares: float, tx: Transaction) -> float:
    """
    거래 직후 share 수량.
    - 인덱서가 보고한 post-balance가 있으면 그대로 사용 (off-chain 반올림 오차 허용)
    - 없으면 ledger 합산: 유입은 +|shares|, 유출은 -|shares|
    """
    if tx.shares_balance_after is not None:
        return float(tx.shares_balance_after)

    delta = abs(tx.shares_amount)
    balance = previous_shares + delta if tx.is_inflow else previous_shares - delta

    if balance < 0:
        logger.warning(
            "[position_reconstructor] negative share balance for vault=%s at ts=%s (%.6f), clamped to 0",
            tx.vault_id, tx.timestamp_sec, balance,
        )
        balance = 0.0
    return balance


def apply_transaction(previous: DailyPosition | None, tx: Transaction) -> DailyPosition:
    """
    직전 포지션 상태에 거래 1건을 반영한 새 상태를 반환한다.

    - Deposit / TransferIn: total_invested += asset_amount_usd
    - Withdraw / TransferOut:
        proportion = |shares_amount| / previous_shares
        cost_basis_removed = total_invested * proportion
        realized += asset_amount_usd - cost_basis_removed
    - 직전 share가 0인데 유출이 들어오면 원가/실현손익은 건드리지 않는다
    """
    previous_shares = previous.shares_balance if previous else 0.0
    total_invested = previous.total_invested if previous else 0.0
    realized_pnl = previous.realized_pnl_usd if previous else 0.0
    total_deposited = previous.total_deposited_usd if previous else 0.0
    total_withdrawn = previous.total_withdrawn_usd if previous else 0.0

    if tx.is_inflow:
        total_invested += tx.asset_amount_usd
        total_deposited += tx.asset_amount_usd

    else:
        total_withdrawn += tx.asset_amount_usd

        if previous_shares > 0:
            proportion_withdrawn = abs(tx.shares_amount) / previous_shares
            cost_basis_removed = total_invested * proportion_withdrawn

            total_invested -= cost_basis_removed
            realized_pnl += tx.asset_amount_usd - cost_basis_removed
        else:
            # 초기 입금 이벤트 누락 같은 upstream 순서 문제일 수 있다
            logger.warning(
                "[position_reconstructor] %s without prior position: vault=%s ts=%s tx=%s, "
                "cost basis / realized P&L not updated",
                tx.kind, tx.vault_id, tx.timestamp_sec, tx.tx_hash or "-",
            )

    return DailyPosition(
        timestamp_sec=int(tx.timestamp_sec),
        vault_id=tx.vault_id,
        shares_balance=_next_shares_balance(previous_shares, tx),
        total_invested=total_invested,
        realized_pnl_usd=realized_pnl,
        total_deposited_usd=total_deposited,
        total_withdrawn_usd=total_withdrawn,
        balance_usd=tx.shares_balance_after_usd,
    )


def reconstruct_positions(transactions: Iterable[Transaction] | None) -> Dict[str, List[DailyPosition]]:
    """
    vault가 섞인 거래 목록 → {vault_id: 시간 오름차순 DailyPosition 목록}

    1. timestamp 오름차순 안정 정렬 (동일 시각은 입력 순서 유지)
    2. vault별로 묶는다 (정렬 순서 유지)
    3. vault별로 순차 fold
    """
    valid: List[Transaction] = []
    dropped = 0
    for tx in transactions or []:
        if not is_valid_timestamp(tx.timestamp_sec):
            dropped += 1
            continue
        valid.append(tx)

    if dropped:
        logger.warning(
            "[position_reconstructor] dropped %d transactions with malformed timestamps", dropped
        )

    # sorted()는 안정 정렬
    ordered = sorted(valid, key=lambda t: t.timestamp_sec)

    grouped: Dict[str, List[Transaction]] = defaultdict(list)
    for tx in ordered:
        grouped[tx.vault_id].append(tx)

    positions: Dict[str, List[DailyPosition]] = {}
    for vault_id, vault_txs in grouped.items():
        history: List[DailyPosition] = []
        previous = None
        for tx in vault_txs:
            previous = apply_transaction(previous, tx)
            history.append(previous)
        positions[vault_id] = history

    return positions

# src/vault_portfolio/backend/services/tests/test_metrics_summarizer.py

import logging

import pytest
from vault_portfolio.backend.services.data_contracts import (
    DEPOSIT,
    WITHDRAW,
    DailySnapshot,
    Transaction,
    VaultBalance,
)
from vault_portfolio.backend.services.metrics_summarizer import (
    calculate_positions_apy,
    derive_vault_balances,
    summarize_portfolio_metrics,
)
from vault_portfolio.backend.services.position_reconstructor import reconstruct_positions
from vault_portfolio.backend.services.snapshot_indexer import index_snapshots

DAY = 24 * 60 * 60
T0 = 1704067200  # 2024-01-01T00:00:00Z


def balances():
    return [
        VaultBalance(
            vault_id="a",
            realized_pnl_usd=10.0,
            unrealized_pnl_usd=50.0,
            balance_usd=900.0,
            total_deposited_usd=850.0,
            total_withdrawn_usd=0.0,
            last_updated_timestamp=T0 + DAY,
        ),
        VaultBalance(
            vault_id="b",
            realized_pnl_usd=-5.0,
            unrealized_pnl_usd=-20.0,
            balance_usd=100.0,
            total_deposited_usd=200.0,
            total_withdrawn_usd=75.0,
            last_updated_timestamp=T0 + 3 * DAY,
        ),
        VaultBalance(
            vault_id="c",
            realized_pnl_usd=40.0,
            balance_usd=0.0,
            total_deposited_usd=100.0,
            total_withdrawn_usd=140.0,
            last_updated_timestamp=T0,
        ),
    ]


def test_summarize_totals():
    metrics = summarize_portfolio_metrics(balances())

    assert metrics.total_realized_pnl_usd == pytest.approx(45.0)
    assert metrics.total_unrealized_pnl_usd == pytest.approx(30.0)
    assert metrics.total_balance_usd == pytest.approx(1000.0)
    assert metrics.total_pnl_usd == pytest.approx(75.0)
    assert metrics.last_updated_timestamp == T0 + 3 * DAY
    assert [m.vault_id for m in metrics.per_vault_metrics] == ["a", "b", "c"]
    assert metrics.per_vault_metrics[1].total_withdrawn_usd == 75.0


def test_summary_does_not_depend_on_order():
    forward = summarize_portfolio_metrics(balances(), {"a": 0.1, "b": 0.2})
    backward = summarize_portfolio_metrics(list(reversed(balances())), {"a": 0.1, "b": 0.2})

    assert forward.total_balance_usd == pytest.approx(backward.total_balance_usd)
    assert forward.positions_apy == pytest.approx(backward.positions_apy)
    assert forward.last_updated_timestamp == backward.last_updated_timestamp


def test_positions_apy_is_balance_weighted():
    # c는 잔고 0 → 가중치 0
    apy = calculate_positions_apy(balances(), {"a": 0.10, "b": 0.20, "c": 5.0})

    assert apy == pytest.approx((900 * 0.10 + 100 * 0.20) / 1000)


def test_positions_apy_without_weight_is_zero():
    assert calculate_positions_apy(balances(), {}) == 0.0
    assert calculate_positions_apy(balances(), None) == 0.0
    assert calculate_positions_apy(balances(), {"c": 0.3}) == 0.0


def test_empty_balances_give_zeroed_metrics():
    metrics = summarize_portfolio_metrics([])

    assert metrics.total_realized_pnl_usd == 0
    assert metrics.total_unrealized_pnl_usd == 0
    assert metrics.total_balance_usd == 0
    assert metrics.per_vault_metrics == []
    assert metrics.last_updated_timestamp == 0
    assert metrics.positions_apy == 0


def test_to_dict_uses_chart_keys():
    result = summarize_portfolio_metrics(balances(), {"a": 0.1}).to_dict()

    assert result["totalRealizedPnLUSD"] == pytest.approx(45.0)
    assert result["totalBalanceUSD"] == pytest.approx(1000.0)
    assert result["positionsApy"] == pytest.approx(0.1)
    assert result["perVaultMetrics"][0]["vaultId"] == "a"
    assert result["dailyPnLEvolution"] == []


def test_derive_vault_balances_from_positions():
    positions = reconstruct_positions([
        Transaction(vault_id="a", timestamp_sec=T0, kind=DEPOSIT, asset_amount_usd=1000, shares_amount=100),
        Transaction(vault_id="a", timestamp_sec=T0 + DAY, kind=WITHDRAW, asset_amount_usd=550, shares_amount=50),
        Transaction(vault_id="b", timestamp_sec=T0, kind=DEPOSIT, asset_amount_usd=100, shares_amount=10),
        Transaction(vault_id="b", timestamp_sec=T0 + DAY, kind=WITHDRAW, asset_amount_usd=120, shares_amount=10),
    ])
    index = index_snapshots([
        DailySnapshot(vault_id="a", timestamp_sec=T0, share_price_usd=10.0),
        DailySnapshot(vault_id="a", timestamp_sec=T0 + 2 * DAY, share_price_usd=12.0),
        DailySnapshot(vault_id="a", timestamp_sec=T0 + 3 * DAY, share_price_usd=None),
    ])

    derived = {b.vault_id: b for b in derive_vault_balances(positions, index)}

    # a: 50 shares * 12 = 600, 남은 원가 500
    assert derived["a"].balance_usd == pytest.approx(600.0)
    assert derived["a"].unrealized_pnl_usd == pytest.approx(100.0)
    assert derived["a"].realized_pnl_usd == pytest.approx(50.0)
    assert derived["a"].total_deposited_usd == pytest.approx(1000.0)
    assert derived["a"].total_withdrawn_usd == pytest.approx(550.0)
    assert derived["a"].last_updated_timestamp == T0 + DAY

    # b: 전량 인출, 실현손익만 남는다
    assert derived["b"].balance_usd == 0.0
    assert derived["b"].unrealized_pnl_usd == 0.0
    assert derived["b"].realized_pnl_usd == pytest.approx(20.0)


def test_derive_vault_balances_without_any_price_is_not_a_loss(caplog):
    positions = reconstruct_positions([
        Transaction(vault_id="a", timestamp_sec=T0, kind=DEPOSIT, asset_amount_usd=1000, shares_amount=100),
    ])
    index = index_snapshots([DailySnapshot(vault_id="a", timestamp_sec=T0, share_price_usd=None)])

    with caplog.at_level(logging.WARNING):
        metrics = summarize_portfolio_metrics(derive_vault_balances(positions, index))

    # 원가 1000이 통째로 손실로 잡히면 안 된다
    assert metrics.total_unrealized_pnl_usd == 0.0
    assert metrics.total_balance_usd == 0.0
    assert metrics.total_realized_pnl_usd == 0.0
    assert "no usable price or reported balance" in caplog.text


def test_derive_vault_balances_falls_back_to_reported_usd():
    positions = reconstruct_positions([
        Transaction(vault_id="a", timestamp_sec=T0, kind=DEPOSIT, asset_amount_usd=1000,
                    shares_amount=100, shares_balance_after_usd=1040),
    ])

    derived = derive_vault_balances(positions, index_snapshots([]))

    assert derived[0].balance_usd == pytest.approx(1040.0)
    assert derived[0].unrealized_pnl_usd == pytest.approx(40.0)

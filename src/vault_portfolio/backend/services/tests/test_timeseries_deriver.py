# src/vault_portfolio/backend/services/tests/test_timeseries_deriver.py

import pytest
from vault_portfolio.backend.services.data_contracts import (
    DEPOSIT,
    DailyPortfolioValue,
    DailySnapshot,
    Transaction,
)
from vault_portfolio.backend.services.position_reconstructor import reconstruct_positions
from vault_portfolio.backend.services.snapshot_indexer import index_snapshots
from vault_portfolio.backend.services.timeseries_deriver import (
    build_cumulative_percent_series,
    build_cumulative_pnl_series,
    build_daily_amount_series,
    build_daily_pnl_delta_series,
    build_percent_return_series,
    calculate_from_timestamp,
    filter_by_period,
    format_snapshots_for_chart,
    period_to_seconds,
    sort_and_deduplicate_by_time,
)

DAY = 24 * 60 * 60
T0 = 1704067200  # 2024-01-01T00:00:00Z


def value(day, total_value, invested, realized=0.0):
    return DailyPortfolioValue(
        timestamp_sec=T0 + day * DAY,
        total_value_usd=total_value,
        total_invested_usd=invested,
        realized_pnl_usd=realized,
    )


def deposit(vault_id, usd, shares):
    return Transaction(
        vault_id=vault_id, timestamp_sec=T0, kind=DEPOSIT, asset_amount_usd=usd, shares_amount=shares
    )


def snap(vault_id, day, price):
    return DailySnapshot(vault_id=vault_id, timestamp_sec=T0 + day * DAY, share_price_usd=price)


# =========================
# 금액 시계열
# =========================

def test_pnl_and_amount_series():
    values = [
        value(0, 1000, 1000),
        value(1, 1100, 1000),
        value(2, 1050, 1000, realized=20),
    ]

    cumulative = build_cumulative_pnl_series(values)
    delta = build_daily_pnl_delta_series(values)
    amount = build_daily_amount_series(values)

    assert [p["time"] for p in cumulative] == [
        "2024-01-01T00:00:00.000Z",
        "2024-01-02T00:00:00.000Z",
        "2024-01-03T00:00:00.000Z",
    ]
    assert [p["value"] for p in cumulative] == pytest.approx([0, 100, 70])
    # 첫 날은 비교 기준이 없으므로 0
    assert [p["value"] for p in delta] == pytest.approx([0, 100, -30])
    assert [p["value"] for p in amount] == pytest.approx([1000, 1100, 1050])


def test_empty_values():
    assert build_cumulative_pnl_series([]) == []
    assert build_daily_pnl_delta_series([]) == []
    assert build_daily_amount_series([]) == []
    assert build_cumulative_percent_series([]) == []


# =========================
# 수익률 시계열
# =========================

def test_percent_return_is_value_weighted():
    """
    A: 이전 평가 $900, +10% / B: 이전 평가 $100, -10%
    → (900*0.10 + 100*-0.10) / 1000 = 0.08 (단순 평균 0%가 아님)
    """
    positions = reconstruct_positions([deposit("a", 900, 90), deposit("b", 100, 10)])
    index = index_snapshots([
        snap("a", 0, 10.0), snap("b", 0, 10.0),
        snap("a", 1, 11.0), snap("b", 1, 9.0),
    ])

    series = build_percent_return_series(positions, index)

    assert series[0]["value"] == 0.0
    assert series[1]["value"] == pytest.approx(0.08)


def test_percent_return_zero_weight_is_zero():
    positions = reconstruct_positions([deposit("a", 900, 90)])
    # 전날 가격 없음 → 가중치 0
    index = index_snapshots([snap("b", 0, 1.0), snap("a", 1, 11.0)])

    series = build_percent_return_series(positions, index)

    assert [p["value"] for p in series] == [0.0, 0.0]


def test_percent_return_uses_explicit_days():
    positions = reconstruct_positions([deposit("a", 1000, 100)])
    index = index_snapshots([snap("a", 0, 10.0), snap("a", 1, 20.0), snap("a", 2, 12.0)])

    series = build_percent_return_series(positions, index, days=["2024-01-01", "2024-01-03"])

    assert len(series) == 2
    assert series[1]["value"] == pytest.approx(0.2)


def test_cumulative_percent_compounds():
    daily = [
        {"time": "2024-01-01T00:00:00.000Z", "value": 0.0},
        {"time": "2024-01-02T00:00:00.000Z", "value": 0.10},
        {"time": "2024-01-03T00:00:00.000Z", "value": -0.10},
    ]

    result = build_cumulative_percent_series(daily)

    # (1.1 * 0.9) - 1 = -0.01
    assert [p["value"] for p in result] == pytest.approx([0.0, 0.10, -0.01])
    assert result[2]["time"] == "2024-01-03T00:00:00.000Z"


# =========================
# 기간 필터 / 정렬
# =========================

def test_period_seconds_with_fallback():
    assert period_to_seconds("7d") == 7 * DAY
    assert period_to_seconds("1m") == 30 * DAY
    assert period_to_seconds("3m") == 90 * DAY
    assert period_to_seconds("1y") == 365 * DAY
    assert period_to_seconds("5y") == 90 * DAY
    assert calculate_from_timestamp("7d", now_sec=T0 + 7 * DAY) == T0


def test_filter_by_period_keeps_boundary():
    series = [{"time": f"2024-01-{d:02d}T00:00:00.000Z", "value": float(d)} for d in range(1, 11)]

    result = filter_by_period(series, "7d", now_sec=T0 + 9 * DAY)

    assert [p["value"] for p in result] == [3.0, 4.0, 5.0, 6.0, 7.0, 8.0, 9.0, 10.0]


def test_sort_and_deduplicate_by_time():
    series = [
        {"time": "2024-01-02T00:00:00.000Z", "value": 2.0},
        {"time": "2024-01-01T00:00:00.000Z", "value": 1.0},
        {"time": "2024-01-02T00:00:00.000Z", "value": 3.0},
    ]

    result = sort_and_deduplicate_by_time(series)

    assert [p["value"] for p in result] == [1.0, 2.0]


# =========================
# 스냅샷 → 차트
# =========================

def test_format_snapshots_for_chart():
    snapshots = [
        DailySnapshot(vault_id="v1", timestamp_sec=T0 + DAY, apy=0.05, total_supply=2000.0),
        DailySnapshot(vault_id="v1", timestamp_sec=T0, apy=None, total_supply=1000.0),
    ]

    apy = format_snapshots_for_chart(snapshots, "apy")
    supply = format_snapshots_for_chart(snapshots, "total_supply")

    assert apy == [
        {"time": "2024-01-01", "value": 0.0},
        {"time": "2024-01-02", "value": pytest.approx(5.0)},
    ]
    assert [p["value"] for p in supply] == [1000.0, 2000.0]


def test_format_snapshots_rejects_unknown_key():
    with pytest.raises(ValueError):
        format_snapshots_for_chart([], "share_price_usd")

from typing import Any, Dict, Iterable, List
from vault_portfolio.backend.infra.supabase_client import get_supabase_client


TRANSACTIONS_TABLE = "vault_transactions"
SNAPSHOTS_TABLE = "vault_daily_snapshots"
BALANCES_TABLE = "vault_user_balances"
VAULTS_TABLE = "vaults"

DEFAULT_BATCH_SIZE = 1000


def _normalize_address(address: str) -> str:
    # 인덱서는 주소를 소문자로 저장한다
    return (address or "").strip().lower()


def fetch_all_pagination(query_builder: Any, batch_size: int = DEFAULT_BATCH_SIZE) -> List[dict]:
    """
    Supabase 1000행 제한을 우회하기 위한 페이지네이션 헬퍼.
    query_builder는 .select()까지 완료된 상태여야 함.

    - offset 기반으로 batch_size씩 읽는다
    - 빈 페이지가 나올 때까지 계속 읽는다
    """
    all_rows = []
    start = 0
    while True:
        # .range(start, end)는 inclusive index
        end = start + batch_size - 1
        response = query_builder.range(start, end).execute()
        rows = response.data or []

        if not rows:
            break

        all_rows.extend(rows)
        start += batch_size

    return all_rows


def load_user_transactions(user_address: str) -> List[dict]:
    """사용자의 모든 vault 거래(Deposit/Withdraw/TransferIn/TransferOut)를 불러옵니다."""
    address = _normalize_address(user_address)
    if not address:
        return []

    supabase = get_supabase_client()
    q = (
        supabase.table(TRANSACTIONS_TABLE)
        .select(
            "vault_id, timestamp, kind, asset_amount_usd, shares_amount, "
            "shares_balance_after, shares_balance_after_usd, tx_hash"
        )
        .eq("user_address", address)
        .order("timestamp")
    )
    return fetch_all_pagination(q)


def load_vault_snapshots(vault_ids: Iterable[str]) -> List[dict]:
    """vault 목록의 일별 스냅샷(share price, total supply/assets, apy)을 불러옵니다."""
    ids = sorted({_normalize_address(v) for v in vault_ids if v})
    if not ids:
        return []

    supabase = get_supabase_client()
    q = (
        supabase.table(SNAPSHOTS_TABLE)
        .select("vault_id, timestamp, share_price_usd, total_supply, total_assets, apy")
        .in_("vault_id", ids)
        .order("timestamp")
    )
    return fetch_all_pagination(q)


def load_user_balances(user_address: str) -> List[dict]:
    """사용자의 vault별 현재 잔고/손익 레코드를 불러옵니다."""
    address = _normalize_address(user_address)
    if not address:
        return []

    supabase = get_supabase_client()
    q = (
        supabase.table(BALANCES_TABLE)
        .select(
            "vault_id, realized_pnl_usd, unrealized_pnl_usd, balance_usd, "
            "total_deposited_usd, total_withdrawn_usd, last_updated_timestamp"
        )
        .eq("user_address", address)
    )
    return fetch_all_pagination(q)


def load_vault_apys(vault_ids: Iterable[str]) -> Dict[str, float]:
    """vault_id → 광고 APY(소수, 0.05 = 5%) 매핑"""
    ids = sorted({_normalize_address(v) for v in vault_ids if v})
    if not ids:
        return {}

    supabase = get_supabase_client()
    response = (
        supabase.table(VAULTS_TABLE)
        .select("id, apy")
        .in_("id", ids)
        .execute()
    )

    apys: Dict[str, float] = {}
    for row in response.data or []:
        try:
            apys[_normalize_address(row.get("id"))] = float(row.get("apy") or 0)
        except (TypeError, ValueError):
            # 숫자가 아니면 가중치 계산에서 빠진다
            continue
    return apys

# src/vault_portfolio/backend/services/snapshot_indexer.py
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Dict, Iterable, List, Optional

from vault_portfolio.backend.services.data_contracts import DailySnapshot, is_valid_timestamp

logger = logging.getLogger(__name__)


def to_day_key(timestamp_sec: float) -> str:
    """UNIX 초 → UTC 기준 'YYYY-MM-DD'"""
    return datetime.fromtimestamp(timestamp_sec, tz=timezone.utc).date().isoformat()


def day_start_timestamp(day_key: str) -> int:
    """'YYYY-MM-DD' → 해당 날짜 UTC 자정의 UNIX 초"""
    d = date.fromisoformat(day_key)
    return int(datetime(d.year, d.month, d.day, tzinfo=timezone.utc).timestamp())


def to_iso_instant(day_key: str) -> str:
    """차트용 시각 문자열 (UTC 자정, JS toISOString과 같은 형식)"""
    return f"{day_key}T00:00:00.000Z"


def usable_price(snapshot: Optional[DailySnapshot]) -> Optional[float]:
    """
    평가에 쓸 수 있는 share price만 반환한다.
    - 없음 / NaN / inf / 0 이하 → None (0원으로 평가하지 않는다)
    """
    if snapshot is None or snapshot.share_price_usd is None:
        return None
    price = float(snapshot.share_price_usd)
    if not math.isfinite(price) or price <= 0:
        return None
    return price


@dataclass
class SnapshotIndex:
    """
    vault_id → (YYYY-MM-DD → DailySnapshot) 2단 lookup + 관측된 날짜 목록.
    보간(interpolation) / forward-fill은 하지 않는다.
    """
    by_vault: Dict[str, Dict[str, DailySnapshot]] = field(default_factory=dict)
    days: List[str] = field(default_factory=list)

    def get(self, vault_id: str, day_key: str) -> Optional[DailySnapshot]:
        return self.by_vault.get(vault_id, {}).get(day_key)

    def price(self, vault_id: str, day_key: str) -> Optional[float]:
        return usable_price(self.get(vault_id, day_key))

    def latest(self, vault_id: str) -> Optional[DailySnapshot]:
        """가격이 유효한 가장 최근 스냅샷"""
        vault_days = self.by_vault.get(vault_id, {})
        for day_key in sorted(vault_days, reverse=True):
            if usable_price(vault_days[day_key]) is not None:
                return vault_days[day_key]
        return None


def index_snapshots(snapshots: Iterable[DailySnapshot] | None) -> SnapshotIndex:
    """
    같은 (vault, 날짜)가 여러 번 오면 입력 순서상 마지막 것을 쓴다.
    timestamp가 비정상인 스냅샷은 건너뛴다.
    """
    by_vault: Dict[str, Dict[str, DailySnapshot]] = {}
    days = set()
    dropped = 0

    for snap in snapshots or []:
        if not is_valid_timestamp(snap.timestamp_sec):
            dropped += 1
            continue
        day_key = to_day_key(snap.timestamp_sec)
        by_vault.setdefault(snap.vault_id, {})[day_key] = snap
        days.add(day_key)

    if dropped:
        logger.warning(
            "[snapshot_indexer] dropped %d snapshots with malformed timestamps", dropped
        )

    return SnapshotIndex(by_vault=by_vault, days=sorted(days))

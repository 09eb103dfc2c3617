# backend/infra/supabase_client.py
from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv
from supabase import Client, create_client

# -------------------------------------------------------------------
# 인덱서가 적재한 vault 거래 / 스냅샷 / 잔고 테이블 접속 설정
# - .env → 환경변수 순으로 읽는다
# - 클라이언트는 호출마다 새로 만든다 (모듈 레벨 캐시 없음)
# -------------------------------------------------------------------
load_dotenv()

URL_ENV = "SUPABASE_URL"
KEY_ENV = "SUPABASE_KEY"


@dataclass(frozen=True)
class SupabaseSettings:
    url: str
    key: str


def load_supabase_settings() -> SupabaseSettings:
    """환경변수에서 접속 정보를 읽는다. 비어 있으면 RuntimeError"""
    url = (os.environ.get(URL_ENV) or "").strip()
    key = (os.environ.get(KEY_ENV) or "").strip()

    missing = [name for name, value in ((URL_ENV, url), (KEY_ENV, key)) if not value]
    if missing:
        raise RuntimeError(f"Supabase env not set: {', '.join(missing)}")
    return SupabaseSettings(url=url, key=key)


def get_supabase_client() -> Client:
    settings = load_supabase_settings()
    return create_client(settings.url, settings.key)

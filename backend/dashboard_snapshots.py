import logging
import os
from datetime import datetime, timezone, date
from typing import Any, Dict, Optional

from db import execute

logger = logging.getLogger(__name__)

SNAPSHOT_TABLE = os.getenv("DASHBOARD_SNAPSHOTS_TABLE", "dashboard_snapshots")


def resolve_snapshot_date(payload: Optional[Dict[str, Any]] = None) -> date:
    raw = (payload or {}).get("snapshot_date")
    if raw:
        try:
            return date.fromisoformat(str(raw)[:10])
        except ValueError:
            logger.warning("snapshot_date inválido no payload: %s", raw)
    return datetime.now(timezone.utc).date()


def persist_dashboard_snapshot(
    client,
    account_id: str,
    timeframe: str,
    payload: Dict[str, Any],
    *,
    snapshot_date: Optional[date] = None,
) -> bool:
    if not account_id or not payload or client is None:
        return False

    snapshot_date = snapshot_date or resolve_snapshot_date(payload)
    row = {
        "account_id": account_id,
        "snapshot_date": snapshot_date.isoformat(),
        "timeframe": timeframe,
        "payload": payload,
        "updated_at": datetime.now(timezone.utc).isoformat(),
    }

    try:
        client.table(SNAPSHOT_TABLE).upsert(
            row,
            on_conflict="account_id,snapshot_date,timeframe",
        ).execute()
        return True
    except Exception as err:  # noqa: BLE001
        logger.warning("Falha ao salvar snapshot do dashboard (%s/%s): %s", account_id, timeframe, err)
        return False


def ensure_snapshot_tables() -> None:
    execute(
        f"""
        CREATE TABLE IF NOT EXISTS {SNAPSHOT_TABLE} (
            account_id TEXT NOT NULL,
            snapshot_date DATE NOT NULL,
            timeframe TEXT NOT NULL,
            payload JSONB NOT NULL,
            updated_at TIMESTAMPTZ DEFAULT NOW(),
            PRIMARY KEY (account_id, snapshot_date, timeframe)
        );
        """
    )
    execute(
        """
        CREATE TABLE IF NOT EXISTS ingest_logs (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            platform TEXT NOT NULL,
            job_type TEXT NOT NULL,
            account_id TEXT NOT NULL,
            status TEXT NOT NULL,
            started_at TIMESTAMPTZ,
            finished_at TIMESTAMPTZ,
            records_inserted INTEGER DEFAULT 0,
            records_updated INTEGER DEFAULT 0,
            error_message TEXT
        );
        """
    )

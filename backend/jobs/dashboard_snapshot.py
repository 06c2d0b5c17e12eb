import argparse
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from config import Settings, setup_logging
from dashboard import DashboardRequest, build_dashboard
from dashboard_snapshots import persist_dashboard_snapshot
from meta import DEFAULT_TIMEFRAME
from postgres_client import get_postgres_client

logger = logging.getLogger(__name__)

PLATFORM = "instagram"
INGEST_LOGS_TABLE = "ingest_logs"
JOB_TYPE = "dashboard_snapshot"
DEFAULT_MAX_MEDIA = int(os.getenv("SNAPSHOT_MAX_MEDIA", "25") or "25")


def _now_utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _insert_ingest_log(client, account_id: str, started_at: str) -> Optional[str]:
    record = {
        "platform": PLATFORM,
        "job_type": JOB_TYPE,
        "account_id": account_id,
        "status": "running",
        "started_at": started_at,
        "finished_at": None,
        "records_inserted": 0,
        "records_updated": 0,
        "error_message": None,
    }
    try:
        response = client.table(INGEST_LOGS_TABLE).insert(record).execute()
    except Exception as err:  # noqa: BLE001
        logger.warning("[ingest-log] Falha ao registrar início para %s: %s", account_id, err)
        return None
    data = getattr(response, "data", None) or []
    return data[0].get("id") if data else None


def _update_ingest_log(
    client,
    log_id: Optional[str],
    status: str,
    records_inserted: int,
    error_message: Optional[str] = None,
) -> None:
    if not log_id:
        return
    payload = {
        "status": status,
        "finished_at": _now_utc_iso(),
        "records_inserted": records_inserted,
        "records_updated": 0,
        "error_message": error_message,
    }
    try:
        client.table(INGEST_LOGS_TABLE).update(payload).eq("id", log_id).execute()
    except Exception as err:  # noqa: BLE001
        logger.warning("[ingest-log] Falha ao atualizar registro %s: %s", log_id, err)


def resolve_snapshot_accounts(settings: Settings, explicit_ids: Optional[Sequence[str]] = None) -> List[str]:
    """
    Consolida IDs informados, SNAPSHOT_BUSINESS_IDS e o IG_BUSINESS_ID padrão.
    """
    candidates: List[str] = []
    if explicit_ids:
        candidates.extend(explicit_ids)

    env_list = os.getenv("SNAPSHOT_BUSINESS_IDS", "")
    if env_list:
        candidates.extend(item.strip() for item in env_list.split(","))

    if settings.dashboard.business_id:
        candidates.append(settings.dashboard.business_id)

    seen = set()
    result: List[str] = []
    for candidate in candidates:
        item = str(candidate or "").strip()
        if not item or item in seen:
            continue
        seen.add(item)
        result.append(item)
    return result


def snapshot_account(
    settings: Settings,
    business_id: str,
    timeframe: str = DEFAULT_TIMEFRAME,
    *,
    client=None,
    max_media: int = DEFAULT_MAX_MEDIA,
) -> Dict[str, Any]:
    client = client if client is not None else get_postgres_client(settings.supabase)
    if client is None:
        raise RuntimeError("Banco não configurado para snapshots.")

    log_id = _insert_ingest_log(client, business_id, _now_utc_iso())
    try:
        payload = build_dashboard(
            settings.dashboard,
            DashboardRequest(business_id=business_id, timeframe=timeframe, max_media=max_media),
        )
        if not persist_dashboard_snapshot(client, business_id, timeframe, payload):
            raise RuntimeError(f"Falha ao gravar snapshot {business_id}/{timeframe}")
    except Exception as err:
        _update_ingest_log(client, log_id, status="failed", records_inserted=0, error_message=str(err))
        raise

    _update_ingest_log(client, log_id, status="succeeded", records_inserted=1)
    logger.info(
        "[dashboard_snapshot] %s/%s gravado (avisos=%s)", business_id, timeframe, len(payload.get("messages") or [])
    )
    return payload


def main(argv: Optional[Sequence[str]] = None) -> int:
    setup_logging()

    parser = argparse.ArgumentParser(description="Grava snapshots diários do dashboard do Instagram.")
    parser.add_argument("--business-id", dest="business_ids", action="append", help="ID(s) do Instagram Business.")
    parser.add_argument(
        "--timeframe",
        dest="timeframes",
        action="append",
        help="Janela(s) do snapshot (this_week, this_month, last_7_days, last_30_days).",
    )
    parser.add_argument("--max-media", dest="max_media", type=int, default=DEFAULT_MAX_MEDIA)

    args = parser.parse_args(argv)
    settings = Settings.from_env()

    account_ids = resolve_snapshot_accounts(settings, args.business_ids)
    if not account_ids:
        parser.error("Nenhum Instagram Business ID encontrado. Informe via --business-id ou IG_BUSINESS_ID.")

    failures = 0
    for business_id in account_ids:
        for timeframe in args.timeframes or [DEFAULT_TIMEFRAME]:
            logger.info("Iniciando snapshot %s (%s)", business_id, timeframe)
            try:
                snapshot_account(settings, business_id, timeframe, max_media=args.max_media)
            except Exception as err:  # noqa: BLE001
                failures += 1
                logger.error("Snapshot %s/%s falhou: %s", business_id, timeframe, err)
    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())

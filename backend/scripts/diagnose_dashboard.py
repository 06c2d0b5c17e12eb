"""
Diagnóstico do payload do dashboard do Instagram.

Monta o mesmo payload do endpoint /ig-dashboard direto da Graph API (sem
Flask) e imprime o último valor de cada métrica de conta, a contagem de
mídias/stories e os avisos parciais.

Uso:
    python backend/scripts/diagnose_dashboard.py \
        --business-id 1784... \
        --access-token EAA... \
        --timeframe last_30_days \
        --include-page

Sem --business-id/--access-token usa IG_BUSINESS_ID/IG_ACCESS_TOKEN.
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import sys
from typing import Any, Dict, List, Optional, Sequence, Tuple

from config import DashboardConfig
from dashboard import DashboardRequest, build_dashboard
from meta import TIMEFRAMES, MetricPoint, MetricValue, latest_value


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Diagnóstico do dashboard do Instagram (Graph API)")
    parser.add_argument("--business-id", help="ID do Instagram Business (padrão: IG_BUSINESS_ID)")
    parser.add_argument("--access-token", help="Token com instagram_basic + instagram_manage_insights")
    parser.add_argument("--page-id", help="ID da página do Facebook para page insights")
    parser.add_argument("--timeframe", default="this_week", choices=TIMEFRAMES)
    parser.add_argument("--max-media", type=int, default=25)
    parser.add_argument("--include-page", action="store_true")
    parser.add_argument("--json", action="store_true", help="Imprime o payload completo em JSON")
    return parser.parse_args(argv)


def _metric_from_dict(payload: Dict[str, Any]) -> MetricValue:
    values = payload.get("values")
    return MetricValue(
        name=payload.get("name", ""),
        period=payload.get("period"),
        value=payload.get("value"),
        values=[MetricPoint(**point) for point in values] if isinstance(values, list) else None,
    )


def summarize(payload: Dict[str, Any]) -> List[Tuple[str, Any]]:
    rows: List[Tuple[str, Any]] = []
    profile = payload.get("profile") or {}
    rows.append(("profile", f"@{profile.get('username')} ({profile.get('followers_count')} seguidores)"))
    rows.append(("media", len(payload.get("media") or [])))
    rows.append(("stories", len(payload.get("stories") or [])))
    for metric in payload.get("user_insights") or []:
        rows.append((metric.get("name"), latest_value(_metric_from_dict(metric))))
    for key in ("engaged_audience_demographics", "follower_demographics", "follows_and_unfollows"):
        metric = payload.get(key)
        rows.append((key, "-" if metric is None else _metric_from_dict(metric).kind))
    for metric in payload.get("page_insights") or []:
        rows.append((metric.get("name"), latest_value(_metric_from_dict(metric))))
    return rows


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    config = DashboardConfig.from_env()
    overrides = {
        "access_token": args.access_token or config.access_token,
        "business_id": args.business_id or config.business_id,
        "page_id": args.page_id or config.page_id,
    }
    config = dataclasses.replace(config, **overrides)

    dashboard_request = DashboardRequest(
        business_id=config.business_id,
        timeframe=args.timeframe,
        max_media=args.max_media,
        include_page=args.include_page,
    )
    payload = build_dashboard(config, dashboard_request)

    if args.json:
        print(json.dumps(payload, indent=2, ensure_ascii=False))
        return 0

    print(f"== Dashboard {config.business_id} ({args.timeframe}) em {payload['duration_ms']}ms ==")
    for name, value in summarize(payload):
        print(f"{name:40s} {value}")
    messages = payload.get("messages") or []
    if messages:
        print("\nAvisos:")
        for message in messages:
            print(f"  - {message}")
    return 0


if __name__ == "__main__":
    sys.exit(main())

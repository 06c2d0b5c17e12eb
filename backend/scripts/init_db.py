"""
Cria as tabelas usadas pelo backend (connected_accounts, dashboard_snapshots,
ingest_logs) quando ainda não existem.

Uso:
    DATABASE_URL=postgresql://... python backend/scripts/init_db.py
"""

from __future__ import annotations

import logging
import sys

from accounts import CONNECTED_ACCOUNTS_TABLE, ensure_connected_accounts_table
from config import setup_logging
from dashboard_snapshots import SNAPSHOT_TABLE, ensure_snapshot_tables
from db import fetch_all

logger = logging.getLogger("init_db")

EXPECTED_TABLES = (CONNECTED_ACCOUNTS_TABLE, SNAPSHOT_TABLE, "ingest_logs")


def missing_tables() -> list[str]:
    rows = fetch_all(
        """
        SELECT table_name FROM information_schema.tables
        WHERE table_schema = 'public' AND table_name = ANY(%(names)s)
        """,
        {"names": list(EXPECTED_TABLES)},
    )
    present = {row.get("table_name") for row in rows}
    return [name for name in EXPECTED_TABLES if name not in present]


def main() -> int:
    setup_logging()
    ensure_connected_accounts_table()
    ensure_snapshot_tables()
    missing = missing_tables()
    if missing:
        logger.error("Tabelas ausentes após a criação: %s", ", ".join(missing))
        return 1
    logger.info("Tabelas prontas: %s", ", ".join(EXPECTED_TABLES))
    return 0


if __name__ == "__main__":
    sys.exit(main())

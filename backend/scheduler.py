import logging
import os
from typing import List, Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.background import BackgroundScheduler

from config import Settings
from jobs.dashboard_snapshot import resolve_snapshot_accounts, snapshot_account
from postgres_client import get_postgres_client

logger = logging.getLogger(__name__)

DEFAULT_SNAPSHOT_TIME = os.getenv("SNAPSHOT_TIME", "03:00")
DEFAULT_SNAPSHOT_TZ = os.getenv("SNAPSHOT_TZ", "America/Sao_Paulo")
DEFAULT_SNAPSHOT_TIMEFRAMES = os.getenv("SNAPSHOT_TIMEFRAMES", "this_week,this_month")


class DashboardSnapshotScheduler:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        snapshot_time: str = DEFAULT_SNAPSHOT_TIME,
        tz_name: str = DEFAULT_SNAPSHOT_TZ,
        timeframes: str = DEFAULT_SNAPSHOT_TIMEFRAMES,
    ):
        self.settings = settings or Settings.from_env()
        self._scheduler = BackgroundScheduler(timezone="UTC")
        self._started = False
        self._snapshot_time = snapshot_time
        self._timezone = self._resolve_timezone(tz_name)
        self.timeframes: List[str] = [item.strip() for item in timeframes.split(",") if item.strip()]

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> None:
        if self._started:
            return

        if get_postgres_client(self.settings.supabase) is None:
            logger.warning("Banco não configurado. Scheduler de snapshots não iniciado.")
            return

        hour, minute = self._parse_time(self._snapshot_time)
        self._scheduler.add_job(
            self.run_snapshot_cycle,
            "cron",
            hour=hour,
            minute=minute,
            id="dashboard_daily_snapshot",
            max_instances=1,
            coalesce=True,
            timezone=self._timezone,
        )
        self._scheduler.start()
        self._started = True
        logger.info("Snapshot diário agendado para %02d:%02d (%s).", hour, minute, self._timezone.key)

    def shutdown(self) -> None:
        if self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False

    def _parse_time(self, config_time: str) -> tuple[int, int]:
        try:
            hour_str, minute_str = config_time.split(":")
            hour, minute = int(hour_str), int(minute_str)
        except ValueError:
            logger.error("SNAPSHOT_TIME inválido (%s). Usando 03:00.", config_time)
            return 3, 0
        if not (0 <= hour < 24 and 0 <= minute < 60):
            logger.error("SNAPSHOT_TIME fora do intervalo (%s). Usando 03:00.", config_time)
            return 3, 0
        return hour, minute

    def _resolve_timezone(self, tz_name: str) -> ZoneInfo:
        try:
            return ZoneInfo(tz_name)
        except Exception as err:  # noqa: BLE001
            logger.error("Timezone %s inválido (%s). Usando UTC.", tz_name, err)
            return ZoneInfo("UTC")

    def run_snapshot_cycle(self) -> int:
        accounts = resolve_snapshot_accounts(self.settings)
        if not accounts:
            logger.info("Nenhuma conta configurada para snapshot.")
            return 0

        written = 0
        for business_id in accounts:
            for timeframe in self.timeframes:
                try:
                    snapshot_account(self.settings, business_id, timeframe)
                    written += 1
                except Exception as err:  # noqa: BLE001
                    logger.exception("Falha no snapshot %s/%s: %s", business_id, timeframe, err)
        logger.info("Ciclo de snapshots concluído: %s gravado(s).", written)
        return written

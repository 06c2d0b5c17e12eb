import argparse
import logging
import os
import signal
import threading
from typing import Optional, Sequence

from config import setup_logging
from scheduler import DashboardSnapshotScheduler


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Processo dedicado ao snapshot diário do dashboard.")
    parser.add_argument("--run-now", action="store_true", help="Executa um ciclo antes de aguardar o cron.")
    args = parser.parse_args(argv)

    setup_logging(os.getenv("SCHEDULER_LOG_LEVEL"))
    logger = logging.getLogger("scheduler_runner")

    snapshots = DashboardSnapshotScheduler()
    snapshots.start()
    if not snapshots.started:
        logger.error("Scheduler não iniciado; verifique SUPABASE_URL/SUPABASE_SERVICE_ROLE_KEY.")
        return 1

    if args.run_now:
        snapshots.run_snapshot_cycle()

    stopping = threading.Event()

    def _on_signal(signum: int, _frame: Optional[object]) -> None:
        if stopping.is_set():
            return
        logger.info("Sinal %s recebido; parando snapshots...", signum)
        stopping.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, _on_signal)

    logger.info("Runner de snapshots ativo.")
    stopping.wait()
    try:
        snapshots.shutdown()
    except Exception:  # noqa: BLE001
        logger.exception("Falha ao parar o scheduler de snapshots.")
    logger.info("Runner de snapshots encerrado.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

import atexit
import os

from apscheduler.schedulers.background import BackgroundScheduler

from emperor.services.errors import PruningError
from emperor.services.ledger import prune_deleted


scheduler = BackgroundScheduler()


def run_ledger_prune_sweep(app):
    with app.app_context():
        try:
            pruned = prune_deleted(
                limit=app.config["SYNC_PRUNE_BATCH_SIZE"],
                retention_seconds=app.config["SYNC_TOMBSTONE_RETENTION_SECONDS"],
            )
        except PruningError as exc:
            app.logger.warning("Scheduled ledger pruning failed: %s", exc)
            return 0
        if pruned:
            app.logger.info("Scheduled pruning removed %s tombstones", pruned)
        return pruned


def start_scheduler(app):
    if not app.config.get("SCHEDULER_ENABLED", True):
        return
    if os.environ.get("WERKZEUG_RUN_MAIN") == "false":
        return

    interval_minutes = app.config["SYNC_PRUNE_INTERVAL_MINUTES"]
    if not scheduler.get_jobs():
        scheduler.add_job(
            run_ledger_prune_sweep,
            "interval",
            minutes=interval_minutes,
            kwargs={"app": app},
            id="ledger_prune_sweep",
            replace_existing=True,
        )
        scheduler.start()
        atexit.register(lambda: scheduler.shutdown(wait=False))

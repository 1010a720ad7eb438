import atexit

from flask import Flask

from emperor.api import api_bp
from emperor.config import Config
from emperor.extensions import db, migrate
from emperor.jobs.scheduler import start_scheduler
from emperor.services.errors import PruningError
from emperor.services.ledger import prune_deleted


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    db.init_app(app)
    migrate.init_app(app, db)

    app.register_blueprint(api_bp)

    @app.cli.command("init-db")
    def init_db_command():
        db.create_all()
        print("Initialized Emperor database.")

    @app.cli.command("prune-ledger")
    def prune_ledger_command():
        try:
            pruned = prune_deleted(limit=None, retention_seconds=0)
        except PruningError as exc:
            print(f"Ledger pruning failed: {exc}")
            return
        print(f"Pruned {pruned} tombstones from the sync ledger.")

    with app.app_context():
        db.create_all()

    def dispose_store():
        with app.app_context():
            db.engine.dispose()

    atexit.register(dispose_store)
    start_scheduler(app)
    return app

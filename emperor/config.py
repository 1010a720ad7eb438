import os
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent.parent


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "default-secret-key")
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", f"sqlite:///{BASE_DIR / 'emperor.db'}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
    SCHEDULER_ENABLED = os.environ.get("SCHEDULER_ENABLED", "1") == "1"
    SYNC_PRUNE_BATCH_SIZE = int(os.environ.get("SYNC_PRUNE_BATCH_SIZE", "100"))
    SYNC_PRUNE_INTERVAL_MINUTES = int(
        os.environ.get("SYNC_PRUNE_INTERVAL_MINUTES", "60")
    )
    SYNC_TOMBSTONE_RETENTION_SECONDS = int(
        os.environ.get("SYNC_TOMBSTONE_RETENTION_SECONDS", "86400")
    )
    SYNC_ATOMIC_PUSH = os.environ.get("SYNC_ATOMIC_PUSH", "0") == "1"


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SCHEDULER_ENABLED = False
    SYNC_TOMBSTONE_RETENTION_SECONDS = 0
    SYNC_ATOMIC_PUSH = False

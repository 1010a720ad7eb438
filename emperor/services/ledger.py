from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from emperor.extensions import db
from emperor.models import ENTITY_TYPES, SyncMetadata, as_utc, utcnow
from emperor.services.errors import PruningError, SyncValidationError


def _bump(entity_type: str, entity_id: str, deleted: bool | None) -> SyncMetadata:
    if entity_type not in ENTITY_TYPES:
        raise ValueError(f"unknown entity type: {entity_type}")

    row = (
        SyncMetadata.query.filter_by(entity_id=entity_id)
        .with_for_update()
        .first()
    )
    if row is None:
        row = SyncMetadata(
            entity_id=entity_id,
            entity_type=entity_type,
            version=1,
            deleted=bool(deleted),
            updated_at=utcnow(),
        )
        db.session.add(row)
    else:
        if row.entity_type != entity_type:
            raise SyncValidationError(
                f"{entity_id} is recorded as a {row.entity_type}, not a {entity_type}"
            )
        row.version = row.version + 1
        row.updated_at = utcnow()
        if deleted is not None:
            row.deleted = deleted
    db.session.flush()
    return row


def record(entity_type: str, entity_id: str) -> SyncMetadata:
    return _bump(entity_type, entity_id, deleted=None)


def record_creation(entity_type: str, entity_id: str) -> SyncMetadata:
    """Record a freshly inserted entity row.

    An id that was deleted earlier comes back live, so the tombstone
    flag is cleared.
    """
    return _bump(entity_type, entity_id, deleted=False)


def record_deletion(entity_type: str, entity_id: str) -> SyncMetadata:
    return _bump(entity_type, entity_id, deleted=True)


def get_since(since: datetime | None = None) -> list[SyncMetadata]:
    query = SyncMetadata.query
    if since is not None:
        query = query.filter(SyncMetadata.updated_at > as_utc(since))
    return query.order_by(
        SyncMetadata.updated_at.asc(), SyncMetadata.entity_id.asc()
    ).all()


def prune_deleted(limit: int | None = None, retention_seconds: int = 0) -> int:
    """Hard-delete up to ``limit`` of the oldest tombstones.

    Only tombstones last written more than ``retention_seconds`` ago are
    considered. ``limit=None`` removes every eligible tombstone. Live
    rows are never selected, so each bounded batch makes progress.
    """
    try:
        query = SyncMetadata.query.filter(SyncMetadata.deleted.is_(True))
        if retention_seconds and retention_seconds > 0:
            cutoff = utcnow() - timedelta(seconds=retention_seconds)
            query = query.filter(SyncMetadata.updated_at <= cutoff)
        query = query.order_by(
            SyncMetadata.updated_at.asc(), SyncMetadata.entity_id.asc()
        )
        if limit is not None:
            query = query.limit(limit)

        tombstone_ids = [row.entity_id for row in query.all()]
        if tombstone_ids:
            SyncMetadata.query.filter(
                SyncMetadata.entity_id.in_(tombstone_ids),
                SyncMetadata.deleted.is_(True),
            ).delete(synchronize_session=False)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise PruningError(f"failed to prune ledger tombstones: {exc}") from exc
    return len(tombstone_ids)


def prune_after_push() -> int:
    config = current_app.config
    try:
        pruned = prune_deleted(
            limit=config["SYNC_PRUNE_BATCH_SIZE"],
            retention_seconds=config["SYNC_TOMBSTONE_RETENTION_SECONDS"],
        )
    except PruningError as exc:
        current_app.logger.warning("Ledger pruning after push failed: %s", exc)
        return 0
    if pruned:
        current_app.logger.info("Pruned %s tombstones from the sync ledger", pruned)
    return pruned


def reset_ledger() -> int:
    removed = SyncMetadata.query.delete(synchronize_session=False)
    db.session.commit()
    return removed


def ledger_stats(recent: int = 10) -> dict:
    rows = SyncMetadata.query.order_by(SyncMetadata.updated_at.desc()).all()
    deleted_count = sum(1 for row in rows if row.deleted)
    return {
        "totalRecords": len(rows),
        "deletedRecords": deleted_count,
        "activeRecords": len(rows) - deleted_count,
        "lastSync": rows[0].as_dict()["updatedAt"] if rows else None,
        "recentChanges": [row.as_dict() for row in rows[:recent]],
    }

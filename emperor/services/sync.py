from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from emperor.extensions import db
from emperor.models import (
    ENTITY_BOOK,
    ENTITY_PAGE,
    ENTITY_TAG,
    ENTITY_TYPES,
    Book,
    Page,
    SyncMetadata,
    Tag,
    isoformat_utc,
    page_tags,
)
from emperor.services import books as book_store
from emperor.services import ledger
from emperor.services import pages as page_store
from emperor.services import tags as tag_store
from emperor.services.common import parse_order, parse_timestamp
from emperor.services.errors import StoreError, SyncValidationError


BOOK_DTO_FIELDS = {
    "title": "title",
    "emoji": "emoji",
    "order": "order",
    "parentBookId": "parent_book_id",
}

PAGE_DTO_FIELDS = {
    "bookId": "book_id",
    "title": "title",
    "content": "content",
    "url": "url",
    "extractedText": "extracted_text",
    "notes": "notes",
    "order": "order",
    "pinned": "pinned",
    "status": "status",
}

ENTITY_MODELS = {ENTITY_BOOK: Book, ENTITY_PAGE: Page, ENTITY_TAG: Tag}


@dataclass
class PushItem:
    id: str
    fields: dict
    created_at: datetime | None = None
    updated_at: datetime | None = None
    tag_names: list | None = None


@dataclass
class PushPlan:
    books: list[PushItem] = field(default_factory=list)
    pages: list[PushItem] = field(default_factory=list)
    deletions: list[tuple[str, str]] = field(default_factory=list)


def parse_since(raw: str | None) -> datetime | None:
    if raw is None or not raw.strip():
        return None
    try:
        return parse_timestamp(raw.strip())
    except (ValueError, OverflowError) as exc:
        raise SyncValidationError(f"invalid since timestamp: {raw!r}") from exc


def _list_section(payload: dict, key: str) -> list:
    value = payload.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise SyncValidationError(f"{key} must be a list")
    return value


def _check_required(entry, section: str, index: int) -> str:
    if not isinstance(entry, dict):
        raise SyncValidationError(f"{section}[{index}] must be an object")
    entity_id = entry.get("id")
    if not isinstance(entity_id, str) or not entity_id.strip():
        raise SyncValidationError(f"{section}[{index}].id is required")
    title = entry.get("title")
    if not isinstance(title, str):
        raise SyncValidationError(f"{section}[{index}].title is required")
    return entity_id


def _push_item(entry: dict, section: str, index: int, dto_fields: dict) -> PushItem:
    entity_id = _check_required(entry, section, index)
    fields = {
        column: entry[key] for key, column in dto_fields.items() if key in entry
    }
    try:
        if "order" in fields:
            fields["order"] = parse_order(fields["order"])
        created_at = parse_timestamp(entry.get("createdAt"))
        updated_at = parse_timestamp(entry.get("updatedAt"))
    except (ValueError, OverflowError) as exc:
        raise SyncValidationError(f"{section}[{index}]: {exc}") from exc
    if "pinned" in fields:
        if fields["pinned"] is None:
            fields["pinned"] = False
        elif not isinstance(fields["pinned"], bool):
            raise SyncValidationError(f"{section}[{index}].pinned must be a boolean")
    return PushItem(
        id=entity_id, fields=fields, created_at=created_at, updated_at=updated_at
    )


def validate_push_payload(payload) -> PushPlan:
    if not isinstance(payload, dict):
        raise SyncValidationError("push payload must be a JSON object")

    plan = PushPlan()
    for index, entry in enumerate(_list_section(payload, "books")):
        plan.books.append(_push_item(entry, "books", index, BOOK_DTO_FIELDS))

    for index, entry in enumerate(_list_section(payload, "pages")):
        item = _push_item(entry, "pages", index, PAGE_DTO_FIELDS)
        tag_ids = entry.get("tagIds")
        if tag_ids is not None:
            if not isinstance(tag_ids, list) or not all(
                isinstance(name, str) for name in tag_ids
            ):
                raise SyncValidationError(
                    f"pages[{index}].tagIds must be a list of tag names"
                )
            item.tag_names = tag_ids
        plan.pages.append(item)

    _list_section(payload, "tags")

    for index, entry in enumerate(_list_section(payload, "deletions")):
        if not isinstance(entry, dict):
            raise SyncValidationError(f"deletions[{index}] must be an object")
        entity_type = entry.get("entityType")
        entity_id = entry.get("entityId")
        if entity_type not in ENTITY_TYPES:
            raise SyncValidationError(
                f"deletions[{index}].entityType must be one of {', '.join(ENTITY_TYPES)}"
            )
        if not isinstance(entity_id, str) or not entity_id.strip():
            raise SyncValidationError(f"deletions[{index}].entityId is required")
        plan.deletions.append((entity_type, entity_id))
    return plan


def _parents_first(items: list[PushItem]) -> list[PushItem]:
    pushed_ids = {item.id for item in items}
    done: set[str] = set()
    ordered: list[PushItem] = []
    pending = list(items)
    while pending:
        ready = [
            item
            for item in pending
            if item.fields.get("parent_book_id") not in pushed_ids
            or item.fields.get("parent_book_id") in done
            or item.fields.get("parent_book_id") == item.id
        ]
        if not ready:
            # cycle inside the payload; keep arrival order
            ordered.extend(pending)
            break
        for item in ready:
            ordered.append(item)
            done.add(item.id)
            pending.remove(item)
    return ordered


def _stamp(entity, item: PushItem, created: bool) -> None:
    if created and item.created_at is not None:
        entity.created_at = item.created_at
    if item.updated_at is not None:
        entity.updated_at = item.updated_at


def _upsert_book(item: PushItem) -> Book:
    book = book_store.get_book(item.id)
    if book is None:
        book = Book(id=item.id, title=item.fields["title"])
        created = True
    else:
        created = False
    book_store.assign_fields(book, item.fields)
    _stamp(book, item, created)
    db.session.add(book)
    db.session.flush()
    if created:
        ledger.record_creation(ENTITY_BOOK, book.id)
    else:
        ledger.record(ENTITY_BOOK, book.id)
    return book


def _upsert_page(item: PushItem) -> Page:
    page = page_store.get_page(item.id)
    if page is None:
        page = Page(id=item.id, title=item.fields["title"])
        created = True
    else:
        created = False
    page_store.assign_fields(page, item.fields)
    _stamp(page, item, created)
    db.session.add(page)
    db.session.flush()
    if item.tag_names is not None:
        page_store.replace_page_tags(page, item.tag_names)
    if created:
        ledger.record_creation(ENTITY_PAGE, page.id)
    else:
        ledger.record(ENTITY_PAGE, page.id)
    return page


def _refuse_foreign_id(entity_type: str, entity_id: str) -> None:
    if db.session.get(ENTITY_MODELS[entity_type], entity_id) is not None:
        return
    for other_type, model in ENTITY_MODELS.items():
        if other_type != entity_type and db.session.get(model, entity_id) is not None:
            raise SyncValidationError(
                f"{entity_id} is a {other_type}, not a {entity_type}"
            )


def delete_entity(entity_type: str, entity_id: str) -> None:
    if entity_type in ENTITY_MODELS:
        _refuse_foreign_id(entity_type, entity_id)

    if entity_type == ENTITY_PAGE:
        page_store.delete_page(entity_id)
    elif entity_type == ENTITY_BOOK:
        book_store.delete_book(entity_id)
    elif entity_type == ENTITY_TAG:
        tag_store.delete_tag(entity_id)
    else:
        raise SyncValidationError(f"Unknown entity type: {entity_type}")


def apply_push(payload) -> dict:
    """Merge a client's books, pages and deletions into the store.

    Entities are applied last-write-wins in arrival order. Without
    ``SYNC_ATOMIC_PUSH`` every entity commits on its own, so a failure
    leaves earlier entities of the same payload applied.
    """
    plan = validate_push_payload(payload)
    atomic = current_app.config.get("SYNC_ATOMIC_PUSH", False)

    def _commit_entity():
        if not atomic:
            db.session.commit()

    try:
        for item in _parents_first(plan.books):
            _upsert_book(item)
            _commit_entity()
        for item in plan.pages:
            _upsert_page(item)
            _commit_entity()
        for entity_type, entity_id in plan.deletions:
            delete_entity(entity_type, entity_id)
            _commit_entity()
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StoreError(f"sync push failed: {exc}") from exc

    current_app.logger.info(
        "Sync push applied: %s books, %s pages, %s deletions",
        len(plan.books),
        len(plan.pages),
        len(plan.deletions),
    )
    ledger.prune_after_push()
    return {"success": True}


def _fetch_in_change_order(model, ids: list[str], options=()) -> list:
    if not ids:
        return []
    rows = model.query.options(*options).filter(model.id.in_(ids)).all()
    by_id = {row.id: row for row in rows}
    # a change may race a delete; missing rows are skipped
    return [by_id[entity_id] for entity_id in ids if entity_id in by_id]


def build_pull_payload(since: datetime | None = None) -> dict:
    changes = ledger.get_since(since)

    ids_by_type: dict[str, list[str]] = {kind: [] for kind in ENTITY_TYPES}
    deletions = []
    for change in changes:
        if change.deleted:
            deletions.append(
                {
                    "entityType": change.entity_type,
                    "entityId": change.entity_id,
                    "version": change.version,
                    "updatedAt": isoformat_utc(change.updated_at),
                }
            )
            continue
        ids_by_type.setdefault(change.entity_type, []).append(change.entity_id)

    books = _fetch_in_change_order(Book, ids_by_type[ENTITY_BOOK])
    pages = _fetch_in_change_order(
        Page, ids_by_type[ENTITY_PAGE], options=(selectinload(Page.tags),)
    )
    tags = _fetch_in_change_order(Tag, ids_by_type[ENTITY_TAG])

    if changes:
        cursor = isoformat_utc(changes[-1].updated_at)
    else:
        cursor = isoformat_utc(since)

    current_app.logger.info(
        "Sync pull since=%s: %s changes, %s deletions",
        isoformat_utc(since) or "beginning",
        len(changes),
        len(deletions),
    )
    return {
        "changes": [change.as_dict() for change in changes],
        "books": [book.as_dict() for book in books],
        "pages": [page.as_dict() for page in pages],
        "tags": [tag.as_dict() for tag in tags],
        "deletions": deletions,
        "cursor": cursor,
    }


def sync_stats() -> dict:
    stats = ledger.ledger_stats()
    return {
        "local": {
            "books": Book.query.count(),
            "pages": Page.query.count(),
            "tags": Tag.query.count(),
        },
        "sync": {
            "totalRecords": stats["totalRecords"],
            "deletedRecords": stats["deletedRecords"],
            "activeRecords": stats["activeRecords"],
            "lastSync": stats["lastSync"],
        },
        "recentChanges": stats["recentChanges"],
    }


def cleanup_ledger() -> int:
    return ledger.prune_deleted(limit=None, retention_seconds=0)


def clear_all_data() -> None:
    db.session.execute(db.delete(page_tags))
    Page.query.delete(synchronize_session=False)
    Book.query.update({Book.parent_book_id: None}, synchronize_session=False)
    Book.query.delete(synchronize_session=False)
    Tag.query.delete(synchronize_session=False)
    SyncMetadata.query.delete(synchronize_session=False)
    db.session.commit()


def dump_all_data() -> dict:
    books = book_store.list_books()
    pages = Page.query.options(selectinload(Page.tags)).all()
    return {
        "books": [
            {**book.as_dict(), "pageIds": [page.id for page in book.pages]}
            for book in books
        ],
        "pages": [page.as_dict() for page in pages],
        "tags": [tag.as_dict() for tag in tag_store.list_tags()],
        "syncMetadata": [row.as_dict() for row in ledger.get_since(None)],
    }

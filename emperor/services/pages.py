from __future__ import annotations

from emperor.extensions import db
from emperor.models import ENTITY_PAGE, Page, page_tags
from emperor.services import ledger
from emperor.services.common import clean_tag_names, parse_order
from emperor.services.tags import find_or_create_tag


PAGE_MUTABLE_FIELDS = (
    "book_id",
    "title",
    "content",
    "url",
    "extracted_text",
    "notes",
    "order",
    "pinned",
    "status",
)


def list_pages(book_id: str | None) -> list[Page]:
    return (
        Page.query.filter_by(book_id=book_id)
        .order_by(Page.order.asc(), Page.created_at.asc(), Page.id.asc())
        .all()
    )


def get_page(page_id: str) -> Page | None:
    return db.session.get(Page, page_id)


def assign_fields(page: Page, fields: dict) -> None:
    for field in PAGE_MUTABLE_FIELDS:
        if field not in fields:
            continue
        value = fields[field]
        if field == "order":
            value = parse_order(value)
        elif field == "pinned":
            value = bool(value)
        elif field == "status" and not value:
            value = "unread"
        setattr(page, field, value)


def replace_page_tags(page: Page, names) -> list[str]:
    """Replace the page's tag set with ``names``, creating unknown tags.

    Returns the names of tags that did not exist before.
    """
    db.session.execute(db.delete(page_tags).where(page_tags.c.page_id == page.id))
    db.session.expire(page, ["tags"])

    created = []
    tags = []
    for name in clean_tag_names(names):
        tag, was_created = find_or_create_tag(name)
        if was_created:
            created.append(name)
        tags.append(tag)
    page.tags = tags
    db.session.flush()
    return created


def create_page(fields: dict, tag_names=None, page_id: str | None = None) -> Page:
    page = Page(title=fields.get("title") or "")
    if page_id:
        page.id = page_id
    assign_fields(page, fields)
    db.session.add(page)
    db.session.flush()
    if tag_names is not None:
        replace_page_tags(page, tag_names)
    ledger.record_creation(ENTITY_PAGE, page.id)
    return page


def update_page(page_id: str, fields: dict, tag_names=None) -> Page | None:
    page = get_page(page_id)
    if page is None:
        return None
    assign_fields(page, fields)
    db.session.flush()
    if tag_names is not None:
        replace_page_tags(page, tag_names)
    ledger.record(ENTITY_PAGE, page.id)
    return page


def update_status(page_id: str, status: str) -> Page | None:
    return update_page(page_id, {"status": status})


def update_notes(page_id: str, notes: str | None) -> Page | None:
    return update_page(page_id, {"notes": notes})


def delete_page(page_id: str) -> None:
    db.session.execute(db.delete(page_tags).where(page_tags.c.page_id == page_id))
    Page.query.filter_by(id=page_id).delete(synchronize_session="fetch")
    ledger.record_deletion(ENTITY_PAGE, page_id)

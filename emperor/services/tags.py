from __future__ import annotations

from emperor.extensions import db
from emperor.models import ENTITY_PAGE, ENTITY_TAG, Page, Tag, page_tags
from emperor.services import ledger


def list_tags() -> list[Tag]:
    return Tag.query.order_by(Tag.name.asc()).all()


def find_or_create_tag(name: str, color: str | None = None) -> tuple[Tag, bool]:
    tag = Tag.query.filter_by(name=name).first()
    if tag is not None:
        return tag, False
    tag = Tag(name=name, color=color)
    db.session.add(tag)
    db.session.flush()
    ledger.record_creation(ENTITY_TAG, tag.id)
    return tag, True


def delete_tag(tag_id: str) -> None:
    affected_page_ids = [
        row.page_id
        for row in db.session.execute(
            db.select(page_tags.c.page_id).where(page_tags.c.tag_id == tag_id)
        )
    ]
    db.session.execute(db.delete(page_tags).where(page_tags.c.tag_id == tag_id))
    Tag.query.filter_by(id=tag_id).delete(synchronize_session="fetch")

    # pages whose tag set shrank must be re-pulled
    for page_id in affected_page_ids:
        page = db.session.get(Page, page_id)
        if page is not None:
            db.session.expire(page, ["tags"])
            ledger.record(ENTITY_PAGE, page_id)
    ledger.record_deletion(ENTITY_TAG, tag_id)

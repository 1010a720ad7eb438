import time
import uuid
from datetime import datetime, timezone

from emperor.extensions import db
from emperor.services.common import json_safe_int


ENTITY_BOOK = "book"
ENTITY_PAGE = "page"
ENTITY_TAG = "tag"
ENTITY_TYPES = (ENTITY_BOOK, ENTITY_PAGE, ENTITY_TAG)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_millis() -> int:
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat_utc(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


page_tags = db.Table(
    "page_tags",
    db.Column("page_id", db.String(128), db.ForeignKey("pages.id"), primary_key=True),
    db.Column("tag_id", db.String(128), db.ForeignKey("tags.id"), primary_key=True),
)


class Book(db.Model):
    __tablename__ = "books"

    id = db.Column(db.String(128), primary_key=True, default=new_id)
    title = db.Column(db.String(512), nullable=False)
    emoji = db.Column(db.String(32), nullable=True)
    order = db.Column(db.BigInteger, nullable=False, default=now_millis)
    parent_book_id = db.Column(
        db.String(128), db.ForeignKey("books.id"), nullable=True, index=True
    )
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    children = db.relationship(
        "Book", backref=db.backref("parent", remote_side=[id])
    )
    pages = db.relationship("Page", backref="book", lazy=True)

    def as_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "emoji": self.emoji,
            "order": json_safe_int(self.order),
            "parentBookId": self.parent_book_id,
            "createdAt": isoformat_utc(self.created_at),
            "updatedAt": isoformat_utc(self.updated_at),
        }


class Page(db.Model):
    __tablename__ = "pages"

    id = db.Column(db.String(128), primary_key=True, default=new_id)
    book_id = db.Column(
        db.String(128), db.ForeignKey("books.id"), nullable=True, index=True
    )
    title = db.Column(db.String(512), nullable=False)
    content = db.Column(db.Text, nullable=True)
    url = db.Column(db.Text, nullable=True)
    extracted_text = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    order = db.Column(db.BigInteger, nullable=False, default=now_millis)
    pinned = db.Column(db.Boolean, nullable=False, default=False)
    status = db.Column(db.String(64), nullable=False, default="unread")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    tags = db.relationship("Tag", secondary=page_tags, backref="pages")

    def as_dict(self):
        tags = sorted(self.tags, key=lambda tag: tag.name)
        return {
            "id": self.id,
            "bookId": self.book_id,
            "title": self.title,
            "content": self.content,
            "url": self.url,
            "extractedText": self.extracted_text,
            "notes": self.notes,
            "order": json_safe_int(self.order),
            "pinned": self.pinned,
            "status": self.status,
            "tags": [tag.as_dict() for tag in tags],
            "tagIds": [tag.name for tag in tags],
            "createdAt": isoformat_utc(self.created_at),
            "updatedAt": isoformat_utc(self.updated_at),
        }


class Tag(db.Model):
    __tablename__ = "tags"

    id = db.Column(db.String(128), primary_key=True, default=new_id)
    name = db.Column(db.String(128), nullable=False, unique=True, index=True)
    color = db.Column(db.String(32), nullable=True)

    def as_dict(self):
        return {"id": self.id, "name": self.name, "color": self.color}


class SyncMetadata(db.Model):
    __tablename__ = "sync_metadata"

    entity_id = db.Column(db.String(128), primary_key=True)
    entity_type = db.Column(db.String(16), nullable=False, index=True)
    version = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    deleted = db.Column(db.Boolean, nullable=False, default=False)

    def as_dict(self):
        return {
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "version": self.version,
            "updatedAt": isoformat_utc(self.updated_at),
            "deleted": self.deleted,
        }

from __future__ import annotations

from emperor.extensions import db
from emperor.models import ENTITY_BOOK, Book, Page
from emperor.services import ledger
from emperor.services.common import parse_order
from emperor.services.pages import delete_page


BOOK_MUTABLE_FIELDS = ("title", "emoji", "order", "parent_book_id")


def list_books() -> list[Book]:
    return Book.query.order_by(
        Book.order.asc(), Book.created_at.asc(), Book.id.asc()
    ).all()


def get_book(book_id: str) -> Book | None:
    return db.session.get(Book, book_id)


def create_book(
    title: str,
    emoji: str | None = None,
    parent_book_id: str | None = None,
    order=None,
    book_id: str | None = None,
) -> Book:
    book = Book(title=title, emoji=emoji, parent_book_id=parent_book_id)
    if book_id:
        book.id = book_id
    if order is not None:
        book.order = parse_order(order)
    db.session.add(book)
    db.session.flush()
    ledger.record_creation(ENTITY_BOOK, book.id)
    return book


def assign_fields(book: Book, fields: dict) -> None:
    for field in BOOK_MUTABLE_FIELDS:
        if field not in fields:
            continue
        value = fields[field]
        if field == "order":
            value = parse_order(value)
        setattr(book, field, value)


def update_book(book_id: str, fields: dict) -> Book | None:
    book = get_book(book_id)
    if book is None:
        return None
    assign_fields(book, fields)
    db.session.flush()
    ledger.record(ENTITY_BOOK, book.id)
    return book


def delete_book(book_id: str) -> None:
    """Delete a book with its pages; child books move to the root.

    Deleting an id that does not exist only writes the tombstone, so
    replayed deletions stay harmless.
    """
    page_ids = [
        row.id for row in Page.query.filter_by(book_id=book_id).with_entities(Page.id)
    ]
    for page_id in page_ids:
        delete_page(page_id)

    for child in Book.query.filter_by(parent_book_id=book_id).all():
        child.parent_book_id = None
        ledger.record(ENTITY_BOOK, child.id)
    db.session.flush()

    Book.query.filter_by(id=book_id).delete(synchronize_session="fetch")
    ledger.record_deletion(ENTITY_BOOK, book_id)

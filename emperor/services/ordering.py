from __future__ import annotations

from emperor.extensions import db
from emperor.models import ENTITY_BOOK, ENTITY_PAGE, Book, Page
from emperor.services import ledger


def reorder_books(ordered_ids: list[str]) -> list[Book]:
    books = []
    for index, book_id in enumerate(ordered_ids):
        book = db.session.get(Book, book_id)
        if book is None:
            continue
        book.order = index
        ledger.record(ENTITY_BOOK, book.id)
        books.append(book)
    db.session.commit()
    return books


def reorder_pages(book_id: str | None, ordered_ids: list[str]) -> list[Page]:
    pages = []
    for index, page_id in enumerate(ordered_ids):
        page = db.session.get(Page, page_id)
        if page is None or page.book_id != book_id:
            continue
        page.order = index
        ledger.record(ENTITY_PAGE, page.id)
        pages.append(page)
    db.session.commit()
    return pages

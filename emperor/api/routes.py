from __future__ import annotations

from flask import current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from emperor.api import api_bp
from emperor.extensions import db
from emperor.models import ENTITY_TYPES
from emperor.services import books as book_store
from emperor.services import ledger
from emperor.services import pages as page_store
from emperor.services import tags as tag_store
from emperor.services.common import json_safe
from emperor.services.errors import PruningError, StoreError, SyncValidationError
from emperor.services.ordering import reorder_books, reorder_pages
from emperor.services.sync import (
    apply_push,
    build_pull_payload,
    cleanup_ledger,
    clear_all_data,
    delete_entity,
    dump_all_data,
    parse_since,
    sync_stats,
)


PAGE_BODY_FIELDS = {
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


def _to_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _page_fields(payload: dict) -> dict:
    fields = {
        column: payload[key] for key, column in PAGE_BODY_FIELDS.items() if key in payload
    }
    if "pinned" in fields:
        fields["pinned"] = _to_bool(fields["pinned"])
    return fields


def _tag_names(payload: dict):
    names = payload.get("tagIds")
    if names is None:
        return None
    if not isinstance(names, list) or not all(isinstance(name, str) for name in names):
        raise SyncValidationError("tagIds must be a list of tag names")
    return names


@api_bp.errorhandler(SyncValidationError)
def handle_validation_error(exc):
    db.session.rollback()
    return jsonify({"success": False, "error": str(exc)}), 400


@api_bp.errorhandler(ValueError)
def handle_value_error(exc):
    db.session.rollback()
    return jsonify({"success": False, "error": str(exc)}), 400


@api_bp.errorhandler(StoreError)
def handle_store_error(exc):
    db.session.rollback()
    current_app.logger.error("Store error: %s", exc)
    return jsonify({"success": False, "error": str(exc)}), 500


@api_bp.errorhandler(SQLAlchemyError)
def handle_sqlalchemy_error(exc):
    db.session.rollback()
    current_app.logger.error("Store error: %s", exc)
    return jsonify({"success": False, "error": "store operation failed"}), 500


@api_bp.route("/health")
def health():
    return jsonify({"status": "ok", "service": "Emperor"})


@api_bp.route("/sync", methods=["GET"])
def sync_pull():
    since = parse_since(request.args.get("since"))
    return jsonify(json_safe(build_pull_payload(since)))


@api_bp.route("/sync", methods=["POST"])
def sync_push():
    payload = request.get_json(silent=True)
    if payload is None:
        return jsonify({"success": False, "error": "JSON body is required"}), 400
    return jsonify(apply_push(payload))


@api_bp.route("/sync/entity/<entity_type>/<entity_id>", methods=["DELETE"])
def sync_delete_entity(entity_type: str, entity_id: str):
    if entity_type not in ENTITY_TYPES:
        return (
            jsonify({"success": False, "error": f"Unknown entity type: {entity_type}"}),
            400,
        )
    try:
        delete_entity(entity_type, entity_id)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.error(
            "Failed to delete %s %s: %s", entity_type, entity_id, exc
        )
        return (
            jsonify(
                {
                    "success": False,
                    "error": f"Failed to delete {entity_type} {entity_id}",
                }
            ),
            500,
        )
    current_app.logger.info("Deleted %s %s", entity_type, entity_id)
    return jsonify({"success": True, "message": f"{entity_type} {entity_id} deleted"})


@api_bp.route("/sync/stats", methods=["GET"])
def sync_stats_view():
    return jsonify(json_safe(sync_stats()))


@api_bp.route("/sync/reset", methods=["POST"])
def sync_reset():
    removed = ledger.reset_ledger()
    current_app.logger.info("Sync ledger reset, %s records removed", removed)
    return jsonify({"success": True, "message": "Sync metadata reset"})


@api_bp.route("/sync/cleanup", methods=["POST"])
def sync_cleanup():
    try:
        cleaned = cleanup_ledger()
    except PruningError as exc:
        current_app.logger.warning("Ledger cleanup failed: %s", exc)
        return jsonify({"success": False, "error": str(exc)}), 500
    current_app.logger.info("Ledger cleanup removed %s tombstones", cleaned)
    return jsonify({"success": True, "cleaned": cleaned})


@api_bp.route("/sync/clear-all-data", methods=["POST"])
def sync_clear_all_data():
    clear_all_data()
    current_app.logger.info("All books, pages, tags and sync metadata cleared")
    return jsonify({"success": True, "message": "All data cleared from database"})


@api_bp.route("/sync/all-data", methods=["GET"])
def sync_all_data():
    return jsonify(json_safe(dump_all_data()))


@api_bp.route("/books", methods=["GET"])
def books_list():
    return jsonify([book.as_dict() for book in book_store.list_books()])


@api_bp.route("/books", methods=["POST"])
def books_create():
    payload = request.get_json(silent=True) or {}
    title = (payload.get("title") or "").strip()
    if not title:
        return jsonify({"error": "book title is required"}), 400

    book = book_store.create_book(
        title=title,
        emoji=payload.get("emoji"),
        parent_book_id=payload.get("parentBookId"),
        order=payload.get("order"),
        book_id=payload.get("id"),
    )
    db.session.commit()
    return jsonify(book.as_dict()), 201


@api_bp.route("/books/reorder", methods=["POST"])
def books_reorder():
    payload = request.get_json(silent=True) or {}
    ordered_ids = payload.get("orderedIds") or []
    books = reorder_books([str(value) for value in ordered_ids])
    return jsonify([book.as_dict() for book in books])


@api_bp.route("/books/<book_id>", methods=["GET"])
def books_get(book_id: str):
    book = book_store.get_book(book_id)
    if not book:
        return jsonify({"error": "book not found"}), 404
    return jsonify(book.as_dict())


@api_bp.route("/books/<book_id>", methods=["PATCH"])
def books_update(book_id: str):
    payload = request.get_json(silent=True) or {}
    fields = {}
    if "title" in payload:
        fields["title"] = (payload.get("title") or "").strip()
        if not fields["title"]:
            return jsonify({"error": "book title cannot be empty"}), 400
    if "emoji" in payload:
        fields["emoji"] = payload.get("emoji")
    if "order" in payload:
        fields["order"] = payload.get("order")
    if "parentBookId" in payload:
        parent_book_id = payload.get("parentBookId")
        fields["parent_book_id"] = None if parent_book_id == book_id else parent_book_id

    book = book_store.update_book(book_id, fields)
    if not book:
        return jsonify({"error": "book not found"}), 404
    db.session.commit()
    return jsonify(book.as_dict())


@api_bp.route("/books/<book_id>", methods=["DELETE"])
def books_delete(book_id: str):
    book_store.delete_book(book_id)
    db.session.commit()
    return jsonify({"status": "deleted", "id": book_id})


@api_bp.route("/books/<book_id>/pages", methods=["GET"])
def book_pages_list(book_id: str):
    return jsonify([page.as_dict() for page in page_store.list_pages(book_id)])


@api_bp.route("/pages", methods=["GET"])
def pages_list():
    book_id = request.args.get("bookId") or None
    return jsonify([page.as_dict() for page in page_store.list_pages(book_id)])


@api_bp.route("/pages", methods=["POST"])
def pages_create():
    payload = request.get_json(silent=True) or {}
    title = (payload.get("title") or "").strip()
    if not title:
        return jsonify({"error": "page title is required"}), 400

    fields = _page_fields(payload)
    fields["title"] = title
    page = page_store.create_page(
        fields, tag_names=_tag_names(payload), page_id=payload.get("id")
    )
    db.session.commit()
    return jsonify(page.as_dict()), 201


@api_bp.route("/pages/reorder", methods=["POST"])
def pages_reorder():
    payload = request.get_json(silent=True) or {}
    ordered_ids = payload.get("orderedIds") or []
    pages = reorder_pages(payload.get("bookId"), [str(value) for value in ordered_ids])
    return jsonify([page.as_dict() for page in pages])


@api_bp.route("/pages/<page_id>", methods=["GET"])
def pages_get(page_id: str):
    page = page_store.get_page(page_id)
    if not page:
        return jsonify({"error": "page not found"}), 404
    return jsonify(page.as_dict())


@api_bp.route("/pages/<page_id>", methods=["PATCH"])
def pages_update(page_id: str):
    payload = request.get_json(silent=True) or {}
    fields = _page_fields(payload)
    if "title" in fields and not (fields["title"] or "").strip():
        return jsonify({"error": "page title cannot be empty"}), 400

    page = page_store.update_page(page_id, fields, tag_names=_tag_names(payload))
    if not page:
        return jsonify({"error": "page not found"}), 404
    db.session.commit()
    return jsonify(page.as_dict())


@api_bp.route("/pages/<page_id>/status", methods=["PATCH"])
def pages_update_status(page_id: str):
    payload = request.get_json(silent=True) or {}
    status = (payload.get("status") or "").strip()
    if not status:
        return jsonify({"error": "status is required"}), 400
    page = page_store.update_status(page_id, status)
    if not page:
        return jsonify({"error": "page not found"}), 404
    db.session.commit()
    return jsonify(page.as_dict())


@api_bp.route("/pages/<page_id>/notes", methods=["PATCH"])
def pages_update_notes(page_id: str):
    payload = request.get_json(silent=True) or {}
    notes = (payload.get("notes") or "").strip() or None
    page = page_store.update_notes(page_id, notes)
    if not page:
        return jsonify({"error": "page not found"}), 404
    db.session.commit()
    return jsonify(page.as_dict())


@api_bp.route("/pages/<page_id>/tags", methods=["PUT"])
def pages_replace_tags(page_id: str):
    payload = request.get_json(silent=True) or {}
    names = _tag_names(payload)
    page = page_store.update_page(page_id, {}, tag_names=names or [])
    if not page:
        return jsonify({"error": "page not found"}), 404
    db.session.commit()
    return jsonify(page.as_dict())


@api_bp.route("/pages/<page_id>", methods=["DELETE"])
def pages_delete(page_id: str):
    page_store.delete_page(page_id)
    db.session.commit()
    return jsonify({"status": "deleted", "id": page_id})


@api_bp.route("/tags", methods=["GET"])
def tags_list():
    return jsonify([tag.as_dict() for tag in tag_store.list_tags()])


@api_bp.route("/tags", methods=["POST"])
def tags_create():
    payload = request.get_json(silent=True) or {}
    name = (payload.get("name") or "").strip()
    if not name:
        return jsonify({"error": "tag name is required"}), 400
    tag, created = tag_store.find_or_create_tag(name, color=payload.get("color"))
    db.session.commit()
    return jsonify(tag.as_dict()), 201 if created else 200


@api_bp.route("/tags/<tag_id>", methods=["DELETE"])
def tags_delete(tag_id: str):
    tag_store.delete_tag(tag_id)
    db.session.commit()
    return jsonify({"status": "deleted", "id": tag_id})

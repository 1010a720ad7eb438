from emperor.extensions import db
from emperor.models import Book, Page, SyncMetadata, Tag, page_tags


BEFORE_EVERYTHING = "2000-01-01T00:00:00Z"
T0 = "2024-03-01T10:00:00Z"


def _book(book_id: str, title: str, **extra):
    payload = {
        "id": book_id,
        "title": title,
        "emoji": None,
        "order": 1,
        "parentBookId": None,
        "createdAt": T0,
        "updatedAt": T0,
    }
    payload.update(extra)
    return payload


def _page(page_id: str, title: str, **extra):
    payload = {
        "id": page_id,
        "bookId": None,
        "title": title,
        "content": None,
        "order": 1,
        "pinned": False,
        "createdAt": T0,
        "updatedAt": T0,
    }
    payload.update(extra)
    return payload


def _push(client, books=None, pages=None, deletions=None):
    return client.post(
        "/sync",
        json={
            "books": books or [],
            "pages": pages or [],
            "tags": [],
            "deletions": deletions or [],
        },
    )


def _pull(client, since=None):
    query = {"since": since} if since else None
    response = client.get("/sync", query_string=query)
    assert response.status_code == 200
    return response.get_json()


def _version(app, entity_id: str):
    with app.app_context():
        row = db.session.get(SyncMetadata, entity_id)
        return row.version if row else None


def test_push_then_pull_then_delete_scenario(client):
    response = _push(client, books=[_book("b1", "Reading")])
    assert response.status_code == 200
    assert response.get_json() == {"success": True}

    payload = _pull(client, BEFORE_EVERYTHING)
    assert [book["id"] for book in payload["books"]] == ["b1"]
    assert payload["books"][0]["title"] == "Reading"
    assert payload["books"][0]["createdAt"].startswith("2024-03-01T10:00:00")

    response = _push(client, deletions=[{"entityType": "book", "entityId": "b1"}])
    assert response.status_code == 200

    payload = _pull(client, BEFORE_EVERYTHING)
    assert payload["books"] == []


def test_push_same_book_twice_upserts_one_row(client, app):
    _push(client, books=[_book("b1", "Reading")])
    _push(client, books=[_book("b1", "Reading")])

    with app.app_context():
        assert Book.query.count() == 1
    assert _version(app, "b1") == 2


def test_push_overwrites_fields_last_write_wins(client, app):
    _push(client, books=[_book("b1", "Reading", updatedAt="2024-03-02T00:00:00Z")])
    # older client timestamp still wins because arrival order decides
    _push(client, books=[_book("b1", "Later", emoji="📚", updatedAt=T0)])

    payload = _pull(client)
    assert payload["books"][0]["title"] == "Later"
    assert payload["books"][0]["emoji"] == "📚"


def test_push_tag_list_replaces_the_association_set(client, app):
    _push(client, pages=[_page("p1", "Docs", tagIds=["a", "b"])])
    _push(client, pages=[_page("p1", "Docs", tagIds=["b", "c"])])

    payload = _pull(client)
    assert payload["pages"][0]["tagIds"] == ["b", "c"]

    with app.app_context():
        assert sorted(tag.name for tag in Tag.query.all()) == ["a", "b", "c"]
        page = db.session.get(Page, "p1")
        assert sorted(tag.name for tag in page.tags) == ["b", "c"]
        new_tag_versions = {
            tag.name: db.session.get(SyncMetadata, tag.id).version
            for tag in Tag.query.all()
        }
    assert new_tag_versions == {"a": 1, "b": 1, "c": 1}


def test_push_without_tag_list_keeps_existing_tags(client, app):
    _push(client, pages=[_page("p1", "Docs", tagIds=["a"])])
    _push(client, pages=[_page("p1", "Docs renamed")])

    with app.app_context():
        page = db.session.get(Page, "p1")
        assert [tag.name for tag in page.tags] == ["a"]
        assert page.title == "Docs renamed"

    _push(client, pages=[_page("p1", "Docs renamed", tagIds=[])])
    with app.app_context():
        assert db.session.get(Page, "p1").tags == []


def test_push_creates_parent_books_before_children(client, app):
    response = _push(
        client,
        books=[
            _book("child", "Child", parentBookId="parent"),
            _book("parent", "Parent"),
        ],
        pages=[_page("p1", "Inside", bookId="child")],
    )
    assert response.status_code == 200

    with app.app_context():
        assert db.session.get(Book, "child").parent_book_id == "parent"
        assert db.session.get(Page, "p1").book_id == "child"


def test_pull_cursor_returns_only_later_changes(client):
    _push(client, books=[_book("b1", "First")])
    first = _pull(client)
    assert first["cursor"] == first["changes"][-1]["updatedAt"]

    _push(client, books=[_book("b2", "Second")])
    second = _pull(client, first["cursor"])

    assert [book["id"] for book in second["books"]] == ["b2"]
    assert [change["entityId"] for change in second["changes"]] == ["b2"]

    third = _pull(client, second["cursor"])
    assert third["changes"] == []
    assert third["cursor"] == second["cursor"]


def test_deleted_page_is_excluded_but_listed_as_deletion(client):
    _push(client, pages=[_page("p1", "Gone soon"), _page("p2", "Stays")])

    response = client.delete("/sync/entity/page/p1")
    assert response.status_code == 200

    payload = _pull(client, BEFORE_EVERYTHING)
    assert [page["id"] for page in payload["pages"]] == ["p2"]
    assert payload["deletions"][0]["entityId"] == "p1"
    assert payload["deletions"][0]["entityType"] == "page"
    tombstones = [change for change in payload["changes"] if change["deleted"]]
    assert [change["entityId"] for change in tombstones] == ["p1"]


def test_entity_delete_endpoint_is_idempotent(client, app):
    _push(client, pages=[_page("p1", "Twice")])

    first = client.delete("/sync/entity/page/p1")
    second = client.delete("/sync/entity/page/p1")

    assert first.status_code == 200
    assert second.status_code == 200
    assert first.get_json() == {"success": True, "message": "page p1 deleted"}
    assert second.get_json()["success"] is True
    assert _version(app, "p1") == 3


def test_entity_delete_rejects_unknown_type(client):
    response = client.delete("/sync/entity/folder/f1")

    assert response.status_code == 400
    assert response.get_json()["success"] is False


def test_entity_delete_refuses_id_of_another_type(client, app):
    _push(client, books=[_book("b1", "Reading")])

    response = client.delete("/sync/entity/page/b1")
    assert response.status_code == 400
    assert response.get_json()["success"] is False

    response = _push(client, deletions=[{"entityType": "tag", "entityId": "b1"}])
    assert response.status_code == 400

    with app.app_context():
        assert db.session.get(Book, "b1") is not None
        row = db.session.get(SyncMetadata, "b1")
        assert (row.entity_type, row.deleted) == ("book", False)

    payload = _pull(client, BEFORE_EVERYTHING)
    assert [book["id"] for book in payload["books"]] == ["b1"]
    assert payload["deletions"] == []


def test_push_recreates_a_deleted_page_as_live(client, app):
    _push(client, pages=[_page("p1", "First life")])
    client.delete("/sync/entity/page/p1")

    response = _push(client, pages=[_page("p1", "Second life")])
    assert response.status_code == 200

    payload = _pull(client)
    assert [page["title"] for page in payload["pages"]] == ["Second life"]
    assert payload["deletions"] == []
    with app.app_context():
        row = db.session.get(SyncMetadata, "p1")
        assert (row.version, row.deleted) == (3, False)


def test_push_rejects_non_boolean_pinned(client, app):
    response = _push(client, pages=[_page("p1", "Pinned?", pinned="false")])

    assert response.status_code == 400
    assert "pinned" in response.get_json()["error"]
    with app.app_context():
        assert Page.query.count() == 0


def test_book_deletion_cascades_pages_and_detaches_children(client, app):
    _push(
        client,
        books=[_book("b1", "Root"), _book("b2", "Nested", parentBookId="b1")],
        pages=[
            _page("p1", "One", bookId="b1", tagIds=["x"]),
            _page("p2", "Two", bookId="b1"),
            _page("p3", "Elsewhere", bookId="b2"),
        ],
    )

    response = client.delete("/sync/entity/book/b1")
    assert response.status_code == 200

    with app.app_context():
        assert db.session.get(Book, "b1") is None
        assert db.session.get(Book, "b2").parent_book_id is None
        assert sorted(page.id for page in Page.query.all()) == ["p3"]
        assert db.session.execute(db.select(page_tags)).all() == []
        for page_id in ("p1", "p2", "b1"):
            assert db.session.get(SyncMetadata, page_id).deleted is True
    assert _version(app, "b2") == 2


def test_push_deletions_for_pages_and_tags(client, app):
    _push(client, pages=[_page("p1", "Tagged", tagIds=["keep", "drop"])])
    with app.app_context():
        drop_id = Tag.query.filter_by(name="drop").one().id

    response = _push(
        client,
        deletions=[
            {"entityType": "tag", "entityId": drop_id},
            {"entityType": "page", "entityId": "missing-page"},
        ],
    )
    assert response.status_code == 200

    with app.app_context():
        page = db.session.get(Page, "p1")
        assert [tag.name for tag in page.tags] == ["keep"]
    assert _version(app, "p1") == 2


def test_push_prunes_tombstones_after_success(client, app):
    _push(client, pages=[_page("p1", "Short lived")])
    _push(client, deletions=[{"entityType": "page", "entityId": "p1"}])

    with app.app_context():
        assert SyncMetadata.query.filter_by(deleted=True).count() == 0


def test_push_keeps_tombstones_inside_retention_window(client, app):
    app.config["SYNC_TOMBSTONE_RETENTION_SECONDS"] = 3600
    _push(client, pages=[_page("p1", "Short lived")])
    _push(client, deletions=[{"entityType": "page", "entityId": "p1"}])

    payload = _pull(client, BEFORE_EVERYTHING)
    assert payload["pages"] == []
    assert [item["entityId"] for item in payload["deletions"]] == ["p1"]


def test_push_succeeds_when_pruning_fails(client, app, monkeypatch):
    from emperor.services.errors import PruningError

    def _raise(*_args, **_kwargs):
        raise PruningError("ledger unavailable")

    monkeypatch.setattr("emperor.services.ledger.prune_deleted", _raise)

    response = _push(client, books=[_book("b1", "Reading")])

    assert response.status_code == 200
    assert response.get_json() == {"success": True}


def test_malformed_push_is_rejected_without_writes(client, app):
    response = _push(
        client,
        books=[_book("b1", "Fine"), {"title": "No id"}],
    )
    assert response.status_code == 400
    assert "books[1].id" in response.get_json()["error"]

    response = _push(client, deletions=[{"entityType": "folder", "entityId": "f1"}])
    assert response.status_code == 400

    response = _push(client, pages=[_page("p1", "Bad order", order="soon")])
    assert response.status_code == 400

    response = client.post("/sync", data="not json", content_type="text/plain")
    assert response.status_code == 400

    with app.app_context():
        assert Book.query.count() == 0
        assert SyncMetadata.query.count() == 0


def test_store_error_keeps_earlier_entities_committed(client, app):
    response = _push(
        client,
        books=[_book("b1", "Committed")],
        pages=[_page("p1", "Orphan", bookId="no-such-book")],
    )

    assert response.status_code == 500
    assert response.get_json()["success"] is False
    with app.app_context():
        assert db.session.get(Book, "b1") is not None
        assert db.session.get(Page, "p1") is None
        assert db.session.get(SyncMetadata, "p1") is None


def test_atomic_push_rolls_back_the_whole_payload(client, app):
    app.config["SYNC_ATOMIC_PUSH"] = True
    response = _push(
        client,
        books=[_book("b1", "Not kept")],
        pages=[_page("p1", "Orphan", bookId="no-such-book")],
    )

    assert response.status_code == 500
    with app.app_context():
        assert Book.query.count() == 0
        assert SyncMetadata.query.count() == 0


def test_large_order_values_are_serialized_as_strings(client):
    _push(
        client,
        books=[_book("b1", "Big", order=2**63 - 1)],
        pages=[_page("p1", "Also big", order="9007199254740993")],
    )

    payload = _pull(client)
    assert payload["books"][0]["order"] == "9223372036854775807"
    assert payload["pages"][0]["order"] == "9007199254740993"


def test_pull_rejects_malformed_since(client):
    response = client.get("/sync", query_string={"since": "not-a-date"})

    assert response.status_code == 400


def test_maintenance_endpoints(client, app):
    app.config["SYNC_TOMBSTONE_RETENTION_SECONDS"] = 3600
    _push(
        client,
        books=[_book("b1", "Kept")],
        pages=[_page("p1", "Removed", bookId="b1", tagIds=["t"])],
    )
    client.delete("/sync/entity/page/p1")

    stats = client.get("/sync/stats").get_json()
    assert stats["local"] == {"books": 1, "pages": 0, "tags": 1}
    assert stats["sync"]["deletedRecords"] == 1
    assert stats["sync"]["totalRecords"] == 3

    dump = client.get("/sync/all-data").get_json()
    assert [book["id"] for book in dump["books"]] == ["b1"]
    assert len(dump["syncMetadata"]) == 3

    cleanup = client.post("/sync/cleanup").get_json()
    assert cleanup == {"success": True, "cleaned": 1}

    reset = client.post("/sync/reset")
    assert reset.get_json()["success"] is True
    with app.app_context():
        assert SyncMetadata.query.count() == 0
        assert Book.query.count() == 1

    cleared = client.post("/sync/clear-all-data")
    assert cleared.get_json()["success"] is True
    with app.app_context():
        assert Book.query.count() == 0
        assert Tag.query.count() == 0

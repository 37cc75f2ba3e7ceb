from bookstore import AuditLog, Purchase, Review, User, WishlistEntry, db, issue_identity_token
from conftest import SECRET


def test_profile_includes_stats(client, user_headers):
    body = client.get("/users/me", headers=user_headers).get_json()
    assert body["stats"] == {
        "purchases": {"count": 0, "total": 0.0},
        "downloads": 0,
        "wishlist": 0,
        "reading_history": 0,
    }
    assert body["preferences"]["theme"] == "system"
    assert "identity_uid" not in body


def test_update_profile(client):
    # No name claim, so profile edits are not overwritten on the next sign-in.
    token = issue_identity_token(SECRET, {"uid": "uid-editor", "email": "editor@example.com"})
    headers = {"Authorization": f"Bearer {token}"}
    resp = client.put("/users/me", json={"display_name": "  New Name ", "phone_number": "+15550000"}, headers=headers)
    assert resp.status_code == 200
    assert resp.get_json()["display_name"] == "New Name"
    assert resp.get_json()["phone_number"] == "+15550000"

    assert client.put("/users/me", json={"display_name": ""}, headers=headers).status_code == 400
    assert client.get("/users/me", headers=headers).get_json()["display_name"] == "New Name"


def test_update_profile_rejects_non_strings(client, user_headers):
    resp = client.put("/users/me", json={"display_name": 42, "photo_url": ["x"]}, headers=user_headers)
    assert resp.status_code == 400
    assert resp.get_json()["fields"] == {"display_name": "Must be a string.", "photo_url": "Must be a string."}
    assert client.get("/users/me", headers=user_headers).get_json()["display_name"] == "Reader"

    resp = client.patch("/users/me/preferences", json={"language": 5}, headers=user_headers)
    assert resp.status_code == 400
    assert "language" in resp.get_json()["fields"]


def test_reading_history_rejects_fractional_ids(client, user_headers, create_book):
    create_book()
    resp = client.post("/users/me/reading-history", json={"book_id": 1.9}, headers=user_headers)
    assert resp.status_code == 400
    assert resp.get_json()["fields"]["book_id"] == "Must be an integer."


def test_update_preferences_merges(client, user_headers):
    resp = client.patch("/users/me/preferences", json={"theme": "dark", "notifications": {"email": False}}, headers=user_headers)
    assert resp.status_code == 200
    prefs = resp.get_json()["preferences"]
    assert prefs["theme"] == "dark"
    assert prefs["notifications"] == {"email": False, "push": True}
    assert prefs["language"] == "en"

    assert client.patch("/users/me/preferences", json={"theme": "neon"}, headers=user_headers).status_code == 400


def test_reading_history_upserts_and_caps(app, client, user_headers, create_book):
    app.config["READING_HISTORY_LIMIT"] = 2
    first = create_book()
    second = create_book()
    third = create_book()

    client.post("/users/me/reading-history", json={"book_id": first["id"], "progress": 10}, headers=user_headers)
    client.post("/users/me/reading-history", json={"book_id": second["id"]}, headers=user_headers)
    resp = client.post("/users/me/reading-history", json={"book_id": first["id"], "progress": 55}, headers=user_headers)
    history = resp.get_json()["reading_history"]
    assert [h["book_id"] for h in history] == [first["id"], second["id"]]
    assert history[0]["progress"] == 55

    client.post("/users/me/reading-history", json={"book_id": third["id"]}, headers=user_headers)
    rows = client.get("/users/me/reading-history", headers=user_headers).get_json()
    assert [r["book_id"] for r in rows] == [third["id"], first["id"]]
    assert rows[0]["book"]["title"] == third["title"]


def test_reading_history_validation(client, user_headers, create_book):
    book = create_book()
    assert client.post("/users/me/reading-history", json={}, headers=user_headers).status_code == 400
    assert client.post("/users/me/reading-history", json={"book_id": 999}, headers=user_headers).status_code == 404
    resp = client.post("/users/me/reading-history", json={"book_id": book["id"], "progress": 150}, headers=user_headers)
    assert resp.status_code == 400
    assert "progress" in resp.get_json()["fields"]


def test_my_purchases_and_stats(client, user_headers, create_book):
    ebook = create_book(price=10)
    audio = create_book(kind="audiobook", price=5)
    client.post("/purchases/simulate", json={"book_id": ebook["id"]}, headers=user_headers)
    client.post("/purchases/simulate", json={"book_id": audio["id"]}, headers=user_headers)

    purchases = client.get("/users/me/purchases", headers=user_headers).get_json()
    assert purchases["pagination"]["total"] == 2

    stats = client.get("/users/me/stats", headers=user_headers).get_json()
    assert stats["purchases"]["count"] == 2
    assert stats["purchases"]["total"] == 15.0
    assert stats["purchases"]["average"] == 7.5
    assert stats["purchases"]["by_type"]["audiobook"] == {"count": 1, "total_spent": 5.0}
    assert stats["reviews"] == {"count": 0, "average_given": None}


def test_delete_my_account_keeps_purchases(app, client, user_headers, user_id, create_book):
    book = create_book(price=3)
    client.post("/purchases/simulate", json={"book_id": book["id"]}, headers=user_headers)
    client.post("/wishlist", json={"book_id": create_book()["id"]}, headers=user_headers)

    assert client.delete("/users/me", headers=user_headers).status_code == 200
    with app.app_context():
        assert db.session.get(User, user_id) is None
        assert WishlistEntry.query.filter_by(user_id=user_id).count() == 0
        assert Purchase.query.filter_by(user_id=user_id).count() == 1


def test_last_admin_cannot_delete_self(client, admin_headers):
    assert client.delete("/users/me", headers=admin_headers).status_code == 400


def test_admin_user_listing(client, admin_headers, user_id, other_id):
    body = client.get("/users?search=reader", headers=admin_headers).get_json()
    assert [u["id"] for u in body["items"]] == [user_id]
    assert body["items"][0]["identity_uid"] == "uid-reader"

    same = client.get("/admin/users?role=user", headers=admin_headers).get_json()
    assert same["pagination"]["total"] == 2


def test_admin_get_and_delete_user(app, client, admin_headers, admin_id, user_id):
    assert client.get(f"/users/{user_id}", headers=admin_headers).get_json()["stats"]["reviews"] == 0
    assert client.get("/users/9999", headers=admin_headers).status_code == 404
    assert client.delete(f"/users/{admin_id}", headers=admin_headers).status_code == 400
    assert client.delete(f"/users/{user_id}", headers=admin_headers).status_code == 200
    with app.app_context():
        assert AuditLog.query.filter_by(action=f"user_delete:{user_id}").count() == 1


def test_deleted_user_activity_is_removed_from_other_reviews(app, client, admin_headers, user_headers, other_headers, user_id, create_book):
    book = create_book()
    review = client.post(
        f"/reviews/books/{book['id']}", json={"rating": 4, "comment": "Nice"}, headers=user_headers
    ).get_json()["review"]
    reply = client.post(f"/reviews/{review['id']}/reply", json={"comment": "Me too"}, headers=other_headers).get_json()["reply"]
    client.post(f"/reviews/{review['id']}/vote", json={"vote": "like"}, headers=other_headers)
    client.post(f"/reviews/{review['id']}/report", json={"reason": "spam"}, headers=other_headers)
    client.post(
        f"/reviews/{review['id']}/report",
        json={"reason": "other", "target_type": "reply", "reply_id": reply["id"]},
        headers=admin_headers,
    )

    assert client.delete("/users/me", headers=other_headers).status_code == 200
    with app.app_context():
        row = db.session.get(Review, review["id"])
        assert row.user_id == user_id
        assert row.likes == []
        assert row.replies == []
        assert row.reports == []
        assert row.report_count == 0

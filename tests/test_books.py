from bookstore import AuditLog, Review, WishlistEntry, db, format_audio_length, format_file_size, format_price
from conftest import audiobook_payload, ebook_payload


def test_create_ebook_derives_display_fields(client, create_book):
    book = create_book(price=12, file_size=2_621_440)
    assert book["price_display"] == "$12.00"
    assert book["is_premium"] is True
    assert book["file_format"] == "PDF"
    assert book["formatted_file_size"] == "2.5 MB"
    assert book["language"] == "English"
    assert book["download_policy"] == {"max_downloads": 3, "validity_hours": 24, "allow_multiple_devices": True}
    assert book["preview"]["note"] == "First 20 pages available in preview"
    assert book["rating_stats"]["distribution"] == {"1": 0, "2": 0, "3": 0, "4": 0, "5": 0}
    assert "audio_length" not in book


def test_free_book_defaults_to_single_download(create_book):
    book = create_book(price=0)
    assert book["price_display"] == "Free"
    assert book["is_premium"] is False
    assert book["download_policy"]["max_downloads"] == 1


def test_create_audiobook(create_book):
    book = create_book(kind="audiobook")
    assert book["type"] == "audiobook"
    assert book["file_format"] == "MP3"
    assert book["audio_quality"] == "Standard"
    assert book["narrators_list"] == "Jane Doe, John Roe"
    assert book["formatted_audio_length"] == "10 hr 30 min"
    assert book["preview"]["note"] == "5 minute sample available"
    assert "pages" not in book


def test_create_book_requires_admin(client, user_headers):
    resp = client.post("/books", json=ebook_payload(), headers=user_headers)
    assert resp.status_code == 403


def test_create_book_validation(client, admin_headers):
    resp = client.post("/books", json={"title": "Only a title"}, headers=admin_headers)
    assert resp.status_code == 400
    fields = resp.get_json()["fields"]
    for name in ("author", "publisher", "isbn", "cover_image", "file_url", "price", "pages"):
        assert name in fields


def test_file_url_must_be_on_cdn(client, admin_headers):
    resp = client.post("/books", json=ebook_payload(file_url="https://elsewhere.example.com/x.pdf"), headers=admin_headers)
    assert resp.status_code == 400
    assert "file_url" in resp.get_json()["fields"]


def test_audiobook_requires_narrators_and_valid_length(client, admin_headers):
    payload = audiobook_payload(narrators=[], audio_length="ten hours")
    resp = client.post("/books", json=payload, headers=admin_headers)
    assert resp.status_code == 400
    fields = resp.get_json()["fields"]
    assert "narrators" in fields
    assert "audio_length" in fields


def test_policy_ranges(client, admin_headers):
    resp = client.post(
        "/books",
        json=ebook_payload(validity_hours=200, preview_pages=0, sample_minutes=31),
        headers=admin_headers,
    )
    assert resp.status_code == 400
    assert set(resp.get_json()["fields"]) == {"validity_hours", "preview_pages", "sample_minutes"}


def test_duplicate_isbn_conflicts(client, admin_headers, create_book):
    create_book(isbn="978-dup")
    resp = client.post("/books", json=ebook_payload(isbn="978-dup"), headers=admin_headers)
    assert resp.status_code == 409


def test_create_writes_audit_log(app, create_book):
    book = create_book()
    with app.app_context():
        assert AuditLog.query.filter_by(action=f"book_create:{book['id']}").count() == 1


def test_get_book(client, create_book):
    book = create_book()
    assert client.get(f"/books/{book['id']}").get_json()["title"] == "The Quiet Library"
    assert client.get("/books/9999").status_code == 404


def test_update_book(client, admin_headers, create_book):
    book = create_book()
    resp = client.put(f"/books/{book['id']}", json={"price": 4.5, "trending": True}, headers=admin_headers)
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["price"] == 4.5
    assert body["trending"] is True
    assert body["title"] == book["title"]


def test_update_switching_type_requires_audio_fields(client, admin_headers, create_book):
    book = create_book()
    resp = client.put(f"/books/{book['id']}", json={"type": "audiobook"}, headers=admin_headers)
    assert resp.status_code == 400
    assert "audio_length" in resp.get_json()["fields"]

    resp = client.put(
        f"/books/{book['id']}",
        json={"type": "audiobook", "audio_length": "45:00", "narrators": "Sam Vo"},
        headers=admin_headers,
    )
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["file_format"] == "MP3"
    assert body["narrators"] == ["Sam Vo"]


def test_update_missing_book(client, admin_headers):
    assert client.put("/books/4242", json={"price": 1}, headers=admin_headers).status_code == 404


def test_delete_book_removes_wishlist_and_reviews(app, client, admin_headers, user_headers, create_book):
    book = create_book()
    client.post("/wishlist", json={"book_id": book["id"]}, headers=user_headers)
    client.post(f"/reviews/books/{book['id']}", json={"rating": 5, "comment": "Loved it"}, headers=user_headers)

    resp = client.delete(f"/books/{book['id']}", headers=admin_headers)
    assert resp.status_code == 200
    assert client.get(f"/books/{book['id']}").status_code == 404
    with app.app_context():
        assert WishlistEntry.query.filter_by(book_id=book["id"]).count() == 0
        assert Review.query.filter_by(book_id=book["id"]).count() == 0
        assert db.session.query(AuditLog).filter(AuditLog.action.like("book_delete:%")).count() == 1

    assert client.delete(f"/books/{book['id']}", headers=admin_headers).status_code == 404


def test_list_filters_and_pagination(client, create_book):
    create_book(title="Alpha Mystery", price=0, genre="Mystery")
    create_book(title="Beta Romance", price=20, genre="Romance", trending=True)
    create_book(kind="audiobook", title="Gamma Voyage", price=7)

    everything = client.get("/books").get_json()
    assert everything["pagination"]["total"] == 3

    assert [b["title"] for b in client.get("/books?price=free").get_json()["items"]] == ["Alpha Mystery"]
    assert client.get("/books?price=premium").get_json()["pagination"]["total"] == 2
    assert [b["title"] for b in client.get("/books?price=5-10").get_json()["items"]] == ["Gamma Voyage"]
    assert client.get("/books?genre=Mystery,Romance").get_json()["pagination"]["total"] == 2
    assert [b["title"] for b in client.get("/books?type=audiobook").get_json()["items"]] == ["Gamma Voyage"]
    assert [b["title"] for b in client.get("/books?trending=true").get_json()["items"]] == ["Beta Romance"]
    assert [b["title"] for b in client.get("/books?narrator=jane").get_json()["items"]] == ["Gamma Voyage"]

    page = client.get("/books?sort_by=title&sort_order=asc&limit=2&page=2").get_json()
    assert [b["title"] for b in page["items"]] == ["Gamma Voyage"]
    assert page["pagination"]["pages"] == 2
    assert page["pagination"]["has_next"] is False


def test_search_requires_every_word(client, create_book):
    create_book(title="Silent River", description="A quiet journey")
    create_book(title="Loud River", description="A noisy journey")
    titles = [b["title"] for b in client.get("/books?search=river quiet").get_json()["items"]]
    assert titles == ["Silent River"]


def test_filter_options(client, create_book):
    create_book(author="Zed", genre="Horror")
    create_book(author="Amy", genre="Mystery", language="French")
    body = client.get("/books/filters").get_json()
    assert body["authors"] == ["Amy", "Zed"]
    assert body["genres"] == ["Horror", "Mystery"]
    assert body["languages"] == ["English", "French"]


def test_formatters():
    assert format_price(0) == "Free"
    assert format_price(3.5) == "$3.50"
    assert format_audio_length("01:05:00") == "1 hr 5 min"
    assert format_audio_length("00:45") == "45 sec"
    assert format_file_size(0) == "0 B"
    assert format_file_size(512) == "512.0 bytes"
    assert format_file_size(1536) == "1.5 KB"


def test_book_fields_reject_wrong_types(client, admin_headers):
    resp = client.post(
        "/books",
        json=ebook_payload(title=["A"], price=True, pages=12.5, language=3),
        headers=admin_headers,
    )
    assert resp.status_code == 400
    fields = resp.get_json()["fields"]
    assert fields["title"] == "Must be a string."
    assert fields["price"] == "Must be a number."
    assert fields["pages"] == "Must be an integer."
    assert fields["language"] == "Must be a string."


def test_numeric_isbn_is_accepted(create_book):
    assert create_book(isbn=9781234567897)["isbn"] == "9781234567897"

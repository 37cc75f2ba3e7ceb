import itertools

import pytest

from bookstore import create_app, db, issue_identity_token


SECRET = "test-secret-key"
ADMIN_EMAIL = "admin@ebookstore.com"
CDN = "https://res.cloudinary.com/demo/"

_isbn_counter = itertools.count(1000)


def make_headers(uid, email, name=None, secret=SECRET):
    token = issue_identity_token(secret, {"uid": uid, "email": email, "name": name or email.split("@")[0]})
    return {"Authorization": f"Bearer {token}"}


def ebook_payload(**overrides):
    payload = {
        "title": "The Quiet Library",
        "author": "Ada Lane",
        "publisher": "North Press",
        "publication_date": "2021-05-01",
        "description": "A mystery set among forgotten shelves.",
        "genre": "Mystery",
        "isbn": f"978-{next(_isbn_counter)}",
        "cover_image": "https://img.example.com/quiet.jpg",
        "file_url": CDN + "quiet.pdf",
        "price": 9.99,
        "type": "ebook",
        "pages": 320,
    }
    payload.update(overrides)
    return payload


def audiobook_payload(**overrides):
    payload = ebook_payload(
        title="Voices at Sea",
        author="Marco Reed",
        genre="Adventure",
        file_url=CDN + "voices.mp3",
        type="audiobook",
        audio_length="10:30:00",
        narrators=["Jane Doe", "John Roe"],
        audio_sample_url=CDN + "voices-sample.mp3",
        price=14.5,
    )
    payload.pop("pages")
    payload.update(overrides)
    return payload


@pytest.fixture
def app(tmp_path):
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'bookstore-test.db'}",
            "SECRET_KEY": SECRET,
            "ADMIN_EMAILS": [ADMIN_EMAIL],
            "ENABLE_DEV_TOKENS": True,
        }
    )
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def user_headers():
    return make_headers("uid-reader", "reader@example.com", "Reader")


@pytest.fixture
def other_headers():
    return make_headers("uid-other", "other@example.com", "Other")


@pytest.fixture
def admin_headers():
    return make_headers("uid-admin", ADMIN_EMAIL, "Admin")


@pytest.fixture
def create_book(client, admin_headers):
    def _create(kind="ebook", **overrides):
        payload = audiobook_payload(**overrides) if kind == "audiobook" else ebook_payload(**overrides)
        resp = client.post("/books", json=payload, headers=admin_headers)
        assert resp.status_code == 201, resp.get_json()
        return resp.get_json()

    return _create


@pytest.fixture
def user_id(client, user_headers):
    return client.get("/users/me", headers=user_headers).get_json()["id"]


@pytest.fixture
def other_id(client, other_headers):
    return client.get("/users/me", headers=other_headers).get_json()["id"]


@pytest.fixture
def admin_id(client, admin_headers):
    return client.get("/users/me", headers=admin_headers).get_json()["id"]

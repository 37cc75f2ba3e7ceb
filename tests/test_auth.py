from bookstore import ErrorLog, User, db, issue_identity_token
from conftest import SECRET, make_headers


def test_missing_header_is_rejected(client):
    resp = client.get("/users/me")
    assert resp.status_code == 401
    assert resp.get_json()["code"] == "NO_TOKEN"


def test_non_bearer_header_is_rejected(client):
    resp = client.get("/users/me", headers={"Authorization": "Token abc"})
    assert resp.status_code == 401
    assert resp.get_json()["code"] == "INVALID_TOKEN_FORMAT"


def test_tampered_token_is_rejected(client):
    resp = client.get("/users/me", headers={"Authorization": "Bearer not-a-real-token"})
    assert resp.status_code == 401
    assert resp.get_json()["code"] == "INVALID_TOKEN"


def test_token_signed_with_other_key_is_rejected(client):
    headers = make_headers("uid-x", "x@example.com", secret="some-other-key")
    resp = client.get("/users/me", headers=headers)
    assert resp.status_code == 401
    assert resp.get_json()["code"] == "INVALID_TOKEN"


def test_expired_token(app, client, user_headers):
    app.config["IDENTITY_TOKEN_TTL_SECONDS"] = -1
    resp = client.get("/users/me", headers=user_headers)
    assert resp.status_code == 401
    assert resp.get_json()["code"] == "TOKEN_EXPIRED"


def test_first_sign_in_creates_user(app, client, user_headers):
    resp = client.get("/users/me", headers=user_headers)
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["email"] == "reader@example.com"
    assert body["display_name"] == "Reader"
    assert body["role"] == "user"

    client.get("/users/me", headers=user_headers)
    with app.app_context():
        assert User.query.filter_by(identity_uid="uid-reader").count() == 1


def test_admin_email_gets_admin_role(client, admin_headers):
    assert client.get("/users/me", headers=admin_headers).get_json()["role"] == "admin"


def test_admin_routes_reject_regular_users(client, user_headers):
    resp = client.get("/admin/dashboard", headers=user_headers)
    assert resp.status_code == 403
    assert resp.get_json()["code"] == "FORBIDDEN"


def test_suspended_user_is_blocked(app, client, user_headers, user_id):
    with app.app_context():
        db.session.get(User, user_id).is_suspended = True
        db.session.commit()
    resp = client.get("/users/me", headers=user_headers)
    assert resp.status_code == 403
    assert resp.get_json()["code"] == "ACCOUNT_SUSPENDED"


def test_custom_identity_verifier(app, client):
    app.config["IDENTITY_VERIFIER"] = lambda raw: {"uid": f"ext-{raw}", "email": "ext@example.com", "name": "External"}
    resp = client.get("/users/me", headers={"Authorization": "Bearer abc123"})
    assert resp.status_code == 200
    assert resp.get_json()["display_name"] == "External"


def test_dev_token_round_trip(client):
    resp = client.post("/auth/dev-token", json={"uid": "dev-1", "email": "Dev@Example.com"})
    assert resp.status_code == 200
    token = resp.get_json()["token"]
    me = client.get("/users/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.get_json()["email"] == "dev@example.com"


def test_dev_token_requires_fields(client):
    resp = client.post("/auth/dev-token", json={})
    assert resp.status_code == 400
    assert set(resp.get_json()["fields"]) == {"uid", "email"}


def test_dev_token_disabled(app, client):
    app.config["ENABLE_DEV_TOKENS"] = False
    assert client.post("/auth/dev-token", json={"uid": "a", "email": "a@b.c"}).status_code == 404


def test_health_and_security_headers(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "OK"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.headers["X-Frame-Options"] == "DENY"


def test_unknown_route_returns_json(client):
    resp = client.get("/nope")
    assert resp.status_code == 404
    assert "error" in resp.get_json()


def test_unhandled_error_is_logged(app):
    @app.get("/explode")
    def explode():
        raise RuntimeError("boom")

    resp = app.test_client().get("/explode")
    assert resp.status_code == 500
    assert resp.get_json() == {"error": "Internal server error"}
    with app.app_context():
        row = ErrorLog.query.one()
        assert row.source == "/explode"
        assert "boom" in row.message


def test_later_sign_in_syncs_profile_from_claims(client):
    first = make_headers("uid-sync", "sync@example.com", "Old Name")
    assert client.get("/users/me", headers=first).get_json()["display_name"] == "Old Name"

    token = issue_identity_token(
        SECRET,
        {
            "uid": "uid-sync",
            "email": "Sync@Example.com",
            "name": "New Name",
            "picture": "https://img.example.com/me.png",
            "phone_number": "+15551234",
            "email_verified": True,
        },
    )
    body = client.get("/users/me", headers={"Authorization": f"Bearer {token}"}).get_json()
    assert body["display_name"] == "New Name"
    assert body["photo_url"] == "https://img.example.com/me.png"
    assert body["phone_number"] == "+15551234"
    assert body["email"] == "sync@example.com"
    assert body["email_verified"] is True


def test_dev_token_rejects_non_string_fields(client):
    resp = client.post("/auth/dev-token", json={"uid": 7, "email": ["a@b.c"]})
    assert resp.status_code == 400
    assert resp.get_json()["fields"] == {"uid": "Must be a string.", "email": "Must be a string."}

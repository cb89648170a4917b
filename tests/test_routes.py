import time
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient

from databoard.config_loader import AppConfig
from databoard.models import AuthMethod, PasswordResetToken, User, utcnow
from databoard.secrets_controller import SecretsController
from databoard.storage import Storage
from main import create_app

CURL = "curl https://api.example.com/items -H 'Accept: application/json'"
ITEMS = [{"id": 1, "owner": {"name": "a"}, "extra": True}, {"id": 2, "owner": {"name": "b"}}]
ITEMS_FLAT = [{"id": 1, "owner.name": "a", "extra": True}, {"id": 2, "owner.name": "b"}]


def _upstream(request: httpx.Request) -> httpx.Response:
    if request.url.host == "api.example.com":
        return httpx.Response(200, json=ITEMS)
    return httpx.Response(404)


@pytest.fixture
def app():
    config = AppConfig.model_validate({"security": {"secret_key": "test-key"}})
    application = create_app(config, storage=Storage(in_memory=True), secrets_controller=SecretsController(None))
    application.state.auth_manager.create_default_admin()
    application.state.executor._transport = httpx.MockTransport(_upstream)
    return application


@pytest.fixture
def client(app):
    return TestClient(app)


def _login(client, username="admin", password="admin123") -> dict:
    response = client.post("/api/auth/login", json={"identifier": username, "password": password})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture
def admin(client):
    return _login(client)


@pytest.fixture
def standard(client, admin):
    client.post(
        "/api/users",
        headers=admin,
        json={"username": "sam", "email": "sam@example.com", "password": "pw"},
    )
    return _login(client, "sam", "pw")


def test_login_and_me(client, admin):
    me = client.get("/api/auth/me", headers=admin).json()
    assert me["username"] == "admin"
    assert me["role"] == "admin"
    assert "password" not in me


def test_bad_credentials_and_missing_token(client):
    assert client.post("/api/auth/login", json={"identifier": "admin", "password": "x"}).status_code == 401
    assert client.get("/api/auth/me").status_code == 401
    assert client.get("/api/auth/me", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_user_admin_is_admin_only(client, admin, standard):
    assert client.get("/api/users", headers=standard).status_code == 403
    users = client.get("/api/users", headers=admin).json()
    assert {u["username"] for u in users} == {"admin", "sam"}
    assert all("password" not in u for u in users)

    duplicate = client.post("/api/users", headers=admin, json={"username": "sam", "email": "x@y.z", "password": "p"})
    assert duplicate.status_code == 400


def test_data_source_test_endpoint(client, admin):
    ok = client.post("/api/data-sources/test", headers=admin, json={"type": "api", "config": {"curlRequest": CURL}})
    assert ok.status_code == 200
    body = ok.json()
    assert body["fields"] == ["id", "owner", "owner.name", "extra"]
    assert body["statusCode"] == 200

    bad = client.post("/api/data-sources/test", headers=admin, json={"type": "api", "config": {"curlRequest": "curl"}})
    assert bad.status_code == 400
    assert bad.json()["detail"] == "no URL found"


def test_selected_fields_round_trip(client, admin):
    created = client.post(
        "/api/data-sources",
        headers=admin,
        json={
            "name": "items",
            "type": "api",
            "config": {
                "curlRequest": CURL,
                "selectedFields": ["id", "owner.name"],
                "fieldDisplayNames": {"owner.name": "Owner"},
                "refreshInterval": 5,
                "refreshUnit": "seconds",
            },
        },
    ).json()
    assert created["refreshMs"] is None

    data = client.get(f"/api/data-sources/{created['id']}/data", headers=admin).json()
    assert data["fields"] == ["id", "owner.name"]
    assert data["data"] == [{"id": 1, "owner.name": "a"}, {"id": 2, "owner.name": "b"}]
    assert data["fieldDisplayNames"] == {"id": "id", "owner.name": "Owner"}
    assert "error" not in data
    assert "lastUpdated" in data

    listed = client.get("/api/data-sources", headers=admin).json()
    assert listed[0]["lastPullAt"] is not None


def test_toggle_disables_fetch(client, admin):
    source = client.post(
        "/api/data-sources", headers=admin, json={"name": "s", "type": "api", "config": {"curlRequest": CURL}}
    ).json()
    toggled = client.post(f"/api/data-sources/{source['id']}/toggle", headers=admin).json()
    assert toggled["isActive"] is False
    assert toggled["status"] == "disabled"

    data = client.get(f"/api/data-sources/{source['id']}/data", headers=admin).json()
    assert data["error"] == "Data source is disabled"
    assert data["data"] == [] and data["fields"] == []


def test_invalid_source_config_rejected(client, admin):
    response = client.post(
        "/api/data-sources", headers=admin, json={"name": "s", "type": "api", "config": {"refreshInterval": 1000}}
    )
    assert response.status_code == 400


def test_dashboards_and_cards(client, admin, standard):
    dashboard = client.post("/api/dashboards", headers=standard, json={"name": "Mine"}).json()
    assert client.get(f"/api/dashboards/{dashboard['id']}", headers=standard).status_code == 200

    # another standard user cannot see it, admins can
    client.post("/api/users", headers=admin, json={"username": "eve", "email": "eve@example.com", "password": "pw"})
    eve = _login(client, "eve", "pw")
    assert client.get(f"/api/dashboards/{dashboard['id']}", headers=eve).status_code == 403
    assert client.get(f"/api/dashboards/{dashboard['id']}", headers=admin).status_code == 200

    card = client.post(
        f"/api/dashboards/{dashboard['id']}/cards",
        headers=standard,
        json={"title": "Card", "position": {"x": 33, "y": 47}, "size": {"width": 120, "height": 90}},
    ).json()
    assert card["position"] == {"x": 40, "y": 40}
    assert card["size"] == {"width": 200, "height": 160}

    moved = client.put(f"/api/cards/{card['id']}", headers=standard, json={"position": {"x": 61, "y": 0}}).json()
    assert moved["position"] == {"x": 60, "y": 0}

    client.delete(f"/api/dashboards/{dashboard['id']}", headers=standard)
    assert client.get(f"/api/cards/{card['id']}/data", headers=standard).status_code == 404


def test_card_with_deleted_source_reports_error(client, admin):
    source = client.post(
        "/api/data-sources", headers=admin, json={"name": "s", "type": "api", "config": {"curlRequest": CURL}}
    ).json()
    dashboard = client.post("/api/dashboards", headers=admin, json={"name": "D", "isPublic": True}).json()
    card = client.post(
        f"/api/dashboards/{dashboard['id']}/cards",
        headers=admin,
        json={"title": "C", "dataSourceId": source["id"]},
    ).json()

    assert client.get(f"/api/public/cards/{card['id']}/data").json()["data"] == ITEMS_FLAT

    client.delete(f"/api/data-sources/{source['id']}", headers=admin)
    data = client.get(f"/api/cards/{card['id']}/data", headers=admin).json()
    assert data["error"] == "Data source not found"
    assert data["data"] == []


def test_public_dashboards_gated_by_access_policy(client, admin):
    public = client.post("/api/dashboards", headers=admin, json={"name": "P", "isPublic": True}).json()
    private = client.post("/api/dashboards", headers=admin, json={"name": "Q"}).json()

    listed = client.get("/api/public/dashboards").json()
    assert [d["id"] for d in listed] == [public["id"]]
    assert client.get(f"/api/public/dashboards/{private['id']}").status_code == 404
    assert client.get(f"/api/public/dashboards/{public['id']}/cards").json() == []

    client.put("/api/settings/access", headers=admin, json={"allowPublicDashboards": False})
    assert client.get("/api/public/dashboards").status_code == 403


def test_settings_masking(client, admin, standard):
    assert client.get("/api/settings/ldap", headers=standard).status_code == 403

    saved = client.put(
        "/api/settings/ldap", headers=admin, json={"enabled": True, "bindDN": "cn=svc", "bindCredentials": "s3cret"}
    ).json()
    assert saved["bindCredentials"] == "********"

    client.put("/api/settings/ldap", headers=admin, json={"bindCredentials": "********", "enabled": False})
    app_settings = client.app.state.auth_manager.settings
    assert app_settings.get_ldap().bind_credentials == "s3cret"

    bad = client.put("/api/settings/ldap", headers=admin, json={"url": "http://x"})
    assert bad.status_code == 400

    raw = client.get("/api/settings", headers=admin).json()
    ldap = next(item for item in raw if item["key"] == "ldap_config")
    assert ldap["value"]["bindCredentials"] == "********"


def test_mail_test_endpoint_when_disabled(client, admin):
    response = client.post("/api/settings/mail/test", headers=admin, json={"to": "a@example.com"})
    assert response.status_code == 400
    assert "not enabled" in response.json()["detail"]


def test_password_reset_request_is_silent_for_unknown_email(client):
    response = client.post("/api/auth/password-reset/request", json={"email": "nobody@example.com"})
    assert response.status_code == 200


def test_password_reset_confirm_rejects_bad_token(client):
    response = client.post("/api/auth/password-reset/confirm", json={"token": "nope", "password": "x"})
    assert response.status_code == 400


def test_login_by_email_and_username_field(client):
    by_email = client.post("/api/auth/login", json={"identifier": "admin@example.com", "password": "admin123"})
    assert by_email.status_code == 200
    assert by_email.json()["user"]["username"] == "admin"

    legacy = client.post("/api/auth/login", json={"username": "admin", "password": "admin123"})
    assert legacy.status_code == 200


def test_null_for_required_fields_leaves_them_unchanged(client, admin):
    dashboard = client.post(
        "/api/dashboards", headers=admin, json={"name": "D", "logoUrl": "https://x/logo.png"}
    ).json()
    updated = client.put(f"/api/dashboards/{dashboard['id']}", headers=admin, json={"name": None, "logoUrl": None})
    assert updated.status_code == 200
    assert updated.json()["name"] == "D"
    assert updated.json()["logoUrl"] is None

    source = client.post(
        "/api/data-sources", headers=admin, json={"name": "s", "type": "api", "config": {"curlRequest": CURL}}
    ).json()
    updated = client.put(f"/api/data-sources/{source['id']}", headers=admin, json={"config": None, "isActive": None})
    assert updated.status_code == 200
    assert updated.json()["config"]["curlRequest"] == CURL
    assert updated.json()["isActive"] is True

    card = client.post(
        f"/api/dashboards/{dashboard['id']}/cards",
        headers=admin,
        json={"title": "C", "dataSourceId": source["id"]},
    ).json()
    updated = client.put(f"/api/cards/{card['id']}", headers=admin, json={"title": None, "dataSourceId": None})
    assert updated.status_code == 200
    assert updated.json()["title"] == "C"
    assert updated.json()["dataSourceId"] is None


def test_legacy_access_setting_controls_public_routes(client, admin):
    saved = client.post("/api/settings", headers=admin, json={"key": "access", "value": {"allowPublicView": False}})
    assert saved.status_code == 200
    assert client.get("/api/public/dashboards").status_code == 403


def test_public_routes_can_require_login(client, admin):
    client.put("/api/settings/access", headers=admin, json={"requirePublicAuth": True})
    assert client.get("/api/public/dashboards").status_code == 401
    assert client.get("/api/public/dashboards", headers=admin).status_code == 200


def test_session_timeout_sets_token_lifetime(client, admin):
    client.put("/api/settings/access", headers=admin, json={"sessionTimeout": 90})
    token = client.post("/api/auth/login", json={"identifier": "admin", "password": "admin123"}).json()["token"]

    claims = client.app.state.auth_manager.decode_token(token)
    remaining = claims["exp"] - time.time()
    assert 85 * 60 < remaining <= 90 * 60 + 5


def test_verify_reset_token(client):
    storage = client.app.state.storage
    admin_user = storage.get_user_by_username("admin")
    storage.create_reset_token(
        PasswordResetToken(user_id=admin_user.id, token="good", expires_at=utcnow() + timedelta(minutes=5))
    )

    assert client.get("/api/auth/verify-reset-token", params={"token": "good"}).json() == {"valid": True}
    assert client.get("/api/auth/verify-reset-token", params={"token": "bad"}).status_code == 400

    client.post("/api/auth/password-reset/confirm", json={"token": "good", "password": "new"})
    assert client.get("/api/auth/verify-reset-token", params={"token": "good"}).status_code == 400


def test_deactivate_ldap_users(client, admin, standard):
    storage = client.app.state.storage
    storage.create_user(User(username="dir", email="dir@corp.com", auth_method=AuthMethod.LDAP))

    assert client.post("/api/users/deactivate-ldap", headers=standard).status_code == 403
    response = client.post("/api/users/deactivate-ldap", headers=admin).json()
    assert response["count"] == 1
    assert storage.get_user_by_username("dir").is_active is False
    assert storage.get_user_by_username("sam").is_active is True


def test_ldap_login_test_uses_unsaved_config(client, admin):
    directory = MagicMock()
    directory.test_login = AsyncMock(return_value=True)
    seen = []
    client.app.state.auth_manager._directory_factory = lambda ldap_settings: seen.append(ldap_settings) or directory

    response = client.post(
        "/api/auth/test-ldap",
        headers=admin,
        json={"username": "alice", "password": "pw", "config": {"url": "ldaps://dir.corp"}},
    )
    assert response.status_code == 200
    assert response.json()["success"] is True
    directory.test_login.assert_awaited_once_with("alice", "pw")
    assert seen[0].url == "ldaps://dir.corp"

    bad = client.post(
        "/api/auth/test-ldap", headers=admin, json={"username": "a", "password": "b", "config": {"url": "http://x"}}
    )
    assert bad.status_code == 400


def test_deleting_source_drops_runtime_state(client, admin):
    source = client.post(
        "/api/data-sources", headers=admin, json={"name": "s", "type": "api", "config": {"curlRequest": CURL}}
    ).json()
    client.get(f"/api/data-sources/{source['id']}/data", headers=admin)
    executor = client.app.state.executor
    assert source["id"] in executor._states

    client.delete(f"/api/data-sources/{source['id']}", headers=admin)
    assert source["id"] not in executor._states

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from usermanager.audit import JsonLinesAuditLog
from usermanager.management import create_app
from usermanager.zabbix import HostAPIError


@pytest.fixture
def app(fake_api, fake_mailer, settings, audit_log):
    return create_app(
        settings=settings,
        api=fake_api,
        audit_log=audit_log,
        mailer=fake_mailer,
        session_secret="tests-secret",
    )


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


def authenticate(client: TestClient, username: str = "Admin", password: str = "zabbix"):
    response = client.post(
        "/login",
        data={"username": username, "password": password},
        follow_redirects=False,
    )
    assert response.status_code == 303
    return response


def test_pages_require_login(client):
    for path in ("/", "/users", "/users/create", "/users/101/stats"):
        response = client.get(path, follow_redirects=False)
        assert response.status_code == 303
        assert response.headers["location"].endswith("/login")


def test_json_actions_require_login(client):
    responses = [
        client.post("/users/101/status", data={"active": "0"}),
        client.post("/users/101/reset-password"),
        client.post("/users/create", data={"email": "jdoe@example.com"}),
        client.get("/users/101/history"),
    ]
    for response in responses:
        assert response.status_code == 401
        assert response.json()["status"] is False


def test_login_page_renders(client):
    response = client.get("/login")
    assert response.status_code == 200
    assert 'name="username"' in response.text


def test_failed_login_is_audited(client, audit_log):
    response = authenticate(client, "Admin", "wrong")
    assert response.headers["location"].endswith("/login")

    page = client.get("/login")
    assert "Invalid username or password." in page.text

    failures = audit_log.get_user_actions("0")
    assert [record.action for record in failures] == ["failed_login"]
    assert failures[0].author == "Admin"


def test_non_admin_users_are_rejected(client, fake_api):
    response = authenticate(client, "guest", "guest")
    assert response.headers["location"].endswith("/login")
    assert ("user.logout", "session-guest") in fake_api.calls

    page = client.get("/login")
    assert "Only Zabbix administrators" in page.text
    assert client.get("/users", follow_redirects=False).status_code == 303


def test_login_redirects_to_user_list(client, audit_log):
    response = authenticate(client)
    assert response.headers["location"].endswith("/users")
    assert audit_log.get_user_actions("1")[0].action == "login"

    again = client.get("/login", follow_redirects=False)
    assert again.status_code == 303


def test_user_list_shows_accounts(client, fake_api):
    fake_api.add_user("alice", groups=["13"], roleid="2", email="alice@example.com")
    fake_api.add_user("bob", groups=["13", "9"])
    authenticate(client)

    response = client.get("/users")

    assert response.status_code == 200
    assert "alice@example.com" in response.text
    assert "Admin role" in response.text
    assert "Disabled" in response.text
    assert "bob" in response.text


def test_user_list_ignores_malformed_page(client, fake_api):
    fake_api.add_user("alice", groups=["13"])
    authenticate(client)

    for page in ("abc", "", "-3"):
        response = client.get("/users", params={"page": page})
        assert response.status_code == 200
        assert "alice" in response.text


def test_user_list_passes_filters(client, fake_api):
    fake_api.add_user("alice", groups=["13"])
    fake_api.add_user("bob", groups=["8"])
    authenticate(client)

    response = client.get("/users", params={"filter_name": "ali", "sort": "name", "sortorder": "DESC"})

    assert response.status_code == 200
    assert "alice" in response.text
    assert ">bob<" not in response.text
    params = [call[1] for call in fake_api.calls if call[0] == "user.get"][-1]
    assert params["search"] == {"username": "ali"}
    assert params["sortfield"] == "name"
    assert params["sortorder"] == "DESC"


def test_create_form_lists_groups_roles_and_media(client):
    authenticate(client)

    response = client.get("/users/create")

    assert response.status_code == 200
    assert "Zabbix administrators" in response.text
    assert "Super admin role" in response.text
    assert "SMS" in response.text


def test_create_user_returns_json(client, fake_api, fake_mailer):
    authenticate(client)

    response = client.post(
        "/users/create",
        data={"email": "jdoe@example.com", "roleid": "1", "usrgrps": ["13", "7"], "media_types": ["1"]},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] is True
    assert payload["message"] == "User created successfully!"
    assert payload["username"] == "jdoe"
    assert payload["userid"] in fake_api.users
    assert fake_api.users[payload["userid"]]["usrgrpids"] == ["13", "7"]
    assert fake_mailer.sent[0][:3] == ("credentials", "jdoe@example.com", "jdoe")

    listing = client.get("/users")
    assert "Created user jdoe." in listing.text


def test_create_user_rejects_incomplete_form(client):
    authenticate(client)

    response = client.post("/users/create", data={"email": "jdoe@example.com", "roleid": "1"})

    assert response.status_code == 400
    assert response.json() == {"status": False, "message": "Invalid form data"}


def test_create_user_rejects_invalid_email(client):
    authenticate(client)

    response = client.post("/users/create", data={"email": "nope", "roleid": "1", "usrgrps": ["13"]})

    assert response.status_code == 400
    assert response.json()["message"] == "Invalid email address"


def test_create_user_reports_api_errors(client, fake_api, monkeypatch):
    authenticate(client)

    def reject(data):
        raise HostAPIError('User with username "jdoe" already exists.')

    monkeypatch.setattr(fake_api, "create_user", reject)
    response = client.post("/users/create", data={"email": "jdoe@example.com", "roleid": "1", "usrgrps": ["13"]})

    assert response.status_code == 502
    assert "already exists" in response.json()["message"]


def test_status_toggle(client, fake_api, audit_log):
    userid = fake_api.add_user("jdoe", groups=["13"], email="jdoe@example.com")
    authenticate(client)

    disabled = client.post(f"/users/{userid}/status", data={"active": "0"})
    assert disabled.json() == {"status": True, "message": "User jdoe disabled."}
    assert fake_api.users[userid]["usrgrpids"] == ["13", "9"]

    enabled = client.post(f"/users/{userid}/status", data={"active": "1"})
    assert enabled.json()["status"] is True
    assert fake_api.users[userid]["usrgrpids"] == ["13"]

    records = audit_log.get_user_actions(userid)
    assert {record.action for record in records} == {"activate", "deactivate"}
    assert all(record.author == "Admin" for record in records)


def test_status_for_unknown_user(client):
    authenticate(client)

    response = client.post("/users/404/status", data={"active": "0"})

    assert response.status_code == 404
    assert response.json()["status"] is False


def test_reset_password(client, fake_api, fake_mailer):
    userid = fake_api.add_user("jdoe", email="jdoe@example.com", passwd="old")
    authenticate(client)

    response = client.post(f"/users/{userid}/reset-password")

    assert response.status_code == 200
    assert response.json()["status"] is True
    new_password = fake_api.users[userid]["passwd"]
    assert new_password != "old"
    assert response.json()["email_sent"] is True
    assert "emailed to jdoe@example.com" in response.json()["message"]
    assert fake_mailer.sent == [("reset", "jdoe@example.com", "jdoe", new_password)]


def test_reset_password_reports_mail_failure(client, fake_api, fake_mailer):
    fake_mailer.fail = True
    userid = fake_api.add_user("jdoe", email="jdoe@example.com", passwd="old")
    authenticate(client)

    response = client.post(f"/users/{userid}/reset-password")

    payload = response.json()
    new_password = fake_api.users[userid]["passwd"]
    assert response.status_code == 200
    assert payload["status"] is True
    assert payload["email_sent"] is False
    assert "could not be sent" in payload["message"]
    assert "emailed" not in payload["message"]
    assert new_password in payload["message"]


def test_reset_password_for_user_without_email(client, fake_api, fake_mailer):
    userid = fake_api.add_user("noemail", passwd="old")
    authenticate(client)

    response = client.post(f"/users/{userid}/reset-password")

    payload = response.json()
    assert payload["status"] is True
    assert payload["email_sent"] is False
    assert "no email address" in payload["message"]
    assert fake_api.users[userid]["passwd"] in payload["message"]
    assert fake_mailer.sent == []


def test_stats_page(client, fake_api):
    userid = fake_api.add_user("jdoe", roleid="2", email="jdoe@example.com", attempt_failed=3)
    authenticate(client)
    client.post(f"/users/{userid}/reset-password")

    response = client.get(f"/users/{userid}/stats")

    assert response.status_code == 200
    assert "jdoe@example.com" in response.text
    assert "Password reset" in response.text
    assert 'id="activity-data"' in response.text


def test_stats_for_unknown_user_is_404(client):
    authenticate(client)

    response = client.get("/users/404/stats")

    assert response.status_code == 404
    assert "User not found" in response.text


def test_history_endpoint(client, fake_api):
    userid = fake_api.add_user("jdoe", email="jdoe@example.com")
    authenticate(client)
    client.post(f"/users/{userid}/status", data={"active": "0"})
    client.post(f"/users/{userid}/reset-password")

    response = client.get(f"/users/{userid}/history", params={"limit": 1})

    payload = response.json()
    assert payload["status"] is True
    assert len(payload["history"]) == 1
    assert payload["history"][0]["action"] in {"deactivate", "password_reset"}
    assert payload["history"][0]["action_text"]


def test_expired_zabbix_session_returns_to_login(client, fake_api, monkeypatch):
    authenticate(client)

    def expired(**params):
        raise HostAPIError("Session terminated, re-login, please.")

    monkeypatch.setattr(fake_api, "get_users", expired)
    response = client.get("/users", follow_redirects=False)

    assert response.status_code == 303
    assert response.headers["location"].endswith("/login")


def test_audit_write_failure_does_not_block_sign_in(settings, fake_api, fake_mailer, tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    app = create_app(
        settings=settings,
        api=fake_api,
        audit_log=JsonLinesAuditLog(blocker / "user_actions.log"),
        mailer=fake_mailer,
        session_secret="tests-secret",
    )

    with TestClient(app) as client:
        failed = authenticate(client, "Admin", "wrong")
        assert failed.headers["location"].endswith("/login")

        response = authenticate(client)
        assert response.headers["location"].endswith("/users")
        assert client.get("/users").status_code == 200

        logout = client.get("/logout", follow_redirects=False)
        assert logout.status_code == 303


def test_logout_clears_session(client, fake_api):
    authenticate(client)

    response = client.get("/logout", follow_redirects=False)

    assert response.status_code == 303
    assert ("user.logout", "session-Admin") in fake_api.calls
    assert client.get("/users", follow_redirects=False).status_code == 303


def test_missing_session_secret_is_rejected(settings, fake_api, monkeypatch):
    monkeypatch.delenv("USERMANAGER_SESSION_SECRET", raising=False)
    with pytest.raises(RuntimeError):
        create_app(settings=settings, api=fake_api, session_secret="")

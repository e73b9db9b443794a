import datetime as dt
import re
from concurrent.futures import ThreadPoolExecutor

from app import server
from conftest import ADMIN_EMAIL, ADMIN_PASSWORD, Session


def test_health_endpoints_need_no_session(anon):
    assert anon.get("/healthz").get_data(as_text=True) == "ok"
    ready = anon.get("/readyz")
    assert ready.status_code == 200
    assert ready.get_data(as_text=True) == "ready"


def test_static_assets_are_served_and_traversal_is_blocked(anon):
    css = anon.get("/static/style.css")
    assert css.status_code == 200
    assert css.headers["Content-Type"].startswith("text/css")
    assert anon.get("/static/missing.css").status_code == 404
    assert server.static_response("../server.py").status == "404 Not Found"


def test_anonymous_pages_redirect_and_api_returns_401(anon):
    page = anon.get("/dashboard")
    assert page.status_code == 302
    assert page.headers["Location"].endswith("/login")

    api = anon.get("/api/notifications/count")
    assert api.status_code == 401
    assert api.get_json() == {"ok": False, "error": "authentication_required"}


def test_security_headers_on_every_response(anon):
    response = anon.get("/login")
    assert response.status_code == 200
    assert response.headers["X-Frame-Options"] == "DENY"
    assert "script-src 'self'" in response.headers["Content-Security-Policy"]
    assert "Sign In" in response.get_data(as_text=True)


def test_wrong_password_is_rejected(anon):
    response = anon.post("/login", {"email": ADMIN_EMAIL, "password": "not-the-password"}, csrf=False)
    assert response.status_code == 200
    assert "Invalid credentials." in response.get_data(as_text=True)


def test_login_is_rate_limited_per_address():
    client = Session(remote_addr="10.1.1.1")
    for _ in range(8):
        client.post("/login", {"email": ADMIN_EMAIL, "password": "wrong"}, csrf=False)
    blocked = client.post("/login", {"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD}, csrf=False)
    assert blocked.status_code == 429

    other = Session(remote_addr="10.1.1.2")
    assert other.post("/login", {"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD}, csrf=False).status_code == 302


def test_rate_limit_forgets_addresses_outside_the_window():
    now = server.utcnow()
    server.RATE_LIMIT["10.9.9.1"] = [now - dt.timedelta(minutes=30)]
    server.RATE_LIMIT["10.9.9.2"] = [now - dt.timedelta(minutes=30), now - dt.timedelta(minutes=1)]
    server.RATE_LIMIT["10.9.9.3"] = [now - dt.timedelta(minutes=1)] * 8

    assert server.enforce_rate_limit("10.9.9.4") is True
    assert "10.9.9.1" not in server.RATE_LIMIT
    assert len(server.RATE_LIMIT["10.9.9.2"]) == 1
    assert len(server.RATE_LIMIT["10.9.9.4"]) == 1

    assert server.enforce_rate_limit("10.9.9.3") is False
    assert len(server.RATE_LIMIT["10.9.9.3"]) == 8


def test_rate_limit_is_safe_under_concurrent_attempts():
    def attempt(index):
        return server.enforce_rate_limit(f"10.8.0.{index % 4}")

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(attempt, range(64)))
    assert results.count(True) == 4 * 8
    assert sorted(len(history) for history in server.RATE_LIMIT.values()) == [8, 8, 8, 8]


def test_login_sets_session_cookie_and_opens_dashboard(anon):
    response = anon.post("/login", {"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD}, csrf=False)
    assert response.status_code == 302
    assert response.headers["Location"].endswith("/dashboard")
    assert "session_token=" in response.headers["Set-Cookie"]
    assert "HttpOnly" in response.headers["Set-Cookie"]
    dashboard = anon.get("/dashboard")
    assert dashboard.status_code == 200
    assert "Default Organization" in dashboard.get_data(as_text=True)


def test_post_without_csrf_token_is_rejected(admin):
    response = admin.post("/projects/new", {"name": "No token"}, csrf=False)
    assert response.status_code == 400


def test_csrf_header_is_accepted(admin):
    response = admin.client.post(
        "/notifications/read-all",
        environ_base=admin.environ,
        headers={"X-CSRF-Token": admin.csrf},
    )
    assert response.status_code == 302


def test_logout_ends_the_session(admin):
    response = admin.post("/logout")
    assert response.status_code == 302
    assert admin.get("/dashboard").status_code == 302


def test_register_creates_user_and_owned_organization(anon, conn):
    response = anon.post(
        "/register",
        {"name": "Amina Osei", "email": "Amina@Example.org", "password": "a-long-enough-pass", "organization": "Acme Relief"},
        csrf=False,
    )
    assert response.status_code == 302
    row = conn.execute(
        """
        SELECT m.role, o.slug FROM memberships m
        JOIN users u ON u.id = m.user_id
        JOIN organizations o ON o.id = m.organization_id
        WHERE u.email = 'amina@example.org'
        """
    ).fetchone()
    assert row["role"] == "owner"
    assert row["slug"] == "acme-relief"
    units = conn.execute(
        "SELECT COUNT(*) AS n FROM units u JOIN organizations o ON o.id = u.organization_id WHERE o.slug = 'acme-relief'"
    ).fetchone()
    assert units["n"] > 0


def test_register_rejects_short_password_and_duplicate_email(anon):
    short = anon.post("/register", {"name": "X", "email": "x@example.org", "password": "short", "organization": "X"}, csrf=False)
    assert "at least 12 characters" in short.get_data(as_text=True)
    duplicate = anon.post(
        "/register",
        {"name": "Admin", "email": ADMIN_EMAIL, "password": "another-long-pass", "organization": "Dup"},
        csrf=False,
    )
    assert "already exists" in duplicate.get_data(as_text=True)


def test_forgot_password_reveals_nothing_and_alerts_admins(admin, anon, conn):
    admin.post("/admin/users/new", {"name": "Field Officer", "email": "field@example.org", "password": "field-password-1", "role": "field_staff"})
    known = anon.post("/forgot-password", {"email": "Field@Example.org"}, csrf=False)
    unknown = anon.post("/forgot-password", {"email": "nobody@example.org"}, csrf=False)
    assert known.status_code == unknown.status_code == 200
    assert "Location" not in known.headers
    assert known.get_data(as_text=True) == unknown.get_data(as_text=True)
    assert "token=" not in known.get_data(as_text=True)
    assert server.RESET_REQUESTED_NOTICE in known.get_data(as_text=True)
    assert conn.execute("SELECT COUNT(*) AS n FROM password_resets").fetchone()["n"] == 0

    alerts = conn.execute(
        """
        SELECT n.kind, n.title, n.link FROM notifications n
        JOIN users u ON u.id = n.user_id
        WHERE u.email = ?
        """,
        (ADMIN_EMAIL,),
    ).fetchall()
    assert [(r["kind"], r["title"], r["link"]) for r in alerts] == [("system", "Password reset requested for field@example.org", "/admin/users")]


def test_password_reset_through_admin_issued_link(admin, anon, conn):
    admin.post("/admin/users/new", {"name": "Field Officer", "email": "field@example.org", "password": "field-password-1", "role": "field_staff"})
    member_id = conn.execute("SELECT id FROM users WHERE email = 'field@example.org'").fetchone()["id"]
    issued = admin.post(f"/admin/users/{member_id}/reset")
    assert issued.status_code == 200
    token = re.search(r"/reset-password\?token=([A-Za-z0-9_\-]+)", issued.get_data(as_text=True)).group(1)

    assert anon.get(f"/reset-password?token={token}").status_code == 200
    mismatch = anon.post("/reset-password", {"token": token, "password": "new-password-123", "password_confirm": "other"}, csrf=False)
    assert "Passwords must match" in mismatch.get_data(as_text=True)

    done = anon.post(
        "/reset-password",
        {"token": token, "password": "new-password-123", "password_confirm": "new-password-123"},
        csrf=False,
    )
    assert done.status_code == 302
    assert "/login" in done.headers["Location"]

    reused = anon.get(f"/reset-password?token={token}")
    assert "invalid or expired" in reused.get_data(as_text=True)
    Session(remote_addr="10.2.2.2").login("field@example.org", "new-password-123")



def test_profile_password_change_checks_current_password(admin):
    wrong = admin.post("/profile/password", {"current_password": "nope", "password": "x" * 12, "password_confirm": "x" * 12})
    assert "Current password is incorrect." in wrong.get_data(as_text=True)
    ok = admin.post(
        "/profile/password",
        {"current_password": ADMIN_PASSWORD, "password": "fresh-password-99", "password_confirm": "fresh-password-99"},
    )
    assert ok.status_code == 302
    assert admin.get("/dashboard").status_code == 200


def test_switch_org_only_to_own_memberships(admin, anon, conn):
    anon.post(
        "/register",
        {"name": "Other Owner", "email": "other@example.org", "password": "other-long-password", "organization": "Elsewhere"},
        csrf=False,
    )
    foreign = conn.execute("SELECT id FROM organizations WHERE slug = 'elsewhere'").fetchone()["id"]
    response = admin.post("/switch-org", {"org_id": str(foreign)})
    assert "not%20a%20member" in response.headers["Location"]

    default = conn.execute("SELECT id FROM organizations WHERE slug = 'default'").fetchone()["id"]
    switched = admin.post("/switch-org", {"org_id": str(default)})
    assert switched.status_code == 302
    assert "active_org=" in switched.headers["Set-Cookie"]

import pytest

from app.flask_app import flask_app
from conftest import ADMIN_EMAIL, ADMIN_PASSWORD


@pytest.fixture
def client():
    flask_app.config["TESTING"] = True
    with flask_app.test_client() as test_client:
        yield test_client


def test_health_checks_and_login_page_through_flask(client):
    assert client.get("/healthz").get_data(as_text=True) == "ok"
    login = client.get("/login")
    assert login.status_code == 200
    assert login.headers["X-Frame-Options"] == "DENY"


def test_login_cookie_survives_the_flask_adapter(client):
    response = client.post("/login", data={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert response.status_code == 302
    assert response.headers["Location"].endswith("/dashboard")
    assert any(value.startswith("session_token=") for value in response.headers.getlist("Set-Cookie"))
    assert client.get("/dashboard").status_code == 200


def test_init_db_command():
    result = flask_app.test_cli_runner().invoke(args=["init-db"])
    assert result.exit_code == 0
    assert "database ready" in result.output

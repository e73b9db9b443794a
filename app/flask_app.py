#!/usr/bin/env python3
"""Meridian M&E - Flask application

Serves the explicit-dispatch WSGI app through Flask so production servers
and the Flask CLI can host it.
"""

from __future__ import annotations

import os

from flask import Flask, request

from app.db import DB_PATH, ensure_bootstrap, init_db as create_schema
from app.server import APP_NAME, COOKIE_SECURE, HOST, PORT, SECRET_KEY, app as wsgi_app, configure_logging

flask_app = Flask(__name__, static_folder=None, template_folder=None)

flask_app.config["SECRET_KEY"] = SECRET_KEY
flask_app.config["SESSION_COOKIE_SECURE"] = COOKIE_SECURE
flask_app.config["SESSION_COOKIE_HTTPONLY"] = True
flask_app.config["SESSION_COOKIE_SAMESITE"] = "Lax"


@flask_app.before_request
def setup_request():
    # Health checks answer without a bootstrapped database.
    if request.path in {"/healthz", "/readyz"}:
        return None
    ensure_bootstrap()


@flask_app.route("/", defaults={"path": ""}, methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
@flask_app.route("/<path:path>", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
def catch_all(path):
    """Delegate every route to the WSGI dispatcher and replay its response."""
    response_data = {}

    def start_response(status, headers, exc_info=None):
        response_data["status"] = status
        response_data["headers"] = headers
        return lambda s: None

    body = b"".join(wsgi_app(request.environ, start_response))
    status_code = int(response_data.get("status", "200 OK").split()[0])
    response = flask_app.make_response((body, status_code))
    for header_name, header_value in response_data.get("headers", []):
        if header_name.lower() == "set-cookie":
            response.headers.add(header_name, header_value)
        else:
            response.headers[header_name] = header_value
    return response


@flask_app.cli.command("init-db")
def init_db():
    """Create or upgrade the database schema and seed defaults."""
    create_schema()
    print(f"{APP_NAME} database ready at {DB_PATH}")


if __name__ == "__main__":
    configure_logging()
    flask_app.run(host=HOST, port=PORT, debug=os.environ.get("FLASK_DEBUG", "0") == "1", threaded=True)

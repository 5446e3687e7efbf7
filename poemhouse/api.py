#!/usr/bin/env python3
"""
A single-file JSON backend for a personal poetry site.
"""

import logging
import os
import secrets
import sqlite3
from collections import defaultdict, deque
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from time import time
from typing import DefaultDict

import click
from flask import Flask, g, jsonify, request
from itsdangerous import BadData, SignatureExpired, URLSafeTimedSerializer
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash, generate_password_hash

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = ROOT / "poemhouse.sqlite3"

ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"

TOKEN_SALT = "admin-token"
TOKEN_MAX_AGE = 24 * 60 * 60  # fixed, not configurable per token

# compared against when the username is unknown so both paths hash once
_DUMMY_HASH = generate_password_hash(secrets.token_hex(16))


def _read_env_file() -> dict[str, str]:
    env = {}
    if not ENV_FILE.exists():
        return env
    for ln in ENV_FILE.read_text().splitlines():
        ln = ln.strip()
        if not ln or ln.startswith("#") or "=" not in ln:
            continue
        k, v = ln.split("=", 1)
        env[k.strip()] = v.strip()
    return env


def _env(key: str, default: str = "") -> str:
    return (os.environ.get(key) or _read_env_file().get(key) or default).strip()


def _load_secret() -> str:
    secret = _env("POEMHOUSE_SECRET_KEY")
    if secret:
        return secret
    if SECRET_FILE.exists():
        return SECRET_FILE.read_text().strip()
    secret = secrets.token_hex(32)
    SECRET_FILE.write_text(secret)
    return secret


################################################################################
# App + configuration
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=_load_secret(),
    DATABASE=_env("POEMHOUSE_DB", str(DB_FILE)),
    ADMIN_USERNAME=_env("ADMIN_USERNAME"),
    ADMIN_PASSWORD=_env("ADMIN_PASSWORD"),
    TOKEN_MAX_AGE=TOKEN_MAX_AGE,
    LOGIN_RATE_LIMIT=int(_env("LOGIN_RATE_LIMIT", "0")),  # 0 → no throttle
    LOGIN_RATE_WINDOW=int(_env("LOGIN_RATE_WINDOW", "60")),
    CORS_ORIGINS=[o.strip() for o in _env("CORS_ORIGINS").split(",") if o.strip()],
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)
app.logger.setLevel(_env("LOG_LEVEL", "INFO").upper())


###############################################################################
# Errors
###############################################################################
class ApiError(Exception):
    """Base for every failure reported to the caller as JSON."""

    status = 400
    message = "Bad request"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)
        self.message = message or self.message

    @property
    def kind(self) -> str:
        return type(self).__name__


class ValidationError(ApiError):
    status = 400
    message = "Missing or invalid field"


class AlreadyExists(ApiError):
    status = 400
    message = "Administrator already exists"


class InvalidCredentials(ApiError):
    status = 401
    message = "Invalid username or password"


class MissingToken(ApiError):
    status = 401
    message = "Token required"


class MalformedToken(ApiError):
    status = 403
    message = "Invalid token"


class Expired(ApiError):
    status = 403
    message = "Token expired"


class PoemNotFound(ApiError):
    status = 404
    message = "Poem not found"


class CommentNotFound(ApiError):
    status = 404
    message = "Comment not found"


class RateLimited(ApiError):
    status = 429
    message = "Too many requests – try again later."


###############################################################################
# Database helpers
###############################################################################
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"])
        g.db.execute("PRAGMA foreign_keys = ON;")
        g.db.row_factory = sqlite3.Row
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    db = get_db()
    db.executescript(
        """
        ------------------------------------------------------------
        -- 1.  Administrator (exactly one row, ever)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS admin (
            id             INTEGER PRIMARY KEY CHECK (id = 1),
            username       TEXT UNIQUE NOT NULL,
            password_hash  TEXT NOT NULL
        );

        ------------------------------------------------------------
        -- 2.  Poems
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS poem (
            id       INTEGER PRIMARY KEY,
            title    TEXT    NOT NULL,
            content  TEXT    NOT NULL,
            date     TEXT    NOT NULL,
            views    INTEGER NOT NULL DEFAULT 0
        );
        CREATE INDEX IF NOT EXISTS idx_poem_date ON poem(date);

        ------------------------------------------------------------
        -- 3.  Comments (approved = 0 → pending, 1 → public)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS comment (
            id          INTEGER PRIMARY KEY,
            poem_id     INTEGER NOT NULL,
            name        TEXT    NOT NULL,
            body        TEXT    NOT NULL,
            created_at  TEXT    NOT NULL,
            approved    INTEGER NOT NULL DEFAULT 0,
        FOREIGN KEY (poem_id) REFERENCES poem(id) ON DELETE CASCADE
        );
        CREATE INDEX IF NOT EXISTS idx_comment_poem ON comment(poem_id, approved);

        ------------------------------------------------------------
        -- 4.  Site-wide visit counter (single row)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS visit (
            id            INTEGER PRIMARY KEY CHECK (id = 1),
            count         INTEGER NOT NULL DEFAULT 0,
            last_updated  TEXT    NOT NULL
        );
        """
    )
    db.commit()


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


###############################################################################
# Credential store + token codec
###############################################################################
def _token_serializer() -> URLSafeTimedSerializer:
    # read on every call: rotating SECRET_KEY invalidates every token
    return URLSafeTimedSerializer(app.config["SECRET_KEY"], salt=TOKEN_SALT)


def create_admin(db, *, username: str, password: str) -> None:
    """Store the one and only administrator. Raises `AlreadyExists` after that."""
    if db.execute("SELECT 1 FROM admin LIMIT 1").fetchone():
        raise AlreadyExists()
    username = (username or "").strip()
    if not username or not password:
        raise ValidationError("Username and password are required")
    try:
        db.execute(
            "INSERT INTO admin (id, username, password_hash) VALUES (1,?,?)",
            (username, generate_password_hash(password)),
        )
    except sqlite3.IntegrityError:
        # lost the race against a concurrent setup
        raise AlreadyExists() from None
    db.commit()
    app.logger.info("administrator %r created", username)


def check_credentials(db, *, username: str, password: str) -> str:
    """
    Return the stored username if *username*/*password* match.

    Unknown users and wrong passwords raise the same `InvalidCredentials`,
    and both go through exactly one hash comparison.
    """
    row = db.execute(
        "SELECT username, password_hash FROM admin WHERE username=?",
        (username or "",),
    ).fetchone()
    stored = row["password_hash"] if row else _DUMMY_HASH
    ok = check_password_hash(stored, password or "")
    if row is None or not ok:
        app.logger.info("failed login for %r", username)
        raise InvalidCredentials()
    return row["username"]


def issue_token(username: str) -> str:
    return _token_serializer().dumps({"username": username})


def verify_token(token: str | None) -> str:
    """
    Return the username claim carried by *token*.

    • `MissingToken`   – nothing supplied
    • `Expired`        – signature fine, older than TOKEN_MAX_AGE
    • `MalformedToken` – anything else (forged, truncated, wrong secret)
    """
    if not token:
        raise MissingToken()
    # itsdangerous only rejects age > max_age, in whole seconds; a token
    # is dead from the moment it reaches TOKEN_MAX_AGE.
    max_age = app.config["TOKEN_MAX_AGE"] - 1
    try:
        data = _token_serializer().loads(token, max_age=max_age)
    except SignatureExpired:
        raise Expired() from None
    except BadData:
        raise MalformedToken() from None

    username = data.get("username") if isinstance(data, dict) else None
    if not isinstance(username, str) or not username:
        raise MalformedToken()
    return username


def bearer_token() -> str | None:
    """Pull `<token>` out of `Authorization: Bearer <token>`."""
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


###############################################################################
# Authentication
###############################################################################
def admin_required(view):
    """Reject the request before *view* runs unless it carries a valid token."""

    @wraps(view)
    def wrapped(*args, **kwargs):
        try:
            g.admin = verify_token(bearer_token())
        except ApiError as exc:
            app.logger.info(
                "auth denied (%s) for %s %s", exc.kind, request.method, request.path
            )
            raise
        return view(*args, **kwargs)

    return wrapped


_rate_hits: DefaultDict[tuple[str, str], deque] = defaultdict(deque)


def rate_limit(limit_key: str, window_key: str):
    """
    Per-IP sliding window over *failed* calls (the view raised `ApiError`).
    Limits come from app.config; a limit of 0 switches it off.
    """

    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            max_requests = int(app.config.get(limit_key) or 0)
            if max_requests <= 0:
                return view(*args, **kwargs)
            window = int(app.config.get(window_key) or 60)

            now = time()
            # left-most entry after ProxyFix = real client
            ip = (
                request.access_route[0] if request.access_route else request.remote_addr
            ) or "unknown"

            key = (view.__name__, ip)
            dq = _rate_hits[key]
            while dq and now - dq[0] > window:
                dq.popleft()

            if len(dq) >= max_requests:
                retry_after = max(1, int(window - (now - dq[0])))
                app.logger.warning("rate limit hit on %s from %s", request.path, ip)
                resp = _error_response(RateLimited())
                resp.headers["Retry-After"] = str(retry_after)
                return resp

            try:
                return view(*args, **kwargs)
            except ApiError:
                dq.append(now)
                raise
            finally:
                if not dq:
                    _rate_hits.pop(key, None)

        return wrapped

    return decorator


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@app.route("/api/admin/setup", methods=["POST"])
def setup_admin():
    data = _json_body()
    if not ("username" in data or "password" in data):
        # no body → fall back to ADMIN_USERNAME / ADMIN_PASSWORD
        data = {
            "username": app.config.get("ADMIN_USERNAME"),
            "password": app.config.get("ADMIN_PASSWORD"),
        }
    create_admin(
        get_db(),
        username=str(data.get("username") or ""),
        password=str(data.get("password") or ""),
    )
    return jsonify(message="Administrator created")


@app.route("/api/admin/login", methods=["POST"])
@rate_limit("LOGIN_RATE_LIMIT", "LOGIN_RATE_WINDOW")
def login():
    data = _json_body()
    username = check_credentials(
        get_db(),
        username=str(data.get("username") or ""),
        password=str(data.get("password") or ""),
    )
    return jsonify(token=issue_token(username), message="Login successful")


@app.route("/api/admin/me")
@admin_required
def whoami():
    return jsonify(username=g.admin)


###############################################################################
# Serialisers
###############################################################################
def poem_json(row) -> dict:
    return {
        "_id": row["id"],
        "title": row["title"],
        "content": row["content"],
        "date": row["date"],
        "views": row["views"],
    }


def comment_json(row, *, with_poem: bool = False) -> dict:
    poem_ref = row["poem_id"]
    if with_poem:
        poem_ref = {"_id": row["poem_id"], "title": row["poem_title"]}
    return {
        "_id": row["id"],
        "poemId": poem_ref,
        "name": row["name"],
        "comment": row["body"],
        "date": row["created_at"],
        "approved": bool(row["approved"]),
    }


###############################################################################
# Poems
###############################################################################
def get_poem(db, poem_id) -> sqlite3.Row:
    try:
        poem_id = int(poem_id)
    except (TypeError, ValueError):
        raise PoemNotFound() from None
    row = db.execute("SELECT * FROM poem WHERE id=?", (poem_id,)).fetchone()
    if row is None:
        raise PoemNotFound()
    return row


def _poem_fields(data: dict) -> tuple[str, str, str]:
    title = str(data.get("title") or "").strip()
    content = str(data.get("content") or "").strip()
    if not title or not content:
        raise ValidationError("Title and content are required")

    raw_date = data.get("date")
    if not raw_date:
        return title, content, utc_now().isoformat()
    try:
        when = datetime.fromisoformat(str(raw_date).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError("date must be ISO-8601") from None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return title, content, when.astimezone(timezone.utc).isoformat()


@app.route("/api/poems")
def list_poems():
    rows = get_db().execute("SELECT * FROM poem ORDER BY date DESC, id DESC")
    return jsonify([poem_json(r) for r in rows])


@app.route("/api/poems/<int:poem_id>")
def poem_detail(poem_id):
    db = get_db()
    get_poem(db, poem_id)
    db.execute("UPDATE poem SET views = views + 1 WHERE id=?", (poem_id,))
    db.commit()
    return jsonify(poem_json(get_poem(db, poem_id)))


@app.route("/api/poems", methods=["POST"])
@admin_required
def create_poem():
    title, content, date = _poem_fields(_json_body())
    db = get_db()
    cur = db.execute(
        "INSERT INTO poem (title, content, date) VALUES (?,?,?)",
        (title, content, date),
    )
    db.commit()
    return jsonify(poem_json(get_poem(db, cur.lastrowid))), 201


@app.route("/api/poems/<int:poem_id>", methods=["PUT"])
@admin_required
def update_poem(poem_id):
    db = get_db()
    get_poem(db, poem_id)
    title, content, date = _poem_fields(_json_body())
    db.execute(
        "UPDATE poem SET title=?, content=?, date=? WHERE id=?",
        (title, content, date, poem_id),
    )
    db.commit()
    return jsonify(poem_json(get_poem(db, poem_id)))


@app.route("/api/poems/<int:poem_id>", methods=["DELETE"])
@admin_required
def delete_poem(poem_id):
    db = get_db()
    # comments go with it (ON DELETE CASCADE)
    cur = db.execute("DELETE FROM poem WHERE id=?", (poem_id,))
    db.commit()
    if cur.rowcount == 0:
        raise PoemNotFound()
    app.logger.info("poem %s deleted by %s", poem_id, g.admin)
    return jsonify(message="Poem deleted")


###############################################################################
# Comments + moderation
###############################################################################
def get_comment(db, comment_id: int) -> sqlite3.Row:
    row = db.execute("SELECT * FROM comment WHERE id=?", (comment_id,)).fetchone()
    if row is None:
        raise CommentNotFound()
    return row


def create_comment(db, *, poem_id, name: str, body: str) -> sqlite3.Row:
    """New comments always start out pending."""
    name = (name or "").strip()
    body = (body or "").strip()
    if poem_id in (None, "") or not name or not body:
        raise ValidationError("Poem id, name and comment are required")
    # int(True) == 1 and int(1.9) == 1 would pick the wrong poem
    if isinstance(poem_id, bool) or (
        isinstance(poem_id, float) and not poem_id.is_integer()
    ):
        raise ValidationError("poemId must be a poem id")
    poem = get_poem(db, poem_id)
    cur = db.execute(
        "INSERT INTO comment (poem_id, name, body, created_at, approved) "
        "VALUES (?,?,?,?,0)",
        (poem["id"], name, body, utc_now().isoformat()),
    )
    db.commit()
    return get_comment(db, cur.lastrowid)


def set_comment_approval(db, comment_id: int, approved: bool) -> sqlite3.Row:
    cur = db.execute(
        "UPDATE comment SET approved=? WHERE id=?", (int(approved), comment_id)
    )
    db.commit()
    if cur.rowcount == 0:
        raise CommentNotFound()
    return get_comment(db, comment_id)


def delete_comment(db, comment_id: int) -> None:
    cur = db.execute("DELETE FROM comment WHERE id=?", (comment_id,))
    db.commit()
    if cur.rowcount == 0:
        raise CommentNotFound()


def approved_comments(db, poem_id: int) -> list[sqlite3.Row]:
    return db.execute(
        "SELECT * FROM comment WHERE poem_id=? AND approved=1 "
        "ORDER BY created_at DESC, id DESC",
        (poem_id,),
    ).fetchall()


def all_comments(db) -> list[sqlite3.Row]:
    return db.execute(
        """
        SELECT c.*, p.title AS poem_title
          FROM comment c
          JOIN poem p ON p.id = c.poem_id
         ORDER BY c.created_at DESC, c.id DESC
        """
    ).fetchall()


@app.route("/api/comments", methods=["POST"])
def submit_comment():
    data = _json_body()
    row = create_comment(
        get_db(),
        poem_id=data.get("poemId"),
        name=str(data.get("name") or ""),
        body=str(data.get("comment") or ""),
    )
    return jsonify(comment_json(row)), 201


@app.route("/api/poems/<int:poem_id>/comments")
def poem_comments(poem_id):
    db = get_db()
    get_poem(db, poem_id)
    return jsonify([comment_json(r) for r in approved_comments(db, poem_id)])


@app.route("/api/comments")
@admin_required
def list_comments():
    return jsonify([comment_json(r, with_poem=True) for r in all_comments(get_db())])


@app.route("/api/comments/<int:comment_id>/approve", methods=["PUT"])
@admin_required
def approve_comment(comment_id):
    approved = _json_body().get("approved")
    if not isinstance(approved, bool):
        raise ValidationError("approved must be true or false")
    row = set_comment_approval(get_db(), comment_id, approved)
    app.logger.info(
        "comment %s %s by %s",
        comment_id,
        "approved" if approved else "unapproved",
        g.admin,
    )
    return jsonify(comment_json(row))


@app.route("/api/comments/<int:comment_id>", methods=["DELETE"])
@admin_required
def remove_comment(comment_id):
    delete_comment(get_db(), comment_id)
    app.logger.info("comment %s deleted by %s", comment_id, g.admin)
    return jsonify(message="Comment deleted")


###############################################################################
# Visit counter
###############################################################################
def _visit_row(db) -> sqlite3.Row:
    db.execute(
        "INSERT OR IGNORE INTO visit (id, count, last_updated) VALUES (1, 0, ?)",
        (utc_now().isoformat(),),
    )
    return db.execute("SELECT count FROM visit WHERE id=1").fetchone()


@app.route("/api/visits")
def visits():
    db = get_db()
    row = _visit_row(db)
    db.commit()
    return jsonify(count=row["count"])


@app.route("/api/visits/increment", methods=["POST"])
def increment_visits():
    db = get_db()
    _visit_row(db)
    db.execute(
        "UPDATE visit SET count = count + 1, last_updated=? WHERE id=1",
        (utc_now().isoformat(),),
    )
    db.commit()
    return jsonify(count=_visit_row(db)["count"])


@app.route("/api/visits/reset", methods=["POST"])
@admin_required
def reset_visits():
    db = get_db()
    _visit_row(db)
    db.execute(
        "UPDATE visit SET count = 0, last_updated=? WHERE id=1",
        (utc_now().isoformat(),),
    )
    db.commit()
    app.logger.info("visit counter reset by %s", g.admin)
    return jsonify(count=0, message="Visit counter reset")


@app.route("/api/health")
def health():
    return jsonify(status="OK", message="API is running")


###############################################################################
# Response headers
###############################################################################
@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    origin = request.headers.get("Origin")
    if origin and origin in app.config.get("CORS_ORIGINS", []):
        resp.headers.update(
            {
                "Access-Control-Allow-Origin": origin,
                "Access-Control-Allow-Credentials": "true",
                "Access-Control-Allow-Headers": "Authorization, Content-Type",
                "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
                "Vary": "Origin",
            }
        )
    return resp


###############################################################################
# Error pages
###############################################################################
def _error_response(exc: ApiError):
    resp = jsonify(error=exc.kind, message=exc.message)
    resp.status_code = exc.status
    return resp


@app.errorhandler(ApiError)
def api_error(exc):
    return _error_response(exc)


@app.errorhandler(HTTPException)
def http_error(exc):
    """Werkzeug's own errors (404, 405, …) as JSON too."""
    resp = jsonify(error=exc.name, message=exc.description)
    resp.status_code = exc.code
    return resp


@app.errorhandler(500)
def internal_error(exc):
    """
    Generic 500 for production.
    • With `debug=True` Flask bypasses this handler and shows the traceback.
    • Flask has already logged the traceback through `app.logger`.
    """
    resp = jsonify(error="InternalServerError", message="Internal Server Error")
    resp.status_code = 500
    return resp


###############################################################################
# CLI – create admin + token
###############################################################################
@app.cli.command("init")
@click.option("--username", prompt=True, help="Admin username")
@click.password_option(help="Admin password")
def cli_init(username: str, password: str):
    """Initialise DB *and* create the first admin account."""
    init_db()  # no-op if already there
    try:
        create_admin(get_db(), username=username, password=password)
    except ApiError as exc:
        raise click.ClickException(exc.message) from None

    click.secho("\n✅  Admin created.", fg="green")
    click.echo("Log in with POST /api/admin/login.")


@app.cli.command("token")
def cli_token():
    """Print a fresh 24-hour bearer token for the admin."""
    row = get_db().execute("SELECT username FROM admin LIMIT 1").fetchone()
    if row is None:
        raise click.ClickException("No admin yet – run `init` first.")

    click.secho("\n🔑  Fresh bearer token generated.\n", fg="yellow")
    click.echo(f"{issue_token(row['username'])}\n")
    click.echo("Send it as `Authorization: Bearer <token>`; valid for 24 hours.")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    with app.app_context():
        init_db()
    app.run(debug=True)

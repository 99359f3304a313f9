#!/usr/bin/env python3
"""
A single-file social posting panel.

Posts live in a key-value table, images in an R2 bucket. The public feed and
the JSON API are open; everything under /admin is gated by a signed cookie.
"""

import json
import os
import re
import secrets
import sqlite3
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

import boto3
import click
import markdown
from boto3.exceptions import Boto3Error
from botocore.exceptions import BotoCoreError, ClientError
from flask import (
    Flask,
    Response,
    abort,
    g,
    redirect,
    render_template_string,
    request,
    url_for,
)
from itsdangerous import BadSignature, SignatureExpired, TimestampSigner
from markupsafe import Markup
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix
from werkzeug.security import check_password_hash as verify_token
from werkzeug.security import generate_password_hash as hash_token

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
ENV_FILE = ROOT / ".env"
SECRET_FILE = ROOT / ".secret_key"


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


def env_setting(key: str, default: str = "") -> str:
    """Process environment first, then the .env file beside this module."""
    return (os.environ.get(key) or _read_env_file().get(key) or default).strip()


SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)
TOKEN_LEN = 48
signer = TimestampSigner(SECRET_KEY, salt="login-token")
session_signer = TimestampSigner(SECRET_KEY, salt="admin-session")

DB_FILE = Path(env_setting("MICROFEED_DB", str(ROOT / "microfeed.sqlite3")))
SITE_NAME = env_setting("SITE_NAME", "microfeed")
LOG_LEVEL = env_setting("LOG_LEVEL", "INFO").upper()
SESSION_COOKIE = "session"
SESSION_MAX_AGE = int(env_setting("SESSION_MAX_AGE", str(7 * 24 * 3600)))
LOGIN_TOKEN_MAX_AGE = int(env_setting("LOGIN_TOKEN_MAX_AGE", "300"))

POST_PREFIX = "post:"
POST_SEQ = "post"
ADMIN_USER_KEY = "admin:user"
ADMIN_TOKEN_KEY = "admin:token_hash"
# UTC, fixed width and zero padded: string order == chronological order
STAMP_FMT = "%Y-%m-%d %H:%M:%S"

R2_ENV_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
    "R2_ENDPOINT",
)
R2_REQUIRED_KEYS = (
    "R2_ACCOUNT_ID",
    "R2_ACCESS_KEY_ID",
    "R2_SECRET_ACCESS_KEY",
    "R2_BUCKET",
)
DEFAULT_IMAGE_TYPE = "image/jpeg"
IMAGE_CACHE_CONTROL = "public, max-age=31536000"
UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9.-]")

AREAS = ("auth", "api", "admin")
ADMIN_OPEN_PATHS = {"/admin/login", "/admin/logout"}

try:
    __version__ = version("microfeed")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App + template filters
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=SECRET_KEY,
    DATABASE=str(DB_FILE),
    SITE_NAME=SITE_NAME,
    SESSION_MAX_AGE=SESSION_MAX_AGE,
    LOGIN_TOKEN_MAX_AGE=LOGIN_TOKEN_MAX_AGE,
    # the admin cookie owns the name "session"
    SESSION_COOKIE_NAME="microfeed-flask",
)
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)
app.logger.setLevel(LOG_LEVEL)

MD_EXTENSIONS = [
    "pymdownx.extra",
    "pymdownx.magiclink",
    "pymdownx.tilde",
    "pymdownx.betterem",
    "pymdownx.saneheaders",
]
md = markdown.Markdown(extensions=MD_EXTENSIONS)


@app.template_filter("md")
def md_filter(text: str | None) -> Markup:
    md.reset()
    return Markup(md.convert(text or ""))


def site_name() -> str:
    return app.config.get("SITE_NAME") or "microfeed"


app.jinja_env.globals["site_name"] = site_name
app.jinja_env.globals["version"] = __version__


################################################################################
# Errors
################################################################################
class MicrofeedException(Exception):
    """Base class so every failure can be turned into one error envelope."""


class NotFound(MicrofeedException):
    """Unknown post, image or endpoint"""


class Conflict(MicrofeedException):
    """The post changed since the edit form was rendered"""


class BadInput(MicrofeedException):
    """The submitted form is unusable"""


class StoreUnavailable(MicrofeedException):
    """The key-value or object store could not be read"""


class WriteError(MicrofeedException):
    """The key-value store rejected a write"""


class ImageStoreError(MicrofeedException):
    """The object store rejected an upload or delete, or is not configured"""


# kind, user-facing message (None: use the exception's own), status
EXCEPTION_MESSAGE_CODE_MAP = {
    NotFound: ("not_found", None, 404),
    Conflict: (
        "conflict",
        "This post was changed elsewhere. Reload it and try again.",
        409,
    ),
    BadInput: ("bad_input", None, 400),
    StoreUnavailable: ("store_unavailable", "Could not read from storage.", 500),
    WriteError: ("write_error", "Could not save your changes.", 500),
    ImageStoreError: ("image_store_error", "Image storage failed.", 502),
}


################################################################################
# Routing areas
################################################################################
def area_for(path: str) -> str:
    """
    Classify *path* into one of the four top-level areas.

    ``/auth``, ``/api`` and ``/admin`` own the prefix itself and everything
    below it; every other path belongs to the public site.
    """
    for area in AREAS:
        prefix = f"/{area}"
        if path == prefix or path.startswith(prefix + "/"):
            return area
    return "public"


def error_response(status: int, kind: str, message: str):
    """The one error shape: JSON under /api, an HTML page elsewhere."""
    headers = {"X-Error-Kind": kind}
    if area_for(request.path) == "api":
        headers["Access-Control-Allow-Origin"] = "*"
        return {"error": {"kind": kind, "message": message}}, status, headers
    page = render_template_string(
        TEMPL_ERROR, title=site_name(), status=status, kind=kind, message=message
    )
    return page, status, headers


################################################################################
# Key-value store (SQLite)
################################################################################
def get_db():
    if "db" not in g:
        try:
            db = sqlite3.connect(app.config["DATABASE"])
            db.row_factory = sqlite3.Row
            ensure_kv_table(db)
        except sqlite3.Error as exc:
            raise StoreUnavailable("cannot open the database") from exc
        g.db = db
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def ensure_kv_table(db) -> None:
    db.execute(
        "CREATE TABLE IF NOT EXISTS kv ("
        " key   TEXT PRIMARY KEY,"
        " value TEXT NOT NULL"
        ")"
    )
    db.commit()


def init_db():
    ensure_kv_table(get_db())


def kv_scan(prefix: str, *, db) -> list[tuple[str, str]]:
    """Every (key, value) pair whose key starts with *prefix*."""
    try:
        rows = db.execute(
            "SELECT key, value FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
            (len(prefix), prefix),
        ).fetchall()
    except sqlite3.Error as exc:
        raise StoreUnavailable(f"listing {prefix!r} failed") from exc
    return [(r["key"], r["value"]) for r in rows]


def kv_get(key: str, *, db) -> str | None:
    try:
        row = db.execute("SELECT value FROM kv WHERE key=?", (key,)).fetchone()
    except sqlite3.Error as exc:
        raise StoreUnavailable(f"reading {key!r} failed") from exc
    return row["value"] if row else None


def kv_put(key: str, value: str, *, db) -> None:
    try:
        db.execute(
            "INSERT INTO kv (key, value) VALUES (?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, value),
        )
        db.commit()
    except sqlite3.Error as exc:
        raise WriteError(f"writing {key!r} failed") from exc


def kv_delete(key: str, *, db) -> None:
    try:
        db.execute("DELETE FROM kv WHERE key=?", (key,))
        db.commit()
    except sqlite3.Error as exc:
        raise WriteError(f"deleting {key!r} failed") from exc


def kv_next_seq(name: str, floor: int, *, db) -> int:
    """
    Atomically advance the sequence *name* to ``max(last + 1, floor)``.

    The upsert takes SQLite's write lock, so two callers can never be handed
    the same number, even when *floor* is identical for both.
    """
    key = f"seq:{name}"
    try:
        db.execute(
            "INSERT INTO kv (key, value) VALUES (?,?) "
            "ON CONFLICT(key) DO UPDATE SET value = "
            "MAX(CAST(value AS INTEGER) + 1, CAST(excluded.value AS INTEGER))",
            (key, str(floor)),
        )
        row = db.execute("SELECT value FROM kv WHERE key=?", (key,)).fetchone()
        db.commit()
    except sqlite3.Error as exc:
        raise WriteError(f"advancing {key!r} failed") from exc
    return int(row["value"])


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def stamp(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime(STAMP_FMT)


def parse_stamp(value: str) -> datetime:
    return datetime.strptime(value, STAMP_FMT).replace(tzinfo=timezone.utc)


################################################################################
# Posts
################################################################################
def post_key(post_id: str) -> str:
    return f"{POST_PREFIX}{post_id}"


def parse_tags(raw: str | None) -> list[str]:
    """``" a, b ,,c "`` → ``["a", "b", "c"]``"""
    return [t.strip() for t in (raw or "").split(",") if t.strip()]


def post_version(post: dict) -> str:
    """What the edit form echoes back for the optimistic check."""
    return post.get("updatedAt") or post["date"]


def _load_post(raw: str | None) -> dict | None:
    if raw is None:
        return None
    try:
        post = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(post, dict) or not isinstance(post.get("date"), str):
        return None
    try:
        parse_stamp(post["date"])
    except ValueError:
        return None
    return post


def _dump_post(post: dict) -> str:
    return json.dumps(post, ensure_ascii=False)


def list_posts(*, db) -> list[dict]:
    """
    All posts, newest first.

    Records that do not decode are left out (and logged) rather than failing
    the whole listing.
    """
    posts = []
    for key, raw in kv_scan(POST_PREFIX, db=db):
        post = _load_post(raw)
        if post is None:
            app.logger.warning("Skipping unreadable post record %s", key)
            continue
        posts.append(post)
    posts.sort(key=lambda p: parse_stamp(p["date"]), reverse=True)
    return posts


def get_post(post_id: str, *, db) -> dict | None:
    return _load_post(kv_get(post_key(post_id), db=db))


def new_post_id(*, db) -> str:
    now_ms = int(utc_now().timestamp() * 1000)
    return str(kv_next_seq(POST_SEQ, now_ms, db=db))


def create_post(
    content: str, tags: list[str], *, db, post_id: str | None = None
) -> dict:
    post = {
        "id": post_id or new_post_id(db=db),
        "date": stamp(utc_now()),
        "tags": list(tags),
        "content": content,
    }
    kv_put(post_key(post["id"]), _dump_post(post), db=db)
    return post


def update_post(
    post_id: str, content: str, tags: list[str], *, db, seen: str | None = None
) -> dict:
    """
    Replace tags and content, stamp ``updatedAt``; ``id`` and ``date`` stay.

    When *seen* is given it must still match the stored version, otherwise
    somebody else saved in between and we refuse to overwrite their edit.
    """
    post = get_post(post_id, db=db)
    if post is None:
        raise NotFound("Post not found.")
    if seen and seen != post_version(post):
        raise Conflict(post_id)
    post.update(tags=list(tags), content=content, updatedAt=stamp(utc_now()))
    kv_put(post_key(post_id), _dump_post(post), db=db)
    return post


def delete_post(post_id: str, *, db) -> None:
    kv_delete(post_key(post_id), db=db)


################################################################################
# Images (R2)
################################################################################
def r2_config() -> dict[str, str]:
    cfg = {k: env_setting(k) for k in R2_ENV_KEYS}
    return {k: v for k, v in cfg.items() if v}


def r2_is_configured(cfg: dict[str, str] | None = None) -> bool:
    cfg = cfg or r2_config()
    return all(cfg.get(k) for k in R2_REQUIRED_KEYS)


def _r2_client(cfg: dict[str, str]):
    endpoint = (
        cfg.get("R2_ENDPOINT")
        or f"https://{cfg['R2_ACCOUNT_ID']}.r2.cloudflarestorage.com"
    )
    return boto3.client(
        "s3",
        endpoint_url=endpoint,
        region_name="auto",
        aws_access_key_id=cfg["R2_ACCESS_KEY_ID"],
        aws_secret_access_key=cfg["R2_SECRET_ACCESS_KEY"],
    )


def _r2() -> tuple:
    cfg = r2_config()
    if not r2_is_configured(cfg):
        raise ImageStoreError("Image uploads are not configured.")
    return _r2_client(cfg), cfg["R2_BUCKET"]


def image_key(post_id: str, filename: str) -> str:
    """``1700000000000`` + ``my photo!.png`` → ``1700000000000-my_photo_.png``"""
    return f"{post_id}-{UNSAFE_FILENAME_RE.sub('_', filename)}"


def store_image(post_id: str, filename: str, stream, content_type=None) -> str:
    client, bucket = _r2()
    key = image_key(post_id, filename)
    try:
        client.upload_fileobj(
            stream,
            bucket,
            key,
            ExtraArgs={"ContentType": content_type or DEFAULT_IMAGE_TYPE},
        )
    except (BotoCoreError, ClientError, Boto3Error) as exc:
        raise ImageStoreError(f"upload of {key!r} failed") from exc
    return key


def fetch_image(key: str):
    """``(body, content_type)`` or ``None`` when there is no such image."""
    try:
        client, bucket = _r2()
    except ImageStoreError:
        return None
    try:
        obj = client.get_object(Bucket=bucket, Key=key)
    except ClientError as exc:
        if exc.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
            return None
        raise StoreUnavailable(f"reading image {key!r} failed") from exc
    except BotoCoreError as exc:
        raise StoreUnavailable(f"reading image {key!r} failed") from exc
    return obj["Body"], obj.get("ContentType") or DEFAULT_IMAGE_TYPE


def delete_image(key: str) -> None:
    client, bucket = _r2()
    try:
        client.delete_object(Bucket=bucket, Key=key)
    except (BotoCoreError, ClientError) as exc:
        raise ImageStoreError(f"delete of {key!r} failed") from exc


def list_image_keys() -> list[str]:
    client, bucket = _r2()
    keys = []
    try:
        for page in client.get_paginator("list_objects_v2").paginate(Bucket=bucket):
            keys.extend(obj["Key"] for obj in page.get("Contents", []))
    except (BotoCoreError, ClientError) as exc:
        raise StoreUnavailable("listing images failed") from exc
    return keys


def _upload_size(upload) -> int:
    stream = upload.stream
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(0)
    return size


def attach_image(post_id: str, upload, content: str) -> tuple[str, str | None]:
    """
    Best-effort image attachment.

    Returns the content to store and the new image key. A missing or empty
    file leaves the content alone; so does a failed upload, which is logged
    and otherwise ignored so the text still gets published.
    """
    if upload is None or not upload.filename or not _upload_size(upload):
        return content, None
    try:
        key = store_image(post_id, upload.filename, upload.stream, upload.mimetype)
    except ImageStoreError:
        app.logger.warning(
            "Image upload for post %s failed; publishing text only",
            post_id,
            exc_info=True,
        )
        return content, None
    app.logger.info("Stored image %s", key)
    url = url_for("image", key=key, _external=True)
    return f"![{alt_text(upload.filename)}]({url})\n\n{content}", key


def alt_text(filename: str) -> str:
    """Make *filename* safe inside the ``[...]`` of a Markdown image."""
    text = " ".join(filename.split())
    return re.sub(r"([\\\[\]])", r"\\\1", text)


def discard_image(key: str | None) -> None:
    """Undo an upload whose post never got written."""
    if not key:
        return
    try:
        delete_image(key)
    except ImageStoreError:
        app.logger.exception("Could not remove orphaned image %s", key)
    else:
        app.logger.info("Removed orphaned image %s", key)


def sweep_orphaned_images(*, db, grace: int = 3600, dry_run: bool = False):
    """
    Delete images whose post is gone.

    Keys that do not start with a numeric post id are not ours and are left
    alone, as are images younger than *grace* seconds (their post may still
    be on its way).
    """
    cutoff = int(utc_now().timestamp() * 1000) - grace * 1000
    removed = []
    for key in list_image_keys():
        post_id = key.split("-", 1)[0]
        if not post_id.isdigit() or int(post_id) > cutoff:
            continue
        if get_post(post_id, db=db) is not None:
            continue
        if not dry_run:
            delete_image(key)
        removed.append(key)
    return removed


################################################################################
# Authentication
################################################################################
def admin_username(*, db) -> str | None:
    return kv_get(ADMIN_USER_KEY, db=db)


def issue_session(username: str) -> str:
    return session_signer.sign(username).decode()


def verify_session(req) -> bool:
    """
    Is *req* from the administrator?

    The ``session`` cookie must carry our signature, be younger than
    ``SESSION_MAX_AGE`` and name the current admin. Any problem at all
    (missing, forged, expired, unreadable store) is simply "no".
    """
    token = req.cookies.get(SESSION_COOKIE, "")
    if not token:
        return False
    try:
        username = session_signer.unsign(
            token, max_age=app.config["SESSION_MAX_AGE"]
        ).decode()
    except (BadSignature, ValueError):
        return False
    try:
        admin = admin_username(db=get_db())
    except StoreUnavailable:
        app.logger.exception("Could not look up the admin account")
        return False
    return bool(admin) and secrets.compare_digest(username.encode(), admin.encode())


def _set_session_cookie(resp: Response, value: str, max_age: int) -> Response:
    resp.set_cookie(
        SESSION_COOKIE,
        value,
        max_age=max_age,
        path="/",
        secure=True,
        httponly=True,
        samesite="Strict",
    )
    return resp


def validate_token(token: str, *, db, max_age: int | None = None) -> bool:
    """
    • Unsign and age-check in *one* step.
    • Compare the payload (“handle”) against the hashed copy in the store.
    """
    try:
        handle = signer.unsign(
            token, max_age=max_age or app.config["LOGIN_TOKEN_MAX_AGE"]
        ).decode()
    except SignatureExpired:
        return False  # too old ➜ invalid
    except BadSignature:
        return False  # forged ➜ invalid

    stored = kv_get(ADMIN_TOKEN_KEY, db=db)
    return bool(stored) and verify_token(stored, handle)


def _rotate_token(db) -> str:
    """Generate + store a *new* one-time token, return it for display."""
    handle = secrets.token_urlsafe(TOKEN_LEN)
    token = signer.sign(handle).decode()
    kv_put(ADMIN_TOKEN_KEY, hash_token(handle), db=db)
    return token


def _create_admin(db, *, username: str) -> str:
    kv_put(ADMIN_USER_KEY, username, db=db)
    return _rotate_token(db)


@app.before_request
def admin_gate():
    if area_for(request.path) != "admin":
        return None
    if request.path.rstrip("/") in ADMIN_OPEN_PATHS:
        return None
    if not verify_session(request):
        return redirect(url_for("admin_login"))
    return None


@app.after_request
def sec_headers(resp):
    resp.headers.update(
        {
            "X-Frame-Options": "DENY",
            "X-Content-Type-Options": "nosniff",
            "Referrer-Policy": "strict-origin-when-cross-origin",
        }
    )
    return resp


###############################################################################
# CLI – create admin + token, sweep images
###############################################################################
def _token_hint() -> None:
    minutes = max(1, app.config["LOGIN_TOKEN_MAX_AGE"] // 60)
    click.echo(f"Paste it into the form at /admin/login within {minutes} minute(s).")


@app.cli.command("init")
@click.option("--username", prompt=True, help="Admin username")
def cli_init(username: str):
    """Initialise the store *and* record the admin account."""
    init_db()
    token = _create_admin(get_db(), username=username.strip())

    click.secho("\n✅  Admin created.", fg="green")
    click.echo(f"\nOne-time login token:\n\n{token}\n")
    _token_hint()


@app.cli.command("token")
def cli_token():
    """Rotate the admin’s one-time login token."""
    db = get_db()
    if not admin_username(db=db):
        raise click.ClickException("No admin yet, run `flask init` first.")
    token = _rotate_token(db)

    click.secho("\n🔑  Fresh login token generated.\n", fg="yellow")
    click.echo(f"{token}\n")
    _token_hint()


@app.cli.command("sweep-images")
@click.option(
    "--grace",
    default=3600,
    show_default=True,
    help="Leave images younger than this many seconds alone.",
)
@click.option("--dry-run", is_flag=True, help="Only list what would be removed.")
def cli_sweep_images(grace: int, dry_run: bool):
    """Delete stored images whose post no longer exists."""
    if not r2_is_configured():
        raise click.ClickException("R2 is not configured.")
    removed = sweep_orphaned_images(db=get_db(), grace=grace, dry_run=dry_run)
    for key in removed:
        click.echo(key)
    verb = "would be removed" if dry_run else "removed"
    click.secho(f"\n🧹  {len(removed)} orphaned image(s) {verb}.", fg="green")
    app.logger.info("Image sweep: %d orphan(s) %s", len(removed), verb)


###############################################################################
# Templates
###############################################################################


def wrap(body: str) -> str:
    """Glue prolog + page-specific body + epilog."""
    return TEMPL_PROLOG + body + TEMPL_EPILOG


TEMPL_PROLOG = """
<!doctype html>
<html lang="en">
<title>{{ title or site_name() }}</title>
<meta name="viewport" content="width=device-width, initial-scale=1">
<meta charset="utf-8">
<style>
html{font-size:62.5%;font-family:-apple-system,BlinkMacSystemFont,"Segoe UI",Roboto,"Helvetica Neue",Arial,sans-serif}body{font-size:1.8rem;line-height:1.618;max-width:38em;margin:auto;color:#c9c9c9;background-color:#222;padding:13px}a{color:#fff;text-decoration:underline;text-decoration-color:transparent;text-underline-offset:.18em}a:hover{color:#c9c9c9;text-decoration-color:#c9c9c9}img{height:auto;max-width:100%;border-radius:6px}pre{background:#4a4a4a;padding:1em;overflow-x:auto}code{font-size:.9em;padding:0 .5em;background:#4a4a4a}blockquote{margin:0 0 2.5rem;padding:.8em 1em;border-left:5px solid #fff;background:#4a4a4a}textarea,input{color:#c9c9c9;padding:6px 10px;margin-bottom:10px;background:#4a4a4a;border:1px solid #4a4a4a;border-radius:4px;box-sizing:border-box;width:100%}input[type=file]{width:auto;background:none;border:none}button,.button{display:inline-block;padding:5px 10px;background:#fff;color:#222;border:1px solid #fff;border-radius:1px;cursor:pointer;text-decoration:none}button:hover,.button:hover{background:#c9c9c9}
.header{display:flex;justify-content:space-between;align-items:center;margin-bottom:1.5rem}
.post{border-top:1px solid #444;padding:1.5rem 0}
.post-meta{color:#888;font-size:.75em;display:flex;gap:.75rem;flex-wrap:wrap;align-items:center}
.tag{display:inline-block;padding:.1em .6em;background:#444;color:#fff;border-radius:1em;font-size:.85em}
.actions{margin-left:auto;display:flex;gap:.75rem}
.danger{color:#f99}
</style>
<div class="container">
<header class="header">
    <h1 style="margin:0;font-size:1.6em;"><a href="/">{{ site_name() }}</a></h1>
    <nav>
    {% if admin_nav %}
        <a href="{{ url_for('admin_index') }}">Posts</a>&nbsp;
        <a href="{{ url_for('admin_logout') }}"
           onclick="return confirm('Log out?')">Log out</a>
    {% else %}
        <a href="{{ url_for('admin_login') }}">Admin</a>
    {% endif %}
    </nav>
</header>
<main>
"""

TEMPL_EPILOG = """
</main>
<footer style="margin-top:1.875em;padding-top:1.5em;font-size:.8em;color:#888;border-top:1px solid #444;">
    {{ site_name() }} <span style="color:#aaa">v{{ version }}</span>
</footer>
</div> <!-- container -->
</html>
"""

TEMPL_FEED = wrap("""
{% if not posts %}
    <p>Nothing here yet.</p>
{% endif %}
{% for p in posts %}
<article class="post" id="post-{{ p['id'] }}">
    <div class="post-meta">
        <span>{{ p['date'] }} UTC</span>
        {% for t in p['tags'] %}<span class="tag">{{ t }}</span>{% endfor %}
    </div>
    <div class="e-content">{{ p['content']|md }}</div>
</article>
{% endfor %}
""")

TEMPL_LOGIN = wrap("""
<h2>Admin login</h2>
{% if failed %}
    <p class="danger">That token is invalid or has expired.</p>
{% endif %}
<form method="post" action="{{ url_for('auth_login') }}">
    <input name="token" type="password" autocomplete="off"
           placeholder="One-time login token" required>
    <button>Log in</button>
</form>
<p><small>Get a token with <code>flask --app microfeed.blog token</code>.</small></p>
<p><a href="/">← Back to the feed</a></p>
""")

TEMPL_ADMIN = wrap("""
<h2>New post</h2>
<form method="post" enctype="multipart/form-data" action="{{ url_for('admin_index') }}">
    <textarea name="content" rows="6" placeholder="What's on your mind? (Markdown)" required></textarea>
    <input name="tags" placeholder="Tags, comma separated">
    <input type="file" name="image" accept="image/*">
    <button>Publish</button>
</form>

<h2>Posts ({{ posts|length }})</h2>
{% for p in posts %}
<article class="post">
    <div class="post-meta">
        <span>{{ p['date'] }} UTC</span>
        {% if p.get('updatedAt') %}<span>edited {{ p['updatedAt'] }}</span>{% endif %}
        {% for t in p['tags'] %}<span class="tag">{{ t }}</span>{% endfor %}
        <span class="actions">
            <a href="{{ url_for('admin_edit', post_id=p['id']) }}">Edit</a>
            <a class="danger" href="{{ url_for('admin_delete', post_id=p['id']) }}"
               onclick="return confirm('Delete this post?')">Delete</a>
        </span>
    </div>
    <div class="e-content">{{ p['content']|md }}</div>
</article>
{% else %}
    <p>No posts yet.</p>
{% endfor %}
""")

TEMPL_EDIT = wrap("""
<p><a href="{{ url_for('admin_index') }}">← Back to posts</a></p>
<h2>Edit post</h2>
<form method="post" enctype="multipart/form-data">
    <input type="hidden" name="seen" value="{{ seen }}">
    <textarea name="content" rows="10" required>{{ p['content'] }}</textarea>
    <input name="tags" value="{{ p['tags']|join(', ') }}" placeholder="Tags, comma separated">
    <input type="file" name="image" accept="image/*">
    <button>Save</button>
    <a href="{{ url_for('admin_index') }}" style="margin-left:1rem;">Cancel</a>
</form>
{% if p.get('updatedAt') %}
  <small>Last edited {{ p['updatedAt'] }} UTC</small><br>
  <small>First published {{ p['date'] }} UTC</small>
{% else %}
  <small>Published {{ p['date'] }} UTC</small>
{% endif %}
""")

TEMPL_ERROR = wrap("""
<h2 style="margin-top:0">{{ status }} · {{ message }}</h2>
<p><code>{{ kind }}</code></p>
<p><a href="/">Back to the front page</a></p>
""")


###############################################################################
# Auth
###############################################################################
@app.route("/auth/login", methods=["GET", "POST"])
def auth_login():
    if request.method == "GET":
        return redirect(url_for("admin_login"))

    token = request.form.get("token", "").strip()
    db = get_db()
    username = admin_username(db=db)
    if not (token and username and validate_token(token, db=db)):
        app.logger.info("Rejected login attempt")
        return render_template_string(TEMPL_LOGIN, title=site_name(), failed=True)

    # ── token matched → burn it right away ─────────────────────
    kv_put(ADMIN_TOKEN_KEY, hash_token(secrets.token_hex(16)), db=db)
    app.logger.info("Admin %s logged in", username)
    resp = redirect(url_for("admin_index"))
    return _set_session_cookie(
        resp, issue_session(username), app.config["SESSION_MAX_AGE"]
    )


@app.route("/auth/", defaults={"rest": ""})
@app.route("/auth/<path:rest>")
def auth_not_found(rest):
    abort(404)


###############################################################################
# Admin
###############################################################################
def _post_form() -> tuple[str, list[str]]:
    content = request.form.get("content", "")
    if not content.strip():
        raise BadInput("Content is required.")
    return content, parse_tags(request.form.get("tags"))


@app.route("/admin/login")
def admin_login():
    return render_template_string(TEMPL_LOGIN, title=site_name(), failed=False)


@app.route("/admin/logout")
def admin_logout():
    resp = redirect(url_for("admin_login"))
    return _set_session_cookie(resp, "", 0)


@app.route("/admin/", methods=["GET", "POST"])
def admin_index():
    db = get_db()
    if request.method == "POST":
        content, tags = _post_form()
        post_id = new_post_id(db=db)
        content, key = attach_image(post_id, request.files.get("image"), content)
        try:
            create_post(content, tags, db=db, post_id=post_id)
        except WriteError:
            discard_image(key)
            raise
        app.logger.info("Created post %s", post_id)
        return redirect(url_for("admin_index"))

    return render_template_string(
        TEMPL_ADMIN, posts=list_posts(db=db), title=site_name(), admin_nav=True
    )


@app.route("/admin/edit/<post_id>", methods=["GET", "POST"])
def admin_edit(post_id):
    db = get_db()
    post = get_post(post_id, db=db)
    if post is None:
        raise NotFound("Post not found.")

    if request.method == "POST":
        content, tags = _post_form()
        seen = request.form.get("seen") or None
        # reject stale forms before anything is uploaded
        if seen and seen != post_version(post):
            raise Conflict(post_id)
        content, key = attach_image(post_id, request.files.get("image"), content)
        try:
            update_post(post_id, content, tags, db=db, seen=seen)
        except MicrofeedException:
            # same filename as an image the post already shows: keep it
            if key and key not in post["content"]:
                discard_image(key)
            raise
        app.logger.info("Updated post %s", post_id)
        return redirect(url_for("admin_index"))

    return render_template_string(
        TEMPL_EDIT,
        p=post,
        seen=post_version(post),
        title=site_name(),
        admin_nav=True,
    )


@app.route("/admin/delete/<post_id>", methods=["GET", "POST"])
def admin_delete(post_id):
    delete_post(post_id, db=get_db())
    app.logger.info("Deleted post %s", post_id)
    return redirect(url_for("admin_index"))


@app.route("/admin/<path:rest>", methods=["GET", "POST"])
def admin_not_found(rest):
    abort(404)


###############################################################################
# API
###############################################################################
@app.route("/api/posts")
def api_posts():
    posts = list_posts(db=get_db())
    return {"data": posts}, 200, {"Access-Control-Allow-Origin": "*"}


@app.route("/api/", defaults={"rest": ""})
@app.route("/api/<path:rest>")
def api_not_found(rest):
    abort(404)


###############################################################################
# Public
###############################################################################
@app.route("/images/<path:key>")
def image(key):
    found = fetch_image(key)
    if found is None:
        raise NotFound("Image not found.")
    body, content_type = found
    resp = Response(
        body.iter_chunks(),
        content_type=content_type,
        headers={"Cache-Control": IMAGE_CACHE_CONTROL},
    )
    resp.call_on_close(body.close)
    return resp


@app.route("/", defaults={"path": ""})
@app.route("/<path:path>")
def feed(path):
    return render_template_string(
        TEMPL_FEED, posts=list_posts(db=get_db()), title=site_name()
    )


###############################################################################
# Error pages
###############################################################################
@app.errorhandler(MicrofeedException)
def handle_microfeed_exception(exc: MicrofeedException):
    try:
        kind, message, status = EXCEPTION_MESSAGE_CODE_MAP[exc.__class__]
    except KeyError:
        # no canned response for this one
        raise exc
    if status >= 500:
        app.logger.error("%s: %s", kind, exc, exc_info=exc)
    return error_response(status, kind, message or str(exc))


@app.errorhandler(HTTPException)
def handle_http_exception(exc: HTTPException):
    """Werkzeug's own errors (404, 405, 500, …) in the same envelope."""
    kind = re.sub(r"\W+", "_", exc.name.lower()).strip("_")
    return error_response(exc.code or 500, kind, f"{exc.name}.")


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    app.run(debug=True)

"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import io
import itertools
from pathlib import Path
from typing import Generator

import pytest
from botocore.exceptions import ClientError
from botocore.response import StreamingBody
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# The single-file app lives here:
from microfeed.blog import (  # noqa: WPS433 (importing from a module)
    ADMIN_USER_KEY,
    SESSION_COOKIE,
    app,
    get_db,
    init_db,
    issue_session,
    kv_put,
)

ADMIN = "tester"


class FakeR2:
    """Just enough of a boto3 S3 client for the image helpers."""

    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str | None]] = {}
        self.fail_uploads = False
        self.fail_deletes = False

    def upload_fileobj(self, fileobj, bucket, key, ExtraArgs=None):
        if self.fail_uploads:
            raise ClientError(
                {"Error": {"Code": "InternalError", "Message": "boom"}}, "PutObject"
            )
        self.objects[key] = (fileobj.read(), (ExtraArgs or {}).get("ContentType"))

    def get_object(self, Bucket, Key):
        if Key not in self.objects:
            raise ClientError(
                {"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject"
            )
        data, ctype = self.objects[Key]
        return {"Body": StreamingBody(io.BytesIO(data), len(data)), "ContentType": ctype}

    def delete_object(self, Bucket, Key):
        if self.fail_deletes:
            raise ClientError(
                {"Error": {"Code": "InternalError", "Message": "boom"}}, "DeleteObject"
            )
        self.objects.pop(Key, None)

    def get_paginator(self, name):
        assert name == "list_objects_v2"
        return self

    def paginate(self, Bucket):
        yield {"Contents": [{"Key": k} for k in sorted(self.objects)]}


@pytest.fixture(scope="session")
def _tmp_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp file for the whole test session (faster than per-test)."""
    return tmp_path_factory.mktemp("data") / "test.sqlite3"


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_db_path: Path) -> None:
    """
    Configure the Flask app *once* before the first test is collected.
    """
    app.config.update(TESTING=True, DATABASE=str(_tmp_db_path))
    with app.app_context():
        init_db()


@pytest.fixture(autouse=True)
def _no_r2(monkeypatch: MonkeyPatch) -> None:
    """Uploads are unconfigured unless a test asks for the ``r2`` fixture."""
    for key in ("R2_ACCOUNT_ID", "R2_ACCESS_KEY_ID", "R2_SECRET_ACCESS_KEY", "R2_BUCKET"):
        monkeypatch.delenv(key, raising=False)
    from microfeed import blog

    monkeypatch.setattr(blog, "_read_env_file", lambda: {})


@pytest.fixture
def r2(monkeypatch: MonkeyPatch) -> FakeR2:
    from microfeed import blog

    fake = FakeR2()
    monkeypatch.setenv("R2_ACCOUNT_ID", "acct")
    monkeypatch.setenv("R2_ACCESS_KEY_ID", "key")
    monkeypatch.setenv("R2_SECRET_ACCESS_KEY", "secret")
    monkeypatch.setenv("R2_BUCKET", "posts")
    monkeypatch.setattr(blog, "_r2_client", lambda cfg: fake)
    return fake


@pytest.fixture
def db():
    """An app context with an empty key-value table."""
    with app.app_context():
        conn = get_db()
        conn.execute("DELETE FROM kv")
        conn.commit()
        yield conn


@pytest.fixture
def client(db) -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.

    Yields:
        `flask.testing.FlaskClient`
    """
    with app.test_client() as client:
        yield client


def login(client: FlaskClient) -> None:
    """Record the admin account and hand the client a valid session cookie."""
    kv_put(ADMIN_USER_KEY, ADMIN, db=get_db())
    client.set_cookie(SESSION_COOKIE, issue_session(ADMIN))


@pytest.fixture
def admin(client: FlaskClient) -> FlaskClient:
    login(client)
    return client


@pytest.fixture(autouse=True, scope="session")
def _ticking_clock():
    """
    Patch microfeed.blog.utc_now for the whole test session so every call
    returns an ever-increasing timestamp.  No need for time.sleep().
    """
    from microfeed import blog  # import here to avoid early import

    counter = itertools.count()  # 0, 1, 2, …

    base = _dt.datetime(2024, 1, 1, tzinfo=_dt.timezone.utc)

    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(blog, "utc_now", _fake_now)

    yield  # tests run here

    mp.undo()  # clean up at session end

"""
tests/test_admin.py
"""
from __future__ import annotations

import re

from microfeed.blog import create_post, get_post, list_posts, post_version


def _create(client, content="hello **admin**", tags=" a, b ,,c "):
    return client.post("/admin", data={"content": content, "tags": tags})


def test_dashboard_lists_posts(admin, db):
    create_post("first *post*", ["x"], db=db)
    rv = admin.get("/admin/")
    assert rv.status_code == 200
    assert b"<em>post</em>" in rv.data
    assert b"Posts (1)" in rv.data


def test_create_post(admin, db):
    rv = _create(admin)
    assert rv.status_code == 302
    assert rv.headers["Location"].rstrip("/").endswith("/admin")

    [post] = list_posts(db=db)
    assert post["content"] == "hello **admin**"
    assert post["tags"] == ["a", "b", "c"]
    assert "updatedAt" not in post


def test_create_with_trailing_slash(admin, db):
    assert admin.post("/admin/", data={"content": "x", "tags": ""}).status_code == 302
    assert len(list_posts(db=db)) == 1


def test_create_keeps_content_verbatim(admin, db):
    text = "  leading and trailing  \n\n- list\n"
    _create(admin, content=text, tags="")
    assert list_posts(db=db)[0]["content"] == text


def test_create_requires_content(admin, db):
    rv = _create(admin, content="   ")
    assert rv.status_code == 400
    assert rv.headers["X-Error-Kind"] == "bad_input"
    assert b"Content is required." in rv.data
    assert list_posts(db=db) == []


def test_create_without_tags_field(admin, db):
    assert admin.post("/admin", data={"content": "no tags"}).status_code == 302
    assert list_posts(db=db)[0]["tags"] == []


def test_new_posts_appear_first(admin, db):
    for n in range(3):
        _create(admin, content=f"post {n}")
    assert [p["content"] for p in list_posts(db=db)] == ["post 2", "post 1", "post 0"]


def test_edit_form(admin, db):
    post = create_post("edit <me>", ["one", "two"], db=db)
    rv = admin.get(f"/admin/edit/{post['id']}")
    assert rv.status_code == 200
    html = rv.data.decode()
    assert "edit &lt;me&gt;</textarea>" in html
    assert 'value="one, two"' in html
    assert f'name="seen" value="{post["date"]}"' in html


def test_edit_unknown_post(admin):
    rv = admin.get("/admin/edit/does-not-exist")
    assert rv.status_code == 404
    assert b"Post not found." in rv.data


def test_update_unknown_post(admin):
    rv = admin.post("/admin/edit/does-not-exist", data={"content": "x", "tags": ""})
    assert rv.status_code == 404


def test_edit_round_trip_unchanged(admin, db):
    """Create → open the edit form → submit it unchanged."""
    _create(admin)
    [post] = list_posts(db=db)

    html = admin.get(f"/admin/edit/{post['id']}").data.decode()
    content = re.search(r"<textarea[^>]*>(.*?)</textarea>", html, re.S).group(1)
    tags = re.search(r'name="tags" value="([^"]*)"', html).group(1)
    seen = re.search(r'name="seen" value="([^"]*)"', html).group(1)

    rv = admin.post(
        f"/admin/edit/{post['id']}",
        data={"content": content, "tags": tags, "seen": seen},
    )
    assert rv.status_code == 302

    after = get_post(post["id"], db=db)
    assert after["content"] == post["content"]
    assert after["tags"] == post["tags"]
    assert after["id"] == post["id"]
    assert after["date"] == post["date"]
    assert "updatedAt" in after


def test_update_replaces_content_and_tags(admin, db):
    post = create_post("old", ["old"], db=db)
    admin.post(f"/admin/edit/{post['id']}", data={"content": "new", "tags": "x,y"})

    after = get_post(post["id"], db=db)
    assert (after["content"], after["tags"]) == ("new", ["x", "y"])
    assert after["date"] == post["date"]


def test_update_with_stale_form_conflicts(admin, db):
    post = create_post("v1", [], db=db)
    stale = post_version(post)
    admin.post(f"/admin/edit/{post['id']}", data={"content": "v2", "seen": stale})

    rv = admin.post(f"/admin/edit/{post['id']}", data={"content": "v3", "seen": stale})
    assert rv.status_code == 409
    assert rv.headers["X-Error-Kind"] == "conflict"
    assert get_post(post["id"], db=db)["content"] == "v2"


def test_delete_post(admin, db):
    post = create_post("bye", [], db=db)
    rv = admin.get(f"/admin/delete/{post['id']}")
    assert rv.status_code == 302
    assert rv.headers["Location"].rstrip("/").endswith("/admin")
    assert get_post(post["id"], db=db) is None


def test_delete_unknown_post_is_noop(admin):
    rv = admin.get("/admin/delete/never-existed")
    assert rv.status_code == 302


def test_unknown_admin_path(admin):
    rv = admin.get("/admin/settings")
    assert rv.status_code == 404
    assert rv.headers["X-Error-Kind"] == "not_found"

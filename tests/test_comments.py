"""
tests/test_comments.py
"""
from __future__ import annotations

import pytest
import requests

from helpers import (
    add_article,
    add_comment,
    add_photo,
    add_thought,
    doc,
    fresh_ip,
    para,
    text,
)

import shinano.blog as blog
from shinano.blog import app, get_db


# ───────────────────────── helpers ────────────────────────────────────
class _FakeResponse:
    def __init__(self, payload=None, status: int = 200):
        self._payload = payload if payload is not None else {}
        self.status_code = status

    def json(self):
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code}")


def _post(client, slug: str, kind: str = "article", **form):
    data = {"name": "Bob", "body": "Nice post"}
    data.update(form)
    return client.post(f"/en/{kind}/{slug}/comment", data=data, headers=fresh_ip())


def _comments(content_id: int, kind: str = "article"):
    return get_db().execute(
        "SELECT * FROM comment WHERE content_type=? AND content_id=? ORDER BY id",
        (kind, content_id),
    ).fetchall()


# ─────────────────────────■  posting  ■──────────────────────────────
def test_comment_is_stored_and_redirects(client):
    slug, aid = add_article(content=doc(para(text("body"))))
    resp = _post(client, slug, email="bob@example.com", notify="1")
    assert resp.status_code == 302
    assert f"/en/article/{slug}#comment-" in resp.headers["Location"]

    (row,) = _comments(aid)
    assert row["name"] == "Bob"
    assert row["email"] == "bob@example.com"
    assert row["receive_notification"] == 1


def test_notify_without_email_is_ignored(client):
    slug, aid = add_article(content=doc())
    _post(client, slug, notify="1")
    assert _comments(aid)[0]["receive_notification"] == 0


def test_comment_on_thought(client):
    slug, tid = add_thought(content=doc(para(text("hm"))))
    assert _post(client, slug, kind="thought").status_code == 302
    assert len(_comments(tid, "thought")) == 1


@pytest.mark.parametrize(
    "form",
    [
        {"name": ""},
        {"body": "   "},
        {"name": "x" * 51},
        {"body": "x" * 2001},
        {"email": "not-an-email"},
        {"reply_to": "999999"},
    ],
)
def test_invalid_comment_is_rejected(client, form):
    slug, aid = add_article(content=doc())
    assert _post(client, slug, **form).status_code == 400
    assert _comments(aid) == []


def test_comment_on_draft_or_unknown_kind_404(client):
    slug, _ = add_article(content=doc(), draft=True)
    assert _post(client, slug).status_code == 404
    assert _post(client, slug, kind="video").status_code == 404


def test_reply_must_belong_to_same_content(client):
    _, other_id = add_article(content=doc())
    foreign = add_comment("article", other_id)
    slug, aid = add_article(content=doc())
    assert _post(client, slug, reply_to=str(foreign)).status_code == 400


# ─────────────────────────■  rendering  ■────────────────────────────
def test_comment_markdown_is_rendered_after_escaping(client):
    slug, aid = add_article(content=doc(para(text("body"))))
    add_comment("article", aid, body="**bold** <script>alert(1)</script>")
    html = client.get(f"/en/article/{slug}").get_data(as_text=True)
    assert "<strong>bold</strong>" in html
    assert "<script>alert(1)</script>" not in html
    assert "&lt;script&gt;" in html


@pytest.mark.parametrize(
    "body",
    [
        "[c](javascript:alert(1))",
        "[c](JaVaScRiPt:alert(1))",
        "[c](java\tscript:alert(1))",
        "[c](vbscript:msgbox(1))",
        "![x](javascript:alert(1))",
        '[c](data:text/html,<script>alert(1)</script>)',
    ],
)
def test_script_links_in_comments_are_neutralised(client, body):
    slug, _ = add_article(content=doc(para(text("body"))))
    assert _post(client, slug, body=body).status_code == 302
    html = client.get(f"/en/article/{slug}").get_data(as_text=True).lower()
    assert 'href="javascript:' not in html
    assert 'src="javascript:' not in html
    assert 'href="vbscript:' not in html
    assert 'href="data:' not in html


def test_comment_filter_keeps_ordinary_links():
    with app.app_context():
        out = str(blog.comment_filter("[site](https://darmau.co/a) and [bad](javascript:x)"))
    assert '<a href="https://darmau.co/a">site</a>' in out
    assert '<a href="#">bad</a>' in out


def test_comment_filter_directly():
    with app.app_context():
        out = str(blog.comment_filter("<b>hi</b>\n_x_"))
    assert "<b>" not in out
    assert "&lt;b&gt;hi&lt;/b&gt;" in out
    assert "<em>x</em>" in out


# ─────────────────────────■  turnstile  ■────────────────────────────
def test_turnstile_success(client, monkeypatch):
    calls = []

    def _fake_post(url, data=None, timeout=None, **kw):
        calls.append((url, data))
        return _FakeResponse({"success": True})

    monkeypatch.setitem(app.config, "TURNSTILE_SECRET", "s3cret")
    monkeypatch.setattr(blog.requests, "post", _fake_post)

    slug, aid = add_article(content=doc())
    resp = _post(client, slug, **{"cf-turnstile-response": "tok"})
    assert resp.status_code == 302
    assert calls[0][0] == blog.TURNSTILE_VERIFY_URL
    assert calls[0][1]["secret"] == "s3cret"
    assert calls[0][1]["response"] == "tok"
    assert len(_comments(aid)) == 1


@pytest.mark.parametrize(
    "outcome",
    [
        {"success": False, "error-codes": ["invalid-input-response"]},
        {"success": "yes"},
        ["not", "a", "dict"],
    ],
)
def test_turnstile_failure_rejects_comment(client, monkeypatch, outcome):
    monkeypatch.setitem(app.config, "TURNSTILE_SECRET", "s3cret")
    monkeypatch.setattr(blog.requests, "post", lambda *a, **kw: _FakeResponse(outcome))

    slug, aid = add_article(content=doc())
    assert _post(client, slug, **{"cf-turnstile-response": "tok"}).status_code == 403
    assert _comments(aid) == []


def test_turnstile_missing_token(monkeypatch):
    monkeypatch.setitem(app.config, "TURNSTILE_SECRET", "s3cret")
    with pytest.raises(blog.TurnstileError):
        blog.verify_turnstile(None)


def test_turnstile_network_error(monkeypatch):
    def _boom(*a, **kw):
        raise requests.ConnectionError("down")

    monkeypatch.setitem(app.config, "TURNSTILE_SECRET", "s3cret")
    monkeypatch.setattr(blog.requests, "post", _boom)
    with pytest.raises(blog.TurnstileError):
        blog.verify_turnstile("tok", "1.2.3.4")


# ─────────────────────────■  reply notifications  ■──────────────────
def test_reply_sends_notification_with_unsubscribe_link(client, monkeypatch):
    sent = []

    def _fake_post(url, json=None, headers=None, timeout=None, **kw):
        sent.append((url, json, headers))
        return _FakeResponse({"id": "mail"})

    monkeypatch.setitem(app.config, "RESEND_KEY", "re_test")
    monkeypatch.setattr(blog.requests, "post", _fake_post)

    slug, aid = add_article(title="Reply target", content=doc())
    parent = add_comment("article", aid, email="ann@example.com", notify=True)
    assert _post(client, slug, reply_to=str(parent), body="Hi <Ann>").status_code == 302

    (url, payload, headers) = sent[0]
    assert url == blog.RESEND_API_URL
    assert headers["Authorization"] == "Bearer re_test"
    assert payload["to"] == ["ann@example.com"]
    assert "Reply target" in payload["subject"]
    assert "Hi &lt;Ann&gt;" in payload["html"]
    assert "/en/unsubscribe?token=" in payload["text"]


def test_no_notification_when_parent_opted_out(client, monkeypatch):
    sent = []
    monkeypatch.setitem(app.config, "RESEND_KEY", "re_test")
    monkeypatch.setattr(blog.requests, "post", lambda *a, **kw: sent.append(a))

    slug, aid = add_article(content=doc())
    parent = add_comment("article", aid, notify=False)
    assert _post(client, slug, reply_to=str(parent)).status_code == 302
    assert sent == []


def test_mail_failure_does_not_lose_the_comment(client, monkeypatch, caplog):
    monkeypatch.setitem(app.config, "RESEND_KEY", "re_test")
    monkeypatch.setattr(blog.requests, "post", lambda *a, **kw: _FakeResponse(status=500))

    slug, aid = add_article(content=doc())
    parent = add_comment("article", aid)
    assert _post(client, slug, reply_to=str(parent)).status_code == 302
    assert len(_comments(aid)) == 2
    assert "Reply notification failed" in caplog.text


def test_notify_reply_skips_without_key(monkeypatch):
    monkeypatch.setitem(app.config, "RESEND_KEY", "")
    parent = {"id": 1, "email": "a@b.c", "receive_notification": 1}
    with app.test_request_context("/"):
        assert (
            blog.notify_reply(
                parent, reply_name="x", reply_body="y", title="t", link="/l", lang="en"
            )
            is False
        )


# ─────────────────────────■  rate limit  ■───────────────────────────
def test_comment_rate_limit(client):
    slug, _ = add_article(content=doc())
    ip = fresh_ip()
    codes = [
        client.post(
            f"/en/article/{slug}/comment", data={"name": "", "body": ""}, headers=ip
        ).status_code
        for _ in range(21)
    ]
    assert codes[:20] == [400] * 20
    assert codes[20] == 429


def test_rate_limit_forgets_idle_clients(monkeypatch):
    clock = [1000.0]
    monkeypatch.setattr(blog, "time", lambda: clock[0])
    view = blog.rate_limit(2, window=10)(lambda: "ok")

    with app.test_request_context(headers={"CF-Connecting-IP": "idle"}):
        assert view() == "ok"
    assert "idle" in view.hits

    clock[0] += 30
    with app.test_request_context(headers={"CF-Connecting-IP": "busy"}):
        assert view() == "ok"
    assert "idle" not in view.hits
    assert list(view.hits) == ["busy"]


def test_rate_limit_keeps_clients_inside_the_window(monkeypatch):
    clock = [5000.0]
    monkeypatch.setattr(blog, "time", lambda: clock[0])
    view = blog.rate_limit(1, window=10)(lambda: "ok")

    with app.test_request_context(headers={"CF-Connecting-IP": "a"}):
        assert view() == "ok"
    clock[0] += 5
    with app.test_request_context(headers={"CF-Connecting-IP": "b"}):
        assert view() == "ok"
    with app.test_request_context(headers={"CF-Connecting-IP": "a"}):
        assert view().status_code == 429
    assert set(view.hits) == {"a", "b"}


# ─────────────────────────■  albums  ■───────────────────────────────
def test_comment_on_album(client):
    slug, pid = add_photo(content=doc(para(text("x"))))
    resp = _post(client, slug, kind="photo")
    assert resp.status_code == 302
    assert f"/en/album/{slug}#comment-" in resp.headers["Location"]
    assert len(_comments(pid, "photo")) == 1


def test_album_reply_notification_uses_album_title(client, monkeypatch):
    sent = []
    monkeypatch.setitem(app.config, "RESEND_KEY", "re_test")
    monkeypatch.setattr(
        blog.requests, "post", lambda url, json=None, **kw: sent.append(json) or _FakeResponse()
    )

    slug, pid = add_photo(title="Kyoto in snow", content=doc())
    parent = add_comment("photo", pid, notify=True)
    assert _post(client, slug, kind="photo", reply_to=str(parent)).status_code == 302
    assert "Kyoto in snow" in sent[0]["subject"]
    assert f"/en/album/{slug}" in sent[0]["text"]
